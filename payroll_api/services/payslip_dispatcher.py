"""
Rate-limited payslip delivery.

One worker walks the undelivered payslips of a run in id order and sends
them one at a time, never faster than one send per ``min_interval``
seconds. Each outcome is committed before the next send, so a crash or a
cancel leaves every payslip either sent or still pending and a rerun picks
up exactly where the last one stopped.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import update

from payroll_api.common.auth import Actor, Role
from payroll_api.common.errors import ExternalDeliveryFailure
from payroll_api.extensions import db
from payroll_api.models.payroll.enums import DeliveryStatus, PaymentStatus, RunStatus
from payroll_api.models.payroll.pay_run import PayRun
from payroll_api.models.payroll.payslip import Payslip
from payroll_api.services.payroll_workflow import assert_status, authorize, get_run
from payroll_api.services.payslip_service import PayslipGenerator

log = logging.getLogger(__name__)

DEFAULT_SEND_INTERVAL = 0.6   # provider allows 2 requests/second


@dataclass
class DispatchResult:
    payslip_id: int
    employee_id: int
    status: str                       # sent | failed
    error: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class DispatchSummary:
    pay_run_id: int
    queued: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0                  # already delivered or paid before this pass
    cancelled: bool = False
    results: List[DispatchResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "pay_run_id": self.pay_run_id,
            "queued": self.queued,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "results": [r.__dict__ for r in self.results],
        }


class PayslipDispatcher:
    """
    ``send`` takes a Payslip and returns a provider message id (or None);
    it raises ExternalDeliveryFailure when the recipient cannot be reached.
    ``clock`` and ``wait`` are injectable for tests; ``wait(seconds)``
    returns True when the pass was cancelled while waiting.
    """

    def __init__(self, send: Callable[[Payslip], Optional[str]],
                 min_interval: float = DEFAULT_SEND_INTERVAL,
                 cancel_event: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.monotonic,
                 wait: Optional[Callable[[float], bool]] = None):
        self.send = send
        self.min_interval = max(float(min_interval), 0.0)
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self.wait = wait or self.cancel_event.wait

    @classmethod
    def from_config(cls, config, send, **kw) -> "PayslipDispatcher":
        return cls(send, min_interval=config.get("PAYSLIP_SEND_INTERVAL_SECONDS", DEFAULT_SEND_INTERVAL), **kw)

    def cancel(self) -> None:
        self.cancel_event.set()

    @staticmethod
    def pending(run_id: int) -> List[Payslip]:
        return (Payslip.query
                .filter(Payslip.pay_run_id == run_id)
                .filter(Payslip.delivery_status != DeliveryStatus.SENT)
                .filter(Payslip.payment_status == PaymentStatus.PENDING)
                .order_by(Payslip.id.asc())
                .all())

    def dispatch(self, run_id: int) -> DispatchSummary:
        """One pass over the run. A cancel from an earlier pass does not carry over."""
        run = get_run(run_id)
        assert_status(run, (RunStatus.LOCKED,), "distribute payslips")
        self.cancel_event.clear()

        queue = self.pending(run.id)
        summary = DispatchSummary(pay_run_id=run.id, queued=len(queue))
        # already delivered, or already paid out
        summary.skipped = Payslip.query.filter_by(pay_run_id=run.id).count() - len(queue)
        log.info("pay run %s: dispatching %d payslip(s), %d skipped",
                 run.run_code, len(queue), summary.skipped)

        last_send: Optional[float] = None
        for ps in queue:
            if self.cancel_event.is_set():
                summary.cancelled = True
                break
            if last_send is not None:
                remaining = self.min_interval - (self.clock() - last_send)
                if remaining > 0 and self.wait(remaining):
                    summary.cancelled = True
                    break

            last_send = self.clock()
            result = self._deliver(ps)
            summary.results.append(result)
            if result.status == "sent":
                summary.sent += 1
            else:
                summary.failed += 1

            db.session.execute(update(PayRun).where(PayRun.id == run.id)
                               .values(dispatch_cursor=ps.id)
                               .execution_options(synchronize_session=False))
            db.session.commit()

        if summary.cancelled:
            log.info("pay run %s: dispatch cancelled after %d send(s)", run.run_code, len(summary.results))
        log.info("pay run %s: dispatch done, %d sent, %d failed", run.run_code, summary.sent, summary.failed)
        return summary

    def _deliver(self, ps: Payslip) -> DispatchResult:
        ps.delivery_attempts = (ps.delivery_attempts or 0) + 1
        try:
            message_id = self.send(ps)
        except ExternalDeliveryFailure as e:
            return self._failed(ps, e.message)
        except Exception as e:
            # one bad recipient never stops the batch
            log.exception("payslip %s: unexpected send error", ps.id)
            return self._failed(ps, f"{type(e).__name__}: {e}")

        ps.delivery_status = DeliveryStatus.SENT
        ps.delivered_at = datetime.utcnow()
        ps.delivery_error = None
        ps.provider_message_id = message_id
        return DispatchResult(ps.id, ps.employee_id, "sent", message_id=message_id)

    @staticmethod
    def _failed(ps: Payslip, error: str) -> DispatchResult:
        log.warning("payslip %s (employee %s) not delivered: %s", ps.id, ps.employee_id, error)
        ps.delivery_status = DeliveryStatus.FAILED
        ps.delivery_error = (error or "")[:500]
        return DispatchResult(ps.id, ps.employee_id, "failed", error=ps.delivery_error)


def generate_and_distribute(run_id: int, actor: Actor, dispatcher: PayslipDispatcher,
                            generator: Optional[PayslipGenerator] = None) -> dict:
    """Generate missing payslips for a locked run, then send every undelivered one."""
    authorize(actor, {Role.PAYROLL_SPECIALIST}, "distribute payslips")
    generated = (generator or PayslipGenerator()).generate_for_run(run_id)
    summary = dispatcher.dispatch(run_id)

    sent_now = {r.employee_id: r for r in summary.results}
    employees = []
    for g in generated:
        row = {"employee_id": g.employee_id, "payslip": g.status, "payslip_id": g.payslip_id,
               "delivery": None, "error": g.error}
        if g.employee_id in sent_now:
            d = sent_now[g.employee_id]
            row["delivery"] = d.status
            row["error"] = d.error
        elif g.payslip_id is not None:
            ps = db.session.get(Payslip, g.payslip_id)
            done = ps.delivery_status == DeliveryStatus.SENT or ps.payment_status == PaymentStatus.PAID
            row["delivery"] = "skipped" if done else ps.delivery_status.value
        employees.append(row)

    return {
        "pay_run_id": run_id,
        "generated": sum(1 for g in generated if g.status == "created"),
        "existing": sum(1 for g in generated if g.status == "exists"),
        "generation_failed": sum(1 for g in generated if g.status == "failed"),
        "dispatch": {k: v for k, v in summary.to_dict().items() if k != "results"},
        "employees": employees,
    }
