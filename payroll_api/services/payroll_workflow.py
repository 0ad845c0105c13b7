"""
Pay run lifecycle.

All status changes go through ``PayrollRunWorkflow.apply``. Each action is a
row in ``TRANSITIONS``: the statuses it may start from, the status it moves
to (``None`` keeps the current one), the roles allowed to perform it and the
guards that must pass. The write is a compare-and-swap on (status, version);
a caller that read a stale run gets ConflictError instead of overwriting a
concurrent transition.

    DRAFT --submit--> UNDER_REVIEW --approve--> APPROVED --freeze--> LOCKED
      ^                    |                       |                  |
      |                  reject                 reject            unfreeze
      |                    v                       v                  v
      +------reopen----- REJECTED <----------------+              UNLOCKED --freeze--> LOCKED
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy import func, update

from payroll_api.common.auth import Actor, Role
from payroll_api.common.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from payroll_api.extensions import db
from payroll_api.models.payroll.enums import PaymentStatus, RunStatus, Severity
from payroll_api.models.payroll.pay_run import PayRun, PayRunAuditEntry, PayRunException, PayRunItem

log = logging.getLogger(__name__)

S = RunStatus
SPECIALIST = frozenset({Role.PAYROLL_SPECIALIST})
MANAGER = frozenset({Role.PAYROLL_MANAGER})
FINANCE = frozenset({Role.FINANCE_STAFF})


@dataclass
class TransitionContext:
    run: PayRun
    actor: Actor
    reason: Optional[str]
    workflow: "PayrollRunWorkflow"


Guard = Callable[[TransitionContext], None]


# ---------- guards ----------

def has_lines(ctx: TransitionContext) -> None:
    n = PayRunItem.query.filter_by(pay_run_id=ctx.run.id).count()
    if n == 0:
        raise BadRequestError("Pay run has no employee lines; calculate it first", code="NO_LINES")


def no_unresolved_high_exceptions(ctx: TransitionContext) -> None:
    n = unresolved_high_count(ctx.run.id)
    if n:
        raise BadRequestError(f"{n} unresolved high-severity exception(s) block approval",
                              code="UNRESOLVED_EXCEPTIONS", payload={"unresolved_high": n})


def not_submitter(ctx: TransitionContext) -> None:
    if ctx.run.submitted_by is not None and ctx.run.submitted_by == ctx.actor.id:
        raise ForbiddenError("The user who submitted a run cannot approve it", code="SELF_APPROVAL")


def reason_required(ctx: TransitionContext) -> None:
    if not (ctx.reason or "").strip():
        raise BadRequestError("A reason is required for this action", code="REASON_REQUIRED")


def finance_not_yet_approved(ctx: TransitionContext) -> None:
    if ctx.run.finance_approved_at is not None:
        raise ForbiddenError("Finance has already approved this run", code="ALREADY_APPROVED")


def finance_approval_if_required(ctx: TransitionContext) -> None:
    if ctx.workflow.require_finance_approval and ctx.run.finance_approved_at is None:
        raise BadRequestError("Finance approval is required before freezing",
                              code="FINANCE_APPROVAL_REQUIRED")


# ---------- effects (extra columns written with the status) ----------

def _stamp(prefix: str) -> Callable[[TransitionContext, datetime], Dict[str, Any]]:
    def effect(ctx, now):
        return {f"{prefix}_by": ctx.actor.id, f"{prefix}_at": now}
    return effect


def _finance_effect(ctx, now):
    return {"finance_approved_by": ctx.actor.id, "finance_approved_at": now,
            "payment_status": PaymentStatus.PAID}


def _reject_effect(ctx, now):
    # a rejected run is not payable; finance signs off again after reopen
    return {"rejected_by": ctx.actor.id, "rejected_at": now, "rejection_reason": ctx.reason.strip(),
            "finance_approved_by": None, "finance_approved_at": None,
            "payment_status": PaymentStatus.PENDING}


def _unfreeze_effect(ctx, now):
    return {"unlocked_by": ctx.actor.id, "unlocked_at": now, "unlock_reason": ctx.reason.strip()}


def _reopen_effect(ctx, now):
    # a new review cycle starts from scratch; history stays in the audit trail
    cleared = dict.fromkeys((
        "submitted_by", "submitted_at",
        "manager_approved_by", "manager_approved_at",
        "finance_approved_by", "finance_approved_at",
        "rejected_by", "rejected_at", "rejection_reason",
    ))
    cleared["payment_status"] = PaymentStatus.PENDING
    cleared["cycle"] = PayRun.cycle + 1
    return cleared


@dataclass(frozen=True)
class Transition:
    action: str
    sources: FrozenSet[RunStatus]
    target: Optional[RunStatus]
    roles: FrozenSet[Role]
    guards: Tuple[Guard, ...] = ()
    effect: Optional[Callable[[TransitionContext, datetime], Dict[str, Any]]] = None


TRANSITIONS: Dict[str, Transition] = {t.action: t for t in (
    Transition("submit", frozenset({S.DRAFT}), S.UNDER_REVIEW, SPECIALIST,
               guards=(has_lines,), effect=_stamp("submitted")),
    Transition("approve", frozenset({S.UNDER_REVIEW}), S.APPROVED, MANAGER,
               guards=(not_submitter, no_unresolved_high_exceptions), effect=_stamp("manager_approved")),
    Transition("approve_finance", frozenset({S.APPROVED, S.UNLOCKED}), None, FINANCE,
               guards=(not_submitter, finance_not_yet_approved), effect=_finance_effect),
    Transition("reject", frozenset({S.UNDER_REVIEW, S.APPROVED}), S.REJECTED, MANAGER | FINANCE,
               guards=(reason_required,), effect=_reject_effect),
    Transition("freeze", frozenset({S.APPROVED, S.UNLOCKED}), S.LOCKED, MANAGER,
               guards=(no_unresolved_high_exceptions, finance_approval_if_required), effect=_stamp("locked")),
    Transition("unfreeze", frozenset({S.LOCKED}), S.UNLOCKED, MANAGER,
               guards=(reason_required,), effect=_unfreeze_effect),
    Transition("reopen", frozenset({S.REJECTED}), S.DRAFT, SPECIALIST,
               effect=_reopen_effect),
)}


# ---------- shared helpers ----------

def get_run(run_id: int) -> PayRun:
    run = db.session.get(PayRun, run_id)
    if run is None:
        raise NotFoundError(f"Pay run {run_id} not found")
    return run


def unresolved_high_count(run_id: int) -> int:
    return (db.session.query(func.count(PayRunException.id))
            .filter(PayRunException.pay_run_id == run_id)
            .filter(PayRunException.severity == Severity.HIGH)
            .filter(PayRunException.resolved.is_(False))
            .scalar()) or 0


def authorize(actor: Actor, roles: Iterable[Role], action: str) -> None:
    roles = frozenset(roles)
    if not actor.has_any(roles):
        need = ", ".join(sorted(r.value for r in roles))
        raise ForbiddenError(f"'{action}' requires one of: {need}", code="ROLE_REQUIRED")


def assert_status(run: PayRun, allowed: Iterable[RunStatus], action: str) -> None:
    """Forbidden unless the run is in one of ``allowed``. LOCKED gets its own code."""
    allowed = frozenset(allowed)
    if run.status in allowed:
        return
    if run.status == RunStatus.LOCKED:
        raise ForbiddenError(f"Pay run {run.run_code} is locked; cannot {action}",
                             code="RUN_LOCKED", payload={"status": run.status.value})
    raise ForbiddenError(
        f"Cannot {action} while pay run is {run.status.value}",
        code="INVALID_STATUS",
        payload={"status": run.status.value, "allowed": sorted(s.value for s in allowed)},
    )


def claim_run(run: PayRun, values: Optional[Dict[str, Any]] = None) -> None:
    """
    Compare-and-swap on (status, version) within the current transaction.
    Bumps version and applies ``values``. Raises ConflictError if another
    writer got there first.
    """
    stmt = (update(PayRun)
            .where(PayRun.id == run.id)
            .where(PayRun.status == run.status)
            .where(PayRun.version == run.version)
            .values(version=PayRun.version + 1, updated_at=datetime.utcnow(), **(values or {}))
            .execution_options(synchronize_session=False))
    res = db.session.execute(stmt)
    if res.rowcount != 1:
        db.session.rollback()
        raise ConflictError(f"Pay run {run.id} was modified concurrently; reload and retry")


def record_audit(run: PayRun, action: str, actor: Actor, from_status=None, to_status=None,
                 reason: Optional[str] = None) -> PayRunAuditEntry:
    entry = PayRunAuditEntry(
        pay_run_id=run.id,
        action=action,
        from_status=from_status.value if from_status is not None else None,
        to_status=to_status.value if to_status is not None else None,
        actor_id=actor.id,
        reason=reason,
    )
    db.session.add(entry)
    return entry


# ---------- state machine ----------

class PayrollRunWorkflow:
    def __init__(self, require_finance_approval: bool = False):
        self.require_finance_approval = bool(require_finance_approval)

    @classmethod
    def from_config(cls, config) -> "PayrollRunWorkflow":
        return cls(require_finance_approval=config.get("PAYROLL_REQUIRE_FINANCE_APPROVAL", False))

    @staticmethod
    def allowed_actions(status: RunStatus) -> List[str]:
        return [a for a, t in TRANSITIONS.items() if status in t.sources]

    def apply(self, action: str, run_id: int, actor: Actor, reason: Optional[str] = None) -> PayRun:
        t = TRANSITIONS.get(action)
        if t is None:
            raise BadRequestError(f"Unknown pay run action '{action}'", code="UNKNOWN_ACTION")

        run = get_run(run_id)
        authorize(actor, t.roles, action)
        assert_status(run, t.sources, action)

        ctx = TransitionContext(run=run, actor=actor, reason=reason, workflow=self)
        for guard in t.guards:
            guard(ctx)

        from_status = run.status
        to_status = t.target or from_status
        values: Dict[str, Any] = {"status": to_status}
        if t.effect is not None:
            values.update(t.effect(ctx, datetime.utcnow()))

        claim_run(run, values)
        record_audit(run, action, actor, from_status, to_status,
                     reason=(reason or "").strip() or None)
        db.session.commit()

        log.info("pay run %s: %s %s -> %s by user %s",
                 run_id, action, from_status.value, to_status.value, actor.id)
        return get_run(run_id)

    # named wrappers, one per action

    def submit(self, run_id: int, actor: Actor) -> PayRun:
        return self.apply("submit", run_id, actor)

    def approve(self, run_id: int, actor: Actor) -> PayRun:
        return self.apply("approve", run_id, actor)

    def approve_finance(self, run_id: int, actor: Actor) -> PayRun:
        return self.apply("approve_finance", run_id, actor)

    def reject(self, run_id: int, actor: Actor, reason: Optional[str]) -> PayRun:
        return self.apply("reject", run_id, actor, reason=reason)

    def freeze(self, run_id: int, actor: Actor) -> PayRun:
        return self.apply("freeze", run_id, actor)

    def unfreeze(self, run_id: int, actor: Actor, reason: Optional[str]) -> PayRun:
        return self.apply("unfreeze", run_id, actor, reason=reason)

    def reopen(self, run_id: int, actor: Actor) -> PayRun:
        return self.apply("reopen", run_id, actor)
