from __future__ import annotations

import logging
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from payroll_api.common.auth import Actor, Role
from payroll_api.common.errors import BadRequestError, CalculationError, NotFoundError
from payroll_api.extensions import db
from payroll_api.models.master import Company
from payroll_api.models.payroll.enums import RunStatus, Severity
from payroll_api.models.payroll.pay_run import PayRun, PayRunAuditEntry, PayRunException, PayRunItem
from payroll_api.services.compensation import ZERO, compute_breakdown
from payroll_api.services.compensation_inputs import (
    baseline_gross, build_inputs, eligible_employees, employees_with_bank_account,
    load_adjustments, load_company_policy, period_tag,
)
from payroll_api.services.exception_detector import DEFAULT_SPIKE_THRESHOLD, ExceptionDetector, LineFacts
from payroll_api.services.payroll_workflow import (
    assert_status, authorize, claim_run, get_run, record_audit,
)

log = logging.getLogger(__name__)

# statuses in which a manager may clear exceptions
RESOLVABLE = (RunStatus.DRAFT, RunStatus.UNDER_REVIEW, RunStatus.APPROVED, RunStatus.UNLOCKED)

MONEY_FIELDS = (
    "base_salary", "allowances", "bonuses", "benefits", "refunds", "gross",
    "taxes", "insurance", "penalties", "deductions", "net", "employer_contributions",
)


def _new_run_code(period_start: date) -> str:
    return f"PR-{period_start.year:04d}-{period_start.month:02d}-{int(time.time() * 1000)}"


def _validate_period(period_start: Optional[date], period_end: Optional[date]) -> None:
    if not (period_start and period_end):
        raise BadRequestError("period_start and period_end are required (YYYY-MM-DD)", code="VALIDATION_ERROR")
    if period_end < period_start:
        raise BadRequestError("period_end must be >= period_start", code="VALIDATION_ERROR")


class PayRunService:
    def __init__(self, spike_threshold=DEFAULT_SPIKE_THRESHOLD):
        self.detector = ExceptionDetector(spike_threshold=spike_threshold)

    @classmethod
    def from_config(cls, config) -> "PayRunService":
        return cls(spike_threshold=config.get("PAYROLL_SALARY_SPIKE_THRESHOLD", DEFAULT_SPIKE_THRESHOLD))

    # ---------- create ----------

    def create_draft(self, actor: Actor, company_id: int, period_start: date, period_end: date,
                     retro_of_id: Optional[int] = None) -> PayRun:
        authorize(actor, {Role.PAYROLL_SPECIALIST}, "create pay run")
        _validate_period(period_start, period_end)
        if db.session.get(Company, company_id) is None:
            raise NotFoundError(f"Company {company_id} not found")

        if retro_of_id is not None:
            original = get_run(retro_of_id)
            if original.status != RunStatus.LOCKED:
                raise BadRequestError("A retro run can only amend a locked run", code="RETRO_TARGET_NOT_LOCKED")
            if original.company_id != company_id:
                raise BadRequestError("A retro run must belong to the same company", code="VALIDATION_ERROR")

        run = PayRun(
            run_code=_new_run_code(period_start),
            company_id=company_id,
            period_start=period_start,
            period_end=period_end,
            status=RunStatus.DRAFT,
            retro_of_id=retro_of_id,
            created_by=actor.id,
        )
        db.session.add(run)
        db.session.flush()
        record_audit(run, "create", actor, None, RunStatus.DRAFT)
        db.session.commit()
        log.info("pay run %s created for company %s (%s..%s)", run.run_code, company_id,
                 period_start, period_end)
        return run

    # ---------- calculate ----------

    def calculate(self, run_id: int, actor: Actor, employee_ids: Optional[Iterable[int]] = None) -> PayRun:
        """
        Rebuild every line of a DRAFT run from current configuration.
        A failure on one employee becomes a calculation-error exception on
        that employee's line; the rest of the run still computes.
        """
        run = get_run(run_id)
        authorize(actor, {Role.PAYROLL_SPECIALIST}, "calculate")
        assert_status(run, (RunStatus.DRAFT,), "calculate")
        claim_run(run)

        PayRunException.query.filter_by(pay_run_id=run.id).delete(synchronize_session=False)
        PayRunItem.query.filter_by(pay_run_id=run.id).delete(synchronize_session=False)
        db.session.expire(run, ["items"])

        tag = period_tag(run.period_start)
        policy = load_company_policy(run.company_id, run.period_end)
        employees = eligible_employees(run, employee_ids)
        emp_ids = [e.id for e in employees]
        adjustments = load_adjustments(emp_ids, tag)
        banked = employees_with_bank_account(emp_ids)

        totals = {"gross": ZERO, "deductions": ZERO, "net": ZERO}
        n_exc = 0
        for emp in employees:
            item, found = self._calculate_line(run, emp, policy, adjustments.get(emp.id, []),
                                               emp.id in banked, tag)
            db.session.add(item)
            db.session.flush()
            for exc in found:
                db.session.add(PayRunException(
                    item_id=item.id, pay_run_id=run.id, employee_id=emp.id,
                    code=exc.code, severity=exc.severity, message=exc.message,
                ))
            n_exc += len(found)
            totals["gross"] += Decimal(str(item.gross))
            totals["deductions"] += Decimal(str(item.deductions))
            totals["net"] += Decimal(str(item.net))

        run.employee_count = len(employees)
        run.total_gross = totals["gross"]
        run.total_deductions = totals["deductions"]
        run.total_net = totals["net"]
        run.exception_count = n_exc
        run.calculated_at = datetime.utcnow()
        record_audit(run, "calculate", actor, run.status, run.status)
        db.session.commit()
        log.info("pay run %s calculated: %d employees, %d exceptions, net %s",
                 run.run_code, len(employees), n_exc, totals["net"])
        return run

    def _calculate_line(self, run, emp, policy, adjustments, has_bank, tag):
        item = PayRunItem(pay_run_id=run.id, employee_id=emp.id, has_bank_account=has_bank)
        for col in MONEY_FIELDS:
            setattr(item, col, ZERO)
        baseline = baseline_gross(run, emp.id)
        failure = None
        try:
            inputs = build_inputs(emp, policy, adjustments, tag)
            bd = compute_breakdown(inputs)
        except CalculationError as e:
            log.warning("pay run %s: employee %s not calculated: %s", run.run_code, emp.id, e.message)
            failure = e.message
            item.breakdown = {"earnings": [], "deductions": []}
            item.calc_meta = {"period": tag, "baseline_gross": str(baseline) if baseline is not None else None}
            item.remarks = e.message[:255]
        else:
            item.base_salary = bd.base_salary
            item.allowances = bd.allowances
            item.bonuses = bd.bonuses
            item.benefits = bd.benefits
            item.refunds = bd.refunds
            item.gross = bd.gross
            item.taxes = bd.taxes
            item.insurance = bd.insurance
            item.penalties = bd.penalties
            item.deductions = bd.total_deductions
            item.net = bd.net
            item.employer_contributions = bd.employer_contributions
            data = bd.to_dict()
            item.breakdown = {"earnings": data["earnings"], "deductions": data["deductions"]}
            item.calc_meta = dict(inputs.meta, baseline_gross=str(baseline) if baseline is not None else None)

        facts = LineFacts(
            employee_id=emp.id,
            base_salary=item.base_salary,
            gross=item.gross,
            deductions=item.deductions,
            net=item.net,
            earnings_detail=item.breakdown["earnings"],
            deductions_detail=item.breakdown["deductions"],
            has_bank_account=has_bank,
            baseline_gross=baseline,
            calculation_failure=failure,
        )
        return item, self.detector.detect(facts)

    # ---------- queries ----------

    @staticmethod
    def items_query(run_id: int):
        get_run(run_id)
        return PayRunItem.query.filter_by(pay_run_id=run_id)

    @staticmethod
    def exceptions(run_id: int, employee_id: Optional[int] = None, severity: Optional[Severity] = None,
                   unresolved_only: bool = False) -> List[PayRunException]:
        get_run(run_id)
        q = PayRunException.query.filter_by(pay_run_id=run_id)
        if employee_id is not None:
            q = q.filter(PayRunException.employee_id == employee_id)
        if severity is not None:
            q = q.filter(PayRunException.severity == severity)
        if unresolved_only:
            q = q.filter(PayRunException.resolved.is_(False))
        return q.order_by(PayRunException.id.asc()).all()

    @staticmethod
    def audit_trail(run_id: int) -> List[PayRunAuditEntry]:
        get_run(run_id)
        return (PayRunAuditEntry.query.filter_by(pay_run_id=run_id)
                .order_by(PayRunAuditEntry.id.asc()).all())

    # ---------- mutations outside the status graph ----------

    def resolve_exceptions(self, run_id: int, item_id: int, actor: Actor, note: Optional[str],
                           exception_ids: Optional[Iterable[int]] = None) -> List[PayRunException]:
        """Mark a line's open exceptions (or the given subset) as resolved."""
        run = get_run(run_id)
        authorize(actor, {Role.PAYROLL_MANAGER}, "resolve exceptions")
        assert_status(run, RESOLVABLE, "resolve exceptions")
        if not (note or "").strip():
            raise BadRequestError("A resolution note is required", code="REASON_REQUIRED")

        item = PayRunItem.query.filter_by(id=item_id, pay_run_id=run.id).first()
        if item is None:
            raise NotFoundError(f"Line {item_id} not found in pay run {run_id}")

        q = PayRunException.query.filter_by(item_id=item.id, resolved=False)
        if exception_ids:
            q = q.filter(PayRunException.id.in_(list(exception_ids)))
        rows = q.all()
        if not rows:
            raise BadRequestError("No open exceptions to resolve on this line", code="NOTHING_TO_RESOLVE")

        claim_run(run)
        now = datetime.utcnow()
        for x in rows:
            x.resolved = True
            x.resolved_by = actor.id
            x.resolved_at = now
            x.resolution_note = note.strip()
        record_audit(run, "resolve_exceptions", actor, run.status, run.status,
                     reason=f"line {item.id}: {note.strip()}")
        db.session.commit()
        log.info("pay run %s: %d exception(s) resolved on line %s by user %s",
                 run.run_code, len(rows), item.id, actor.id)
        return rows

    def edit_period(self, run_id: int, actor: Actor, period_start: date, period_end: date) -> PayRun:
        """Only a rejected run may change its period. Reopen and recalculate it afterwards."""
        run = get_run(run_id)
        authorize(actor, {Role.PAYROLL_SPECIALIST}, "edit period")
        assert_status(run, (RunStatus.REJECTED,), "edit period")
        _validate_period(period_start, period_end)

        claim_run(run, {"period_start": period_start, "period_end": period_end})
        record_audit(run, "edit_period", actor, run.status, run.status,
                     reason=f"{period_start.isoformat()}..{period_end.isoformat()}")
        db.session.commit()
        return get_run(run_id)
