# payroll_api/blueprints/pay_runs.py
from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, request

from payroll_api.common.auth import requires_actor, requires_roles
from payroll_api.common.errors import BadRequestError
from payroll_api.common.http import ok, fail
from payroll_api.common.paging import paginate
from payroll_api.models.payroll.enums import RunStatus, Severity
from payroll_api.models.payroll.pay_run import PayRun, PayRunItem
from payroll_api.services.mailer import PayslipMailer
from payroll_api.services.pay_run_service import PayRunService
from payroll_api.services.payroll_workflow import PayrollRunWorkflow, get_run, unresolved_high_count
from payroll_api.services.payslip_dispatcher import PayslipDispatcher, generate_and_distribute
from payroll_api.services.payslip_service import mark_payslips_paid

bp = Blueprint("pay_runs", __name__, url_prefix="/api/v1/pay-runs")


def _workflow() -> PayrollRunWorkflow:
    return PayrollRunWorkflow.from_config(current_app.config)


def _service() -> PayRunService:
    return PayRunService.from_config(current_app.config)


# ---------- parsing helpers ----------
def _d(s) -> Optional[date]:
    if not s:
        return None
    try:
        return date.fromisoformat(str(s))
    except ValueError:
        return None


def _int(v, name: str, required: bool = False) -> Optional[int]:
    if v is None or v == "":
        if required:
            raise BadRequestError(f"{name} is required", code="VALIDATION_ERROR")
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        raise BadRequestError(f"{name} must be integer", code="VALIDATION_ERROR")


def _body() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def _iso(x):
    return x.isoformat() if x else None


def _money(x):
    return str(x) if x is not None else None


# ---------- row serializers ----------
def _row_run(r: PayRun) -> Dict[str, Any]:
    return {
        "id": r.id,
        "run_code": r.run_code,
        "company_id": r.company_id,
        "company_name": r.company.name if r.company else None,
        "period_start": _iso(r.period_start),
        "period_end": _iso(r.period_end),
        "status": r.status.value,
        "payment_status": r.payment_status.value,
        "cycle": r.cycle,
        "version": r.version,
        "retro_of_id": r.retro_of_id,
        "totals": {
            "employees": r.employee_count,
            "gross": _money(r.total_gross),
            "deductions": _money(r.total_deductions),
            "net": _money(r.total_net),
            "exceptions": r.exception_count,
            "unresolved_high": unresolved_high_count(r.id),
        },
        "calculated_at": _iso(r.calculated_at),
        "submitted": {"by": r.submitted_by, "at": _iso(r.submitted_at)},
        "manager_approval": {"by": r.manager_approved_by, "at": _iso(r.manager_approved_at)},
        "finance_approval": {"by": r.finance_approved_by, "at": _iso(r.finance_approved_at)},
        "locked": {"by": r.locked_by, "at": _iso(r.locked_at)},
        "unlocked": {"by": r.unlocked_by, "at": _iso(r.unlocked_at), "reason": r.unlock_reason},
        "rejected": {"by": r.rejected_by, "at": _iso(r.rejected_at), "reason": r.rejection_reason},
        "allowed_actions": PayrollRunWorkflow.allowed_actions(r.status),
        "created_by": r.created_by,
        "created_at": _iso(r.created_at),
        "updated_at": _iso(r.updated_at),
    }


def _row_exception(x) -> Dict[str, Any]:
    return {
        "id": x.id,
        "item_id": x.item_id,
        "employee_id": x.employee_id,
        "code": x.code.value,
        "severity": x.severity.value,
        "message": x.message,
        "resolved": x.resolved,
        "resolved_by": x.resolved_by,
        "resolved_at": _iso(x.resolved_at),
        "resolution_note": x.resolution_note,
    }


def _row_item(x: PayRunItem) -> Dict[str, Any]:
    emp = x.employee
    return {
        "id": x.id,
        "pay_run_id": x.pay_run_id,
        "employee_id": x.employee_id,
        "employee_code": emp.code if emp else None,
        "employee_name": emp.full_name if emp else None,
        "base_salary": _money(x.base_salary),
        "allowances": _money(x.allowances),
        "bonuses": _money(x.bonuses),
        "benefits": _money(x.benefits),
        "refunds": _money(x.refunds),
        "gross": _money(x.gross),
        "taxes": _money(x.taxes),
        "insurance": _money(x.insurance),
        "penalties": _money(x.penalties),
        "deductions": _money(x.deductions),
        "net": _money(x.net),
        "employer_contributions": _money(x.employer_contributions),
        "has_bank_account": x.has_bank_account,
        "breakdown": x.breakdown,
        "calc_meta": x.calc_meta,
        "remarks": x.remarks,
        "exceptions": [_row_exception(e) for e in x.exceptions],
    }


def _row_audit(a) -> Dict[str, Any]:
    return {
        "id": a.id,
        "action": a.action,
        "from_status": a.from_status,
        "to_status": a.to_status,
        "actor_id": a.actor_id,
        "reason": a.reason,
        "created_at": _iso(a.created_at),
    }


# ---------- routes ----------
@bp.post("")
@requires_actor
def create_run(actor):
    """
    Create a DRAFT run. Lines are computed straight away unless
    "calculate": false is passed.
    """
    j = _body()
    company_id = _int(j.get("company_id"), "company_id", required=True)
    pstart = _d(j.get("period_start"))
    pend = _d(j.get("period_end"))
    retro_of_id = _int(j.get("retro_of_id"), "retro_of_id")

    svc = _service()
    r = svc.create_draft(actor, company_id, pstart, pend, retro_of_id=retro_of_id)
    if j.get("calculate", True):
        r = svc.calculate(r.id, actor, employee_ids=j.get("employee_ids"))
    return ok(_row_run(r), 201)


@bp.get("")
@requires_roles()
def list_runs():
    q = PayRun.query
    company_id = _int(request.args.get("company_id"), "company_id")
    if company_id is not None:
        q = q.filter(PayRun.company_id == company_id)
    st = (request.args.get("status") or "").strip().lower()
    if st:
        try:
            q = q.filter(PayRun.status == RunStatus(st))
        except ValueError:
            return fail(f"unknown status '{st}'", 422)
    if request.args.get("from"):
        d = _d(request.args["from"])
        if not d:
            return fail("from must be YYYY-MM-DD", 422)
        q = q.filter(PayRun.period_start >= d)
    if request.args.get("to"):
        d = _d(request.args["to"])
        if not d:
            return fail("to must be YYYY-MM-DD", 422)
        q = q.filter(PayRun.period_end <= d)

    rows, meta = paginate(q, order_by=PayRun.id.desc())
    return ok([_row_run(x) for x in rows], **meta)


@bp.get("/<int:run_id>")
@requires_roles()
def get_run_detail(run_id: int):
    return ok(_row_run(get_run(run_id)))


@bp.post("/<int:run_id>/calculate")
@requires_actor
def calculate_run(actor, run_id: int):
    j = _body()
    r = _service().calculate(run_id, actor, employee_ids=j.get("employee_ids"))
    return ok(_row_run(r))


@bp.get("/<int:run_id>/items")
@requires_roles()
def list_run_items(run_id: int):
    q = PayRunService.items_query(run_id)
    emp_id = _int(request.args.get("employee_id"), "employee_id")
    if emp_id is not None:
        q = q.filter(PayRunItem.employee_id == emp_id)
    rows, meta = paginate(q, order_by=PayRunItem.id.asc())
    return ok([_row_item(x) for x in rows], **meta)


# ---------- workflow transitions ----------
def _transition(actor, run_id: int, action: str):
    j = _body()
    r = _workflow().apply(action, run_id, actor, reason=j.get("reason"))
    return ok(_row_run(r))


@bp.post("/<int:run_id>/submit")
@requires_actor
def submit_run(actor, run_id: int):
    return _transition(actor, run_id, "submit")


@bp.post("/<int:run_id>/approve")
@requires_actor
def approve_run(actor, run_id: int):
    return _transition(actor, run_id, "approve")


@bp.post("/<int:run_id>/approve-finance")
@requires_actor
def approve_run_finance(actor, run_id: int):
    return _transition(actor, run_id, "approve_finance")


@bp.post("/<int:run_id>/reject")
@requires_actor
def reject_run(actor, run_id: int):
    return _transition(actor, run_id, "reject")


@bp.post("/<int:run_id>/freeze")
@requires_actor
def freeze_run(actor, run_id: int):
    return _transition(actor, run_id, "freeze")


@bp.post("/<int:run_id>/unfreeze")
@requires_actor
def unfreeze_run(actor, run_id: int):
    return _transition(actor, run_id, "unfreeze")


@bp.post("/<int:run_id>/reopen")
@requires_actor
def reopen_run(actor, run_id: int):
    return _transition(actor, run_id, "reopen")


@bp.patch("/<int:run_id>/period")
@requires_actor
def edit_run_period(actor, run_id: int):
    j = _body()
    r = _service().edit_period(run_id, actor, _d(j.get("period_start")), _d(j.get("period_end")))
    return ok(_row_run(r))


# ---------- exceptions & audit ----------
@bp.get("/<int:run_id>/exceptions")
@requires_roles()
def list_run_exceptions(run_id: int):
    sev = (request.args.get("severity") or "").strip().lower()
    try:
        severity = Severity(sev) if sev else None
    except ValueError:
        return fail(f"unknown severity '{sev}'", 422)
    rows = PayRunService.exceptions(
        run_id,
        employee_id=_int(request.args.get("employee_id"), "employee_id"),
        severity=severity,
        unresolved_only=request.args.get("unresolved") in ("1", "true", "yes"),
    )
    return ok([_row_exception(x) for x in rows])


@bp.post("/<int:run_id>/items/<int:item_id>/resolve-exceptions")
@requires_actor
def resolve_item_exceptions(actor, run_id: int, item_id: int):
    j = _body()
    rows = _service().resolve_exceptions(run_id, item_id, actor, j.get("note"),
                                         exception_ids=j.get("exception_ids"))
    return ok([_row_exception(x) for x in rows])


@bp.get("/<int:run_id>/audit")
@requires_roles()
def list_run_audit(run_id: int):
    return ok([_row_audit(a) for a in PayRunService.audit_trail(run_id)])


# ---------- payslips ----------
@bp.post("/<int:run_id>/payslips")
@requires_actor
def distribute_payslips(actor, run_id: int):
    """Generate payslips for a locked run and email every undelivered one."""
    dispatcher = PayslipDispatcher.from_config(current_app.config, PayslipMailer())
    return ok(generate_and_distribute(run_id, actor, dispatcher))


@bp.post("/<int:run_id>/payslips/mark-paid")
@requires_actor
def mark_run_payslips_paid(actor, run_id: int):
    return ok({"pay_run_id": run_id, "marked_paid": mark_payslips_paid(run_id, actor)})
