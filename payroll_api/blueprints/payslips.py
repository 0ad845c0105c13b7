from flask import Blueprint, make_response, request

from payroll_api.common.auth import requires_roles
from payroll_api.common.errors import NotFoundError
from payroll_api.common.http import ok, fail
from payroll_api.common.paging import paginate
from payroll_api.extensions import db
from payroll_api.models.payroll.enums import DeliveryStatus
from payroll_api.models.payroll.payslip import Payslip
from payroll_api.services.payslip_service import build_payslip_dto, render_payslip_html

bp = Blueprint("payslips", __name__, url_prefix="/api/v1/payslips")


def _get_payslip(payslip_id: int) -> Payslip:
    ps = db.session.get(Payslip, payslip_id)
    if ps is None:
        raise NotFoundError(f"Payslip {payslip_id} not found")
    return ps


def _row(ps: Payslip):
    snap = ps.employee_snapshot or {}
    return {
        "id": ps.id,
        "pay_run_id": ps.pay_run_id,
        "employee_id": ps.employee_id,
        "employee_code": snap.get("code"),
        "employee_name": snap.get("name"),
        "period_start": ps.period_start.isoformat(),
        "period_end": ps.period_end.isoformat(),
        "gross": str(ps.gross),
        "deductions": str(ps.deductions),
        "net": str(ps.net),
        "payment_status": ps.payment_status.value,
        "delivery_status": ps.delivery_status.value,
        "delivery_attempts": ps.delivery_attempts,
        "delivery_error": ps.delivery_error,
        "delivered_at": ps.delivered_at.isoformat() if ps.delivered_at else None,
    }


@bp.get("")
@requires_roles()
def list_payslips():
    """
    List payslips. Filters: pay_run_id, employee_id, delivery_status.
    """
    q = Payslip.query
    for arg in ("pay_run_id", "employee_id"):
        v = request.args.get(arg)
        if v:
            try:
                q = q.filter(getattr(Payslip, arg) == int(v))
            except ValueError:
                return fail(f"{arg} must be integer", 422)
    st = (request.args.get("delivery_status") or "").strip().lower()
    if st:
        try:
            q = q.filter(Payslip.delivery_status == DeliveryStatus(st))
        except ValueError:
            return fail(f"unknown delivery_status '{st}'", 422)

    rows, meta = paginate(q, order_by=Payslip.id.asc())
    return ok([_row(x) for x in rows], **meta)


@bp.get("/<int:payslip_id>")
@requires_roles()
def get_payslip(payslip_id: int):
    return ok(build_payslip_dto(_get_payslip(payslip_id)))


@bp.get("/<int:payslip_id>/download")
@requires_roles()
def download_payslip(payslip_id: int):
    """Download as HTML."""
    ps = _get_payslip(payslip_id)
    dto = build_payslip_dto(ps)
    response = make_response(render_payslip_html(dto))
    response.headers["Content-Type"] = "text/html"
    filename = f"PAYSLIP_{dto['employee'].get('code')}_{dto['run']['year']}_{dto['run']['month']:02d}.html"
    response.headers["Content-Disposition"] = f"attachment; filename={filename}"
    return response
