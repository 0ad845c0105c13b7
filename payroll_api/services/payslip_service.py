from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import render_template
from sqlalchemy.exc import IntegrityError

from payroll_api.common.auth import Actor, Role
from payroll_api.common.errors import (
    CalculationError, ConflictError, DuplicatePayslipError, ForbiddenError,
)
from payroll_api.extensions import db
from payroll_api.models.employee_bank import EmployeeBankAccount
from payroll_api.models.payroll.enums import PaymentStatus, RunStatus
from payroll_api.models.payroll.pay_run import PayRun, PayRunItem
from payroll_api.models.payroll.payslip import Payslip
from payroll_api.services.compensation import to_money
from payroll_api.services.payroll_workflow import assert_status, authorize, get_run, record_audit

log = logging.getLogger(__name__)


@dataclass
class PayslipComponent:
    kind: str
    name: str
    amount: Decimal
    rate: Optional[Decimal] = None


@dataclass
class PayslipDTO:
    company: Dict[str, Any]
    employee: Dict[str, Any]
    run: Dict[str, Any]
    earnings: List[PayslipComponent]
    deductions: List[PayslipComponent]
    totals: Dict[str, Any]
    delivery: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    employee_id: int
    status: str                   # created | exists | failed
    payslip_id: Optional[int] = None
    error: Optional[str] = None


def _mask(account: Optional[str]) -> Optional[str]:
    if not account:
        return None
    return "*" * max(len(account) - 4, 0) + account[-4:]


def _primary_bank(employee_id: int) -> Optional[EmployeeBankAccount]:
    return (EmployeeBankAccount.query.filter_by(employee_id=employee_id)
            .order_by(EmployeeBankAccount.is_primary.desc(), EmployeeBankAccount.id.asc())
            .first())


class PayslipGenerator:
    """
    Turns the lines of a LOCKED run into payslips. A payslip is written once
    per (employee, run); asking again for an existing one is a
    DuplicatePayslipError, never an overwrite.
    """

    def _snapshot(self, run: PayRun, item: PayRunItem) -> Dict[str, Any]:
        emp = item.employee
        if emp is None:
            raise CalculationError(f"Line {item.id} has no employee")
        gross = to_money(item.gross, "gross")
        deductions = to_money(item.deductions, "deductions")
        net = to_money(item.net, "net")
        if gross - deductions != net:
            raise CalculationError(f"Line {item.id} totals are inconsistent (gross - deductions != net)")

        breakdown = item.breakdown or {}
        bank = _primary_bank(emp.id)
        return dict(
            pay_run_id=run.id,
            employee_id=emp.id,
            item_id=item.id,
            period_start=run.period_start,
            period_end=run.period_end,
            base_salary=to_money(item.base_salary, "base salary"),
            gross=gross,
            deductions=deductions,
            net=net,
            earnings_detail={
                "base_salary": str(to_money(item.base_salary)),
                "items": list(breakdown.get("earnings") or []),
            },
            deductions_detail={
                "items": list(breakdown.get("deductions") or []),
                "employer_contributions": str(to_money(item.employer_contributions)),
            },
            employee_snapshot={
                "code": emp.code,
                "name": emp.full_name,
                "email": emp.email,
                "pay_grade": emp.pay_grade.name if emp.pay_grade else None,
                "bank_name": bank.bank_name if bank else None,
                "bank_account": _mask(bank.account_number) if bank else None,
            },
        )

    def generate_one(self, run: PayRun, item: PayRunItem) -> Payslip:
        """Build and stage one payslip. Caller commits."""
        assert_status(run, (RunStatus.LOCKED,), "generate payslips")
        exists = Payslip.query.filter_by(employee_id=item.employee_id, pay_run_id=run.id).first()
        if exists is not None:
            raise DuplicatePayslipError(
                f"Payslip already exists for employee {item.employee_id} in run {run.run_code}",
                payload={"payslip_id": exists.id},
            )
        ps = Payslip(**self._snapshot(run, item))
        db.session.add(ps)
        db.session.flush()
        return ps

    def generate_for_run(self, run_id: int) -> List[GenerationResult]:
        """One payslip per line. Per-employee problems are reported, not raised."""
        run = get_run(run_id)
        assert_status(run, (RunStatus.LOCKED,), "generate payslips")

        results: List[GenerationResult] = []
        for item in PayRunItem.query.filter_by(pay_run_id=run.id).order_by(PayRunItem.id.asc()):
            try:
                with db.session.begin_nested():
                    ps = self.generate_one(run, item)
            except DuplicatePayslipError as e:
                results.append(GenerationResult(item.employee_id, "exists",
                                                payslip_id=(e.payload or {}).get("payslip_id")))
            except CalculationError as e:
                log.warning("pay run %s: payslip for employee %s not generated: %s",
                            run.run_code, item.employee_id, e.message)
                results.append(GenerationResult(item.employee_id, "failed", error=e.message))
            except Exception as e:
                # malformed line data; the savepoint is rolled back, the batch goes on
                log.exception("pay run %s: payslip for employee %s failed", run.run_code, item.employee_id)
                results.append(GenerationResult(item.employee_id, "failed", error=f"{type(e).__name__}: {e}"))
            else:
                results.append(GenerationResult(item.employee_id, "created", payslip_id=ps.id))

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(f"Payslips for run {run.run_code} are being generated concurrently; retry")

        created = sum(1 for r in results if r.status == "created")
        log.info("pay run %s: %d payslip(s) created, %d existing, %d failed", run.run_code, created,
                 sum(1 for r in results if r.status == "exists"),
                 sum(1 for r in results if r.status == "failed"))
        return results


# ---------- read side ----------

def build_payslip_dto(ps: Payslip) -> dict:
    run = ps.pay_run
    company = run.company
    snap = ps.employee_snapshot or {}

    def components(rows):
        return [PayslipComponent(kind=r.get("kind", ""), name=r.get("name", ""),
                                 amount=Decimal(str(r.get("amount", "0"))),
                                 rate=Decimal(r["rate"]) if r.get("rate") else None)
                for r in rows or []]

    dto = PayslipDTO(
        company={"id": company.id, "code": company.code, "name": company.name,
                 "currency": company.currency},
        employee=dict(snap, id=ps.employee_id),
        run={
            "pay_run_id": run.id,
            "run_code": run.run_code,
            "period_start": ps.period_start.isoformat(),
            "period_end": ps.period_end.isoformat(),
            "year": ps.period_start.year,
            "month": ps.period_start.month,
        },
        earnings=components((ps.earnings_detail or {}).get("items")),
        deductions=components((ps.deductions_detail or {}).get("items")),
        totals={
            "base_salary": Decimal(str(ps.base_salary)),
            "gross_pay": Decimal(str(ps.gross)),
            "total_deductions": Decimal(str(ps.deductions)),
            "net_pay": Decimal(str(ps.net)),
            "employer_contributions": Decimal(str((ps.deductions_detail or {}).get("employer_contributions", "0"))),
        },
        delivery={
            "payment_status": ps.payment_status.value,
            "paid_at": ps.paid_at.isoformat() if ps.paid_at else None,
            "delivery_status": ps.delivery_status.value,
            "delivery_attempts": ps.delivery_attempts,
            "delivered_at": ps.delivered_at.isoformat() if ps.delivered_at else None,
            "delivery_error": ps.delivery_error,
        },
    )
    return asdict(dto)


def render_payslip_html(dto: dict) -> str:
    return render_template("payroll/payslip.html", payslip=dto)


def mark_payslips_paid(run_id: int, actor: Actor) -> int:
    """Finance settles a locked run: every pending payslip becomes paid."""
    run = get_run(run_id)
    authorize(actor, {Role.FINANCE_STAFF}, "mark payslips paid")
    assert_status(run, (RunStatus.LOCKED,), "mark payslips paid")
    if run.finance_approved_at is None:
        raise ForbiddenError("Finance must approve the run before payslips are marked paid",
                             code="FINANCE_APPROVAL_REQUIRED")

    now = datetime.utcnow()
    n = (Payslip.query
         .filter(Payslip.pay_run_id == run.id, Payslip.payment_status == PaymentStatus.PENDING)
         .update({Payslip.payment_status: PaymentStatus.PAID, Payslip.paid_at: now},
                 synchronize_session=False))
    record_audit(run, "mark_paid", actor, run.status, run.status, reason=f"{n} payslip(s)")
    db.session.commit()
    log.info("pay run %s: %d payslip(s) marked paid by user %s", run.run_code, n, actor.id)
    return n
