"""Read-only lookups that turn configuration rows into calculator inputs."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from payroll_api.common.errors import CalculationError
from payroll_api.extensions import db
from payroll_api.models.employee import Employee
from payroll_api.models.employee_bank import EmployeeBankAccount
from payroll_api.models.payroll.adjustments import Adjustment
from payroll_api.models.payroll.enums import ConfigStatus, RunStatus
from payroll_api.models.payroll.pay_run import PayRun, PayRunItem
from payroll_api.models.payroll.policy import Allowance, InsuranceBracket, TaxRule
from payroll_api.services.compensation import AmountItem, CompensationInputs, RateRule

# runs whose lines count as history for the salary-spike baseline
BASELINE_STATUSES = (RunStatus.LOCKED, RunStatus.UNLOCKED)


def period_tag(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def _effective(q, model, on_date: date):
    return (q.filter(model.effective_from <= on_date)
             .filter(db.or_(model.effective_to.is_(None), model.effective_to >= on_date)))


@dataclass
class CompanyPolicy:
    """Approved configuration effective on one date for one company."""
    allowances: List[Allowance] = field(default_factory=list)
    taxes: List[TaxRule] = field(default_factory=list)
    brackets: List[InsuranceBracket] = field(default_factory=list)


def load_company_policy(company_id: int, on_date: date) -> CompanyPolicy:
    def approved(model):
        q = model.query.filter(model.company_id == company_id, model.status == ConfigStatus.APPROVED)
        return _effective(q, model, on_date).order_by(model.id.asc()).all()

    return CompanyPolicy(
        allowances=approved(Allowance),
        taxes=approved(TaxRule),
        brackets=approved(InsuranceBracket),
    )


def load_adjustments(employee_ids: Iterable[int], tag: str) -> Dict[int, List[Adjustment]]:
    ids = list(employee_ids)
    out: Dict[int, List[Adjustment]] = defaultdict(list)
    if not ids:
        return out
    rows = (Adjustment.query
            .filter(Adjustment.employee_id.in_(ids))
            .filter(Adjustment.period == tag)
            .filter(Adjustment.status == ConfigStatus.APPROVED)
            .order_by(Adjustment.id.asc())
            .all())
    for a in rows:
        out[a.employee_id].append(a)
    return out


def employees_with_bank_account(employee_ids: Iterable[int]) -> Set[int]:
    ids = list(employee_ids)
    if not ids:
        return set()
    q = (db.session.query(EmployeeBankAccount.employee_id)
         .filter(EmployeeBankAccount.employee_id.in_(ids))
         .distinct())
    return {row[0] for row in q.all()}


def baseline_gross(run: PayRun, employee_id: int) -> Optional[Decimal]:
    """Gross from the employee's latest line in an earlier finalized run of the same company."""
    row = (db.session.query(PayRunItem.gross)
           .join(PayRun, PayRun.id == PayRunItem.pay_run_id)
           .filter(PayRunItem.employee_id == employee_id)
           .filter(PayRun.company_id == run.company_id)
           .filter(PayRun.id != run.id)
           .filter(PayRun.status.in_(BASELINE_STATUSES))
           .filter(PayRun.period_start < run.period_start)
           .order_by(PayRun.period_start.desc(), PayRun.id.desc())
           .first())
    return Decimal(str(row[0])) if row and row[0] is not None else None


def eligible_employees(run: PayRun, employee_ids: Optional[Iterable[int]] = None) -> List[Employee]:
    """Active employees of the run's company employed at some point during the period."""
    q = (Employee.query
         .filter(Employee.company_id == run.company_id)
         .filter(Employee.status == "active")
         .filter(db.or_(Employee.doj.is_(None), Employee.doj <= run.period_end))
         .filter(db.or_(Employee.dol.is_(None), Employee.dol >= run.period_start)))
    if employee_ids:
        q = q.filter(Employee.id.in_(list(employee_ids)))
    return q.order_by(Employee.id.asc()).all()


def _bracket_for(brackets: List[InsuranceBracket], base: Decimal) -> Optional[InsuranceBracket]:
    for b in brackets:
        lo = Decimal(str(b.min_salary or 0))
        hi = Decimal(str(b.max_salary)) if b.max_salary is not None else None
        if base >= lo and (hi is None or base <= hi):
            return b
    return None


def build_inputs(emp: Employee, policy: CompanyPolicy, adjustments: List[Adjustment],
                 tag: str) -> CompensationInputs:
    """Assemble calculator inputs for one employee. Raises CalculationError on missing pay grade."""
    grade = emp.pay_grade
    if grade is None or grade.status != ConfigStatus.APPROVED:
        raise CalculationError(f"No approved pay grade for employee {emp.code}")
    base = Decimal(str(grade.base_salary))

    by_type: Dict[str, List[AmountItem]] = defaultdict(list)
    for a in adjustments:
        by_type[a.type].append(AmountItem(name=a.reason or a.type.title(), amount=a.amount))

    allowances = [AmountItem(name=a.name, amount=a.amount)
                  for a in policy.allowances if a.pay_grade_id in (None, grade.id)]
    taxes = [RateRule(name=t.name, rate=t.rate, base=t.rate_base) for t in policy.taxes]

    insurances = []
    bracket = _bracket_for(policy.brackets, base)
    if bracket is not None:
        insurances.append(RateRule(name=bracket.name, rate=bracket.employee_rate,
                                   base=bracket.rate_base, employer_rate=bracket.employer_rate))

    return CompensationInputs(
        employee_id=emp.id,
        base_salary=base,
        allowances=allowances,
        bonuses=by_type["bonus"],
        benefits=by_type["benefit"],
        refunds=by_type["refund"],
        penalties=by_type["penalty"],
        taxes=taxes,
        insurances=insurances,
        meta={
            "pay_grade": grade.name,
            "period": tag,
            "insurance_bracket": bracket.name if bracket else None,
            "adjustment_ids": [a.id for a in adjustments],
        },
    )
