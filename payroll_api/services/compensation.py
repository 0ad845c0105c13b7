"""
Compensation calculator.

Pure functions over plain dataclasses: no session, no app context. Given the
same inputs the breakdown is identical, so a draft can be recomputed any
number of times.

    gross      = base + allowances + bonuses + benefits + refunds
    taxes      = sum(rate% x rule base)          rule base: base_salary | gross
    insurance  = sum(employee_rate% x rule base)
    deductions = taxes + insurance + penalties
    net        = gross - deductions

Every item is rounded to cents (ROUND_HALF_UP) before it is summed, so the
totals are exact sums of what is printed on the payslip.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, List, Optional

from payroll_api.common.errors import CalculationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")
RATE_BASES = ("base_salary", "gross")

EARNING_KINDS = ("allowance", "bonus", "benefit", "refund")
DEDUCTION_KINDS = ("tax", "insurance", "penalty")


def to_money(value, what: str = "amount") -> Decimal:
    """Parse to Decimal cents. Floats go through str() so 0.1 stays 0.10."""
    if value is None or value == "":
        return ZERO
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise CalculationError(f"Malformed {what}: {value!r}")
    if not d.is_finite():
        raise CalculationError(f"Malformed {what}: {value!r}")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def _rate(value, what: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise CalculationError(f"Malformed rate for {what}: {value!r}")
    if not d.is_finite() or d < 0 or d > HUNDRED:
        raise CalculationError(f"Rate for {what} must be between 0 and 100, got {value!r}")
    return d


def percent_of(rate: Decimal, base: Decimal) -> Decimal:
    return (rate * base / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------- inputs ----------

@dataclass(frozen=True)
class AmountItem:
    name: str
    amount: Any


@dataclass(frozen=True)
class RateRule:
    name: str
    rate: Any                       # employee-side percent
    base: str = "base_salary"
    employer_rate: Any = 0          # insurance only; informational


@dataclass
class CompensationInputs:
    employee_id: int
    base_salary: Any
    allowances: List[AmountItem] = field(default_factory=list)
    bonuses: List[AmountItem] = field(default_factory=list)
    benefits: List[AmountItem] = field(default_factory=list)
    refunds: List[AmountItem] = field(default_factory=list)
    penalties: List[AmountItem] = field(default_factory=list)
    taxes: List[RateRule] = field(default_factory=list)
    insurances: List[RateRule] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)


# ---------- output ----------

@dataclass(frozen=True)
class BreakdownLine:
    kind: str
    name: str
    amount: Decimal
    rate: Optional[Decimal] = None
    base: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {"kind": self.kind, "name": self.name, "amount": str(self.amount)}
        if self.rate is not None:
            d["rate"] = str(self.rate)
            d["base"] = self.base
        return d


@dataclass(frozen=True)
class CompensationBreakdown:
    employee_id: int
    base_salary: Decimal
    earnings: List[BreakdownLine]
    deductions: List[BreakdownLine]
    employer_contributions: Decimal

    def _sum(self, lines, kind) -> Decimal:
        return sum((x.amount for x in lines if x.kind == kind), ZERO)

    @property
    def allowances(self) -> Decimal: return self._sum(self.earnings, "allowance")
    @property
    def bonuses(self) -> Decimal: return self._sum(self.earnings, "bonus")
    @property
    def benefits(self) -> Decimal: return self._sum(self.earnings, "benefit")
    @property
    def refunds(self) -> Decimal: return self._sum(self.earnings, "refund")
    @property
    def taxes(self) -> Decimal: return self._sum(self.deductions, "tax")
    @property
    def insurance(self) -> Decimal: return self._sum(self.deductions, "insurance")
    @property
    def penalties(self) -> Decimal: return self._sum(self.deductions, "penalty")

    @property
    def gross(self) -> Decimal:
        return self.base_salary + sum((x.amount for x in self.earnings), ZERO)

    @property
    def total_deductions(self) -> Decimal:
        return sum((x.amount for x in self.deductions), ZERO)

    @property
    def net(self) -> Decimal:
        return self.gross - self.total_deductions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "base_salary": str(self.base_salary),
            "earnings": [x.to_dict() for x in self.earnings],
            "deductions": [x.to_dict() for x in self.deductions],
            "employer_contributions": str(self.employer_contributions),
            "totals": {
                "gross": str(self.gross),
                "deductions": str(self.total_deductions),
                "net": str(self.net),
            },
        }


# ---------- calculator ----------

def _earning_lines(kind: str, items: List[AmountItem]) -> List[BreakdownLine]:
    out = []
    for it in items:
        amt = to_money(it.amount, f"{kind} '{it.name}'")
        if amt < 0:
            raise CalculationError(f"{kind} '{it.name}' cannot be negative ({amt})")
        out.append(BreakdownLine(kind=kind, name=it.name, amount=amt))
    return out


def _rate_base(rule: RateRule, base_salary: Decimal, gross: Decimal) -> Decimal:
    if rule.base not in RATE_BASES:
        raise CalculationError(f"Unknown rate base '{rule.base}' on rule '{rule.name}'")
    return gross if rule.base == "gross" else base_salary


def compute_breakdown(inputs: CompensationInputs) -> CompensationBreakdown:
    """Compute one employee's breakdown. Raises CalculationError on malformed inputs."""
    base = to_money(inputs.base_salary, "base salary")
    if base < 0:
        raise CalculationError(f"Base salary cannot be negative ({base})")

    earnings: List[BreakdownLine] = []
    earnings += _earning_lines("allowance", inputs.allowances)
    earnings += _earning_lines("bonus", inputs.bonuses)
    earnings += _earning_lines("benefit", inputs.benefits)
    earnings += _earning_lines("refund", inputs.refunds)
    gross = base + sum((x.amount for x in earnings), ZERO)

    deductions: List[BreakdownLine] = []
    for rule in inputs.taxes:
        rate = _rate(rule.rate, rule.name)
        deductions.append(BreakdownLine(
            kind="tax", name=rule.name, rate=rate, base=rule.base,
            amount=percent_of(rate, _rate_base(rule, base, gross)),
        ))

    employer = ZERO
    for rule in inputs.insurances:
        rate = _rate(rule.rate, rule.name)
        rule_base = _rate_base(rule, base, gross)
        deductions.append(BreakdownLine(
            kind="insurance", name=rule.name, rate=rate, base=rule.base,
            amount=percent_of(rate, rule_base),
        ))
        employer += percent_of(_rate(rule.employer_rate or 0, rule.name), rule_base)

    for it in inputs.penalties:
        amt = to_money(it.amount, f"penalty '{it.name}'")
        if amt < 0:
            raise CalculationError(f"penalty '{it.name}' cannot be negative ({amt})")
        deductions.append(BreakdownLine(kind="penalty", name=it.name, amount=amt))

    return CompensationBreakdown(
        employee_id=inputs.employee_id,
        base_salary=base,
        earnings=earnings,
        deductions=deductions,
        employer_contributions=employer,
    )


def recompute_totals(base_salary, earnings: List[Dict[str, Any]],
                     deductions: List[Dict[str, Any]]) -> Dict[str, Decimal]:
    """Re-add a stored itemized breakdown. Used to cross-check persisted totals."""
    base = to_money(base_salary, "base salary")
    gross = base + sum((to_money(e.get("amount")) for e in earnings or []), ZERO)
    total_ded = sum((to_money(d.get("amount")) for d in deductions or []), ZERO)
    return {"gross": gross, "deductions": total_ded, "net": gross - total_ded}
