from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from payroll_api.common.errors import CalculationError
from payroll_api.models.payroll.enums import ExceptionCode, Severity
from payroll_api.services.compensation import CENT, recompute_totals, to_money

SEVERITY_BY_CODE = {
    ExceptionCode.NEGATIVE_PAY: Severity.HIGH,
    ExceptionCode.MISSING_BANK: Severity.HIGH,
    ExceptionCode.SALARY_SPIKE: Severity.MEDIUM,
    ExceptionCode.CALCULATION_ERROR: Severity.MEDIUM,
}

DEFAULT_SPIKE_THRESHOLD = Decimal("0.5")


@dataclass(frozen=True)
class DetectedException:
    code: ExceptionCode
    severity: Severity
    message: str


@dataclass
class LineFacts:
    """What the detector looks at for one employee line."""
    employee_id: int
    base_salary: Any = 0
    gross: Any = 0
    deductions: Any = 0
    net: Any = 0
    earnings_detail: List[Dict[str, Any]] = field(default_factory=list)
    deductions_detail: List[Dict[str, Any]] = field(default_factory=list)
    has_bank_account: bool = False
    baseline_gross: Optional[Any] = None
    calculation_failure: Optional[str] = None


class ExceptionDetector:
    """
    Flags anomalies on a computed line. Every rule runs; all matches are kept.
    """

    def __init__(self, spike_threshold=DEFAULT_SPIKE_THRESHOLD, epsilon=CENT):
        self.spike_threshold = Decimal(str(spike_threshold))
        self.epsilon = Decimal(str(epsilon))
        self._rules: List[Callable[[LineFacts], Optional[DetectedException]]] = [
            self._negative_pay,
            self._missing_bank,
            self._salary_spike,
            self._calculation_error,
        ]

    def detect(self, facts: LineFacts) -> List[DetectedException]:
        found = []
        for rule in self._rules:
            hit = rule(facts)
            if hit is not None:
                found.append(hit)
        return found

    @staticmethod
    def _flag(code: ExceptionCode, message: str) -> DetectedException:
        return DetectedException(code=code, severity=SEVERITY_BY_CODE[code], message=message)

    # ---------- rules ----------

    def _negative_pay(self, f: LineFacts) -> Optional[DetectedException]:
        if f.calculation_failure:
            return None
        net = to_money(f.net, "net")
        if net < 0:
            return self._flag(ExceptionCode.NEGATIVE_PAY, f"Negative net pay ({net})")
        return None

    def _missing_bank(self, f: LineFacts) -> Optional[DetectedException]:
        if not f.has_bank_account:
            return self._flag(ExceptionCode.MISSING_BANK, "Missing bank account details")
        return None

    def _salary_spike(self, f: LineFacts) -> Optional[DetectedException]:
        if f.calculation_failure or f.baseline_gross is None:
            return None
        baseline = to_money(f.baseline_gross, "baseline gross")
        if baseline <= 0:
            return None
        gross = to_money(f.gross, "gross")
        change = abs(gross - baseline) / baseline
        if change > self.spike_threshold:
            pct = (change * 100).quantize(Decimal("0.1"))
            return self._flag(
                ExceptionCode.SALARY_SPIKE,
                f"Gross {gross} deviates {pct}% from previous {baseline}",
            )
        return None

    def _calculation_error(self, f: LineFacts) -> Optional[DetectedException]:
        if f.calculation_failure:
            return self._flag(ExceptionCode.CALCULATION_ERROR,
                              f"Calculation failed: {f.calculation_failure}"[:255])
        try:
            expected = recompute_totals(f.base_salary, f.earnings_detail, f.deductions_detail)
            stored = {
                "gross": to_money(f.gross, "gross"),
                "deductions": to_money(f.deductions, "deductions"),
                "net": to_money(f.net, "net"),
            }
        except CalculationError as e:
            return self._flag(ExceptionCode.CALCULATION_ERROR, e.message[:255])

        off = [k for k in ("gross", "deductions", "net") if abs(expected[k] - stored[k]) > self.epsilon]
        if off:
            parts = ", ".join(f"{k} stored {stored[k]} vs itemized {expected[k]}" for k in off)
            return self._flag(ExceptionCode.CALCULATION_ERROR, f"Totals mismatch: {parts}"[:255])
        return None
