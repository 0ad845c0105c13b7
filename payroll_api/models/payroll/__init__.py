# payroll_api/models/payroll/__init__.py
# Import order matters: enums and configuration first, then runs, then payslips.
from payroll_api.extensions import db  # noqa

from .enums import (
    RunStatus, PaymentStatus, DeliveryStatus, Severity, ExceptionCode, ConfigStatus,
)
from .policy import PayGrade, Allowance, TaxRule, InsuranceBracket
from .adjustments import Adjustment
from .pay_run import PayRun, PayRunItem, PayRunException, PayRunAuditEntry
from .payslip import Payslip

__all__ = [
    "RunStatus", "PaymentStatus", "DeliveryStatus", "Severity", "ExceptionCode", "ConfigStatus",
    "PayGrade", "Allowance", "TaxRule", "InsuranceBracket",
    "Adjustment",
    "PayRun", "PayRunItem", "PayRunException", "PayRunAuditEntry",
    "Payslip",
]
