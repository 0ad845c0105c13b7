from enum import Enum


class RunStatus(str, Enum):
    DRAFT = "draft"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ExceptionCode(str, Enum):
    NEGATIVE_PAY = "negative-pay"
    MISSING_BANK = "missing-bank"
    SALARY_SPIKE = "salary-spike"
    CALCULATION_ERROR = "calculation-error"


class ConfigStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    REJECTED = "rejected"


def enum_column_type(db, enum_cls, name):
    """String-backed Enum column storing member values (portable across sqlite/postgres)."""
    return db.Enum(
        enum_cls,
        name=name,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda e: [m.value for m in e],
    )
