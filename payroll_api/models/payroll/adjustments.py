from datetime import datetime
from payroll_api.extensions import db

from .enums import ConfigStatus, enum_column_type

ADJUSTMENT_TYPES = ("bonus", "benefit", "refund", "penalty")


class Adjustment(db.Model):
    """
    One-off per-employee amount for a pay period: signing bonus, termination
    benefit, expense refund (earnings) or penalty (deduction).
    """
    __tablename__ = "adjustments"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    period = db.Column(db.String(7), nullable=False)  # YYYY-MM (pay period tag)

    type = db.Column(db.Enum(*ADJUSTMENT_TYPES, name="adjustment_type_enum", native_enum=False), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(255))
    status = db.Column(enum_column_type(db, ConfigStatus, "config_status_enum"),
                       nullable=False, default=ConfigStatus.DRAFT)

    created_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    employee = db.relationship("Employee", lazy="joined")

    __table_args__ = (
        db.Index("ix_adjustments_employee_period", "employee_id", "period"),
    )
