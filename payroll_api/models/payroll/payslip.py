from datetime import datetime
from payroll_api.extensions import db

from .enums import PaymentStatus, DeliveryStatus, enum_column_type


class Payslip(db.Model):
    """
    Snapshot of one employee's pay for a locked run. Treated as a legal
    document: amounts and breakdown are written once at generation time.
    Only payment_status and the delivery_* columns change afterwards.
    """
    __tablename__ = "payslips"

    id = db.Column(db.Integer, primary_key=True)
    pay_run_id = db.Column(db.Integer, db.ForeignKey("pay_runs.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("pay_run_items.id"), nullable=False)

    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)

    base_salary = db.Column(db.Numeric(14, 2), nullable=False)
    gross = db.Column(db.Numeric(14, 2), nullable=False)
    deductions = db.Column(db.Numeric(14, 2), nullable=False)
    net = db.Column(db.Numeric(14, 2), nullable=False)
    earnings_detail = db.Column(db.JSON, nullable=False)
    deductions_detail = db.Column(db.JSON, nullable=False)
    employee_snapshot = db.Column(db.JSON)   # name / code / email / bank at generation time

    payment_status = db.Column(enum_column_type(db, PaymentStatus, "payslip_payment_status_enum"),
                               nullable=False, default=PaymentStatus.PENDING)
    paid_at = db.Column(db.DateTime)

    delivery_status = db.Column(enum_column_type(db, DeliveryStatus, "payslip_delivery_status_enum"),
                                nullable=False, default=DeliveryStatus.PENDING)
    delivery_attempts = db.Column(db.Integer, nullable=False, default=0)
    delivery_error = db.Column(db.String(500))
    delivered_at = db.Column(db.DateTime)
    provider_message_id = db.Column(db.String(120))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    pay_run = db.relationship("PayRun", lazy="joined")
    employee = db.relationship("Employee", lazy="joined")

    __table_args__ = (
        db.UniqueConstraint("employee_id", "pay_run_id", name="uq_payslip_employee_run"),
    )
