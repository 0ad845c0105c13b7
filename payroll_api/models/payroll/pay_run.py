from datetime import datetime
from payroll_api.extensions import db

from .enums import (
    RunStatus, PaymentStatus, Severity, ExceptionCode, enum_column_type,
)


class PayRun(db.Model):
    __tablename__ = "pay_runs"

    id = db.Column(db.Integer, primary_key=True)
    run_code = db.Column(db.String(40), unique=True, nullable=False)   # PR-2025-09-<n>
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    status = db.Column(enum_column_type(db, RunStatus, "payrun_status_enum"),
                       nullable=False, default=RunStatus.DRAFT)
    payment_status = db.Column(enum_column_type(db, PaymentStatus, "payrun_payment_status_enum"),
                               nullable=False, default=PaymentStatus.PENDING)
    cycle = db.Column(db.Integer, nullable=False, default=1)       # bumped on reopen after rejection
    version = db.Column(db.Integer, nullable=False, default=1)     # bumped on every transition
    retro_of_id = db.Column(db.Integer, db.ForeignKey("pay_runs.id"))

    # derived totals (recomputed from items, never edited directly)
    employee_count = db.Column(db.Integer, nullable=False, default=0)
    total_gross = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_deductions = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_net = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    exception_count = db.Column(db.Integer, nullable=False, default=0)
    calculated_at = db.Column(db.DateTime)

    # approval records
    submitted_by = db.Column(db.Integer)
    submitted_at = db.Column(db.DateTime)
    manager_approved_by = db.Column(db.Integer)
    manager_approved_at = db.Column(db.DateTime)
    finance_approved_by = db.Column(db.Integer)
    finance_approved_at = db.Column(db.DateTime)

    # freeze state
    locked_by = db.Column(db.Integer)
    locked_at = db.Column(db.DateTime)
    unlocked_by = db.Column(db.Integer)
    unlocked_at = db.Column(db.DateTime)
    unlock_reason = db.Column(db.Text)

    rejected_by = db.Column(db.Integer)
    rejected_at = db.Column(db.DateTime)
    rejection_reason = db.Column(db.Text)

    dispatch_cursor = db.Column(db.Integer)   # last payslip id handled by the dispatcher

    created_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    company = db.relationship("Company", lazy="joined")
    retro_of = db.relationship("PayRun", remote_side=[id], lazy="select")
    items = db.relationship("PayRunItem", back_populates="pay_run", lazy="select",
                            order_by="PayRunItem.id", cascade="all, delete-orphan")

    __table_args__ = (
        db.Index("ix_pay_runs_company_period", "company_id", "period_start"),
    )

    @property
    def is_locked(self) -> bool:
        return self.status == RunStatus.LOCKED


class PayRunItem(db.Model):
    """One employee's computed line within a run."""
    __tablename__ = "pay_run_items"

    id = db.Column(db.Integer, primary_key=True)
    pay_run_id = db.Column(db.Integer, db.ForeignKey("pay_runs.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)

    base_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    allowances = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    bonuses = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    benefits = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    refunds = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    gross = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    taxes = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    insurance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    penalties = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    deductions = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    net = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    employer_contributions = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    has_bank_account = db.Column(db.Boolean, nullable=False, default=False)

    breakdown = db.Column(db.JSON)   # itemized earnings / deductions
    calc_meta = db.Column(db.JSON)   # summary of inputs used (baseline, grade, period)
    remarks = db.Column(db.String(255))

    pay_run = db.relationship("PayRun", back_populates="items", lazy="joined")
    employee = db.relationship("Employee", lazy="joined")
    exceptions = db.relationship("PayRunException", back_populates="item", lazy="select",
                                 order_by="PayRunException.id", cascade="all, delete-orphan")

    __table_args__ = (
        db.UniqueConstraint("pay_run_id", "employee_id", name="uq_pay_run_item_employee"),
    )


class PayRunException(db.Model):
    __tablename__ = "pay_run_exceptions"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("pay_run_items.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    pay_run_id = db.Column(db.Integer, db.ForeignKey("pay_runs.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False)

    code = db.Column(enum_column_type(db, ExceptionCode, "payrun_exception_code_enum"), nullable=False)
    severity = db.Column(enum_column_type(db, Severity, "payrun_exception_severity_enum"), nullable=False)
    message = db.Column(db.String(255), nullable=False)

    resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_by = db.Column(db.Integer)
    resolved_at = db.Column(db.DateTime)
    resolution_note = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    item = db.relationship("PayRunItem", back_populates="exceptions")


class PayRunAuditEntry(db.Model):
    __tablename__ = "pay_run_audit"

    id = db.Column(db.Integer, primary_key=True)
    pay_run_id = db.Column(db.Integer, db.ForeignKey("pay_runs.id"), nullable=False, index=True)
    action = db.Column(db.String(40), nullable=False)
    from_status = db.Column(db.String(20))
    to_status = db.Column(db.String(20))
    actor_id = db.Column(db.Integer)
    reason = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
