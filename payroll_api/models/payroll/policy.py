from datetime import datetime, date
from payroll_api.extensions import db

from .enums import ConfigStatus, enum_column_type

# Compensation configuration. Written by the configuration service; the
# payroll core only reads rows with status == approved.


class PayGrade(db.Model):
    __tablename__ = "pay_grades"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False)
    name = db.Column(db.String(80), nullable=False)
    base_salary = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(enum_column_type(db, ConfigStatus, "config_status_enum"),
                       nullable=False, default=ConfigStatus.APPROVED)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("company_id", "name", name="uq_pay_grade_company_name"),
    )


class Allowance(db.Model):
    """Fixed monthly allowance; applies to every employee of the company, or one pay grade."""
    __tablename__ = "allowances"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    pay_grade_id = db.Column(db.Integer, db.ForeignKey("pay_grades.id"), nullable=True)
    name = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    status = db.Column(enum_column_type(db, ConfigStatus, "config_status_enum"),
                       nullable=False, default=ConfigStatus.DRAFT)

    effective_from = db.Column(db.Date, nullable=False, default=date.today)
    effective_to = db.Column(db.Date)


class TaxRule(db.Model):
    __tablename__ = "tax_rules"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    rate = db.Column(db.Numeric(6, 3), nullable=False)           # percent, e.g. 10.000
    rate_base = db.Column(db.String(16), nullable=False, default="base_salary")  # base_salary | gross
    status = db.Column(enum_column_type(db, ConfigStatus, "config_status_enum"),
                       nullable=False, default=ConfigStatus.DRAFT)

    effective_from = db.Column(db.Date, nullable=False, default=date.today)
    effective_to = db.Column(db.Date)


class InsuranceBracket(db.Model):
    """Employee/employer contribution rates for base salaries within [min_salary, max_salary]."""
    __tablename__ = "insurance_brackets"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey("companies.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    min_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    max_salary = db.Column(db.Numeric(14, 2))                     # null = open ended
    employee_rate = db.Column(db.Numeric(6, 3), nullable=False)
    employer_rate = db.Column(db.Numeric(6, 3), nullable=False, default=0)
    rate_base = db.Column(db.String(16), nullable=False, default="base_salary")
    status = db.Column(enum_column_type(db, ConfigStatus, "config_status_enum"),
                       nullable=False, default=ConfigStatus.DRAFT)

    effective_from = db.Column(db.Date, nullable=False, default=date.today)
    effective_to = db.Column(db.Date)
