from datetime import datetime
from payroll_api.extensions import db

class Employee(db.Model):
    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    company_id   = db.Column(db.Integer, db.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    pay_grade_id = db.Column(db.Integer, db.ForeignKey("pay_grades.id", ondelete="SET NULL"), nullable=True)

    code  = db.Column(db.String(32), nullable=False)    # unique per company
    email = db.Column(db.String(255), unique=True, nullable=False)
    first_name = db.Column(db.String(80), nullable=False)
    last_name  = db.Column(db.String(80), nullable=True)

    doj = db.Column(db.Date, nullable=True)   # date of joining
    dol = db.Column(db.Date, nullable=True)   # date of leaving (null if active)
    employment_type = db.Column(db.String(20), default="fulltime", nullable=False)
    status = db.Column(db.String(16), default="active", nullable=False)             # active/inactive

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("company_id", "code", name="uq_employee_company_code"),
        db.Index("ix_emp_company_id", "company_id"),
    )

    company   = db.relationship("Company", lazy="joined")
    pay_grade = db.relationship("PayGrade", lazy="joined")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()
