import os
from datetime import date
from decimal import Decimal

import pytest

from payroll_api import create_app
from payroll_api.common.auth import Actor, Role
from payroll_api.extensions import db
from payroll_api.models.employee import Employee
from payroll_api.models.employee_bank import EmployeeBankAccount
from payroll_api.models.master import Company
from payroll_api.models.payroll import (
    Allowance, ConfigStatus, InsuranceBracket, PayGrade, TaxRule,
)

SINCE = date(2024, 1, 1)


@pytest.fixture(scope="function")
def app():
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    app = create_app({
        "TESTING": True,
        "EMAIL_PROVIDER": "disabled",
        "PAYSLIP_SEND_INTERVAL_SECONDS": 0,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope="function")
def session(app):
    with app.app_context():
        yield db.session


@pytest.fixture
def specialist():
    return Actor(id=101, roles=frozenset({Role.PAYROLL_SPECIALIST}))


@pytest.fixture
def manager():
    return Actor(id=202, roles=frozenset({Role.PAYROLL_MANAGER}))


@pytest.fixture
def finance():
    return Actor(id=303, roles=frozenset({Role.FINANCE_STAFF}))


def add_employee(session, company, grade, code, with_bank=True, **kw):
    emp = Employee(company_id=company.id, pay_grade_id=grade.id if grade else None, code=code,
                   email=f"{code.lower()}@example.test", first_name=code, last_name="Test",
                   doj=SINCE, status="active", **kw)
    session.add(emp)
    session.flush()
    if with_bank:
        session.add(EmployeeBankAccount(employee_id=emp.id, bank_name="Test Bank", routing_code="001",
                                        account_number=f"12345678{emp.id:02d}", is_primary=True))
    return emp


@pytest.fixture
def world(session):
    """
    One company with a 3000.00 grade, a 200.00 allowance, 10% tax on gross and
    a 2% / 4% insurance bracket. Three employees; E3 has no bank account.
    """
    c = Company(code="ACME", name="Acme Ltd", currency="USD")
    session.add(c)
    session.flush()
    grade = PayGrade(company_id=c.id, name="Standard", base_salary=Decimal("3000.00"),
                     status=ConfigStatus.APPROVED)
    session.add(grade)
    session.flush()
    session.add_all([
        Allowance(company_id=c.id, name="Transport", amount=Decimal("200.00"),
                  status=ConfigStatus.APPROVED, effective_from=SINCE),
        Allowance(company_id=c.id, name="Draft perk", amount=Decimal("999.00"),
                  status=ConfigStatus.DRAFT, effective_from=SINCE),
        TaxRule(company_id=c.id, name="Income tax", rate=Decimal("10"), rate_base="gross",
                status=ConfigStatus.APPROVED, effective_from=SINCE),
        InsuranceBracket(company_id=c.id, name="Health", min_salary=0, max_salary=None,
                         employee_rate=Decimal("2"), employer_rate=Decimal("4"), rate_base="base_salary",
                         status=ConfigStatus.APPROVED, effective_from=SINCE),
    ])
    emps = [
        add_employee(session, c, grade, "E1"),
        add_employee(session, c, grade, "E2"),
        add_employee(session, c, grade, "E3", with_bank=False),
    ]
    session.commit()
    return {"company": c, "grade": grade, "employees": emps}
