"""initial payroll schema

Revision ID: 4f1a2c9e7b10
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f1a2c9e7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _status(length=20):
    # enums are stored as plain strings (native_enum=False on the models)
    return sa.String(length=length)


def upgrade() -> None:
    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False, unique=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'pay_grades',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=80), nullable=False),
        sa.Column('base_salary', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', _status(), nullable=False),
        sa.Column('created_at', sa.DateTime()),
        sa.UniqueConstraint('company_id', 'name', name='uq_pay_grade_company_name'),
    )

    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('pay_grade_id', sa.Integer(), sa.ForeignKey('pay_grades.id', ondelete='SET NULL')),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(length=80), nullable=False),
        sa.Column('last_name', sa.String(length=80)),
        sa.Column('doj', sa.Date()),
        sa.Column('dol', sa.Date()),
        sa.Column('employment_type', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('company_id', 'code', name='uq_employee_company_code'),
    )
    op.create_index('ix_emp_company_id', 'employees', ['company_id'])

    op.create_table(
        'employee_bank_accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('bank_name', sa.String(length=80), nullable=False),
        sa.Column('routing_code', sa.String(length=20), nullable=False),
        sa.Column('account_number', sa.String(length=40), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_employee_bank_accounts_employee_id', 'employee_bank_accounts', ['employee_id'])
    op.create_index('ix_empbank_primary', 'employee_bank_accounts', ['employee_id', 'is_primary'])

    op.create_table(
        'allowances',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('pay_grade_id', sa.Integer(), sa.ForeignKey('pay_grades.id')),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', _status(), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date()),
    )
    op.create_index('ix_allowances_company_id', 'allowances', ['company_id'])

    op.create_table(
        'tax_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('rate', sa.Numeric(6, 3), nullable=False),
        sa.Column('rate_base', sa.String(length=16), nullable=False),
        sa.Column('status', _status(), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date()),
    )
    op.create_index('ix_tax_rules_company_id', 'tax_rules', ['company_id'])

    op.create_table(
        'insurance_brackets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('min_salary', sa.Numeric(14, 2), nullable=False),
        sa.Column('max_salary', sa.Numeric(14, 2)),
        sa.Column('employee_rate', sa.Numeric(6, 3), nullable=False),
        sa.Column('employer_rate', sa.Numeric(6, 3), nullable=False),
        sa.Column('rate_base', sa.String(length=16), nullable=False),
        sa.Column('status', _status(), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date()),
    )
    op.create_index('ix_insurance_brackets_company_id', 'insurance_brackets', ['company_id'])

    op.create_table(
        'adjustments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id'), nullable=False),
        sa.Column('period', sa.String(length=7), nullable=False),
        sa.Column('type', _status(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('reason', sa.String(length=255)),
        sa.Column('status', _status(), nullable=False),
        sa.Column('created_by', sa.Integer()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_adjustments_employee_id', 'adjustments', ['employee_id'])
    op.create_index('ix_adjustments_employee_period', 'adjustments', ['employee_id', 'period'])

    op.create_table(
        'pay_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('run_code', sa.String(length=40), nullable=False, unique=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('status', _status(), nullable=False),
        sa.Column('payment_status', _status(), nullable=False),
        sa.Column('cycle', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('retro_of_id', sa.Integer(), sa.ForeignKey('pay_runs.id')),
        sa.Column('employee_count', sa.Integer(), nullable=False),
        sa.Column('total_gross', sa.Numeric(14, 2), nullable=False),
        sa.Column('total_deductions', sa.Numeric(14, 2), nullable=False),
        sa.Column('total_net', sa.Numeric(14, 2), nullable=False),
        sa.Column('exception_count', sa.Integer(), nullable=False),
        sa.Column('calculated_at', sa.DateTime()),
        sa.Column('submitted_by', sa.Integer()),
        sa.Column('submitted_at', sa.DateTime()),
        sa.Column('manager_approved_by', sa.Integer()),
        sa.Column('manager_approved_at', sa.DateTime()),
        sa.Column('finance_approved_by', sa.Integer()),
        sa.Column('finance_approved_at', sa.DateTime()),
        sa.Column('locked_by', sa.Integer()),
        sa.Column('locked_at', sa.DateTime()),
        sa.Column('unlocked_by', sa.Integer()),
        sa.Column('unlocked_at', sa.DateTime()),
        sa.Column('unlock_reason', sa.Text()),
        sa.Column('rejected_by', sa.Integer()),
        sa.Column('rejected_at', sa.DateTime()),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('dispatch_cursor', sa.Integer()),
        sa.Column('created_by', sa.Integer()),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_pay_runs_company_id', 'pay_runs', ['company_id'])
    op.create_index('ix_pay_runs_company_period', 'pay_runs', ['company_id', 'period_start'])

    money = ('base_salary', 'allowances', 'bonuses', 'benefits', 'refunds', 'gross',
             'taxes', 'insurance', 'penalties', 'deductions', 'net', 'employer_contributions')
    op.create_table(
        'pay_run_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pay_run_id', sa.Integer(), sa.ForeignKey('pay_runs.id'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id'), nullable=False),
        *[sa.Column(name, sa.Numeric(14, 2), nullable=False) for name in money],
        sa.Column('has_bank_account', sa.Boolean(), nullable=False),
        sa.Column('breakdown', sa.JSON()),
        sa.Column('calc_meta', sa.JSON()),
        sa.Column('remarks', sa.String(length=255)),
        sa.UniqueConstraint('pay_run_id', 'employee_id', name='uq_pay_run_item_employee'),
    )
    op.create_index('ix_pay_run_items_pay_run_id', 'pay_run_items', ['pay_run_id'])
    op.create_index('ix_pay_run_items_employee_id', 'pay_run_items', ['employee_id'])

    op.create_table(
        'pay_run_exceptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('pay_run_items.id', ondelete='CASCADE'), nullable=False),
        sa.Column('pay_run_id', sa.Integer(), sa.ForeignKey('pay_runs.id'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id'), nullable=False),
        sa.Column('code', _status(), nullable=False),
        sa.Column('severity', _status(length=10), nullable=False),
        sa.Column('message', sa.String(length=255), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False),
        sa.Column('resolved_by', sa.Integer()),
        sa.Column('resolved_at', sa.DateTime()),
        sa.Column('resolution_note', sa.Text()),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_pay_run_exceptions_item_id', 'pay_run_exceptions', ['item_id'])
    op.create_index('ix_pay_run_exceptions_pay_run_id', 'pay_run_exceptions', ['pay_run_id'])

    op.create_table(
        'pay_run_audit',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pay_run_id', sa.Integer(), sa.ForeignKey('pay_runs.id'), nullable=False),
        sa.Column('action', sa.String(length=40), nullable=False),
        sa.Column('from_status', sa.String(length=20)),
        sa.Column('to_status', sa.String(length=20)),
        sa.Column('actor_id', sa.Integer()),
        sa.Column('reason', sa.Text()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_pay_run_audit_pay_run_id', 'pay_run_audit', ['pay_run_id'])

    op.create_table(
        'payslips',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('pay_run_id', sa.Integer(), sa.ForeignKey('pay_runs.id'), nullable=False),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id'), nullable=False),
        sa.Column('item_id', sa.Integer(), sa.ForeignKey('pay_run_items.id'), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('base_salary', sa.Numeric(14, 2), nullable=False),
        sa.Column('gross', sa.Numeric(14, 2), nullable=False),
        sa.Column('deductions', sa.Numeric(14, 2), nullable=False),
        sa.Column('net', sa.Numeric(14, 2), nullable=False),
        sa.Column('earnings_detail', sa.JSON(), nullable=False),
        sa.Column('deductions_detail', sa.JSON(), nullable=False),
        sa.Column('employee_snapshot', sa.JSON()),
        sa.Column('payment_status', _status(), nullable=False),
        sa.Column('paid_at', sa.DateTime()),
        sa.Column('delivery_status', _status(), nullable=False),
        sa.Column('delivery_attempts', sa.Integer(), nullable=False),
        sa.Column('delivery_error', sa.String(length=500)),
        sa.Column('delivered_at', sa.DateTime()),
        sa.Column('provider_message_id', sa.String(length=120)),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('employee_id', 'pay_run_id', name='uq_payslip_employee_run'),
    )
    op.create_index('ix_payslips_pay_run_id', 'payslips', ['pay_run_id'])
    op.create_index('ix_payslips_employee_id', 'payslips', ['employee_id'])


def downgrade() -> None:
    for table in ('payslips', 'pay_run_audit', 'pay_run_exceptions', 'pay_run_items', 'pay_runs',
                  'adjustments', 'insurance_brackets', 'tax_rules', 'allowances',
                  'employee_bank_accounts', 'employees', 'pay_grades', 'companies'):
        op.drop_table(table)
