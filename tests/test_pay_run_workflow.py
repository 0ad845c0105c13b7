from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import update

from payroll_api.common.auth import Actor, Role
from payroll_api.common.errors import BadRequestError, ConflictError, ForbiddenError
from payroll_api.extensions import db
from payroll_api.models.payroll import PayRun, PayRunAuditEntry, PayRunException
from payroll_api.models.payroll.enums import ExceptionCode, PaymentStatus, RunStatus, Severity
from payroll_api.services.pay_run_service import PayRunService
from payroll_api.services.payroll_workflow import PayrollRunWorkflow, claim_run, get_run

JAN = (date(2024, 1, 1), date(2024, 1, 31))
FEB = (date(2024, 2, 1), date(2024, 2, 29))


def _draft(world, specialist, period=JAN):
    svc = PayRunService()
    run = svc.create_draft(specialist, world["company"].id, *period)
    return svc.calculate(run.id, specialist)


def _resolve_all(run_id, manager):
    svc = PayRunService()
    item_ids = sorted({x.item_id for x in svc.exceptions(run_id, unresolved_only=True)})
    for item_id in item_ids:
        svc.resolve_exceptions(run_id, item_id, manager, "verified with HR")


def _to_locked(world, specialist, manager, period=JAN):
    wf = PayrollRunWorkflow()
    run = _draft(world, specialist, period)
    wf.submit(run.id, specialist)
    _resolve_all(run.id, manager)
    wf.approve(run.id, manager)
    return wf.freeze(run.id, manager)


def test_calculate_builds_lines_and_totals(world, specialist):
    run = _draft(world, specialist)
    assert run.status == RunStatus.DRAFT
    assert run.employee_count == 3
    # 3200 gross, 320 tax, 60 insurance per employee
    assert Decimal(str(run.total_gross)) == Decimal("9600.00")
    assert Decimal(str(run.total_net)) == Decimal("8460.00")
    assert len(run.items) == 3


def test_missing_bank_detected_on_calculate(world, specialist):
    run = _draft(world, specialist)
    exc = PayRunService.exceptions(run.id)
    assert [(x.code, x.severity) for x in exc] == [(ExceptionCode.MISSING_BANK, Severity.HIGH)]
    assert exc[0].employee_id == world["employees"][2].id


def test_employee_without_pay_grade_gets_calculation_error(world, specialist, session):
    world["employees"][0].pay_grade_id = None
    session.commit()
    run = _draft(world, specialist)
    codes = {(x.employee_id, x.code) for x in PayRunService.exceptions(run.id)}
    assert (world["employees"][0].id, ExceptionCode.CALCULATION_ERROR) in codes
    assert run.employee_count == 3


def test_submit_requires_specialist_and_lines(world, specialist, manager):
    wf = PayrollRunWorkflow()
    run = PayRunService().create_draft(specialist, world["company"].id, *JAN)
    with pytest.raises(ForbiddenError):
        wf.submit(run.id, manager)
    with pytest.raises(BadRequestError) as e:
        wf.submit(run.id, specialist)
    assert e.value.code == "NO_LINES"


def test_approve_blocked_by_unresolved_high_exception(world, specialist, manager):
    wf = PayrollRunWorkflow()
    run = _draft(world, specialist)
    wf.submit(run.id, specialist)
    with pytest.raises(BadRequestError) as e:
        wf.approve(run.id, manager)
    assert e.value.code == "UNRESOLVED_EXCEPTIONS"
    assert get_run(run.id).status == RunStatus.UNDER_REVIEW

    _resolve_all(run.id, manager)
    assert wf.approve(run.id, manager).status == RunStatus.APPROVED


def test_submitter_cannot_approve_own_run(world, specialist):
    both = Actor(id=specialist.id, roles=frozenset({Role.PAYROLL_SPECIALIST, Role.PAYROLL_MANAGER}))
    wf = PayrollRunWorkflow()
    run = _draft(world, specialist)
    wf.submit(run.id, both)
    _resolve_all(run.id, both)
    with pytest.raises(ForbiddenError) as e:
        wf.approve(run.id, both)
    assert e.value.code == "SELF_APPROVAL"


def test_wrong_status_is_forbidden(world, specialist, manager):
    wf = PayrollRunWorkflow()
    run = _draft(world, specialist)
    with pytest.raises(ForbiddenError) as e:
        wf.approve(run.id, manager)
    assert e.value.code == "INVALID_STATUS"
    with pytest.raises(ForbiddenError):
        wf.freeze(run.id, manager)


def test_reject_needs_reason_and_reopen_starts_new_cycle(world, specialist, manager):
    wf = PayrollRunWorkflow()
    run = _draft(world, specialist)
    wf.submit(run.id, specialist)
    with pytest.raises(BadRequestError) as e:
        wf.reject(run.id, manager, "   ")
    assert e.value.code == "REASON_REQUIRED"

    run = wf.reject(run.id, manager, "wrong allowance")
    assert run.status == RunStatus.REJECTED
    assert run.rejection_reason == "wrong allowance"

    run = wf.reopen(run.id, specialist)
    assert run.status == RunStatus.DRAFT
    assert run.cycle == 2
    assert run.submitted_by is None and run.rejection_reason is None


def test_finance_approval_marks_paid_once(world, specialist, manager, finance):
    wf = PayrollRunWorkflow()
    run = _draft(world, specialist)
    wf.submit(run.id, specialist)
    _resolve_all(run.id, manager)
    wf.approve(run.id, manager)

    run = wf.approve_finance(run.id, finance)
    assert run.status == RunStatus.APPROVED
    assert run.payment_status == PaymentStatus.PAID
    with pytest.raises(ForbiddenError) as e:
        wf.approve_finance(run.id, finance)
    assert e.value.code == "ALREADY_APPROVED"


def test_freeze_can_require_finance_approval(world, specialist, manager, finance):
    wf = PayrollRunWorkflow(require_finance_approval=True)
    run = _draft(world, specialist)
    wf.submit(run.id, specialist)
    _resolve_all(run.id, manager)
    wf.approve(run.id, manager)
    with pytest.raises(BadRequestError) as e:
        wf.freeze(run.id, manager)
    assert e.value.code == "FINANCE_APPROVAL_REQUIRED"

    wf.approve_finance(run.id, finance)
    assert wf.freeze(run.id, manager).status == RunStatus.LOCKED


def test_locked_run_rejects_mutations(world, specialist, manager):
    run = _to_locked(world, specialist, manager)
    svc = PayRunService()
    item = run.items[0]
    for call in (
        lambda: svc.calculate(run.id, specialist),
        lambda: svc.edit_period(run.id, specialist, *FEB),
        lambda: svc.resolve_exceptions(run.id, item.id, manager, "x"),
        lambda: PayrollRunWorkflow().reject(run.id, manager, "late change"),
    ):
        with pytest.raises(ForbiddenError) as e:
            call()
        assert e.value.code == "RUN_LOCKED"


def test_unfreeze_requires_reason_and_allows_refreeze(world, specialist, manager):
    wf = PayrollRunWorkflow()
    run = _to_locked(world, specialist, manager)
    with pytest.raises(BadRequestError):
        wf.unfreeze(run.id, manager, "")
    run = wf.unfreeze(run.id, manager, "bank file correction")
    assert run.status == RunStatus.UNLOCKED
    assert run.unlock_reason == "bank file correction"
    assert wf.freeze(run.id, manager).status == RunStatus.LOCKED


def test_edit_period_only_when_rejected(world, specialist, manager):
    wf = PayrollRunWorkflow()
    svc = PayRunService()
    run = _draft(world, specialist)
    with pytest.raises(ForbiddenError):
        svc.edit_period(run.id, specialist, *FEB)
    wf.submit(run.id, specialist)
    wf.reject(run.id, manager, "wrong month")
    run = svc.edit_period(run.id, specialist, *FEB)
    assert run.period_start == FEB[0]
    assert run.status == RunStatus.REJECTED


def test_stale_write_loses_compare_and_swap(world, specialist):
    run = _draft(world, specialist)
    run = get_run(run.id)
    # a concurrent writer bumps the version behind this session's back
    db.session.execute(update(PayRun).where(PayRun.id == run.id)
                       .values(version=PayRun.version + 1)
                       .execution_options(synchronize_session=False))
    with pytest.raises(ConflictError):
        claim_run(run, {"status": RunStatus.UNDER_REVIEW})
    assert get_run(run.id).status == RunStatus.DRAFT


def test_every_transition_is_audited(world, specialist, manager):
    run = _to_locked(world, specialist, manager)
    actions = [a.action for a in PayRunService.audit_trail(run.id)]
    assert actions[:3] == ["create", "calculate", "submit"]
    assert actions[-2:] == ["approve", "freeze"]
    last = PayRunAuditEntry.query.filter_by(pay_run_id=run.id).order_by(PayRunAuditEntry.id.desc()).first()
    assert (last.from_status, last.to_status, last.actor_id) == ("approved", "locked", manager.id)


def test_salary_spike_against_previous_locked_run(world, specialist, manager, session):
    _to_locked(world, specialist, manager, JAN)
    world["grade"].base_salary = Decimal("6000.00")
    session.commit()

    feb = _draft(world, specialist, FEB)
    spikes = [x for x in PayRunService.exceptions(feb.id) if x.code == ExceptionCode.SALARY_SPIKE]
    assert len(spikes) == 3
    assert all(x.severity == Severity.MEDIUM for x in spikes)


def test_retro_run_amends_a_locked_run(world, specialist, manager):
    locked = _to_locked(world, specialist, manager)
    retro = PayRunService().create_draft(specialist, world["company"].id, *JAN, retro_of_id=locked.id)
    assert retro.retro_of_id == locked.id
    assert retro.status == RunStatus.DRAFT

    other = _draft(world, specialist, FEB)
    with pytest.raises(BadRequestError):
        PayRunService().create_draft(specialist, world["company"].id, *FEB, retro_of_id=other.id)


def test_resolution_is_recorded(world, specialist, manager):
    run = _draft(world, specialist)
    x = PayRunService.exceptions(run.id)[0]
    with pytest.raises(BadRequestError):
        PayRunService().resolve_exceptions(run.id, x.item_id, manager, "")
    with pytest.raises(ForbiddenError):
        PayRunService().resolve_exceptions(run.id, x.item_id, specialist, "ok")
    PayRunService().resolve_exceptions(run.id, x.item_id, manager, "employee paid by cheque")
    x = db.session.get(PayRunException, x.id)
    assert x.resolved and x.resolved_by == manager.id
    assert x.resolution_note == "employee paid by cheque"


def test_reject_after_finance_approval_clears_payment(world, specialist, manager, finance):
    wf = PayrollRunWorkflow()
    run = _draft(world, specialist)
    wf.submit(run.id, specialist)
    _resolve_all(run.id, manager)
    wf.approve(run.id, manager)
    assert wf.approve_finance(run.id, finance).payment_status == PaymentStatus.PAID

    run = wf.reject(run.id, finance, "bank rejected the batch")
    assert run.status == RunStatus.REJECTED
    assert run.payment_status == PaymentStatus.PENDING
    assert run.finance_approved_at is None


def test_freeze_twice_is_rejected(world, specialist, manager):
    run = _to_locked(world, specialist, manager)
    with pytest.raises(ForbiddenError) as e:
        PayrollRunWorkflow().freeze(run.id, manager)
    assert e.value.code == "RUN_LOCKED"


def test_unfreeze_requires_locked_run(world, specialist, manager):
    wf = PayrollRunWorkflow()
    run = _draft(world, specialist)
    wf.submit(run.id, specialist)
    _resolve_all(run.id, manager)
    wf.approve(run.id, manager)
    with pytest.raises(ForbiddenError) as e:
        wf.unfreeze(run.id, manager, "nothing to unfreeze")
    assert e.value.code == "INVALID_STATUS"

    wf.freeze(run.id, manager)
    wf.unfreeze(run.id, manager, "bank file correction")
    with pytest.raises(ForbiddenError) as e:
        wf.unfreeze(run.id, manager, "again")
    assert e.value.code == "INVALID_STATUS"
    assert get_run(run.id).status == RunStatus.UNLOCKED
