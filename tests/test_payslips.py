from datetime import date
from decimal import Decimal

import pytest

from payroll_api.common.errors import (
    BadRequestError, DuplicatePayslipError, ExternalDeliveryFailure, ForbiddenError,
)
from payroll_api.extensions import db
from payroll_api.models.payroll import Adjustment, ConfigStatus, PayRunItem, Payslip
from payroll_api.models.payroll.enums import DeliveryStatus, ExceptionCode, PaymentStatus, RunStatus, Severity
from payroll_api.services.mailer import PayslipMailer, send_email
from payroll_api.services.pay_run_service import PayRunService
from payroll_api.services.payroll_workflow import PayrollRunWorkflow
from payroll_api.services.payslip_dispatcher import PayslipDispatcher, generate_and_distribute
from payroll_api.services.payslip_service import (
    PayslipGenerator, build_payslip_dto, mark_payslips_paid, render_payslip_html,
)

JAN = (date(2024, 1, 1), date(2024, 1, 31))


class FakeClock:
    """Monotonic clock that only moves when the dispatcher waits."""

    def __init__(self):
        self.now = 0.0
        self.waits = []

    def __call__(self):
        return self.now

    def wait(self, seconds):
        self.waits.append(seconds)
        self.now += seconds
        return False


class Outbox:
    def __init__(self, clock=None, fail_for=()):
        self.sent = []
        self.clock = clock
        self.fail_for = set(fail_for)

    def __call__(self, payslip):
        if payslip.employee_id in self.fail_for:
            raise ExternalDeliveryFailure("mailbox unavailable")
        self.sent.append((payslip.id, self.clock() if self.clock else None))
        return f"msg-{payslip.id}"


def _locked_run(world, specialist, manager):
    svc = PayRunService()
    wf = PayrollRunWorkflow()
    run = svc.create_draft(specialist, world["company"].id, *JAN)
    svc.calculate(run.id, specialist)
    wf.submit(run.id, specialist)
    for item_id in sorted({x.item_id for x in svc.exceptions(run.id)}):
        svc.resolve_exceptions(run.id, item_id, manager, "ok")
    wf.approve(run.id, manager)
    return wf.freeze(run.id, manager)


@pytest.fixture
def locked(world, specialist, manager):
    return _locked_run(world, specialist, manager)


# ---------- generation ----------

def test_generation_requires_locked_run(world, specialist):
    svc = PayRunService()
    run = svc.create_draft(specialist, world["company"].id, *JAN)
    svc.calculate(run.id, specialist)
    with pytest.raises(ForbiddenError):
        PayslipGenerator().generate_for_run(run.id)


def test_one_payslip_per_employee_and_duplicates_reported(locked):
    gen = PayslipGenerator()
    first = gen.generate_for_run(locked.id)
    assert [r.status for r in first] == ["created"] * 3

    again = gen.generate_for_run(locked.id)
    assert [r.status for r in again] == ["exists"] * 3
    assert Payslip.query.filter_by(pay_run_id=locked.id).count() == 3

    item = PayRunItem.query.filter_by(pay_run_id=locked.id).first()
    with pytest.raises(DuplicatePayslipError) as e:
        gen.generate_one(locked, item)
    assert e.value.status_code == 409


def test_payslip_snapshot_matches_line(locked):
    PayslipGenerator().generate_for_run(locked.id)
    ps = Payslip.query.filter_by(pay_run_id=locked.id).order_by(Payslip.id).first()
    assert Decimal(str(ps.gross)) == Decimal("3200.00")
    assert Decimal(str(ps.net)) == Decimal("2820.00")
    assert ps.employee_snapshot["bank_account"].startswith("******")
    assert ps.payment_status == PaymentStatus.PENDING
    assert ps.delivery_status == DeliveryStatus.PENDING

    dto = build_payslip_dto(ps)
    assert dto["totals"]["net_pay"] == Decimal("2820.00")
    assert {d["name"] for d in dto["deductions"]} == {"Income tax", "Health"}
    html = render_payslip_html(dto)
    assert "Acme Ltd" in html and "2820.00" in html


def test_inconsistent_line_fails_only_that_employee(locked, session):
    item = PayRunItem.query.filter_by(pay_run_id=locked.id).order_by(PayRunItem.id).first()
    item.net = Decimal("1.00")
    session.commit()

    results = PayslipGenerator().generate_for_run(locked.id)
    assert [r.status for r in results] == ["failed", "created", "created"]
    assert "inconsistent" in results[0].error


def test_malformed_breakdown_fails_only_that_employee(locked, session):
    item = PayRunItem.query.filter_by(pay_run_id=locked.id).order_by(PayRunItem.id).first()
    item.breakdown = ["garbage"]
    session.commit()

    results = PayslipGenerator().generate_for_run(locked.id)
    assert [r.status for r in results] == ["failed", "created", "created"]
    assert results[0].error.startswith("AttributeError")
    assert Payslip.query.filter_by(pay_run_id=locked.id).count() == 2

    # fixing the line lets a rerun fill the gap
    item = db.session.get(PayRunItem, item.id)
    item.breakdown = {"earnings": [], "deductions": []}
    session.commit()
    again = PayslipGenerator().generate_for_run(locked.id)
    assert [r.status for r in again] == ["created", "exists", "exists"]


def test_mark_paid_requires_finance_approval(locked, manager, finance):
    PayslipGenerator().generate_for_run(locked.id)
    with pytest.raises(ForbiddenError):
        mark_payslips_paid(locked.id, finance)

    wf = PayrollRunWorkflow()
    wf.unfreeze(locked.id, manager, "finance sign-off")
    wf.approve_finance(locked.id, finance)
    wf.freeze(locked.id, manager)
    assert mark_payslips_paid(locked.id, finance) == 3
    assert {p.payment_status for p in Payslip.query.filter_by(pay_run_id=locked.id)} == {PaymentStatus.PAID}


# ---------- dispatch ----------

def test_dispatch_sends_each_once_at_the_configured_pace(locked):
    PayslipGenerator().generate_for_run(locked.id)
    clock = FakeClock()
    outbox = Outbox(clock)
    summary = PayslipDispatcher(outbox, min_interval=0.6, clock=clock, wait=clock.wait).dispatch(locked.id)

    assert (summary.sent, summary.failed, summary.skipped, summary.cancelled) == (3, 0, 0, False)
    assert len(outbox.sent) == 3
    times = [t for _, t in outbox.sent]
    assert all(b - a >= 0.6 - 1e-9 for a, b in zip(times, times[1:]))
    assert clock.waits == pytest.approx([0.6, 0.6])
    # sent in id order
    assert [pid for pid, _ in outbox.sent] == sorted(pid for pid, _ in outbox.sent)


def test_failed_recipient_does_not_stop_batch(locked, world):
    PayslipGenerator().generate_for_run(locked.id)
    bad = world["employees"][1].id
    summary = PayslipDispatcher(Outbox(fail_for={bad}), min_interval=0).dispatch(locked.id)
    assert (summary.sent, summary.failed) == (2, 1)

    ps = Payslip.query.filter_by(pay_run_id=locked.id, employee_id=bad).one()
    assert ps.delivery_status == DeliveryStatus.FAILED
    assert ps.delivery_attempts == 1
    assert "mailbox unavailable" in ps.delivery_error

    # a rerun retries only the failed one
    outbox = Outbox()
    again = PayslipDispatcher(outbox, min_interval=0).dispatch(locked.id)
    assert (again.sent, again.skipped) == (1, 2)
    db.session.expire_all()
    ps = Payslip.query.filter_by(pay_run_id=locked.id, employee_id=bad).one()
    assert ps.delivery_status == DeliveryStatus.SENT
    assert ps.delivery_attempts == 2


def test_delivered_payslips_are_not_resent(locked):
    PayslipGenerator().generate_for_run(locked.id)
    PayslipDispatcher(Outbox(), min_interval=0).dispatch(locked.id)
    outbox = Outbox()
    summary = PayslipDispatcher(outbox, min_interval=0).dispatch(locked.id)
    assert outbox.sent == []
    assert (summary.queued, summary.skipped) == (0, 3)


def test_cancel_between_sends_leaves_rest_pending(locked):
    PayslipGenerator().generate_for_run(locked.id)
    outbox = Outbox()
    dispatcher = PayslipDispatcher(outbox, min_interval=0)

    def send_then_cancel(ps):
        msg = outbox(ps)
        dispatcher.cancel()
        return msg

    dispatcher.send = send_then_cancel
    summary = dispatcher.dispatch(locked.id)
    assert summary.cancelled and summary.sent == 1

    db.session.expire_all()
    pending = Payslip.query.filter_by(pay_run_id=locked.id, delivery_status=DeliveryStatus.PENDING).count()
    assert pending == 2
    assert locked.dispatch_cursor == outbox.sent[0][0]

    resumed = PayslipDispatcher(Outbox(), min_interval=0).dispatch(locked.id)
    assert (resumed.sent, resumed.skipped) == (2, 1)


def test_paid_payslips_are_not_dispatched(locked, manager, finance):
    PayslipGenerator().generate_for_run(locked.id)
    wf = PayrollRunWorkflow()
    wf.unfreeze(locked.id, manager, "finance sign-off")
    wf.approve_finance(locked.id, finance)
    wf.freeze(locked.id, manager)
    mark_payslips_paid(locked.id, finance)

    outbox = Outbox()
    summary = PayslipDispatcher(outbox, min_interval=0).dispatch(locked.id)
    assert outbox.sent == []
    assert (summary.queued, summary.sent, summary.skipped) == (0, 0, 3)


def test_cancelled_dispatcher_can_run_again(locked):
    PayslipGenerator().generate_for_run(locked.id)
    outbox = Outbox()
    dispatcher = PayslipDispatcher(outbox, min_interval=0)

    def send_then_cancel(ps):
        msg = outbox(ps)
        dispatcher.cancel()
        return msg

    dispatcher.send = send_then_cancel
    first = dispatcher.dispatch(locked.id)
    assert first.cancelled and first.sent == 1

    dispatcher.send = outbox
    second = dispatcher.dispatch(locked.id)
    assert (second.sent, second.skipped, second.cancelled) == (2, 1, False)
    assert len(outbox.sent) == 3


def test_cancel_while_waiting(locked):
    PayslipGenerator().generate_for_run(locked.id)
    clock = FakeClock()
    summary = PayslipDispatcher(Outbox(clock), min_interval=0.6, clock=clock,
                                wait=lambda s: True).dispatch(locked.id)
    assert summary.cancelled and summary.sent == 1


def test_generate_and_distribute_reports_per_employee(locked, specialist, manager):
    dispatcher = PayslipDispatcher(Outbox(), min_interval=0)
    with pytest.raises(ForbiddenError):
        generate_and_distribute(locked.id, manager, dispatcher)

    out = generate_and_distribute(locked.id, specialist, dispatcher)
    assert out["generated"] == 3
    assert out["dispatch"]["sent"] == 3
    assert {e["delivery"] for e in out["employees"]} == {"sent"}

    out = generate_and_distribute(locked.id, specialist, PayslipDispatcher(Outbox(), min_interval=0))
    assert out["existing"] == 3
    assert {e["delivery"] for e in out["employees"]} == {"skipped"}


# ---------- mailer ----------

def test_disabled_provider_raises(app):
    with pytest.raises(ExternalDeliveryFailure):
        send_email(to_address="a@example.test", subject="s", html="<p>x</p>")


def test_resend_provider_posts_to_api(app, monkeypatch):
    calls = {}

    class Resp:
        status_code = 200
        content = b'{"id": "re_123"}'
        text = '{"id": "re_123"}'

        def json(self):
            return {"id": "re_123"}

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.update(url=url, json=json, headers=headers)
        return Resp()

    monkeypatch.setattr("payroll_api.services.mailer.requests.post", fake_post)
    cfg = dict(app.config, EMAIL_PROVIDER="resend", EMAIL_API_KEY="k", EMAIL_FROM="pay@example.test")
    res = send_email(to_address="a@example.test", subject="s", html="<p>x</p>", config=cfg)
    assert res.message_id == "re_123"
    assert calls["headers"]["Authorization"] == "Bearer k"
    assert calls["json"]["to"] == ["a@example.test"]


def test_payslip_mailer_renders_email(locked):
    PayslipGenerator().generate_for_run(locked.id)
    seen = {}

    def transport(**kw):
        seen.update(kw)

        class R:
            message_id = "m-1"
        return R()

    ps = Payslip.query.filter_by(pay_run_id=locked.id).order_by(Payslip.id).first()
    assert PayslipMailer(transport)(ps) == "m-1"
    assert seen["to_address"] == ps.employee_snapshot["email"]
    assert "January 2024" in seen["subject"]
    assert "2820.00" in seen["html"]


# ---------- end to end ----------

def test_negative_pay_run_from_review_to_unfreeze(world, session, specialist, manager):
    """Two employees, one paid -500.00 after a penalty."""
    world["employees"][2].status = "inactive"
    e1 = world["employees"][0]
    session.add(Adjustment(employee_id=e1.id, period="2024-01", type="penalty",
                           amount=Decimal("3320.00"), status=ConfigStatus.APPROVED))
    session.commit()

    svc = PayRunService()
    wf = PayrollRunWorkflow()
    run = svc.create_draft(specialist, world["company"].id, *JAN)
    run = svc.calculate(run.id, specialist)
    assert run.employee_count == 2

    exc = svc.exceptions(run.id)
    assert [(x.employee_id, x.code, x.severity) for x in exc] == \
        [(e1.id, ExceptionCode.NEGATIVE_PAY, Severity.HIGH)]
    item = PayRunItem.query.filter_by(pay_run_id=run.id, employee_id=e1.id).one()
    assert Decimal(str(item.net)) == Decimal("-500.00")

    wf.submit(run.id, specialist)
    with pytest.raises(BadRequestError):
        wf.approve(run.id, manager)
    svc.resolve_exceptions(run.id, item.id, manager, "recovered over two periods")
    wf.approve(run.id, manager)

    run = wf.freeze(run.id, manager)
    assert run.status == RunStatus.LOCKED
    assert run.locked_at is not None

    results = PayslipGenerator().generate_for_run(run.id)
    assert [r.status for r in results] == ["created", "created"]
    slips = Payslip.query.filter_by(pay_run_id=run.id).all()
    assert {p.delivery_status for p in slips} == {DeliveryStatus.PENDING}

    run = wf.unfreeze(run.id, manager, "bank file correction")
    assert run.status == RunStatus.UNLOCKED
    last = PayRunService.audit_trail(run.id)[-1]
    assert (last.action, last.reason) == ("unfreeze", "bank file correction")
