from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import notification
from portal import config, crud, reconcile
from portal.errors import GatewayError, NotFoundError
from portal.utils import as_utc, utcnow


def pending_order(db_session, gateway, user, plan="annual", amount="99"):
    artifact = reconcile.create_order(db_session, gateway, user.id, Decimal(amount), plan, "Membership")
    return artifact.order_id


def test_create_order_persists_pending_then_requests_qr(db_session, gateway, member):
    artifact = reconcile.create_order(db_session, gateway, member.id, Decimal("99"), "annual", "Annual plan")
    assert artifact.qr_code_url == f"https://qr.alipay.com/{artifact.order_id}"
    assert artifact.form is None
    order = crud.get_order(db_session, artifact.order_id)
    assert order.status == "pending"
    assert order.amount == Decimal("99.00")
    assert order.plan == "annual"
    assert gateway.precreate_calls == [(artifact.order_id, Decimal("99.00"), "Annual plan", None)]


def test_create_order_uses_redirect_form_with_return_url(db_session, gateway, member):
    artifact = reconcile.create_order(
        db_session, gateway, member.id, "399", "lifetime", "Lifetime",
        return_url="https://portal.example.com/payment", notify_url="https://portal.example.com/api/alipay/notify",
    )
    assert artifact.qr_code_url is None
    assert artifact.order_id in artifact.form
    assert gateway.redirect_calls[0][3] == "https://portal.example.com/payment"


def test_configured_return_url_selects_redirect_form(db_session, gateway, member):
    gateway.return_url = "https://portal.example.com/paid"
    artifact = reconcile.create_order(db_session, gateway, member.id, "99", "annual", "Annual")
    assert artifact.form is not None
    assert gateway.precreate_calls == []
    assert gateway.redirect_calls[0][3] == "https://portal.example.com/paid"


def test_order_ids_are_unique(db_session, gateway, member):
    ids = {pending_order(db_session, gateway, member) for _ in range(5)}
    assert len(ids) == 5


@pytest.mark.parametrize(
    "amount, plan",
    [("0", "annual"), ("-99", "annual"), ("98.99", "annual"), ("99", "lifetime"), ("99", "monthly"), ("abc", "annual"), ("1e30", "annual")],
)
def test_create_order_validation(db_session, gateway, member, amount, plan):
    with pytest.raises(ValueError):
        reconcile.create_order(db_session, gateway, member.id, amount, plan, "x")
    assert crud.list_orders(db_session) == []


def test_create_order_for_unknown_user(db_session, gateway):
    with pytest.raises(NotFoundError):
        reconcile.create_order(db_session, gateway, "no-such-user", "99", "annual", "x")


def test_gateway_failure_leaves_order_pending(db_session, gateway, member):
    gateway.fail_requests = True
    with pytest.raises(GatewayError) as excinfo:
        reconcile.create_order(db_session, gateway, member.id, "99", "annual", "x")
    order = crud.get_order(db_session, excinfo.value.order_id)
    assert order.status == "pending"

    gateway.fail_requests = False
    artifact = reconcile.request_payment_artifact(db_session, gateway, order.order_id)
    assert artifact.order_id == order.order_id
    assert artifact.qr_code_url


def test_subject_is_sanitized(db_session, gateway, member):
    artifact = reconcile.create_order(db_session, gateway, member.id, "99", "annual", "<b>VIP</b>; --")
    assert crud.get_order(db_session, artifact.order_id).subject == "VIP"


def test_blank_subject_falls_back_to_plan_description(db_session, gateway, member):
    artifact = reconcile.create_order(db_session, gateway, member.id, "1999", "agent", "")
    assert crud.get_order(db_session, artifact.order_id).subject == "Agent partnership"


def test_success_callback_completes_order_and_grants_annual(db_session, gateway, member):
    order_id = pending_order(db_session, gateway, member)
    result = reconcile.handle_gateway_callback(db_session, gateway, notification(order_id, trade_no="T-100"))
    assert result == "success"

    order = crud.get_order(db_session, order_id)
    assert order.status == "completed"
    assert order.gateway_trade_id == "T-100"
    assert order.entitlement_applied_at is not None
    profile = crud.get_profile(db_session, member.id)
    assert profile.membership_type == "annual"
    assert abs(as_utc(profile.membership_expires_at) - (utcnow() + timedelta(days=365))) < timedelta(seconds=10)


@pytest.mark.parametrize("plan, amount", [("lifetime", "399"), ("agent", "1999")])
def test_lifetime_class_plans(db_session, gateway, member, plan, amount):
    order_id = pending_order(db_session, gateway, member, plan=plan, amount=amount)
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id, "TRADE_FINISHED")) == "success"
    profile = crud.get_profile(db_session, member.id)
    assert profile.membership_type == "lifetime"
    assert profile.membership_expires_at is None


def test_duplicate_success_is_idempotent(db_session, gateway, member, writes):
    order_id = pending_order(db_session, gateway, member)
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id)) == "success"
    expires = crud.get_profile(db_session, member.id).membership_expires_at
    writes.clear()

    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id)) == "success"
    assert writes == []
    assert crud.get_profile(db_session, member.id).membership_expires_at == expires


def test_bad_signature_is_rejected_without_writes(db_session, gateway, member, writes):
    order_id = pending_order(db_session, gateway, member)
    writes.clear()
    for status in ("TRADE_SUCCESS", "TRADE_CLOSED", "WAIT_BUYER_PAY"):
        assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id, status, sign="forged")) == "fail"
    assert writes == []
    assert crud.get_order(db_session, order_id).status == "pending"


def test_missing_signature_is_rejected(db_session, gateway, member):
    order_id = pending_order(db_session, gateway, member)
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id, sign=None)) == "fail"


def test_unknown_order_is_rejected_without_writes(db_session, gateway, writes):
    assert reconcile.handle_gateway_callback(db_session, gateway, notification("does-not-exist")) == "fail"
    assert writes == []


def test_missing_out_trade_no(db_session, gateway):
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(None)) == "fail"


def test_closed_callback_fails_order_without_profile_change(db_session, gateway, member):
    order_id = pending_order(db_session, gateway, member)
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id, "TRADE_CLOSED", trade_no="T-9")) == "success"
    order = crud.get_order(db_session, order_id)
    assert order.status == "failed"
    assert order.gateway_trade_id == "T-9"
    profile = crud.get_profile(db_session, member.id)
    assert profile.membership_type == "free"


def test_canceled_without_trade_no(db_session, gateway, member):
    order_id = pending_order(db_session, gateway, member)
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id, "TRADE_CANCELED", trade_no=None)) == "success"
    order = crud.get_order(db_session, order_id)
    assert order.status == "failed"
    assert order.gateway_trade_id is None


def test_unknown_status_is_not_guessed(db_session, gateway, member, writes):
    order_id = pending_order(db_session, gateway, member)
    writes.clear()
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id, "WAIT_BUYER_PAY")) == "fail"
    assert writes == []
    assert crud.get_order(db_session, order_id).status == "pending"


def test_terminal_states_do_not_flip(db_session, gateway, member):
    closed = pending_order(db_session, gateway, member)
    reconcile.handle_gateway_callback(db_session, gateway, notification(closed, "TRADE_CLOSED"))
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(closed, "TRADE_SUCCESS")) == "success"
    assert crud.get_order(db_session, closed).status == "failed"
    assert crud.get_profile(db_session, member.id).membership_type == "free"

    paid = pending_order(db_session, gateway, member)
    reconcile.handle_gateway_callback(db_session, gateway, notification(paid, "TRADE_SUCCESS"))
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(paid, "TRADE_CLOSED")) == "success"
    assert crud.get_order(db_session, paid).status == "completed"
    assert crud.get_profile(db_session, member.id).membership_type == "annual"


def test_profile_write_failure_returns_fail_and_retry_completes(db_session, gateway, member, monkeypatch):
    order_id = pending_order(db_session, gateway, member)
    real_rule = crud.membership_for_plan
    calls = {"n": 0}

    def flaky_rule(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("profiles table unavailable")
        return real_rule(*args, **kwargs)

    monkeypatch.setattr(crud, "membership_for_plan", flaky_rule)

    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id)) == "fail"
    order = crud.get_order(db_session, order_id)
    assert order.status == "completed"
    assert order.entitlement_applied_at is None
    assert crud.get_profile(db_session, member.id).membership_type == "free"

    # gateway redelivers
    assert reconcile.handle_gateway_callback(db_session, gateway, notification(order_id)) == "success"
    assert crud.get_order(db_session, order_id).entitlement_applied_at is not None
    assert crud.get_profile(db_session, member.id).membership_type == "annual"


def test_extend_mode_renewal(db_session, gateway, member):
    settings = config.get_settings()._replace(renewal_mode="extend")
    first = pending_order(db_session, gateway, member)
    reconcile.handle_gateway_callback(db_session, gateway, notification(first), settings=settings)
    first_expiry = as_utc(crud.get_profile(db_session, member.id).membership_expires_at)

    second = pending_order(db_session, gateway, member)
    reconcile.handle_gateway_callback(db_session, gateway, notification(second), settings=settings)
    assert as_utc(crud.get_profile(db_session, member.id).membership_expires_at) == first_expiry + timedelta(days=365)


def test_reset_mode_renewal(db_session, gateway, member):
    settings = config.get_settings()._replace(renewal_mode="reset")
    for _ in range(2):
        order_id = pending_order(db_session, gateway, member)
        reconcile.handle_gateway_callback(db_session, gateway, notification(order_id), settings=settings)
    expires = as_utc(crud.get_profile(db_session, member.id).membership_expires_at)
    assert abs(expires - (utcnow() + timedelta(days=365))) < timedelta(seconds=10)


def test_parse_callback_payload_drops_file_parts():
    class Upload:
        filename = "x.bin"

    items = [("out_trade_no", "abc"), ("trade_status", "TRADE_SUCCESS"), ("attachment", Upload())]
    assert reconcile.parse_callback_payload(items) == {"out_trade_no": "abc", "trade_status": "TRADE_SUCCESS"}
