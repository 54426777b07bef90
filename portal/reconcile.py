"""Order reconciliation: order creation, gateway notifications, manual paths.

An order moves ``pending -> completed | failed`` exactly once. The move is a
conditional update on the order row, committed before the membership it pays
for is granted. The grant itself is claimed through
``entitlement_applied_at`` so a redelivered notification can finish a grant
that failed half way but can never apply it twice.
"""
import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Iterable, Mapping, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session

from . import crud, identity, models
from .config import Settings, get_settings
from .entitlements import membership_active
from .errors import GatewayError, MembershipConflict, NotFoundError
from .plans import CATALOG, Plan, is_downgrade, membership_for_plan, price_for
from .utils import sanitize_input, utcnow

logger = logging.getLogger("portal.payments")

SUCCESS = "success"
FAIL = "fail"

SUCCESS_STATUSES = frozenset({"TRADE_SUCCESS", "TRADE_FINISHED"})
CLOSED_STATUSES = frozenset({"TRADE_CLOSED", "TRADE_CANCELED"})


class PaymentArtifact(NamedTuple):
    order_id: str
    qr_code_url: Optional[str] = None
    form: Optional[str] = None


def _parse_plan(plan) -> Plan:
    try:
        return Plan(plan)
    except ValueError:
        raise ValueError(f"unknown plan: {plan}") from None


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError("amount must be a decimal number") from None
    if not value.is_finite() or value <= 0:
        raise ValueError("amount must be positive")
    try:
        return crud.round_amount(value)
    except InvalidOperation:
        raise ValueError("amount is out of range") from None


def _request_artifact(
    gateway, order: models.PaymentOrder, return_url: Optional[str], notify_url: Optional[str]
) -> PaymentArtifact:
    return_url = return_url or gateway.return_url
    if return_url:
        form = gateway.request_redirect_form(
            order.order_id, order.amount, order.subject, return_url=return_url, notify_url=notify_url
        )
        return PaymentArtifact(order.order_id, form=form)
    qr_code_url = gateway.request_precreate_artifact(
        order.order_id, order.amount, order.subject, notify_url=notify_url
    )
    return PaymentArtifact(order.order_id, qr_code_url=qr_code_url)


def create_order(
    db: Session,
    gateway,
    user_id: str,
    amount,
    plan,
    subject: Optional[str] = None,
    return_url: Optional[str] = None,
    notify_url: Optional[str] = None,
) -> PaymentArtifact:
    """Persist a pending order, then ask the gateway for a way to pay it.

    A ``GatewayError`` leaves the committed order ``pending``; the caller can
    ask for a fresh artifact with :func:`request_payment_artifact`.
    """
    plan = _parse_plan(plan)
    amount = _parse_amount(amount)
    if amount != price_for(plan):
        raise ValueError(f"amount does not match the {plan.value} plan price")
    if crud.get_profile(db, user_id) is None:
        raise NotFoundError("profile not found")
    subject = sanitize_input(subject)[:256] or CATALOG[plan].description

    order = crud.insert_order(db, uuid.uuid4().hex, user_id, amount, plan, subject)
    logger.info("order %s created for user %s (%s, %s)", order.order_id, user_id, plan.value, amount)
    try:
        return _request_artifact(gateway, order, return_url, notify_url)
    except GatewayError as e:
        e.order_id = order.order_id
        logger.warning("order %s left pending: %s", order.order_id, e)
        raise


def request_payment_artifact(
    db: Session,
    gateway,
    order_id: str,
    return_url: Optional[str] = None,
    notify_url: Optional[str] = None,
) -> PaymentArtifact:
    order = crud.get_order(db, order_id)
    if order is None:
        raise NotFoundError("order not found")
    if order.status != "pending":
        raise ValueError(f"order is {order.status}")
    return _request_artifact(gateway, order, return_url, notify_url)


def parse_callback_payload(items: Iterable[Tuple[str, object]]) -> dict:
    """Flatten form fields (urlencoded or multipart) into a str -> str map."""
    payload = {}
    for key, value in items:
        # file parts carry nothing the gateway signs
        if isinstance(value, str):
            payload[key] = value
    return payload


def _fulfil(db: Session, order_id: str, settings: Settings) -> str:
    if crud.apply_entitlement(db, order_id, mode=settings.renewal_mode, annual_days=settings.annual_days):
        logger.info("membership granted for order %s", order_id)
    else:
        logger.info("membership for order %s was already granted", order_id)
    return SUCCESS


def _complete(db: Session, order: models.PaymentOrder, trade_no: Optional[str], settings: Settings) -> str:
    order_id = order.order_id
    if crud.transition_order(db, order_id, "completed", trade_no):
        logger.info("order %s completed (trade %s)", order_id, trade_no)
    else:
        order = crud.get_order(db, order_id)
        if order.status == "failed":
            logger.error("paid notification for failed order %s (trade %s); needs manual review", order_id, trade_no)
            return SUCCESS
    return _fulfil(db, order_id, settings)


def _close(db: Session, order: models.PaymentOrder, trade_no: Optional[str], settings: Settings) -> str:
    if crud.transition_order(db, order.order_id, "failed", trade_no):
        logger.info("order %s closed by gateway", order.order_id)
        return SUCCESS
    order = crud.get_order(db, order.order_id)
    if order.status == "completed" and order.entitlement_applied_at is None:
        return _fulfil(db, order.order_id, settings)
    return SUCCESS


def _reconcile(db: Session, gateway, payload: Mapping[str, str], settings: Settings) -> str:
    if not gateway.verify_callback_signature(payload):
        logger.warning("rejected notification with bad signature (out_trade_no=%r)", payload.get("out_trade_no"))
        return FAIL

    order_id = payload.get("out_trade_no")
    trade_status = payload.get("trade_status")
    trade_no = payload.get("trade_no")
    if not order_id:
        logger.warning("notification without out_trade_no")
        return FAIL

    order = crud.get_order(db, order_id)
    if order is None:
        logger.warning("notification for unknown order %s", order_id)
        return FAIL

    if order.status == "completed":
        if order.entitlement_applied_at is not None:
            return SUCCESS
        # order committed earlier but the membership grant did not
        return _fulfil(db, order_id, settings)

    if order.status == "failed":
        if trade_status in SUCCESS_STATUSES:
            logger.error("paid notification for failed order %s (trade %s); needs manual review", order_id, trade_no)
            return SUCCESS
        if trade_status in CLOSED_STATUSES:
            return SUCCESS
        logger.warning("unrecognized trade_status %r for order %s", trade_status, order_id)
        return FAIL

    if trade_status in SUCCESS_STATUSES:
        return _complete(db, order, trade_no, settings)
    if trade_status in CLOSED_STATUSES:
        return _close(db, order, trade_no, settings)
    logger.warning("unrecognized trade_status %r for order %s", trade_status, order_id)
    return FAIL


def handle_gateway_callback(db: Session, gateway, payload: Mapping[str, str], settings: Optional[Settings] = None) -> str:
    """Process one gateway notification; returns the literal ``success``/``fail`` body.

    ``success`` is returned only once every write the notification implies
    has been committed. Any error becomes ``fail`` so the gateway redelivers.
    """
    try:
        return _reconcile(db, gateway, payload, settings or get_settings())
    except Exception:
        logger.exception("notification for order %r could not be processed", payload.get("out_trade_no"))
        db.rollback()
        return FAIL


def approve_order(db: Session, order_id: str, trade_id: Optional[str] = None, settings: Optional[Settings] = None) -> models.PaymentOrder:
    """Operator confirmation of a pending order, e.g. after an offline payment."""
    settings = settings or get_settings()
    order = crud.get_order(db, order_id)
    if order is None:
        raise NotFoundError("order not found")
    if order.status == "pending" and not crud.transition_order(db, order_id, "completed", trade_id):
        order = crud.get_order(db, order_id)
    if order.status == "failed":
        raise ValueError("order already failed")
    logger.info("order %s approved manually", order_id)
    _fulfil(db, order_id, settings)
    return crud.get_order(db, order_id)


def manual_activate(db: Session, identifier: str, plan, force: bool = False, settings: Optional[Settings] = None) -> models.Profile:
    """Grant a membership by hand, provisioning the identity if it does not exist.

    Bypasses payment entirely; last write wins. Replacing an active higher
    tier (lifetime with annual) requires ``force``.
    """
    settings = settings or get_settings()
    plan = _parse_plan(plan)
    identifier = sanitize_input(identifier)
    if not identifier:
        raise ValueError("identifier required")

    profile = crud.find_profile(db, identifier)
    if profile is None:
        user = identity.admin_create_user(
            db, email=identity.virtual_email_for(identifier), username=identifier.split("@")[0]
        )
        profile = crud.get_profile(db, user.id)
        logger.info("provisioned %s for manual activation of %r", user.id, identifier)

    now = utcnow()
    membership_type, expires_at = membership_for_plan(
        plan,
        now,
        current_type=profile.membership_type,
        current_expiry=profile.membership_expires_at,
        mode=settings.renewal_mode,
        annual_days=settings.annual_days,
    )
    if not force and membership_active(profile, now) and is_downgrade(profile.membership_type, membership_type):
        raise MembershipConflict(
            f"{profile.user_id} already holds an active {profile.membership_type} membership"
        )
    profile = crud.set_membership(db, profile, membership_type, expires_at)
    logger.info("manual activation: %s -> %s until %s", profile.user_id, membership_type, expires_at)
    return profile
