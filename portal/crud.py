from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from . import models
from .errors import NotFoundError
from .plans import Plan, membership_for_plan
from .utils import utcnow

# Business rule: amount stored rounded to 2 decimals


def round_amount(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def get_profile(db: Session, user_id: str) -> Optional[models.Profile]:
    return db.get(models.Profile, user_id)


def find_profile(db: Session, identifier: str) -> Optional[models.Profile]:
    """Resolve an operator-supplied identifier by id, email or username.

    An exact id or email wins over a username. Usernames are not unique, so a
    username shared by several profiles raises ``ValueError``.
    """
    ident = identifier.strip()
    profile = (
        db.query(models.Profile)
        .filter(or_(models.Profile.user_id == ident, func.lower(models.Profile.email) == ident.lower()))
        .first()
    )
    if profile is not None:
        return profile
    matches = db.query(models.Profile).filter(models.Profile.username == ident).limit(2).all()
    if len(matches) > 1:
        raise ValueError(f"username {ident!r} is ambiguous; use the email or user id")
    return matches[0] if matches else None


def list_profiles(db: Session, q: Optional[str] = None) -> List[models.Profile]:
    query = db.query(models.Profile)
    if q:
        pattern = f"%{q}%"
        query = query.filter(
            or_(
                models.Profile.email.like(pattern),
                models.Profile.username.like(pattern),
                models.Profile.user_id.like(pattern),
            )
        )
    return query.order_by(models.Profile.created_at).all()


def set_membership(
    db: Session, profile: models.Profile, membership_type: str, expires_at: Optional[datetime]
) -> models.Profile:
    profile.membership_type = membership_type
    profile.membership_expires_at = expires_at
    profile.updated_at = utcnow()
    db.commit()
    db.refresh(profile)
    return profile


def get_order(db: Session, order_id: str) -> Optional[models.PaymentOrder]:
    return db.get(models.PaymentOrder, order_id)


def insert_order(
    db: Session, order_id: str, user_id: str, amount: Decimal, plan: Plan, subject: str
) -> models.PaymentOrder:
    now = utcnow()
    order = models.PaymentOrder(
        order_id=order_id,
        user_id=user_id,
        amount=round_amount(amount),
        plan=Plan(plan).value,
        subject=subject,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def transition_order(
    db: Session, order_id: str, status: str, gateway_trade_id: Optional[str] = None
) -> bool:
    """Move a pending order to a terminal status.

    The update is conditional on the row still being ``pending``; returns
    False when another writer got there first.
    """
    if status not in ("completed", "failed"):
        raise ValueError(f"not a terminal status: {status}")
    values = {"status": status, "updated_at": utcnow()}
    if gateway_trade_id:
        values["gateway_trade_id"] = gateway_trade_id
    result = db.execute(
        update(models.PaymentOrder)
        .where(models.PaymentOrder.order_id == order_id, models.PaymentOrder.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def apply_entitlement(db: Session, order_id: str, mode: str = "reset", annual_days: int = 365) -> bool:
    """Grant the membership bought by a completed order, at most once.

    The claim on ``entitlement_applied_at`` and the Profile change commit
    together; returns False when the order was already fulfilled.
    """
    now = utcnow()
    claimed = db.execute(
        update(models.PaymentOrder)
        .where(
            models.PaymentOrder.order_id == order_id,
            models.PaymentOrder.status == "completed",
            models.PaymentOrder.entitlement_applied_at.is_(None),
        )
        .values(entitlement_applied_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        return False
    try:
        order = db.get(models.PaymentOrder, order_id, populate_existing=True)
        profile = db.get(models.Profile, order.user_id, populate_existing=True, with_for_update=True)
        if profile is None:
            raise NotFoundError(f"profile {order.user_id} missing for order {order_id}")
        membership_type, expires_at = membership_for_plan(
            order.plan,
            now,
            current_type=profile.membership_type,
            current_expiry=profile.membership_expires_at,
            mode=mode,
            annual_days=annual_days,
        )
        profile.membership_type = membership_type
        profile.membership_expires_at = expires_at
        profile.updated_at = now
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def list_orders(db: Session, status: Optional[str] = None, user_id: Optional[str] = None) -> List[models.PaymentOrder]:
    query = db.query(models.PaymentOrder)
    if status:
        query = query.filter(models.PaymentOrder.status == status)
    if user_id:
        query = query.filter(models.PaymentOrder.user_id == user_id)
    return query.order_by(models.PaymentOrder.created_at.desc()).all()


def order_stats(db: Session) -> dict:
    counts = dict(
        db.query(models.PaymentOrder.status, func.count(models.PaymentOrder.order_id))
        .group_by(models.PaymentOrder.status)
        .all()
    )
    revenue = (
        db.query(func.coalesce(func.sum(models.PaymentOrder.amount), 0))
        .filter(models.PaymentOrder.status == "completed")
        .scalar()
    )
    paid_users = (
        db.query(func.count(models.Profile.user_id))
        .filter(models.Profile.membership_type != "free")
        .scalar()
    )
    return {
        "total_orders": sum(counts.values()),
        "pending_orders": counts.get("pending", 0),
        "completed_orders": counts.get("completed", 0),
        "failed_orders": counts.get("failed", 0),
        "total_revenue": round_amount(Decimal(str(revenue or 0))),
        "paid_users": paid_users or 0,
    }
