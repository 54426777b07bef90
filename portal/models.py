from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import relationship

from .db import Base
from .utils import utcnow

ROLES = ("admin", "user")
MEMBERSHIP_TYPES = ("free", "annual", "lifetime")
ORDER_STATUSES = ("pending", "completed", "failed")


class User(Base):
    """Identity record owned by the identity provider."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    username = Column(String, nullable=True, index=True)
    password_hash = Column(String, nullable=True)
    email_confirmed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    profile = relationship("Profile", back_populates="user", uselist=False)


class Profile(Base):
    __tablename__ = "profiles"

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    email = Column(String, nullable=True, index=True)
    username = Column(String, nullable=True, index=True)
    # 'admin' bypasses every entitlement check; only the admin path changes it
    role = Column(String, nullable=False, default="user", index=True)
    membership_type = Column(String, nullable=False, default="free")
    # NULL means no expiry (lifetime); mandatory for annual
    membership_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    user = relationship("User", back_populates="profile")
    orders = relationship("PaymentOrder", back_populates="profile")


class PaymentOrder(Base):
    __tablename__ = "payment_orders"

    order_id = Column(String(64), primary_key=True)
    user_id = Column(String(36), ForeignKey("profiles.user_id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    plan = Column(String(20), nullable=False)
    subject = Column(String(256), nullable=False, default="")
    status = Column(String(20), nullable=False, default="pending", index=True)
    gateway_trade_id = Column(String(64), nullable=True)
    # set in the same transaction as the Profile mutation of a completed order
    entitlement_applied_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    profile = relationship("Profile", back_populates="orders")
