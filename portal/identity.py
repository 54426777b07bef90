"""Local identity provider.

Issues identities and passwords and, in the same transaction, the Profile
row every identity owns. Nothing else in the portal creates profiles.
"""
import logging
import secrets
import uuid
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .auth import hash_password, verify_password
from .errors import InvalidCredentials, NotFoundError
from .utils import utcnow

logger = logging.getLogger(__name__)

VIRTUAL_EMAIL_DOMAIN = "system.generated"


def virtual_email_for(identifier: str) -> str:
    return identifier if "@" in identifier else f"{identifier}@{VIRTUAL_EMAIL_DOMAIN}"


def get_user(db: Session, user_id: str) -> Optional[models.User]:
    return db.get(models.User, user_id)


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return (
        db.query(models.User)
        .filter(func.lower(models.User.email) == email.strip().lower())
        .first()
    )


def _create_identity(
    db: Session,
    email: str,
    password: str,
    username: Optional[str],
    role: str,
    confirmed: bool,
) -> models.User:
    if role not in models.ROLES:
        raise ValueError(f"unknown role: {role}")
    email = email.strip().lower()
    username = username or email.split("@")[0]
    now = utcnow()
    user = models.User(
        id=str(uuid.uuid4()),
        email=email,
        username=username,
        password_hash=hash_password(password),
        email_confirmed_at=now if confirmed else None,
        created_at=now,
    )
    profile = models.Profile(
        user_id=user.id,
        email=email,
        username=username,
        role=role,
        membership_type="free",
        membership_expires_at=None,
        created_at=now,
        updated_at=now,
    )
    db.add(user)
    db.add(profile)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValueError("email already registered") from e
    db.refresh(user)
    logger.info("identity %s created (role=%s)", user.id, role)
    return user


def sign_up(db: Session, email: str, password: str, username: Optional[str] = None) -> models.User:
    return _create_identity(db, email, password, username, role="user", confirmed=False)


def sign_in_with_password(db: Session, email: str, password: str) -> models.User:
    user = get_user_by_email(db, email)
    if not user or not user.password_hash or not verify_password(password, user.password_hash):
        raise InvalidCredentials("invalid credentials")
    return user


def admin_create_user(
    db: Session,
    email: str,
    password: Optional[str] = None,
    username: Optional[str] = None,
    role: str = "user",
) -> models.User:
    """Provision an identity on an operator's behalf; the email is pre-confirmed."""
    # operators hand out a fresh password separately
    password = password or secrets.token_urlsafe(9)
    return _create_identity(db, email, password, username, role=role, confirmed=True)


def confirm_email(db: Session, user_id: str) -> models.User:
    user = get_user(db, user_id)
    if not user:
        raise NotFoundError("user not found")
    if user.email_confirmed_at is None:
        user.email_confirmed_at = utcnow()
        db.commit()
        db.refresh(user)
    return user
