"""Entitlement checks derived from a Profile record.

Both checks are pure: they read role and membership fields and the current
time, nothing else. Client-side gating can mirror them but the server-side
result is the one that guards protected resources.
"""
from datetime import datetime
from typing import Optional

from .utils import as_utc, utcnow


def membership_active(profile, now: Optional[datetime] = None) -> bool:
    """Whether the membership itself (ignoring role) is currently paid."""
    if profile.membership_type == "lifetime":
        return True
    if profile.membership_type == "annual":
        expires_at = as_utc(profile.membership_expires_at)
        if expires_at is None:
            return False
        return expires_at > as_utc(now or utcnow())
    return False


def has_access(profile, now: Optional[datetime] = None) -> bool:
    if profile is None:
        return False
    if profile.role == "admin":
        return True
    return membership_active(profile, now)


def has_permission(profile, feature: str, now: Optional[datetime] = None) -> bool:
    # All paid features are sold as one bundle, so `feature` does not narrow access.
    return has_access(profile, now=now)
