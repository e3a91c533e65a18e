"""Domain models for benchmark platform users."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .roles import UserRole


class UserTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


REVENUE_RANGES = ("0-1M", "1M-5M", "5M-20M", "20M-50M", "50M+")


@dataclass(frozen=True)
class User:
    """A user with sensitive fields decrypted for the immediate caller."""

    id: str
    email: str
    name: str
    role: UserRole
    external_id: str
    tier: UserTier
    is_active: bool
    created_at: datetime
    updated_at: datetime
    version: int
    last_login_at: Optional[datetime] = None
    revenue_range: Optional[str] = None


@dataclass(frozen=True)
class UserRecord:
    """The stored shape of a user: sensitive columns hold encrypted tokens only."""

    id: str
    email_encrypted: str
    email_hash: str
    external_id_encrypted: str
    external_id_hash: str
    name: str
    role: UserRole
    tier: UserTier
    is_active: bool
    created_at: datetime
    updated_at: datetime
    version: int
    last_login_at: Optional[datetime] = None
    revenue_range: Optional[str] = None


__all__ = ["REVENUE_RANGES", "User", "UserRecord", "UserRole", "UserTier"]
