"""User service enforcing field-level encryption and optimistic versioning."""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from .database import Database, current_timestamp
from .encryption import EncryptedField, decrypt_field, encrypt, hash_data
from .errors import (
    DuplicateUser,
    InvalidOrInactiveUser,
    InvalidParameter,
    MissingRequiredField,
    UserNotFound,
    VersionConflict,
)
from .keys import KeyRing
from .models import REVENUE_RANGES, User, UserRecord, UserTier
from .roles import UserRole

logger = logging.getLogger("bizmetrics.users")

_EMAIL_PATTERN = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)
_UPDATABLE_FIELDS = frozenset(
    {"email", "external_id", "name", "role", "tier", "revenue_range", "is_active", "last_login_at"}
)
_MAX_PAGE_SIZE = 100


def _normalize_text(value: object) -> Optional[str]:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _normalize_email(value: object) -> Optional[str]:
    normalized = _normalize_text(value)
    return normalized.lower() if normalized else None


def _validate_email(email: str) -> str:
    if not _EMAIL_PATTERN.match(email):
        raise InvalidParameter("Email address is not valid")
    return email


def _parse_tier(value: object) -> UserTier:
    if isinstance(value, UserTier):
        return value
    try:
        return UserTier(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidParameter(f"Unknown tier {value!r}") from exc


def _parse_revenue_range(value: object) -> Optional[str]:
    if value is None:
        return None
    if value not in REVENUE_RANGES:
        raise InvalidParameter(f"Unknown revenue range {value!r}")
    return str(value)


def _require_version(expected_version: object) -> int:
    if isinstance(expected_version, bool) or not isinstance(expected_version, int) or expected_version < 1:
        raise InvalidParameter("Expected version must be a positive integer")
    return expected_version


class UserService:
    """Mediates every read and write of users.

    Email and external identity are encrypted with the key ring's active key
    before they reach the database and decrypted only for the caller. Every
    mutation carries the version the caller last saw; the database applies it
    with a conditional write so that a stale writer gets :class:`VersionConflict`
    and changes nothing.
    """

    def __init__(
        self,
        database: Database,
        key_ring: KeyRing,
        *,
        clock: Callable[[], datetime] = current_timestamp,
        key_ring_store: Optional[Callable[[KeyRing], None]] = None,
    ) -> None:
        self._database = database
        self._key_ring = key_ring
        self._clock = clock
        self._key_ring_store = key_ring_store

    @property
    def key_ring(self) -> KeyRing:
        return self._key_ring

    # ------------------------------------------------------------------
    # Creation and lookups
    # ------------------------------------------------------------------
    def create_user(self, data: Mapping[str, object]) -> User:
        email = _normalize_email(data.get("email"))
        external_id = _normalize_text(data.get("external_id"))
        missing = [name for name, value in (("email", email), ("external_id", external_id)) if not value]
        if missing:
            raise MissingRequiredField(missing)
        _validate_email(email)

        email_hash = hash_data(email)
        if self._database.find_user_by_email_hash(email_hash) is not None:
            logger.warning("Rejected duplicate registration for email digest %s", email_hash[:12])
            raise DuplicateUser("User already exists")
        external_id_hash = hash_data(external_id)
        if self._database.find_user_by_external_id_hash(external_id_hash) is not None:
            logger.warning("Rejected duplicate registration for external identity digest %s", external_id_hash[:12])
            raise DuplicateUser("User already exists")

        now = self._clock()
        role = UserRole.parse(data.get("role") or UserRole.USER)
        tier = _parse_tier(data.get("tier") or UserTier.FREE)
        is_active = data.get("is_active")
        record = UserRecord(
            id=str(data.get("id") or uuid.uuid4()),
            email_encrypted=self._encrypt_token(email),
            email_hash=email_hash,
            external_id_encrypted=self._encrypt_token(external_id),
            external_id_hash=external_id_hash,
            name=_normalize_text(data.get("name")) or "",
            role=role,
            tier=tier,
            revenue_range=_parse_revenue_range(data.get("revenue_range")),
            is_active=True if is_active is None else bool(is_active),
            created_at=now,
            updated_at=now,
            last_login_at=now,
            version=1,
        )
        self._database.insert_user(record)
        logger.info("Created user %s with role %s", record.id, role.value)
        return self._to_user(record, email=email, external_id=external_id)

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        record = self._database.get_user(user_id)
        if record is None:
            return None
        return self._to_user(record)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = _normalize_email(email)
        if not normalized:
            return None
        record = self._database.find_user_by_email_hash(hash_data(normalized))
        if record is None:
            return None
        return self._to_user(record)

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        normalized = _normalize_text(external_id)
        if not normalized:
            return None
        record = self._database.find_user_by_external_id_hash(hash_data(normalized))
        if record is None:
            return None
        return self._to_user(record)

    def list_users(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        role: Optional[Union[UserRole, str]] = None,
        is_active: Optional[bool] = True,
    ) -> Tuple[List[User], int]:
        if page < 1 or limit < 1:
            raise InvalidParameter("page and limit must be positive")
        limit = min(limit, _MAX_PAGE_SIZE)
        records, total = self._database.list_users(
            offset=(page - 1) * limit,
            limit=limit,
            role=UserRole.parse(role) if role is not None else None,
            is_active=is_active,
        )
        return [self._to_user(record) for record in records], total

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def update_user(self, user_id: str, changes: Mapping[str, object], expected_version: int) -> User:
        unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
        if unknown:
            raise InvalidParameter(f"Fields cannot be updated: {', '.join(unknown)}")
        expected_version = _require_version(expected_version)

        current = self._load_for_update(user_id, expected_version)
        updated = self._apply_changes(current, changes)
        user = self._commit(current, updated)
        logger.info("Updated user %s to version %s", user_id, user.version)
        return user

    def deactivate_user(self, user_id: str, expected_version: int) -> User:
        return self.update_user(user_id, {"is_active": False}, expected_version)

    def reactivate_user(self, user_id: str, expected_version: int) -> User:
        return self.update_user(user_id, {"is_active": True}, expected_version)

    def record_login(self, user_id: str, expected_version: int, *, at: Optional[datetime] = None) -> User:
        return self.update_user(user_id, {"last_login_at": at or self._clock()}, expected_version)

    def rotate_user_encryption(self, user_id: str, *, expected_version: Optional[int] = None) -> User:
        """Rotate the key ring and re-encrypt the user's fields under the new key."""

        current = self._database.get_user(user_id)
        if current is None:
            raise UserNotFound(user_id)
        if expected_version is not None and current.version != _require_version(expected_version):
            raise VersionConflict(user_id, expected_version, current.version)

        # The staged key reaches the store before any record depends on it and
        # only becomes active once the record is committed under it.
        key_id, key = self._key_ring.stage()
        try:
            self._persist_key_ring()
            user = self._commit(current, self._reencrypt(current, active=(key_id, key)))
        except Exception:
            self._key_ring.retire(key_id)
            self._persist_key_ring()
            raise
        self._key_ring.activate(key_id)
        self._persist_key_ring()
        logger.info("Re-encrypted user %s under key %s", user_id, key_id)
        return user

    def reencrypt_user(self, user_id: str) -> User:
        """Move the user's fields onto the active key if they are not already on it."""

        current = self._database.get_user(user_id)
        if current is None:
            raise UserNotFound(user_id)
        active_key_id = self._key_ring.active_key_id
        if all(
            EncryptedField.from_token(token).key_id == active_key_id
            for token in (current.email_encrypted, current.external_id_encrypted)
        ):
            return self._to_user(current)
        user = self._commit(current, self._reencrypt(current))
        logger.info("Re-encrypted user %s under key %s", user_id, active_key_id)
        return user

    # ------------------------------------------------------------------
    # Authorisation
    # ------------------------------------------------------------------
    def validate_user_role(self, user_id: str, required_role: Union[UserRole, str]) -> bool:
        required = UserRole.parse(required_role)
        record = self._database.get_user(user_id)
        if record is None or not record.is_active:
            raise InvalidOrInactiveUser(user_id)
        return record.role.at_least(required)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load_for_update(self, user_id: str, expected_version: int) -> UserRecord:
        current = self._database.get_user(user_id)
        if current is None:
            raise UserNotFound(user_id)
        if current.version != expected_version:
            logger.info(
                "Version conflict for user %s: expected %s, stored %s",
                user_id,
                expected_version,
                current.version,
            )
            raise VersionConflict(user_id, expected_version, current.version)
        return current

    def _apply_changes(self, current: UserRecord, changes: Mapping[str, object]) -> UserRecord:
        fields: Dict[str, object] = {}

        if "email" in changes:
            email = _normalize_email(changes["email"])
            if not email:
                raise MissingRequiredField(["email"])
            email_hash = hash_data(_validate_email(email))
            if email_hash != current.email_hash:
                self._ensure_unclaimed(self._database.find_user_by_email_hash(email_hash), current.id)
                fields["email_encrypted"] = self._encrypt_token(email)
                fields["email_hash"] = email_hash

        if "external_id" in changes:
            external_id = _normalize_text(changes["external_id"])
            if not external_id:
                raise MissingRequiredField(["external_id"])
            external_id_hash = hash_data(external_id)
            if external_id_hash != current.external_id_hash:
                self._ensure_unclaimed(
                    self._database.find_user_by_external_id_hash(external_id_hash), current.id
                )
                fields["external_id_encrypted"] = self._encrypt_token(external_id)
                fields["external_id_hash"] = external_id_hash

        if "name" in changes:
            fields["name"] = _normalize_text(changes["name"]) or ""
        if "role" in changes:
            fields["role"] = UserRole.parse(changes["role"])
        if "tier" in changes:
            fields["tier"] = _parse_tier(changes["tier"])
        if "revenue_range" in changes:
            fields["revenue_range"] = _parse_revenue_range(changes["revenue_range"])
        if "is_active" in changes:
            fields["is_active"] = bool(changes["is_active"])
        if "last_login_at" in changes:
            last_login_at = changes["last_login_at"]
            if last_login_at is not None and not isinstance(last_login_at, datetime):
                raise InvalidParameter("last_login_at must be a datetime")
            fields["last_login_at"] = last_login_at

        return replace(current, **fields)

    @staticmethod
    def _ensure_unclaimed(existing: Optional[UserRecord], user_id: str) -> None:
        if existing is not None and existing.id != user_id:
            raise DuplicateUser("Another user already uses that identity")

    def _commit(self, current: UserRecord, updated: UserRecord) -> User:
        candidate = replace(updated, version=current.version + 1, updated_at=self._clock())
        if not self._database.update_user_if_version(candidate, current.version):
            latest = self._database.get_user(current.id)
            if latest is None:
                raise UserNotFound(current.id)
            logger.info(
                "Concurrent write won for user %s: expected %s, stored %s",
                current.id,
                current.version,
                latest.version,
            )
            raise VersionConflict(current.id, current.version, latest.version)
        return self._to_user(candidate)

    def _reencrypt(self, record: UserRecord, *, active: Optional[Tuple[str, bytes]] = None) -> UserRecord:
        return replace(
            record,
            email_encrypted=self._encrypt_token(self._decrypt_token(record.email_encrypted), active=active),
            external_id_encrypted=self._encrypt_token(
                self._decrypt_token(record.external_id_encrypted), active=active
            ),
        )

    def _persist_key_ring(self) -> None:
        if self._key_ring_store is not None:
            self._key_ring_store(self._key_ring)

    def _encrypt_token(self, plaintext: str, *, active: Optional[Tuple[str, bytes]] = None) -> str:
        key_id, key = active or self._key_ring.active_key()
        return encrypt(plaintext, key, key_id=key_id).to_token()

    def _decrypt_token(self, token: str) -> str:
        envelope = EncryptedField.from_token(token)
        return decrypt_field(envelope, self._key_ring.get(envelope.key_id))

    def _to_user(
        self,
        record: UserRecord,
        *,
        email: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> User:
        return User(
            id=record.id,
            email=email if email is not None else self._decrypt_token(record.email_encrypted),
            name=record.name,
            role=record.role,
            external_id=(
                external_id
                if external_id is not None
                else self._decrypt_token(record.external_id_encrypted)
            ),
            tier=record.tier,
            is_active=record.is_active,
            created_at=record.created_at,
            updated_at=record.updated_at,
            version=record.version,
            last_login_at=record.last_login_at,
            revenue_range=record.revenue_range,
        )


__all__ = ["UserService"]
