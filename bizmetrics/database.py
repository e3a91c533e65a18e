"""SQLite-backed persistence for encrypted user records."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .errors import DuplicateUser
from .models import UserRecord, UserTier
from .roles import UserRole

logger = logging.getLogger("bizmetrics.database")

_USER_COLUMNS = (
    "id, email_encrypted, email_hash, external_id_encrypted, external_id_hash, name, role, "
    "tier, revenue_range, is_active, created_at, updated_at, last_login_at, version"
)
_USER_ORDER_BY = "created_at DESC, id DESC"


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "bizmetrics.sqlite3").resolve(strict=False)


def current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Database:
    """Persistence collaborator for the user service.

    Sensitive columns only ever receive encrypted tokens and blind-index
    digests. Writes that mutate an existing row are conditional on the stored
    version so that concurrent writers cannot overwrite each other.
    """

    def __init__(self, path: Path, *, timeout: float = 10.0) -> None:
        _ensure_directory(path)
        self._path = path
        self._timeout = timeout

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email_encrypted TEXT NOT NULL,
                    email_hash TEXT NOT NULL UNIQUE,
                    external_id_encrypted TEXT NOT NULL,
                    external_id_hash TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'USER',
                    tier TEXT NOT NULL DEFAULT 'free',
                    revenue_range TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_login_at TEXT,
                    version INTEGER NOT NULL DEFAULT 1
                );

                CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);
                CREATE INDEX IF NOT EXISTS idx_users_id_version ON users(id, version);
                """
            )
        logger.debug("Initialised user schema at %s", self._path)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_user(self, user_id: str) -> Optional[UserRecord]:
        return self._fetch_one(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,))

    def find_user_by_email_hash(self, email_hash: str) -> Optional[UserRecord]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email_hash = ?",
            (email_hash,),
        )

    def find_user_by_external_id_hash(self, external_id_hash: str) -> Optional[UserRecord]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM users WHERE external_id_hash = ?",
            (external_id_hash,),
        )

    def list_users(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        role: Optional[UserRole] = None,
        is_active: Optional[bool] = None,
    ) -> Tuple[List[UserRecord], int]:
        clauses: List[str] = []
        values: List[object] = []
        if role is not None:
            clauses.append("role = ?")
            values.append(role.value)
        if is_active is not None:
            clauses.append("is_active = ?")
            values.append(int(is_active))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM users{where}", values).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users{where} ORDER BY {_USER_ORDER_BY} LIMIT ? OFFSET ?",
                [*values, limit, offset],
            ).fetchall()
        return [self._row_to_record(row) for row in rows], int(total)

    def list_user_ids(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT id FROM users ORDER BY {_USER_ORDER_BY}").fetchall()
        return [str(row["id"]) for row in rows]

    def count_users_by_key(self, key_id: str) -> int:
        """Count users with at least one field encrypted under ``key_id``."""

        pattern = f"v1:{key_id}:%"
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM users WHERE email_encrypted LIKE ? OR external_id_encrypted LIKE ?",
                (pattern, pattern),
            ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def insert_user(self, record: UserRecord) -> None:
        with self._connect() as conn:
            try:
                conn.execute(
                    f"""
                    INSERT INTO users ({_USER_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.email_encrypted,
                        record.email_hash,
                        record.external_id_encrypted,
                        record.external_id_hash,
                        record.name,
                        record.role.value,
                        record.tier.value,
                        record.revenue_range,
                        int(record.is_active),
                        _serialize_datetime(record.created_at),
                        _serialize_datetime(record.updated_at),
                        _serialize_datetime(record.last_login_at),
                        record.version,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateUser("A user with that email or external identity already exists") from exc

    def update_user_if_version(self, record: UserRecord, expected_version: int) -> bool:
        """Persist ``record`` only if the stored version equals ``expected_version``.

        Returns ``False`` when no row matched, i.e. the user vanished or another
        writer already moved the version forward.
        """

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    UPDATE users
                       SET email_encrypted = ?, email_hash = ?,
                           external_id_encrypted = ?, external_id_hash = ?,
                           name = ?, role = ?, tier = ?, revenue_range = ?, is_active = ?,
                           updated_at = ?, last_login_at = ?, version = ?
                     WHERE id = ? AND version = ?
                    """,
                    (
                        record.email_encrypted,
                        record.email_hash,
                        record.external_id_encrypted,
                        record.external_id_hash,
                        record.name,
                        record.role.value,
                        record.tier.value,
                        record.revenue_range,
                        int(record.is_active),
                        _serialize_datetime(record.updated_at),
                        _serialize_datetime(record.last_login_at),
                        record.version,
                        record.id,
                        expected_version,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateUser("A user with that email or external identity already exists") from exc
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _fetch_one(self, query: str, params: Tuple[object, ...]) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def _row_to_record(self, row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=str(row["id"]),
            email_encrypted=str(row["email_encrypted"]),
            email_hash=str(row["email_hash"]),
            external_id_encrypted=str(row["external_id_encrypted"]),
            external_id_hash=str(row["external_id_hash"]),
            name=str(row["name"]),
            role=UserRole(str(row["role"])),
            tier=UserTier(str(row["tier"])),
            revenue_range=row["revenue_range"],
            is_active=bool(row["is_active"]),
            created_at=_parse_datetime(str(row["created_at"])),
            updated_at=_parse_datetime(str(row["updated_at"])),
            last_login_at=_parse_datetime(row["last_login_at"]),
            version=int(row["version"]),
        )


__all__ = ["Database", "current_timestamp", "resolve_database_path"]
