"""Role hierarchy and feature permissions for benchmark platform users."""
from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Union

from .errors import InvalidParameter


class UserRole(str, Enum):
    """User roles, declared from least to most privileged."""

    USER = "USER"
    ANALYST = "ANALYST"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self)

    def at_least(self, required: "UserRole") -> bool:
        return self.rank >= required.rank

    @classmethod
    def parse(cls, value: Union["UserRole", str]) -> "UserRole":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise InvalidParameter(f"Unknown role {value!r}")


_ROLE_ORDER: List[UserRole] = list(UserRole)

FEATURES = ("metrics", "company_data", "benchmark_data", "admin_panel", "user_management")


def _freeze(matrix: Mapping[str, FrozenSet[str]]) -> Mapping[str, FrozenSet[str]]:
    return MappingProxyType(dict(matrix))


ROLE_PERMISSIONS: Mapping[UserRole, Mapping[str, FrozenSet[str]]] = MappingProxyType(
    {
        UserRole.USER: _freeze(
            {
                "metrics": frozenset({"read"}),
                "company_data": frozenset({"create", "read", "update"}),
                "benchmark_data": frozenset({"read"}),
                "admin_panel": frozenset(),
                "user_management": frozenset(),
            }
        ),
        UserRole.ANALYST: _freeze(
            {
                "metrics": frozenset({"read"}),
                "company_data": frozenset({"read"}),
                "benchmark_data": frozenset({"read"}),
                "admin_panel": frozenset(),
                "user_management": frozenset(),
            }
        ),
        UserRole.ADMIN: _freeze(
            {
                "metrics": frozenset({"read"}),
                "company_data": frozenset({"read"}),
                "benchmark_data": frozenset({"create", "read", "update"}),
                "admin_panel": frozenset({"full"}),
                "user_management": frozenset({"full"}),
            }
        ),
        UserRole.SYSTEM: _freeze({feature: frozenset({"full"}) for feature in FEATURES}),
    }
)


def _feature_permissions(role: UserRole, feature: str) -> FrozenSet[str]:
    try:
        return ROLE_PERMISSIONS[UserRole.parse(role)][feature]
    except KeyError as exc:
        raise InvalidParameter(f"Unknown feature {feature!r}") from exc


def has_permission(role: UserRole, feature: str, permission: str) -> bool:
    """Return ``True`` when ``role`` may perform ``permission`` on ``feature``."""

    permissions = _feature_permissions(role, feature)
    return "full" in permissions or permission in permissions


def has_full_access(role: UserRole, feature: str) -> bool:
    return "full" in _feature_permissions(role, feature)


def accessible_features(role: UserRole) -> List[str]:
    matrix = ROLE_PERMISSIONS[UserRole.parse(role)]
    return [feature for feature in FEATURES if matrix[feature]]


__all__ = [
    "FEATURES",
    "ROLE_PERMISSIONS",
    "UserRole",
    "accessible_features",
    "has_full_access",
    "has_permission",
]
