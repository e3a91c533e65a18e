"""Identity core of the bizmetrics benchmarking platform."""

from __future__ import annotations

from typing import Any

from .database import Database, resolve_database_path
from .keys import KeyRing
from .users import UserService


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the user API application."""

    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Database",
    "KeyRing",
    "UserService",
    "create_app",
    "resolve_database_path",
]
