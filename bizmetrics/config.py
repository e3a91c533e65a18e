"""Configuration management for the bizmetrics identity service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .database import resolve_database_path
from .keys import KeyRing, dump_key_ring, load_key_ring


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from ``BIZMETRICS_*`` environment variables."""

    database_path: Path
    keyring_path: Path
    api_tokens: List[str]


def resolve_keyring_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the YAML key ring file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "keyring.yaml").resolve(strict=False)


def parse_api_tokens(raw: Optional[str]) -> List[str]:
    return [token.strip() for token in (raw or "").split(",") if token.strip()]


def load_settings() -> Settings:
    return Settings(
        database_path=resolve_database_path(os.getenv("BIZMETRICS_DB_PATH")),
        keyring_path=resolve_keyring_path(os.getenv("BIZMETRICS_KEYRING_PATH")),
        api_tokens=parse_api_tokens(os.getenv("BIZMETRICS_API_TOKENS")),
    )


def open_key_ring(path: Path, *, create: bool = False) -> KeyRing:
    """Load the key ring at ``path``, generating and saving one when ``create`` is set."""

    if path.exists():
        return load_key_ring(path)
    if not create:
        raise FileNotFoundError(
            f"Key ring not found at {path}. Run `python main.py init-keys` to create one."
        )
    ring = KeyRing.generate()
    dump_key_ring(ring, path)
    return ring


__all__ = ["Settings", "load_settings", "open_key_ring", "parse_api_tokens", "resolve_keyring_path"]
