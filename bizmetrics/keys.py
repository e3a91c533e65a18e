"""Key ring holding the active field-encryption key and retired predecessors."""
from __future__ import annotations

import base64
import binascii
import logging
import os
import secrets
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml

from .encryption import KEY_LENGTH, RandomSource, generate_key, rotate_encryption_key
from .errors import DecryptionFailed, InvalidParameter, KeyLengthError

logger = logging.getLogger("bizmetrics.keys")


def _new_key_id() -> str:
    return f"k{secrets.token_hex(4)}"


class KeyRing:
    """Thread-safe collection of symmetric keys addressed by key id.

    New envelopes are always produced under the active key. Retired keys stay
    available for decryption until :meth:`retire` removes them.
    """

    def __init__(
        self,
        keys: Mapping[str, bytes],
        active_key_id: str,
        *,
        random_source: Optional[RandomSource] = None,
    ) -> None:
        material: Dict[str, bytes] = {}
        for key_id, key in keys.items():
            if not key_id or ":" in key_id:
                raise InvalidParameter(f"Invalid key identifier {key_id!r}")
            if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
                raise KeyLengthError(f"Key {key_id} must be exactly {KEY_LENGTH} bytes")
            material[key_id] = bytes(key)
        if active_key_id not in material:
            raise InvalidParameter(f"Active key {active_key_id!r} is not part of the key ring")
        self._keys = material
        self._active_key_id = active_key_id
        self._random_source = random_source
        self._lock = threading.Lock()

    @classmethod
    def generate(cls, *, random_source: Optional[RandomSource] = None) -> "KeyRing":
        key_id = _new_key_id()
        key = generate_key(KEY_LENGTH, random_source=random_source)
        return cls({key_id: key}, key_id, random_source=random_source)

    @property
    def active_key_id(self) -> str:
        with self._lock:
            return self._active_key_id

    def active_key(self) -> Tuple[str, bytes]:
        with self._lock:
            return self._active_key_id, self._keys[self._active_key_id]

    def get(self, key_id: Optional[str]) -> bytes:
        with self._lock:
            key = self._keys.get(key_id) if key_id else None
        if key is None:
            raise DecryptionFailed(f"No key available for key id {key_id!r}")
        return key

    def key_ids(self) -> List[str]:
        with self._lock:
            return list(self._keys)

    def rotate(self) -> str:
        """Generate a new active key and keep the previous ones for decryption."""

        key_id, _ = self.stage()
        self.activate(key_id)
        return key_id

    def stage(self) -> Tuple[str, bytes]:
        """Add a new key that can decrypt but is not yet used for new envelopes."""

        key = rotate_encryption_key(random_source=self._random_source)
        with self._lock:
            key_id = _new_key_id()
            while key_id in self._keys:
                key_id = _new_key_id()
            self._keys[key_id] = key
        logger.debug("Staged encryption key %s", key_id)
        return key_id, key

    def activate(self, key_id: str) -> None:
        with self._lock:
            if key_id not in self._keys:
                raise InvalidParameter(f"Unknown key id {key_id!r}")
            previous = self._active_key_id
            self._active_key_id = key_id
        logger.info("Rotated encryption key %s -> %s", previous, key_id)

    def retire(self, key_id: str) -> None:
        with self._lock:
            if key_id == self._active_key_id:
                raise InvalidParameter("The active key cannot be retired")
            if key_id not in self._keys:
                raise InvalidParameter(f"Unknown key id {key_id!r}")
            del self._keys[key_id]
        logger.info("Retired encryption key %s", key_id)

    def export(self) -> Dict[str, object]:
        with self._lock:
            return {
                "active": self._active_key_id,
                "keys": {
                    key_id: base64.urlsafe_b64encode(key).decode("ascii")
                    for key_id, key in self._keys.items()
                },
            }


def load_key_ring(path: Path) -> KeyRing:
    """Load a key ring from a YAML file."""

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    keys_raw = raw.get("keys")
    if not keys_raw or not isinstance(keys_raw, dict):
        raise InvalidParameter("Key ring file must define at least one key under the 'keys' key")

    keys: Dict[str, bytes] = {}
    for key_id, encoded in keys_raw.items():
        try:
            keys[str(key_id)] = base64.urlsafe_b64decode(str(encoded).encode("ascii"))
        except (binascii.Error, ValueError) as exc:
            raise InvalidParameter(f"Key {key_id} is not valid base64") from exc

    active = raw.get("active")
    if active is None:
        raise InvalidParameter("Key ring file must name the active key under 'active'")
    return KeyRing(keys, str(active))


def dump_key_ring(ring: KeyRing, path: Path) -> None:
    """Write ``ring`` to ``path`` readable by the owner only."""

    path.parent.mkdir(parents=True, exist_ok=True)
    descriptor = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
        yaml.safe_dump(ring.export(), handle, default_flow_style=False, sort_keys=True)


__all__ = ["KeyRing", "dump_key_ring", "load_key_ring"]
