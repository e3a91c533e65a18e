"""AES-256-GCM field encryption, key generation and hashing helpers."""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import secrets
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional, Union

from cryptography.exceptions import AlreadyFinalized, InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import (
    DecryptionFailed,
    EmptyInput,
    InsufficientEntropy,
    InvalidParameter,
    KeyLengthError,
    MissingParameter,
)

logger = logging.getLogger("bizmetrics.encryption")

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
DIGEST_LENGTH = 32

# Keys shorter than this are too small for a meaningful degenerate-output check.
_ENTROPY_CHECK_MIN_LENGTH = 8
_TOKEN_VERSION = "v1"

RandomSource = Callable[[int], bytes]
BinaryInput = Union[bytes, bytearray, str]


def _b64encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), altchars=b"-_", validate=True)


@dataclass(frozen=True)
class EncryptedField:
    """Ciphertext, IV and authentication tag for a single encrypted value."""

    ciphertext: bytes
    iv: bytes
    tag: bytes
    key_id: Optional[str] = None

    def encoded(self) -> Dict[str, Optional[str]]:
        """Return the envelope with its binary parts encoded as text."""

        return {
            "ciphertext": _b64encode(self.ciphertext),
            "iv": _b64encode(self.iv),
            "tag": _b64encode(self.tag),
            "key_id": self.key_id,
        }

    def to_token(self) -> str:
        """Serialise the envelope into a single text column value."""

        key_id = self.key_id or ""
        if ":" in key_id:
            raise InvalidParameter("Key identifiers must not contain ':'")
        return ":".join(
            (
                _TOKEN_VERSION,
                key_id,
                _b64encode(self.iv),
                _b64encode(self.tag),
                _b64encode(self.ciphertext),
            )
        )

    @classmethod
    def from_token(cls, token: str) -> "EncryptedField":
        parts = token.split(":") if isinstance(token, str) else []
        if len(parts) != 5 or parts[0] != _TOKEN_VERSION:
            raise DecryptionFailed("Malformed encrypted field")
        _, key_id, iv_text, tag_text, ciphertext_text = parts
        try:
            iv = _b64decode(iv_text)
            tag = _b64decode(tag_text)
            ciphertext = _b64decode(ciphertext_text)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailed("Malformed encrypted field") from exc
        return cls(ciphertext=ciphertext, iv=iv, tag=tag, key_id=key_id or None)


def _scrub(buffer: bytearray) -> None:
    buffer[:] = bytes(len(buffer))


def _has_entropy(material: bytes) -> bool:
    if len(material) < _ENTROPY_CHECK_MIN_LENGTH:
        return True
    return len(set(material)) > 1


def _random_bytes(length: int, random_source: Optional[RandomSource]) -> bytes:
    source = random_source or secrets.token_bytes
    material = source(length)
    if len(material) != length:
        raise InsufficientEntropy(
            f"Randomness source returned {len(material)} bytes, expected {length}"
        )
    if not _has_entropy(material):
        raise InsufficientEntropy("Generated key material has insufficient entropy")
    return bytes(material)


def _is_empty(value: object) -> bool:
    return isinstance(value, (bytes, bytearray, str)) and len(value) == 0


def _require_key(key: object) -> bytes:
    if key is None:
        raise MissingParameter("Encryption key is required")
    if not isinstance(key, (bytes, bytearray)):
        raise InvalidParameter("Encryption key must be provided as bytes")
    if len(key) != KEY_LENGTH:
        raise KeyLengthError(f"Key must be exactly {KEY_LENGTH} bytes")
    return bytes(key)


def _coerce_binary(value: BinaryInput, name: str) -> bytes:
    if isinstance(value, str):
        try:
            return _b64decode(value)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailed() from exc
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise InvalidParameter(f"{name} must be bytes or base64 text")


@contextmanager
def _cipher_context(key: bytes, mode: modes.GCM, *, decrypt: bool = False) -> Iterator[object]:
    """Yield an AES-GCM context that is finalised on every exit path."""

    cipher = Cipher(algorithms.AES(key), mode)
    context = cipher.decryptor() if decrypt else cipher.encryptor()
    try:
        yield context
    finally:
        # Finalising twice or after a failed tag check is expected here.
        with suppress(AlreadyFinalized, InvalidTag):
            context.finalize()
        del context, cipher


def generate_key(length: int, *, random_source: Optional[RandomSource] = None) -> bytes:
    """Return ``length`` cryptographically secure random bytes."""

    if isinstance(length, bool) or not isinstance(length, int) or length < 1:
        raise InvalidParameter("Invalid key length specified")
    return _random_bytes(length, random_source)


def rotate_encryption_key(*, random_source: Optional[RandomSource] = None) -> bytes:
    """Produce a replacement key; callers must re-encrypt affected fields."""

    key = generate_key(KEY_LENGTH, random_source=random_source)
    logger.info("Generated replacement encryption key")
    return key


def encrypt(
    plaintext: str,
    key: bytes,
    *,
    key_id: Optional[str] = None,
    random_source: Optional[RandomSource] = None,
) -> EncryptedField:
    """Encrypt ``plaintext`` with AES-256-GCM under a fresh random IV."""

    if plaintext is None:
        raise MissingParameter("Plaintext is required")
    if not isinstance(plaintext, str):
        raise InvalidParameter("Plaintext must be a string")
    key_bytes = _require_key(key)
    iv = _random_bytes(IV_LENGTH, random_source)

    data = bytearray(plaintext.encode("utf-8"))
    try:
        with _cipher_context(key_bytes, modes.GCM(iv)) as encryptor:
            ciphertext = encryptor.update(bytes(data)) + encryptor.finalize()
            tag = encryptor.tag
    finally:
        _scrub(data)

    return EncryptedField(ciphertext=ciphertext, iv=iv, tag=tag, key_id=key_id)


def decrypt(
    ciphertext: BinaryInput,
    key: bytes,
    iv: BinaryInput,
    tag: BinaryInput,
) -> str:
    """Authenticate and decrypt a value produced by :func:`encrypt`.

    Tampering with the ciphertext and tampering with the tag are reported
    identically as :class:`DecryptionFailed`.
    """

    missing = [
        name
        for name, value in (("ciphertext", ciphertext), ("key", key), ("iv", iv), ("tag", tag))
        if value is None or (name != "ciphertext" and _is_empty(value))
    ]
    if missing:
        raise MissingParameter(f"All parameters are required (missing: {', '.join(missing)})")

    key_bytes = _require_key(key)
    ciphertext_bytes = _coerce_binary(ciphertext, "ciphertext")
    iv_bytes = _coerce_binary(iv, "iv")
    tag_bytes = _coerce_binary(tag, "tag")
    if len(iv_bytes) != IV_LENGTH or len(tag_bytes) != TAG_LENGTH:
        raise DecryptionFailed()

    plaintext = bytearray()
    try:
        with _cipher_context(key_bytes, modes.GCM(iv_bytes, tag_bytes), decrypt=True) as decryptor:
            plaintext += decryptor.update(ciphertext_bytes)
            plaintext += decryptor.finalize()
        return plaintext.decode("utf-8")
    except InvalidTag:
        raise DecryptionFailed() from None
    except UnicodeDecodeError:
        raise DecryptionFailed() from None
    finally:
        _scrub(plaintext)


def decrypt_field(envelope: EncryptedField, key: bytes) -> str:
    return decrypt(envelope.ciphertext, key, envelope.iv, envelope.tag)


def hash_data(data: Union[str, bytes]) -> str:
    """Return the hex encoded SHA-256 digest of ``data``."""

    if data is None:
        raise EmptyInput("Data is required for hashing")
    if isinstance(data, str):
        payload = data.encode("utf-8")
    elif isinstance(data, (bytes, bytearray)):
        payload = bytes(data)
    else:
        raise InvalidParameter("Data must be a string or bytes")
    if not payload:
        raise EmptyInput("Data is required for hashing")
    return hashlib.sha256(payload).hexdigest()


__all__ = [
    "DIGEST_LENGTH",
    "EncryptedField",
    "IV_LENGTH",
    "KEY_LENGTH",
    "TAG_LENGTH",
    "decrypt",
    "decrypt_field",
    "encrypt",
    "generate_key",
    "hash_data",
    "rotate_encryption_key",
]
