from __future__ import annotations

import stat
from pathlib import Path

import pytest
import yaml

from bizmetrics.config import open_key_ring
from bizmetrics.encryption import KEY_LENGTH, decrypt_field, encrypt
from bizmetrics.errors import DecryptionFailed, InvalidParameter, KeyLengthError
from bizmetrics.keys import KeyRing, dump_key_ring, load_key_ring


def test_generated_ring_has_single_active_key() -> None:
    ring = KeyRing.generate()
    key_id, key = ring.active_key()

    assert ring.key_ids() == [key_id]
    assert ring.active_key_id == key_id
    assert key_id.startswith("k")
    assert len(key) == KEY_LENGTH


def test_rotation_keeps_previous_key_for_decryption() -> None:
    ring = KeyRing.generate()
    old_id, old_key = ring.active_key()
    envelope = encrypt("before rotation", old_key, key_id=old_id)

    new_id = ring.rotate()

    assert new_id != old_id
    assert ring.active_key_id == new_id
    assert set(ring.key_ids()) == {old_id, new_id}
    assert decrypt_field(envelope, ring.get(envelope.key_id)) == "before rotation"


def test_retire_removes_only_inactive_keys() -> None:
    ring = KeyRing.generate()
    old_id = ring.active_key_id
    new_id = ring.rotate()

    with pytest.raises(InvalidParameter):
        ring.retire(new_id)

    ring.retire(old_id)
    assert ring.key_ids() == [new_id]
    with pytest.raises(DecryptionFailed):
        ring.get(old_id)
    with pytest.raises(InvalidParameter):
        ring.retire(old_id)


def test_unknown_key_id_is_reported_as_decryption_failure() -> None:
    ring = KeyRing.generate()
    with pytest.raises(DecryptionFailed):
        ring.get("kmissing")
    with pytest.raises(DecryptionFailed):
        ring.get(None)


def test_ring_validates_material() -> None:
    with pytest.raises(KeyLengthError):
        KeyRing({"k1": bytes(16)}, "k1")
    with pytest.raises(InvalidParameter):
        KeyRing({"k1": bytes(range(32))}, "k2")
    with pytest.raises(InvalidParameter):
        KeyRing({"bad:id": bytes(range(32))}, "bad:id")


def test_dump_and_load_round_trip(tmp_path: Path) -> None:
    ring = KeyRing.generate()
    ring.rotate()
    path = tmp_path / "config" / "keyring.yaml"

    dump_key_ring(ring, path)

    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert raw["active"] == ring.active_key_id
    assert set(raw["keys"]) == set(ring.key_ids())

    loaded = load_key_ring(path)
    assert loaded.active_key() == ring.active_key()
    assert sorted(loaded.key_ids()) == sorted(ring.key_ids())


def test_load_rejects_incomplete_file(tmp_path: Path) -> None:
    path = tmp_path / "keyring.yaml"
    path.write_text("active: k1\n", encoding="utf-8")
    with pytest.raises(InvalidParameter):
        load_key_ring(path)

    path.write_text("keys:\n  k1: " + "A" * 43 + "=\n", encoding="utf-8")
    with pytest.raises(InvalidParameter):
        load_key_ring(path)


def test_open_key_ring_requires_existing_file_unless_created(tmp_path: Path) -> None:
    path = tmp_path / "keyring.yaml"
    with pytest.raises(FileNotFoundError):
        open_key_ring(path)

    created = open_key_ring(path, create=True)
    assert path.exists()
    assert open_key_ring(path).active_key() == created.active_key()


def test_staged_key_decrypts_before_activation() -> None:
    ring = KeyRing.generate()
    active_id = ring.active_key_id
    staged_id, staged_key = ring.stage()

    assert ring.active_key_id == active_id
    assert ring.get(staged_id) == staged_key

    ring.activate(staged_id)
    assert ring.active_key() == (staged_id, staged_key)
    with pytest.raises(InvalidParameter):
        ring.activate("kmissing")
