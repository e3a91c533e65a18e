from __future__ import annotations

import importlib
import warnings
from functools import partial
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from bizmetrics.api import create_app
from bizmetrics.config import open_key_ring
from bizmetrics.database import Database
from bizmetrics.errors import InvalidParameter, MissingRequiredField
from bizmetrics.keys import KeyRing, dump_key_ring, load_key_ring
from bizmetrics.security import TokenAuth
from bizmetrics.users import UserService

TOKEN = "test-token"
HEADERS = {"Authorization": f"Bearer {TOKEN}"}
EMAIL = "owner@example.com"


@pytest.fixture()
def service(tmp_path: Path) -> UserService:
    database = Database(tmp_path / "api.sqlite3")
    database.initialize()
    return UserService(database, KeyRing.generate())


@pytest.fixture()
def client(service: UserService):
    app = create_app(service=service, auth=TokenAuth([TOKEN]))
    with TestClient(app) as test_client:
        yield test_client


def _register(client: TestClient, email: str = EMAIL, external_id: str = "google|owner", **extra) -> dict:
    response = client.post(
        "/v1/users",
        json={"email": email, "external_id": external_id, "name": "Owner", **extra},
        headers=HEADERS,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health_does_not_require_token(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_user_routes_require_bearer_token(client: TestClient) -> None:
    assert client.get("/v1/users").status_code == 401
    response = client.get("/v1/users", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 403
    assert response.json()["detail"] == "Invalid API token"


def test_token_auth_requires_tokens() -> None:
    with pytest.raises(ValueError):
        TokenAuth(["", "  "])


def test_create_user_returns_profile_without_external_identity(client: TestClient) -> None:
    payload = _register(client, role="ANALYST", tier="enterprise", revenue_range="5M-20M")

    assert payload["email"] == EMAIL
    assert payload["role"] == "ANALYST"
    assert payload["tier"] == "enterprise"
    assert payload["version"] == 1
    assert "external_id" not in payload

    fetched = client.get(f"/v1/users/{payload['id']}", headers=HEADERS)
    assert fetched.status_code == 200
    assert fetched.json() == payload


def test_create_user_error_mapping(client: TestClient) -> None:
    missing = client.post("/v1/users", json={"email": EMAIL}, headers=HEADERS)
    assert missing.status_code == 422
    assert missing.json()["error"] == "missing_required_field"

    invalid = client.post("/v1/users", json={"email": "nope", "external_id": "x"}, headers=HEADERS)
    assert invalid.status_code == 422
    assert invalid.json()["error"] == "invalid_parameter"

    bad_range = client.post(
        "/v1/users",
        json={"email": EMAIL, "external_id": "x", "revenue_range": "huge"},
        headers=HEADERS,
    )
    assert bad_range.status_code == 422

    _register(client)
    duplicate = client.post(
        "/v1/users",
        json={"email": EMAIL, "external_id": "other"},
        headers=HEADERS,
    )
    assert duplicate.status_code == 409
    assert duplicate.json() == {"detail": "User already exists", "error": "duplicate_user"}


def test_update_user_reports_version_conflicts(client: TestClient) -> None:
    created = _register(client)
    url = f"/v1/users/{created['id']}"

    updated = client.patch(url, json={"version": 1, "name": "Renamed"}, headers=HEADERS)
    assert updated.status_code == 200
    assert updated.json()["name"] == "Renamed"
    assert updated.json()["version"] == 2

    stale = client.patch(url, json={"version": 1, "name": "Stale"}, headers=HEADERS)
    assert stale.status_code == 409
    body = stale.json()
    assert body["error"] == "version_conflict"
    assert body["current_version"] == 2

    assert client.get(url, headers=HEADERS).json()["name"] == "Renamed"


def test_update_requires_version(client: TestClient) -> None:
    created = _register(client)
    response = client.patch(f"/v1/users/{created['id']}", json={"name": "x"}, headers=HEADERS)
    assert response.status_code == 422


def test_missing_user_is_not_found(client: TestClient) -> None:
    assert client.get("/v1/users/missing", headers=HEADERS).status_code == 404
    response = client.patch("/v1/users/missing", json={"version": 1, "name": "x"}, headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["error"] == "user_not_found"


def test_list_users_paginates(client: TestClient) -> None:
    for index in range(3):
        _register(client, email=f"user{index}@example.com", external_id=f"id-{index}")

    response = client.get("/v1/users", params={"page": 1, "limit": 2}, headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 3
    assert body["page"] == 1
    assert len(body["users"]) == 2

    assert client.get("/v1/users", params={"limit": 500}, headers=HEADERS).status_code == 422


def test_role_checks_and_deactivation(client: TestClient) -> None:
    created = _register(client, role="ADMIN")
    url = f"/v1/users/{created['id']}"

    allowed = client.get(f"{url}/roles/analyst", headers=HEADERS)
    assert allowed.status_code == 200
    assert allowed.json() == {"user_id": created["id"], "required_role": "ANALYST", "allowed": True}

    denied = client.get(f"{url}/roles/SYSTEM", headers=HEADERS)
    assert denied.json()["allowed"] is False

    unknown = client.get(f"{url}/roles/owner", headers=HEADERS)
    assert unknown.status_code == 422

    deactivated = client.post(f"{url}/deactivate", json={"version": 1}, headers=HEADERS)
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False

    inactive = client.get(f"{url}/roles/USER", headers=HEADERS)
    assert inactive.status_code == 403
    assert inactive.json()["detail"] == "Invalid or inactive user"


def test_rotate_encryption_keeps_profile_readable(client: TestClient, service: UserService) -> None:
    created = _register(client)
    old_key_id = service.key_ring.active_key_id

    response = client.post(f"/v1/users/{created['id']}/rotate-encryption", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["version"] == 2
    assert body["email"] == EMAIL
    assert service.key_ring.active_key_id != old_key_id


def test_rotation_survives_restart_with_persisted_key_ring(tmp_path: Path) -> None:
    ring_path = tmp_path / "keyring.yaml"
    database = Database(tmp_path / "restart.sqlite3")
    database.initialize()
    service = UserService(
        database,
        open_key_ring(ring_path, create=True),
        key_ring_store=partial(dump_key_ring, path=ring_path),
    )
    app = create_app(service=service, auth=TokenAuth([TOKEN]))

    with TestClient(app) as client:
        created = _register(client)
        response = client.post(f"/v1/users/{created['id']}/rotate-encryption", headers=HEADERS)
        assert response.status_code == 200

    reloaded = load_key_ring(ring_path)
    assert reloaded.active_key_id == service.key_ring.active_key_id

    restarted = UserService(database, reloaded)
    user = restarted.get_user_by_id(created["id"])
    assert user.email == EMAIL
    assert user.version == 2


def test_any_configured_token_is_accepted(service: UserService) -> None:
    app = create_app(service=service, auth=TokenAuth(["first-token", TOKEN]))
    with TestClient(app) as client:
        response = client.get("/v1/users", headers=HEADERS)
    assert response.status_code == 200


def test_api_module_imports_without_status_deprecations() -> None:
    import bizmetrics.api as api_module

    with warnings.catch_warnings():
        warnings.filterwarnings("error", message=".*HTTP_422.*")
        importlib.reload(api_module)

    assert api_module._STATUS_BY_ERROR[InvalidParameter] == 422
    assert api_module._STATUS_BY_ERROR[MissingRequiredField] == 422
