from datetime import datetime, timedelta, timezone

import jwt
import pytest

pytest.importorskip("fastapi")
from fastapi import HTTPException

from matchengine.auth import admin_deps, security


@pytest.fixture(autouse=True)
def _secret(monkeypatch):
    monkeypatch.setattr(security, "JWT_SECRET", "test-secret")
    monkeypatch.setattr(admin_deps.config, "ADMIN_TOKEN", "")


def _encode(**claims):
    payload = {"sub": "admin-7", "scope": "admin", "role": "operator", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)}
    payload.update(claims)
    return jwt.encode(payload, "test-secret", algorithm="HS256")


def test_bearer_admin_token_resolves_admin():
    admin = admin_deps.get_current_admin(authorization=f"Bearer {_encode()}", x_admin_token=None)
    assert admin == {"id": "admin-7", "email": "", "role": "operator", "auth_mode": "jwt"}


@pytest.mark.parametrize(
    "claims,detail",
    [
        ({"exp": datetime.now(timezone.utc) - timedelta(minutes=1)}, "Token expired"),
        ({"scope": "user"}, "Invalid admin token"),
        ({"role": "superuser"}, "Invalid admin token"),
        ({"sub": ""}, "Invalid admin token"),
    ],
)
def test_bad_admin_tokens_are_rejected(claims, detail):
    with pytest.raises(HTTPException) as exc:
        admin_deps.get_current_admin(authorization=f"Bearer {_encode(**claims)}", x_admin_token=None)
    assert exc.value.status_code == 401
    assert exc.value.detail == detail


def test_wrong_signature_is_rejected():
    token = jwt.encode({"sub": "x", "scope": "admin"}, "other-secret", algorithm="HS256")
    with pytest.raises(HTTPException) as exc:
        security.decode_admin_access_token(token)
    assert exc.value.detail == "Invalid token"


def test_missing_secret_is_a_server_error(monkeypatch):
    monkeypatch.setattr(security, "JWT_SECRET", "")
    with pytest.raises(HTTPException) as exc:
        security.decode_access_token("anything")
    assert exc.value.status_code == 500


def test_dev_token_only_when_configured(monkeypatch):
    with pytest.raises(HTTPException):
        admin_deps.get_current_admin(authorization=None, x_admin_token="")
    monkeypatch.setattr(admin_deps.config, "ADMIN_TOKEN", "dev-token")
    admin = admin_deps.get_current_admin(authorization=None, x_admin_token="dev-token")
    assert admin["id"] == "dev-admin"
    assert admin["role"] == "admin"


def test_role_hierarchy():
    operator_only = admin_deps.require_admin_role("operator")
    assert operator_only({"role": "admin"})["role"] == "admin"
    with pytest.raises(HTTPException) as exc:
        operator_only({"role": "viewer"})
    assert exc.value.status_code == 403
    with pytest.raises(ValueError):
        admin_deps.require_admin_role("owner")
