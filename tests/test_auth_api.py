import pytest
from jose import jwt

from codearena.config import DEFAULT_SECRET_KEY
from codearena.identity import IdentityClaims
from codearena.services import users

pytestmark = pytest.mark.anyio


async def test_health_is_public(client):
    r = await client.get("/api/test/health")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"] == {"status": "UP"}
    assert body["path"] == "/api/test/health"
    assert body["timestamp"]


async def test_firebase_status_reports_unconfigured(client):
    r = await client.get("/api/test/firebase-status")
    assert r.status_code == 200
    assert "configured" in r.json()["data"]


async def test_protected_requires_token(client):
    r = await client.get("/api/test/protected")
    assert r.status_code == 401
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "UNAUTHORIZED"


async def test_garbage_token_rejected(client):
    r = await client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401
    assert r.json()["data"] == {"reason": "malformed_token"}


async def test_register_then_me(client, resolver):
    token = resolver.add("fb-1", email="new@codearena.com", display_name="Newbie")
    headers = {"Authorization": f"Bearer {token}"}

    r = await client.get("/api/auth/me", headers=headers)
    assert r.status_code == 401

    r = await client.post("/api/auth/register", headers=headers, json={})
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["uid"] == "fb-1"
    assert data["email"] == "new@codearena.com"
    assert data["roles"] == ["USER"]

    r = await client.get("/api/auth/me", headers=headers)
    assert r.status_code == 200
    assert r.json()["data"]["display_name"] == "Newbie"

    r = await client.post("/api/auth/register", headers=headers, json={})
    assert r.status_code == 409
    assert r.json()["error"] == "CONFLICT"


async def test_register_requires_token(client):
    r = await client.post("/api/auth/register", json={"email": "x@codearena.com"})
    assert r.status_code == 401


async def test_register_validates_body(client, resolver):
    token = resolver.add("fb-2")
    r = await client.post(
        "/api/auth/register",
        headers={"Authorization": f"Bearer {token}"},
        json={"email": "not-an-email"},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"


async def test_verify_reports_registration(client, resolver, make_user):
    make_user("fb-3")
    r = await client.post("/api/auth/verify", json={"id_token": "tok-fb-3"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["registered"] is True
    assert data["user"]["uid"] == "fb-3"

    token = resolver.add("fb-4", email="four@codearena.com")
    r = await client.post("/api/auth/verify", json={"id_token": token})
    assert r.json()["data"]["registered"] is False


async def test_inactive_user_forbidden(client, make_user):
    _, headers = make_user("gone", active=False)
    r = await client.get("/api/auth/me", headers=headers)
    assert r.status_code == 403


async def test_signin_issues_legacy_token(client, session):
    users.register(session, IdentityClaims(uid="pw-1", email="pw@codearena.com"), password="secret-pass")

    r = await client.post("/api/auth/signin", json={"email": "pw@codearena.com", "password": "nope-nope"})
    assert r.status_code == 401

    r = await client.post("/api/auth/signin", json={"email": "pw@codearena.com", "password": "secret-pass"})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["roles"] == ["USER"]

    r = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
    assert r.status_code == 200
    assert r.json()["data"]["uid"] == "pw-1"


async def test_forged_legacy_token_for_firebase_account_rejected(client, make_user, resolver):
    make_user("fb-admin", "ADMIN")
    forged = jwt.encode({"sub": "fb-admin", "email": "fb-admin@codearena.com"}, resolver.secret_key, algorithm="HS256")

    r = await client.get("/api/users", headers={"Authorization": f"Bearer {forged}"})
    assert r.status_code == 401
    assert r.json()["data"] == {"reason": "legacy_token_not_allowed"}


async def test_signin_refused_with_placeholder_secret(client, session, resolver):
    users.register(session, IdentityClaims(uid="pw-1", email="pw@codearena.com"), password="secret-pass")
    resolver.secret_key = DEFAULT_SECRET_KEY

    r = await client.post("/api/auth/signin", json={"email": "pw@codearena.com", "password": "secret-pass"})
    assert r.status_code == 401

    forged = jwt.encode({"sub": "pw-1"}, DEFAULT_SECRET_KEY, algorithm="HS256")
    r = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {forged}"})
    assert r.status_code == 401
    assert r.json()["data"] == {"reason": "legacy_tokens_disabled"}


async def test_admin_role_endpoints(client, make_user):
    _, admin = make_user("admin-1", "ADMIN")
    _, user = make_user("user-1")

    r = await client.get("/api/users", headers=user)
    assert r.status_code == 403

    r = await client.post("/api/admin/users/user-1/roles", params={"role": "tester"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["data"]["roles"] == ["TESTER", "USER"]

    r = await client.delete("/api/admin/users/user-1/roles/PROBLEM_SETTER", headers=admin)
    assert r.status_code == 400
    assert r.json()["error"] == "ROLE_NOT_HELD"

    r = await client.delete("/api/admin/users/admin-1/roles/ADMIN", headers=admin)
    assert r.status_code == 409
    assert r.json()["error"] == "LAST_ADMIN"

    r = await client.delete("/api/admin/users/user-1/roles/USER", headers=admin)
    assert r.status_code == 409
    assert r.json()["error"] == "INVARIANT_VIOLATION"

    r = await client.post("/api/admin/users/user-1/deactivate", headers=admin)
    assert r.json()["data"]["is_active"] is False
    r = await client.get("/api/auth/me", headers=user)
    assert r.status_code == 403
    r = await client.post("/api/admin/users/user-1/activate", headers=admin)
    assert r.json()["data"]["is_active"] is True

    r = await client.get("/api/users", headers=admin)
    assert [u["uid"] for u in r.json()["data"]] == ["admin-1", "user-1"]
    r = await client.get("/api/roles", headers=admin)
    assert "TESTER" in r.json()["data"]


async def test_user_detail_admin_or_self(client, make_user):
    make_user("admin-1", "ADMIN")
    _, user = make_user("user-1")
    make_user("user-2")

    r = await client.get("/api/users/user-1", headers=user)
    assert r.status_code == 200
    r = await client.get("/api/users/user-2", headers=user)
    assert r.status_code == 404
    r = await client.get("/api/users/user-2", headers={"Authorization": "Bearer tok-admin-1"})
    assert r.status_code == 200
