"""End-to-end API flows through the FastAPI app with in-memory backends."""

import re

import pytest
from fastapi.testclient import TestClient

from lexgate.app import app
from lexgate.service.rate_limit import RateLimiter
from lexgate.service.runtime import get_runtime

PASSWORD = "Str0ng!Passw0rd"
API = "/api/v1"


@pytest.fixture
def client():
    return TestClient(app)


def _last_code(runtime) -> str:
    _, _, body = runtime.email.sent[-1]
    return re.search(r'<div class="code">(\d+)</div>', body).group(1)


def _register(client, email="api@example.com", password=PASSWORD, name="Api User", phone=None):
    runtime = get_runtime()
    resp = client.post(f"{API}/auth/send-code", json={"email": email, "purpose": "register"})
    assert resp.status_code == 200, resp.json()
    body = {"email": email, "code": _last_code(runtime), "password": password, "name": name}
    if phone:
        body["phone"] = phone
    return client.post(f"{API}/auth/register", json=body)


def _seed_user(email="api@example.com", phone=None):
    runtime = get_runtime()
    return runtime.store.create_user(
        email, runtime.vault.hash_password(PASSWORD), "Api User", phone=phone
    )


def _login(client, email="api@example.com", password=PASSWORD):
    return client.post(f"{API}/auth/login", json={"email": email, "password": password})


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_register_login_me_flow(client):
    resp = _register(client)
    assert resp.status_code == 201
    payload = resp.json()
    assert payload["code"] == 0
    assert payload["message"] == "success"
    assert payload["data"]["email"] == "api@example.com"
    assert payload["data"]["tokenQuota"] == 100000
    assert "passwordHash" not in payload["data"]

    login = _login(client)
    assert login.status_code == 200
    data = login.json()["data"]
    assert data["token"]["tokenType"] == "Bearer"
    assert data["token"]["expiresIn"] == 15 * 60
    assert data["user"]["lastLoginAt"] is not None

    me = client.get(f"{API}/auth/me", headers=_auth(data["token"]["accessToken"]))
    assert me.status_code == 200
    assert me.json()["data"]["id"] == data["user"]["id"]


def test_send_code_response_and_cooldown(client):
    first = client.post(f"{API}/auth/send-code", json={"email": "c@example.com", "purpose": "register"})
    assert first.json()["data"] == {"sent": True, "expiresIn": 300}
    second = client.post(f"{API}/auth/send-code", json={"email": "c@example.com", "purpose": "register"})
    assert second.status_code == 429
    assert second.json()["code"] == 2104


def test_send_code_requires_exactly_one_destination(client):
    resp = client.post(
        f"{API}/auth/send-code",
        json={"email": "c@example.com", "phone": "+15550100", "purpose": "login"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == 1001


def test_register_duplicate_email(client):
    assert _register(client).status_code == 201
    resp = client.post(
        f"{API}/auth/register",
        json={"email": "api@example.com", "code": "123456", "password": PASSWORD, "name": "Again"},
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == 2002


def test_login_failures_are_uniform(client):
    _seed_user()
    unknown = _login(client, email="nobody@example.com")
    wrong = _login(client, password="Wr0ng!Password")
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json()
    assert wrong.json()["code"] == 2003
    assert wrong.json()["data"] is None


def test_lockout_over_http(client):
    _seed_user()
    for _ in range(5):
        assert _login(client, password="Wr0ng!Password").status_code == 401
    locked = _login(client)
    assert locked.status_code == 429
    assert locked.json()["code"] == 2007


def test_refresh_rotation_and_reuse(client):
    _seed_user()
    refresh_token = _login(client).json()["data"]["token"]["refreshToken"]
    rotated = client.post(f"{API}/auth/refresh", json={"refreshToken": refresh_token})
    assert rotated.status_code == 200
    assert rotated.json()["data"]["refreshToken"] != refresh_token
    reused = client.post(f"{API}/auth/refresh", json={"refreshToken": refresh_token})
    assert reused.status_code == 401
    assert reused.json()["code"] == 2009


def test_logout_revokes_access_token(client):
    _seed_user()
    token = _login(client).json()["data"]["token"]["accessToken"]
    assert client.post(f"{API}/auth/logout", headers=_auth(token)).json()["code"] == 0
    resp = client.get(f"{API}/auth/me", headers=_auth(token))
    assert resp.status_code == 401
    assert resp.json()["code"] == 2008


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer garbage"}, {"Authorization": "Basic x"}])
def test_logout_always_acknowledges(client, headers):
    resp = client.post(f"{API}/auth/logout", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"code": 0, "message": "success", "data": None}


@pytest.mark.parametrize(
    "headers,message",
    [
        ({}, "missing authorization header"),
        ({"Authorization": "Token abc"}, "invalid authorization format"),
        ({"Authorization": "Bearer abc.def.ghi"}, "invalid token"),
    ],
)
def test_protected_route_rejections(client, headers, message):
    resp = client.get(f"{API}/auth/me", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["code"] == 1002
    assert resp.json()["message"] == message


def test_quota_and_password_change(client):
    _seed_user()
    token = _login(client).json()["data"]["token"]["accessToken"]
    usage = client.get(f"{API}/users/me/quota", headers=_auth(token)).json()["data"]
    assert usage["remaining"] == usage["tokenQuota"] == 100000
    assert usage["usageRate"] == 0

    bad = client.put(
        f"{API}/users/me/password",
        headers=_auth(token),
        json={"oldPassword": "Wr0ng!Password", "newPassword": "N3w!Password"},
    )
    assert bad.status_code == 401
    ok = client.put(
        f"{API}/users/me/password",
        headers=_auth(token),
        json={"oldPassword": PASSWORD, "newPassword": "N3w!Password"},
    )
    assert ok.status_code == 200
    assert _login(client, password="N3w!Password").status_code == 200


def test_reset_password_flow(client):
    _seed_user()
    runtime = get_runtime()
    sent = client.post(
        f"{API}/auth/send-code", json={"email": "api@example.com", "purpose": "reset_password"}
    )
    assert sent.status_code == 200
    resp = client.post(
        f"{API}/auth/reset-password",
        json={"email": "api@example.com", "code": _last_code(runtime), "password": "N3w!Password"},
    )
    assert resp.status_code == 200
    assert _login(client, password="N3w!Password").status_code == 200


def test_phone_login(client):
    _seed_user(phone="+15550142")
    runtime = get_runtime()
    sent = client.post(f"{API}/auth/send-code", json={"phone": "+1 555 0142", "purpose": "login"})
    assert sent.status_code == 200
    phone, message = runtime.sms.sent[-1]
    code = re.search(r"\d{6}", message).group(0)
    resp = client.post(f"{API}/auth/login/phone", json={"phone": phone, "code": code})
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["phone"] == "+15550142"


def test_admin_quota_adjustment(client):
    _seed_user()
    runtime = get_runtime()
    user = runtime.store.get_user_by_email("api@example.com")
    user_token = _login(client).json()["data"]["token"]["accessToken"]

    forbidden = client.put(
        f"{API}/users/{user.id}/quota", headers=_auth(user_token), json={"tokenQuota": 5}
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["message"] == "insufficient permissions"

    runtime.store.update_user_fields(user.id, {"role": "admin"})
    admin_token = _login(client).json()["data"]["token"]["accessToken"]
    resp = client.put(
        f"{API}/users/{user.id}/quota", headers=_auth(admin_token), json={"tokenQuota": 5}
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["tokenQuota"] == 5

    missing = client.put(
        f"{API}/users/00000000-0000-0000-0000-000000000000/quota",
        headers=_auth(admin_token),
        json={"tokenQuota": 5},
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == 2001


def test_validation_errors_use_envelope(client):
    resp = client.post(f"{API}/auth/login", json={"email": "not-an-email", "password": "x"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == 1001
    assert "email" in body["message"]


def test_register_rejects_short_name(client):
    resp = client.post(
        f"{API}/auth/register",
        json={"email": "n@example.com", "code": "123456", "password": PASSWORD, "name": "A"},
    )
    assert resp.status_code == 400


def test_unknown_route_uses_envelope(client):
    resp = client.get(f"{API}/nope")
    assert resp.status_code == 404
    assert resp.json()["code"] == 1004


def test_rate_limit_middleware(client):
    runtime = get_runtime()
    runtime.rate_limiter = RateLimiter(0.001, 2)
    assert client.get(f"{API}/auth/me").status_code == 401
    assert client.get(f"{API}/auth/me").status_code == 401
    limited = client.get(f"{API}/auth/me")
    assert limited.status_code == 429
    assert limited.json()["code"] == 1005
    # Probes are never throttled
    assert client.get("/healthz").status_code == 200


def test_rate_limit_keys_on_forwarded_for_when_trusted(client):
    runtime = get_runtime()
    runtime.rate_limiter = RateLimiter(0.001, 1)
    runtime.settings.trust_forwarded_for = True
    try:
        assert client.get(f"{API}/auth/me", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 401
        assert client.get(f"{API}/auth/me", headers={"X-Forwarded-For": "2.2.2.2, 10.0.0.1"}).status_code == 401
        assert client.get(f"{API}/auth/me", headers={"X-Forwarded-For": "1.1.1.1"}).status_code == 429
    finally:
        runtime.settings.trust_forwarded_for = False


def test_health_and_readiness(client):
    health = client.get("/healthz")
    assert health.json()["data"]["status"] == "healthy"
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.json()["data"] == {
        "status": "ready",
        "checks": {"repository": "ok", "session_store": "ok"},
    }


def test_correlation_id_is_echoed(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    generated = client.get("/healthz")
    assert generated.headers["X-Request-ID"]


def _seed_admin(role="admin", email="boss@example.com"):
    runtime = get_runtime()
    return runtime.store.create_user(
        email, runtime.vault.hash_password(PASSWORD), "Boss", role=role
    )


def test_banned_user_cannot_log_in(client):
    user = _seed_user()
    _seed_admin()
    admin_token = _login(client, email="boss@example.com").json()["data"]["token"]["accessToken"]
    resp = client.put(
        f"{API}/users/{user.id}/status", headers=_auth(admin_token), json={"status": "banned"}
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "banned"

    blocked = _login(client)
    assert blocked.status_code == 403
    assert blocked.json()["code"] == 2006

    client.put(f"{API}/users/{user.id}/status", headers=_auth(admin_token), json={"status": "active"})
    assert _login(client).status_code == 200


def test_status_update_validation(client):
    user = _seed_user()
    admin = _seed_admin()
    admin_token = _login(client, email="boss@example.com").json()["data"]["token"]["accessToken"]
    user_token = _login(client).json()["data"]["token"]["accessToken"]

    unknown = client.put(
        f"{API}/users/{user.id}/status", headers=_auth(admin_token), json={"status": "frozen"}
    )
    assert unknown.status_code == 400
    assert unknown.json()["code"] == 1001

    own = client.put(
        f"{API}/users/{admin.id}/status", headers=_auth(admin_token), json={"status": "inactive"}
    )
    assert own.status_code == 400
    assert own.json()["message"] == "cannot change your own status"

    not_admin = client.put(
        f"{API}/users/{admin.id}/status", headers=_auth(user_token), json={"status": "banned"}
    )
    assert not_admin.status_code == 403

    missing = client.put(
        f"{API}/users/00000000-0000-0000-0000-000000000000/status",
        headers=_auth(admin_token),
        json={"status": "inactive"},
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == 2001


def test_role_change_requires_super_admin(client):
    user = _seed_user()
    _seed_admin(role="admin", email="admin@example.com")
    root = _seed_admin(role="super_admin", email="root@example.com")
    admin_token = _login(client, email="admin@example.com").json()["data"]["token"]["accessToken"]
    root_token = _login(client, email="root@example.com").json()["data"]["token"]["accessToken"]

    denied = client.put(
        f"{API}/users/{user.id}/role", headers=_auth(admin_token), json={"role": "admin"}
    )
    assert denied.status_code == 403
    assert denied.json()["message"] == "only super admins can change roles"

    promoted = client.put(
        f"{API}/users/{user.id}/role", headers=_auth(root_token), json={"role": "admin"}
    )
    assert promoted.status_code == 200
    assert promoted.json()["data"]["role"] == "admin"

    # The new role takes effect on the next token
    token = _login(client).json()["data"]["token"]["accessToken"]
    usage = client.get(f"{API}/users/me/quota", headers=_auth(token))
    assert usage.status_code == 200
    adjust = client.put(
        f"{API}/users/{root.id}/quota", headers=_auth(token), json={"tokenQuota": 7}
    )
    assert adjust.status_code == 200

    own = client.put(f"{API}/users/{root.id}/role", headers=_auth(root_token), json={"role": "user"})
    assert own.status_code == 400
    bad = client.put(f"{API}/users/{user.id}/role", headers=_auth(root_token), json={"role": "owner"})
    assert bad.status_code == 400


def test_non_ascii_bearer_is_ignored_by_logout(client):
    resp = client.post(
        f"{API}/auth/logout", headers={"Authorization": "Bearer abc.def.sig\xe9".encode("latin-1")}
    )
    assert resp.status_code == 200
    assert resp.json()["code"] == 0


def test_non_ascii_bearer_on_protected_route_is_unauthorized(client):
    resp = client.get(
        f"{API}/auth/me", headers={"Authorization": "Bearer abc.def.sig\xe9".encode("latin-1")}
    )
    assert resp.status_code == 401
    assert resp.json()["message"] == "invalid token"
