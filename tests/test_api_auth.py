"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> Bearer dependency ->
SessionManager -> stores -> response model serialization -> error envelope.

Coverage:
  - login: 200 token pair with no-store; 401 envelope identical for unknown
    email and wrong password; 403 for a deactivated account
  - refresh / logout round trip
  - forgot-password: byte-identical bodies for known and unknown emails
  - reset-password and change-password revoke earlier refresh tokens
  - invite-user (admin only) and accept-invite
  - verify, users/{id}/active, validation errors, rate limiting

Fixtures used (from conftest.py):
  - api_client: (client, ctx); ctx.admin / ctx.admin_token are a seeded admin.
    The database is shared within this module, so every test uses its own emails.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import DEFAULT_PASSWORD


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, email: str, password: str = DEFAULT_PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


class TestLogin:
    def test_login_success(self, api_client) -> None:
        client, ctx = api_client
        resp = _login(client, "admin@tasknest.com")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["user"]["email"] == "admin@tasknest.com"
        assert data["user"]["role"] == "admin"
        assert "hashed_password" not in data["user"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, api_client) -> None:
        client, ctx = api_client
        ctx.sessions.credentials.create_principal("enum@tasknest.com", "Enum", DEFAULT_PASSWORD)
        unknown = _login(client, "nobody@tasknest.com")
        wrong = _login(client, "enum@tasknest.com", "wrong-password")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.content == wrong.content
        assert unknown.json()["error"]["code"] == "invalid_credentials"

    def test_deactivated_account(self, api_client) -> None:
        client, ctx = api_client
        p = ctx.sessions.credentials.create_principal("off@tasknest.com", "Off", DEFAULT_PASSWORD)
        ctx.sessions.credentials.set_active(p.id, False)
        resp = _login(client, "off@tasknest.com")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_deactivated"

    def test_malformed_body_is_422_without_echo(self, api_client) -> None:
        client, _ctx = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "not-an-email", "password": "s3cret-value"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert "s3cret-value" not in resp.text

    def test_login_rate_limited(self, api_client) -> None:
        client, _ctx = api_client
        codes = [_login(client, "admin@tasknest.com", "wrong-password").status_code for _ in range(11)]
        assert codes[:10] == [401] * 10
        assert codes[10] == 429


class TestRefreshAndLogout:
    def test_refresh_then_logout(self, api_client) -> None:
        client, ctx = api_client
        ctx.sessions.credentials.create_principal("cycle@tasknest.com", "Cycle", DEFAULT_PASSWORD)
        pair = _login(client, "cycle@tasknest.com").json()

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert resp.status_code == 200, resp.text
        assert resp.json()["refresh_token"] is None
        access = resp.json()["access_token"]

        resp = client.post(
            "/api/v1/auth/logout",
            json={"refresh_token": pair["refresh_token"]},
            headers=_bearer(access),
        )
        assert resp.status_code == 200

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_revoked"

    def test_refresh_unknown_token(self, api_client) -> None:
        client, _ctx = api_client
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "0" * 64})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_logout_requires_auth(self, api_client) -> None:
        client, _ctx = api_client
        resp = client.post("/api/v1/auth/logout", json={})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_logout_without_body(self, api_client) -> None:
        client, ctx = api_client
        resp = client.post("/api/v1/auth/logout", headers=_bearer(ctx.admin_token))
        assert resp.status_code == 200


class TestPasswordReset:
    def test_forgot_password_bodies_are_identical(self, api_client) -> None:
        client, ctx = api_client
        ctx.sessions.credentials.create_principal("real-active@tasknest.com", "Real", DEFAULT_PASSWORD)
        known = client.post("/api/v1/auth/forgot-password", json={"email": "real-active@tasknest.com"})
        unknown = client.post("/api/v1/auth/forgot-password", json={"email": "nonexistent@tasknest.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.content == unknown.content
        assert known.json() == {"message": "If an account exists, a reset email has been sent"}

    def test_reset_password_flow(self, api_client) -> None:
        client, ctx = api_client
        ctx.sessions.credentials.create_principal("reset@tasknest.com", "Reset", DEFAULT_PASSWORD)
        old_refresh = _login(client, "reset@tasknest.com").json()["refresh_token"]

        client.post("/api/v1/auth/forgot-password", json={"email": "reset@tasknest.com"})
        assert ctx.sessions.flush_notices()
        token = next(t for email, t in ctx.notifier.resets if email == "reset@tasknest.com")

        resp = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "brand-new-pass"})
        assert resp.status_code == 200, resp.text

        again = client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": "other-new-pass"})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "token_already_used"

        assert client.post("/api/v1/auth/refresh", json={"refresh_token": old_refresh}).status_code == 401
        assert _login(client, "reset@tasknest.com", "brand-new-pass").status_code == 200

    def test_reset_password_too_short(self, api_client) -> None:
        client, _ctx = api_client
        resp = client.post("/api/v1/auth/reset-password", json={"token": "a" * 64, "new_password": "short"})
        assert resp.status_code == 422

    def test_new_password_over_bcrypt_byte_limit(self, api_client) -> None:
        client, ctx = api_client
        ctx.sessions.credentials.create_principal("bytes@tasknest.com", "Bytes", DEFAULT_PASSWORD)
        access = _login(client, "bytes@tasknest.com").json()["access_token"]

        resp = client.post("/api/v1/auth/reset-password", json={"token": "a" * 64, "new_password": "é" * 40})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

        resp = client.put(
            "/api/v1/auth/change-password",
            json={"current_password": DEFAULT_PASSWORD, "new_password": "p" * 80},
            headers=_bearer(access),
        )
        assert resp.status_code == 422
        assert "p" * 80 not in resp.text

        resp = client.put(
            "/api/v1/auth/change-password",
            json={"current_password": DEFAULT_PASSWORD, "new_password": "p" * 72},
            headers=_bearer(access),
        )
        assert resp.status_code == 200, resp.text

    def test_forgot_password_rate_limited(self, api_client) -> None:
        client, _ctx = api_client
        codes = [
            client.post("/api/v1/auth/forgot-password", json={"email": "flood@tasknest.com"}).status_code
            for _ in range(6)
        ]
        assert codes == [200] * 5 + [429]

    def test_reset_password_rate_limited(self, api_client) -> None:
        client, _ctx = api_client
        body = {"token": "f" * 64, "new_password": "brand-new-pass"}
        resps = [client.post("/api/v1/auth/reset-password", json=body) for _ in range(6)]
        assert [r.status_code for r in resps] == [401] * 5 + [429]
        assert resps[-1].json()["error"]["code"] == "rate_limited"
        assert "Retry-After" in resps[-1].headers

    def test_change_password(self, api_client) -> None:
        client, ctx = api_client
        ctx.sessions.credentials.create_principal("chg@tasknest.com", "Chg", DEFAULT_PASSWORD)
        pair = _login(client, "chg@tasknest.com").json()

        wrong = client.put(
            "/api/v1/auth/change-password",
            json={"current_password": "nope-nope", "new_password": "brand-new-pass"},
            headers=_bearer(pair["access_token"]),
        )
        assert wrong.status_code == 401

        resp = client.put(
            "/api/v1/auth/change-password",
            json={"current_password": DEFAULT_PASSWORD, "new_password": "brand-new-pass"},
            headers=_bearer(pair["access_token"]),
        )
        assert resp.status_code == 200, resp.text
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]}).status_code == 401


class TestInvites:
    def test_invite_and_accept(self, api_client) -> None:
        client, ctx = api_client
        resp = client.post(
            "/api/v1/auth/invite-user",
            json={"email": "invitee@tasknest.com", "role": "employee", "department": "QA"},
            headers=_bearer(ctx.admin_token),
        )
        assert resp.status_code == 201, resp.text
        assert "token" not in resp.json()
        assert ctx.sessions.flush_notices()
        token = next(t for email, t, _ in ctx.notifier.invites if email == "invitee@tasknest.com")

        dup = client.post(
            "/api/v1/auth/invite-user",
            json={"email": "invitee@tasknest.com"},
            headers=_bearer(ctx.admin_token),
        )
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "duplicate_invite"

        accepted = client.post(
            "/api/v1/auth/accept-invite",
            json={"token": token, "name": "Invitee", "password": "invitee-pass"},
        )
        assert accepted.status_code == 201, accepted.text
        assert accepted.json()["user"]["department"] == "QA"
        assert accepted.json()["user"]["last_login"] is not None

        again = client.post(
            "/api/v1/auth/accept-invite",
            json={"token": token, "name": "Invitee", "password": "invitee-pass"},
        )
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "token_already_used"

        exists = client.post(
            "/api/v1/auth/invite-user",
            json={"email": "invitee@tasknest.com"},
            headers=_bearer(ctx.admin_token),
        )
        assert exists.status_code == 409
        assert exists.json()["error"]["code"] == "principal_exists"

    def test_invite_requires_admin(self, api_client) -> None:
        client, ctx = api_client
        ctx.sessions.credentials.create_principal("worker@tasknest.com", "Worker", DEFAULT_PASSWORD)
        token = _login(client, "worker@tasknest.com").json()["access_token"]
        resp = client.post(
            "/api/v1/auth/invite-user",
            json={"email": "friend@tasknest.com"},
            headers=_bearer(token),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"


class TestVerifyAndActivation:
    def test_verify(self, api_client) -> None:
        client, ctx = api_client
        resp = client.get("/api/v1/auth/verify", headers=_bearer(ctx.admin_token))
        assert resp.status_code == 200
        assert resp.json()["id"] == ctx.admin.id

    def test_verify_rejects_garbage(self, api_client) -> None:
        client, _ctx = api_client
        resp = client.get("/api/v1/auth/verify", headers=_bearer("garbage"))
        assert resp.status_code == 401

    def test_deactivate_locks_out_user(self, api_client) -> None:
        client, ctx = api_client
        p = ctx.sessions.credentials.create_principal("leaver@tasknest.com", "Leaver", DEFAULT_PASSWORD)
        pair = _login(client, "leaver@tasknest.com").json()

        resp = client.patch(
            f"/api/v1/auth/users/{p.id}/active",
            json={"is_active": False},
            headers=_bearer(ctx.admin_token),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["is_active"] is False

        assert client.get("/api/v1/auth/verify", headers=_bearer(pair["access_token"])).status_code == 401
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]}).status_code == 401

    def test_self_deactivation_refused(self, api_client) -> None:
        client, ctx = api_client
        resp = client.patch(
            f"/api/v1/auth/users/{ctx.admin.id}/active",
            json={"is_active": False},
            headers=_bearer(ctx.admin_token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "policy_violation"

    def test_unknown_user(self, api_client) -> None:
        client, ctx = api_client
        resp = client.patch(
            "/api/v1/auth/users/99999/active",
            json={"is_active": False},
            headers=_bearer(ctx.admin_token),
        )
        assert resp.status_code == 404
