"""
tests/test_api_routes.py -- Integration tests for the user and admin API routes.

These tests exercise the full stack: FastAPI routing -> bearer dependency ->
CredentialLifecycle -> PrincipalStore -> response model serialization, with
the RecordingTransport standing in for SMTP. Unit testing the route functions
would miss the exception handlers and the error envelope.

Coverage:
  - Registration: 201, code delivered, verify returns token, duplicate 409,
    short password 400 "invalid", malformed OTP 422, delivery failure 503
  - Login: 200 with no-store, wrong password / unknown email 401 bad_credentials,
    unverified 401 unauthorized
  - Password reset: forgot -> verify (non-consuming) -> reset -> reuse fails
  - Resend cooldown: 429 rate_limited with Retry-After
  - Authenticated routes: /users/me, /users/change-password, 401 without token
  - Admin: login pointer replacement, logout, create admin, kind separation
  - Passwords over 72 UTF-8 bytes: 400 "invalid" on register, reset, change
  - Account management: PUT /users/me, admin-only user and admin CRUD,
    401 without an admin token, admin self-delete refused

Fixtures used (from conftest.py):
  - api_client: ApiHarness(client, store, transport, clock, lifecycle).
    One harness per module; every test uses its own email address.
"""

from __future__ import annotations

from auth.models import OtpPurpose, PrincipalKind


def _register(api, email: str, password: str = "secret1", phone: str | None = None):
    body = {"name": "Ann", "email": email, "password": password}
    if phone:
        body["phone"] = phone
    return api.client.post("/api/v1/users/register", json=body)


def _register_verified(api, email: str, password: str = "secret1") -> str:
    """Register and verify; return the session token."""
    assert _register(api, email, password).status_code == 201
    resp = api.client.post(
        "/api/v1/users/verify-registration-otp",
        json={"email": email, "otp": api.transport.last_code(email)},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _admin_token(api, username: str, email: str, password: str = "adminpass") -> str:
    if api.store.get_admin_by_email(email) is None:
        api.lifecycle.create_admin(username, email, password)
    resp = api.client.post("/api/v1/admin/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


class TestRegistrationRoutes:
    def test_register_and_verify(self, api_client) -> None:
        api = api_client
        resp = _register(api, "reg1@acme.io", phone="5550001")
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["is_verified"] is False
        assert "hashed_password" not in data

        wrong = api.client.post("/api/v1/users/verify-registration-otp", json={"email": "reg1@acme.io", "otp": "0000"})
        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "mismatch"

        ok = api.client.post(
            "/api/v1/users/verify-registration-otp",
            json={"email": "reg1@acme.io", "otp": api.transport.last_code("reg1@acme.io")},
        )
        assert ok.status_code == 200
        assert ok.headers["cache-control"] == "no-store"
        body = ok.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["is_verified"] is True
        assert body["expires_in"] == 30 * 24 * 3600

    def test_duplicate_email_is_409(self, api_client) -> None:
        api = api_client
        assert _register(api, "dup@acme.io").status_code == 201
        sent_before = len(api.transport.sent)
        resp = _register(api, "DUP@acme.io")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"
        assert len(api.transport.sent) == sent_before

    def test_short_password_is_400_invalid(self, api_client) -> None:
        resp = _register(api_client, "short@acme.io", password="12345")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid"

    def test_malformed_otp_is_422(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/users/verify-registration-otp", json={"email": "reg1@acme.io", "otp": "12ab"}
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_delivery_failure_is_503_and_rolls_back(self, api_client) -> None:
        api = api_client
        api.transport.fail = True
        try:
            resp = _register(api, "nomail@acme.io")
        finally:
            api.transport.fail = False
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "unavailable"
        assert api.store.get_user_by_email("nomail@acme.io") is None

    def test_immediate_resend_is_429_with_retry_after(self, api_client) -> None:
        api = api_client
        assert _register(api, "cool@acme.io").status_code == 201
        resp = api.client.post("/api/v1/users/resend-registration-otp", json={"email": "cool@acme.io"})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) > 0

        api.clock.advance(seconds=31)
        resp = api.client.post("/api/v1/users/resend-registration-otp", json={"email": "cool@acme.io"})
        assert resp.status_code == 200

    def test_resend_unknown_email_is_404(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/users/resend-registration-otp", json={"email": "ghost@acme.io"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestLoginRoutes:
    def test_login_success(self, api_client) -> None:
        api = api_client
        _register_verified(api, "login1@acme.io")
        resp = api.client.post("/api/v1/users/login", json={"email": "login1@acme.io", "password": "secret1"})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        assert resp.json()["user"]["last_login"] is not None

    def test_wrong_password_and_unknown_email_look_the_same(self, api_client) -> None:
        api = api_client
        _register_verified(api, "login2@acme.io")
        wrong = api.client.post("/api/v1/users/login", json={"email": "login2@acme.io", "password": "nope123"})
        ghost = api.client.post("/api/v1/users/login", json={"email": "ghost2@acme.io", "password": "nope123"})
        assert wrong.status_code == ghost.status_code == 401
        assert wrong.json() == ghost.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"

    def test_unverified_login_is_401_unauthorized(self, api_client) -> None:
        api = api_client
        assert _register(api, "unverified@acme.io").status_code == 201
        resp = api.client.post("/api/v1/users/login", json={"email": "unverified@acme.io", "password": "secret1"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


class TestPasswordResetRoutes:
    def test_two_phase_reset(self, api_client) -> None:
        api = api_client
        email = "reset1@acme.io"
        _register_verified(api, email)

        assert api.client.post("/api/v1/users/forgot-password", json={"email": email}).status_code == 200
        code = api.transport.last_code(email)

        for _ in range(2):
            resp = api.client.post("/api/v1/users/verify-reset-otp", json={"email": email, "otp": code})
            assert resp.status_code == 200
        uid = api.store.get_user_by_email(email).id
        assert api.store.get_otp(PrincipalKind.user, uid, OtpPurpose.password_reset).is_consumed is False

        body = {"email": email, "otp": code, "new_password": "newpass1"}
        assert api.client.post("/api/v1/users/reset-password", json=body).status_code == 200
        again = api.client.post("/api/v1/users/reset-password", json={**body, "new_password": "other123"})
        assert again.status_code in (400, 404)

        login = api.client.post("/api/v1/users/login", json={"email": email, "password": "newpass1"})
        assert login.status_code == 200

    def test_expired_reset_code_is_400(self, api_client) -> None:
        api = api_client
        email = "reset2@acme.io"
        _register_verified(api, email)
        api.client.post("/api/v1/users/forgot-password", json={"email": email})
        code = api.transport.last_code(email)
        api.clock.advance(minutes=31)
        resp = api.client.post("/api/v1/users/verify-reset-otp", json={"email": email, "otp": code})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "otp_expired"

    def test_forgot_unknown_email_is_404(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/users/forgot-password", json={"email": "nobody@acme.io"})
        assert resp.status_code == 404


class TestAuthenticatedUserRoutes:
    def test_me_requires_token(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_with_bad_token(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/users/me", headers=_bearer("not-a-token"))
        assert resp.status_code == 401

    def test_me(self, api_client) -> None:
        token = _register_verified(api_client, "me@acme.io")
        resp = api_client.client.get("/api/v1/users/me", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["email"] == "me@acme.io"

    def test_change_password(self, api_client) -> None:
        api = api_client
        token = _register_verified(api, "change@acme.io")
        bad = api.client.post(
            "/api/v1/users/change-password",
            json={"current_password": "wrong12", "new_password": "changed1"},
            headers=_bearer(token),
        )
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "mismatch"

        ok = api.client.post(
            "/api/v1/users/change-password",
            json={"current_password": "secret1", "new_password": "changed1"},
            headers=_bearer(token),
        )
        assert ok.status_code == 200
        login = api.client.post("/api/v1/users/login", json={"email": "change@acme.io", "password": "changed1"})
        assert login.status_code == 200


class TestAdminRoutes:
    def test_login_replaces_pointer_and_logout_clears(self, api_client) -> None:
        api = api_client
        t1 = _admin_token(api, "root", "root@acme.io")
        t2 = _admin_token(api, "root", "root@acme.io")
        admin = api.store.get_admin_by_email("root@acme.io")
        assert admin.token == t2 != t1

        resp = api.client.post("/api/v1/admin/logout", headers=_bearer(t2))
        assert resp.status_code == 200
        assert api.store.get_admin_by_email("root@acme.io").token is None

    def test_admin_me_never_exposes_token(self, api_client) -> None:
        token = _admin_token(api_client, "ops", "ops@acme.io")
        resp = api_client.client.get("/api/v1/admin/me", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["username"] == "ops"
        assert "token" not in resp.json()

    def test_admin_bad_credentials(self, api_client) -> None:
        _admin_token(api_client, "sec", "sec@acme.io")
        resp = api_client.client.post("/api/v1/admin/login", json={"email": "sec@acme.io", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_deactivated_admin_is_refused(self, api_client) -> None:
        api = api_client
        admin = api.lifecycle.create_admin("gone", "gone@acme.io", "adminpass")
        api.store.update_admin(admin.id, is_active=False)
        resp = api.client.post("/api/v1/admin/login", json={"email": "gone@acme.io", "password": "adminpass"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_create_admin_requires_admin_token(self, api_client) -> None:
        api = api_client
        body = {"username": "second", "email": "second@acme.io", "password": "adminpass"}
        assert api.client.post("/api/v1/admin", json=body).status_code == 401

        user_token = _register_verified(api, "notadmin@acme.io")
        assert api.client.post("/api/v1/admin", json=body, headers=_bearer(user_token)).status_code == 401

        admin_token = _admin_token(api, "boss", "boss@acme.io")
        created = api.client.post("/api/v1/admin", json=body, headers=_bearer(admin_token))
        assert created.status_code == 201
        assert created.json()["username"] == "second"

        dup = api.client.post("/api/v1/admin", json=body, headers=_bearer(admin_token))
        assert dup.status_code == 409

    def test_admin_token_rejected_on_user_route(self, api_client) -> None:
        token = _admin_token(api_client, "ops2", "ops2@acme.io")
        assert api_client.client.get("/api/v1/users/me", headers=_bearer(token)).status_code == 401


class TestPasswordByteLimit:
    def test_register_with_80_char_password_is_400_invalid(self, api_client) -> None:
        api = api_client
        resp = _register(api, "long@acme.io", password="p" * 80)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid"
        assert api.store.get_user_by_email("long@acme.io") is None

    def test_reset_and_change_with_80_char_password(self, api_client) -> None:
        api = api_client
        email = "long2@acme.io"
        token = _register_verified(api, email)

        changed = api.client.post(
            "/api/v1/users/change-password",
            json={"current_password": "secret1", "new_password": "p" * 80},
            headers=_bearer(token),
        )
        assert changed.status_code == 400
        assert changed.json()["error"]["code"] == "invalid"

        api.client.post("/api/v1/users/forgot-password", json={"email": email})
        body = {"email": email, "otp": api.transport.last_code(email), "new_password": "é" * 40}
        reset = api.client.post("/api/v1/users/reset-password", json=body)
        assert reset.status_code == 400
        assert reset.json()["error"]["code"] == "invalid"

        login = api.client.post("/api/v1/users/login", json={"email": email, "password": "secret1"})
        assert login.status_code == 200


class TestProfileRoutes:
    def test_update_me(self, api_client) -> None:
        api = api_client
        token = _register_verified(api, "profile@acme.io")
        before = api.store.get_user_by_email("profile@acme.io").hashed_password

        resp = api.client.put("/api/v1/users/me", json={"name": "Annie", "phone": "5550101"}, headers=_bearer(token))
        assert resp.status_code == 200, resp.text
        assert resp.json()["name"] == "Annie"
        assert resp.json()["phone"] == "5550101"
        assert api.store.get_user_by_email("profile@acme.io").hashed_password == before

        login = api.client.post("/api/v1/users/login", json={"email": "profile@acme.io", "password": "secret1"})
        assert login.status_code == 200

    def test_update_me_taken_phone_is_409(self, api_client) -> None:
        api = api_client
        assert _register(api, "phoneowner@acme.io", phone="5550202").status_code == 201
        token = _register_verified(api, "phonetaker@acme.io")
        resp = api.client.put("/api/v1/users/me", json={"phone": "5550202"}, headers=_bearer(token))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_update_me_requires_user_token(self, api_client) -> None:
        assert api_client.client.put("/api/v1/users/me", json={"name": "X"}).status_code == 401


class TestUserManagementRoutes:
    def test_requires_admin_token(self, api_client) -> None:
        api = api_client
        user_token = _register_verified(api, "plainuser@acme.io")
        uid = api.store.get_user_by_email("plainuser@acme.io").id
        for method, path in (
            ("GET", "/api/v1/users"),
            ("GET", f"/api/v1/users/{uid}"),
            ("DELETE", f"/api/v1/users/{uid}"),
        ):
            assert api.client.request(method, path).status_code == 401
            assert api.client.request(method, path, headers=_bearer(user_token)).status_code == 401
        resp = api.client.put(f"/api/v1/users/{uid}", json={"is_active": False}, headers=_bearer(user_token))
        assert resp.status_code == 401
        assert api.store.get_user_by_id(uid).is_active is True

    def test_list_get_deactivate_delete(self, api_client) -> None:
        api = api_client
        admin = _bearer(_admin_token(api, "usermgr", "usermgr@acme.io"))
        _register_verified(api, "managed@acme.io")
        uid = api.store.get_user_by_email("managed@acme.io").id

        listed = api.client.get("/api/v1/users", headers=admin)
        assert listed.status_code == 200
        assert uid in [u["id"] for u in listed.json()]
        assert all("hashed_password" not in u for u in listed.json())

        one = api.client.get(f"/api/v1/users/{uid}", headers=admin)
        assert one.json()["email"] == "managed@acme.io"

        off = api.client.put(f"/api/v1/users/{uid}", json={"is_active": False}, headers=admin)
        assert off.status_code == 200
        assert off.json()["is_active"] is False
        login = api.client.post("/api/v1/users/login", json={"email": "managed@acme.io", "password": "secret1"})
        assert login.status_code == 401

        assert api.client.delete(f"/api/v1/users/{uid}", headers=admin).status_code == 200
        assert api.client.get(f"/api/v1/users/{uid}", headers=admin).status_code == 404
        assert api.client.delete(f"/api/v1/users/{uid}", headers=admin).status_code == 404


class TestAdminManagementRoutes:
    def test_requires_admin_token(self, api_client) -> None:
        api = api_client
        user_token = _register_verified(api, "notadmin2@acme.io")
        assert api.client.get("/api/v1/admin/all").status_code == 401
        assert api.client.get("/api/v1/admin/all", headers=_bearer(user_token)).status_code == 401
        assert api.client.put("/api/v1/admin/1", json={"is_active": False}).status_code == 401
        assert api.client.delete("/api/v1/admin/1", headers=_bearer(user_token)).status_code == 401

    def test_list_update_and_delete_admins(self, api_client) -> None:
        api = api_client
        headers = _bearer(_admin_token(api, "chief", "chief@acme.io"))
        target = api.lifecycle.create_admin("deputy", "deputy@acme.io", "adminpass")

        listed = api.client.get("/api/v1/admin/all", headers=headers)
        assert listed.status_code == 200
        assert {"chief", "deputy"} <= {a["username"] for a in listed.json()}
        assert all("token" not in a for a in listed.json())

        renamed = api.client.put(f"/api/v1/admin/{target.id}", json={"username": "second-chief"}, headers=headers)
        assert renamed.status_code == 200
        assert renamed.json()["username"] == "second-chief"

        taken = api.client.put(f"/api/v1/admin/{target.id}", json={"email": "chief@acme.io"}, headers=headers)
        assert taken.status_code == 409

        deputy_token = _admin_token(api, "second-chief", "deputy@acme.io")
        off = api.client.put(f"/api/v1/admin/{target.id}", json={"is_active": False}, headers=headers)
        assert off.json()["is_active"] is False
        assert api.client.get("/api/v1/admin/me", headers=_bearer(deputy_token)).status_code == 401

        assert api.client.delete(f"/api/v1/admin/{target.id}", headers=headers).status_code == 200
        assert api.client.delete(f"/api/v1/admin/{target.id}", headers=headers).status_code == 404

    def test_admin_cannot_delete_self(self, api_client) -> None:
        api = api_client
        token = _admin_token(api, "solo", "solo@acme.io")
        me = api.client.get("/api/v1/admin/me", headers=_bearer(token)).json()
        resp = api.client.delete(f"/api/v1/admin/{me['id']}", headers=_bearer(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid"
        assert api.store.get_admin_by_email("solo@acme.io") is not None
