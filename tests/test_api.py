"""HTTP surface: envelopes, cookies, guards and end-to-end flows."""

from bkeep_auth.service.mfa import generate_totp

from conftest import PASSWORD


def _login(client, email, password=PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestEnvelope:
    def test_login_sets_cookies_and_returns_session(self, client, make_user, tenant):
        make_user("ada@example.com")

        resp = _login(client, "ada@example.com")

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["statusCode"] == 200
        assert body["message"] == "login successful"
        assert "errors" not in body
        data = body["data"]
        assert data["user"]["email"] == "ada@example.com"
        assert data["user"]["selectedTenantId"] == tenant.id
        assert {"accessToken", "refreshToken"} <= set(data)

        cookies = resp.headers.get_list("set-cookie")
        for name in ("accessToken", "refreshToken", "session"):
            header = next(c for c in cookies if c.startswith(f"{name}="))
            assert "HttpOnly" in header
            assert "SameSite=lax" in header
            assert "Path=/" in header
        assert resp.headers["Cache-Control"] == "no-store"

    def test_mfa_pending_is_a_success_without_tokens(self, client, make_user, outbox):
        make_user("ada@example.com", mfa_enabled=True)

        resp = _login(client, "ada@example.com")

        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "MFA verification required"
        assert body["data"] == {"requiresMfa": True, "mfaType": "email", "email": "ada@example.com"}
        assert "set-cookie" not in resp.headers

        code = outbox[0]["context"]["otpCode"]
        verified = client.post(
            "/api/v1/auth/mfa/verify", json={"email": "ada@example.com", "code": code}
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["accessToken"]

    def test_bad_credentials(self, client, make_user):
        make_user("ada@example.com")
        resp = _login(client, "ada@example.com", "wrong-password")
        assert resp.status_code == 401
        assert resp.json() == {
            "success": False,
            "statusCode": 401,
            "message": "invalid email or password",
        }

    def test_validation_errors_are_field_scoped(self, client):
        resp = client.post("/api/v1/auth/login", json={"email": "not-an-email"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["message"] == "validation failed"
        fields = {e["field"] for e in body["errors"]}
        assert fields == {"email", "password"}

    def test_weak_password_message(self, client):
        resp = client.post(
            "/api/v1/auth/reset-password",
            json={"email": "ada@example.com", "token": "t", "password": "short"},
        )
        assert resp.status_code == 400
        assert resp.json()["errors"] == [
            {"field": "password", "message": "password must be at least 8 characters"}
        ]

    def test_missing_token(self, client):
        resp = client.get("/api/v1/auth/profile")
        assert resp.status_code == 401
        assert resp.json()["message"] == "access token required"

    def test_garbage_token(self, client):
        resp = client.get("/api/v1/auth/profile", headers=_bearer("garbage"))
        assert resp.status_code == 401

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/api/v1/nowhere")
        assert resp.status_code == 404
        assert resp.json()["success"] is False
        assert resp.json()["statusCode"] == 404


class TestPlumbing:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_request_id_is_echoed_or_generated(self, client):
        echoed = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert echoed.headers["X-Request-ID"] == "req-123"
        generated = client.get("/healthz")
        assert generated.headers["X-Request-ID"]
        assert generated.headers["X-Frame-Options"] == "DENY"
        assert generated.headers["X-Content-Type-Options"] == "nosniff"


class TestSessionLifecycle:
    def test_refresh_from_cookie_then_logout(self, client, runtime, make_user):
        user = make_user("ada@example.com")
        first = _login(client, "ada@example.com").json()["data"]

        rotated = client.post("/api/v1/auth/refresh-token")
        assert rotated.status_code == 200
        second = rotated.json()["data"]
        assert second["refreshToken"] != first["refreshToken"]

        replay = client.post(
            "/api/v1/auth/refresh-token", json={"refreshToken": first["refreshToken"]}
        )
        assert replay.status_code == 401

        out = client.post("/api/v1/auth/logout", headers=_bearer(second["accessToken"]))
        assert out.status_code == 200
        cleared = out.headers.get_list("set-cookie")
        assert all("Max-Age=0" in c for c in cleared)
        assert len(cleared) == 3
        assert runtime.store.list_refresh_tokens(user.id) == []

    def test_profile_and_password_change(self, client, make_user, outbox):
        make_user("ada@example.com")
        token = _login(client, "ada@example.com").json()["data"]["accessToken"]

        updated = client.put(
            "/api/v1/auth/profile", json={"name": "Ada L."}, headers=_bearer(token)
        )
        assert updated.json()["data"]["name"] == "Ada L."

        rejected = client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": "nope", "newPassword": "Brand-New-Secret-7"},
            headers=_bearer(token),
        )
        assert rejected.status_code == 400

        changed = client.post(
            "/api/v1/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "Brand-New-Secret-7"},
            headers=_bearer(token),
        )
        assert changed.status_code == 200
        assert _login(client, "ada@example.com", "Brand-New-Secret-7").status_code == 200

    def test_forgot_password_never_reveals_accounts(self, client, outbox):
        resp = client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert resp.status_code == 200
        assert resp.json()["message"].startswith("If an account exists")
        assert outbox == []


class TestTotpRoutes:
    def test_enroll_login_and_download(self, client, make_user, outbox):
        make_user("ada@example.com")
        token = _login(client, "ada@example.com").json()["data"]["accessToken"]

        setup = client.post("/api/v1/auth/totp/setup", headers=_bearer(token)).json()["data"]
        verify = client.post(
            "/api/v1/auth/totp/verify",
            json={"code": generate_totp(setup["secret"])},
            headers=_bearer(token),
        )
        assert verify.json()["data"] == {"mfaEnabled": True, "mfaType": "totp"}

        challenge = _login(client, "ada@example.com").json()
        assert challenge["data"]["mfaType"] == "totp"

        signed_in = client.post(
            "/api/v1/auth/totp/login",
            json={
                "email": "ada@example.com",
                "code": setup["backupCodes"][0],
                "isBackupCode": True,
            },
        )
        assert signed_in.status_code == 200

        download = client.get("/api/v1/auth/totp/backup-codes/download", headers=_bearer(token))
        assert download.status_code == 200
        assert download.headers["content-type"].startswith("text/plain")
        assert 'filename="bkeep-backup-codes.txt"' in download.headers["content-disposition"]
        assert setup["backupCodes"][0] not in download.text
        assert setup["backupCodes"][1] in download.text


class TestPasskeyRoutes:
    def test_register_and_sign_in(self, client, make_user, soft_authenticator):
        make_user("ada@example.com")
        token = _login(client, "ada@example.com").json()["data"]["accessToken"]
        device = soft_authenticator()

        options = client.post(
            "/api/v1/passkeys/register/options", headers=_bearer(token)
        ).json()["data"]
        created = client.post(
            "/api/v1/passkeys/register/verify",
            json={"credential": device.register(options), "name": "Laptop"},
            headers=_bearer(token),
        )
        assert created.status_code == 201
        assert created.json()["data"]["name"] == "Laptop"

        login_options = client.post(
            "/api/v1/passkeys/login/options", json={"email": "ada@example.com"}
        ).json()["data"]
        signed_in = client.post(
            "/api/v1/passkeys/login/verify",
            json={"credential": device.assertion(login_options)},
        )
        assert signed_in.status_code == 200
        assert signed_in.json()["data"]["user"]["email"] == "ada@example.com"

        stats = client.get("/api/v1/passkeys/stats", headers=_bearer(token)).json()["data"]
        assert stats["total"] == 1
        assert stats["lastUsed"] is not None

    def test_usernameless_options_without_body(self, client):
        resp = client.post("/api/v1/passkeys/login/options")
        assert resp.status_code == 200
        assert resp.json()["data"]["challenge"]


class TestGuards:
    def test_invitation_routes_need_manager(self, client, make_user):
        make_user("viewer@example.com", role="viewer")
        token = _login(client, "viewer@example.com").json()["data"]["accessToken"]
        resp = client.get("/api/v1/users/invitations", headers=_bearer(token))
        assert resp.status_code == 403
        assert resp.json()["message"] == "unauthorized access"

    def test_inactive_tenant_blocks_tenant_routes(self, client, make_user, tenant):
        make_user("owner@example.com")
        token = _login(client, "owner@example.com").json()["data"]["accessToken"]
        tenant.is_active = False
        resp = client.get("/api/v1/users/invitations", headers=_bearer(token))
        assert resp.status_code == 403
        assert resp.json()["message"] == "tenant context required"

    def test_tenant_creation_is_superadmin_only(self, client, make_user):
        make_user("owner@example.com")
        token = _login(client, "owner@example.com").json()["data"]["accessToken"]
        resp = client.post(
            "/api/v1/tenants",
            json={"name": "Globex", "schemaName": "tenant_globex"},
            headers=_bearer(token),
        )
        assert resp.status_code == 403

    def test_superadmin_creates_tenant(self, client, make_user):
        make_user("root@example.com", role="superadmin")
        token = _login(client, "root@example.com").json()["data"]["accessToken"]
        resp = client.post(
            "/api/v1/tenants",
            json={"name": "Globex", "schemaName": "tenant_globex"},
            headers=_bearer(token),
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["schemaName"] == "tenant_globex"

        duplicate = client.post(
            "/api/v1/tenants",
            json={"name": "Globex", "schemaName": "tenant_globex"},
            headers=_bearer(token),
        )
        assert duplicate.status_code == 409


class TestInvitationRoutes:
    def test_invite_accept_and_sign_in(self, client, runtime, make_user, outbox):
        make_user("owner@example.com")
        token = _login(client, "owner@example.com").json()["data"]["accessToken"]
        role_id = runtime.store.get_role_by_name("bookkeeper").id

        created = client.post(
            "/api/v1/users/invitations",
            json={"email": "new@example.com", "name": "New Hire", "roleId": role_id},
            headers=_bearer(token),
        )
        assert created.status_code == 201
        invitation = created.json()["data"]
        assert invitation["role"]["name"] == "bookkeeper"
        assert runtime.store.list_audit("user.invited")

        listing = client.get("/api/v1/users/invitations", headers=_bearer(token)).json()["data"]
        assert listing["total"] == 1

        invite_token = outbox[-1]["context"]["acceptUrl"].split("token=")[1]
        preview = client.post("/api/v1/users/invitations/verify", json={"token": invite_token})
        assert preview.json()["data"]["requiresPassword"] is True

        accepted = client.post(
            "/api/v1/users/invitations/accept",
            json={"token": invite_token, "password": "Fresh-Start-2024"},
        )
        assert accepted.status_code == 200

        # invited users start with email MFA switched on
        pending = _login(client, "new@example.com", "Fresh-Start-2024").json()
        assert pending["data"]["mfaType"] == "email"

    def test_revoke_twice(self, client, runtime, make_user, outbox):
        make_user("owner@example.com")
        token = _login(client, "owner@example.com").json()["data"]["accessToken"]
        role_id = runtime.store.get_role_by_name("viewer").id
        invitation_id = client.post(
            "/api/v1/users/invitations",
            json={"email": "new@example.com", "name": "New Hire", "roleId": role_id},
            headers=_bearer(token),
        ).json()["data"]["id"]

        first = client.delete(f"/api/v1/users/invitations/{invitation_id}", headers=_bearer(token))
        second = client.delete(f"/api/v1/users/invitations/{invitation_id}", headers=_bearer(token))

        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["message"] == "invitation already revoked"


class TestTenantSwitchRoute:
    def test_switch_reissues_cookies(self, client, runtime, make_user, tenant):
        user = make_user("ada@example.com")
        second = runtime.store.create_tenant("Second", "tenant_second")
        runtime.store.add_membership(user.id, second.id)
        runtime.store.sync_user_roles(
            user.id, second.id, [runtime.store.get_role_by_name("viewer").id]
        )
        first = _login(client, "ada@example.com").json()["data"]

        resp = client.post(f"/api/v1/tenants/{second.id}/switch")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user"]["selectedTenantId"] == second.id
        assert data["user"]["role"]["name"] == "viewer"
        assert runtime.store.get_valid_refresh_token(first["refreshToken"]) is None

    def test_role_update_route(self, client, runtime, make_user):
        make_user("owner@example.com")
        target = make_user("clerk@example.com", role="viewer")
        token = _login(client, "owner@example.com").json()["data"]["accessToken"]
        accountant = runtime.store.get_role_by_name("accountant").id

        resp = client.put(
            f"/api/v1/users/{target.id}/roles",
            json={"roleIds": [accountant]},
            headers=_bearer(token),
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["role"]["name"] == "accountant"

    def test_role_update_route_stays_in_selected_tenant(self, client, runtime, make_user):
        make_user("owner@example.com")
        other = runtime.store.create_tenant("Other Books", "tenant_other")
        victim = make_user("boss@other.example.com", role="admin", target=other)
        token = _login(client, "owner@example.com").json()["data"]["accessToken"]
        viewer = runtime.store.get_role_by_name("viewer").id

        resp = client.put(
            f"/api/v1/users/{victim.id}/roles",
            json={"roleIds": [viewer]},
            headers=_bearer(token),
        )

        assert resp.status_code == 403
        (grant,) = runtime.store.user_roles_in_tenant(victim.id, other.id)
        assert grant.role.name == "admin"
