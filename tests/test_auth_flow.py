"""Login state machine, token rotation and password lifecycle."""

from urllib.parse import parse_qs, urlparse

import pytest

from bkeep_auth.service.audit import RequestContext
from bkeep_auth.service.auth import (
    FORGOT_PASSWORD_MESSAGE,
    INVALID_CREDENTIALS,
    LoginChallenge,
    SessionResult,
    verify_password,
)
from bkeep_auth.service.errors import AuthenticationError, BadRequestError, ForbiddenError
from bkeep_auth.service.mfa import (
    INVALID_BACKUP_CODE,
    INVALID_OTP_CODE,
    INVALID_TOTP_CODE,
    generate_totp,
)

from conftest import PASSWORD

CONTEXT = RequestContext(ip="10.0.0.7", user_agent="pytest", method="POST", endpoint="/login")


def _reset_token(message):
    query = parse_qs(urlparse(message["context"]["resetUrl"]).query)
    return query["token"][0]


class TestLogin:
    async def test_password_login_issues_session(self, runtime, make_user, tenant):
        user = make_user("ada@example.com")

        result = await runtime.auth.login("ADA@example.com ", PASSWORD, CONTEXT)

        assert isinstance(result, SessionResult)
        assert result.user.user.id == user.id
        claims = await runtime.tokens.verify_access(result.access_token)
        assert claims["selectedTenantId"] == tenant.id
        assert claims["role"] == "admin"

        (record,) = runtime.store.list_refresh_tokens(user.id)
        assert record.token == result.refresh_token
        assert record.ip_address == "10.0.0.7"
        assert runtime.store.get_session(result.session_id).user_id == user.id
        assert runtime.store.get_user(user.id).last_logged_in_at is not None
        assert runtime.store.list_audit("user.logged_in")[0].context["ip"] == "10.0.0.7"

    async def test_unknown_email_and_bad_password_look_alike(self, runtime, make_user):
        make_user("ada@example.com")
        for email, password in (("ghost@example.com", PASSWORD), ("ada@example.com", "nope")):
            with pytest.raises(AuthenticationError) as excinfo:
                await runtime.auth.login(email, password)
            assert excinfo.value.message == INVALID_CREDENTIALS

    async def test_unverified_user_rejected(self, runtime, make_user):
        make_user("ada@example.com", is_verified=False)
        with pytest.raises(AuthenticationError, match="email not verified"):
            await runtime.auth.login("ada@example.com", PASSWORD)

    async def test_deactivated_user_forbidden(self, runtime, make_user):
        make_user("ada@example.com", is_active=False)
        with pytest.raises(ForbiddenError, match="account deactivated"):
            await runtime.auth.login("ada@example.com", PASSWORD)

    async def test_email_mfa_challenge(self, runtime, make_user, outbox):
        user = make_user("ada@example.com", mfa_enabled=True)

        challenge = await runtime.auth.login("ada@example.com", PASSWORD, CONTEXT)

        assert isinstance(challenge, LoginChallenge)
        assert challenge.to_response() == {
            "requiresMfa": True,
            "mfaType": "email",
            "email": "ada@example.com",
        }
        assert runtime.store.list_refresh_tokens(user.id) == []
        (message,) = outbox
        assert message["kind"] == "mfa-otp"

        session = await runtime.auth.verify_email_mfa(
            "ada@example.com", message["context"]["otpCode"], CONTEXT
        )
        assert session.user.user.id == user.id

    async def test_email_mfa_wrong_code(self, runtime, make_user, outbox):
        make_user("ada@example.com", mfa_enabled=True)
        await runtime.auth.login("ada@example.com", PASSWORD)
        wrong = "999999" if outbox[0]["context"]["otpCode"] != "999999" else "888888"
        with pytest.raises(AuthenticationError):
            await runtime.auth.verify_email_mfa("ada@example.com", wrong)

    async def test_email_mfa_failures_are_indistinguishable(self, runtime, make_user, outbox):
        make_user("ada@example.com", mfa_enabled=True)
        make_user("bob@example.com")
        await runtime.auth.login("ada@example.com", PASSWORD)
        wrong = "999999" if outbox[0]["context"]["otpCode"] != "999999" else "888888"

        outcomes = []
        for email in ("ghost@example.com", "bob@example.com", "ada@example.com"):
            with pytest.raises(AuthenticationError) as excinfo:
                await runtime.auth.verify_email_mfa(email, wrong)
            outcomes.append((excinfo.value.status_code, excinfo.value.message))

        assert outcomes == [(401, INVALID_OTP_CODE)] * 3

    async def test_totp_login_failures_are_indistinguishable(self, runtime, make_user):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        await runtime.mfa.verify_and_enable_totp(user, generate_totp(setup["secret"]))
        make_user("bob@example.com", mfa_enabled=True)
        wrong = "000000" if generate_totp(setup["secret"]) != "000000" else "111111"

        for is_backup, expected in ((False, INVALID_TOTP_CODE), (True, INVALID_BACKUP_CODE)):
            for email in ("ghost@example.com", "bob@example.com", "ada@example.com"):
                with pytest.raises(AuthenticationError) as excinfo:
                    await runtime.auth.verify_totp_login(email, wrong, is_backup_code=is_backup)
                assert excinfo.value.message == expected

    async def test_email_mfa_checks_code_before_account_state(self, runtime, make_user, outbox):
        make_user("ada@example.com", mfa_enabled=True)
        await runtime.auth.login("ada@example.com", PASSWORD)
        user = runtime.store.get_user_by_email("ada@example.com")
        runtime.store.update_user(user.id, is_active=False)

        with pytest.raises(AuthenticationError):
            await runtime.auth.verify_email_mfa("ada@example.com", "not-a-code")
        with pytest.raises(ForbiddenError, match="account deactivated"):
            await runtime.auth.verify_email_mfa("ada@example.com", outbox[0]["context"]["otpCode"])

    async def test_totp_challenge_takes_precedence(self, runtime, make_user, outbox):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        await runtime.mfa.verify_and_enable_totp(user, generate_totp(setup["secret"]))
        outbox.clear()

        challenge = await runtime.auth.login("ada@example.com", PASSWORD)

        assert challenge.mfa_type == "totp"
        assert outbox == []
        session = await runtime.auth.verify_totp_login(
            "ada@example.com", generate_totp(setup["secret"])
        )
        assert session.user.user.id == user.id

    async def test_totp_login_with_backup_code(self, runtime, make_user, outbox):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        await runtime.mfa.verify_and_enable_totp(user, generate_totp(setup["secret"]))
        code = setup["backupCodes"][0]

        await runtime.auth.verify_totp_login("ada@example.com", code, is_backup_code=True)
        with pytest.raises(AuthenticationError):
            await runtime.auth.verify_totp_login("ada@example.com", code, is_backup_code=True)

    async def test_unverified_totp_does_not_gate_login(self, runtime, make_user):
        """Setup without verification leaves the account on password-only login."""
        make_user("ada@example.com")
        user = runtime.store.get_user_by_email("ada@example.com")
        runtime.mfa.setup_totp(user)

        result = await runtime.auth.login("ada@example.com", PASSWORD)

        assert isinstance(result, SessionResult)
        with pytest.raises(AuthenticationError):
            await runtime.auth.verify_totp_login("ada@example.com", "123456")


class TestRefresh:
    async def test_rotation_is_single_use(self, runtime, make_user):
        user = make_user("ada@example.com")
        first = await runtime.auth.login("ada@example.com", PASSWORD)

        second = await runtime.auth.refresh(first.refresh_token, session_id=first.session_id)

        assert second.refresh_token != first.refresh_token
        assert second.session_id == first.session_id
        with pytest.raises(AuthenticationError, match="invalid token"):
            await runtime.auth.refresh(first.refresh_token)
        assert [r.token for r in runtime.store.list_refresh_tokens(user.id)] == [
            second.refresh_token
        ]

    async def test_refresh_keeps_selected_tenant(self, runtime, make_user):
        user = make_user("ada@example.com")
        other = runtime.store.create_tenant("Second", "tenant_second")
        runtime.store.add_membership(user.id, other.id)
        runtime.store.sync_user_roles(
            user.id, other.id, [runtime.store.get_role_by_name("viewer").id]
        )
        session = await runtime.auth.login("ada@example.com", PASSWORD)
        switched = await runtime.tenants.switch(
            {"id": user.id},
            other.id,
            refresh_token=session.refresh_token,
            session_id=session.session_id,
        )

        rotated = await runtime.auth.refresh(
            switched.refresh_token, session_id=switched.session_id
        )

        assert rotated.user.selected_tenant_id == other.id
        assert rotated.user.role.name == "viewer"

    async def test_access_token_is_not_a_refresh_token(self, runtime, make_user):
        make_user("ada@example.com")
        session = await runtime.auth.login("ada@example.com", PASSWORD)
        with pytest.raises(AuthenticationError):
            await runtime.auth.refresh(session.access_token)

    async def test_missing_token(self, runtime):
        with pytest.raises(AuthenticationError, match="refresh token required"):
            await runtime.auth.refresh(None)

    async def test_deactivated_user_cannot_refresh(self, runtime, make_user):
        user = make_user("ada@example.com")
        session = await runtime.auth.login("ada@example.com", PASSWORD)
        runtime.store.update_user(user.id, is_active=False)
        with pytest.raises(AuthenticationError):
            await runtime.auth.refresh(session.refresh_token)


class TestLogout:
    async def test_logout_revokes_tokens_and_evicts_cache(self, runtime, make_user):
        user = make_user("ada@example.com")
        session = await runtime.auth.login("ada@example.com", PASSWORD)
        claims = await runtime.tokens.verify_access(session.access_token)

        await runtime.auth.logout(
            claims, access_token=session.access_token, session_id=session.session_id
        )

        assert runtime.store.list_refresh_tokens(user.id) == []
        assert runtime.store.get_session(session.session_id) is None
        assert await runtime.tokens.cache.get(session.access_token) is None
        assert runtime.store.list_audit("user.logged_out")[0].actor["id"] == user.id


class TestPasswords:
    async def test_reset_flow(self, runtime, make_user, outbox):
        user = make_user("ada@example.com")
        session = await runtime.auth.login("ada@example.com", PASSWORD)

        message = await runtime.auth.forgot_password("ada@example.com")
        assert message == FORGOT_PASSWORD_MESSAGE
        token = _reset_token(outbox[0])

        await runtime.auth.reset_password("ada@example.com", token, "Brand-New-Secret-7")

        stored = runtime.store.get_user(user.id)
        assert verify_password(stored.password_hash, "Brand-New-Secret-7")
        assert runtime.store.list_refresh_tokens(user.id) == []
        with pytest.raises(AuthenticationError):
            await runtime.auth.refresh(session.refresh_token)
        assert [m["kind"] for m in outbox] == ["password-reset", "password-reset-success"]

        with pytest.raises(BadRequestError, match="invalid or expired reset token"):
            await runtime.auth.reset_password("ada@example.com", token, "Another-Secret-8")

    async def test_only_latest_reset_token_works(self, runtime, make_user, outbox):
        make_user("ada@example.com")
        await runtime.auth.forgot_password("ada@example.com")
        await runtime.auth.forgot_password("ada@example.com")
        stale, fresh = (_reset_token(m) for m in outbox)

        with pytest.raises(BadRequestError):
            await runtime.auth.reset_password("ada@example.com", stale, "Brand-New-Secret-7")
        await runtime.auth.reset_password("ada@example.com", fresh, "Brand-New-Secret-7")

    async def test_unknown_email_gets_same_answer(self, runtime, outbox):
        assert await runtime.auth.forgot_password("ghost@example.com") == FORGOT_PASSWORD_MESSAGE
        assert outbox == []

    async def test_change_password(self, runtime, make_user, outbox):
        user = make_user("ada@example.com")
        session = await runtime.auth.login("ada@example.com", PASSWORD)

        with pytest.raises(BadRequestError):
            await runtime.auth.change_password(user.id, "wrong", "Brand-New-Secret-7")
        await runtime.auth.change_password(user.id, PASSWORD, "Brand-New-Secret-7")

        assert runtime.store.get_valid_refresh_token(session.refresh_token) is None
        relogin = await runtime.auth.login("ada@example.com", "Brand-New-Secret-7")
        assert isinstance(relogin, SessionResult)


class TestProfile:
    async def test_profile_round_trip(self, runtime, make_user, tenant):
        make_user("ada@example.com")
        session = await runtime.auth.login("ada@example.com", PASSWORD)
        claims = await runtime.tokens.verify_access(session.access_token)

        profile = runtime.auth.update_profile(claims, "  Ada Lovelace ")

        assert profile["name"] == "Ada Lovelace"
        assert profile["selectedTenantId"] == tenant.id
        with pytest.raises(BadRequestError):
            runtime.auth.update_profile(claims, "   ")

    def test_email_mfa_toggle(self, runtime, make_user):
        user = make_user("ada@example.com")
        assert runtime.auth.enable_email_mfa(user.id) == {"mfaEnabled": True}
        assert runtime.auth.email_mfa_status(user.id) == {"mfaEnabled": True}
        assert runtime.auth.disable_email_mfa(user.id) == {"mfaEnabled": False}
