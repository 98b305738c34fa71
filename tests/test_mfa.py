"""Tests for TOTP, backup codes and email one-time passwords."""

import base64
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from bkeep_auth.service.errors import AuthenticationError, BadRequestError
from bkeep_auth.service.mfa import (
    BACKUP_CODES_COUNT,
    MfaEngine,
    decode_backup_codes,
    encode_backup_codes,
    generate_backup_codes,
    generate_otp_code,
    generate_totp,
    generate_totp_secret,
    qr_code_data_url,
    totp_uri,
    verify_totp,
)

# RFC 6238 appendix B seed "12345678901234567890"
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


class TestTotpPrimitives:
    @pytest.mark.parametrize(
        "at,expected",
        [(59, "287082"), (1111111109, "081804"), (1234567890, "005924"), (2000000000, "279037")],
    )
    def test_rfc_6238_vectors(self, at, expected):
        assert generate_totp(RFC_SECRET, at) == expected

    def test_secret_is_unpadded_base32_of_160_bits(self):
        secret = generate_totp_secret()
        assert len(secret) == 32
        assert "=" not in secret
        assert len(base64.b32decode(secret)) == 20

    def test_adjacent_steps_accepted(self):
        now = 1_700_000_000
        secret = generate_totp_secret()
        for offset in (-30, 0, 30):
            assert verify_totp(secret, generate_totp(secret, now + offset), now)

    def test_steps_outside_window_rejected(self):
        now = 1_700_000_000
        secret = generate_totp_secret()
        early = generate_totp(secret, now - 60)
        late = generate_totp(secret, now + 60)
        window = {generate_totp(secret, now + o) for o in (-30, 0, 30)}
        if early not in window:
            assert not verify_totp(secret, early, now)
        if late not in window:
            assert not verify_totp(secret, late, now)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_codes_rejected(self, code):
        assert not verify_totp(RFC_SECRET, code, 59)

    def test_provisioning_uri(self):
        uri = totp_uri("SECRET", "ada@example.com")
        parsed = urlparse(uri)
        assert parsed.scheme == "otpauth"
        assert parsed.netloc == "totp"
        assert "BKeep" in parsed.path
        query = parse_qs(parsed.query)
        assert query["secret"] == ["SECRET"]
        assert query["issuer"] == ["BKeep"]
        assert query["period"] == ["30"]

    def test_qr_code_is_png_data_url(self):
        data_url = qr_code_data_url("otpauth://totp/x?secret=ABC")
        prefix = "data:image/png;base64,"
        assert data_url.startswith(prefix)
        assert base64.b64decode(data_url[len(prefix):])[:8] == b"\x89PNG\r\n\x1a\n"


class TestBackupCodePrimitives:
    def test_codes_are_unique_uppercase_hex(self):
        codes = generate_backup_codes()
        assert len(codes) == BACKUP_CODES_COUNT
        assert len(set(codes)) == BACKUP_CODES_COUNT
        for code in codes:
            assert len(code) == 8
            assert code == code.upper()
            int(code, 16)

    def test_decode_tolerates_garbage(self):
        assert decode_backup_codes(None) == []
        assert decode_backup_codes("not json") == []
        assert decode_backup_codes('{"a": 1}') == []
        assert decode_backup_codes(encode_backup_codes(["AB", "CD"])) == ["AB", "CD"]

    def test_otp_is_six_digits(self):
        for _ in range(50):
            code = generate_otp_code()
            assert len(code) == 6 and code.isdigit() and code[0] != "0"


class TestTotpEnrollment:
    async def test_setup_verify_enable(self, runtime, make_user, outbox):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        assert len(setup["backupCodes"]) == BACKUP_CODES_COUNT
        assert setup["qrCode"].startswith("data:image/png;base64,")
        assert runtime.mfa.active_authenticator(user.id) is None

        result = await runtime.mfa.verify_and_enable_totp(
            user, generate_totp(setup["secret"])
        )

        assert result == {"mfaEnabled": True, "mfaType": "totp"}
        assert runtime.store.get_user(user.id).mfa_enabled is True
        assert runtime.mfa.active_authenticator(user.id) is not None
        assert [m["kind"] for m in outbox] == ["totp-setup"]

    def test_secret_encrypted_at_rest(self, runtime, make_user):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        (raw,) = runtime.store.authenticators.values()
        assert raw.secret != setup["secret"]
        assert runtime.store.get_unverified_authenticator(user.id, "totp").secret == setup["secret"]

    async def test_wrong_code_keeps_totp_disabled(self, runtime, make_user):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        wrong = "000000" if generate_totp(setup["secret"]) != "000000" else "111111"
        with pytest.raises(AuthenticationError):
            await runtime.mfa.verify_and_enable_totp(user, wrong)
        assert runtime.mfa.active_authenticator(user.id) is None

    async def test_verify_without_setup(self, runtime, make_user):
        user = make_user("ada@example.com")
        with pytest.raises(BadRequestError, match="TOTP setup required"):
            await runtime.mfa.verify_and_enable_totp(user, "123456")

    async def test_second_setup_rejected_once_enabled(self, runtime, make_user, outbox):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        await runtime.mfa.verify_and_enable_totp(user, generate_totp(setup["secret"]))
        with pytest.raises(BadRequestError, match="already enabled"):
            runtime.mfa.setup_totp(user)

    async def test_disable_clears_authenticator_and_flag(self, runtime, make_user, outbox):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        await runtime.mfa.verify_and_enable_totp(user, generate_totp(setup["secret"]))

        assert runtime.mfa.disable_totp(user) == {"mfaEnabled": False}
        assert runtime.mfa.active_authenticator(user.id) is None
        assert runtime.store.get_user(user.id).mfa_enabled is False
        with pytest.raises(BadRequestError):
            runtime.mfa.disable_totp(user)

    def test_status_reports_mfa_type(self, runtime, make_user):
        user = make_user("ada@example.com")
        assert runtime.mfa.totp_status(user)["mfaType"] is None
        runtime.store.update_user(user.id, mfa_enabled=True)
        status = runtime.mfa.totp_status(runtime.store.get_user(user.id))
        assert status == {"totpEnabled": False, "mfaEnabled": True, "mfaType": "email"}


class TestBackupCodes:
    async def _enrolled(self, runtime, make_user):
        user = make_user("ada@example.com")
        setup = runtime.mfa.setup_totp(user)
        await runtime.mfa.verify_and_enable_totp(user, generate_totp(setup["secret"]))
        return user, setup["backupCodes"]

    async def test_backup_code_is_single_use(self, runtime, make_user, outbox):
        user, codes = await self._enrolled(runtime, make_user)

        runtime.mfa.verify_backup_code(user, codes[0])
        with pytest.raises(AuthenticationError, match="invalid backup code"):
            runtime.mfa.verify_backup_code(user, codes[0])
        assert len(runtime.mfa.remaining_backup_codes(user)) == BACKUP_CODES_COUNT - 1

    async def test_backup_code_normalised(self, runtime, make_user, outbox):
        user, codes = await self._enrolled(runtime, make_user)
        sloppy = f" {codes[1][:4].lower()} {codes[1][4:].lower()} "
        runtime.mfa.verify_backup_code(user, sloppy)
        assert codes[1] not in runtime.mfa.remaining_backup_codes(user)

    async def test_regenerate_replaces_codes(self, runtime, make_user, outbox):
        user, codes = await self._enrolled(runtime, make_user)
        fresh = runtime.mfa.regenerate_backup_codes(user)
        assert set(fresh).isdisjoint(codes)
        with pytest.raises(AuthenticationError):
            runtime.mfa.verify_backup_code(user, codes[2])

    async def test_exhausted_codes_cannot_be_downloaded(self, runtime, make_user, outbox):
        user, codes = await self._enrolled(runtime, make_user)
        for code in codes:
            runtime.mfa.verify_backup_code(user, code)
        with pytest.raises(BadRequestError, match="no backup codes"):
            runtime.mfa.remaining_backup_codes(user)

    async def test_download_text(self, runtime, make_user, outbox):
        user, codes = await self._enrolled(runtime, make_user)
        text = runtime.mfa.backup_codes_text(
            user, codes, generated_at=datetime(2024, 1, 2, tzinfo=timezone.utc)
        )
        assert text.startswith("BKeep - Backup Codes")
        assert f"1. {codes[0]}" in text
        assert "Generated: 2024-01-02T00:00:00+00:00" in text
        assert "Email: ada@example.com" in text


class TestEmailOtp:
    def test_only_latest_otp_is_active(self, runtime, make_user):
        user = make_user("ada@example.com")
        issued = [runtime.mfa.issue_email_otp(user) for _ in range(3)]

        active = runtime.store.active_mfa_otps(user.id)
        assert [o.id for o in active] == [issued[-1].id]
        if issued[0].code != issued[-1].code:
            with pytest.raises(AuthenticationError):
                runtime.mfa.verify_email_otp(user.id, issued[0].code)

    def test_otp_is_single_use(self, runtime, make_user):
        user = make_user("ada@example.com")
        otp = runtime.mfa.issue_email_otp(user)
        runtime.mfa.verify_email_otp(user.id, otp.code)
        with pytest.raises(AuthenticationError, match="invalid or expired OTP code"):
            runtime.mfa.verify_email_otp(user.id, otp.code)

    def test_expired_otp_rejected(self, runtime, make_user):
        user = make_user("ada@example.com")
        engine = MfaEngine(runtime.store, runtime.notifications, otp_expiry_minutes=0)
        otp = engine.issue_email_otp(user)
        with pytest.raises(AuthenticationError):
            engine.verify_email_otp(user.id, otp.code)

    async def test_send_email_otp_notifies(self, runtime, make_user, outbox):
        user = make_user("ada@example.com")
        otp = await runtime.mfa.send_email_otp(user, "pytest", "127.0.0.1")
        assert outbox[0]["kind"] == "mfa-otp"
        assert outbox[0]["context"]["otpCode"] == otp.code
        assert otp.ip_address == "127.0.0.1"
