import asyncio
import hashlib
import inspect
import json
import os
import struct
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="bkeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")
# TestClient talks plain http, so cookies must not be marked secure
os.environ.setdefault("COOKIE_SECURE", "false")
# In-process token and challenge caches
os.environ["REDIS_URL"] = ""

import cbor2  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives import hashes  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec  # noqa: E402
from webauthn.helpers import bytes_to_base64url  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bkeep_auth.service.auth import hash_password  # noqa: E402
from bkeep_auth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

PASSWORD = "Ledger-Balance-42"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def tenant(runtime):
    return runtime.store.create_tenant("Acme Books", "tenant_acme")


@pytest.fixture
def make_user(runtime, tenant):
    """Factory for a verified member of ``tenant`` holding one built-in role."""

    def _make(email, role="admin", *, password=PASSWORD, target=None, **fields):
        store = runtime.store
        fields.setdefault("is_verified", True)
        user = store.create_user(
            email,
            email.split("@")[0].title(),
            password_hash=hash_password(password),
            **fields,
        )
        home = target or tenant
        store.add_membership(user.id, home.id, is_primary=not store.list_memberships(user.id))
        store.sync_user_roles(user.id, home.id, [store.get_role_by_name(role).id])
        return user

    return _make


@pytest.fixture
def outbox(runtime, monkeypatch):
    """Capture notifications instead of delivering them."""

    sent = []

    async def _record(kind, to, context):
        sent.append({"kind": kind, "to": to, "context": dict(context)})
        return True

    monkeypatch.setattr(runtime.notifications, "notify", _record)
    return sent


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from bkeep_auth.app import app

    return TestClient(app)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class SoftAuthenticator:
    """ES256 software authenticator producing WebAuthn JSON for "none" attestation."""

    RP_ID = "localhost"
    ORIGIN = "http://localhost:3000"

    FLAG_UP = 0x01
    FLAG_UV = 0x04
    FLAG_BE = 0x08
    FLAG_BS = 0x10
    FLAG_AT = 0x40

    def __init__(self, *, backup_eligible=False):
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = os.urandom(16)
        self.counter = 0
        self.backup_flags = self.FLAG_BE if backup_eligible else 0

    @property
    def id(self):
        return bytes_to_base64url(self.credential_id)

    def _cose_key(self):
        numbers = self.key.public_key().public_numbers()
        return cbor2.dumps(
            {
                1: 2,
                3: -7,
                -1: 1,
                -2: numbers.x.to_bytes(32, "big"),
                -3: numbers.y.to_bytes(32, "big"),
            }
        )

    def _authenticator_data(self, flags, attested=b""):
        rp_hash = hashlib.sha256(self.RP_ID.encode()).digest()
        return rp_hash + bytes([flags]) + struct.pack(">I", self.counter) + attested

    def _client_data(self, kind, challenge, origin=None):
        return json.dumps(
            {
                "type": kind,
                "challenge": challenge,
                "origin": origin or self.ORIGIN,
                "crossOrigin": False,
            }
        ).encode()

    def register(self, options, *, origin=None):
        attested = (
            bytes(16)
            + struct.pack(">H", len(self.credential_id))
            + self.credential_id
            + self._cose_key()
        )
        flags = self.FLAG_UP | self.FLAG_UV | self.FLAG_AT | self.backup_flags
        attestation = cbor2.dumps(
            {"fmt": "none", "attStmt": {}, "authData": self._authenticator_data(flags, attested)}
        )
        client_data = self._client_data("webauthn.create", options["challenge"], origin)
        return {
            "id": self.id,
            "rawId": self.id,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(client_data),
                "attestationObject": bytes_to_base64url(attestation),
                "transports": ["internal"],
            },
            "clientExtensionResults": {},
        }

    def assertion(self, options, *, counter=None):
        self.counter = self.counter + 1 if counter is None else counter
        auth_data = self._authenticator_data(self.FLAG_UP | self.FLAG_UV | self.backup_flags)
        client_data = self._client_data("webauthn.get", options["challenge"])
        signature = self.key.sign(
            auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256())
        )
        return {
            "id": self.id,
            "rawId": self.id,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(client_data),
                "authenticatorData": bytes_to_base64url(auth_data),
                "signature": bytes_to_base64url(signature),
            },
            "clientExtensionResults": {},
        }


@pytest.fixture
def soft_authenticator():
    return SoftAuthenticator
