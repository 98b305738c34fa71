from __future__ import annotations

import json
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg
from cryptography.fernet import InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from bkeep_auth.logging import get_logger
from bkeep_auth.storage import filters as f
from bkeep_auth.storage.errors import ConstraintViolation
from bkeep_auth.storage.memory import (
    AUTHENTICATOR_FIELDS,
    INVITATION_FIELDS,
    PASSKEY_FIELDS,
    USER_FIELDS,
    build_mfa_cipher,
)
from bkeep_auth.storage.models import (
    AuditLog,
    MfaEmailOtp,
    PasswordResetToken,
    Permission,
    RefreshToken,
    Role,
    RoleGrant,
    SessionRecord,
    Tenant,
    TenantMembership,
    User,
    UserAuthenticator,
    UserInvitation,
    UserPasskey,
    UserTenant,
    new_id,
    utcnow,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

REQUIRED_TABLES = [
    "users",
    "refresh_tokens",
    "mfa_email_otps",
    "user_authenticators",
    "user_passkeys",
    "tenants",
    "user_tenants",
    "roles",
    "permissions",
    "role_permissions",
    "user_roles",
    "user_invitations",
    "password_reset_tokens",
    "audit_logs",
    "sessions",
]


def _sid(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _row_to_user(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        password_hash=row.get("password_hash"),
        is_verified=row.get("is_verified", False),
        verified_at=row.get("verified_at"),
        is_active=row.get("is_active", True),
        mfa_enabled=row.get("mfa_enabled", False),
        last_logged_in_at=row.get("last_logged_in_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_refresh_token(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token=row["token"],
        expires_at=row["expires_at"],
        user_agent=row.get("user_agent"),
        ip_address=row.get("ip_address"),
        created_at=row.get("created_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_otp(row: dict) -> MfaEmailOtp:
    return MfaEmailOtp(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        code=row["code"],
        expires_at=row["expires_at"],
        user_agent=row.get("user_agent"),
        ip_address=row.get("ip_address"),
        created_at=row.get("created_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_passkey(row: dict) -> UserPasskey:
    transports = row.get("transports") or []
    if isinstance(transports, str):
        transports = json.loads(transports)
    return UserPasskey(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        credential_id=row["credential_id"],
        public_key=row["public_key"],
        counter=int(row.get("counter") or 0),
        name=row["name"],
        credential_type=row["credential_type"],
        transports=list(transports),
        backup_eligible=row.get("backup_eligible", False),
        backup_state=row.get("backup_state", False),
        aaguid=row.get("aaguid"),
        is_active=row.get("is_active", True),
        last_used_at=row.get("last_used_at"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_tenant(row: dict) -> Tenant:
    return Tenant(
        id=str(row["id"]),
        name=row["name"],
        schema_name=row["schema_name"],
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_role(row: dict) -> Role:
    return Role(
        id=str(row["id"]),
        name=row["name"],
        display_name=row["display_name"],
        description=row.get("description"),
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_permission(row: dict) -> Permission:
    return Permission(
        id=str(row["id"]),
        name=row["name"],
        display_name=row["display_name"],
        is_active=row.get("is_active", True),
        created_at=row.get("created_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_invitation(row: dict) -> UserInvitation:
    return UserInvitation(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        tenant_id=str(row["tenant_id"]),
        invited_by=str(row["invited_by"]),
        role_id=str(row["role_id"]),
        token_hash=row["token_hash"],
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_reset(row: dict) -> PasswordResetToken:
    return PasswordResetToken(
        id=str(row["id"]),
        email=row["email"],
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
        deleted_at=row.get("deleted_at"),
    )


def _set_clause(fields: Dict[str, Any]) -> tuple[str, tuple]:
    keys = sorted(fields)
    return ", ".join(f"{key} = %s" for key in keys), tuple(fields[key] for key in keys)


class PostgresStore:
    """Postgres-backed credential store using a psycopg connection pool.

    ``transaction()`` binds one pooled connection to the current thread so
    that nested store calls join the same database transaction.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._local = threading.local()
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._verify_required_schema()

    def _connect(self):
        bound = getattr(self._local, "conn", None)
        if bound is not None:
            return nullcontext(bound)
        return self.pool.connection()

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        bound = getattr(self._local, "conn", None)
        if bound is not None:
            with bound.transaction():
                yield self
            return
        with self.pool.connection() as conn:
            self._local.conn = conn
            try:
                with conn.transaction():
                    yield self
            finally:
                self._local.conn = None

    @staticmethod
    def install_schema(dsn: str) -> None:
        """Install the public-schema tables (idempotent)."""

        with psycopg.connect(dsn, autocommit=True) as conn:
            conn.execute(SCHEMA_PATH.read_text())

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure credential tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply bkeep_auth/storage/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def _fetch_one(self, table: str, predicate: f.Filter, order: str = "") -> Optional[dict]:
        clause, params = predicate.sql()
        with self._connect() as conn:
            return conn.execute(
                f"SELECT * FROM {table} WHERE {clause} {order} LIMIT 1", params
            ).fetchone()

    def _fetch_all(self, table: str, predicate: f.Filter, order: str = "") -> List[dict]:
        clause, params = predicate.sql()
        with self._connect() as conn:
            return conn.execute(f"SELECT * FROM {table} WHERE {clause} {order}", params).fetchall()

    def _soft_delete(self, table: str, predicate: f.Filter) -> int:
        clause, params = predicate.sql()
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE {table} SET deleted_at = now() WHERE {clause}", params
            )
            return cur.rowcount or 0

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        is_verified: bool = False,
        is_active: bool = True,
        mfa_enabled: bool = False,
    ) -> User:
        user_id = new_id()
        now = utcnow()
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, name, password_hash, is_verified, verified_at,
                                       is_active, mfa_enabled, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized,
                        name.strip(),
                        password_hash,
                        is_verified,
                        now if is_verified else None,
                        is_active,
                        mfa_enabled,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        row = self._fetch_one("users", f.live(f.where(id=user_id)))
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self._fetch_one("users", f.live(f.where(email=(email or "").strip().lower())))
        return _row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments, params = _set_clause(fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET {assignments}, updated_at = now() WHERE id = %s AND deleted_at IS NULL RETURNING *",
                (*params, user_id),
            ).fetchone()
        return _row_to_user(row) if row else None

    def soft_delete_user(self, user_id: str) -> bool:
        return self._soft_delete("users", f.live(f.where(id=user_id))) > 0

    def restore_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET deleted_at = NULL WHERE id = %s AND deleted_at IS NOT NULL",
                (user_id,),
            )
            return (cur.rowcount or 0) > 0

    # refresh tokens
    def create_refresh_token(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token, expires_at, user_agent, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, token, expires_at, user_agent, ip_address),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return _row_to_refresh_token(row)

    def get_valid_refresh_token(self, token: str) -> Optional[RefreshToken]:
        row = self._fetch_one(
            "refresh_tokens", f.live(f.where(token=token), f.unexpired(utcnow()))
        )
        return _row_to_refresh_token(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        rows = self._fetch_all(
            "refresh_tokens",
            f.live(f.where(user_id=user_id), f.unexpired(utcnow())),
            "ORDER BY created_at DESC",
        )
        return [_row_to_refresh_token(row) for row in rows]

    def revoke_refresh_token(self, token: str) -> bool:
        return self._soft_delete("refresh_tokens", f.live(f.where(token=token))) > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        return self._soft_delete("refresh_tokens", f.live(f.where(user_id=user_id)))

    def purge_expired_refresh_tokens(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_tokens SET deleted_at = now() WHERE deleted_at IS NULL AND expires_at <= now()"
            )
            return cur.rowcount or 0

    # email otp
    def create_mfa_otp(
        self,
        user_id: str,
        code: str,
        expiry_minutes: int = 5,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> MfaEmailOtp:
        otp = MfaEmailOtp.new(
            user_id, code, expiry_minutes, user_agent=user_agent, ip_address=ip_address
        )
        with self.transaction():
            self._soft_delete("mfa_email_otps", f.live(f.where(user_id=user_id)))
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO mfa_email_otps (id, user_id, code, expires_at, user_agent, ip_address, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        otp.id,
                        otp.user_id,
                        otp.code,
                        otp.expires_at,
                        otp.user_agent,
                        otp.ip_address,
                        otp.created_at,
                    ),
                )
        return otp

    def find_mfa_otp(self, user_id: str, code: str) -> Optional[MfaEmailOtp]:
        row = self._fetch_one(
            "mfa_email_otps",
            f.live(f.where(user_id=user_id, code=code)),
            "ORDER BY created_at DESC",
        )
        return _row_to_otp(row) if row else None

    def active_mfa_otps(self, user_id: str) -> List[MfaEmailOtp]:
        rows = self._fetch_all(
            "mfa_email_otps", f.live(f.where(user_id=user_id), f.unexpired(utcnow()))
        )
        return [_row_to_otp(row) for row in rows]

    def consume_mfa_otp(self, otp_id: str) -> bool:
        return self._soft_delete("mfa_email_otps", f.live(f.where(id=otp_id))) > 0

    # totp authenticators
    def _encrypt_mfa_secret(self, secret: str) -> str:
        return self._mfa_cipher.encrypt(secret.encode()).decode() if secret else secret

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return secret

    def _row_to_authenticator(self, row: dict) -> UserAuthenticator:
        return UserAuthenticator(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=row.get("type", "totp"),
            secret=self._decrypt_mfa_secret(row["secret"]),
            backup_codes=row.get("backup_codes"),
            is_active=row.get("is_active", False),
            verified_at=row.get("verified_at"),
            last_used_at=row.get("last_used_at"),
            created_at=row.get("created_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    def create_authenticator(
        self, user_id: str, secret: str, backup_codes: str, *, type: str = "totp"
    ) -> UserAuthenticator:
        with self.transaction():
            with self._connect() as conn:
                conn.execute(
                    "UPDATE user_authenticators SET is_active = FALSE WHERE user_id = %s AND type = %s AND deleted_at IS NULL",
                    (user_id, type),
                )
                try:
                    row = conn.execute(
                        """
                        INSERT INTO user_authenticators (id, user_id, type, secret, backup_codes, is_active)
                        VALUES (%s, %s, %s, %s, %s, FALSE)
                        RETURNING *
                        """,
                        (new_id(), user_id, type, self._encrypt_mfa_secret(secret), backup_codes),
                    ).fetchone()
                except errors.ForeignKeyViolation:
                    raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return self._row_to_authenticator(row)

    def get_active_authenticator(
        self, user_id: str, type: str = "totp"
    ) -> Optional[UserAuthenticator]:
        row = self._fetch_one(
            "user_authenticators",
            f.live(
                f.where(user_id=user_id, type=type),
                f.active(),
                f.Filter(lambda r: r.verified_at is not None, "verified_at IS NOT NULL"),
            ),
            "ORDER BY verified_at DESC",
        )
        return self._row_to_authenticator(row) if row else None

    def get_unverified_authenticator(
        self, user_id: str, type: str = "totp"
    ) -> Optional[UserAuthenticator]:
        row = self._fetch_one(
            "user_authenticators",
            f.live(
                f.where(user_id=user_id, type=type),
                f.Filter(lambda r: r.verified_at is None, "verified_at IS NULL"),
            ),
            "ORDER BY created_at DESC",
        )
        return self._row_to_authenticator(row) if row else None

    def update_authenticator(self, authenticator_id: str, **fields) -> Optional[UserAuthenticator]:
        unknown = set(fields) - AUTHENTICATOR_FIELDS
        if unknown:
            raise ValueError(f"unsupported authenticator fields: {sorted(unknown)}")
        assignments, params = _set_clause(fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_authenticators SET {assignments} WHERE id = %s AND deleted_at IS NULL RETURNING *",
                (*params, authenticator_id),
            ).fetchone()
        return self._row_to_authenticator(row) if row else None

    def delete_user_authenticators(self, user_id: str, type: str = "totp") -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_authenticators SET is_active = FALSE, deleted_at = now() WHERE user_id = %s AND type = %s AND deleted_at IS NULL",
                (user_id, type),
            )
            return cur.rowcount or 0

    # passkeys
    def create_passkey(
        self,
        user_id: str,
        credential_id: str,
        public_key: str,
        *,
        counter: int = 0,
        name: str = "Passkey",
        credential_type: str = "platform",
        transports: Optional[Sequence[str]] = None,
        backup_eligible: bool = False,
        backup_state: bool = False,
        aaguid: Optional[str] = None,
    ) -> UserPasskey:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_passkeys (id, user_id, credential_id, public_key, counter, name,
                                               credential_type, transports, backup_eligible, backup_state, aaguid)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        user_id,
                        credential_id,
                        public_key,
                        counter,
                        name,
                        credential_type,
                        json.dumps(list(transports or [])),
                        backup_eligible,
                        backup_state,
                        aaguid,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("passkey already registered", {"field": "credentialId"})
        return _row_to_passkey(row)

    def get_passkey_by_credential_id(
        self, credential_id: str, *, active_only: bool = True
    ) -> Optional[UserPasskey]:
        predicate = f.live(f.where(credential_id=credential_id))
        if active_only:
            predicate = predicate & f.active()
        row = self._fetch_one("user_passkeys", predicate)
        return _row_to_passkey(row) if row else None

    def get_passkey(self, passkey_id: str) -> Optional[UserPasskey]:
        row = self._fetch_one("user_passkeys", f.live(f.where(id=passkey_id)))
        return _row_to_passkey(row) if row else None

    def list_user_passkeys(
        self, user_id: str, *, active_only: bool = False
    ) -> List[UserPasskey]:
        predicate = f.live(f.where(user_id=user_id))
        if active_only:
            predicate = predicate & f.active()
        rows = self._fetch_all("user_passkeys", predicate, "ORDER BY created_at DESC")
        return [_row_to_passkey(row) for row in rows]

    def update_passkey(self, passkey_id: str, **fields) -> Optional[UserPasskey]:
        unknown = set(fields) - PASSKEY_FIELDS
        if unknown:
            raise ValueError(f"unsupported passkey fields: {sorted(unknown)}")
        assignments, params = _set_clause(fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_passkeys SET {assignments}, updated_at = now() WHERE id = %s AND deleted_at IS NULL RETURNING *",
                (*params, passkey_id),
            ).fetchone()
        return _row_to_passkey(row) if row else None

    def soft_delete_passkey(self, passkey_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_passkeys SET deleted_at = now(), is_active = FALSE WHERE id = %s AND deleted_at IS NULL",
                (passkey_id,),
            )
            return (cur.rowcount or 0) > 0

    def count_active_passkeys(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM user_passkeys WHERE user_id = %s AND is_active = TRUE AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    # tenants and memberships
    def create_tenant(self, name: str, schema_name: str, *, is_active: bool = True) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO tenants (id, name, schema_name, is_active) VALUES (%s, %s, %s, %s) RETURNING *",
                    (new_id(), name, schema_name, is_active),
                ).fetchone()
        except (errors.UniqueViolation, errors.CheckViolation):
            raise ConstraintViolation("tenant schema already exists", {"field": "schemaName"})
        return _row_to_tenant(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        row = self._fetch_one("tenants", f.live(f.where(id=tenant_id)))
        return _row_to_tenant(row) if row else None

    def get_tenant_by_schema(self, schema_name: str) -> Optional[Tenant]:
        row = self._fetch_one("tenants", f.live(f.where(schema_name=schema_name)))
        return _row_to_tenant(row) if row else None

    def add_membership(
        self, user_id: str, tenant_id: str, *, is_primary: bool = False
    ) -> UserTenant:
        with self.transaction():
            with self._connect() as conn:
                if is_primary:
                    conn.execute(
                        "UPDATE user_tenants SET is_primary = FALSE WHERE user_id = %s AND is_primary",
                        (user_id,),
                    )
                try:
                    row = conn.execute(
                        "INSERT INTO user_tenants (user_id, tenant_id, is_primary) VALUES (%s, %s, %s) RETURNING *",
                        (user_id, tenant_id, is_primary),
                    ).fetchone()
                except errors.UniqueViolation:
                    raise ConstraintViolation(
                        "user already belongs to tenant",
                        {"user_id": user_id, "tenant_id": tenant_id},
                    )
        return UserTenant(
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            is_primary=row["is_primary"],
            created_at=row["created_at"],
        )

    def get_membership(self, user_id: str, tenant_id: str) -> Optional[UserTenant]:
        row = self._fetch_one("user_tenants", f.where(user_id=user_id, tenant_id=tenant_id))
        if not row:
            return None
        return UserTenant(
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            is_primary=row["is_primary"],
            created_at=row["created_at"],
        )

    def list_memberships(self, user_id: str) -> List[TenantMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT t.*, ut.is_primary AS membership_primary
                FROM user_tenants ut JOIN tenants t ON t.id = ut.tenant_id
                WHERE ut.user_id = %s AND t.deleted_at IS NULL
                ORDER BY ut.created_at
                """,
                (user_id,),
            ).fetchall()
        return [
            TenantMembership(tenant=_row_to_tenant(row), is_primary=row["membership_primary"])
            for row in rows
        ]

    def set_primary_tenant(self, user_id: str, tenant_id: str) -> bool:
        with self.transaction():
            if not self.get_membership(user_id, tenant_id):
                return False
            with self._connect() as conn:
                conn.execute(
                    "UPDATE user_tenants SET is_primary = FALSE WHERE user_id = %s AND is_primary",
                    (user_id,),
                )
                conn.execute(
                    "UPDATE user_tenants SET is_primary = TRUE WHERE user_id = %s AND tenant_id = %s",
                    (user_id, tenant_id),
                )
        return True

    # roles and permissions
    def create_role(
        self,
        name: str,
        display_name: str,
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO roles (id, name, display_name, description, is_active) VALUES (%s, %s, %s, %s, %s) RETURNING *",
                    (new_id(), name, display_name, description, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return _row_to_role(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        row = self._fetch_one("roles", f.live(f.where(id=role_id)))
        return _row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        row = self._fetch_one("roles", f.live(f.where(name=name)))
        return _row_to_role(row) if row else None

    def create_permission(
        self, name: str, display_name: str, *, is_active: bool = True
    ) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO permissions (id, name, display_name, is_active) VALUES (%s, %s, %s, %s) RETURNING *",
                    (new_id(), name, display_name, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return _row_to_permission(row)

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        row = self._fetch_one("permissions", f.live(f.where(name=name)))
        return _row_to_permission(row) if row else None

    def update_permission(self, permission_id: str, **fields) -> Optional[Permission]:
        allowed = {k: v for k, v in fields.items() if k in {"is_active", "deleted_at", "display_name"}}
        if not allowed:
            return None
        assignments, params = _set_clause(allowed)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE permissions SET {assignments} WHERE id = %s RETURNING *",
                (*params, permission_id),
            ).fetchone()
        return _row_to_permission(row) if row else None

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO role_permissions (role_id, permission_id) VALUES (%s, %s)
                ON CONFLICT (role_id, permission_id) DO NOTHING
                """,
                (role_id, permission_id),
            )

    def role_permissions_for(self, role_id: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM role_permissions rp JOIN permissions p ON p.id = rp.permission_id
                WHERE rp.role_id = %s ORDER BY rp.created_at, p.name
                """,
                (role_id,),
            ).fetchall()
        return [_row_to_permission(row) for row in rows]

    def user_roles_in_tenant(self, user_id: str, tenant_id: str) -> List[RoleGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM user_roles ur JOIN roles r ON r.id = ur.role_id
                WHERE ur.user_id = %s AND ur.tenant_id = %s
                  AND r.deleted_at IS NULL AND r.is_active = TRUE
                ORDER BY ur.created_at
                """,
                (user_id, tenant_id),
            ).fetchall()
        return [
            RoleGrant(role=_row_to_role(row), permissions=self.role_permissions_for(str(row["id"])))
            for row in rows
        ]

    def sync_user_roles(self, user_id: str, tenant_id: str, role_ids: Sequence[str]) -> None:
        """Replace every role the user holds in ``tenant_id`` with ``role_ids``."""

        with self.transaction():
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM user_roles WHERE user_id = %s AND tenant_id = %s",
                    (user_id, tenant_id),
                )
                for role_id in dict.fromkeys(role_ids):
                    try:
                        conn.execute(
                            "INSERT INTO user_roles (user_id, role_id, tenant_id) VALUES (%s, %s, %s)",
                            (user_id, role_id, tenant_id),
                        )
                    except errors.ForeignKeyViolation:
                        raise ConstraintViolation("role not found", {"role_id": role_id})

    def users_with_role(self, role_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM user_roles WHERE role_id = %s", (role_id,)
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    # invitations
    def create_invitation(
        self,
        user_id: str,
        tenant_id: str,
        invited_by: str,
        role_id: str,
        token_hash: str,
    ) -> UserInvitation:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_invitations (id, user_id, tenant_id, invited_by, role_id, token_hash)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, tenant_id, invited_by, role_id, token_hash),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "invitation already exists", {"user_id": user_id, "tenant_id": tenant_id}
            )
        return _row_to_invitation(row)

    def get_invitation(
        self, invitation_id: str, *, include_deleted: bool = False
    ) -> Optional[UserInvitation]:
        predicate = f.where(id=invitation_id)
        if not include_deleted:
            predicate = f.live(predicate)
        row = self._fetch_one("user_invitations", predicate)
        return _row_to_invitation(row) if row else None

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[UserInvitation]:
        row = self._fetch_one("user_invitations", f.live(f.where(token_hash=token_hash)))
        return _row_to_invitation(row) if row else None

    def get_live_invitation(self, user_id: str, tenant_id: str) -> Optional[UserInvitation]:
        row = self._fetch_one(
            "user_invitations", f.live(f.where(user_id=user_id, tenant_id=tenant_id))
        )
        return _row_to_invitation(row) if row else None

    def update_invitation(self, invitation_id: str, **fields) -> Optional[UserInvitation]:
        unknown = set(fields) - INVITATION_FIELDS
        if unknown:
            raise ValueError(f"unsupported invitation fields: {sorted(unknown)}")
        assignments, params = _set_clause(fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_invitations SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*params, invitation_id),
            ).fetchone()
        return _row_to_invitation(row) if row else None

    def list_tenant_invitations(self, tenant_id: str) -> List[UserInvitation]:
        rows = self._fetch_all(
            "user_invitations", f.live(f.where(tenant_id=tenant_id)), "ORDER BY created_at DESC"
        )
        return [_row_to_invitation(row) for row in rows]

    # password resets
    def create_password_reset(
        self, email: str, token_hash: str, expiry_minutes: int = 60
    ) -> PasswordResetToken:
        normalized = email.strip().lower()
        expires_at = utcnow() + timedelta(minutes=expiry_minutes)
        with self.transaction():
            self._soft_delete("password_reset_tokens", f.live(f.where(email=normalized)))
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO password_reset_tokens (id, email, token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), normalized, token_hash, expires_at),
                ).fetchone()
        return _row_to_reset(row)

    def get_password_reset(self, email: str) -> Optional[PasswordResetToken]:
        row = self._fetch_one(
            "password_reset_tokens",
            f.live(f.where(email=email.strip().lower())),
            "ORDER BY created_at DESC",
        )
        return _row_to_reset(row) if row else None

    def revoke_password_reset(self, reset_id: str) -> bool:
        return self._soft_delete("password_reset_tokens", f.live(f.where(id=reset_id))) > 0

    # audit
    def record_audit(self, entry: AuditLog) -> AuditLog:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (id, action, actor, targets, tenant_id, context, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action,
                    json.dumps(entry.actor),
                    json.dumps(entry.targets),
                    entry.tenant_id,
                    json.dumps(entry.context),
                    json.dumps(entry.metadata),
                    entry.created_at,
                ),
            )
        return entry

    def list_audit(self, action: Optional[str] = None, limit: int = 100) -> List[AuditLog]:
        predicate = f.where(action=action) if action else f.all_of()
        clause, params = predicate.sql()
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_logs WHERE {clause} ORDER BY created_at DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [
            AuditLog(
                id=str(row["id"]),
                action=row["action"],
                actor=row["actor"],
                targets=row.get("targets") or [],
                tenant_id=_sid(row.get("tenant_id")),
                context=row.get("context") or {},
                metadata=row.get("metadata") or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # sessions
    def save_session(
        self,
        user_id: str,
        data: Dict,
        *,
        session_id: Optional[str] = None,
        ttl_seconds: int = 900,
    ) -> SessionRecord:
        record = SessionRecord(
            id=session_id or new_id(),
            user_id=user_id,
            data=dict(data),
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions (sid, user_id, data, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (sid) DO UPDATE
                SET data = EXCLUDED.data, expires_at = EXCLUDED.expires_at
                """,
                (record.id, user_id, json.dumps(record.data), record.expires_at),
            )
        return record

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE sid = %s AND expires_at > now()", (session_id,)
            ).fetchone()
        if not row:
            return None
        return SessionRecord(
            id=row["sid"],
            user_id=str(row["user_id"]),
            data=row["data"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE sid = %s", (session_id,))
            return (cur.rowcount or 0) > 0
