#!/usr/bin/env python3
"""Seed the built-in roles and create (or reset) the superadmin account.

Usage:
    SUPERADMIN_EMAIL=root@example.com SUPERADMIN_PASSWORD=ChangeMe123 python scripts/bootstrap_superadmin.py

    python scripts/bootstrap_superadmin.py --email root@example.com --password ChangeMe123 --apply-schema

Environment Variables:
    SUPERADMIN_EMAIL: Email for the superadmin user
    SUPERADMIN_PASSWORD: Password for the superadmin user (8-128 characters)
    DATABASE_URL: PostgreSQL connection string (uses the in-memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _open_store(apply_schema: bool):
    from bkeep_auth.config import get_settings
    from bkeep_auth.storage.memory import MemoryStore
    from bkeep_auth.storage.postgres import PostgresStore

    settings = get_settings()
    if not os.environ.get("DATABASE_URL"):
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
        return MemoryStore(mfa_encryption_key=settings.mfa_secret_key)
    if apply_schema:
        PostgresStore.install_schema(settings.database_url)
    return PostgresStore(settings.database_url, mfa_encryption_key=settings.mfa_secret_key)


def bootstrap_superadmin(
    email: str,
    password: str,
    *,
    name: str,
    tenant_name: str,
    schema_name: str,
    apply_schema: bool = False,
) -> dict:
    from bkeep_auth.service.bootstrap import ensure_superadmin, seed_roles_and_permissions

    store = _open_store(apply_schema)
    try:
        roles = seed_roles_and_permissions(store)
        user = ensure_superadmin(
            store,
            email,
            password,
            name=name,
            tenant_name=tenant_name,
            schema_name=schema_name,
            roles=roles,
        )
    finally:
        if hasattr(store, "close"):
            store.close()
    return {"user_id": user.id, "email": user.email}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the BKeep superadmin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPERADMIN_EMAIL"),
        help="Superadmin email (or set SUPERADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPERADMIN_PASSWORD"),
        help="Superadmin password (or set SUPERADMIN_PASSWORD env var)",
    )
    parser.add_argument("--name", default="Super Admin")
    parser.add_argument("--tenant-name", default="BKeep")
    parser.add_argument("--schema-name", default="tenant_bkeep")
    parser.add_argument(
        "--apply-schema",
        action="store_true",
        help="Install the Postgres tables before seeding",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPERADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password or not 8 <= len(args.password) <= 128:
        print("Error: --password must be between 8 and 128 characters")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/bkeep-bootstrap"

    try:
        result = bootstrap_superadmin(
            args.email.strip().lower(),
            args.password,
            name=args.name,
            tenant_name=args.tenant_name,
            schema_name=args.schema_name,
            apply_schema=args.apply_schema,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("\nSuperadmin ready.")
    print(f"  Email: {result['email']}")
    print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
