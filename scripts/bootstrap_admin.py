#!/usr/bin/env python3
"""Create an admin principal, or grant the admin role to an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure-Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Login identifier for the admin principal
    ADMIN_PASSWORD: Password for the admin principal (checked against the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
    JWT_SECRET: Signing secret; a throwaway one is generated when unset
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys

ADMIN_ROLE = "admin"


async def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote the admin principal.

    Returns:
        dict with principal_id, login, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # imported late so the environment set up in main() is what Settings reads
    from sessionforge.service.runtime import get_runtime
    from sessionforge.service.validation import normalize_identifier

    runtime = get_runtime()
    login = normalize_identifier(email)
    existing = await asyncio.to_thread(runtime.store.get_principal_by_login, login)

    if existing:
        if ADMIN_ROLE in existing.roles:
            print(f"Principal {login} already has the admin role (id: {existing.id})")
            return {"principal_id": existing.id, "login": login, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would grant the admin role to {login}")
            return {"principal_id": existing.id, "login": login, "status": "dry_run"}
        roles = tuple(existing.roles) + (ADMIN_ROLE,)
        await asyncio.to_thread(runtime.store.update_roles, existing.id, roles)
        print(f"Granted the admin role to {login} (id: {existing.id})")
        return {"principal_id": existing.id, "login": login, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin principal: {login}")
        return {"principal_id": None, "login": login, "status": "dry_run"}

    summary = await runtime.auth.register(email, password, [ADMIN_ROLE])
    print(f"Created admin principal: {summary.login} (id: {summary.id})")
    return {"principal_id": summary.id, "login": summary.login, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin principal for SessionForge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin login identifier (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from sessionforge.service.errors import ServiceError

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.dry_run))
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for field, problems in (exc.detail or {}).items():
            if isinstance(problems, list):
                for problem in problems:
                    print(f"  {field}: {problem}")
        return 1

    if result["status"] == "created":
        print("\nAdmin principal created successfully!")
        print(f"  Login: {result['login']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "promoted":
        print("\nExisting principal promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - principal is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
