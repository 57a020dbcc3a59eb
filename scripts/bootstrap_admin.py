#!/usr/bin/env python3
"""Create an admin credential, or promote an existing account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1' \
        --role super_admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin account
    ADMIN_PASSWORD: Password (must pass the same strength rules as registration)
    ADMIN_NAME: Display name (default "Administrator")
    DATABASE_URL / USE_MEMORY_STORE / JWT_SECRET: as for the service
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    name: str = "Administrator",
    role: str = "admin",
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, email and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Imported late so the environment is read after argument parsing
    from lexgate.service.auth import normalize_email
    from lexgate.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_user_by_email(email)

    if existing:
        if existing.role == role:
            print(f"User {email} already has role {role} (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to {role}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_user_fields(existing.id, {"role": role})
        print(f"Promoted existing user {email} to {role} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {role} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = await runtime.auth.register(email, password, name)
    runtime.store.update_user_fields(user.id, {"role": role})
    print(f"Created {role} user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for Lexgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name for a newly created account",
    )
    parser.add_argument(
        "--role",
        choices=["admin", "super_admin"],
        default="admin",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    from lexgate.service.errors import ServiceError
    from lexgate.service.passwords import PasswordVault

    try:
        PasswordVault.validate_strength(args.password)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    result = asyncio.run(
        bootstrap_admin(
            args.email,
            args.password,
            name=args.name,
            role=args.role,
            dry_run=args.dry_run,
        )
    )
    print(f"Result: {result['status']}")


if __name__ == "__main__":
    main()
