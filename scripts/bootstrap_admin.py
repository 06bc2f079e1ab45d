#!/usr/bin/env python3
"""Create an admin account, or promote an existing one.

Usage:
    ADMIN_USERNAME=admin ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' \
        python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --username admin --email admin@example.com \
        --password 'Secure#Pass1' [--dry-run]

Environment Variables:
    ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD: the admin credentials
    DATABASE_URL: PostgreSQL connection string (memory store is used if unset)
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
    username: str, email: str, password: str, dry_run: bool = False, runtime=None
) -> dict:
    """Create or promote an admin user.

    Returns a dict with user_id, username and status: created, promoted,
    already_admin or dry_run.
    """
    # imported late so env defaults from main() apply before settings load
    from movieauth.service.runtime import get_runtime
    from movieauth.storage.models import Role

    runtime = runtime or get_runtime()
    existing = await asyncio.to_thread(runtime.store.get_user_by_username, username)
    if existing is None and email:
        existing = await asyncio.to_thread(runtime.store.get_user_by_email, email)

    if existing:
        if existing.role is Role.ADMIN:
            print(f"User {existing.username} already exists as admin (id: {existing.id})")
            return {"user_id": existing.id, "username": existing.username, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {existing.username} to admin")
            return {"user_id": existing.id, "username": existing.username, "status": "dry_run"}
        await asyncio.to_thread(runtime.store.update_user_role, existing.id, Role.ADMIN)
        print(f"Promoted existing user {existing.username} to admin (id: {existing.id})")
        return {"user_id": existing.id, "username": existing.username, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {username}")
        return {"user_id": None, "username": username, "status": "dry_run"}

    result = await runtime.auth.register(username, email, password)
    await asyncio.to_thread(runtime.store.update_user_role, result.user.id, Role.ADMIN)
    print(f"Created admin user: {username} (id: {result.user.id})")
    return {"user_id": result.user.id, "username": username, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for the MovieList auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for name in ("username", "email", "password"):
        if not getattr(args, name):
            print(f"Error: --{name} or ADMIN_{name.upper()} environment variable required")
            sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from movieauth.service.errors import ServiceError

    try:
        result = asyncio.run(
            bootstrap_admin(args.username, args.email.lower(), args.password, args.dry_run)
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        for violation in exc.detail.get("violations", []):
            print(f"  - {violation}")
        sys.exit(1)
    except RuntimeError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Username: {result['username']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
