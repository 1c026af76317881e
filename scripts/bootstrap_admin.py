#!/usr/bin/env python3
"""Bootstrap an initial user, optionally holding a role, for first-time setup.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123! --role admin

Environment Variables:
    ADMIN_EMAIL: Email for the user
    ADMIN_PASSWORD: Password for the user (at least 8 characters)
    ADMIN_NAME: Display name (defaults to "Administrator")
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_user(
    email: str, password: str, name: str, role_name: str | None = None, dry_run: bool = False
) -> dict:
    """Create the user if missing and make sure it holds ``role_name``.

    Returns:
        dict with user_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from apitemplate.service.errors import ConflictError
    from apitemplate.service.runtime import get_runtime

    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "assign role to existing" if existing_user else "create"
        print(f"[DRY RUN] Would {action} user: {email}")
        return {"user_id": existing_user.id if existing_user else None, "email": email, "status": "dry_run"}

    if existing_user:
        user = existing_user
        status = "exists"
    else:
        user = runtime.users.create_user(name, email, password)
        status = "created"

    if role_name:
        role = next((r for r in runtime.roles.list_roles() if r.name == role_name), None)
        if role is None:
            try:
                role = runtime.roles.create_role(role_name)
            except ConflictError:
                role = next(r for r in runtime.roles.list_roles() if r.name == role_name)
        role_ids = sorted({r.id for r in user.roles} | {role.id})
        user = runtime.users.set_roles(user.id, role_ids)

    print(f"User {email} {status} (id: {user.id}, roles: {[r.name for r in user.roles]})")
    return {"user_id": user.id, "email": email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an initial API user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="User email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="User password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("ADMIN_NAME", "Administrator"),
        help="Display name (or set ADMIN_NAME env var)",
    )
    parser.add_argument("--role", default=None, help="Role to create and assign, e.g. admin")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password or len(args.password) < 8:
        print("Error: --password or ADMIN_PASSWORD must be at least 8 characters")
        sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from apitemplate.service.errors import ServiceError

    try:
        result = bootstrap_user(
            args.email.strip().lower(), args.password, args.name, args.role, args.dry_run
        )
    except (ServiceError, RuntimeError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "exists":
        print("\nUser already existed; roles were brought up to date.")


if __name__ == "__main__":
    main()
