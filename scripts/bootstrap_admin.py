#!/usr/bin/env python3
"""Create an admin account, or promote an existing one, in the persisted user state.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! \\
        ADMIN_USERNAME=siteadmin python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com \\
        --password SecurePassword123! --username siteadmin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    ADMIN_USERNAME: Username for a newly created admin
    JWT_SECRET / MFA_SECRET_KEY: key material for the encrypted state file
    SHARED_FS_ROOT: directory holding state/users.json
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import date


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(
    email: str, password: str, username: str, dry_run: bool = False
) -> dict:
    """Create or promote an admin user.

    Returns:
        dict with user_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from accountia_auth.service.auth import default_avatar, normalize_email
    from accountia_auth.service.passwords import hash_password
    from accountia_auth.service.runtime import get_runtime
    from accountia_auth.storage.models import User

    runtime = get_runtime()
    email = normalize_email(email)
    existing_user = runtime.store.find_one({"email": email})

    if existing_user:
        if existing_user.is_admin:
            print(f"User {email} already exists as admin (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}

        runtime.store.update_one(
            {"id": existing_user.id}, {"$set": {"is_admin": True}}
        )
        print(f"Promoted existing user {email} to admin (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.save(
        User.new(
            username=username,
            email=email,
            password_hash=hash_password(password),
            first_name="Admin",
            last_name="User",
            birthdate=date(2000, 1, 1),
            accept_terms=True,
            profile_picture=default_avatar(username),
            is_admin=True,
            email_confirmed=True,
        )
    )
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Accountia",
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
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "siteadmin"),
        help="Username for a new admin (or set ADMIN_USERNAME env var)",
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

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not 5 <= len(args.username) <= 20:
        print("Error: Username must be between 5 and 20 characters")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        print("Error: JWT_SECRET must be set so the state file can be decrypted later")
        sys.exit(1)

    # The in-memory store only outlives this process when persisted
    os.environ["USE_PERSISTENT_STATE"] = "true"

    try:
        result = bootstrap_admin(
            args.email, args.password, args.username, args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
