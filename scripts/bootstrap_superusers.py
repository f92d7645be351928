#!/usr/bin/env python3
"""Create the configured super-users and reset their credentials if the realm changed.

Usage:
    # Using environment variables:
    SUPER_USER_USERNAME=admin REALM_STRING=example python scripts/bootstrap_superusers.py

    # Or with command line args:
    python scripts/bootstrap_superusers.py --username admin --email mailto:admin@example.org

Environment Variables:
    SUPER_USER_USERNAME: Local username of the site super-user
    SUPER_USER_EMAIL: OAuth2 email of the site super-user
    REALM_STRING: Authentication realm used for credential derivation
    DATABASE_URL: PostgreSQL connection string (in-memory datastore if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_super_users(dry_run: bool = False) -> dict:
    """Run the super-user bootstrap once.

    Returns:
        dict with the super-user rows and the last revision timestamp
    """
    # Import here to avoid loading config before env vars are set
    from formvault.service.runtime import get_runtime

    runtime = get_runtime()

    if dry_run:
        identity = runtime.identity
        email = identity.super_user_email()
        username = identity.super_user_username()
        planned = {
            "email": email.email if email else None,
            "email_exists": bool(email and runtime.users.find_unique_by_email(email.email)),
            "username": username,
            "username_exists": bool(username and runtime.users.find_unique_by_username(username)),
            "last_known_realm": runtime.preferences.get_last_known_realm_string(),
            "current_realm": identity.current_realm().realm_string,
        }
        return {"status": "dry_run", "plan": planned}

    super_users = runtime.bootstrap.assert_super_users()
    revision = runtime.revisions.get_last_super_user_id_revision_date()
    return {
        "status": "ok",
        "super_users": [
            {"uri": user.uri, "display_name": user.display_name} for user in super_users
        ],
        "last_super_user_revision": revision.isoformat() if revision else None,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Assert formvault super-users",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("SUPER_USER_USERNAME"),
        help="Super-user username (or set SUPER_USER_USERNAME env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPER_USER_EMAIL"),
        help="Super-user email (or set SUPER_USER_EMAIL env var)",
    )
    parser.add_argument(
        "--realm",
        default=os.environ.get("REALM_STRING"),
        help="Authentication realm (or set REALM_STRING env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.username and not args.email:
        print("Error: --username/--email or SUPER_USER_USERNAME/SUPER_USER_EMAIL required")
        sys.exit(1)

    if args.username:
        os.environ["SUPER_USER_USERNAME"] = args.username
    if args.email:
        os.environ["SUPER_USER_EMAIL"] = args.email
    if args.realm:
        os.environ["REALM_STRING"] = args.realm

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("DATA_ROOT", "/tmp/formvault-bootstrap")
        print("Note: Using in-memory datastore (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_super_users(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "dry_run":
        for key, value in result["plan"].items():
            print(f"  {key}: {value}")
        return

    print("Super-users asserted:")
    for user in result["super_users"]:
        print(f"  {user['display_name']} ({user['uri']})")
    if result["last_super_user_revision"]:
        print(f"Last super-user revision: {result['last_super_user_revision']}")


if __name__ == "__main__":
    main()
