#!/usr/bin/env python3
"""Create a user and print a session id usable as a bearer token.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=ops@example.com python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email ops@example.com --ttl-minutes 120

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
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


def bootstrap_user(email: str, ttl_minutes: int | None = None, dry_run: bool = False) -> dict:
    """Create the user if needed and issue a session.

    Returns:
        dict with user_id, email, session_id and status ('created', 'existing' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from generous.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)

    if dry_run:
        action = "issue a session for" if existing else "create"
        print(f"[DRY RUN] Would {action} user {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    if ttl_minutes is not None:
        runtime.settings.session_ttl_minutes = ttl_minutes
    user, session = runtime.auth.issue_session(email)
    return {
        "user_id": user.id,
        "email": email,
        "session_id": session.id,
        "expires_at": session.expires_at.isoformat(),
        "status": "existing" if existing else "created",
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a user session for the Generous workflow API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=None,
        help="Session lifetime in minutes (defaults to SESSION_TTL_MINUTES)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email or "@" not in args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/generous-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_user(args.email, args.ttl_minutes, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] in ("created", "existing"):
        print(f"\nUser {result['status']}: {result['email']} (id: {result['user_id']})")
        print(f"  Session ID: {result['session_id']}")
        print(f"  Expires:    {result['expires_at']}")
        print(f"\n  curl -H 'Authorization: Bearer {result['session_id']}' ...")


if __name__ == "__main__":
    main()
