#!/usr/bin/env python3
"""Seed a login identity for local testing.

Usage:
    # Using environment variables:
    SEED_EMAIL=user@example.com SEED_PHONE=9876543210 SEED_PASSWORD=Secret123! \
        python scripts/bootstrap_identity.py

    # Or with command line args:
    python scripts/bootstrap_identity.py --email user@example.com --phone 9876543210 \
        --password Secret123! --role USER

Environment Variables:
    SEED_EMAIL / SEED_PHONE / SEED_PASSWORD / SEED_ROLE: identity fields
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_identity(
    email: Optional[str],
    phone: Optional[str],
    password: str,
    role: str,
    *,
    dry_run: bool = False,
    store=None,
) -> dict:
    """Create an identity with an argon2id password hash.

    Returns:
        dict with user_id, email, phone and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from stepauth.service.credentials import hash_password
    from stepauth.storage.errors import ConstraintViolation

    own_store = store is None
    if own_store:
        from stepauth.service.runtime import get_runtime

        runtime = get_runtime()
        await runtime.start()
        store = runtime.store

    try:
        existing = None
        if email:
            existing = await store.get_identity_by_email(email, role)
        if existing is None and phone:
            existing = await store.get_identity_by_phone(phone, role)
        if existing:
            print(f"Identity already exists for role {role} (id: {existing.user_id})")
            return {"user_id": existing.user_id, "email": email, "phone": phone, "status": "exists"}

        if dry_run:
            print(f"[DRY RUN] Would create {role} identity: {email or phone}")
            return {"user_id": None, "email": email, "phone": phone, "status": "dry_run"}

        try:
            identity = await store.create_identity(
                email=email,
                phone=phone,
                password_hash=hash_password(password),
                role=role,
            )
        except ConstraintViolation as exc:
            print(f"Identity conflicts with an existing record: {exc.message}")
            return {"user_id": None, "email": email, "phone": phone, "status": "exists"}
        print(f"Created {role} identity: {email or phone} (id: {identity.user_id})")
        return {"user_id": identity.user_id, "email": email, "phone": phone, "status": "created"}
    finally:
        if own_store:
            await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Seed a login identity for StepAuth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("SEED_EMAIL"))
    parser.add_argument("--phone", default=os.environ.get("SEED_PHONE"))
    parser.add_argument("--password", default=os.environ.get("SEED_PASSWORD"))
    parser.add_argument("--role", default=os.environ.get("SEED_ROLE", "USER"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email and not args.phone:
        print("Error: --email/--phone or SEED_EMAIL/SEED_PHONE environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SEED_PASSWORD environment variable required")
        sys.exit(1)

    # Seeding never signs tokens, but settings still require a secret
    if not os.environ.get("JWT_SECRET"):
        os.environ.setdefault("TEST_MODE", "true")

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_identity(
                args.email, args.phone, args.password, args.role, dry_run=args.dry_run
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nIdentity created successfully!")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
