#!/usr/bin/env python3
"""Bootstrap a super admin, or a tenant with its admin and desk accounts.

Usage:
    # A super admin:
    SUPER_EMAIL=root@example.com SUPER_PASSWORD=SecurePassword123! python scripts/bootstrap_tenant.py super

    # A tenant with an admin and a shared desk account:
    python scripts/bootstrap_tenant.py tenant --name "Lincoln High" --access-code LINC-1 \
        --admin-email admin@lincoln.example --admin-password SecurePassword123! \
        --desk-email desk@lincoln.example --desk-password DeskPassword123!

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: set to true for a dry in-memory run
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_super_admin(email: str, password: str, *, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before env vars are set
    from itemtraxx.service.runtime import get_runtime
    from itemtraxx.storage.models import Role

    runtime = get_runtime()
    existing = runtime.store.get_profile_by_email(email)
    if existing:
        status = "already_super_admin" if existing.role is Role.SUPER_ADMIN else "email_in_use"
        print(f"{email}: {status} (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": status}
    if dry_run:
        print(f"[DRY RUN] Would create super admin: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}
    profile = runtime.auth.register_profile(email, password, Role.SUPER_ADMIN)
    print(f"Created super admin: {email} (id: {profile.id})")
    return {"user_id": profile.id, "email": email, "status": "created"}


def bootstrap_tenant(
    name: str,
    access_code: str,
    *,
    admin_email: str,
    admin_password: str,
    desk_email: str,
    desk_password: str,
    dry_run: bool = False,
) -> dict:
    from itemtraxx.service.runtime import get_runtime
    from itemtraxx.storage.models import Role

    runtime = get_runtime()
    if runtime.store.get_tenant_by_access_code(access_code):
        print(f"Access code {access_code} is already in use")
        return {"tenant_id": None, "status": "access_code_in_use"}
    for email in (admin_email, desk_email):
        if runtime.store.get_profile_by_email(email):
            print(f"{email} is already registered")
            return {"tenant_id": None, "status": "email_in_use"}
    if dry_run:
        print(f"[DRY RUN] Would create tenant {name} with access code {access_code}")
        return {"tenant_id": None, "status": "dry_run"}

    tenant = runtime.store.create_tenant(name, access_code=access_code)
    admin = runtime.auth.register_profile(
        admin_email, admin_password, Role.TENANT_ADMIN, tenant_id=tenant.id
    )
    desk = runtime.auth.register_profile(
        desk_email, desk_password, Role.TENANT_USER, tenant_id=tenant.id
    )
    print(f"Created tenant {name} (id: {tenant.id})")
    return {
        "tenant_id": tenant.id,
        "admin_id": admin.id,
        "desk_id": desk.id,
        "status": "created",
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap ItemTraxx accounts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done")
    sub = parser.add_subparsers(dest="command", required=True)

    sup = sub.add_parser("super", help="Create a super admin")
    sup.add_argument("--email", default=os.environ.get("SUPER_EMAIL"))
    sup.add_argument("--password", default=os.environ.get("SUPER_PASSWORD"))

    ten = sub.add_parser("tenant", help="Create a tenant with admin and desk accounts")
    ten.add_argument("--name", required=True)
    ten.add_argument("--access-code", required=True)
    ten.add_argument("--admin-email", required=True)
    ten.add_argument("--admin-password", default=os.environ.get("ADMIN_PASSWORD"))
    ten.add_argument("--desk-email", required=True)
    ten.add_argument("--desk-password", default=os.environ.get("DESK_PASSWORD"))

    args = parser.parse_args(argv)

    if args.command == "super":
        if not args.email or not args.password:
            print("Error: --email/--password or SUPER_EMAIL/SUPER_PASSWORD required")
            return 1
        passwords = [args.password]
    else:
        if not args.admin_password or not args.desk_password:
            print("Error: admin and desk passwords are required")
            return 1
        passwords = [args.admin_password, args.desk_password]

    if not all(validate_password(p) for p in passwords):
        print("Error: passwords must be at least 12 characters with 3 of: upper, lower, digit, special")
        return 1

    if args.command == "super":
        result = bootstrap_super_admin(args.email, args.password, dry_run=args.dry_run)
        ok = result["status"] in {"created", "already_super_admin", "dry_run"}
    else:
        result = bootstrap_tenant(
            args.name,
            args.access_code,
            admin_email=args.admin_email,
            admin_password=args.admin_password,
            desk_email=args.desk_email,
            desk_password=args.desk_password,
            dry_run=args.dry_run,
        )
        ok = result["status"] in {"created", "dry_run"}
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
