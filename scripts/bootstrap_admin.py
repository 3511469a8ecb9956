#!/usr/bin/env python3
"""Create the first Brew&Bean admin account, or promote an existing customer.

Examples:
    ADMIN_EMAIL=owner@brewbean.com ADMIN_PASSWORD='Roast3d!Beans' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email owner@brewbean.com --password 'Roast3d!Beans' --name "Store Owner"

Without DATABASE_URL the in-memory store under SHARED_FS_ROOT is used, which
is only useful for local development.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_OUTCOMES = {
    "created": "Admin user created successfully!",
    "promoted": "Customer promoted to admin.",
    "already_admin": "Nothing to do: the account is already an admin.",
    "dry_run": "Dry run: no changes were written.",
}


async def bootstrap_admin(
    email: str, password: str, name: str = "Administrator", dry_run: bool = False
) -> dict:
    """Ensure ``email`` belongs to an admin account.

    An existing customer keeps their password and is only promoted; a new
    account must satisfy the customer password rules.

    Returns:
        dict with ``user_id``, ``email`` and ``status`` (``created``,
        ``promoted``, ``already_admin`` or ``dry_run``)
    """
    # Deferred so main() can adjust the environment before settings load
    from brewbean.logging import get_logger
    from brewbean.service.passwords import hash_password, validate_strength
    from brewbean.service.runtime import get_runtime

    problem = validate_strength(password)
    if problem:
        raise ValueError(problem)

    logger = get_logger("brewbean.bootstrap_admin")
    store = get_runtime().store
    email = email.strip().lower()
    user = store.get_user_by_email(email)

    if user is not None and user.role == "admin":
        status = "already_admin"
    elif dry_run:
        status = "dry_run"
    elif user is not None:
        store.set_user_role(user.id, "admin")
        status = "promoted"
    else:
        user = store.create_user(
            email=email, name=name, password_hash=hash_password(password), role="admin"
        )
        status = "created"

    user_id = user.id if user is not None else None
    logger.info("admin_bootstrap", user_id=user_id, status=status)
    return {"user_id": user_id, "email": email, "status": status}


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create or promote a Brew&Bean admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="defaults to $ADMIN_EMAIL")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="defaults to $ADMIN_PASSWORD"
    )
    parser.add_argument(
        "--name", default=os.environ.get("ADMIN_NAME", "Administrator"), help="defaults to $ADMIN_NAME"
    )
    parser.add_argument("--dry-run", action="store_true", help="report the outcome without writing")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    for flag, value in (("--email", args.email), ("--password", args.password)):
        if not value:
            print(f"Error: {flag} is required (or set ADMIN_{flag[2:].upper()})")
            return 1

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/brewbean-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: DATABASE_URL is not set, writing to the in-memory store")
    # No requests are rate limited here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(bootstrap_admin(args.email, args.password, args.name, args.dry_run))
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    print(_OUTCOMES[result["status"]])
    print(f"  Email:   {result['email']}")
    print(f"  User ID: {result['user_id'] or '-'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
