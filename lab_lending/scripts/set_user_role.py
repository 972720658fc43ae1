#!/usr/bin/env python3
"""Promote or demote one user from the terminal."""

from __future__ import annotations

import argparse
import os

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from lab_lending.models.lending_models import UserProfile
from lab_lending.services.errors import LendingError
from lab_lending.services.user_profile_service import ROLES, set_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Set the stored role of one Lab Lending user.")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--uid", help="UserID in the users table")
    target.add_argument("--email", help="Email of the user")
    parser.add_argument("--role", choices=sorted(ROLES), required=True)
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LAB_LENDING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to LAB_LENDING_DB_URL env var.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.db_url:
        parser.error("Missing DB URL. Set LAB_LENDING_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with session_factory() as db:
        user_id = args.uid
        if not user_id:
            email = args.email.strip().lower()
            user_id = db.execute(select(UserProfile.UserID).where(UserProfile.Email == email)).scalars().first()
            if not user_id:
                print(f"No user with email {email}")
                return 4
        try:
            profile = set_role(db, user_id, args.role)
        except LendingError as exc:
            print(f"FAILED uid={user_id}: {exc}")
            return 4

    print(f"OK uid={profile['id']} email={profile['email']} role={profile['role']} updated_at={profile['updatedAt']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
