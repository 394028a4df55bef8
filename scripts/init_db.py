"""
Create the schema and seed one API user per role.

Idempotent: existing users keep their keys. New keys are printed once;
store them somewhere safe.

Usage:
  python scripts/init_db.py
"""

import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select

from app.docvault.auth import generate_api_key
from app.docvault.db import build_engine
from app.docvault.models import Base, Role, User
from scripts._db_utils import script_session

SEED_USERS = (
    ("admin", Role.ADMIN),
    ("editor", Role.EDITOR),
    ("viewer", Role.VIEWER),
)


def create_schema(database_url: str) -> None:
    engine = build_engine(database_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()


def seed_only(*, database_url: str | None = None) -> dict[str, str]:
    """Returns {username: api_key} for users created by this run."""
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///docvault.db").strip()
    created: dict[str, str] = {}
    with script_session(db_url) as s:
        for username, role in SEED_USERS:
            user = s.scalars(select(User).where(User.username == username)).one_or_none()
            if user is not None:
                continue
            key = generate_api_key()
            s.add(User(username=username, api_key=key, role=role.value))
            created[username] = key
    return created


def main() -> None:
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///docvault.db").strip()
    create_schema(db_url)
    created = seed_only(database_url=db_url)
    print("Initialized database.")
    for username, key in created.items():
        print(f"{username}: {key}")
    if not created:
        print("Seed users already present; no keys issued.")


if __name__ == "__main__":
    main()
