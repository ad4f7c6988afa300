#!/usr/bin/env python3
"""Apply the Tasklane schema and optionally seed a demo account.

Usage:
    # Schema only:
    DATABASE_URL=postgresql://localhost:5432/tasklane python scripts/init_db.py

    # Schema plus a demo user with sample tags and tasks:
    python scripts/init_db.py --seed-demo --email demo@example.com --password password123

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required)
    DEMO_EMAIL: Email for the demo user (optional)
    DEMO_PASSWORD: Password for the demo user (optional)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import date, timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEMO_TAGS = (("work", "#2563eb"), ("personal", "#16a34a"), ("urgent", "#dc2626"))
DEMO_TASKS = (
    ("Draft quarterly report", "Collect numbers from finance", "in_progress", "high", 3, ("work",)),
    ("Renew passport", None, "todo", "critical", 10, ("personal", "urgent")),
    ("Clean up inbox", "Archive everything older than a month", "todo", "low", None, ()),
)


async def init_db(database_url: str, *, seed_demo: bool, email: str | None, password: str | None) -> dict:
    """Apply the schema; when requested, create the demo account and its data."""
    from tasklane.service.auth import hash_password
    from tasklane.storage.errors import ConstraintViolation
    from tasklane.storage.models import NewTask
    from tasklane.storage.postgres import SCHEMA_PATH, PostgresStore

    store = PostgresStore(database_url, max_size=2)
    await store.open(verify_schema=False)
    try:
        await store.apply_schema(SCHEMA_PATH)
        print(f"Applied schema from {SCHEMA_PATH.name}")
        if not seed_demo:
            return {"status": "schema_applied"}

        try:
            user = await store.create_user(
                email, "Demo User", hash_password(password, iterations=100_000)
            )
        except ConstraintViolation:
            existing = await store.get_user_by_email(email)
            print(f"Demo user {email} already exists (id: {existing.id})")
            return {"status": "already_seeded", "user_id": existing.id}

        tag_ids = {}
        for name, color in DEMO_TAGS:
            tag = await store.create_tag(user.id, name, color)
            tag_ids[name] = tag.id
        for title, description, status, priority, due_in_days, tags in DEMO_TASKS:
            await store.create_task(
                user.id,
                NewTask(
                    title=title,
                    description=description,
                    status=status,
                    priority=priority,
                    due_date=date.today() + timedelta(days=due_in_days) if due_in_days else None,
                    tag_ids=[tag_ids[name] for name in tags],
                ),
            )
        print(f"Seeded demo user {email} (id: {user.id})")
        return {"status": "seeded", "user_id": user.id}
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Initialise the Tasklane database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (or set DATABASE_URL env var)",
    )
    parser.add_argument("--seed-demo", action="store_true", help="Create a demo account")
    parser.add_argument("--email", default=os.environ.get("DEMO_EMAIL", "demo@example.com"))
    parser.add_argument("--password", default=os.environ.get("DEMO_PASSWORD"))

    args = parser.parse_args()

    if not args.database_url:
        print("Error: --database-url or DATABASE_URL environment variable required")
        sys.exit(1)

    if args.seed_demo and (not args.password or len(args.password) < 8):
        print("Error: --password (8+ characters) required with --seed-demo")
        sys.exit(1)

    try:
        result = asyncio.run(
            init_db(
                args.database_url,
                seed_demo=args.seed_demo,
                email=args.email.strip().lower(),
                password=args.password,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Done: {result['status']}")


if __name__ == "__main__":
    main()
