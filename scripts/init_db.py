"""Script to initialize the database.

Usage:
    python scripts/init_db.py          # create tables
    python scripts/init_db.py --seed   # create tables and demo accounts
"""

import argparse
import asyncio
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import insert, text

from app.config import settings
from app.core.security import create_access_token
from app.database import engine
from app.models import metadata, practitioners, services, users

DEMO_SERVICES = [
    ("Numerology reading", "numerology", 60, Decimal("150.00")),
    ("Coaching session", "coaching", 45, Decimal("90.00")),
    # Priced on request
    ("Company numerology study", "numerology", 120, settings.quote_price_sentinel),
]


async def init_db(seed: bool = False) -> None:
    """Create all tables, optionally with demo data."""
    async with engine.begin() as conn:
        if not settings.is_sqlite:
            await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))

        await conn.run_sync(metadata.create_all)
        print("✓ Database initialized successfully!")

        if not seed:
            return

        accounts = {
            "admin": uuid4(),
            "practitioner": uuid4(),
            "client": uuid4(),
        }
        for role, user_id in accounts.items():
            await conn.execute(
                insert(users).values(
                    id=user_id,
                    email=f"{role}@example.com",
                    first_name=role.capitalize(),
                    last_name="Demo",
                    role=role,
                )
            )

        await conn.execute(
            insert(practitioners).values(
                id=uuid4(), user_id=accounts["practitioner"], pseudo="Demo practitioner"
            )
        )

        for name, category, duration, price in DEMO_SERVICES:
            await conn.execute(
                insert(services).values(
                    id=uuid4(),
                    name=name,
                    category=category,
                    duration_minutes=duration,
                    price=price,
                )
            )

        print("✓ Demo data created. Bearer tokens:")
        for role, user_id in accounts.items():
            print(f"  {role}: {create_access_token(user_id)}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Initialize the database")
    parser.add_argument("--seed", action="store_true", help="Create demo accounts and services")
    args = parser.parse_args()

    asyncio.run(init_db(seed=args.seed))
