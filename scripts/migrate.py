"""Script to run database migrations.

Usage:
    python scripts/migrate.py                    # upgrade to head
    python scripts/migrate.py create <message>   # new revision
    python scripts/migrate.py downgrade <rev>    # downgrade to a revision
"""

import sys

from alembic import command
from alembic.config import Config

ALEMBIC_INI = "alembic.ini"


def run_migrations() -> None:
    """Run database migrations to latest version."""
    try:
        print("Running database migrations...")
        command.upgrade(Config(ALEMBIC_INI), "head")
        print("✓ Migrations completed successfully!")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        sys.exit(1)


def downgrade(revision: str) -> None:
    """Downgrade the schema to a revision."""
    try:
        print(f"Downgrading database to {revision}...")
        command.downgrade(Config(ALEMBIC_INI), revision)
        print("✓ Downgrade completed successfully!")
    except Exception as e:
        print(f"✗ Downgrade failed: {e}", file=sys.stderr)
        sys.exit(1)


def create_migration(message: str) -> None:
    """Create a new migration."""
    try:
        print(f"Creating migration: {message}")
        command.revision(Config(ALEMBIC_INI), message=message, autogenerate=True)
        print("✓ Migration created successfully!")
    except Exception as e:
        print(f"✗ Migration creation failed: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    if len(sys.argv) == 1:
        run_migrations()
    elif sys.argv[1] == "create" and len(sys.argv) > 2:
        create_migration(" ".join(sys.argv[2:]))
    elif sys.argv[1] == "downgrade" and len(sys.argv) == 3:
        downgrade(sys.argv[2])
    else:
        print("Usage: python scripts/migrate.py [create <message> | downgrade <revision>]")
        sys.exit(2)
