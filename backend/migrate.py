from __future__ import annotations

import argparse
from pathlib import Path

from alembic import command
from alembic.config import Config

from caresync.config import settings
from caresync.db import check_db_connection, purge_resolved_security_events

BACKEND_DIR = Path(__file__).resolve().parent


def alembic_config(database_url: str | None = None) -> Config:
    cfg = Config(str(BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    # Alembic's config parser treats `%` as an interpolation marker.
    cfg.set_main_option("sqlalchemy.url", (database_url or settings.database_url).replace("%", "%%"))
    return cfg


def run_migrations(revision: str = "head") -> None:
    command.upgrade(alembic_config(), revision)


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply CareSync Guard database migrations.")
    parser.add_argument("--revision", default="head")
    parser.add_argument(
        "--purge-days",
        type=int,
        default=None,
        help="Also delete resolved security events older than this many days.",
    )
    args = parser.parse_args()

    run_migrations(args.revision)
    check_db_connection()
    print(f"Migrations applied up to {args.revision}.")
    if args.purge_days is not None:
        purged = purge_resolved_security_events(older_than_days=args.purge_days)
        print(f"Purged resolved security events: {purged}")


if __name__ == "__main__":
    main()
