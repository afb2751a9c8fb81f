#!/usr/bin/env python3
"""
Apply or roll back relational catalog migrations.

Usage:
    python scripts/migrate.py               # upgrade to head
    python scripts/migrate.py downgrade -1  # roll back one revision
"""

import logging
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

from polystore.common.logging_config import setup_logging
from polystore.config.settings import get_settings

project_root = Path(__file__).resolve().parent.parent
logger = logging.getLogger("polystore.migrate")


def alembic_config() -> Config:
    settings = get_settings()
    cfg = Config(str(project_root / "alembic.ini"))
    cfg.set_main_option("script_location", str(project_root / "migrations"))
    cfg.set_main_option("sqlalchemy.url", settings.database_url)
    return cfg


def run_migrations(revision: str = "head") -> int:
    logger.info(f"Upgrading catalog schema to {revision}")
    try:
        command.upgrade(alembic_config(), revision)
    except Exception:
        logger.exception("Migration failed")
        return 1
    logger.info("Migrations completed")
    return 0


def downgrade_migrations(revision: str = "-1") -> int:
    logger.info(f"Downgrading catalog schema to {revision}")
    try:
        command.downgrade(alembic_config(), revision)
    except Exception:
        logger.exception("Downgrade failed")
        return 1
    logger.info("Downgrade completed")
    return 0


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)
    if len(sys.argv) > 1 and sys.argv[1] == "downgrade":
        sys.exit(downgrade_migrations(sys.argv[2] if len(sys.argv) > 2 else "-1"))
    sys.exit(run_migrations())
