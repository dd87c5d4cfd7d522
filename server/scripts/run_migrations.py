#!/usr/bin/env python3
"""Prepare the import service's database and upload directory.

Run before the API or a Celery import worker starts: waits for the job
store to accept connections, upgrades the schema to ``head`` and creates
``UPLOAD_DIR`` so uploaded files have somewhere to land.
"""
import logging
import sys
import time
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from bulk_ingest.core.config import get_settings
from bulk_ingest.core.db import build_engine

logger = logging.getLogger("run_migrations")

ALEMBIC_INI_PATH = Path(__file__).resolve().parent.parent / "alembic.ini"


def wait_for_db(engine: Engine, attempts: int = 30, interval: float = 2.0) -> bool:
    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except OperationalError as exc:
            logger.warning(f"Job store not ready ({attempt}/{attempts}): {exc.orig}")
            if attempt < attempts:
                time.sleep(interval)
    return False


def upgrade(engine: Engine, database_url: str) -> None:
    """Upgrade to the latest revision, logging where the schema started from."""

    with engine.connect() as conn:
        start = MigrationContext.configure(conn).get_current_revision()
    logger.info(f"Schema revision before upgrade: {start or '(empty database)'}")

    config = Config(str(ALEMBIC_INI_PATH))
    config.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(config, "head")


def main() -> int:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="[%(asctime)s] %(levelname)s - %(message)s")

    engine = build_engine(settings.database_url)
    try:
        if not wait_for_db(engine):
            logger.error("Job store never became available")
            return 1
        upgrade(engine, settings.database_url)
    except Exception:
        logger.exception("Schema upgrade failed")
        return 1
    finally:
        engine.dispose()

    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
    logger.info(f"Schema is current; uploads go to {settings.upload_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
