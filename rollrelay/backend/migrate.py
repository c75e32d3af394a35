"""Apply the relay SQL schema to a PostgreSQL database."""

from __future__ import annotations

import logging
from pathlib import Path

from rollrelay.config import configure_logging, load_settings


SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")

logger = logging.getLogger(__name__)


def read_schema() -> str:
    return SCHEMA_PATH.read_text(encoding="utf-8")


def apply_schema(database_url: str) -> None:
    import psycopg

    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(read_schema())
        conn.commit()
    logger.info("schema_applied", extra={"schema": SCHEMA_PATH.name})


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.database_url:
        raise RuntimeError("ROLLRELAY_DATABASE_URL is required for migration")
    apply_schema(settings.database_url)


if __name__ == "__main__":
    main()
