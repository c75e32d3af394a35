"""Configuration helpers for the relay service, the issuer and the bridge agent."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass(frozen=True)
class RelaySettings:
    service_key: str | None
    database_url: str | None
    host: str
    port: int
    store_url: str | None
    log_level: str
    poll_interval_s: float
    outcome_timeout_s: float
    watch_timeout_s: float
    sweep_interval_s: float
    retention_s: float


def load_settings() -> RelaySettings:
    return RelaySettings(
        service_key=os.getenv("ROLLRELAY_SERVICE_KEY") or None,
        database_url=os.getenv("ROLLRELAY_DATABASE_URL") or None,
        host=os.getenv("ROLLRELAY_HOST", "127.0.0.1"),
        port=int(os.getenv("ROLLRELAY_PORT", "8000")),
        store_url=os.getenv("ROLLRELAY_STORE_URL") or None,
        log_level=os.getenv("ROLLRELAY_LOG_LEVEL", "INFO").upper(),
        poll_interval_s=float(os.getenv("ROLLRELAY_POLL_INTERVAL_S", "1.0")),
        outcome_timeout_s=float(os.getenv("ROLLRELAY_OUTCOME_TIMEOUT_S", "30")),
        watch_timeout_s=float(os.getenv("ROLLRELAY_WATCH_TIMEOUT_S", "5")),
        sweep_interval_s=float(os.getenv("ROLLRELAY_SWEEP_INTERVAL_S", "0")),
        retention_s=float(os.getenv("ROLLRELAY_RETENTION_S", "86400")),
    )


def configure_logging(level: str = "INFO") -> None:
    """Install the root handler used by the service and launcher entry points."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
