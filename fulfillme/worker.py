"""
Background sweeper that removes needs whose ``expires_at`` has passed.

Public reads already hide expired needs; this loop deletes them from the
store regardless of status. Intended to be run under systemd/supervisor.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fulfillme.config import get_settings
from fulfillme.db import DbClient
from fulfillme.dependencies import get_db_client

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)


def sweep_expired_needs(
    db: Optional[DbClient] = None, now: Optional[float] = None
) -> int:
    """Delete expired needs once. Returns how many were removed."""
    db = db or get_db_client()
    removed = db.purge_expired_needs(now=now)
    if removed:
        logger.info("Removed %d expired need(s)", removed)
    return removed


def run_loop(interval_seconds: Optional[float] = None) -> None:
    db = get_db_client()
    interval = interval_seconds or get_settings().sweep_interval_seconds
    while True:
        try:
            sweep_expired_needs(db)
        except Exception:
            logger.exception("Failed to sweep expired needs")
        time.sleep(interval)


if __name__ == "__main__":
    run_loop()
