"""Whitelist rewards recalculation worker (cron / worker service).

Run once (cron):
  python recalc_worker.py

Run as a long-lived worker by setting WHITELIST_RECALC_INTERVAL_SECONDS > 0.

Environment:
- KV_REDIS_URL (or REDIS_URL / KV_URL)
- POINTS_SEASON_ID, POINTS_SEASON_END / WHITELIST_CLAIM_OPENS_AT
- WHITELIST_* reward parameters (see rewards_config.py)
"""

import logging
import os
import sys
import time

import redis

from app import app
from extensions import kv
from kv_store import StoreUnavailable
from rewards_config import load_whitelist_config
from whitelist_recalc import run_recalc

logger = logging.getLogger("recalc_worker")

INTERVAL = int(os.getenv("WHITELIST_RECALC_INTERVAL_SECONDS", "0") or 0)


def run_once(config) -> dict:
    with app.app_context():
        store = kv.get_store()
        result = run_recalc(store, config, int(time.time() * 1000))
    result.pop("summary", None)
    return result


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_whitelist_config()
    missing = config.missing_fields()
    if missing:
        logger.error("Missing required env: %s", ", ".join(missing))
        sys.exit(2)

    while True:
        try:
            print(dict(run_once(config), ok=True))
        except (StoreUnavailable, redis.RedisError) as e:
            logger.error("Recalc skipped, store unavailable: %s", e)
            if INTERVAL <= 0:
                sys.exit(1)
        except Exception:
            logger.exception("Recalc failed")
            if INTERVAL <= 0:
                sys.exit(1)
        if INTERVAL <= 0:
            return
        time.sleep(INTERVAL)


if __name__ == "__main__":
    main()
