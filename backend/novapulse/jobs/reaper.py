from __future__ import annotations

import argparse
import logging
from time import sleep

from sqlalchemy.orm import Session

from novapulse.core import db as db_module
from novapulse.core.config import settings
from novapulse.core.logging import configure_worker_logging
from novapulse.core.queue import reap_expired_leases


logger = logging.getLogger(__name__)


def run_lease_reaper(db: Session, *, limit: int = 100) -> int:
    reaped = reap_expired_leases(db, limit=limit)
    return len(reaped)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recover jobs whose worker lease expired.")
    parser.add_argument("--once", action="store_true", help="Run once and exit.")
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--interval", type=float, default=None)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_worker_logging()
    interval = args.interval if args.interval is not None else settings.JOB_QUEUE_REAPER_INTERVAL_SECONDS
    while True:
        with db_module.SessionLocal() as db:
            count = run_lease_reaper(db, limit=args.limit)
        if args.once:
            logger.info("Reaped %s job(s)", count)
            break
        sleep(max(0.1, interval))


if __name__ == "__main__":
    main()
