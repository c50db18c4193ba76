from __future__ import annotations

import argparse
import logging

from sqlalchemy.orm import Session

from novapulse.core import db as db_module
from novapulse.core.logging import configure_worker_logging
from novapulse.core.retention import compute_purge_cutoff
from novapulse.crud.webhook_delivery_logs import purge_delivery_logs


logger = logging.getLogger(__name__)


def run_delivery_log_retention(db: Session, *, days: int | None = None) -> int:
    cutoff = compute_purge_cutoff("webhook_delivery_logs", days)
    try:
        deleted = purge_delivery_logs(db, cutoff)
    except Exception:
        db.rollback()
        logger.exception("Delivery log retention failed: cutoff=%s", cutoff.isoformat())
        raise
    logger.info("Delivery log retention: cutoff=%s deleted=%s", cutoff.isoformat(), deleted)
    return deleted


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Purge webhook delivery logs past retention.")
    parser.add_argument("--days", type=int, default=None, help="Override the retention window.")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_worker_logging()
    with db_module.SessionLocal() as db:
        run_delivery_log_retention(db, days=args.days)


if __name__ == "__main__":
    main()
