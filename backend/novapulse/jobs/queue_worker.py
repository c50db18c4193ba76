from __future__ import annotations

import argparse
import logging
import socket
import threading
from time import monotonic
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from novapulse.core import db as db_module
from novapulse.core.config import settings
from novapulse.core.errors import JobNotActive
from novapulse.core.logging import configure_worker_logging
from novapulse.core.metrics import record_queue_job, record_queue_runtime, record_queue_wait
from novapulse.core.queue import (
    QUEUE_NAMES,
    claim_next,
    complete_job,
    get_queue_handler,
    reap_expired_leases,
    register_queue_handler,
    renew_lease,
    retry_or_fail,
    validate_queue_name,
)
from novapulse.core.time import normalize_dt, utcnow
from novapulse.core.tracing import job_trace
from novapulse.jobs.handlers import handle_email, handle_report, handle_workflow
from novapulse.webhooks.delivery import deliver_webhook_job


logger = logging.getLogger(__name__)

_JSON_SCALARS = (str, int, float, bool, type(None))


def register_default_handlers() -> None:
    register_queue_handler("email", handle_email)
    register_queue_handler("webhook", deliver_webhook_job)
    register_queue_handler("workflow", handle_workflow)
    register_queue_handler("report", handle_report)


def _json_result(value: Any) -> Any:
    if isinstance(value, (dict, list, *_JSON_SCALARS)):
        return value
    return str(value)


def _error_message(exc: Exception) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


class LeaseHeartbeat:
    """Keeps renewing a claimed job's lease while its handler runs.

    Renewals go through their own session on a side thread, every third of
    the lease, so a slow handler never looks abandoned to the reaper.
    """

    def __init__(self, bind, job_id: int, *, worker_id: str, lease_seconds: int) -> None:
        self.bind = bind
        self.job_id = job_id
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.interval = max(0.05, lease_seconds / 3.0)
        self.lost = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                with Session(bind=self.bind) as db:
                    renew_lease(
                        db,
                        self.job_id,
                        worker_id=self.worker_id,
                        lease_seconds=self.lease_seconds,
                    )
            except JobNotActive:
                self.lost = True
                logger.warning(
                    "Lease lost while handler running: job_id=%s worker_id=%s",
                    self.job_id,
                    self.worker_id,
                )
                return
            except Exception:
                logger.exception("Lease heartbeat error: job_id=%s", self.job_id)

    def __enter__(self) -> "LeaseHeartbeat":
        self._thread = threading.Thread(
            target=self._run,
            name=f"lease-heartbeat-{self.job_id}",
            daemon=True,
        )
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> bool:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        return False


def run_queue_once(
    db: Session,
    *,
    queue_name: str,
    worker_id: str,
    lease_seconds: int | None = None,
) -> bool:
    """Claim and process a single job. Returns False when nothing was eligible."""
    lease = lease_seconds if lease_seconds is not None else settings.JOB_QUEUE_LEASE_SECONDS
    job = claim_next(db, queue_name=queue_name, worker_id=worker_id, lease_seconds=lease)
    if job is None:
        return False

    created_at = normalize_dt(job.created_at)
    if created_at is not None:
        record_queue_wait(queue_name, max(0.0, (utcnow() - created_at).total_seconds()))

    job_id = job.id
    start = monotonic()
    with job_trace(job_id, queue_name):
        handler = get_queue_handler(queue_name)
        try:
            if handler is None:
                raise LookupError("no_handler_registered")
            with LeaseHeartbeat(db.get_bind(), job_id, worker_id=worker_id, lease_seconds=lease):
                result = handler(db, job)
        except Exception as exc:
            db.rollback()
            logger.exception(
                "Queue job failed: queue=%s job_id=%s worker_id=%s",
                queue_name,
                job_id,
                worker_id,
            )
            try:
                failed = retry_or_fail(db, job_id, _error_message(exc), worker_id=worker_id)
            except JobNotActive:
                logger.warning("Lease lost before failure was recorded: job_id=%s", job_id)
                record_queue_job(queue_name, status="lease_lost")
                return True
            record_queue_job(queue_name, status="failed" if failed.state == "failed" else "retry")
            return True

        try:
            complete_job(db, job_id, worker_id=worker_id, result=_json_result(result))
        except JobNotActive:
            logger.warning("Lease lost before completion: job_id=%s worker_id=%s", job_id, worker_id)
            record_queue_job(queue_name, status="lease_lost")
            return True
    record_queue_job(queue_name, status="success")
    record_queue_runtime(queue_name, monotonic() - start)
    return True


def run_queue_group_once(db: Session, *, queue_names: Iterable[str], worker_id: str) -> int:
    processed = 0
    for queue_name in queue_names:
        if run_queue_once(db, queue_name=queue_name, worker_id=worker_id):
            processed += 1
    return processed


class WorkerPool:
    """N threads per queue plus one reaper thread, each with its own session."""

    def __init__(
        self,
        queue_names: Iterable[str] | None = None,
        *,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        reaper_interval: float | None = None,
        session_factory: Callable[[], Session] | None = None,
        worker_prefix: str | None = None,
    ) -> None:
        names = list(queue_names) if queue_names is not None else list(settings.JOB_QUEUE_NAMES)
        self.queue_names = [validate_queue_name(name) for name in names]
        self.concurrency = concurrency or settings.JOB_QUEUE_WORKERS_PER_QUEUE
        self.poll_interval = poll_interval if poll_interval is not None else settings.JOB_QUEUE_POLL_INTERVAL_SECONDS
        self.reaper_interval = (
            reaper_interval if reaper_interval is not None else settings.JOB_QUEUE_REAPER_INTERVAL_SECONDS
        )
        self.session_factory = session_factory or (lambda: db_module.SessionLocal())
        self.worker_prefix = worker_prefix or socket.gethostname()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def _worker_loop(self, queue_name: str, worker_id: str) -> None:
        logger.info("Worker started: queue=%s worker_id=%s", queue_name, worker_id)
        while not self._stop.is_set():
            try:
                with self.session_factory() as db:
                    processed = run_queue_once(db, queue_name=queue_name, worker_id=worker_id)
            except Exception:
                # Store outages must not kill the thread; back off and retry.
                logger.exception("Worker loop error: queue=%s worker_id=%s", queue_name, worker_id)
                processed = False
            if not processed:
                self._stop.wait(max(0.05, self.poll_interval))
        logger.info("Worker stopped: queue=%s worker_id=%s", queue_name, worker_id)

    def _reaper_loop(self) -> None:
        while not self._stop.wait(max(0.05, self.reaper_interval)):
            try:
                with self.session_factory() as db:
                    reap_expired_leases(db)
            except Exception:
                logger.exception("Reaper loop error")

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for queue_name in self.queue_names:
            for index in range(self.concurrency):
                worker_id = f"{self.worker_prefix}:{queue_name}:{index + 1}"
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(queue_name, worker_id),
                    name=f"worker-{queue_name}-{index + 1}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        reaper = threading.Thread(target=self._reaper_loop, name="lease-reaper", daemon=True)
        reaper.start()
        self._threads.append(reaper)

    def stop(self, timeout: float | None = 30.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def wait(self) -> None:
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.stop()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run queue workers.")
    parser.add_argument(
        "--queue",
        choices=[*QUEUE_NAMES, "all"],
        default="all",
    )
    parser.add_argument("--once", action="store_true", help="Process at most one job per queue and exit.")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--poll-interval", type=float, default=None)
    parser.add_argument("--worker-id", type=str, default=None)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_worker_logging()
    register_default_handlers()
    queue_names = list(settings.JOB_QUEUE_NAMES) if args.queue == "all" else [args.queue]

    if args.once:
        worker_id = args.worker_id or f"{socket.gethostname()}:once"
        with db_module.SessionLocal() as db:
            processed = run_queue_group_once(db, queue_names=queue_names, worker_id=worker_id)
        logger.info("Processed %s job(s)", processed)
        return

    pool = WorkerPool(
        queue_names,
        concurrency=args.concurrency,
        poll_interval=args.poll_interval,
        worker_prefix=args.worker_id,
    )
    pool.start()
    pool.wait()


if __name__ == "__main__":
    main()
