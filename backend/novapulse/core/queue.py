from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from pydantic import BaseModel, ValidationError
from sqlalchemy import and_, func, or_, update
from sqlalchemy.orm import Session

from novapulse.core.config import settings
from novapulse.core.errors import InvalidJobOptions, InvalidJobPayload, InvalidQueueName, JobNotActive, JobNotFound
from novapulse.core.metrics import (
    record_lease_reaped,
    record_queue_depth,
    record_queue_enqueued,
    record_queue_retry,
)
from novapulse.core.time import normalize_dt, utcnow
from novapulse.models.enums import JobStateEnum, QueueNameEnum
from novapulse.models.jobs import Job
from novapulse.models.queue_controls import QueueControl
from novapulse.schemas.jobs import (
    EmailJobPayload,
    ReportJobPayload,
    WebhookJobPayload,
    WorkflowJobPayload,
)


logger = logging.getLogger(__name__)

QueueHandler = Callable[[Session, Job], Any]

QUEUE_NAMES = tuple(item.value for item in QueueNameEnum)

QUEUE_PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    QueueNameEnum.EMAIL.value: EmailJobPayload,
    QueueNameEnum.WEBHOOK.value: WebhookJobPayload,
    QueueNameEnum.WORKFLOW.value: WorkflowJobPayload,
    QueueNameEnum.REPORT.value: ReportJobPayload,
}

WAITING = JobStateEnum.WAITING.value
ACTIVE = JobStateEnum.ACTIVE.value
DELAYED = JobStateEnum.DELAYED.value
COMPLETED = JobStateEnum.COMPLETED.value
FAILED = JobStateEnum.FAILED.value
PAUSED = JobStateEnum.PAUSED.value

LEASE_EXPIRED_ERROR = "lease_expired"


@dataclass
class RetryPolicy:
    max_attempts: int
    base_delay_seconds: int
    max_delay_seconds: int
    strategy: str = "exponential"


QUEUE_RETRY_POLICIES: dict[str, RetryPolicy] = {
    "email": RetryPolicy(max_attempts=5, base_delay_seconds=2, max_delay_seconds=300),
    "webhook": RetryPolicy(max_attempts=3, base_delay_seconds=1, max_delay_seconds=300),
    "workflow": RetryPolicy(max_attempts=3, base_delay_seconds=2, max_delay_seconds=300),
    "report": RetryPolicy(max_attempts=2, base_delay_seconds=5, max_delay_seconds=300, strategy="fixed"),
}

DEFAULT_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=2, max_delay_seconds=300)


@dataclass
class QueueSnapshot:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed + self.paused

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


_QUEUE_HANDLERS: dict[str, QueueHandler] = {}


def register_queue_handler(queue_name: str, handler: QueueHandler) -> None:
    _QUEUE_HANDLERS[validate_queue_name(queue_name)] = handler


def clear_queue_handlers() -> None:
    _QUEUE_HANDLERS.clear()


def get_queue_handler(queue_name: str) -> QueueHandler | None:
    return _QUEUE_HANDLERS.get(queue_name)


def validate_queue_name(queue_name: str | None) -> str:
    name = (queue_name or "").strip().lower()
    if name not in QUEUE_NAMES:
        raise InvalidQueueName(str(queue_name), allowed=list(QUEUE_NAMES))
    return name


def validate_payload(queue_name: str, payload: dict[str, Any] | BaseModel | None) -> dict[str, Any]:
    model = QUEUE_PAYLOAD_MODELS[queue_name]
    if isinstance(payload, model):
        return payload.model_dump(mode="json")
    try:
        parsed = model.model_validate(payload or {})
    except ValidationError as exc:
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors()
        ]
        raise InvalidJobPayload(queue_name, errors) from exc
    return parsed.model_dump(mode="json")


def policy_for_queue(queue_name: str) -> RetryPolicy:
    return QUEUE_RETRY_POLICIES.get(queue_name, DEFAULT_RETRY_POLICY)


def backoff_seconds(policy: RetryPolicy, attempt: int) -> int:
    """Delay before attempt ``attempt + 1``: ``min(base * 2**attempt, max)``."""
    if policy.strategy == "fixed":
        return min(policy.base_delay_seconds, policy.max_delay_seconds)
    multiplier = 2 ** max(attempt, 0)
    delay = policy.base_delay_seconds * multiplier
    return min(delay, policy.max_delay_seconds)


def is_queue_paused(db: Session, queue_name: str) -> bool:
    control = db.get(QueueControl, queue_name)
    return bool(control and control.is_paused)


def enqueue_job(
    db: Session,
    *,
    queue_name: str,
    payload: dict[str, Any] | BaseModel | None,
    delay_until: datetime | None = None,
    max_attempts: int | None = None,
    company_id: str | None = None,
    commit: bool = True,
) -> Job:
    queue_name = validate_queue_name(queue_name)
    if max_attempts is not None and max_attempts < 1:
        raise InvalidJobOptions("max_attempts must be at least 1")
    body = validate_payload(queue_name, payload)
    policy = policy_for_queue(queue_name)
    now = utcnow()
    next_attempt_at = normalize_dt(delay_until)

    if next_attempt_at is not None and next_attempt_at > now:
        state = DELAYED
    elif is_queue_paused(db, queue_name):
        state = PAUSED
        next_attempt_at = None
    else:
        state = WAITING
        next_attempt_at = None

    job = Job(
        queue_name=queue_name,
        company_id=company_id,
        payload_json=body,
        state=state,
        attempts=0,
        max_attempts=max_attempts or policy.max_attempts,
        next_attempt_at=next_attempt_at,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    if commit:
        db.commit()
        db.refresh(job)
    else:
        db.flush()
    record_queue_enqueued(queue_name)
    return job


def _eligible_filter(queue_name: str, now: datetime):
    return and_(
        Job.queue_name == queue_name,
        or_(
            Job.state == WAITING,
            and_(Job.state == DELAYED, Job.next_attempt_at <= now),
        ),
    )


def claim_next(
    db: Session,
    *,
    queue_name: str,
    worker_id: str,
    lease_seconds: int | None = None,
) -> Job | None:
    """Claim one eligible job for ``worker_id`` or return None.

    Candidates are read first, then each is claimed with a conditional
    UPDATE guarded on the eligible states. Only the caller whose UPDATE
    matched a row owns the job, so two workers can never both claim it.
    """
    queue_name = validate_queue_name(queue_name)
    if is_queue_paused(db, queue_name):
        db.rollback()
        return None

    lease = lease_seconds if lease_seconds is not None else settings.JOB_QUEUE_LEASE_SECONDS
    while True:
        now = utcnow()
        candidate_ids = [
            row[0]
            for row in db.query(Job.id)
            .filter(_eligible_filter(queue_name, now))
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(max(1, settings.JOB_QUEUE_CLAIM_BATCH))
            .with_for_update(skip_locked=True)
            .all()
        ]
        if not candidate_ids:
            db.rollback()
            return None

        for job_id in candidate_ids:
            result = db.execute(
                update(Job)
                .where(Job.id == job_id, _eligible_filter(queue_name, now))
                .values(
                    state=ACTIVE,
                    lease_owner=worker_id,
                    lease_expires_at=now + timedelta(seconds=max(1, lease)),
                    claimed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                db.commit()
                job = db.get(Job, job_id)
                db.refresh(job)
                return job

        # Every candidate went to another worker; read the next batch.
        db.rollback()


def _load_job(db: Session, job_id: int) -> Job:
    job = db.get(Job, job_id)
    if job is None:
        raise JobNotFound(job_id)
    return job


def complete_job(
    db: Session,
    job_id: int,
    *,
    worker_id: str | None = None,
    result: Any = None,
) -> Job:
    job = _load_job(db, job_id)
    now = utcnow()
    stmt = update(Job).where(Job.id == job_id, Job.state == ACTIVE)
    if worker_id is not None:
        stmt = stmt.where(Job.lease_owner == worker_id)
    outcome = db.execute(
        stmt.values(
            state=COMPLETED,
            attempts=Job.attempts + 1,
            result_json=result,
            last_error=None,
            lease_owner=None,
            lease_expires_at=None,
            finished_at=now,
            updated_at=now,
        ).execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        db.rollback()
        db.refresh(job)
        raise JobNotActive(job_id, job.state)
    db.commit()
    db.refresh(job)
    return job


def renew_lease(
    db: Session,
    job_id: int,
    *,
    worker_id: str,
    lease_seconds: int | None = None,
) -> datetime:
    """Push the lease of a job still owned by ``worker_id`` forward.

    Raises JobNotActive once the job left ``active`` or changed owner, which
    tells a heartbeat that it no longer holds the job.
    """
    lease = lease_seconds if lease_seconds is not None else settings.JOB_QUEUE_LEASE_SECONDS
    now = utcnow()
    expires_at = now + timedelta(seconds=max(1, lease))
    outcome = db.execute(
        update(Job)
        .where(Job.id == job_id, Job.state == ACTIVE, Job.lease_owner == worker_id)
        .values(lease_expires_at=expires_at, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        db.rollback()
        current = db.get(Job, job_id)
        raise JobNotActive(job_id, current.state if current is not None else None)
    db.commit()
    return expires_at


def retry_or_fail(
    db: Session,
    job_id: int,
    error: str,
    *,
    worker_id: str | None = None,
    lease_expired_before: datetime | None = None,
) -> Job:
    """Record a failed attempt; schedule a retry or mark the job failed.

    ``lease_expired_before`` restricts the call to jobs whose lease ran out
    before that instant, which is how the reaper avoids touching a job that
    was re-claimed after its scan.
    """
    job = _load_job(db, job_id)
    if job.state != ACTIVE or (worker_id is not None and job.lease_owner != worker_id):
        raise JobNotActive(job_id, job.state)
    if lease_expired_before is not None:
        expires_at = normalize_dt(job.lease_expires_at)
        if expires_at is None or expires_at >= lease_expired_before:
            raise JobNotActive(job_id, job.state)

    now = utcnow()
    attempts = int(job.attempts or 0) + 1
    values: dict[str, Any] = {
        "attempts": attempts,
        "last_error": error,
        "lease_owner": None,
        "lease_expires_at": None,
        "updated_at": now,
    }
    if attempts < job.max_attempts:
        delay = backoff_seconds(policy_for_queue(job.queue_name), attempts)
        values["state"] = DELAYED
        values["next_attempt_at"] = now + timedelta(seconds=delay)
    else:
        values["state"] = FAILED
        values["finished_at"] = now

    outcome = db.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.state == ACTIVE,
            Job.attempts == job.attempts,
            Job.lease_owner == job.lease_owner,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        db.rollback()
        db.refresh(job)
        raise JobNotActive(job_id, job.state)
    db.commit()
    db.refresh(job)
    if job.state == DELAYED:
        record_queue_retry(job.queue_name)
    return job


def _get_or_create_control(db: Session, queue_name: str) -> QueueControl:
    control = db.get(QueueControl, queue_name)
    if control is None:
        control = QueueControl(queue_name=queue_name, is_paused=False)
        db.add(control)
    return control


def pause_queue(db: Session, queue_name: str) -> tuple[QueueControl, int]:
    queue_name = validate_queue_name(queue_name)
    control = _get_or_create_control(db, queue_name)
    control.is_paused = True
    control.paused_at = utcnow()
    db.flush()
    moved = db.execute(
        update(Job)
        .where(Job.queue_name == queue_name, Job.state == WAITING)
        .values(state=PAUSED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    db.refresh(control)
    logger.info("Queue paused: queue=%s jobs_parked=%s", queue_name, moved)
    return control, int(moved or 0)


def resume_queue(db: Session, queue_name: str) -> tuple[QueueControl, int]:
    queue_name = validate_queue_name(queue_name)
    control = _get_or_create_control(db, queue_name)
    control.is_paused = False
    control.paused_at = None
    db.flush()
    moved = db.execute(
        update(Job)
        .where(Job.queue_name == queue_name, Job.state == PAUSED)
        .values(state=WAITING, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    db.refresh(control)
    logger.info("Queue resumed: queue=%s jobs_released=%s", queue_name, moved)
    return control, int(moved or 0)


def _apply_count(snapshot: QueueSnapshot, state: str, count: int) -> None:
    if hasattr(snapshot, state):
        setattr(snapshot, state, int(count))
    else:
        logger.warning("Ignoring jobs in unknown state: state=%s count=%s", state, count)


def snapshot(db: Session, queue_name: str) -> QueueSnapshot:
    queue_name = validate_queue_name(queue_name)
    result = QueueSnapshot()
    rows = (
        db.query(Job.state, func.count(Job.id))
        .filter(Job.queue_name == queue_name)
        .group_by(Job.state)
        .all()
    )
    for state, count in rows:
        _apply_count(result, state, count)
    record_queue_depth(queue_name, result.as_dict())
    return result


def get_all_stats(db: Session) -> dict[str, QueueSnapshot]:
    stats = {name: QueueSnapshot() for name in QUEUE_NAMES}
    rows = (
        db.query(Job.queue_name, Job.state, func.count(Job.id))
        .group_by(Job.queue_name, Job.state)
        .all()
    )
    for queue_name, state, count in rows:
        if queue_name in stats:
            _apply_count(stats[queue_name], state, count)
    for queue_name, item in stats.items():
        record_queue_depth(queue_name, item.as_dict())
    return stats


def paused_queues(db: Session) -> set[str]:
    return {
        row[0]
        for row in db.query(QueueControl.queue_name).filter(QueueControl.is_paused.is_(True)).all()
    }


def queue_health(item: QueueSnapshot) -> str:
    if item.failed < settings.QUEUE_HEALTH_MAX_FAILED and item.waiting < settings.QUEUE_HEALTH_MAX_WAITING:
        return "healthy"
    return "attention"


def reap_expired_leases(
    db: Session,
    *,
    now: datetime | None = None,
    limit: int = 100,
) -> list[int]:
    """Send active jobs whose lease ran out back through retry_or_fail."""
    now = normalize_dt(now) or utcnow()
    expired = (
        db.query(Job.id, Job.queue_name)
        .filter(Job.state == ACTIVE, Job.lease_expires_at < now)
        .order_by(Job.lease_expires_at.asc())
        .limit(limit)
        .all()
    )
    db.rollback()
    reaped: list[int] = []
    for job_id, queue_name in expired:
        try:
            retry_or_fail(db, job_id, LEASE_EXPIRED_ERROR, lease_expired_before=now)
        except JobNotActive:
            # Finished by its worker between the scan and the update.
            logger.info("Lease already released: job_id=%s", job_id)
            continue
        record_lease_reaped(queue_name)
        reaped.append(job_id)
    if reaped:
        logger.warning("Reaped expired leases: count=%s job_ids=%s", len(reaped), reaped)
    return reaped
