from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from novapulse.api.dependencies import get_optional_company_id
from novapulse.core.db import get_db
from novapulse.core.errors import JobNotFound
from novapulse.core.queue import get_all_stats, pause_queue, paused_queues, queue_health, resume_queue
from novapulse.models.jobs import Job
from novapulse.schemas.jobs import JobRead, QueueControlRead, QueueSnapshotRead, QueueStatsRead


router = APIRouter(prefix="/queue", tags=["queue"])


@router.get("/stats", response_model=QueueStatsRead)
def queue_stats(db: Session = Depends(get_db)):
    stats = get_all_stats(db)
    paused = paused_queues(db)
    return QueueStatsRead(
        stats={
            queue_name: QueueSnapshotRead(
                **item.as_dict(),
                is_paused=queue_name in paused,
                health=queue_health(item),
            )
            for queue_name, item in stats.items()
        }
    )


@router.post("/{queue_name}/pause", response_model=QueueControlRead)
def pause(queue_name: str, db: Session = Depends(get_db)):
    control, moved = pause_queue(db, queue_name)
    return QueueControlRead(
        queue_name=control.queue_name,
        is_paused=control.is_paused,
        paused_at=control.paused_at,
        affected_jobs=moved,
    )


@router.post("/{queue_name}/resume", response_model=QueueControlRead)
def resume(queue_name: str, db: Session = Depends(get_db)):
    control, moved = resume_queue(db, queue_name)
    return QueueControlRead(
        queue_name=control.queue_name,
        is_paused=control.is_paused,
        paused_at=control.paused_at,
        affected_jobs=moved,
    )


@router.get("/jobs/{job_id}", response_model=JobRead)
def get_job(
    job_id: int,
    db: Session = Depends(get_db),
    company_id: str | None = Depends(get_optional_company_id),
):
    query = db.query(Job).filter(Job.id == job_id)
    if company_id is not None:
        # Tenant callers only see their own jobs.
        query = query.filter(Job.company_id == company_id)
    job = query.first()
    if job is None:
        raise JobNotFound(job_id)
    return job
