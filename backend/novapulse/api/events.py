from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from novapulse.api.dependencies import get_company_id
from novapulse.core.db import get_db
from novapulse.schemas.webhooks import EventFire, EventFireResult
from novapulse.webhooks.dispatcher import fire_event


router = APIRouter(prefix="/events", tags=["events"])


@router.post("", response_model=EventFireResult, status_code=status.HTTP_202_ACCEPTED)
def fire_domain_event(
    payload: EventFire,
    db: Session = Depends(get_db),
    company_id: str = Depends(get_company_id),
):
    jobs = fire_event(db, company_id=company_id, event_name=payload.event, payload=payload.payload)
    return EventFireResult(queued=len(jobs), job_ids=[job.id for job in jobs])
