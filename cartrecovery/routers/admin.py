"""Operational endpoints: queue health and conversion lookups."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cartrecovery.database import get_db
from cartrecovery.services.job_queue import QUEUES, queue_stats
from cartrecovery.services.payment_service import get_payment_status, get_user_conversion_stats, is_converted

router = APIRouter(tags=["admin"])


@router.get("/queues/stats")
def get_queue_stats(db: Session = Depends(get_db)):
    return {queue: queue_stats(db, queue) for queue in QUEUES}


@router.get("/abandonments/{abandonment_id}/payment")
def get_abandonment_payment(abandonment_id: str, db: Session = Depends(get_db)):
    payment = get_payment_status(db, abandonment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Abandonment not found")
    payment["converted"] = is_converted(db, abandonment_id)
    return payment


@router.get("/users/{user_id}/conversion-stats")
def get_conversion_stats(user_id: UUID, db: Session = Depends(get_db)):
    return get_user_conversion_stats(db, user_id)
