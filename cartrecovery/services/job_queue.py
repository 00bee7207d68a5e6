from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from cartrecovery.logging_config import get_logger
from cartrecovery.models import Job

logger = get_logger("job_queue")

QUEUE_INBOUND = "inbound"
QUEUE_OUTBOUND_RETRY = "outbound_retry"
QUEUES = (QUEUE_INBOUND, QUEUE_OUTBOUND_RETRY)

STATUS_WAITING = "waiting"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass
class ClaimedJob:
    id: uuid.UUID
    queue: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int
    backoff_seconds: float
    backoff_multiplier: float
    conversation_id: Optional[uuid.UUID] = None

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


def compute_backoff(attempts: int, base_seconds: float, multiplier: float = 2.0) -> float:
    """Delay before the next try after `attempts` tries have been made."""
    return base_seconds * (multiplier ** max(attempts - 1, 0))


def enqueue_job(
    db: Session,
    *,
    queue: str,
    payload: dict[str, Any],
    attempts: int = 3,
    backoff_seconds: float = 1.0,
    backoff_multiplier: float = 2.0,
    dedup_key: Optional[str] = None,
    conversation_id=None,
    delay_seconds: float = 0,
    commit: bool = True,
) -> Optional[uuid.UUID]:
    """Insert a waiting job. Returns None when `dedup_key` was already queued."""
    now = datetime.now(timezone.utc)
    stmt = (
        insert(Job)
        .values(
            id=uuid.uuid4(),
            queue=queue,
            dedup_key=dedup_key,
            conversation_id=conversation_id,
            payload=payload,
            status=STATUS_WAITING,
            attempts=0,
            max_attempts=attempts,
            backoff_seconds=backoff_seconds,
            backoff_multiplier=backoff_multiplier,
            next_attempt_at=now + timedelta(seconds=delay_seconds) if delay_seconds else None,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["queue", "dedup_key"])
        .returning(Job.id)
    )
    job_id = db.execute(stmt).scalar_one_or_none()
    if commit:
        db.commit()

    if job_id is None:
        logger.info("Job already queued", extra={"context": {"queue": queue, "dedup_key": dedup_key}})
    else:
        logger.info(
            "Job enqueued",
            extra={
                "context": {
                    "queue": queue,
                    "job_id": str(job_id),
                    "dedup_key": dedup_key,
                    "conversation_id": str(conversation_id) if conversation_id else None,
                    "trace_id": payload.get("trace_id"),
                }
            },
        )
    return job_id


def claim_jobs(db: Session, *, queue: str, limit: int = 10) -> list[ClaimedJob]:
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM jobs
                    WHERE queue = :queue
                      AND status = 'waiting'
                      AND (next_attempt_at IS NULL OR next_attempt_at <= NOW())
                    ORDER BY created_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE jobs
                SET status = 'active',
                    attempts = attempts + 1,
                    updated_at = NOW()
                FROM cte
                WHERE jobs.id = cte.id
                RETURNING jobs.id,
                          jobs.queue,
                          jobs.payload,
                          jobs.attempts,
                          jobs.max_attempts,
                          jobs.backoff_seconds,
                          jobs.backoff_multiplier,
                          jobs.conversation_id
                """
            ),
            {"queue": queue, "limit": limit},
        )
        .mappings()
        .all()
    )
    db.commit()
    return [ClaimedJob(**dict(row)) for row in rows]


def complete_job(db: Session, job_id, result: Optional[dict[str, Any]] = None) -> None:
    db.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(
            status=STATUS_COMPLETED,
            result=result,
            last_error=None,
            next_attempt_at=None,
            updated_at=datetime.now(timezone.utc),
        )
    )
    db.commit()


def fail_job(db: Session, job: ClaimedJob, error: str, *, retryable: bool) -> str:
    """Reschedule a retryable failure with backoff, otherwise keep it as failed.

    Returns the job's new status.
    """
    now = datetime.now(timezone.utc)
    if retryable and not job.exhausted:
        backoff = compute_backoff(job.attempts, job.backoff_seconds, job.backoff_multiplier)
        values = {
            "status": STATUS_WAITING,
            "last_error": error[:500],
            "next_attempt_at": now + timedelta(seconds=backoff),
            "updated_at": now,
        }
        new_status = STATUS_WAITING
    else:
        values = {
            "status": STATUS_FAILED,
            "last_error": error[:500],
            "next_attempt_at": None,
            "updated_at": now,
        }
        new_status = STATUS_FAILED

    db.execute(update(Job).where(Job.id == job.id).values(**values))
    db.commit()
    logger.info(
        "Job failed" if new_status == STATUS_FAILED else "Job retry scheduled",
        extra={
            "context": {
                "queue": job.queue,
                "job_id": str(job.id),
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
                "next_attempt_at": values["next_attempt_at"].isoformat() if values["next_attempt_at"] else None,
                "error": error[:500],
            }
        },
    )
    return new_status


def recover_stalled(db: Session, *, queue: str, older_than_seconds: int) -> int:
    """Hand active jobs left behind by a crashed worker back to the queue."""
    result = db.execute(
        text(
            """
            UPDATE jobs
            SET status = 'waiting',
                updated_at = NOW()
            WHERE queue = :queue
              AND status = 'active'
              AND updated_at < NOW() - make_interval(secs => :older_than)
            """
        ),
        {"queue": queue, "older_than": older_than_seconds},
    )
    db.commit()
    if result.rowcount:
        logger.warning("Recovered stalled jobs", extra={"context": {"queue": queue, "count": result.rowcount}})
    return result.rowcount


def queue_stats(db: Session, queue: str) -> dict[str, int]:
    row = (
        db.execute(
            text(
                """
                SELECT
                    COUNT(*) FILTER (
                        WHERE status = 'waiting'
                          AND (next_attempt_at IS NULL OR next_attempt_at <= NOW())
                    ) AS waiting,
                    COUNT(*) FILTER (WHERE status = 'active') AS active,
                    COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                    COUNT(*) FILTER (WHERE status = 'waiting' AND next_attempt_at > NOW()) AS delayed
                FROM jobs
                WHERE queue = :queue
                """
            ),
            {"queue": queue},
        )
        .mappings()
        .one()
    )
    return {key: int(row[key] or 0) for key in ("waiting", "active", "completed", "failed", "delayed")}
