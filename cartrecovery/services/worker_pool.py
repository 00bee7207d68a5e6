import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.orm import Session

from cartrecovery.database import Database
from cartrecovery.logging_config import get_logger, reset_trace_id, set_trace_id
from cartrecovery.services.alert_service import alert_critical, alert_error
from cartrecovery.services.job_queue import (
    STATUS_FAILED,
    ClaimedJob,
    claim_jobs,
    complete_job,
    fail_job,
    recover_stalled,
)
from cartrecovery.services.result import ErrorKind, Result, kind_for_exception

logger = get_logger("worker_pool")

JobHandler = Callable[[Session, ClaimedJob], Awaitable[Result]]

# Terminal failures worth waking someone up for.
ALERT_KINDS = {ErrorKind.AUTHENTICATION, ErrorKind.TRANSIENT, ErrorKind.INTERNAL}


def conversation_key(job: ClaimedJob) -> Optional[str]:
    if job.conversation_id:
        return str(job.conversation_id)
    return job.payload.get("recipient_address") or None


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._locks: dict[str, list] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Optional[str]):
        if key is None:
            yield
            return
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)


@dataclass
class QueueConsumer:
    queue: str
    handler: JobHandler
    concurrency: int
    semaphore: asyncio.Semaphore


class WorkerPool:
    """Polls each registered queue and runs its jobs with bounded concurrency."""

    def __init__(self, database: Database, *, poll_interval_seconds: float = 1.0, stalled_job_seconds: int = 300):
        self.database = database
        self.poll_interval_seconds = max(poll_interval_seconds, 0.1)
        self.stalled_job_seconds = stalled_job_seconds
        self.locks = KeyedLocks()
        self._consumers: dict[str, QueueConsumer] = {}
        self._tasks: list[asyncio.Task] = []
        self._in_flight: set[asyncio.Task] = set()

    def register(self, queue: str, handler: JobHandler, *, concurrency: int) -> None:
        self._consumers[queue] = QueueConsumer(
            queue=queue,
            handler=handler,
            concurrency=concurrency,
            semaphore=asyncio.Semaphore(concurrency),
        )

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        for consumer in self._consumers.values():
            self._recover(consumer.queue)
            self._tasks.append(asyncio.create_task(self._consume(consumer)))
        logger.info("Worker pool started", extra={"context": {"queues": list(self._consumers)}})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Worker pool stopped")

    def _recover(self, queue: str) -> None:
        db = self.database.session()
        try:
            recover_stalled(db, queue=queue, older_than_seconds=self.stalled_job_seconds)
        except Exception as exc:
            logger.error("Stalled job recovery failed", extra={"context": {"queue": queue, "error": str(exc)}})
        finally:
            db.close()

    async def _consume(self, consumer: QueueConsumer) -> None:
        in_flight: set[asyncio.Task] = set()
        while True:
            try:
                await asyncio.sleep(self.poll_interval_seconds)
                free_slots = consumer.concurrency - len(in_flight)
                if free_slots <= 0:
                    continue
                db = self.database.session()
                try:
                    jobs = claim_jobs(db, queue=consumer.queue, limit=free_slots)
                finally:
                    db.close()
                for job in jobs:
                    task = asyncio.create_task(self.run_job(consumer, job))
                    in_flight.add(task)
                    self._in_flight.add(task)
                    task.add_done_callback(in_flight.discard)
                    task.add_done_callback(self._in_flight.discard)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    "Worker loop failed",
                    extra={"context": {"queue": consumer.queue, "error": str(exc)}},
                )

    async def run_job(self, consumer: QueueConsumer, job: ClaimedJob) -> str:
        """Run one claimed job and record its outcome. Returns the job's new status."""
        async with consumer.semaphore, self.locks.hold(conversation_key(job)):
            db = self.database.session()
            trace_token = set_trace_id(job.payload.get("trace_id"))
            try:
                try:
                    result = await consumer.handler(db, job)
                except Exception as exc:
                    db.rollback()
                    logger.error(
                        "Job handler raised",
                        extra={"context": {"queue": job.queue, "job_id": str(job.id), "error": str(exc)}},
                        exc_info=True,
                    )
                    result = Result.failure(str(exc), "handler_error", kind_for_exception(exc))

                if result.ok:
                    complete_job(db, job.id, result.value if isinstance(result.value, dict) else None)
                    return "completed"

                status = fail_job(db, job, result.error or "unknown error", retryable=result.retryable)
                if status == STATUS_FAILED and result.kind in ALERT_KINDS:
                    notify = alert_critical if result.kind == ErrorKind.AUTHENTICATION else alert_error
                    await asyncio.to_thread(
                        notify,
                        f"Job failed on queue {job.queue}",
                        {
                            "job_id": str(job.id),
                            "attempts": job.attempts,
                            "error_kind": result.kind.value if result.kind else None,
                            "error": (result.error or "")[:200],
                        },
                    )
                return status
            finally:
                db.close()
                reset_trace_id(trace_token)
