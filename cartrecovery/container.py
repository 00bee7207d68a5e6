from typing import Optional

import redis.asyncio as redis_async
from sqlalchemy.orm import Session

from cartrecovery.config import Settings
from cartrecovery.database import Database
from cartrecovery.logging_config import get_logger
from cartrecovery.schemas.jobs import InboundJob, RetryJob
from cartrecovery.services.abandonment_service import InitialTemplate
from cartrecovery.services.ai_service import AIService
from cartrecovery.services.delivery_service import OutboundDelivery
from cartrecovery.services.inbound_pipeline import InboundPipeline, outcome_to_dict
from cartrecovery.services.job_queue import QUEUE_INBOUND, QUEUE_OUTBOUND_RETRY, ClaimedJob
from cartrecovery.services.llm import OpenAIProvider
from cartrecovery.services.rate_limiter import RateLimiter
from cartrecovery.services.result import Result
from cartrecovery.services.whatsapp_service import WhatsAppClient
from cartrecovery.services.worker_pool import WorkerPool

logger = get_logger("container")


class ServiceContainer:
    """Builds and owns every long-lived resource of one process."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.database = Database(settings.database_url, statement_timeout_ms=settings.db_statement_timeout_ms)
        self.redis = None
        self.channel: Optional[WhatsAppClient] = None
        self.ai: Optional[AIService] = None
        self.delivery: Optional[OutboundDelivery] = None
        self.pipeline: Optional[InboundPipeline] = None
        self.rate_limiter: Optional[RateLimiter] = None
        self.worker: Optional[WorkerPool] = None

    async def open(self) -> None:
        s = self.settings
        self.database.open()
        self.redis = redis_async.from_url(
            s.redis_url,
            decode_responses=True,
            socket_connect_timeout=s.redis_socket_timeout_seconds,
            socket_timeout=s.redis_socket_timeout_seconds,
        )
        self.channel = WhatsAppClient(
            s.whatsapp_phone_id,
            s.whatsapp_access_token,
            api_version=s.whatsapp_api_version,
            timeout_seconds=s.whatsapp_timeout_seconds,
        )
        provider = None
        if s.openai_api_key:
            provider = OpenAIProvider(s.openai_api_key, s.openai_model, timeout_seconds=s.openai_timeout_seconds)
        else:
            logger.warning("OPENAI_API_KEY not set, replies will use fallback text")
        self.ai = AIService(
            provider,
            model=s.openai_model,
            max_tokens=s.openai_max_tokens,
            deadline_seconds=s.ai_deadline_seconds,
        )
        self.delivery = OutboundDelivery(
            self.channel,
            retry_job_attempts=s.retry_job_attempts,
            retry_backoff_seconds=s.retry_backoff_seconds,
            window_hours=s.messaging_window_hours,
        )
        self.pipeline = InboundPipeline(
            self.ai,
            self.delivery,
            max_cycles=s.max_cycles,
            history_limit=s.message_history_limit,
            window_hours=s.messaging_window_hours,
        )
        self.rate_limiter = RateLimiter(
            self.redis,
            limit=s.abandonment_rate_limit,
            window_seconds=s.abandonment_rate_window_seconds,
        )
        self.worker = WorkerPool(
            self.database,
            poll_interval_seconds=s.worker_poll_interval_seconds,
            stalled_job_seconds=s.stalled_job_seconds,
        )
        self.worker.register(QUEUE_INBOUND, self.handle_inbound_job, concurrency=s.inbound_concurrency)
        self.worker.register(QUEUE_OUTBOUND_RETRY, self.handle_retry_job, concurrency=s.outbound_concurrency)
        logger.info("Services opened")

    async def close(self) -> None:
        if self.worker:
            await self.worker.stop()
        if self.ai:
            await self.ai.close()
        if self.channel:
            await self.channel.close()
        if self.redis is not None:
            await self.redis.aclose()
        self.database.close()
        logger.info("Services closed")

    def initial_template(self) -> Optional[InitialTemplate]:
        if not self.settings.send_initial_template:
            return None
        return InitialTemplate(
            name=self.settings.whatsapp_template_initial,
            retry_attempts=self.settings.retry_job_attempts,
            retry_backoff_seconds=self.settings.retry_backoff_seconds,
        )

    async def handle_inbound_job(self, db: Session, job: ClaimedJob) -> Result:
        result = await self.pipeline.process(db, InboundJob.model_validate(job.payload))
        if result.ok:
            return Result.success(outcome_to_dict(result))
        return result

    async def handle_retry_job(self, db: Session, job: ClaimedJob) -> Result:
        return await self.delivery.process_retry_job(
            db,
            RetryJob.model_validate(job.payload),
            final_attempt=job.exhausted,
        )
