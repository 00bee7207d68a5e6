from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from cartrecovery.database import get_db
from cartrecovery.logging_config import get_logger
from cartrecovery.schemas.jobs import InboundJob
from cartrecovery.schemas.webhook import AbandonmentResponse, AbandonmentWebhook, PaymentResponse, WhatsAppWebhook
from cartrecovery.services.abandonment_service import process_abandonment
from cartrecovery.services.conversation_service import find_by_phone
from cartrecovery.services.idempotency import DEDUP_KEY_PREFIX, claim_webhook_message
from cartrecovery.services.job_queue import QUEUE_INBOUND, enqueue_job
from cartrecovery.services.message_service import apply_status_receipt
from cartrecovery.services.payment_service import process_payment
from cartrecovery.services.result import ErrorKind
from cartrecovery.services.whatsapp_service import inbound_address, verify_signature

logger = get_logger("webhook")

router = APIRouter(prefix="/webhook", tags=["webhook"])

_ERROR_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_status(kind: Optional[ErrorKind]) -> int:
    return _ERROR_STATUS.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def _trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)


async def _json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return payload


@router.get("/messages", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    """Meta subscription handshake."""
    if not mode or not verify_token or challenge is None:
        raise HTTPException(status_code=400, detail="Missing verification parameters")
    if mode != "subscribe":
        raise HTTPException(status_code=400, detail="Invalid hub.mode")
    expected = request.app.state.container.settings.whatsapp_verify_token
    if not expected or verify_token != expected:
        logger.warning("Webhook verification rejected", extra={"context": {"trace_id": _trace_id(request)}})
        raise HTTPException(status_code=403, detail="Invalid verify token")
    return challenge


@router.post("/messages")
async def receive_messages(request: Request, db: Session = Depends(get_db)):
    container = request.app.state.container
    settings = container.settings
    trace_id = _trace_id(request)

    body = await request.body()
    if not verify_signature(settings.whatsapp_app_secret, body, request.headers.get("X-Hub-Signature-256")):
        logger.warning("Invalid webhook signature", extra={"context": {"trace_id": trace_id}})
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        webhook = WhatsAppWebhook.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Malformed WhatsApp webhook", extra={"context": {"trace_id": trace_id, "error": str(e)[:300]}})
        return {"status": "skipped", "messages_enqueued": 0}

    for receipt in webhook.statuses():
        try:
            apply_status_receipt(db, receipt.id, receipt.status)
        except Exception as e:
            db.rollback()
            logger.warning(
                "Status receipt not applied",
                extra={"context": {"external_message_id": receipt.id, "error": str(e), "trace_id": trace_id}},
            )

    enqueued = 0
    duplicates = 0
    for message in webhook.text_messages():
        if not await claim_webhook_message(container.redis, message.id, settings.dedup_ttl_seconds):
            duplicates += 1
            continue

        address = inbound_address(message.from_)
        try:
            conversation = find_by_phone(db, address)
            job = InboundJob(
                external_message_id=message.id,
                recipient_address=address,
                text=message.text.body,
                conversation_id=conversation.id if conversation else None,
                trace_id=trace_id,
            )
            job_id = enqueue_job(
                db,
                queue=QUEUE_INBOUND,
                payload=job.model_dump(mode="json"),
                attempts=settings.inbound_job_attempts,
                backoff_seconds=settings.inbound_backoff_seconds,
                dedup_key=message.id,
                conversation_id=job.conversation_id,
            )
        except Exception as e:
            db.rollback()
            # Let the provider redeliver: forget the fast-path dedup key first.
            if container.redis is not None:
                try:
                    await container.redis.delete(f"{DEDUP_KEY_PREFIX}:{message.id}")
                except Exception as redis_exc:
                    logger.warning(f"Dedup key release failed: {redis_exc}")
            logger.error(
                "Failed to enqueue inbound message",
                extra={"context": {"external_message_id": message.id, "error": str(e), "trace_id": trace_id}},
            )
            raise HTTPException(status_code=503, detail="Temporarily unable to accept messages") from e

        if job_id is None:
            duplicates += 1
        else:
            enqueued += 1

    logger.info(
        "WhatsApp webhook received",
        extra={"context": {"enqueued": enqueued, "duplicates": duplicates, "trace_id": trace_id}},
    )
    return {"status": "received", "messages_enqueued": enqueued}


@router.post("/abandonment", response_model=AbandonmentResponse)
async def receive_abandonment(request: Request, db: Session = Depends(get_db)):
    container = request.app.state.container
    trace_id = _trace_id(request)

    client_ip = request.client.host if request.client else "unknown"
    if not await container.rate_limiter.hit(f"abandonment:{client_ip}"):
        raise HTTPException(status_code=429, detail="Too many requests")

    try:
        payload = AbandonmentWebhook.model_validate(await _json_body(request))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False)) from e

    result = process_abandonment(db, payload, trace_id=trace_id, initial_template=container.initial_template())
    if not result.ok:
        raise HTTPException(status_code=_http_status(result.kind), detail=result.error)
    return AbandonmentResponse(
        status=result.value.status,
        abandonment_id=result.value.abandonment_id,
        conversation_id=result.value.conversation_id,
    )


@router.post("/payment", response_model=PaymentResponse)
async def receive_payment(request: Request, db: Session = Depends(get_db)):
    result = process_payment(db, await _json_body(request), trace_id=_trace_id(request))
    if not result.ok:
        raise HTTPException(status_code=_http_status(result.kind), detail=result.error)
    outcome = result.value
    return PaymentResponse(
        status=outcome.status,
        abandonment_id=outcome.abandonment_id,
        conversation_id=outcome.conversation_id,
        payment_status=outcome.payment_status,
        message=outcome.message,
    )
