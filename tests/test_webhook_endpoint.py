import hashlib
import hmac
import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from cartrecovery.database import get_db
from cartrecovery.main import app
from cartrecovery.services.abandonment_service import AbandonmentOutcome
from cartrecovery.services.payment_service import PaymentOutcome
from cartrecovery.services.result import ErrorKind, Result

MODULE = "cartrecovery.routers.webhook"
APP_SECRET = "app-secret"


def _sign(body: bytes) -> str:
    return "sha256=" + hmac.new(APP_SECRET.encode(), body, hashlib.sha256).hexdigest()


def _whatsapp_body(*messages, statuses=()):
    return json.dumps(
        {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "id": "WABA",
                    "changes": [
                        {
                            "field": "messages",
                            "value": {"messages": list(messages), "statuses": list(statuses)},
                        }
                    ],
                }
            ],
        }
    ).encode()


def _text_message(message_id="wamid.1", body="Oi", sender="5511999990000"):
    return {"id": message_id, "from": sender, "type": "text", "text": {"body": body}}


@pytest.fixture
def container():
    return SimpleNamespace(
        settings=SimpleNamespace(
            whatsapp_app_secret=APP_SECRET,
            whatsapp_verify_token="verify-me",
            dedup_ttl_seconds=60,
            inbound_job_attempts=3,
            inbound_backoff_seconds=1.0,
        ),
        redis=None,
        rate_limiter=SimpleNamespace(hit=AsyncMock(return_value=True)),
        initial_template=Mock(return_value=None),
    )


@pytest.fixture
def client(container, db_session):
    app.state.container = container
    app.dependency_overrides[get_db] = lambda: db_session
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.container = None


class TestVerification:
    def test_challenge_is_echoed(self, client):
        response = client.get(
            "/webhook/messages",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "12345"},
        )
        assert response.status_code == 200
        assert response.text == "12345"

    def test_wrong_token(self, client):
        response = client.get(
            "/webhook/messages",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "12345"},
        )
        assert response.status_code == 403

    def test_missing_params(self, client):
        assert client.get("/webhook/messages", params={"hub.mode": "subscribe"}).status_code == 400

    def test_wrong_mode(self, client):
        response = client.get(
            "/webhook/messages",
            params={"hub.mode": "unsubscribe", "hub.verify_token": "verify-me", "hub.challenge": "1"},
        )
        assert response.status_code == 400


class TestInboundMessages:
    def test_bad_signature_is_rejected(self, client):
        body = _whatsapp_body(_text_message())
        with patch(f"{MODULE}.enqueue_job") as enqueue_job:
            response = client.post(
                "/webhook/messages", content=body, headers={"X-Hub-Signature-256": "sha256=deadbeef"}
            )
        assert response.status_code == 403
        enqueue_job.assert_not_called()

    def test_message_is_enqueued(self, client, db_session, conversation):
        body = _whatsapp_body(_text_message())
        with patch(f"{MODULE}.find_by_phone", return_value=conversation) as find_by_phone, patch(
            f"{MODULE}.enqueue_job", return_value=uuid.uuid4()
        ) as enqueue_job:
            response = client.post(
                "/webhook/messages",
                content=body,
                headers={"X-Hub-Signature-256": _sign(body), "X-Trace-Id": "trace-9"},
            )

        assert response.status_code == 200
        assert response.json() == {"status": "received", "messages_enqueued": 1}
        assert response.headers["X-Trace-Id"] == "trace-9"
        find_by_phone.assert_called_once_with(db_session, "+5511999990000")
        kwargs = enqueue_job.call_args.kwargs
        assert kwargs["queue"] == "inbound"
        assert kwargs["dedup_key"] == "wamid.1"
        assert kwargs["conversation_id"] == conversation.id
        assert kwargs["payload"]["text"] == "Oi"
        assert kwargs["payload"]["trace_id"] == "trace-9"

    def test_foreign_sender_is_looked_up_as_sent(self, client, db_session, conversation):
        body = _whatsapp_body(_text_message(sender="14155551234"))
        with patch(f"{MODULE}.find_by_phone", return_value=conversation) as find_by_phone, patch(
            f"{MODULE}.enqueue_job", return_value=uuid.uuid4()
        ) as enqueue_job:
            response = client.post("/webhook/messages", content=body, headers={"X-Hub-Signature-256": _sign(body)})

        assert response.status_code == 200
        find_by_phone.assert_called_once_with(db_session, "+14155551234")
        assert enqueue_job.call_args.kwargs["payload"]["recipient_address"] == "+14155551234"

    def test_duplicate_delivery_is_not_counted(self, client):
        body = _whatsapp_body(_text_message())
        with patch(f"{MODULE}.find_by_phone", return_value=None), patch(f"{MODULE}.enqueue_job", return_value=None):
            response = client.post("/webhook/messages", content=body, headers={"X-Hub-Signature-256": _sign(body)})

        assert response.json()["messages_enqueued"] == 0

    def test_redis_dedup_skips_enqueue(self, client, container):
        container.redis = SimpleNamespace(set=AsyncMock(return_value=None))
        body = _whatsapp_body(_text_message())
        with patch(f"{MODULE}.enqueue_job") as enqueue_job:
            response = client.post("/webhook/messages", content=body, headers={"X-Hub-Signature-256": _sign(body)})

        assert response.json()["messages_enqueued"] == 0
        enqueue_job.assert_not_called()

    def test_non_text_messages_are_ignored(self, client):
        image = {"id": "wamid.img", "from": "5511999990000", "type": "image"}
        body = _whatsapp_body(image)
        with patch(f"{MODULE}.enqueue_job") as enqueue_job:
            response = client.post("/webhook/messages", content=body, headers={"X-Hub-Signature-256": _sign(body)})

        assert response.json() == {"status": "received", "messages_enqueued": 0}
        enqueue_job.assert_not_called()

    def test_status_receipts_are_applied(self, client, db_session):
        body = _whatsapp_body(statuses=[{"id": "wamid.out", "status": "delivered"}])
        with patch(f"{MODULE}.apply_status_receipt") as apply_receipt:
            response = client.post("/webhook/messages", content=body, headers={"X-Hub-Signature-256": _sign(body)})

        assert response.status_code == 200
        apply_receipt.assert_called_once_with(db_session, "wamid.out", "delivered")

    def test_malformed_payload_is_acknowledged(self, client):
        body = b'{"entry": "not-a-list"}'
        response = client.post("/webhook/messages", content=body, headers={"X-Hub-Signature-256": _sign(body)})

        assert response.status_code == 200
        assert response.json() == {"status": "skipped", "messages_enqueued": 0}

    def test_enqueue_failure_releases_dedup_key(self, client, container, db_session):
        container.redis = SimpleNamespace(set=AsyncMock(return_value=True), delete=AsyncMock())
        body = _whatsapp_body(_text_message())
        with patch(f"{MODULE}.find_by_phone", return_value=None), patch(
            f"{MODULE}.enqueue_job", side_effect=RuntimeError("db down")
        ):
            response = client.post("/webhook/messages", content=body, headers={"X-Hub-Signature-256": _sign(body)})

        assert response.status_code == 503
        container.redis.delete.assert_awaited_once_with("cartrecovery:dedup:wamid.1")
        db_session.rollback.assert_called_once()


ABANDONMENT = {
    "userId": "U1",
    "name": "Maria",
    "phone": "+5511999990000",
    "productId": "SKU-1",
    "paymentLink": "https://pay.example.com/abc",
    "abandonmentId": "E1",
    "value": 297.0,
}


class TestAbandonmentEndpoint:
    def test_created(self, client):
        outcome = AbandonmentOutcome(status="processed", abandonment_id=uuid.uuid4(), conversation_id=uuid.uuid4())
        with patch(f"{MODULE}.process_abandonment", return_value=Result.success(outcome)) as process:
            response = client.post("/webhook/abandonment", json=ABANDONMENT)

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert response.json()["conversation_id"] == str(outcome.conversation_id)
        assert process.call_args.args[1].abandonment_id == "E1"

    @pytest.mark.parametrize(
        "overrides",
        [{"phone": "11999990000"}, {"value": 0}, {"paymentLink": "not a url"}, {"abandonmentId": ""}],
    )
    def test_invalid_payload(self, client, overrides):
        with patch(f"{MODULE}.process_abandonment") as process:
            response = client.post("/webhook/abandonment", json={**ABANDONMENT, **overrides})

        assert response.status_code == 400
        process.assert_not_called()

    def test_non_json_body(self, client):
        response = client.post("/webhook/abandonment", content=b"nope", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_rate_limited(self, client, container):
        container.rate_limiter.hit.return_value = False
        with patch(f"{MODULE}.process_abandonment") as process:
            response = client.post("/webhook/abandonment", json=ABANDONMENT)

        assert response.status_code == 429
        process.assert_not_called()

    def test_conflict(self, client):
        failure = Result.failure("Concurrent intake", "conflict", ErrorKind.CONFLICT)
        with patch(f"{MODULE}.process_abandonment", return_value=failure):
            response = client.post("/webhook/abandonment", json=ABANDONMENT)
        assert response.status_code == 409


class TestPaymentEndpoint:
    def test_processed(self, client):
        outcome = PaymentOutcome(status="processed", abandonment_id=uuid.uuid4(), payment_status="converted")
        with patch(f"{MODULE}.process_payment", return_value=Result.success(outcome)):
            response = client.post("/webhook/payment", json={"paymentId": "p1", "abandonmentId": "E1", "status": "completed"})

        assert response.status_code == 200
        assert response.json()["payment_status"] == "converted"

    def test_validation_error(self, client):
        failure = Result.failure("paymentId: missing", "validation", ErrorKind.VALIDATION)
        with patch(f"{MODULE}.process_payment", return_value=failure):
            response = client.post("/webhook/payment", json={"status": "completed"})
        assert response.status_code == 400

    def test_not_found(self, client):
        failure = Result.failure("Abandonment not found: E9", "not_found", ErrorKind.NOT_FOUND)
        with patch(f"{MODULE}.process_payment", return_value=failure):
            response = client.post("/webhook/payment", json={"paymentId": "p1", "abandonmentId": "E9", "status": "completed"})
        assert response.status_code == 404

    def test_array_body_is_rejected(self, client):
        assert client.post("/webhook/payment", json=[1, 2]).status_code == 400


class TestAdminEndpoints:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_queue_stats(self, client):
        stats = {"waiting": 1, "active": 0, "completed": 3, "failed": 0, "delayed": 0}
        with patch("cartrecovery.routers.admin.queue_stats", return_value=stats):
            response = client.get("/queues/stats")
        assert response.json() == {"inbound": stats, "outbound_retry": stats}

    def test_unknown_abandonment_payment(self, client):
        with patch("cartrecovery.routers.admin.get_payment_status", return_value=None):
            assert client.get("/abandonments/E9/payment").status_code == 404
