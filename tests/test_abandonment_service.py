import uuid
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from cartrecovery.models import Abandonment, Conversation, User
from cartrecovery.schemas.webhook import AbandonmentWebhook
from cartrecovery.services.abandonment_service import (
    STATUS_ALREADY_PROCESSED,
    STATUS_PROCESSED,
    STATUS_SKIPPED_OPTED_OUT,
    InitialTemplate,
    get_or_create_user,
    process_abandonment,
)
from cartrecovery.services.job_queue import QUEUE_OUTBOUND_RETRY
from cartrecovery.services.result import ErrorKind

MODULE = "cartrecovery.services.abandonment_service"


@pytest.fixture
def payload():
    return AbandonmentWebhook.model_validate(
        {
            "userId": "U1",
            "name": "Maria",
            "phone": "+5511999990000",
            "productId": "SKU-1",
            "productName": "Curso de Python",
            "paymentLink": "https://pay.example.com/abc",
            "abandonmentId": "E1",
            "value": 297.0,
        }
    )


def _added(db_session, model):
    return [c.args[0] for c in db_session.add.call_args_list if isinstance(c.args[0], model)]


class TestGetOrCreateUser:
    def test_existing_user_is_reused(self, db_session, user):
        db_session.query.return_value.filter.return_value.first.return_value = user

        assert get_or_create_user(db_session, user.phone, "Maria") is user
        db_session.add.assert_not_called()

    def test_name_is_refreshed(self, db_session, user):
        db_session.query.return_value.filter.return_value.first.return_value = user

        get_or_create_user(db_session, user.phone, "Maria Silva")

        assert user.name == "Maria Silva"

    def test_new_user_is_flushed(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None

        created = get_or_create_user(db_session, "+5511999990000", "Maria")

        assert isinstance(created, User)
        assert created.opted_out is False
        db_session.flush.assert_called_once()
        db_session.commit.assert_not_called()


class TestProcessAbandonment:
    def test_creates_abandonment_and_conversation(self, db_session, payload, user):
        with patch(f"{MODULE}.find_abandonment_by_external_id", return_value=None), patch(
            f"{MODULE}.get_or_create_user", return_value=user
        ):
            result = process_abandonment(db_session, payload, trace_id="t1")

        assert result.ok
        assert result.value.status == STATUS_PROCESSED
        (abandonment,) = _added(db_session, Abandonment)
        (conversation,) = _added(db_session, Conversation)
        assert abandonment.external_id == "E1"
        assert abandonment.user_id == user.id
        assert abandonment.payment_link == "https://pay.example.com/abc"
        assert abandonment.status == "pending"
        assert conversation.status == "awaiting_response"
        assert conversation.cycle_count == 0
        assert conversation.message_count == 0
        db_session.commit.assert_called_once()

    def test_replay_returns_existing(self, db_session, payload, abandonment, conversation):
        db_session.query.return_value.filter.return_value.first.return_value = conversation
        with patch(f"{MODULE}.find_abandonment_by_external_id", return_value=abandonment), patch(
            f"{MODULE}.get_or_create_user"
        ) as get_user:
            result = process_abandonment(db_session, payload)

        assert result.value.status == STATUS_ALREADY_PROCESSED
        assert result.value.abandonment_id == abandonment.id
        assert result.value.conversation_id == conversation.id
        get_user.assert_not_called()
        db_session.add.assert_not_called()
        db_session.commit.assert_not_called()

    def test_opted_out_user_is_skipped(self, db_session, payload, user):
        user.opted_out = True
        with patch(f"{MODULE}.find_abandonment_by_external_id", return_value=None), patch(
            f"{MODULE}.get_or_create_user", return_value=user
        ):
            result = process_abandonment(db_session, payload)

        assert result.value.status == STATUS_SKIPPED_OPTED_OUT
        assert _added(db_session, Abandonment) == []

    def test_concurrent_insert_resolves_to_existing(self, db_session, payload, user, abandonment):
        db_session.commit.side_effect = [IntegrityError("insert", {}, Exception("dup")), None]
        db_session.query.return_value.filter.return_value.first.return_value = None
        with patch(f"{MODULE}.find_abandonment_by_external_id", side_effect=[None, abandonment]), patch(
            f"{MODULE}.get_or_create_user", return_value=user
        ):
            result = process_abandonment(db_session, payload)

        assert result.value.status == STATUS_ALREADY_PROCESSED
        assert result.value.abandonment_id == abandonment.id
        db_session.rollback.assert_called_once()

    def test_integrity_error_without_row_is_conflict(self, db_session, payload, user):
        db_session.commit.side_effect = IntegrityError("insert", {}, Exception("dup phone"))
        with patch(f"{MODULE}.find_abandonment_by_external_id", return_value=None), patch(
            f"{MODULE}.get_or_create_user", return_value=user
        ):
            result = process_abandonment(db_session, payload)

        assert result.kind == ErrorKind.CONFLICT
        assert result.retryable is False

    def test_initial_template_is_queued(self, db_session, payload, user):
        message = SimpleNamespace(id=uuid.uuid4(), content="[template:cart_reminder] Maria")
        with patch(f"{MODULE}.find_abandonment_by_external_id", return_value=None), patch(
            f"{MODULE}.get_or_create_user", return_value=user
        ), patch(f"{MODULE}.create_message", return_value=message) as create_message, patch(
            f"{MODULE}.enqueue_job"
        ) as enqueue_job:
            result = process_abandonment(
                db_session, payload, initial_template=InitialTemplate(name="cart_reminder", retry_attempts=4)
            )

        assert result.value.status == STATUS_PROCESSED
        assert create_message.call_args.kwargs["message_type"] == "template"
        assert create_message.call_args.kwargs["status"] == "pending"
        kwargs = enqueue_job.call_args.kwargs
        assert kwargs["queue"] == QUEUE_OUTBOUND_RETRY
        assert kwargs["attempts"] == 4
        assert kwargs["dedup_key"] == f"message:{message.id}"
        assert kwargs["payload"]["template_name"] == "cart_reminder"
        assert kwargs["payload"]["template_params"] == ["Maria", "Curso de Python", "https://pay.example.com/abc"]
        assert kwargs["payload"]["message_type"] == "template"
