import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import IntegrityError

from cartrecovery.services.message_service import (
    apply_status_receipt,
    create_message,
    format_history,
    get_recent_messages,
    update_message_status,
)


def _stored(db_session, status):
    message = SimpleNamespace(id=uuid.uuid4(), status=status, external_message_id="wamid.1", error_message=None)
    db_session.query.return_value.filter.return_value.first.return_value = message
    return message


class TestCreateMessage:
    def test_commits_and_refreshes(self, db_session):
        message = create_message(
            db_session,
            conversation_id=uuid.uuid4(),
            sender_type="user",
            content="Oi",
            status="sent",
            external_message_id="wamid.1",
        )

        db_session.add.assert_called_once_with(message)
        db_session.commit.assert_called_once()
        db_session.refresh.assert_called_once_with(message)
        assert message.message_metadata == {}

    def test_deferred_commit_only_flushes(self, db_session):
        message = create_message(
            db_session,
            conversation_id=uuid.uuid4(),
            sender_type="user",
            content="Oi",
            status="sent",
            commit=False,
        )

        db_session.add.assert_called_once_with(message)
        db_session.flush.assert_called_once()
        db_session.commit.assert_not_called()
        db_session.refresh.assert_not_called()

    def test_deferred_duplicate_rolls_back_and_raises(self, db_session):
        db_session.flush.side_effect = IntegrityError("insert", {}, Exception("dup"))

        with pytest.raises(IntegrityError):
            create_message(
                db_session, conversation_id=uuid.uuid4(), sender_type="user", content="Oi", status="sent", commit=False
            )

        db_session.rollback.assert_called_once()

    def test_duplicate_rolls_back_and_raises(self, db_session):
        db_session.commit.side_effect = IntegrityError("insert", {}, Exception("dup"))

        with pytest.raises(IntegrityError):
            create_message(db_session, conversation_id=uuid.uuid4(), sender_type="user", content="Oi", status="sent")

        db_session.rollback.assert_called_once()


class TestUpdateStatus:
    def test_updates_status_and_external_id(self, db_session):
        message = _stored(db_session, "pending")
        message.external_message_id = None

        update_message_status(db_session, message.id, "sent", external_message_id="wamid.9")

        assert message.status == "sent"
        assert message.external_message_id == "wamid.9"
        db_session.commit.assert_called_once()

    def test_missing_message(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        assert update_message_status(db_session, uuid.uuid4(), "sent") is None
        db_session.commit.assert_not_called()


class TestStatusReceipts:
    @pytest.mark.parametrize(
        "current,receipt,expected",
        [
            ("sent", "delivered", "delivered"),
            ("delivered", "read", "read"),
            ("pending", "sent", "sent"),
            ("read", "delivered", "read"),
            ("delivered", "sent", "delivered"),
            ("sent", "failed", "failed"),
            ("read", "failed", "read"),
            ("sent", "deleted", "sent"),
        ],
    )
    def test_receipts_only_move_forward(self, db_session, current, receipt, expected):
        message = _stored(db_session, current)

        apply_status_receipt(db_session, "wamid.1", receipt)

        assert message.status == expected

    def test_unknown_message_is_ignored(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        assert apply_status_receipt(db_session, "wamid.404", "read") is None
        db_session.commit.assert_not_called()


class TestHistory:
    def test_recent_messages_are_oldest_first(self, db_session):
        newest = SimpleNamespace(content="3")
        middle = SimpleNamespace(content="2")
        oldest = SimpleNamespace(content="1")
        chain = db_session.query.return_value.filter.return_value.order_by.return_value.limit.return_value
        chain.all.return_value = [newest, middle, oldest]

        messages = get_recent_messages(db_session, uuid.uuid4(), limit=3)

        assert [m.content for m in messages] == ["1", "2", "3"]
        db_session.query.return_value.filter.return_value.order_by.return_value.limit.assert_called_once_with(3)

    def test_format_history_roles(self):
        messages = [
            SimpleNamespace(sender_type="agent", content="Oi Maria!"),
            SimpleNamespace(sender_type="user", content="Qual o preço?"),
        ]
        assert format_history(messages) == [
            {"role": "assistant", "content": "Oi Maria!"},
            {"role": "user", "content": "Qual o preço?"},
        ]
