import asyncio
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from cartrecovery.services.ai_service import classify_opt_out_intent
from cartrecovery.services.opt_out_service import (
    AI_CONFIDENCE,
    DEFAULT_OPT_OUT_REASON,
    DETERMINISTIC_CONFIDENCE,
    METHOD_AI,
    METHOD_DETERMINISTIC,
    detect_opt_out,
    mark_opted_out,
    match_keyword,
    needs_ai_check,
)


class TestMatchKeyword:
    @pytest.mark.parametrize(
        "text",
        ["PARAR", "Stop", "quero sair", "Não quero mais", "por favor, remover meu contato", "chega!", "nao quero"],
    )
    def test_stop_phrases_match(self, text):
        assert match_keyword(text) is not None

    def test_nao_matches_inside_phrase(self):
        assert match_keyword("não quero receber") is not None

    def test_case_insensitive(self):
        assert match_keyword("UNSUBSCRIBE") == "unsubscribe"

    @pytest.mark.parametrize(
        "text",
        ["Qual o preço?", "vou saIRr depois", "stopped", "fimose", "parara", "bastante interessante"],
    )
    def test_keywords_inside_longer_words_do_not_match(self, text):
        assert match_keyword(text) is None

    def test_empty_text(self):
        assert match_keyword("") is None
        assert match_keyword(None) is None


class TestNeedsAiCheck:
    def test_short_message_without_connective(self):
        assert needs_ai_check("ok, obrigado") is False

    def test_long_message(self):
        assert needs_ai_check("a" * 51) is True

    def test_explanatory_connective(self):
        assert needs_ai_check("porque estou sem dinheiro") is True


class TestDetectOptOut:
    def test_keyword_is_deterministic(self):
        result = asyncio.run(detect_opt_out("PARAR"))
        assert result.is_opt_out is True
        assert result.method == METHOD_DETERMINISTIC
        assert result.confidence == DETERMINISTIC_CONFIDENCE

    def test_ai_layer_not_called_for_short_messages(self):
        classify = AsyncMock(return_value="opt_out")
        result = asyncio.run(detect_opt_out("qual o valor?", classify_intent=classify))
        assert result.is_opt_out is False
        classify.assert_not_called()

    def test_ai_layer_for_long_message(self):
        classify = AsyncMock(return_value="opt_out")
        text = "olha, acho que prefiro que você pare de me enviar essas mensagens agora porque já comprei"
        result = asyncio.run(detect_opt_out(text, classify_intent=classify))
        assert result.is_opt_out is True
        assert result.method == METHOD_AI
        assert result.confidence == AI_CONFIDENCE
        classify.assert_awaited_once_with(text)

    def test_ai_layer_other_intent(self):
        classify = AsyncMock(return_value="not_interested")
        text = "gostei muito do produto mas preciso pensar melhor sobre o investimento agora"
        result = asyncio.run(detect_opt_out(text, classify_intent=classify))
        assert result.is_opt_out is False

    def test_errors_mean_not_opted_out(self):
        classify = AsyncMock(side_effect=RuntimeError("model down"))
        text = "gostaria de entender melhor as condições porque achei caro"
        result = asyncio.run(detect_opt_out(text, classify_intent=classify))
        assert result.is_opt_out is False


class TestClassifyOptOutIntent:
    def test_patterns(self):
        assert classify_opt_out_intent("não me mande mais nada") == "opt_out"
        assert classify_opt_out_intent("quero me desinscrever") == "unsubscribe"
        assert classify_opt_out_intent("não tenho interesse") == "not_interested"
        assert classify_opt_out_intent("qual o prazo de entrega?") == "continue"


class TestMarkOptedOut:
    def test_sets_flag_timestamp_and_reason(self, db_session):
        user = SimpleNamespace(id=uuid.uuid4(), opted_out=False, opted_out_at=None, opted_out_reason=None)
        db_session.query.return_value.filter.return_value.first.return_value = user

        result = mark_opted_out(db_session, user.id)

        assert result is user
        assert user.opted_out is True
        assert user.opted_out_at is not None
        assert user.opted_out_reason == DEFAULT_OPT_OUT_REASON
        db_session.commit.assert_called_once()

    def test_unknown_user(self, db_session):
        db_session.query.return_value.filter.return_value.first.return_value = None
        assert mark_opted_out(db_session, uuid.uuid4()) is None
        db_session.commit.assert_not_called()
