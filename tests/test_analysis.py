"""Tests for conversation analysis and saving test conversations."""
import json

import pytest

from conftest import FakeLLM
from core.errors import LedgerFinalizedError, PersistError, ServiceUnavailableError
from database.store_memory import InMemoryAgentStore
from models.schemas import TurnRole
from voice.analysis import ConversationAnalyzer, ConversationService, parse_analysis
from voice.history import ConversationLedger

LLM_ANALYSIS = {
    "summary": "Клиент интересовался доставкой.",
    "sentiment": "Positive",
    "keyPoints": ["доставка", "цена"],
    "customerIntention": "узнать стоимость",
    "nextSteps": ["отправить прайс"],
    "callOutcome": "information_provided",
    "extractedCustomerData": {"name": "Алия", "phone": None},
    "dealProbability": 60,
    "conversationQuality": 8,
    "concerns": ["дорого"],
}


def make_ledger(session_id: str = "s_42") -> ConversationLedger:
    ledger = ConversationLedger(session_id=session_id, agent_id="agent_test")
    ledger.add(TurnRole.ASSISTANT, "Здравствуйте! Чем могу помочь?")
    ledger.add(TurnRole.USER, "Сколько стоит доставка до Алматы?")
    ledger.add(TurnRole.ASSISTANT, "Доставка до Алматы стоит две тысячи тенге.")
    return ledger


class FailingStore(InMemoryAgentStore):
    async def save_conversation(self, record):
        raise PersistError("disk full")


class TestParseAnalysis:
    def test_camel_case_mapped(self):
        analysis = parse_analysis(LLM_ANALYSIS)
        assert analysis.sentiment == "positive"
        assert analysis.key_points == ["доставка", "цена"]
        assert analysis.next_steps == ["отправить прайс"]
        assert analysis.extracted_customer_data["name"] == "Алия"
        assert analysis.deal_probability == 60
        assert analysis.conversation_quality == 8

    def test_unknown_sentiment_is_neutral(self):
        assert parse_analysis({"sentiment": "angry"}).sentiment == "neutral"
        assert parse_analysis({}).call_outcome == "other"


class TestAnalyzer:
    @pytest.mark.asyncio
    async def test_short_transcript_skipped(self):
        llm = FakeLLM()
        assert await ConversationAnalyzer(llm).analyze("Ассистент: Привет") is None
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_json_extracted_from_fenced_reply(self):
        reply = "```json\n" + json.dumps(LLM_ANALYSIS, ensure_ascii=False) + "\n```"
        llm = FakeLLM([reply])
        transcript = make_ledger().transcript()

        analysis = await ConversationAnalyzer(llm).analyze(transcript)
        assert analysis.summary == "Клиент интересовался доставкой."
        call = llm.calls[0]
        assert transcript in call["context"]
        assert call["temperature"] == 0.3
        assert call["max_tokens"] == 2048

    @pytest.mark.asyncio
    async def test_llm_failure_gives_none(self):
        llm = FakeLLM([ServiceUnavailableError("llm", "quota")])
        assert await ConversationAnalyzer(llm).analyze(make_ledger().transcript()) is None

    @pytest.mark.asyncio
    async def test_unparseable_gives_none(self):
        analyzer = ConversationAnalyzer(FakeLLM(["Не могу проанализировать"]))
        assert await analyzer.analyze(make_ledger().transcript()) is None

    @pytest.mark.asyncio
    async def test_out_of_range_score_gives_none(self):
        analyzer = ConversationAnalyzer(FakeLLM([json.dumps({"dealProbability": 150})]))
        assert await analyzer.analyze(make_ledger().transcript()) is None


class TestConversationService:
    @pytest.mark.asyncio
    async def test_save_finalizes_and_persists(self):
        store = InMemoryAgentStore()
        ledger = make_ledger()

        record = await ConversationService(store).save_ledger(ledger, actor_id="u_7")

        assert ledger.finalized
        with pytest.raises(LedgerFinalizedError):
            ledger.add(TurnRole.USER, "ещё")
        saved = await store.get_conversation(record.id)
        assert saved.session_id == "s_42"
        assert saved.actor_id == "u_7"
        assert [t.content for t in saved.turns] == [t.content for t in ledger.turns()]
        assert saved.metadata["is_test"] is True
        assert "test_date" in saved.metadata
        assert saved.analysis is None

    @pytest.mark.asyncio
    async def test_keyed_save_is_idempotent(self):
        store = InMemoryAgentStore()
        service = ConversationService(store)
        ledger = make_ledger()

        first = await service.save_ledger(ledger)
        second = await service.save_ledger(ledger)
        assert first.id == second.id
        assert len(await store.list_conversations()) == 1

    @pytest.mark.asyncio
    async def test_unkeyed_saves_are_separate(self):
        store = InMemoryAgentStore()
        service = ConversationService(store)

        await service.save_ledger(make_ledger(), keyed=False)
        await service.save_ledger(make_ledger(), keyed=False)
        assert len(await store.list_conversations()) == 2

    @pytest.mark.asyncio
    async def test_analysis_attached(self):
        store = InMemoryAgentStore()
        analyzer = ConversationAnalyzer(FakeLLM([json.dumps(LLM_ANALYSIS)]))

        record = await ConversationService(store, analyzer).save_ledger(make_ledger())
        assert record.analysis.call_outcome == "information_provided"
        assert (await store.get_conversation(record.id)).analysis.concerns == ["дорого"]

    @pytest.mark.asyncio
    async def test_failed_analysis_still_saves(self):
        store = InMemoryAgentStore()
        analyzer = ConversationAnalyzer(FakeLLM([ServiceUnavailableError("llm")]))

        record = await ConversationService(store, analyzer).save_ledger(make_ledger())
        assert record.analysis is None
        assert await store.get_conversation(record.id) is not None

    @pytest.mark.asyncio
    async def test_store_failure_surfaces(self):
        with pytest.raises(PersistError):
            await ConversationService(FailingStore()).save_ledger(make_ledger())
