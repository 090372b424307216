"""Tests for the conversation history ledger."""
import pytest

from core.errors import LedgerFinalizedError
from models.schemas import ConversationTurn, TurnRole
from voice.history import ConversationLedger


@pytest.fixture
def ledger():
    ledger = ConversationLedger(session_id="sess_1", agent_id="agent_1")
    ledger.add(TurnRole.ASSISTANT, "Здравствуйте! Чем могу помочь?")
    ledger.add(TurnRole.USER, "Мне нужна консультация")
    ledger.add(TurnRole.ASSISTANT, "Конечно, слушаю вас")
    return ledger


class TestAppend:
    def test_turns_keep_append_order(self, ledger):
        assert [t.role for t in ledger.turns()] == [
            TurnRole.ASSISTANT, TurnRole.USER, TurnRole.ASSISTANT,
        ]
        assert len(ledger) == 3

    def test_turns_view_is_read_only(self, ledger):
        view = ledger.turns()
        assert isinstance(view, tuple)
        with pytest.raises(Exception):
            view[0].content = "changed"
        assert ledger.turns()[0].content == "Здравствуйте! Чем могу помочь?"

    def test_append_returns_turn(self):
        ledger = ConversationLedger()
        turn = ConversationTurn(role=TurnRole.USER, content="Привет")
        assert ledger.append(turn) is turn

    def test_session_id_generated(self):
        assert len(ConversationLedger().session_id) == 16


class TestFinalize:
    def test_finalize_returns_turns_in_order(self, ledger):
        final = ledger.finalize()
        assert [t.content for t in final] == [
            "Здравствуйте! Чем могу помочь?", "Мне нужна консультация", "Конечно, слушаю вас",
        ]
        assert ledger.finalized
        assert ledger.ended_at is not None

    def test_finalize_is_idempotent(self, ledger):
        first = ledger.finalize()
        ended = ledger.ended_at
        assert ledger.finalize() == first
        assert ledger.ended_at == ended

    def test_append_after_finalize_rejected(self, ledger):
        ledger.finalize()
        with pytest.raises(LedgerFinalizedError):
            ledger.add(TurnRole.USER, "ещё")
        with pytest.raises(LedgerFinalizedError):
            ledger.reset("Здравствуйте!")
        assert len(ledger) == 3


class TestReset:
    def test_reset_leaves_single_greeting(self, ledger):
        ledger.reset("Добрый день!")
        turns = ledger.turns()
        assert len(turns) == 1
        assert turns[0].role == TurnRole.ASSISTANT
        assert turns[0].content == "Добрый день!"


class TestViews:
    def test_as_context_uses_speaker_labels(self, ledger):
        assert ledger.as_context() == (
            "Ассистент: Здравствуйте! Чем могу помочь?\n"
            "Пользователь: Мне нужна консультация\n"
            "Ассистент: Конечно, слушаю вас"
        )

    def test_transcript_separates_turns_with_blank_line(self, ledger):
        assert ledger.transcript().split("\n\n") == [
            "Ассистент: Здравствуйте! Чем могу помочь?",
            "Пользователь: Мне нужна консультация",
            "Ассистент: Конечно, слушаю вас",
        ]

    def test_as_messages(self, ledger):
        assert ledger.as_messages()[1] == {"role": "user", "content": "Мне нужна консультация"}

    def test_from_messages(self):
        ledger = ConversationLedger.from_messages(
            [{"role": "assistant", "content": "Здравствуйте"}, {"role": "user", "content": "Привет"}],
            agent_id="a1",
        )
        assert ledger.agent_id == "a1"
        assert [t.role for t in ledger.turns()] == [TurnRole.ASSISTANT, TurnRole.USER]

    def test_to_session(self, ledger):
        ledger.finalize()
        session = ledger.to_session()
        assert session.id == "sess_1"
        assert session.agent_id == "agent_1"
        assert len(session.turns) == 3
        assert session.ended_at == ledger.ended_at
