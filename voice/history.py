"""
Conversation History Ledger — ordered, append-only record of one session.

The ledger only guarantees ordering and immutability. Who may speak
next (greeting first, then user/assistant alternation) is the
orchestrator's business, never the ledger's.
"""
from __future__ import annotations

import uuid
import structlog
from datetime import datetime, timezone
from typing import Optional

from core.errors import LedgerFinalizedError
from models.schemas import ConversationSession, ConversationTurn, TurnRole

logger = structlog.get_logger()

# Speaker labels used when the history is flattened into an LLM prompt
ROLE_LABELS = {
    TurnRole.USER: "Пользователь",
    TurnRole.ASSISTANT: "Ассистент",
}


class ConversationLedger:

    def __init__(self, session_id: str = "", agent_id: str = ""):
        self.session_id = session_id or uuid.uuid4().hex[:16]
        self.agent_id = agent_id
        self.started_at = datetime.now(timezone.utc)
        self.ended_at: Optional[datetime] = None
        self._turns: list[ConversationTurn] = []
        self._final: Optional[tuple[ConversationTurn, ...]] = None

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def finalized(self) -> bool:
        return self._final is not None

    def append(self, turn: ConversationTurn) -> ConversationTurn:
        if self._final is not None:
            raise LedgerFinalizedError(self.session_id)
        self._turns.append(turn)
        logger.debug("turn_appended", session_id=self.session_id,
                     role=turn.role.value, index=len(self._turns) - 1)
        return turn

    def add(self, role: TurnRole, content: str) -> ConversationTurn:
        return self.append(ConversationTurn(role=role, content=content))

    def turns(self) -> tuple[ConversationTurn, ...]:
        """Read-only view in append order."""
        return tuple(self._turns)

    def reset(self, greeting: str) -> None:
        """Discard the run and start over from a single greeting turn."""
        if self._final is not None:
            raise LedgerFinalizedError(self.session_id)
        self._turns = [ConversationTurn(role=TurnRole.ASSISTANT, content=greeting)]
        self.started_at = datetime.now(timezone.utc)
        logger.info("ledger_reset", session_id=self.session_id)

    def finalize(self) -> tuple[ConversationTurn, ...]:
        """Freeze the ledger. Repeated calls return the same sequence."""
        if self._final is None:
            self._final = tuple(self._turns)
            self.ended_at = datetime.now(timezone.utc)
            logger.info("ledger_finalized", session_id=self.session_id, turns=len(self._final))
        return self._final

    # ── Views for the adapters ────────────────────────────

    def as_context(self) -> str:
        """History as "Speaker: text" lines, the context string sent to the LLM."""
        return "\n".join(f"{ROLE_LABELS[t.role]}: {t.content}" for t in self._turns)

    def as_messages(self) -> list[dict[str, str]]:
        return [{"role": t.role.value, "content": t.content} for t in self._turns]

    def transcript(self) -> str:
        return "\n\n".join(f"{ROLE_LABELS[t.role]}: {t.content}" for t in self._turns)

    def to_session(self) -> ConversationSession:
        return ConversationSession(
            id=self.session_id,
            agent_id=self.agent_id,
            turns=list(self._final if self._final is not None else self._turns),
            started_at=self.started_at,
            ended_at=self.ended_at,
        )

    @classmethod
    def from_messages(cls, messages: list[dict[str, str]], session_id: str = "",
                      agent_id: str = "") -> "ConversationLedger":
        """Rebuild a ledger from role/content dicts sent by a stateless client."""
        ledger = cls(session_id=session_id, agent_id=agent_id)
        for m in messages:
            ledger.add(TurnRole(m["role"]), m["content"])
        return ledger
