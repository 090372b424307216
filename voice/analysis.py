"""
Saving test conversations.

ConversationService turns a finalized ledger into a ConversationRecord
and hands it to the agent store. Transcripts longer than 50 characters
are first run through ConversationAnalyzer, which asks the LLM for a
structured JSON summary. Analysis is best-effort: when it fails the
record is saved without it.
"""
from __future__ import annotations

import json
import re
import structlog
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from core.errors import ServiceUnavailableError
from database.store_base import BaseAgentStore
from models.schemas import ConversationAnalysis, ConversationRecord
from voice.history import ConversationLedger
from voice.providers import LanguageModel

logger = structlog.get_logger()

MIN_ANALYSIS_CHARS = 50

ANALYST_PROMPT = (
    "Ты опытный аналитик телефонных продаж и разговоров. Твоя задача - детально "
    "анализировать разговоры, извлекать важную информацию о клиенте, оценивать "
    "вероятность сделки и качество разговора. Будь максимально точным и структурированным."
)

ANALYSIS_REQUEST = """Проанализируй следующий телефонный разговор и предоставь:

1. Краткое резюме разговора (2-3 предложения)
2. Общий тон разговора (positive/neutral/negative)
3. Ключевые моменты разговора (3-5 пунктов)
4. Намерение клиента
5. Рекомендуемые следующие шаги (2-3 пункта)
6. Итог звонка: agreed_to_buy | rejected | needs_followup | thinking | not_interested | information_provided | other
7. Извлечённые данные клиента (имя, email, телефон, бюджет, предпочтения)
8. Вероятность сделки (0-100), качество разговора (0-10), возражения клиента

Верни результат СТРОГО в формате JSON:
{{
  "summary": "краткое резюме",
  "sentiment": "positive|neutral|negative",
  "keyPoints": ["пункт1", "пункт2"],
  "customerIntention": "намерение клиента",
  "nextSteps": ["шаг1", "шаг2"],
  "callOutcome": "information_provided",
  "extractedCustomerData": {{"name": null, "email": null, "phone": null, "budget": null, "preferences": []}},
  "dealProbability": 50,
  "conversationQuality": 7,
  "concerns": []
}}

Разговор:
{transcript}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_SENTIMENTS = {"positive", "neutral", "negative"}


def parse_analysis(data: dict[str, Any]) -> ConversationAnalysis:
    """Map the LLM's camelCase JSON onto ConversationAnalysis."""
    sentiment = str(data.get("sentiment") or "neutral").lower()
    return ConversationAnalysis(
        summary=data.get("summary") or "",
        sentiment=sentiment if sentiment in _SENTIMENTS else "neutral",
        key_points=data.get("keyPoints") or [],
        customer_intention=data.get("customerIntention") or "",
        next_steps=data.get("nextSteps") or [],
        call_outcome=data.get("callOutcome") or "other",
        extracted_customer_data=data.get("extractedCustomerData") or {},
        deal_probability=data.get("dealProbability"),
        conversation_quality=data.get("conversationQuality"),
        concerns=data.get("concerns") or [],
    )


class ConversationAnalyzer:

    def __init__(self, llm: LanguageModel, model: str = "gemini-2.0-flash",
                 temperature: float = 0.3, max_tokens: int = 2048):
        self.llm = llm
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def analyze(self, transcript: str) -> Optional[ConversationAnalysis]:
        if len(transcript.strip()) <= MIN_ANALYSIS_CHARS:
            return None
        try:
            response = await self.llm.generate(
                ANALYSIS_REQUEST.format(transcript=transcript),
                ANALYST_PROMPT,
                self.model,
                self.temperature,
                self.max_tokens,
            )
        except ServiceUnavailableError as e:
            logger.error("analysis_failed", error=str(e))
            return None

        match = _JSON_OBJECT.search(response)
        if not match:
            logger.error("analysis_unparseable", response=response[:200])
            return None
        try:
            analysis = parse_analysis(json.loads(match.group(0)))
        except (json.JSONDecodeError, ValidationError, AttributeError) as e:
            logger.error("analysis_unparseable", error=str(e))
            return None
        logger.info("analysis_completed", sentiment=analysis.sentiment, outcome=analysis.call_outcome)
        return analysis


class ConversationService:

    def __init__(self, store: BaseAgentStore, analyzer: Optional[ConversationAnalyzer] = None):
        self.store = store
        self.analyzer = analyzer

    async def save_ledger(self, ledger: ConversationLedger, actor_id: str = "",
                          keyed: bool = True) -> ConversationRecord:
        """
        Finalize the ledger and persist it as a test conversation.

        With keyed=True the record carries the ledger's session id, so
        saving the same session twice updates one record. Raises
        PersistError when the store fails.
        """
        turns = ledger.finalize()
        transcript = ledger.transcript()

        analysis = None
        if self.analyzer is not None:
            analysis = await self.analyzer.analyze(transcript)

        record = ConversationRecord(
            agent_id=ledger.agent_id,
            actor_id=actor_id,
            session_id=ledger.session_id if keyed else "",
            turns=list(turns),
            transcript=transcript,
            started_at=ledger.started_at,
            ended_at=ledger.ended_at or datetime.now(ledger.started_at.tzinfo),
            analysis=analysis,
            metadata={"is_test": True, "test_date": datetime.now(ledger.started_at.tzinfo).isoformat()},
        )
        record.id = await self.store.save_conversation(record)
        logger.info("test_conversation_saved", record_id=record.id, agent_id=record.agent_id,
                    turns=len(turns), analyzed=analysis is not None)
        return record
