"""
FastAPI Application — REST API + WebSocket for agent voice previews.

Provides:
- Stateless pass-through endpoints (transcribe / chat / synthesize /
  save) used by browser-driven previews
- Agent availability queries
- Server-side orchestrated sessions using the host's audio devices,
  with a WebSocket event stream for the UI
"""
from __future__ import annotations

import base64
import binascii
import structlog
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime, timezone
from typing import Callable, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agents.availability import available_agents, unavailability_reason
from agents.loader import AgentConfigLoader
from config.settings import VoiceConfig, get_settings
from core.errors import (
    AgentNotFoundError, AgentUnavailableError, PersistError, ServiceUnavailableError,
    SessionNotFoundError, SessionStateError, StageInFlightError, VoicePreviewError,
)
from database.session import close_db, init_db
from database.store_base import BaseAgentStore
from database.store_factory import create_store
from models.schemas import SessionEventType, TurnRole
from voice.analysis import ConversationAnalyzer, ConversationService
from voice.history import ConversationLedger
from voice.providers import SpeechPipeline, create_google_pipeline, resolve_language
from voice.session import SessionManager

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

class PreviewServices:
    """Everything the endpoints talk to, wired once at import time."""

    def __init__(
        self,
        store: BaseAgentStore,
        pipeline: SpeechPipeline,
        device_factory: Callable = None,
        voice: VoiceConfig = None,
    ):
        self.store = store
        self.loader = AgentConfigLoader(store)
        self.pipeline = pipeline
        self.conversations = ConversationService(store, ConversationAnalyzer(pipeline.llm))
        self.sessions = SessionManager(self.loader, pipeline, device_factory=device_factory, voice=voice)


services = PreviewServices(
    store=create_store(get_settings().database),
    pipeline=create_google_pipeline(),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        await init_db(settings.database.url)

    seeded = await services.loader.seed(settings.agents)

    logger.info("voice_preview_started",
                store=type(services.store).__name__,
                agents_seeded=seeded)
    yield

    await services.sessions.end_all()
    await services.pipeline.close()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("voice_preview_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="VoicePreview API",
    description="Turn-based voice preview of configured agents",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES = {
    AgentNotFoundError: 404,
    SessionNotFoundError: 404,
    AgentUnavailableError: 409,
    StageInFlightError: 409,
    SessionStateError: 409,
    ServiceUnavailableError: 502,
    PersistError: 500,
}


@app.exception_handler(VoicePreviewError)
async def voice_preview_error_handler(request: Request, exc: VoicePreviewError):
    status = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 400)
    logger.warning("request_failed", path=request.url.path, status=status,
                   error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(
        status_code=status,
        content={"detail": str(exc), "error": type(exc).__name__, "retryable": exc.retryable},
    )


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class HistoryMessage(BaseModel):
    role: TurnRole
    content: str


class TranscribeRequest(BaseModel):
    audio_base64: str = Field(..., min_length=1)
    session_id: Optional[str] = None


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    conversation_history: list[HistoryMessage] = []
    session_id: Optional[str] = None


class SynthesizeRequest(BaseModel):
    text: str = Field(..., min_length=1)
    session_id: Optional[str] = None


class SaveConversationRequest(BaseModel):
    conversation_history: list[HistoryMessage] = Field(..., min_length=1)
    actor_id: str = ""


class StartSessionRequest(BaseModel):
    actor_id: str = ""


def _in_flight(session_id: Optional[str], stage: str):
    """Share an orchestrated session's in-flight slot, when one is named."""
    if not session_id:
        return nullcontext()
    return services.sessions.get(session_id).ctx.stage(stage)


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store": type(services.store).__name__,
        "active_sessions": len(services.sessions),
    }


# ══════════════════════════════════════════════════════════════
#  AGENT AVAILABILITY
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/agents/available")
async def list_available_agents():
    agents = available_agents(await services.store.list_agents(active_only=True))
    return [{"id": a.id, "name": a.name, "description": a.description} for a in agents]


@app.get("/api/v1/agents/{agent_id}/availability")
async def agent_availability(agent_id: str):
    agent = await services.loader.load(agent_id)
    reason = unavailability_reason(agent)
    return {"agent_id": agent.id, "available": not reason, "reason": reason}


# ══════════════════════════════════════════════════════════════
#  PASS-THROUGH TEST ENDPOINTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/agents/{agent_id}/test/transcribe")
async def preview_transcribe(agent_id: str, req: TranscribeRequest):
    agent = await services.loader.load(agent_id)
    try:
        audio = base64.b64decode(req.audio_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(422, "audio_base64 is not valid base64")

    async with _in_flight(req.session_id, "stt"):
        transcript = await services.pipeline.stt.transcribe(audio, agent.voice.language)
    return {"transcript": transcript, "language": resolve_language(agent.voice.language)}


@app.post("/api/v1/agents/{agent_id}/test/chat")
async def preview_chat(agent_id: str, req: ChatRequest):
    agent = await services.loader.load(agent_id)
    ledger = ConversationLedger.from_messages(
        [m.model_dump(mode="json") for m in req.conversation_history], agent_id=agent.id,
    )
    ledger.add(TurnRole.USER, req.message)

    async with _in_flight(req.session_id, "llm"):
        reply = await services.pipeline.llm.generate(
            ledger.as_context(),
            agent.ai.system_prompt,
            agent.ai.model,
            agent.ai.temperature,
            agent.ai.max_tokens,
        )
    ledger.add(TurnRole.ASSISTANT, reply)
    return {"response": reply, "conversation_history": ledger.as_messages()}


@app.post("/api/v1/agents/{agent_id}/test/synthesize")
async def preview_synthesize(agent_id: str, req: SynthesizeRequest):
    agent = await services.loader.load(agent_id)
    voice = agent.voice
    async with _in_flight(req.session_id, "tts"):
        audio = await services.pipeline.tts.synthesize(
            req.text, voice.voice_name, voice.language, voice.speaking_rate, voice.pitch,
        )
    return {"audio": base64.b64encode(audio).decode("ascii"), "content_type": "audio/mpeg"}


@app.post("/api/v1/agents/{agent_id}/test/conversation")
async def save_test_conversation(agent_id: str, req: SaveConversationRequest):
    agent = await services.loader.load(agent_id)
    ledger = ConversationLedger.from_messages(
        [m.model_dump(mode="json") for m in req.conversation_history], agent_id=agent.id,
    )
    record = await services.conversations.save_ledger(ledger, actor_id=req.actor_id, keyed=False)
    return record.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  ORCHESTRATED SESSIONS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/agents/{agent_id}/sessions")
async def start_session(agent_id: str, req: Optional[StartSessionRequest] = None):
    req = req or StartSessionRequest()
    orchestrator = await services.sessions.create(agent_id, actor_id=req.actor_id)
    try:
        await orchestrator.start()
    except AgentUnavailableError:
        services.sessions.remove(orchestrator.session_id)
        raise
    return orchestrator.ctx.snapshot()


@app.get("/api/v1/sessions/{session_id}")
async def get_session(session_id: str):
    return services.sessions.get(session_id).ctx.snapshot()


@app.post("/api/v1/sessions/{session_id}/stop-listening")
async def stop_listening(session_id: str):
    orchestrator = services.sessions.get(session_id)
    stopped = orchestrator.stop_listening()
    return {"stopped": stopped, **orchestrator.ctx.snapshot()}


@app.post("/api/v1/sessions/{session_id}/reset")
async def reset_session(session_id: str):
    """Discard the run so far; the session keeps listening from the greeting."""
    orchestrator = services.sessions.get(session_id)
    orchestrator.reset()
    return orchestrator.ctx.snapshot()


@app.post("/api/v1/sessions/{session_id}/end")
async def end_session(session_id: str):
    orchestrator = services.sessions.get(session_id)
    await orchestrator.end_call()
    return orchestrator.ctx.snapshot()


@app.post("/api/v1/sessions/{session_id}/save")
async def save_session(session_id: str):
    orchestrator = services.sessions.get(session_id)
    await orchestrator.end_call()
    record = await services.conversations.save_ledger(orchestrator.ledger, actor_id=orchestrator.ctx.actor_id)
    return record.model_dump(mode="json")


@app.websocket("/ws/sessions/{session_id}")
async def session_events(websocket: WebSocket, session_id: str):
    """
    Push SessionEvents of an orchestrated session as JSON until it ends.
    The socket closes after the session_ended event.
    """
    await websocket.accept()
    orchestrator = services.sessions.find(session_id)
    if orchestrator is None:
        await websocket.close(code=4004, reason="Session not found")
        return

    try:
        while True:
            event = await orchestrator.ctx.next_event()
            await websocket.send_json(event.model_dump(mode="json"))
            if event.type == SessionEventType.SESSION_ENDED:
                break
        await websocket.close()
    except WebSocketDisconnect:
        logger.info("session_socket_disconnected", session_id=session_id)


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
