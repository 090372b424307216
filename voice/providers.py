"""
Speech-Pipeline Adapters — STT, LLM and TTS contracts plus Google Cloud clients.

The orchestrator only depends on the three abstract contracts:

    SpeechToText.transcribe(audio, language)            → transcript ("" allowed)
    LanguageModel.generate(context, system_prompt, ...)  → reply text
    TextToSpeech.synthesize(text, voice, language, ...)  → compressed audio (MP3)

Every failure surfaces as ServiceUnavailableError so callers get one
recoverable error type regardless of provider.

Google implementations talk to the public REST endpoints over a shared
httpx client with tenacity retries on transient faults:
  STT:  speech.googleapis.com            speech:recognize
  LLM:  generativelanguage.googleapis.com models/{model}:generateContent
  TTS:  texttospeech.googleapis.com       text:synthesize
"""
from __future__ import annotations

import abc
import base64
import structlog
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import GoogleConfig, VoiceConfig, get_settings
from core.errors import ServiceUnavailableError

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  LANGUAGE & VOICE RESOLUTION
# ══════════════════════════════════════════════════════════════

# Short codes stored by older agent configs → BCP-47
LANGUAGE_CODES = {
    "ru": "ru-RU",
    "en": "en-US",
    "kz": "kk-KZ",
}

# Voices of the realtime Gemini Live API; Cloud TTS does not know them
GEMINI_LIVE_VOICES = {"Aoede", "Orbit", "Vale", "Puck", "Charon", "Kore", "Fenrir"}

DEFAULT_VOICES = {
    "ru-RU": "ru-RU-Wavenet-B",
    "en-US": "en-US-Wavenet-D",
    "kk-KZ": "kk-KZ-Wavenet-A",
}


def resolve_language(language: str, default: Optional[str] = None) -> str:
    """BCP-47 code for `language`; empty falls back to `default_language` from settings."""
    if not language:
        return default or get_settings().default_language
    return LANGUAGE_CODES.get(language, language)


def resolve_voice(voice_name: str, language: str) -> str:
    """Map the configured voice to one Cloud TTS can synthesize."""
    if not voice_name or voice_name in GEMINI_LIVE_VOICES:
        return DEFAULT_VOICES.get(language, "ru-RU-Wavenet-B")
    return voice_name


# ══════════════════════════════════════════════════════════════
#  CONTRACTS
# ══════════════════════════════════════════════════════════════

class SpeechToText(abc.ABC):

    @abc.abstractmethod
    async def transcribe(self, audio: bytes, language: str) -> str:
        """Return the transcript, possibly empty for silence."""
        ...


class LanguageModel(abc.ABC):

    @abc.abstractmethod
    async def generate(
        self,
        context: str,
        system_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        ...


class TextToSpeech(abc.ABC):

    @abc.abstractmethod
    async def synthesize(
        self,
        text: str,
        voice_name: str,
        language: str,
        speaking_rate: float = 1.0,
        pitch: float = 0.0,
    ) -> bytes:
        ...


@dataclass
class SpeechPipeline:
    """The three adapters one session talks to."""
    stt: SpeechToText
    llm: LanguageModel
    tts: TextToSpeech

    async def close(self) -> None:
        for adapter in {id(a): a for a in (self.stt, self.llm, self.tts)}.values():
            closer = getattr(adapter, "close", None)
            if closer is not None:
                await closer()


# ══════════════════════════════════════════════════════════════
#  GOOGLE CLOUD REST CLIENT
# ══════════════════════════════════════════════════════════════

def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


class GoogleCloudClient:
    """Shared authenticated httpx client for the Google REST APIs."""

    def __init__(self, config: GoogleConfig = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_settings().google
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                headers={"x-goog-api-key": self.config.api_key},
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(url, json=payload)
        response.raise_for_status()
        return response.json()

    async def close(self):
        if self.client:
            await self.client.aclose()


class _GoogleAdapter:
    service = ""

    def __init__(self, client: GoogleCloudClient):
        self.google = client

    async def _call(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            data = await self.google.post(url, payload)
        except httpx.HTTPStatusError as e:
            logger.error(f"{self.service}_request_failed",
                         status=e.response.status_code, error=e.response.text[:300])
            raise ServiceUnavailableError(self.service, f"{self.service} returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{self.service}_request_failed", error=str(e))
            raise ServiceUnavailableError(self.service, f"{self.service} request failed: {e}") from e

        if not isinstance(data, dict):
            logger.error(f"{self.service}_unexpected_response", body_type=type(data).__name__)
            raise ServiceUnavailableError(self.service, f"{self.service} returned a non-object response")
        return data

    async def close(self):
        await self.google.close()


class GoogleSpeechToText(_GoogleAdapter, SpeechToText):
    service = "stt"

    def __init__(self, client: GoogleCloudClient, sample_rate: int = 16000):
        super().__init__(client)
        self.sample_rate = sample_rate

    async def transcribe(self, audio: bytes, language: str) -> str:
        payload = {
            "config": {
                "encoding": "LINEAR16",
                "sampleRateHertz": self.sample_rate,
                "languageCode": resolve_language(language),
                "enableAutomaticPunctuation": True,
            },
            "audio": {"content": base64.b64encode(audio).decode("ascii")},
        }
        data = await self._call(f"{self.google.config.speech_url}/speech:recognize", payload)

        parts = []
        for result in data.get("results", []):
            alternatives = result.get("alternatives") or []
            if alternatives:
                parts.append(alternatives[0].get("transcript", ""))
        transcript = " ".join(parts).strip()
        logger.info("stt_transcribed", language=language, chars=len(transcript))
        return transcript


class GeminiLanguageModel(_GoogleAdapter, LanguageModel):
    service = "llm"

    async def generate(
        self,
        context: str,
        system_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": context}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        data = await self._call(f"{self.google.config.generative_url}/models/{model}:generateContent", payload)

        candidates = data.get("candidates") or []
        if not candidates:
            raise ServiceUnavailableError(self.service, f"No response from {model}")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts).strip()
        if not text:
            raise ServiceUnavailableError(self.service, f"Empty response from {model}")
        logger.info("llm_generated", model=model, chars=len(text))
        return text


class GoogleTextToSpeech(_GoogleAdapter, TextToSpeech):
    service = "tts"

    async def synthesize(
        self,
        text: str,
        voice_name: str,
        language: str,
        speaking_rate: float = 1.0,
        pitch: float = 0.0,
    ) -> bytes:
        language = resolve_language(language)
        payload = {
            "input": {"text": text},
            "voice": {"languageCode": language, "name": resolve_voice(voice_name, language)},
            "audioConfig": {
                "audioEncoding": "MP3",
                "speakingRate": speaking_rate,
                "pitch": pitch,
            },
        }
        data = await self._call(f"{self.google.config.tts_url}/text:synthesize", payload)

        content = data.get("audioContent")
        if not content:
            raise ServiceUnavailableError(self.service, "No audio content in TTS response")
        try:
            audio = base64.b64decode(content)
        except ValueError as e:
            raise ServiceUnavailableError(self.service, "TTS returned undecodable audio") from e
        logger.info("tts_synthesized", voice=payload["voice"]["name"], bytes=len(audio))
        return audio


def create_google_pipeline(google: GoogleConfig = None, voice: VoiceConfig = None) -> SpeechPipeline:
    """Build the three Google adapters sharing one HTTP client."""
    settings = get_settings()
    client = GoogleCloudClient(google or settings.google)
    voice = voice or settings.voice
    return SpeechPipeline(
        stt=GoogleSpeechToText(client, sample_rate=voice.sample_rate),
        llm=GeminiLanguageModel(client),
        tts=GoogleTextToSpeech(client),
    )
