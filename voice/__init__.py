"""
Voice Subsystem — turn-based voice preview of a configured agent.

Modules:
- history: append-only conversation ledger
- devices: microphone / speaker abstractions (sounddevice backed)
- capture: bounded microphone capture with auto-stop
- playback: speaker playback with amplitude tracking for visualizers
- providers: STT / LLM / TTS contracts and Google Cloud clients
- orchestrator: per-session state machine driving the turn loop
- session: session context and registry
- analysis: saving (and analyzing) finished test conversations
"""
from voice.history import ConversationLedger, ROLE_LABELS
from voice.devices import (
    MicrophoneDevice, SpeakerDevice, SpeakerStream,
    SoundDeviceMicrophone, SoundDeviceSpeaker,
)
from voice.capture import AudioCaptureService, CaptureHandle, encode_wav
from voice.playback import AmplitudeSampler, PlaybackEngine, PlaybackResult, decode_audio
from voice.providers import (
    SpeechToText, LanguageModel, TextToSpeech, SpeechPipeline,
    GoogleCloudClient, GoogleSpeechToText, GeminiLanguageModel, GoogleTextToSpeech,
    create_google_pipeline, resolve_language, resolve_voice,
)
from voice.session import SessionContext, SessionManager
from voice.orchestrator import TurnOrchestrator
from voice.analysis import ConversationAnalyzer, ConversationService

__all__ = [
    "ConversationLedger", "ROLE_LABELS",
    "MicrophoneDevice", "SpeakerDevice", "SpeakerStream",
    "SoundDeviceMicrophone", "SoundDeviceSpeaker",
    "AudioCaptureService", "CaptureHandle", "encode_wav",
    "AmplitudeSampler", "PlaybackEngine", "PlaybackResult", "decode_audio",
    "SpeechToText", "LanguageModel", "TextToSpeech", "SpeechPipeline",
    "GoogleCloudClient", "GoogleSpeechToText", "GeminiLanguageModel", "GoogleTextToSpeech",
    "create_google_pipeline", "resolve_language", "resolve_voice",
    "SessionContext", "SessionManager",
    "TurnOrchestrator",
    "ConversationAnalyzer", "ConversationService",
]
