"""
Runtime configuration for the realtime supervisor agent.

Values come from the environment (optionally a local ``.env`` file) and are
exposed as module constants. Per-connection options live on
:class:`TransportConfig`.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

# ================================================================
# Constants
# ================================================================

# OpenAI Realtime API
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
REALTIME_API_URL = os.environ.get("REALTIME_API_URL", "wss://api.openai.com/v1/realtime")
REALTIME_WEBRTC_URL = os.environ.get(
    "REALTIME_WEBRTC_URL", "https://api.openai.com/v1/realtime"
)
REALTIME_SESSIONS_URL = os.environ.get(
    "REALTIME_SESSIONS_URL", "https://api.openai.com/v1/realtime/sessions"
)
REALTIME_MODEL_DEFAULT = os.environ.get(
    "REALTIME_MODEL_DEFAULT", "gpt-4o-realtime-preview-2024-12-17"
)
REALTIME_MODEL_MINI = os.environ.get(
    "REALTIME_MODEL_MINI", "gpt-4o-mini-realtime-preview-2024-12-17"
)
REALTIME_VOICE_CHOICE = os.environ.get("REALTIME_AGENT_VOICE", "sage")
INPUT_TRANSCRIPTION_MODEL = os.environ.get("INPUT_TRANSCRIPTION_MODEL", "whisper-1")

# Supervisor (Responses API)
SUPERVISOR_MODEL = os.environ.get("SUPERVISOR_MODEL", "gpt-4.1")
SUPERVISOR_MAX_ROUNDS = int(os.environ.get("SUPERVISOR_MAX_ROUNDS", "8"))
GUARDRAIL_MODEL = os.environ.get("GUARDRAIL_MODEL", "gpt-4o-mini")

# Local endpoints (see server.py)
REALTIME_CREDENTIAL_URL = os.environ.get(
    "REALTIME_CREDENTIAL_URL", "http://localhost:8000/api/session"
)
SUPERVISOR_RESPONSES_URL = os.environ.get(
    "SUPERVISOR_RESPONSES_URL", "http://localhost:8000/api/responses"
)

COMPANY_NAME = os.environ.get("COMPANY_NAME", "Default Company")

# Audio configuration
CHUNK_SIZE = 1024
CHANNELS = 1
RATE = 24000

# Timing (seconds)
CONNECT_TIMEOUT = float(os.environ.get("REALTIME_CONNECT_TIMEOUT", "15"))
OPENING_MESSAGE_DELAY = 1.0
HTTP_TIMEOUT = 30.0

PROMPTS_DIR = Path(__file__).parent / "prompts"

GENERIC_FAILURE_MESSAGE = "Something went wrong."

TransportKind = Literal["socket", "peer"]


class TransportConfig(BaseModel):
    """Options for one realtime connection."""

    kind: TransportKind = "socket"
    url: Optional[str] = None
    model: str = REALTIME_MODEL_DEFAULT
    voice: str = REALTIME_VOICE_CHOICE
    modalities: List[str] = Field(default_factory=lambda: ["text", "audio"])
    push_to_talk: bool = False
    input_transcription_model: Optional[str] = INPUT_TRANSCRIPTION_MODEL
    vad_threshold: float = 0.9
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 500

    @classmethod
    def for_kind(cls, kind: TransportKind, mini: bool = False, **overrides: Any) -> "TransportConfig":
        """Build a config with the default endpoint for ``kind``."""
        url = REALTIME_WEBRTC_URL if kind == "peer" else REALTIME_API_URL
        model = REALTIME_MODEL_MINI if mini else REALTIME_MODEL_DEFAULT
        values: Dict[str, Any] = {"kind": kind, "url": url, "model": model}
        values.update(overrides)
        return cls(**values)

    @property
    def endpoint(self) -> str:
        base = self.url or (REALTIME_WEBRTC_URL if self.kind == "peer" else REALTIME_API_URL)
        return f"{base}?model={self.model}"

    def turn_detection(self) -> Optional[Dict[str, Any]]:
        """Server VAD policy, or ``None`` when push-to-talk drives turns."""
        if self.push_to_talk:
            return None
        return {
            "type": "server_vad",
            "threshold": self.vad_threshold,
            "prefix_padding_ms": self.vad_prefix_padding_ms,
            "silence_duration_ms": self.vad_silence_duration_ms,
            "create_response": True,
        }
