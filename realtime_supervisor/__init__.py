"""Realtime voice/text agent with a tool-using supervisor."""

from .agents import (
    AgentDefinition,
    AgentRegistry,
    BlocklistGuardrail,
    FunctionTool,
    Guardrail,
    GuardrailResult,
    GuardrailVerdict,
    ModerationGuardrail,
)
from .config import TransportConfig
from .credentials import HttpCredentialProvider, OpenAICredentialProvider, StaticCredentialProvider
from .errors import CredentialError, ProtocolParseError, RealtimeError, ToolResolutionError, TransportError
from .router import EventRouter
from .session import ConnectionState, RealtimeSessionManager, Session
from .supervisor import ContextBundle, SupervisorLoop, SupervisorResult, ToolCall, ToolResolver
from .transcript import Breadcrumb, ItemStatus, Transcript, TranscriptItem
from .transport import PeerTransport, SocketTransport, Transport

__version__ = "0.1.0"
