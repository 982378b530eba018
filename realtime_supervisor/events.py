"""
Realtime protocol events.

Every wire message is a JSON object with a string ``type`` discriminant.
Client-originated events are commands, server-originated events are
notifications. This module builds the commands and parses notifications.
"""

import json
from typing import Any, Dict, List, Optional, Union

from .errors import ProtocolParseError

# Commands
SESSION_UPDATE = "session.update"
CONVERSATION_ITEM_CREATE = "conversation.item.create"
RESPONSE_CREATE = "response.create"
RESPONSE_CANCEL = "response.cancel"
INPUT_AUDIO_BUFFER_APPEND = "input_audio_buffer.append"
INPUT_AUDIO_BUFFER_CLEAR = "input_audio_buffer.clear"
INPUT_AUDIO_BUFFER_COMMIT = "input_audio_buffer.commit"

# Notifications
SESSION_CREATED = "session.created"
SESSION_UPDATED = "session.updated"
CONVERSATION_ITEM_CREATED = "conversation.item.created"
INPUT_TRANSCRIPTION_COMPLETED = "conversation.item.input_audio_transcription.completed"
RESPONSE_CREATED = "response.created"
RESPONSE_DONE = "response.done"
AUDIO_TRANSCRIPT_DELTA = "response.audio_transcript.delta"
AUDIO_TRANSCRIPT_DONE = "response.audio_transcript.done"
TEXT_DELTA = "response.text.delta"
TEXT_DONE = "response.text.done"
AUDIO_DELTA = "response.audio.delta"
FUNCTION_CALL_ARGUMENTS_DONE = "response.function_call_arguments.done"
ERROR = "error"

# Notifications that are only worth a log line
LOG_ONLY_EVENTS = (
    "conversation.created",
    "conversation.item.truncated",
    "conversation.item.deleted",
    "conversation.item.input_audio_transcription.delta",
    "conversation.item.input_audio_transcription.failed",
    "input_audio_buffer.committed",
    "input_audio_buffer.cleared",
    "input_audio_buffer.speech_started",
    "input_audio_buffer.speech_stopped",
    "output_audio_buffer.started",
    "output_audio_buffer.stopped",
    "output_audio_buffer.cleared",
    "response.output_item.added",
    "response.output_item.done",
    "response.content_part.added",
    "response.content_part.done",
    "response.audio.done",
    "response.function_call_arguments.delta",
    "rate_limits.updated",
)

ProtocolEvent = Dict[str, Any]


def parse_event(raw: Union[str, bytes, bytearray]) -> ProtocolEvent:
    """Decode one inbound frame into a protocol event.

    Raises:
        ProtocolParseError: frame is not a JSON object with a string ``type``.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolParseError(f"Frame is not UTF-8: {exc}") from exc
    try:
        event = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(f"Failed to parse message: {exc}") from exc
    if not isinstance(event, dict):
        raise ProtocolParseError(f"Expected a JSON object, got {type(event).__name__}")
    event_type = event.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ProtocolParseError("Event has no string 'type' discriminant")
    return event


def encode_event(event: ProtocolEvent) -> str:
    return json.dumps(event)


# ------------------------------------------------------------------ #
# Command builders
# ------------------------------------------------------------------ #


def session_update(
    *,
    instructions: str,
    tools: List[Dict[str, Any]],
    modalities: List[str],
    voice: str,
    turn_detection: Optional[Dict[str, Any]],
    input_transcription_model: Optional[str] = None,
    audio_format: str = "pcm16",
) -> ProtocolEvent:
    """Build the configuration push sent as the first command of a session."""
    session: Dict[str, Any] = {
        "modalities": modalities,
        "instructions": instructions,
        "voice": voice,
        "input_audio_format": audio_format,
        "output_audio_format": audio_format,
        "turn_detection": turn_detection,
        "tools": tools,
        "tool_choice": "auto",
    }
    if input_transcription_model:
        session["input_audio_transcription"] = {"model": input_transcription_model}
    return {"type": SESSION_UPDATE, "session": session}


def user_message(item_id: str, text: str) -> ProtocolEvent:
    return {
        "type": CONVERSATION_ITEM_CREATE,
        "item": {
            "id": item_id,
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        },
    }


def function_call_output(call_id: str, output: str) -> ProtocolEvent:
    return {
        "type": CONVERSATION_ITEM_CREATE,
        "item": {
            "type": "function_call_output",
            "call_id": call_id,
            "output": output,
        },
    }


def response_create(modalities: Optional[List[str]] = None) -> ProtocolEvent:
    event: ProtocolEvent = {"type": RESPONSE_CREATE}
    if modalities:
        event["response"] = {"modalities": modalities}
    return event


def response_cancel() -> ProtocolEvent:
    return {"type": RESPONSE_CANCEL}


def input_audio_append(audio_base64: str) -> ProtocolEvent:
    return {"type": INPUT_AUDIO_BUFFER_APPEND, "audio": audio_base64}


def input_audio_clear() -> ProtocolEvent:
    return {"type": INPUT_AUDIO_BUFFER_CLEAR}


def input_audio_commit() -> ProtocolEvent:
    return {"type": INPUT_AUDIO_BUFFER_COMMIT}


# ------------------------------------------------------------------ #
# Notification helpers
# ------------------------------------------------------------------ #


def message_text(item: Dict[str, Any]) -> str:
    """Join the text parts of a conversation message item."""
    parts = []
    for part in item.get("content") or []:
        if not isinstance(part, dict):
            continue
        if part.get("type") in {"input_text", "output_text", "text"}:
            parts.append(part.get("text") or "")
        elif part.get("type") in {"input_audio", "audio"} and part.get("transcript"):
            parts.append(part["transcript"])
    return "\n".join(filter(None, parts))
