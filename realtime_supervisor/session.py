"""
Realtime session management.

:class:`RealtimeSessionManager` owns at most one :class:`Session` at a time. A
session couples one transport with the inbound queue that feeds a single
dispatcher task, so protocol events are handled one at a time and in arrival
order. Tool calls and guardrail checks run as tasks tracked by the session and
report back through the same transport.

UI collaborators observe the manager through psygnal signals:

* ``status_changed(str)`` on every connection-state transition
* ``agent_changed(str)`` when the active agent is set or switched
* ``guardrail_tripped(GuardrailResult)`` for flagged assistant output
* ``error_occurred(RealtimeError)`` when a connect attempt fails
"""

import asyncio
import dataclasses
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Optional, Set

from psygnal import Signal

from .agents import AgentDefinition, AgentRegistry, ToolContext, handoff_target
from .config import CONNECT_TIMEOUT, GENERIC_FAILURE_MESSAGE, OPENING_MESSAGE_DELAY, TransportConfig
from .credentials import CredentialProvider
from .errors import CredentialError, ProtocolParseError, RealtimeError, TransportError
from .events import (
    AUDIO_DELTA,
    AUDIO_TRANSCRIPT_DELTA,
    AUDIO_TRANSCRIPT_DONE,
    CONVERSATION_ITEM_CREATED,
    ERROR,
    FUNCTION_CALL_ARGUMENTS_DONE,
    INPUT_TRANSCRIPTION_COMPLETED,
    LOG_ONLY_EVENTS,
    RESPONSE_CREATED,
    RESPONSE_DONE,
    SESSION_CREATED,
    SESSION_UPDATED,
    TEXT_DELTA,
    TEXT_DONE,
    ProtocolEvent,
    function_call_output,
    input_audio_clear,
    input_audio_commit,
    message_text,
    parse_event,
    response_cancel,
    response_create,
    session_update,
    user_message,
)
from .router import EventRouter
from .transcript import Transcript
from .transport import Transport, create_transport


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


@dataclass
class Session:
    """One live connection. Discarded on disconnect or fatal error."""

    config: TransportConfig
    active_agent_name: str
    voice: str
    transport: Optional[Transport] = None
    state: ConnectionState = ConnectionState.CONNECTING
    inbound: asyncio.Queue = field(default_factory=asyncio.Queue)
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    failure: Optional[RealtimeError] = None
    response_in_flight: bool = False
    opening_sent: bool = False
    handled_call_ids: Set[str] = field(default_factory=set)
    tasks: Set[asyncio.Task] = field(default_factory=set)
    dispatcher: Optional[asyncio.Task] = None


TransportFactory = Callable[..., Transport]


class RealtimeSessionManager:
    """Connection lifecycle, event routing and agent orchestration."""

    status_changed = Signal(str)
    agent_changed = Signal(str)
    guardrail_tripped = Signal(object)
    error_occurred = Signal(object)

    def __init__(
        self,
        registry: AgentRegistry,
        transcript: Optional[Transcript] = None,
        transport_factory: TransportFactory = create_transport,
        audio=None,
        initial_agent: Optional[str] = None,
        opening_message: Optional[str] = None,
        logger=None,
    ):
        self.logger = logger or logging.getLogger("RealtimeSessionManager")
        self.registry = registry
        self.transcript = transcript if transcript is not None else Transcript(logger=self.logger)
        self.transport_factory = transport_factory
        self.audio = audio
        self.initial_agent = initial_agent
        self.opening_message = opening_message

        self.session: Optional[Session] = None
        self._status = ConnectionState.DISCONNECTED
        self._muted = False
        self._background: Set[asyncio.Task] = set()

        self.router = EventRouter(logger=self.logger)
        self._register_handlers()

    # ------------------------------------------------------------------ #
    # State
    # ------------------------------------------------------------------ #

    @property
    def status(self) -> ConnectionState:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self._status == ConnectionState.CONNECTED

    @property
    def active_agent_name(self) -> str:
        return self.session.active_agent_name if self.session else ""

    @property
    def active_agent(self) -> Optional[AgentDefinition]:
        return self.registry.get(self.active_agent_name) if self.session else None

    def _set_status(self, state: ConnectionState) -> None:
        if self.session is not None:
            self.session.state = state
        if state == self._status:
            return
        self.logger.info(f"Connection status: {self._status.value} -> {state.value}")
        self._status = state
        self.status_changed.emit(state.value)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def connect(self, credential_provider: CredentialProvider, transport_config: TransportConfig) -> bool:
        """
        Open a session; a no-op unless currently DISCONNECTED.

        Returns:
            True once the remote acknowledged the initial configuration
        """
        if self.session is not None or self._status != ConnectionState.DISCONNECTED:
            self.logger.info("Already connected or connecting")
            return False

        agent = self.registry.resolve_initial(self.initial_agent)
        self.registry.seal()
        session = Session(
            config=transport_config,
            active_agent_name=agent.name,
            voice=agent.voice or transport_config.voice,
        )
        self.session = session
        self._set_status(ConnectionState.CONNECTING)
        self.logger.info(
            f"Connecting with {transport_config.kind} transport as agent '{agent.name}' "
            f"(model {transport_config.model})"
        )

        credential = None
        error: Optional[RealtimeError] = None
        try:
            credential = await credential_provider.get_credential()
            if not credential:
                raise CredentialError("Credential provider returned an empty value")
            if self.session is not session:
                return False

            transport = self.transport_factory(transport_config, self.audio, self.logger)
            session.transport = transport
            transport.on_message = partial(self._on_transport_message, session)
            transport.on_close = partial(self._on_transport_close, session)
            transport.on_error = partial(self._on_transport_error, session)
            transport.set_muted(self._muted)
            if self.audio is not None:
                try:
                    self.audio.open()
                except OSError as exc:
                    raise TransportError(f"Audio device unavailable: {exc}") from exc
            await transport.open(credential)
            if self.session is not session:
                await transport.close("connect abandoned")
                return False

            session.dispatcher = asyncio.create_task(self._dispatch_loop(session), name="realtime-dispatch")
            transport.send(self._session_update(session))
            await asyncio.wait_for(session.ready.wait(), timeout=CONNECT_TIMEOUT)
        except RealtimeError as exc:
            error = exc
        except asyncio.TimeoutError as exc:
            if credential is None:
                error = CredentialError(f"Credential provider timed out: {exc!r}")
            else:
                error = TransportError(f"No session.updated acknowledgement within {CONNECT_TIMEOUT}s")
        except Exception as exc:
            if credential is None:
                error = CredentialError(f"Credential provider failed: {exc!r}")
            else:
                error = TransportError(f"Handshake failed: {exc!r}")
            error.__cause__ = exc
        else:
            if self.session is session:
                self._set_status(ConnectionState.CONNECTED)
                self.agent_changed.emit(agent.name)
                self.logger.info(f"Realtime session connected ({transport.kind})")
                if self.opening_message:
                    self._spawn(session, self._send_opening_message(session))
                return True

        if self.session is not session:
            self.logger.info("Connect attempt ended by teardown")
            if session.transport is not None:
                await session.transport.close("connect abandoned")
            if session.failure is not None:
                self.error_occurred.emit(session.failure)
            return False

        self.logger.error(f"Connection error: {error}")
        await self._teardown(session, f"connect failed: {error}")
        self.error_occurred.emit(error)
        return False

    async def disconnect(self) -> None:
        """Close the transport and discard the session. Safe from any state."""
        session = self.session
        if session is None:
            self._set_status(ConnectionState.DISCONNECTED)
            return
        self.logger.info("Disconnecting...")
        await self._teardown(session, "disconnect requested")

    async def _teardown(self, session: Session, reason: str, error: Optional[RealtimeError] = None) -> None:
        if self.session is not session:
            return
        self.session = None
        if not session.ready.is_set():
            session.failure = error
            session.ready.set()

        current = asyncio.current_task()
        pending = [task for task in session.tasks if task is not current and not task.done()]
        if session.dispatcher is not None and session.dispatcher is not current:
            pending.append(session.dispatcher)
        for task in pending:
            task.cancel()
        if session.transport is not None:
            await session.transport.close(reason)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.audio is not None:
            self.audio.close()

        self._set_status(ConnectionState.DISCONNECTED)
        self.logger.info(f"Session closed: {reason}")

    def _on_transport_message(self, session: Session, frame) -> None:
        if self.session is session:
            session.inbound.put_nowait(frame)

    def _on_transport_error(self, session: Session, exc: Exception) -> None:
        self.logger.error(f"Transport error: {exc}")

    def _on_transport_close(self, session: Session, reason: str) -> None:
        if self.session is not session:
            return
        self.logger.warning(f"Transport closed: {reason}")
        task = asyncio.ensure_future(self._teardown(session, reason, TransportError(reason)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _dispatch_loop(self, session: Session) -> None:
        """Single consumer of inbound frames for ``session``."""
        while True:
            frame = await session.inbound.get()
            try:
                event = parse_event(frame)
            except ProtocolParseError as exc:
                self.logger.warning(f"Dropping malformed frame: {exc}")
            else:
                self.logger.debug(f"Server event: {event['type']}")
                await self.router.dispatch(event)
            finally:
                session.inbound.task_done()

    def _spawn(self, session: Session, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until queued events and spawned tasks have been handled."""
        session = self.session
        while session is not None and self.session is session:
            await session.inbound.join()
            pending = [task for task in session.tasks if not task.done()]
            if not pending and session.inbound.empty():
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    def _send(self, event: ProtocolEvent) -> bool:
        if not self.is_connected:
            self.logger.warning(f"Session not ready for event: {event.get('type')}")
            return False
        try:
            self.session.transport.send(event)
        except TransportError as exc:
            self.logger.error(f"Failed to send {event.get('type')}: {exc}")
            return False
        return True

    def send_user_text(self, text: str) -> bool:
        """Add a user message to the conversation and request a response."""
        if not text or not text.strip():
            return False
        if not self.is_connected:
            self.logger.warning("Session not ready")
            return False

        if self.session.response_in_flight:
            self.interrupt()

        item_id = f"user_{uuid.uuid4().hex[:16]}"
        self.transcript.add_message(item_id, "user", text, done=True)
        sent = self._send(user_message(item_id, text)) and self._send(response_create())
        self.logger.info(f"User message sent: {item_id}")
        return sent

    def send_event(self, event: ProtocolEvent) -> bool:
        """Forward an arbitrary client command."""
        sent = self._send(event)
        if sent:
            self.logger.debug(f"Client event sent: {event.get('type')}")
        return sent

    def interrupt(self) -> bool:
        """Ask the remote to cancel the in-progress response, if any."""
        if not self.is_connected:
            return False
        self.session.transport.flush_playback()
        self.session.response_in_flight = False
        sent = self._send(response_cancel())
        if sent:
            self.logger.info("Response interrupted")
        return sent

    def mute(self, muted: bool) -> None:
        """Stop or resume sending local audio. Carries over to later sessions."""
        self._muted = muted
        if self.session is not None and self.session.transport is not None:
            self.session.transport.set_muted(muted)

    @property
    def muted(self) -> bool:
        return self._muted

    def start_push_to_talk(self) -> bool:
        if not self.is_connected:
            return False
        self.interrupt()
        return self._send(input_audio_clear())

    def stop_push_to_talk(self) -> bool:
        if not self.is_connected:
            return False
        return self._send(input_audio_commit()) and self._send(response_create())

    def switch_agent(self, name: str) -> bool:
        """Move control to agent ``name`` if the active agent may hand off to it."""
        if not self.is_connected:
            self.logger.warning("Cannot switch agent - not connected")
            return False
        current = self.session.active_agent_name
        if name == current:
            return True
        if not self.registry.can_hand_off(current, name):
            self.logger.warning(f"Agent '{current}' cannot hand off to '{name}'")
            return False
        self._activate_agent(self.session, name)
        self.transcript.add_breadcrumb(f"Switched to agent: {name}")
        return True

    def _activate_agent(self, session: Session, name: str) -> None:
        session.active_agent_name = name
        self._send(self._session_update(session))
        self.logger.info(f"Active agent: {name}")
        self.agent_changed.emit(name)

    def _session_update(self, session: Session) -> ProtocolEvent:
        agent = self.registry.get(session.active_agent_name)
        config = session.config
        return session_update(
            instructions=agent.instructions,
            tools=self.registry.tool_specs(agent.name),
            modalities=config.modalities,
            voice=session.voice,
            turn_detection=config.turn_detection(),
            input_transcription_model=config.input_transcription_model,
        )

    async def _send_opening_message(self, session: Session) -> None:
        await asyncio.sleep(OPENING_MESSAGE_DELAY)
        if self.session is not session or session.opening_sent:
            return
        session.opening_sent = True
        self.logger.info(f"Sending opening message: {self.opening_message}")
        self.send_user_text(self.opening_message)

    # ------------------------------------------------------------------ #
    # Inbound event handlers
    # ------------------------------------------------------------------ #

    def _register_handlers(self) -> None:
        handlers = {
            SESSION_CREATED: self._handle_session_created,
            SESSION_UPDATED: self._handle_session_updated,
            CONVERSATION_ITEM_CREATED: self._handle_item_created,
            INPUT_TRANSCRIPTION_COMPLETED: self._handle_input_transcription,
            AUDIO_TRANSCRIPT_DELTA: self._handle_delta,
            TEXT_DELTA: self._handle_delta,
            AUDIO_TRANSCRIPT_DONE: self._handle_done,
            TEXT_DONE: self._handle_done,
            AUDIO_DELTA: self._handle_audio_delta,
            RESPONSE_CREATED: self._handle_response_created,
            RESPONSE_DONE: self._handle_response_done,
            FUNCTION_CALL_ARGUMENTS_DONE: self._handle_function_call,
            ERROR: self._handle_error,
        }
        for event_type, handler in handlers.items():
            self.router.register(event_type, handler)
        self.router.register_log_sink(LOG_ONLY_EVENTS)

    def _handle_session_created(self, event: ProtocolEvent) -> None:
        remote = event.get("session") or {}
        self.logger.info(f"Session created: {remote.get('id', 'unknown')}")

    def _handle_session_updated(self, event: ProtocolEvent) -> None:
        if self.session is not None and not self.session.ready.is_set():
            self.session.ready.set()
        self.logger.info("Session configuration acknowledged")

    def _handle_item_created(self, event: ProtocolEvent) -> None:
        item = event.get("item") or {}
        if item.get("type") != "message":
            return
        role = item.get("role")
        item_id = item.get("id")
        if role not in ("user", "assistant") or not item_id:
            return
        text = message_text(item)
        if role == "user" and not text:
            self.transcript.add_message(item_id, "user", placeholder=True)
        else:
            self.transcript.add_message(item_id, role, text, done=role == "user" and bool(text))

    def _handle_input_transcription(self, event: ProtocolEvent) -> None:
        item_id = event.get("item_id")
        if item_id:
            self.transcript.complete(item_id, event.get("transcript") or "", role="user")

    def _handle_delta(self, event: ProtocolEvent) -> None:
        item_id = event.get("item_id")
        if item_id:
            self.transcript.append_delta(item_id, event.get("delta") or "")

    def _handle_done(self, event: ProtocolEvent) -> None:
        item_id = event.get("item_id")
        if not item_id:
            return
        text = event.get("transcript") if event["type"] == AUDIO_TRANSCRIPT_DONE else event.get("text")
        if self.transcript.complete(item_id, text) and self.session is not None:
            self._schedule_guardrails(self.session, item_id, text or "")

    def _handle_audio_delta(self, event: ProtocolEvent) -> None:
        if self.session is not None:
            self.session.transport.play_audio_delta(event.get("delta") or "")

    def _handle_response_created(self, event: ProtocolEvent) -> None:
        if self.session is not None:
            self.session.response_in_flight = True

    def _handle_response_done(self, event: ProtocolEvent) -> None:
        if self.session is not None:
            self.session.response_in_flight = False
        usage = (event.get("response") or {}).get("usage")
        if usage:
            self.logger.debug(f"Response usage: {usage}")

    def _handle_error(self, event: ProtocolEvent) -> None:
        error = event.get("error") or {}
        message = error.get("message", "Unknown error") if isinstance(error, dict) else str(error)
        self.logger.error(f"Realtime API error: {message}")
        self.transcript.add_breadcrumb("Realtime API error", error)

    # ------------------------------------------------------------------ #
    # Tool calls
    # ------------------------------------------------------------------ #

    def _handle_function_call(self, event: ProtocolEvent) -> None:
        session = self.session
        if session is None:
            return
        call_id = event.get("call_id")
        name = event.get("name") or ""
        if not call_id or call_id in session.handled_call_ids:
            self.logger.debug(f"Ignoring duplicate or anonymous call {call_id}")
            return
        session.handled_call_ids.add(call_id)
        self.logger.info(f"Tool call requested: {name} ({call_id})")
        self._spawn(session, self._execute_tool_call(session, call_id, name, event.get("arguments") or "{}"))

    async def _execute_tool_call(self, session: Session, call_id: str, name: str, arguments_str: str) -> None:
        agent = self.registry.get(session.active_agent_name)

        target = handoff_target(name)
        if target is not None and self.registry.can_hand_off(agent.name, target):
            self._hand_off(session, call_id, target)
            return

        output: Any
        try:
            arguments = json.loads(arguments_str) if arguments_str.strip() else {}
        except json.JSONDecodeError as exc:
            self.logger.warning(f"Could not parse arguments for {name}: {exc}")
            output = {"ok": False, "error": f"Could not parse arguments: {exc}"}
        else:
            tool = agent.get_tool(name)
            if tool is None:
                self.logger.warning(f"Tool '{name}' is not allowed for agent '{agent.name}'")
                output = {"ok": False, "error": f"Unknown tool: {name}"}
            else:
                output = await self._run_tool(agent, tool, name, arguments)

        if self.session is not session:
            return
        payload = output if isinstance(output, str) else json.dumps(output, default=str)
        self._send(function_call_output(call_id, payload))
        self._send(response_create())

    async def _run_tool(self, agent: AgentDefinition, tool, name: str, arguments: Dict[str, Any]) -> Any:
        self.transcript.add_breadcrumb(f"function call: {name}", arguments)
        context = ToolContext(
            agent_name=agent.name,
            history=self.transcript.history_messages(),
            add_breadcrumb=self.transcript.add_breadcrumb,
        )
        try:
            output = await tool.handler(arguments, context)
        except RealtimeError as exc:
            self.logger.error(f"Tool {name} failed: {exc}")
            output = {"ok": False, "error": exc.user_message}
        except Exception as exc:
            self.logger.error(f"Tool {name} failed: {exc}", exc_info=True)
            output = {"ok": False, "error": GENERIC_FAILURE_MESSAGE}
        self.transcript.add_breadcrumb(f"function call result: {name}", output)
        return output

    def _hand_off(self, session: Session, call_id: str, target: str) -> None:
        self.logger.info(f"Agent handoff to: {target}")
        self._activate_agent(session, target)
        self.transcript.add_breadcrumb(f"Agent handoff to: {target}")
        self._send(function_call_output(call_id, json.dumps({"assistant": target})))
        self._send(response_create())

    # ------------------------------------------------------------------ #
    # Guardrails
    # ------------------------------------------------------------------ #

    def _schedule_guardrails(self, session: Session, item_id: str, text: str) -> None:
        agent = self.registry.get(session.active_agent_name)
        if agent is None or not agent.guardrails or not text:
            return
        self._spawn(session, self._run_guardrails(agent, item_id, text))

    async def _run_guardrails(self, agent: AgentDefinition, item_id: str, text: str) -> None:
        for guardrail in list(agent.guardrails):
            result = await guardrail.check(text, self.registry.company_name)
            if not result.flagged:
                continue
            result = dataclasses.replace(result, item_id=item_id)
            self.logger.warning(
                f"Guardrail '{result.guardrail_name}' tripped on {item_id}: "
                f"{result.category} - {result.reason}"
            )
            self.transcript.add_breadcrumb(
                f"Output Guardrail Tripped: {result.guardrail_name}",
                {"itemId": item_id, "category": result.category, "rationale": result.reason},
            )
            self.guardrail_tripped.emit(result)
