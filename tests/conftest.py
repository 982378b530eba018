"""Test configuration and shared fixtures."""

import asyncio
import json
from typing import Any, Dict, List

import pytest

from realtime_supervisor.agents import AgentDefinition, AgentRegistry, FunctionTool
from realtime_supervisor.config import TransportConfig
from realtime_supervisor.credentials import StaticCredentialProvider
from realtime_supervisor.errors import TransportError
from realtime_supervisor.session import ConnectionState, RealtimeSessionManager
from realtime_supervisor.transcript import Transcript
from realtime_supervisor.transport import Transport


class FakeTransport(Transport):
    """In-memory transport: records outbound events, lets tests inject inbound ones."""

    kind = "fake"

    def __init__(self, config, audio=None, logger=None, auto_ack=True, fail_open=False, open_error=None, open_gate=None):
        super().__init__(config, audio, logger)
        self.auto_ack = auto_ack
        self.fail_open = fail_open
        self.open_error = open_error
        self.open_gate = open_gate
        self.handshaking = False
        self.live = False
        self.sent: List[Dict[str, Any]] = []
        self.credential = None

    async def _open(self, credential: str) -> None:
        self.credential = credential
        if self.fail_open:
            raise TransportError("handshake refused")
        if self.open_error is not None:
            raise self.open_error
        if self.open_gate is not None:
            self.handshaking = True
            await self.open_gate.wait()
        self.live = True

    def _send_frame(self, frame: str) -> None:
        event = json.loads(frame)
        self.sent.append(event)
        if self.auto_ack and event["type"] == "session.update":
            self.server_event({"type": "session.updated", "session": event["session"]})

    async def _teardown(self) -> None:
        await self._cancel_tasks()
        self.live = False

    def server_event(self, event: Dict[str, Any]) -> None:
        self._deliver(json.dumps(event))

    def remote_close(self, reason: str = "server went away") -> None:
        self._remote_closed(reason)

    def sent_types(self) -> List[str]:
        return [event["type"] for event in self.sent]

    def sent_of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [event for event in self.sent if event["type"] == event_type]


class TransportFactory:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.created: List[FakeTransport] = []

    def __call__(self, config, audio=None, logger=None) -> FakeTransport:
        transport = FakeTransport(config, audio, logger, **self.kwargs)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


async def echo_handler(arguments, context):
    return {"echo": arguments.get("text"), "agent": context.agent_name}


async def wait_for_status(manager: RealtimeSessionManager, state: ConnectionState, timeout: float = 1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while manager.status != state:
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Status stayed {manager.status} instead of {state}")
        await asyncio.sleep(0.01)


async def wait_until(predicate, timeout: float = 1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def registry() -> AgentRegistry:
    echo = FunctionTool(
        name="echo",
        description="Echo the text back.",
        handler=echo_handler,
        parameters={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    )
    front = AgentDefinition(
        name="front",
        instructions="Greet the caller.",
        tools=[echo],
        handoff_targets={"billing"},
    )
    billing = AgentDefinition(
        name="billing",
        instructions="Answer billing questions.",
        handoff_description="Billing specialist.",
    )
    return AgentRegistry([front, billing], company_name="Acme")


@pytest.fixture
def factory() -> TransportFactory:
    return TransportFactory()


@pytest.fixture
def transport_config() -> TransportConfig:
    return TransportConfig.for_kind("socket", modalities=["text"])


@pytest.fixture
def credentials() -> StaticCredentialProvider:
    return StaticCredentialProvider("ek_test")


@pytest.fixture
def manager(registry, factory) -> RealtimeSessionManager:
    return RealtimeSessionManager(registry, transcript=Transcript(), transport_factory=factory)
