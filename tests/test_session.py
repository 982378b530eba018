"""Tests for the realtime session connection manager."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from conftest import TransportFactory, wait_for_status, wait_until
from realtime_supervisor.agents import BlocklistGuardrail, GuardrailVerdict
from realtime_supervisor.credentials import CredentialProvider, StaticCredentialProvider
from realtime_supervisor.errors import CredentialError, TransportError
from realtime_supervisor.session import ConnectionState, RealtimeSessionManager
from realtime_supervisor.transcript import ItemStatus


class GatedCredentialProvider(CredentialProvider):
    def __init__(self):
        self.gate = asyncio.Event()
        self.calls = 0

    async def get_credential(self) -> str:
        self.calls += 1
        await self.gate.wait()
        return "ek_gated"


def record(signal):
    seen = []
    signal.connect(lambda value: seen.append(value))
    return seen


# ------------------------------------------------------------------ #
# Lifecycle
# ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_connect_pushes_configuration_first(manager, factory, credentials, transport_config):
    statuses = record(manager.status_changed)
    agents = record(manager.agent_changed)

    assert await manager.connect(credentials, transport_config) is True

    transport = factory.last
    assert manager.status == ConnectionState.CONNECTED
    assert manager.active_agent_name == "front"
    assert transport.credential == "ek_test"
    assert transport.sent_types()[0] == "session.update"
    session = transport.sent[0]["session"]
    assert session["instructions"] == "Greet the caller."
    assert [tool["name"] for tool in session["tools"]] == ["echo", "transfer_to_billing"]
    assert session["turn_detection"]["type"] == "server_vad"
    assert statuses == ["CONNECTING", "CONNECTED"]
    assert agents == ["front"]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_second_connect_while_connecting_is_noop(manager, factory, transport_config):
    provider = GatedCredentialProvider()
    first = asyncio.create_task(manager.connect(provider, transport_config))
    await asyncio.sleep(0)
    assert manager.status == ConnectionState.CONNECTING

    assert await manager.connect(provider, transport_config) is False

    provider.gate.set()
    assert await first is True
    assert len(factory.created) == 1
    assert provider.calls == 1
    await manager.disconnect()


@pytest.mark.asyncio
async def test_connect_when_connected_is_noop(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    assert await manager.connect(credentials, transport_config) is False
    assert len(factory.created) == 1
    assert manager.status == ConnectionState.CONNECTED
    await manager.disconnect()


@pytest.mark.asyncio
async def test_empty_credential_is_fatal(manager, factory, transport_config):
    errors = record(manager.error_occurred)
    statuses = record(manager.status_changed)

    assert await manager.connect(StaticCredentialProvider(""), transport_config) is False

    assert manager.status == ConnectionState.DISCONNECTED
    assert manager.session is None
    assert len(errors) == 1 and isinstance(errors[0], CredentialError)
    assert errors[0].user_message != str(errors[0])
    assert statuses == ["CONNECTING", "DISCONNECTED"]
    assert factory.created == []


@pytest.mark.asyncio
async def test_failing_credential_provider_is_fatal(manager, transport_config):
    class Broken(CredentialProvider):
        async def get_credential(self):
            raise CredentialError("endpoint returned 500")

    errors = record(manager.error_occurred)
    assert await manager.connect(Broken(), transport_config) is False
    assert manager.status == ConnectionState.DISCONNECTED
    assert isinstance(errors[0], CredentialError)


@pytest.mark.asyncio
async def test_handshake_failure_disconnects(registry, credentials, transport_config):
    factory = TransportFactory(fail_open=True)
    manager = RealtimeSessionManager(registry, transport_factory=factory)
    errors = record(manager.error_occurred)

    assert await manager.connect(credentials, transport_config) is False

    assert manager.status == ConnectionState.DISCONNECTED
    assert isinstance(errors[0], TransportError)
    assert factory.last.is_open is False


@pytest.mark.asyncio
async def test_missing_acknowledgement_times_out(registry, credentials, transport_config, monkeypatch):
    monkeypatch.setattr("realtime_supervisor.session.CONNECT_TIMEOUT", 0.05)
    factory = TransportFactory(auto_ack=False)
    manager = RealtimeSessionManager(registry, transport_factory=factory)
    errors = record(manager.error_occurred)

    assert await manager.connect(credentials, transport_config) is False

    assert manager.status == ConnectionState.DISCONNECTED
    assert isinstance(errors[0], TransportError)
    assert not factory.last.is_open


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    statuses = record(manager.status_changed)
    closes = []
    factory.last.on_close = closes.append

    await manager.disconnect()
    await manager.disconnect()

    assert manager.status == ConnectionState.DISCONNECTED
    assert manager.session is None
    assert statuses == ["DISCONNECTED"]
    assert closes == ["disconnect requested"]


@pytest.mark.asyncio
async def test_disconnect_before_connect_is_silent(manager):
    statuses = record(manager.status_changed)
    await manager.disconnect()
    assert statuses == []
    assert manager.status == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_remote_close_forces_disconnected(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    statuses = record(manager.status_changed)

    factory.last.remote_close()
    await wait_for_status(manager, ConnectionState.DISCONNECTED)

    assert manager.session is None
    assert statuses == ["DISCONNECTED"]
    assert manager.send_user_text("anyone there?") is False


@pytest.mark.asyncio
async def test_unexpected_provider_error_is_fatal(manager, factory, credentials, transport_config):
    class Exploding(CredentialProvider):
        async def get_credential(self):
            raise RuntimeError("provider blew up")

    errors = record(manager.error_occurred)

    assert await manager.connect(Exploding(), transport_config) is False

    assert manager.status == ConnectionState.DISCONNECTED
    assert manager.session is None
    assert len(errors) == 1 and isinstance(errors[0], CredentialError)
    assert isinstance(errors[0].__cause__, RuntimeError)
    assert factory.created == []

    assert await manager.connect(credentials, transport_config) is True
    await manager.disconnect()


@pytest.mark.asyncio
async def test_unexpected_handshake_error_releases_transport(registry, credentials, transport_config):
    audio = MagicMock()
    factory = TransportFactory(open_error=ValueError("malformed SDP answer"))
    manager = RealtimeSessionManager(registry, transport_factory=factory, audio=audio)
    errors = record(manager.error_occurred)

    assert await manager.connect(credentials, transport_config) is False

    assert manager.status == ConnectionState.DISCONNECTED
    assert manager.session is None
    assert len(errors) == 1 and isinstance(errors[0], TransportError)
    assert not factory.last.is_open
    assert not factory.last.live
    audio.close.assert_called_once()


@pytest.mark.asyncio
async def test_disconnect_during_credential_fetch(registry, transport_config):
    audio = MagicMock()
    factory = TransportFactory()
    manager = RealtimeSessionManager(registry, transport_factory=factory, audio=audio)
    errors = record(manager.error_occurred)
    provider = GatedCredentialProvider()

    attempt = asyncio.create_task(manager.connect(provider, transport_config))
    await wait_until(lambda: provider.calls == 1)
    await manager.disconnect()
    provider.gate.set()

    assert await attempt is False
    assert manager.status == ConnectionState.DISCONNECTED
    assert manager.session is None
    assert factory.created == []
    audio.close.assert_called_once()
    assert errors == []


@pytest.mark.asyncio
async def test_disconnect_during_handshake(registry, credentials, transport_config):
    audio = MagicMock()
    gate = asyncio.Event()
    factory = TransportFactory(open_gate=gate)
    manager = RealtimeSessionManager(registry, transport_factory=factory, audio=audio)
    errors = record(manager.error_occurred)

    attempt = asyncio.create_task(manager.connect(credentials, transport_config))
    await wait_until(lambda: factory.created and factory.last.handshaking)
    await manager.disconnect()
    gate.set()

    assert await attempt is False
    transport = factory.last
    assert manager.status == ConnectionState.DISCONNECTED
    assert manager.session is None
    assert not transport.is_open
    assert not transport.live
    assert transport.sent == []
    audio.close.assert_called()
    assert errors == []


@pytest.mark.asyncio
async def test_disconnect_while_awaiting_acknowledgement(registry, credentials, transport_config):
    audio = MagicMock()
    factory = TransportFactory(auto_ack=False)
    manager = RealtimeSessionManager(registry, transport_factory=factory, audio=audio)
    errors = record(manager.error_occurred)

    attempt = asyncio.create_task(manager.connect(credentials, transport_config))
    await wait_until(lambda: factory.created and factory.last.sent_types() == ["session.update"])
    assert manager.status == ConnectionState.CONNECTING
    await manager.disconnect()

    assert await attempt is False
    assert manager.status == ConnectionState.DISCONNECTED
    assert not factory.last.is_open
    assert not factory.last.live
    audio.open.assert_called_once()
    audio.close.assert_called()
    assert errors == []


@pytest.mark.asyncio
async def test_reconnect_uses_a_fresh_transport(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    await manager.disconnect()
    assert await manager.connect(credentials, transport_config) is True
    assert len(factory.created) == 2
    assert factory.created[0] is not factory.created[1]
    await manager.disconnect()


# ------------------------------------------------------------------ #
# Commands
# ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_send_user_text(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)

    assert manager.send_user_text("hello") is True

    transport = factory.last
    assert transport.sent_types()[1:] == ["conversation.item.create", "response.create"]
    item = transport.sent[1]["item"]
    assert item["role"] == "user"
    assert item["content"] == [{"type": "input_text", "text": "hello"}]
    stored = manager.transcript.get(item["id"])
    assert stored.text == "hello" and stored.status == ItemStatus.DONE
    await manager.disconnect()


@pytest.mark.asyncio
async def test_send_user_text_uses_fresh_ids(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    manager.send_user_text("one")
    manager.send_user_text("two")
    ids = [event["item"]["id"] for event in factory.last.sent_of_type("conversation.item.create")]
    assert len(set(ids)) == 2
    await manager.disconnect()


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   "])
async def test_send_empty_text_is_noop(manager, factory, credentials, transport_config, text):
    await manager.connect(credentials, transport_config)
    assert manager.send_user_text(text) is False
    assert factory.last.sent_types() == ["session.update"]
    assert len(manager.transcript) == 0
    await manager.disconnect()


@pytest.mark.asyncio
async def test_send_while_disconnected_is_rejected(manager):
    assert manager.send_user_text("hello") is False
    assert len(manager.transcript) == 0


@pytest.mark.asyncio
async def test_send_interrupts_in_flight_response(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    factory.last.server_event({"type": "response.created", "response": {"id": "resp_1"}})
    await manager.drain()

    manager.send_user_text("actually, wait")

    assert factory.last.sent_types()[1:] == [
        "response.cancel",
        "conversation.item.create",
        "response.create",
    ]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_interrupt_without_generation(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    assert manager.interrupt() is True
    assert factory.last.sent_types()[-1] == "response.cancel"
    await manager.disconnect()


@pytest.mark.asyncio
async def test_interrupt_while_disconnected(manager):
    assert manager.interrupt() is False


@pytest.mark.asyncio
async def test_mute_does_not_touch_connection(manager, factory, credentials, transport_config):
    manager.mute(True)
    await manager.connect(credentials, transport_config)
    assert factory.last.muted is True

    manager.mute(False)
    assert factory.last.muted is False
    assert manager.status == ConnectionState.CONNECTED
    assert factory.last.sent_types() == ["session.update"]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_push_to_talk(manager, factory, credentials):
    from realtime_supervisor.config import TransportConfig

    config = TransportConfig.for_kind("socket", push_to_talk=True)
    await manager.connect(credentials, config)
    assert factory.last.sent[0]["session"]["turn_detection"] is None

    assert manager.start_push_to_talk() is True
    assert manager.stop_push_to_talk() is True
    assert factory.last.sent_types()[1:] == [
        "response.cancel",
        "input_audio_buffer.clear",
        "input_audio_buffer.commit",
        "response.create",
    ]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_opening_message_sent_once(registry, factory, credentials, transport_config, monkeypatch):
    monkeypatch.setattr("realtime_supervisor.session.OPENING_MESSAGE_DELAY", 0)
    manager = RealtimeSessionManager(
        registry, transport_factory=factory, opening_message="Hi, I need help"
    )
    await manager.connect(credentials, transport_config)
    await manager.drain()

    created = factory.last.sent_of_type("conversation.item.create")
    assert len(created) == 1
    assert created[0]["item"]["content"][0]["text"] == "Hi, I need help"
    await manager.disconnect()


# ------------------------------------------------------------------ #
# Inbound events
# ------------------------------------------------------------------ #


@pytest.mark.asyncio
async def test_assistant_transcript_reconstruction(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    transport = factory.last
    transport.server_event(
        {"type": "conversation.item.created", "item": {"id": "a1", "type": "message", "role": "assistant", "content": []}}
    )
    transport.server_event({"type": "response.audio_transcript.delta", "item_id": "a1", "delta": "Hel"})
    transport.server_event({"type": "response.audio_transcript.delta", "item_id": "a1", "delta": "lo"})
    transport.server_event({"type": "response.audio_transcript.done", "item_id": "a1", "transcript": "Hello!"})
    await manager.drain()

    item = manager.transcript.get("a1")
    assert item.role == "assistant"
    assert item.text == "Hello!"
    assert item.status == ItemStatus.DONE
    await manager.disconnect()


@pytest.mark.asyncio
async def test_text_modality_events(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    factory.last.server_event({"type": "response.text.delta", "item_id": "t1", "delta": "Hi"})
    factory.last.server_event({"type": "response.text.done", "item_id": "t1", "text": "Hi."})
    await manager.drain()
    assert manager.transcript.get("t1").text == "Hi."
    await manager.disconnect()


@pytest.mark.asyncio
async def test_user_audio_transcription(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    transport = factory.last
    transport.server_event(
        {
            "type": "conversation.item.created",
            "item": {"id": "u1", "type": "message", "role": "user", "content": [{"type": "input_audio"}]},
        }
    )
    await manager.drain()
    assert manager.transcript.get("u1").text == "[Transcribing...]"

    transport.server_event(
        {"type": "conversation.item.input_audio_transcription.completed", "item_id": "u1", "transcript": "Where is my order?"}
    )
    await manager.drain()
    item = manager.transcript.get("u1")
    assert item.text == "Where is my order?" and item.status == ItemStatus.DONE
    await manager.disconnect()


@pytest.mark.asyncio
async def test_malformed_and_unknown_frames_are_dropped(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    transport = factory.last
    transport._deliver("{not json")
    transport._deliver(json.dumps(["no", "type"]))
    transport.server_event({"type": "response.something_new", "payload": 1})
    transport.server_event({"type": "response.text.delta", "item_id": "t1", "delta": "still here"})
    await manager.drain()

    assert manager.status == ConnectionState.CONNECTED
    assert manager.transcript.get("t1").text == "still here"
    await manager.disconnect()


@pytest.mark.asyncio
async def test_server_error_is_not_fatal(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    factory.last.server_event({"type": "error", "error": {"message": "bad request"}})
    await manager.drain()
    assert manager.status == ConnectionState.CONNECTED
    assert manager.transcript.breadcrumbs[-1].title == "Realtime API error"
    await manager.disconnect()


# ------------------------------------------------------------------ #
# Tools, handoffs and guardrails
# ------------------------------------------------------------------ #


def function_call(call_id, name, arguments="{}"):
    return {
        "type": "response.function_call_arguments.done",
        "call_id": call_id,
        "name": name,
        "arguments": arguments,
    }


@pytest.mark.asyncio
async def test_tool_call_round_trip(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    transport = factory.last
    transport.server_event(function_call("call_1", "echo", json.dumps({"text": "hi"})))
    await manager.drain()

    outputs = transport.sent_of_type("conversation.item.create")
    assert len(outputs) == 1
    item = outputs[0]["item"]
    assert item["type"] == "function_call_output"
    assert item["call_id"] == "call_1"
    assert json.loads(item["output"]) == {"echo": "hi", "agent": "front"}
    assert transport.sent_types()[-1] == "response.create"
    titles = [crumb.title for crumb in manager.transcript.breadcrumbs]
    assert titles == ["function call: echo", "function call result: echo"]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_duplicate_call_id_is_ignored(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    event = function_call("call_1", "echo", json.dumps({"text": "hi"}))
    factory.last.server_event(event)
    factory.last.server_event(event)
    await manager.drain()
    assert len(factory.last.sent_of_type("conversation.item.create")) == 1
    await manager.disconnect()


@pytest.mark.asyncio
async def test_tool_not_allowed_for_agent(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    factory.last.server_event(function_call("call_2", "delete_everything"))
    await manager.drain()

    output = json.loads(factory.last.sent_of_type("conversation.item.create")[0]["item"]["output"])
    assert output["ok"] is False
    assert "delete_everything" in output["error"]
    await manager.disconnect()


@pytest.mark.asyncio
async def test_bad_tool_arguments(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    factory.last.server_event(function_call("call_3", "echo", "{oops"))
    await manager.drain()

    output = json.loads(factory.last.sent_of_type("conversation.item.create")[0]["item"]["output"])
    assert output["ok"] is False
    assert output["error"].startswith("Could not parse arguments")
    assert manager.transcript.breadcrumbs == []
    await manager.disconnect()


@pytest.mark.asyncio
async def test_switch_agent(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    agents = record(manager.agent_changed)

    assert manager.switch_agent("billing") is True

    assert manager.active_agent_name == "billing"
    assert agents == ["billing"]
    update = factory.last.sent_of_type("session.update")[-1]
    assert update["session"]["instructions"] == "Answer billing questions."
    assert manager.transcript.breadcrumbs[-1].title == "Switched to agent: billing"
    await manager.disconnect()


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["nobody", ""])
async def test_switch_to_unreachable_agent_is_rejected(manager, factory, credentials, transport_config, target):
    await manager.connect(credentials, transport_config)
    assert manager.switch_agent(target) is False
    assert manager.active_agent_name == "front"
    assert len(factory.last.sent_of_type("session.update")) == 1
    await manager.disconnect()


@pytest.mark.asyncio
async def test_switch_agent_follows_handoff_graph(manager, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    assert manager.switch_agent("billing") is True
    # billing declares no handoff targets
    assert manager.switch_agent("front") is False
    assert manager.active_agent_name == "billing"
    await manager.disconnect()


@pytest.mark.asyncio
async def test_switch_agent_requires_connection(manager):
    assert manager.switch_agent("billing") is False


@pytest.mark.asyncio
async def test_handoff_tool_call(manager, factory, credentials, transport_config):
    await manager.connect(credentials, transport_config)
    factory.last.server_event(function_call("call_h", "transfer_to_billing"))
    await manager.drain()

    assert manager.active_agent_name == "billing"
    transport = factory.last
    assert transport.sent_types()[1:] == [
        "session.update",
        "conversation.item.create",
        "response.create",
    ]
    assert json.loads(transport.sent[2]["item"]["output"]) == {"assistant": "billing"}
    assert manager.transcript.breadcrumbs[-1].title == "Agent handoff to: billing"
    await manager.disconnect()


@pytest.mark.asyncio
async def test_guardrail_flag_is_observable_and_not_fatal(registry, factory, credentials, transport_config):
    registry.add_guardrail(BlocklistGuardrail(["darn"]))
    manager = RealtimeSessionManager(registry, transport_factory=factory)
    tripped = record(manager.guardrail_tripped)
    await manager.connect(credentials, transport_config)

    factory.last.server_event({"type": "response.audio_transcript.done", "item_id": "a9", "transcript": "Darn it."})
    factory.last.server_event({"type": "response.audio_transcript.done", "item_id": "a10", "transcript": "All good."})
    await manager.drain()

    assert len(tripped) == 1
    assert tripped[0].verdict == GuardrailVerdict.FLAG
    assert tripped[0].item_id == "a9"
    assert manager.status == ConnectionState.CONNECTED
    assert manager.transcript.breadcrumbs[-1].title == "Output Guardrail Tripped: moderation_guardrail"
    await manager.disconnect()


@pytest.mark.asyncio
async def test_guardrails_are_fixed_after_connect(registry, factory, credentials, transport_config):
    manager = RealtimeSessionManager(registry, transport_factory=factory)
    await manager.connect(credentials, transport_config)
    assert registry.add_guardrail(BlocklistGuardrail(["x"])) == 0
    assert all(agent.guardrails == [] for agent in registry.agents)
    await manager.disconnect()


@pytest.mark.asyncio
async def test_send_event_requires_connection(manager, factory, credentials, transport_config):
    assert manager.send_event({"type": "input_audio_buffer.clear"}) is False
    await manager.connect(credentials, transport_config)
    assert manager.send_event({"type": "input_audio_buffer.clear"}) is True
    assert factory.last.sent_types()[-1] == "input_audio_buffer.clear"
    await manager.disconnect()
