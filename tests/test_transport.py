"""Tests for SessionTransport - outbound POST and inbound session filtering."""

import asyncio
from datetime import datetime
from uuid import UUID

import httpx
import pytest

from apps.conversation.errors import TransportFailure
from apps.conversation.transport import InboundSpeechMessage, SessionTransport
from config import TransportConfig
from tests.conftest import FakeRealtime, speech_output


@pytest.fixture
def transport_config():
    return TransportConfig()


@pytest.fixture
def received():
    return []


@pytest.fixture
async def transport(transport_config, realtime, backend, received):
    async def _on_response(text: str) -> None:
        received.append(text)

    binding = SessionTransport(transport_config, realtime, http_transport=backend.transport)
    binding.set_response_handler(_on_response)
    yield binding
    await binding.aclose()


# =============================================================================
# Outbound
# =============================================================================


@pytest.mark.asyncio
async def test_send_posts_speech_message(transport, backend):
    await transport.open("session-1")

    message = await transport.send("quero retirar cem seringas")

    assert backend.paths == ["/speech/process"]
    body = backend.requests[0]
    assert body["session_id"] == "session-1"
    assert body["data"] == {"text": "quero retirar cem seringas", "userId": "user123"}
    assert UUID(body["correlation_id"]) == UUID(message.correlation_id)
    assert datetime.fromisoformat(body["timestamp"]).utcoffset().total_seconds() == 0


@pytest.mark.asyncio
async def test_each_send_gets_new_correlation_id(transport, backend):
    await transport.open("session-1")
    await transport.send("quero")
    await transport.send("retirar")

    ids = {r["correlation_id"] for r in backend.requests}
    assert len(ids) == 2


@pytest.mark.asyncio
async def test_non_success_status_raises(transport, backend):
    backend.status_code = 503
    await transport.open("session-1")

    with pytest.raises(TransportFailure) as exc_info:
        await transport.send("quero")

    assert exc_info.value.status_code == 503
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_network_error_raises(transport_config, realtime):
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    binding = SessionTransport(transport_config, realtime, http_transport=httpx.MockTransport(_refuse))
    await binding.open("session-1")

    with pytest.raises(TransportFailure) as exc_info:
        await binding.send("quero")

    assert exc_info.value.status_code is None
    await binding.aclose()


@pytest.mark.asyncio
async def test_send_without_session_raises(transport, backend):
    with pytest.raises(TransportFailure):
        await transport.send("quero")
    assert backend.requests == []


# =============================================================================
# Realtime binding
# =============================================================================


@pytest.mark.asyncio
async def test_open_subscribes_with_single_handler(transport, realtime):
    await transport.open("session-1")
    await transport.open("session-1")

    assert len(realtime.clients) == 1
    channel = realtime.latest.channels["private-agent-123"]
    assert channel.bound_events == ["server-speech-output"]
    assert len(channel.handlers("server-speech-output")) == 1
    assert transport.subscribed is True


@pytest.mark.asyncio
async def test_open_failure_keeps_session_bound(transport, realtime, backend):
    realtime.fail_connect = True

    with pytest.raises(TransportFailure):
        await transport.open("session-1")

    assert transport.session_id == "session-1"
    assert transport.subscribed is False
    assert realtime.latest.disconnected is True
    await transport.send("quero")
    assert backend.requests[0]["session_id"] == "session-1"


@pytest.mark.asyncio
async def test_close_during_open_abandons_connection(transport_config, backend):
    gate = asyncio.Event()
    realtime = FakeRealtime()

    def _factory(session_id):
        client = realtime(session_id)
        original = client.connect

        async def _slow_connect():
            await gate.wait()
            await original()

        client.connect = _slow_connect
        return client

    binding = SessionTransport(transport_config, _factory, http_transport=backend.transport)
    opening = asyncio.create_task(binding.open("session-1"))
    await asyncio.sleep(0)

    await binding.close()
    gate.set()
    await opening

    assert binding.subscribed is False
    assert binding.session_id is None
    assert realtime.latest.disconnected is True
    await binding.aclose()


@pytest.mark.asyncio
async def test_lost_connection_is_reported_once(transport, realtime, backend):
    lost = []
    transport.set_connection_lost_handler(lambda: lost.append(transport.session_id))
    await transport.open("session-1")
    client = realtime.latest

    client.drop()
    client.drop()

    assert lost == ["session-1"]
    assert transport.subscribed is False
    await transport.send("quero")
    assert backend.requests[0]["session_id"] == "session-1"

    await transport.close()
    assert client.disconnected is True


@pytest.mark.asyncio
async def test_stale_connection_loss_is_ignored(transport, realtime):
    lost = []
    transport.set_connection_lost_handler(lambda: lost.append(True))
    await transport.open("session-1")
    client = realtime.latest

    await transport.close()
    client.drop()

    assert lost == []


@pytest.mark.asyncio
async def test_close_is_safe_when_never_opened(transport):
    await transport.close()
    await transport.close()
    assert transport.session_id is None


@pytest.mark.asyncio
async def test_close_unbinds_and_disconnects(transport, realtime, received):
    await transport.open("session-1")
    client = realtime.latest

    await transport.close()

    assert client.disconnected is True
    assert client.channels == {}
    await client.deliver("private-agent-123", "server-speech-output", speech_output("session-1"))
    assert received == []


# =============================================================================
# Inbound
# =============================================================================


@pytest.mark.asyncio
async def test_matching_response_is_forwarded(transport, realtime, received):
    await transport.open("session-1")

    await realtime.deliver(speech_output("session-1", "Pedido confirmado"))

    assert received == ["Pedido confirmado"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        speech_output("other-session"),
        speech_output(None),
        speech_output("session-1", ""),
        {"data": {"response": "sem sessão"}},
        {"session_id": "session-1", "data": "not an object"},
    ],
)
async def test_unusable_messages_are_dropped(transport, realtime, received, payload):
    await transport.open("session-1")

    await realtime.deliver(payload)

    assert received == []


def test_inbound_message_keeps_analysis_fields():
    message = InboundSpeechMessage.model_validate(speech_output(
        "session-1",
        "Confirma 100 seringas?",
        items=[{"productName": "Seringa 5ml", "quantity": 100}],
        stella_analysis="order_request",
        reason="quantity given",
    ))

    assert message.data.intention == "order"
    assert message.data.items[0].productName == "Seringa 5ml"
    assert message.data.items[0].quantity == 100
    assert message.data.stella_analysis == "order_request"
    assert message.data.reason == "quantity given"
