"""
Unit tests for CommandChannel.

Coverage targets:
- Handshake gate: nothing is written before Greetings
- Response, asynchronous-acceptance and handshake-timeout outcomes
- One-shot HTTP fallback when the socket fails before the handshake
"""
import asyncio
import json
import time

import httpx
import pytest

from hydrahead.errors import InvalidInput
from hydrahead.models import ChannelState, CommandOutcome, HeadAction
from hydrahead.services.command_channel import CommandChannel

TIMEOUT = 0.5


def _no_http(request):
    raise AssertionError(f"unexpected HTTP fallback to {request.url}")


def _channel(port, transport=None):
    return CommandChannel(
        port,
        party="alice",
        timeout=TIMEOUT,
        http_timeout=2,
        http_transport=transport or httpx.MockTransport(_no_http),
    )


async def _drain(ws, received):
    async for message in ws:
        received.append(json.loads(message))


@pytest.mark.asyncio
async def test_response_after_greetings_completes(fake_node):
    received = []

    async def handler(ws):
        await ws.send(json.dumps({"tag": "Greetings", "me": {"vkey": "aa"}}))
        received.append(json.loads(await ws.recv()))
        await ws.send(json.dumps({"tag": "HeadIsInitializing", "headId": "h1"}))
        await _drain(ws, received)

    async with fake_node(handler) as port:
        channel = _channel(port)
        result = await channel.send("init", other_parties=["bb" * 32])

    assert result.ok
    assert result.outcome is CommandOutcome.COMPLETED
    assert result.state is ChannelState.COMPLETED
    assert result.response == {"tag": "HeadIsInitializing", "headId": "h1"}
    assert received == [{"tag": "Init", "otherParties": [{"vkey": "bb" * 32}]}]
    assert channel.last_session.transitions == [
        ChannelState.CONNECTING,
        ChannelState.AWAITING_GREETING,
        ChannelState.COMMAND_SENT,
        ChannelState.AWAITING_RESPONSE,
        ChannelState.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_no_greetings_times_out_without_sending(fake_node):
    received = []

    async def handler(ws):
        await _drain(ws, received)

    async with fake_node(handler) as port:
        channel = _channel(port)
        result = await channel.send(HeadAction.CLOSE)
        await asyncio.sleep(0.05)

    assert not result.ok
    assert result.outcome is CommandOutcome.FAILED
    assert result.state is ChannelState.TIMED_OUT
    assert result.error_kind == "ChannelTimeout"
    assert channel.last_session.command_sent is False
    assert received == []


@pytest.mark.asyncio
async def test_messages_before_greetings_do_not_trigger_send(fake_node):
    early = []
    received = []

    async def handler(ws):
        await ws.send(json.dumps({"tag": "HeadIsOpen"}))
        await ws.send("not json")
        try:
            early.append(await asyncio.wait_for(ws.recv(), 0.1))
        except asyncio.TimeoutError:
            pass
        await ws.send(json.dumps({"tag": "Greetings"}))
        received.append(json.loads(await ws.recv()))
        await ws.send(json.dumps({"tag": "HeadIsClosed"}))
        await _drain(ws, received)

    async with fake_node(handler) as port:
        result = await _channel(port).send("close")

    assert early == []
    assert received == [{"tag": "Close"}]
    assert result.response == {"tag": "HeadIsClosed"}


@pytest.mark.asyncio
async def test_no_response_after_send_is_accepted_async(fake_node):
    received = []

    async def handler(ws):
        await ws.send(json.dumps({"tag": "Greetings"}))
        await _drain(ws, received)

    async with fake_node(handler) as port:
        result = await _channel(port).send("fanout")

    assert result.ok
    assert result.outcome is CommandOutcome.ACCEPTED_ASYNC
    assert result.state is ChannelState.TIMED_OUT
    assert "asynchronously" in result.message
    assert result.note
    assert received == [{"tag": "Fanout"}]


@pytest.mark.asyncio
async def test_close_after_send_waits_for_timeout(fake_node):
    async def handler(ws):
        await ws.send(json.dumps({"tag": "Greetings"}))
        await ws.recv()
        await ws.close()

    async with fake_node(handler) as port:
        started = time.monotonic()
        result = await _channel(port).send("close")
        elapsed = time.monotonic() - started

    assert result.outcome is CommandOutcome.ACCEPTED_ASYNC
    assert elapsed >= TIMEOUT * 0.9


@pytest.mark.asyncio
async def test_init_without_other_parties_sends_bare_tag(fake_node):
    received = []

    async def handler(ws):
        await ws.send(json.dumps({"tag": "Greetings"}))
        received.append(json.loads(await ws.recv()))
        await ws.send(json.dumps({"tag": "CommandFailed"}))
        await _drain(ws, received)

    async with fake_node(handler) as port:
        result = await _channel(port).send("init", other_parties=[])

    assert received == [{"tag": "Init"}]
    # any non-Greetings tag is the response, failures included
    assert result.response == {"tag": "CommandFailed"}


@pytest.mark.asyncio
async def test_socket_error_falls_back_to_http_once(free_port):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"tag": "HeadIsInitializing"})

    channel = _channel(free_port, httpx.MockTransport(handler))
    result = await channel.send("init", body={"contestationPeriod": 60})

    assert len(requests) == 1
    assert requests[0].method == "POST"
    assert requests[0].url.path == "/init"
    assert requests[0].url.port == free_port
    assert json.loads(requests[0].content) == {"contestationPeriod": 60}
    assert result.ok
    assert result.outcome is CommandOutcome.FALLBACK
    assert result.response == {"tag": "HeadIsInitializing"}
    assert channel.last_session.state is ChannelState.FAILED
    assert channel.last_session.command_sent is False


@pytest.mark.asyncio
async def test_http_fallback_error_status(free_port):
    transport = httpx.MockTransport(lambda request: httpx.Response(400, text="Head not initialized"))
    result = await _channel(free_port, transport).send("fanout")

    assert not result.ok
    assert result.http_status == 400
    assert result.error_kind == "UpstreamError"
    assert result.message == "Head not initialized"


@pytest.mark.asyncio
async def test_http_fallback_unreachable(free_port):
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)

    result = await _channel(free_port, httpx.MockTransport(handler)).send("close")

    assert not result.ok
    assert result.error_kind == "UpstreamUnavailable"
    assert str(free_port) in result.message


@pytest.mark.asyncio
async def test_unsupported_action():
    with pytest.raises(InvalidInput):
        await _channel(1).send("abort")


def test_build_message_only_adds_parties_for_init():
    assert CommandChannel.build_message(HeadAction.CLOSE, ["aa"]) == {"tag": "Close"}
    assert CommandChannel.build_message(HeadAction.INIT, ["aa", "bb"]) == {
        "tag": "Init",
        "otherParties": [{"vkey": "aa"}, {"vkey": "bb"}],
    }
