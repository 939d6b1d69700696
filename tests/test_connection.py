from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from unittest.mock import MagicMock, patch

import httpx
import msgspec
import pytest
from mcp.types import JSONRPCMessage, JSONRPCNotification

from mcp_sigv4_proxy.connection import (
    EventStreamGuard,
    ReplyTransport,
    StreamableHTTPConnection,
    encode_message,
    internal_error,
    is_reply,
    parse_message,
)
from mcp_sigv4_proxy.transport import TargetConnectionError

ENDPOINT = "https://example.com/mcp"

INITIALIZE = b'{"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}'
INITIALIZE_RESULT = (
    b'{"jsonrpc":"2.0","id":1,"result":{"protocolVersion":"2025-03-26",'
    b'"capabilities":{},"serverInfo":{"name":"test","version":"1.0"}}}'
)
INITIALIZED = b'{"jsonrpc":"2.0","method":"notifications/initialized"}'
PROGRESS = (
    b'{"jsonrpc":"2.0","method":"notifications/progress",'
    b'"params":{"progressToken":"t","progress":1}}'
)

SSE_HEADERS = {"Content-Type": "text/event-stream", "Mcp-Session-Id": "session-1"}


class BrokenEventStream(httpx.AsyncByteStream):
    def __init__(self, chunks: List[bytes]):
        self.chunks = chunks

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("connection reset by peer")


def target(response: Optional[httpx.Response] = None, error: Exception = None):
    calls: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if error is not None:
            raise error
        return response or httpx.Response(202)

    transport = httpx.MockTransport(handler)
    transport.calls = calls  # type: ignore
    return transport


async def post(transport: httpx.AsyncBaseTransport, body: bytes) -> httpx.Response:
    reply = ReplyTransport(transport, enable_sse=True)
    response = await reply.handle_async_request(
        httpx.Request(
            "POST",
            ENDPOINT,
            headers={"Content-Type": "application/json"},
            content=body,
        )
    )
    await response.aread()
    return response


def decode(body: bytes) -> Dict[str, Any]:
    return msgspec.json.decode(body)


def event_messages(body: bytes) -> List[Dict[str, Any]]:
    return [
        decode(line[len("data: ") :].encode())
        for line in body.decode().splitlines()
        if line.startswith("data: ")
    ]


def test_parse_message():
    assert parse_message(INITIALIZE) is not None
    assert parse_message(b"<html></html>") is None
    assert parse_message(b'{"jsonrpc":"2.0"}') is None
    assert parse_message(b"\xff\xfe") is None


def test_is_reply():
    reply = parse_message(INITIALIZE_RESULT)

    assert is_reply(reply)
    assert is_reply(reply, 1)
    assert not is_reply(reply, 2)
    assert not is_reply(parse_message(INITIALIZE))
    assert not is_reply(None)


def test_internal_error():
    assert decode(internal_error(7, "boom")) == {
        "jsonrpc": "2.0",
        "id": 7,
        "error": {"code": -32603, "message": "boom"},
    }


def test_encode_message_omits_unset_fields():
    message = JSONRPCMessage(
        JSONRPCNotification(jsonrpc="2.0", method="notifications/initialized")
    )

    assert decode(encode_message(message)) == {
        "jsonrpc": "2.0",
        "method": "notifications/initialized",
    }


@pytest.mark.asyncio
async def test_json_reply_is_relayed():
    inner = target(
        httpx.Response(
            200,
            headers={"Content-Type": "application/json", "Mcp-Session-Id": "session-1"},
            content=INITIALIZE_RESULT,
        )
    )

    response = await post(inner, INITIALIZE)

    assert response.status_code == 200
    assert response.content == INITIALIZE_RESULT
    assert response.headers["Mcp-Session-Id"] == "session-1"


@pytest.mark.asyncio
async def test_transport_error_answers_request():
    inner = target(
        error=TargetConnectionError("example.com", OSError("Connection refused"))
    )

    response = await post(inner, INITIALIZE)

    assert response.status_code == 200
    assert response.headers["Content-Type"] == "application/json"
    reply = decode(response.content)
    assert reply["id"] == 1
    assert reply["error"]["code"] == -32603
    assert reply["error"]["message"].startswith(
        "failed to connect to target MCP server at example.com"
    )


@pytest.mark.asyncio
async def test_transport_error_for_notification():
    inner = target(error=httpx.ConnectError("Connection refused"))

    response = await post(inner, INITIALIZED)

    assert response.status_code == 202
    assert response.content == b""


@pytest.mark.asyncio
async def test_error_status_with_jsonrpc_body_is_relayed():
    denied = b'{"jsonrpc":"2.0","id":1,"error":{"code":-32001,"message":"denied"}}'
    inner = target(
        httpx.Response(403, headers={"Content-Type": "application/json"}, content=denied)
    )

    response = await post(inner, INITIALIZE)

    assert response.status_code == 200
    assert decode(response.content)["error"] == {"code": -32001, "message": "denied"}


@pytest.mark.asyncio
async def test_error_status_answers_request():
    inner = target(
        httpx.Response(
            403,
            headers={"Content-Type": "text/plain", "Mcp-Session-Id": "session-1"},
            content=b"Forbidden",
        )
    )

    response = await post(inner, INITIALIZE)

    assert response.status_code == 200
    assert response.headers["Mcp-Session-Id"] == "session-1"
    assert response.headers["Content-Type"] == "application/json"
    assert decode(response.content)["error"] == {
        "code": -32603,
        "message": "target MCP server returned HTTP 403 Forbidden",
    }


@pytest.mark.asyncio
async def test_error_status_for_notification():
    inner = target(httpx.Response(500, content=b"Internal Server Error"))

    response = await post(inner, INITIALIZED)

    assert response.status_code == 202


@pytest.mark.asyncio
async def test_unexpected_content_type_answers_request():
    inner = target(
        httpx.Response(
            200,
            headers={"Content-Type": "text/html"},
            content=b"<html>\n<body>Sign in</body>\n</html>\n",
        )
    )

    response = await post(inner, INITIALIZE)

    reply = decode(response.content)
    assert reply["id"] == 1
    assert reply["error"]["message"] == (
        "target MCP server sent unexpected content type 'text/html'"
    )


@pytest.mark.asyncio
async def test_malformed_json_answers_request():
    inner = target(
        httpx.Response(
            200, headers={"Content-Type": "application/json"}, content=b"{\n  not json\n"
        )
    )

    response = await post(inner, INITIALIZE)

    assert decode(response.content)["error"] == {
        "code": -32603,
        "message": "target MCP server sent a malformed JSON-RPC message",
    }


@pytest.mark.asyncio
async def test_empty_body_is_accepted():
    inner = target(httpx.Response(200, headers={"Content-Type": "application/json"}))

    response = await post(inner, INITIALIZE)

    assert response.status_code == 202


@pytest.mark.asyncio
async def test_event_stream_is_relayed():
    inner = target(
        httpx.Response(
            200,
            headers=SSE_HEADERS,
            content=(
                b"event: message\ndata: " + PROGRESS + b"\n\n"
                b": keep-alive\n\n"
                b"event: message\nid: 7\ndata: " + INITIALIZE_RESULT + b"\n\n"
            ),
        )
    )

    response = await post(inner, INITIALIZE)

    assert response.status_code == 200
    assert response.headers["Content-Type"] == "text/event-stream"
    assert response.headers["Mcp-Session-Id"] == "session-1"
    assert b"id: 7\n" in response.content
    assert event_messages(response.content) == [
        decode(PROGRESS),
        decode(INITIALIZE_RESULT),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data",
    [b"not json at all", b"\xff\xfe\xfd", b'{"jsonrpc":"2.0","id":1}'],
)
async def test_event_stream_garbage_answers_request(data: bytes):
    inner = target(
        httpx.Response(
            200, headers=SSE_HEADERS, content=b"event: message\ndata: " + data + b"\n\n"
        )
    )

    response = await post(inner, INITIALIZE)

    messages = event_messages(response.content)
    assert messages == [
        {
            "jsonrpc": "2.0",
            "id": 1,
            "error": {
                "code": -32603,
                "message": "target MCP server sent a malformed JSON-RPC message",
            },
        }
    ]


@pytest.mark.asyncio
async def test_event_stream_broken_answers_request():
    inner = target(
        httpx.Response(
            200,
            headers=SSE_HEADERS,
            stream=BrokenEventStream([b"event: message\ndata: " + PROGRESS + b"\n\n"]),
        )
    )

    response = await post(inner, INITIALIZE)

    progress, failure = event_messages(response.content)
    assert progress == decode(PROGRESS)
    assert failure["id"] == 1
    assert failure["error"]["code"] == -32603
    assert failure["error"]["message"].startswith(
        "event stream from target MCP server failed"
    )


@pytest.mark.asyncio
async def test_event_stream_closed_without_reply():
    inner = target(
        httpx.Response(
            200,
            headers=SSE_HEADERS,
            content=b"event: message\ndata: " + PROGRESS + b"\n\n",
        )
    )

    response = await post(inner, INITIALIZE)

    failure = event_messages(response.content)[-1]
    assert failure["error"]["message"] == (
        "target MCP server closed the event stream without replying"
    )


@pytest.mark.asyncio
async def test_resumable_event_stream_is_left_to_resume():
    inner = target(
        httpx.Response(
            200,
            headers=SSE_HEADERS,
            content=b"event: message\nid: 3\ndata: " + PROGRESS + b"\n\n",
        )
    )

    response = await post(inner, INITIALIZE)

    assert event_messages(response.content) == [decode(PROGRESS)]


@pytest.mark.asyncio
async def test_event_stream_guard_close():
    upstream = httpx.Response(200, headers=SSE_HEADERS, stream=BrokenEventStream([]))

    await EventStreamGuard(upstream, 1).aclose()

    assert upstream.is_closed


@pytest.mark.asyncio
async def test_get_stream_disabled():
    inner = target()
    reply = ReplyTransport(inner, enable_sse=False)

    response = await reply.handle_async_request(httpx.Request("GET", ENDPOINT))

    assert response.status_code == 405
    assert inner.calls == []  # type: ignore


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["GET", "DELETE"])
async def test_other_methods_pass_through(method: str):
    inner = target(httpx.Response(200, headers={"Content-Type": "text/event-stream"}))
    reply = ReplyTransport(inner, enable_sse=True)

    response = await reply.handle_async_request(httpx.Request(method, ENDPOINT))

    assert response.status_code == 200
    assert len(inner.calls) == 1  # type: ignore


@pytest.mark.asyncio
async def test_client_factory():
    inner = target()
    connection = StreamableHTTPConnection(ENDPOINT, inner, enable_sse=True, timeout=12)

    client = connection.client_factory(headers={"Accept": "application/json"})
    try:
        assert isinstance(client._transport, ReplyTransport)
        assert client._transport.transport is inner
        assert client._transport.enable_sse is True
        assert client.timeout.connect == 12
        assert client.timeout.read == 300
        assert client.headers["Accept"] == "application/json"
    finally:
        await client.aclose()


def test_default_timeout():
    assert StreamableHTTPConnection(ENDPOINT, target()).timeout == 30


@pytest.mark.asyncio
async def test_connect():
    calls = []
    streams = (MagicMock(), MagicMock())

    @asynccontextmanager
    async def client(url, **kwargs):
        calls.append((url, kwargs))
        yield streams[0], streams[1], lambda: "session-1"

    connection = StreamableHTTPConnection(ENDPOINT, target(), timeout=5)
    assert connection.session_id is None

    with patch("mcp_sigv4_proxy.connection.streamablehttp_client", client):
        async with connection.connect() as (read_stream, write_stream):
            assert (read_stream, write_stream) == streams
            assert connection.session_id == "session-1"

    assert connection.session_id is None
    url, kwargs = calls[0]
    assert url == ENDPOINT
    assert kwargs["timeout"] == 5
    assert kwargs["sse_read_timeout"] == 300
    assert kwargs["terminate_on_close"] is True
    assert kwargs["httpx_client_factory"] == connection.client_factory


@pytest.mark.asyncio
async def test_reply_transport_close():
    closed = []

    class Inner(httpx.AsyncBaseTransport):
        async def aclose(self) -> None:
            closed.append(True)

    await ReplyTransport(Inner()).aclose()

    assert closed == [True]

