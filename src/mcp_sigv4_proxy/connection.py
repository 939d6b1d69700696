import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, Tuple, Union

import httpx
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from httpx_sse import EventSource
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.message import SessionMessage
from mcp.types import (
    INTERNAL_ERROR,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)

from .transport import TransportError

logger = logging.getLogger("mcp_sigv4_proxy")

JSON = "application/json"
SSE = "text/event-stream"

DEFAULT_TIMEOUT: float = 30
SSE_READ_TIMEOUT: float = 5 * 60

ReadStream = MemoryObjectReceiveStream[Union[SessionMessage, Exception]]
WriteStream = MemoryObjectSendStream[SessionMessage]

# Headers describing the original body, which a rebuilt response replaces.
BODY_HEADERS = frozenset(
    {"content-encoding", "content-length", "content-type", "transfer-encoding"}
)


def encode_message(message: JSONRPCMessage) -> bytes:
    return message.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def internal_error(message_id: RequestId, message: str) -> bytes:
    return encode_message(
        JSONRPCMessage(
            JSONRPCError(
                jsonrpc="2.0",
                id=message_id,
                error=ErrorData(code=INTERNAL_ERROR, message=message),
            )
        )
    )


def parse_message(data: Union[str, bytes]) -> Optional[JSONRPCMessage]:
    try:
        return JSONRPCMessage.model_validate_json(data)
    except ValueError:
        return None


def is_reply(
    message: Optional[JSONRPCMessage], message_id: Optional[RequestId] = None
) -> bool:
    if message is None or not isinstance(message.root, (JSONRPCResponse, JSONRPCError)):
        return False
    return message_id is None or message.root.id == message_id


def format_event(data: bytes, event_id: str = "") -> bytes:
    lines = [b"event: message"]
    if event_id:
        lines.append(b"id: " + event_id.encode("utf-8"))
    lines.extend(b"data: " + line for line in data.splitlines())
    return b"\n".join(lines) + b"\n\n"


def media_type(response: httpx.Response) -> str:
    return response.headers.get("content-type", "").split(";")[0].strip().lower()


def rebuild(
    response: httpx.Response,
    status_code: int,
    body: bytes = b"",
    stream: Optional[httpx.AsyncByteStream] = None,
) -> httpx.Response:
    # Session headers such as Mcp-Session-Id must survive.
    headers: List[Tuple[str, str]] = [
        (name, value)
        for name, value in response.headers.multi_items()
        if name.lower() not in BODY_HEADERS
    ]
    if stream is not None:
        headers.append(("content-type", SSE))
        return httpx.Response(
            status_code, headers=headers, stream=stream, request=response.request
        )
    if body:
        headers.append(("content-type", JSON))
    return httpx.Response(
        status_code, headers=headers, content=body, request=response.request
    )


class EventStreamGuard(httpx.AsyncByteStream):
    """
    Relays the JSON-RPC messages of an event stream answering one request.

    Events that are not JSON-RPC messages are dropped. If the stream breaks
    off, or ends without a reply and without an event id to resume from, a
    JSON-RPC error for the request is appended.

    :param response: Event-stream response from the target.
    :type response: httpx.Response
    :param message_id: Id of the request the stream answers.
    :type message_id: RequestId
    """

    def __init__(self, response: httpx.Response, message_id: RequestId):
        self.response = response
        self.message_id = message_id

    async def __aiter__(self) -> AsyncIterator[bytes]:
        answered = False
        resumable = False
        problem: Optional[str] = None

        try:
            async for event in EventSource(self.response).aiter_sse():
                if event.event != "message":
                    continue
                message = parse_message(event.data)
                if message is None:
                    problem = "target MCP server sent a malformed JSON-RPC message"
                    logger.error(f"{problem}: {event.data[:200]!r}")
                    continue
                answered = answered or is_reply(message, self.message_id)
                resumable = resumable or bool(event.id)
                yield format_event(event.data.encode("utf-8"), event.id)

        except httpx.HTTPError as err:
            problem = f"event stream from target MCP server failed: {err}"
            logger.error(problem)

        if answered:
            return
        if problem is None and not resumable:
            problem = "target MCP server closed the event stream without replying"
        if problem is not None:
            yield format_event(internal_error(self.message_id, problem))

    async def aclose(self) -> None:
        await self.response.aclose()


class ReplyTransport(httpx.AsyncBaseTransport):
    """
    Makes sure every JSON-RPC request POSTed to the target gets an answer.

    Failures that would otherwise leave a request unanswered are turned into
    a JSON-RPC error for that request's id: transport errors, non-2xx
    statuses, bodies that are not JSON-RPC, unexpected content types and
    event streams that break off. A non-2xx body that already is a JSON-RPC
    response is relayed as it is. Failures for notifications and responses
    are logged and reported upwards as ``202 Accepted``, since nothing may
    answer them.

    :param transport: Transport that signs and sends the request.
    :type transport: httpx.AsyncBaseTransport
    :param enable_sse: Allow the GET stream for server-initiated messages.
        When disabled, GET requests are answered locally with 405.
    :type enable_sse: bool
    """

    def __init__(self, transport: httpx.AsyncBaseTransport, enable_sse: bool = False):
        self.transport = transport
        self.enable_sse = enable_sse

    @staticmethod
    async def request_id(request: httpx.Request) -> Optional[RequestId]:
        message = parse_message(await request.aread())
        if message is not None and isinstance(message.root, JSONRPCRequest):
            return message.root.id
        return None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and not self.enable_sse:
            return httpx.Response(405, request=request)
        if request.method != "POST":
            return await self.transport.handle_async_request(request)

        message_id = await self.request_id(request)
        try:
            response = await self.transport.handle_async_request(request)
        except (TransportError, httpx.TransportError) as err:
            logger.error(f"{request.method} {request.url}: {err}")
            if message_id is None:
                return httpx.Response(202, request=request)
            return httpx.Response(
                200,
                headers=[("content-type", JSON)],
                content=internal_error(message_id, str(err)),
                request=request,
            )

        if response.status_code >= 300:
            body = await response.aread()
            await response.aclose()
            message = (
                f"target MCP server returned HTTP {response.status_code} "
                f"{response.reason_phrase}".rstrip()
            )
            logger.warning(message)
            if message_id is None:
                return rebuild(response, 202)
            if is_reply(parse_message(body)):
                return rebuild(response, 200, body)
            return rebuild(response, 200, internal_error(message_id, message))

        if message_id is None or response.status_code in (202, 204):
            return response

        if media_type(response) == SSE:
            return rebuild(
                response,
                response.status_code,
                stream=EventStreamGuard(response, message_id),
            )

        try:
            body = await response.aread()
        except httpx.HTTPError as err:
            await response.aclose()
            message = f"failed to read response from target MCP server: {err}"
            logger.error(message)
            return rebuild(response, 200, internal_error(message_id, message))

        if not body.strip():
            return rebuild(response, 202)

        if media_type(response) != JSON:
            message = (
                "target MCP server sent unexpected content type "
                f"{response.headers.get('content-type', '')!r}"
            )
        elif parse_message(body) is None:
            message = "target MCP server sent a malformed JSON-RPC message"
        else:
            return rebuild(response, response.status_code, body)

        logger.error(message)
        return rebuild(response, 200, internal_error(message_id, message))

    async def aclose(self) -> None:
        await self.transport.aclose()


class StreamableHTTPConnection:
    """
    Client side of the MCP streamable HTTP transport.

    The protocol itself (session ids, protocol version headers, JSON and
    event-stream replies, the GET listener and the closing DELETE) is handled
    by the MCP SDK's streamable HTTP client. Every HTTP request it makes goes
    through a :class:`ReplyTransport` around ``transport``, normally a
    :class:`~mcp_sigv4_proxy.transport.SigningTransport`.

    :param endpoint: URL of the target MCP server.
    :type endpoint: str
    :param transport: Transport used for every HTTP request.
    :type transport: httpx.AsyncBaseTransport
    :param enable_sse: Open a GET event stream for server-initiated messages.
    :type enable_sse: bool
    :param timeout: Seconds allowed to connect and to wait on a plain
        response. Defaults to 30.
    :type timeout: Optional[float]
    """

    def __init__(
        self,
        endpoint: str,
        transport: httpx.AsyncBaseTransport,
        enable_sse: bool = False,
        timeout: Optional[float] = None,
    ):
        self.endpoint = endpoint
        self.transport = transport
        self.enable_sse = enable_sse
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.get_session_id: Optional[Callable[[], Optional[str]]] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.get_session_id() if self.get_session_id else None

    def client_factory(
        self,
        headers: Optional[dict] = None,
        timeout: Optional[httpx.Timeout] = None,
        auth: Optional[httpx.Auth] = None,
    ) -> httpx.AsyncClient:
        if timeout is None:
            timeout = httpx.Timeout(self.timeout, read=SSE_READ_TIMEOUT)
        return httpx.AsyncClient(
            headers=headers,
            timeout=timeout,
            auth=auth,
            transport=ReplyTransport(self.transport, enable_sse=self.enable_sse),
        )

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[Tuple[ReadStream, WriteStream]]:
        """
        Open the session streams. The target session is terminated on exit.
        """
        async with streamablehttp_client(
            self.endpoint,
            timeout=self.timeout,
            sse_read_timeout=SSE_READ_TIMEOUT,
            terminate_on_close=True,
            httpx_client_factory=self.client_factory,
        ) as (read_stream, write_stream, get_session_id):
            self.get_session_id = get_session_id
            try:
                yield read_stream, write_stream
            finally:
                self.get_session_id = None
