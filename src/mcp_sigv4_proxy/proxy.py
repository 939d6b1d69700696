import asyncio
import logging
import sys
from typing import Any, BinaryIO, Optional, Set

import msgspec
from mcp.shared.message import SessionMessage
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    JSONRPCMessage,
    JSONRPCRequest,
    RequestId,
)

from .connection import (
    ReadStream,
    StreamableHTTPConnection,
    WriteStream,
    encode_message,
    is_reply,
    parse_message,
)

logger = logging.getLogger("mcp_sigv4_proxy")

MAX_MESSAGE_SIZE = 16 * 1024 * 1024

# How long to wait for outstanding replies once stdin is closed.
DRAIN_TIMEOUT: float = 30

json_encoder = msgspec.json.Encoder()
json_decoder = msgspec.json.Decoder()


def error_response(msg_id: Any, code: int, message: str) -> bytes:
    return json_encoder.encode(
        {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}
    )


class Proxy:
    """
    Relay newline-delimited JSON-RPC between stdio and a target connection.

    Messages read from ``stdin`` are handed to the connection in order.
    Replies and server-initiated messages are written to ``stdout`` one
    message per line as they arrive, so concurrent calls do not wait on
    each other.

    :param connection: Connection to the target MCP server.
    :type connection: StreamableHTTPConnection
    :param stdin: Reader for client messages; defaults to the process stdin.
    :type stdin: Optional[asyncio.StreamReader]
    :param stdout: Binary stream for replies; defaults to the process stdout.
    :type stdout: Optional[BinaryIO]
    """

    def __init__(
        self,
        connection: StreamableHTTPConnection,
        stdin: Optional[asyncio.StreamReader] = None,
        stdout: Optional[BinaryIO] = None,
    ):
        self.connection = connection
        self.stdin = stdin
        self.stdout = stdout or sys.stdout.buffer
        self.write_lock = asyncio.Lock()
        self.pending: Set[RequestId] = set()
        self.drained = asyncio.Event()

    async def open_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=MAX_MESSAGE_SIZE)
        await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), sys.stdin
        )
        return reader

    async def write(self, data: bytes) -> None:
        async with self.write_lock:
            self.stdout.write(data + b"\n")
            self.stdout.flush()

    async def write_message(self, message: JSONRPCMessage) -> None:
        await self.write(encode_message(message))
        if is_reply(message):
            self.settle(message.root.id)

    def settle(self, msg_id: RequestId) -> None:
        self.pending.discard(msg_id)
        if not self.pending:
            self.drained.set()

    async def forward(self, line: bytes, write_stream: WriteStream) -> None:
        try:
            decoded = json_decoder.decode(line)
        except msgspec.DecodeError as err:
            logger.warning(f"Dropping malformed message from client: {err}")
            await self.write(error_response(None, PARSE_ERROR, f"Parse error: {err}"))
            return

        message = parse_message(line)
        if message is None:
            msg_id = decoded.get("id") if isinstance(decoded, dict) else None
            if not isinstance(msg_id, (str, int)):
                msg_id = None
            logger.warning("Dropping invalid JSON-RPC message from client")
            await self.write(
                error_response(msg_id, INVALID_REQUEST, "Invalid Request")
            )
            return

        request = message.root if isinstance(message.root, JSONRPCRequest) else None
        if request is not None:
            self.pending.add(request.id)
            self.drained.clear()

        try:
            await write_stream.send(SessionMessage(message=message))
        except Exception as err:
            method = getattr(message.root, "method", "message")
            logger.exception(f"Failed to forward {method}")
            if request is not None:
                self.settle(request.id)
                await self.write(
                    error_response(request.id, INTERNAL_ERROR, f"internal error: {err}")
                )

    async def relay(self, read_stream: ReadStream) -> None:
        async for item in read_stream:
            if isinstance(item, Exception):
                logger.warning(f"Target MCP server stream error: {item}")
                continue
            try:
                await self.write_message(item.message)
            except Exception:
                logger.exception("Failed to relay message from target MCP server")

    async def drain(self) -> None:
        if not self.pending:
            return
        try:
            await asyncio.wait_for(self.drained.wait(), DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(
                f"Closing with {len(self.pending)} request(s) still unanswered"
            )

    async def run(self) -> None:
        """
        Forward messages until stdin reaches EOF, wait for outstanding
        replies, then close the connection.
        """
        reader = self.stdin or await self.open_stdin()

        async with self.connection.connect() as (read_stream, write_stream):
            relay = asyncio.ensure_future(self.relay(read_stream))
            try:
                while True:
                    line = await reader.readline()
                    if not line:
                        break
                    line = line.strip()
                    if not line:
                        continue
                    await self.forward(line, write_stream)

                await self.drain()

            finally:
                relay.cancel()
                await asyncio.gather(relay, return_exceptions=True)
