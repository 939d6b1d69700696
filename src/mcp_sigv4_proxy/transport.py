import asyncio
import hashlib
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional

import aiohttp
import httpx
from multidict import CIMultiDict
from yarl import URL

from .request import Request
from .signer import BaseSigner, SigningError

logger = logging.getLogger("mcp_sigv4_proxy")


class TransportError(Exception):
    pass


class BodyReadError(TransportError):
    pass


class SignatureGenerationError(TransportError):
    pass


class TargetConnectionError(TransportError):
    def __init__(self, host: str, cause: BaseException):
        self.host = host
        self.cause = cause
        super().__init__(
            f"failed to connect to target MCP server at {host}: "
            f"{str(cause) or type(cause).__name__}"
        )


class AiohttpResponseStream(httpx.AsyncByteStream):
    def __init__(self, response: aiohttp.ClientResponse):
        self.response = response

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.content.iter_any():
                yield chunk
        except asyncio.TimeoutError as err:
            raise httpx.ReadTimeout(str(err) or "read timed out") from err
        except aiohttp.ClientError as err:
            raise httpx.ReadError(str(err) or type(err).__name__) from err

    async def aclose(self) -> None:
        self.response.release()


class AiohttpTransport(httpx.AsyncBaseTransport):
    """
    httpx transport that performs requests on a shared aiohttp ClientSession.

    Connect and read timeouts come from the httpx client. The response body is
    streamed, so event streams are delivered as the server writes them.

    :param client_factory: Factory function to create an aiohttp ClientSession.
        The session must be created with ``auto_decompress=False``; httpx
        decodes the body itself.
    :type client_factory: Optional[Callable[[], Awaitable[aiohttp.ClientSession]]]
    """

    def __init__(
        self,
        client_factory: Optional[Callable[[], Awaitable[aiohttp.ClientSession]]] = None,
    ):
        self.client_factory = client_factory
        self.client: aiohttp.ClientSession
        self.client_factory_lock = asyncio.Lock()

    async def get_client(self) -> aiohttp.ClientSession:
        if not hasattr(self, "client"):
            async with self.client_factory_lock:
                if not hasattr(self, "client"):
                    logger.debug("Setting up client")
                    if self.client_factory:
                        logger.debug("User defined client_factory")
                        self.client = await self.client_factory()
                    else:
                        self.client = aiohttp.ClientSession(auto_decompress=False)
        return self.client

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        client = await self.get_client()
        body = await request.aread()
        timeouts = request.extensions.get("timeout", {})

        try:
            response = await client.request(
                request.method,
                URL(str(request.url), encoded=True),
                headers=CIMultiDict(request.headers.multi_items()),
                data=body or None,
                skip_auto_headers=("Content-Type",),
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(
                    sock_connect=timeouts.get("connect"),
                    sock_read=timeouts.get("read"),
                ),
            )
        except asyncio.TimeoutError as err:
            raise httpx.ConnectTimeout(str(err) or "timed out", request=request) from err
        except (aiohttp.ClientError, OSError) as err:
            raise httpx.ConnectError(
                str(err) or type(err).__name__, request=request
            ) from err

        return httpx.Response(
            response.status,
            headers=response.raw_headers,
            stream=AiohttpResponseStream(response),
            request=request,
        )

    async def aclose(self) -> None:
        if hasattr(self, "client"):
            await self.client.close()
            del self.client


class SigningTransport(httpx.AsyncBaseTransport):
    """
    Signs every request before handing it to the wrapped transport.

    The body is read into memory, hashed with SHA-256 and replaced with the
    same bytes, so the recipient sees exactly what the caller supplied. No
    retries are attempted and response statuses are returned unchanged.

    :param transport: The transport that actually performs the request.
    :type transport: httpx.AsyncBaseTransport
    :param signer: Signer for the configured signature version.
    :type signer: BaseSigner
    :param headers: Static headers added to every request before signing.
        Headers already set by the caller win.
    :type headers: Optional[Mapping[str, str]]
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        signer: BaseSigner,
        headers: Optional[Mapping[str, str]] = None,
    ):
        self.transport = transport
        self.signer = signer
        self.headers: Dict[str, str] = dict(headers or {})

    @staticmethod
    async def read_body(request: httpx.Request) -> bytes:
        """
        Materialize the body and close the stream it came from.

        :raises BodyReadError: If the body stream cannot be read.
        """
        stream = request.stream
        try:
            return await request.aread()
        except (httpx.StreamError, OSError, ValueError) as err:
            raise BodyReadError(f"failed to read request body for signing: {err}") from err
        finally:
            if isinstance(stream, httpx.AsyncByteStream):
                await stream.aclose()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        """
        Sign and send ``request``.

        :raises BodyReadError: If the body could not be read.
        :raises SignatureGenerationError: If signing failed; nothing was sent.
        :raises TargetConnectionError: On DNS, connection, TLS or timeout failures.
        """
        body = await self.read_body(request)

        signable = Request(
            request.method,
            URL(str(request.url), encoded=True),
            CIMultiDict(request.headers.multi_items()),
        )
        for name, value in self.headers.items():
            if name not in signable.headers:
                signable.headers[name] = value
        if body or "Content-Length" in signable.headers:
            signable.headers["Content-Length"] = str(len(body))
            signable.headers.popall("Transfer-Encoding", None)

        try:
            self.signer.sign(signable, hashlib.sha256(body).hexdigest())
        except SigningError as err:
            raise SignatureGenerationError(f"AWS signature generation failed: {err}") from err

        request.headers = httpx.Headers(list(signable.headers.items()))

        try:
            return await self.transport.handle_async_request(request)
        except (httpx.TransportError, asyncio.TimeoutError, OSError) as err:
            raise TargetConnectionError(signable.host, err) from err

    async def aclose(self) -> None:
        await self.transport.aclose()
