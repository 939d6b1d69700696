import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence, Union

from . import __version__
from .config import Config, ConfigError, load
from .connection import StreamableHTTPConnection
from .credentials import (
    Credentials,
    CredentialsError,
    Provider,
    RefreshableCredentials,
    mask_access_key,
)
from .proxy import Proxy
from .signer import SigningError, new_signer
from .transport import AiohttpTransport, SigningTransport

logger = logging.getLogger("mcp_sigv4_proxy")


def load_credentials(config: Config) -> Union[Credentials, RefreshableCredentials]:
    logger.info("Loading AWS credentials...")
    provider = Provider(profile=config.profile, region=config.region)
    try:
        credentials = provider.load_credentials()
    except CredentialsError as err:
        raise CredentialsError(
            f"failed to load AWS credentials: {err} (ensure AWS credentials are "
            "configured via environment variables, ~/.aws/credentials, or IAM role)"
        ) from err

    logger.info(
        f"AWS credentials loaded successfully from {provider.source} "
        f"(Access Key: {mask_access_key(credentials.access_key_id)})"
    )
    if credentials.session_token:
        logger.info("  Session token present")

    if credentials.expiration is not None and provider.fetch is not None:
        return provider.watch(credentials)
    return credentials


def build_proxy(
    config: Config, credentials: Union[Credentials, RefreshableCredentials]
) -> Proxy:
    signer = new_signer(
        config.signature_version, credentials, config.region, config.service_name
    )
    logger.info(f"Using AWS Signature Version {signer.label}")

    transport = SigningTransport(AiohttpTransport(), signer, headers=config.headers)
    connection = StreamableHTTPConnection(
        config.target_url,
        transport,
        enable_sse=config.enable_sse,
        timeout=config.timeout,
    )
    return Proxy(connection)


async def serve(
    config: Config, credentials: Union[Credentials, RefreshableCredentials]
) -> None:
    proxy = build_proxy(config, credentials)
    task = asyncio.ensure_future(proxy.run())
    loop = asyncio.get_running_loop()

    def handle_exit(signum: int) -> None:
        logger.info(
            f"Received signal {signal.Signals(signum).name}, shutting down gracefully..."
        )
        task.cancel()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, handle_exit, signum)

    try:
        await task
    except asyncio.CancelledError:
        logger.info("Proxy server stopped gracefully")
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = load(argv)
    except ConfigError as err:
        logging.basicConfig(stream=sys.stderr, format="%(asctime)s %(message)s")
        logger.error(f"ERROR: configuration error: {err}")
        return 1

    logging.basicConfig(
        stream=sys.stderr,
        level=config.log_level,
        format="%(asctime)s %(message)s",
    )

    logger.info(f"AWS SigV4 Signing Proxy MCP Server v{__version__}")
    logger.info("Configuration loaded successfully:")
    logger.info(f"  Target URL: {config.target_url}")
    logger.info(f"  Region: {config.region}")
    logger.info(f"  Service: {config.service_name}")
    logger.info(f"  Signature Version: {config.signature_version}")
    logger.info(f"  Profile: {config.profile}")
    logger.info(f"  EnableSSE: {config.enable_sse}")

    credentials: Union[Credentials, RefreshableCredentials, None] = None
    try:
        credentials = load_credentials(config)

        logger.info("Starting proxy server on stdio...")
        logger.info("Proxy is ready to accept MCP protocol messages")
        asyncio.run(serve(config, credentials))

    except (CredentialsError, SigningError) as err:
        logger.error(f"ERROR: {err}")
        return 1

    finally:
        if isinstance(credentials, RefreshableCredentials):
            credentials.stop_refresh_thread()

    logger.info("Proxy server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
