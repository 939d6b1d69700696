import logging

from .connection import ReplyTransport, StreamableHTTPConnection
from .credentials import Credentials, CredentialsError, Provider, mask_access_key
from .request import Request
from .signer import (
    SignatureVersion,
    SigningError,
    SigV4aNotAvailableError,
    SigV4aSigner,
    SigV4Signer,
    new_signer,
)
from .transport import AiohttpTransport, SigningTransport, TransportError

__version__ = "1.0.0"

logging.getLogger("mcp_sigv4_proxy").addHandler(logging.NullHandler())

__all__ = [
    "AiohttpTransport",
    "Credentials",
    "CredentialsError",
    "Provider",
    "ReplyTransport",
    "Request",
    "SignatureVersion",
    "SigningError",
    "SigningTransport",
    "StreamableHTTPConnection",
    "SigV4Signer",
    "SigV4aNotAvailableError",
    "SigV4aSigner",
    "TransportError",
    "mask_access_key",
    "new_signer",
]
