import datetime
import enum
import hashlib
import hmac
from functools import lru_cache
from typing import Dict, List, Tuple, Union
from urllib.parse import quote

from yarl import URL

from .credentials import Credentials, RefreshableCredentials
from .request import Request

ALGORITHM: str = "AWS4-HMAC-SHA256"
ALGORITHM_V4A: str = "AWS4-ECDSA-P256-SHA256"

EMPTY_PAYLOAD_HASH: str = hashlib.sha256(b"").hexdigest()

# Headers that proxies, clients or load balancers may rewrite in flight.
IGNORED_HEADERS = frozenset(
    {
        "authorization",
        "user-agent",
        "x-amzn-trace-id",
        "expect",
        "transfer-encoding",
        "connection",
    }
)

CredentialSource = Union[Credentials, RefreshableCredentials]


class SignatureVersion(str, enum.Enum):
    V4 = "v4"
    V4A = "v4a"


class SigningError(Exception):
    pass


class SigningConfigurationError(SigningError):
    pass


class MissingRegionError(SigningConfigurationError):
    pass


class MissingServiceError(SigningConfigurationError):
    pass


class MissingCredentialsError(SigningConfigurationError):
    pass


class UnsupportedSignatureVersionError(SigningConfigurationError):
    pass


class SigV4aNotAvailableError(SigningError, NotImplementedError):
    pass


def sign(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


@lru_cache(maxsize=16)  # Keys only change per day, region and service
def get_signature_key(
    secret_key: str, date_stamp: str, region: str, service: str
) -> bytes:
    k_date = sign(f"AWS4{secret_key}".encode(), date_stamp)
    k_region = sign(k_date, region)
    k_service = sign(k_region, service)
    k_signing = sign(k_service, "aws4_request")
    return k_signing


def canonical_uri(url: URL) -> str:
    # Non-S3 services sign the already-escaped path escaped a second time.
    return quote(url.raw_path or "/", safe="/")


def canonical_querystring(url: URL) -> str:
    pairs = sorted(
        (quote(key, safe="-_.~"), quote(value, safe="-_.~"))
        for key, value in url.query.items()
    )
    return "&".join(f"{key}={value}" for key, value in pairs)


def canonical_headers(
    request: Request, extra: Dict[str, str]
) -> Tuple[str, str]:
    headers: Dict[str, List[str]] = {}
    for name, value in request.headers.items():
        name = name.lower()
        if name in IGNORED_HEADERS:
            continue
        headers.setdefault(name, []).append(" ".join(value.split()))

    if "host" not in headers:
        headers["host"] = [request.host]

    for name, value in extra.items():
        headers[name] = [value]

    sorted_header_keys = sorted(headers.keys())

    canonical = (
        "\n".join([f"{k}:{','.join(headers[k])}" for k in sorted_header_keys]) + "\n"
    )
    signed_headers = ";".join(sorted_header_keys)

    return canonical, signed_headers


class BaseSigner:
    """
    Configuration and validation shared by both signature versions.

    Stateless per call; configuration is fixed at construction so one
    instance may sign concurrent requests.

    :param credentials: Credentials, or a holder refreshed in the background.
    :type credentials: Union[Credentials, RefreshableCredentials]
    :param region: AWS region (e.g. "us-east-1").
    :type region: str
    :param service: AWS service name (e.g. "execute-api").
    :type service: str
    """

    version: SignatureVersion
    label: str

    def __init__(self, credentials: CredentialSource, region: str, service: str):
        self.credentials = credentials
        self.region = region
        self.service = service

    def current_credentials(self) -> Credentials:
        if isinstance(self.credentials, RefreshableCredentials):
            return self.credentials.get()
        return self.credentials

    def validate(self) -> Credentials:
        """
        Check region, service and credentials, in that order.

        :return: The credential snapshot to sign with.
        :raises SigningConfigurationError: Naming the first missing value.
        """
        if not self.region:
            raise MissingRegionError(f"region is required for {self.label} signing")
        if not self.service:
            raise MissingServiceError(
                f"service name is required for {self.label} signing"
            )

        credentials = self.current_credentials()
        if (
            credentials is None
            or not credentials.access_key_id
            or not credentials.secret_access_key
        ):
            raise MissingCredentialsError(
                f"AWS credentials are required for {self.label} signing"
            )
        return credentials

    def sign(self, request: Request, payload_hash: str) -> None:
        raise NotImplementedError()


class SigV4Signer(BaseSigner):
    """
    AWS Signature Version 4 (single region) request signer.
    """

    version = SignatureVersion.V4
    label = "SigV4"

    def sign(self, request: Request, payload_hash: str) -> None:
        """
        Add ``Authorization``, ``X-Amz-Date`` and, for temporary
        credentials, ``X-Amz-Security-Token`` to ``request``.

        The request is left untouched when validation fails.

        :param request: Request to sign in place.
        :type request: Request
        :param payload_hash: Hex SHA-256 of the request body.
        :type payload_hash: str
        :raises SigningError: On invalid configuration.
        """
        # https://docs.aws.amazon.com/IAM/latest/UserGuide/reference_sigv-create-signed-request.html
        credentials = self.validate()

        dt_now = datetime.datetime.now(datetime.timezone.utc)
        amz_date = dt_now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = dt_now.strftime("%Y%m%d")

        added = {"x-amz-date": amz_date}
        if credentials.session_token:
            added["x-amz-security-token"] = credentials.session_token

        url: URL = request.url  # type: ignore
        canonical, signed_headers = canonical_headers(request, added)

        canonical_request = "\n".join(
            [
                request.method.upper(),
                canonical_uri(url),
                canonical_querystring(url),
                canonical,
                signed_headers,
                payload_hash,
            ]
        )

        credential_scope = "/".join(
            [
                date_stamp,
                self.region,
                self.service,
                "aws4_request",
            ]
        )
        string_to_sign = "\n".join(
            [
                ALGORITHM,
                amz_date,
                credential_scope,
                hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
            ]
        )

        signing_key = get_signature_key(
            credentials.secret_access_key, date_stamp, self.region, self.service
        )

        signature = hmac.new(
            signing_key,
            string_to_sign.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        authorization_header = (
            f"{ALGORITHM} Credential={credentials.access_key_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

        request.headers["X-Amz-Date"] = amz_date
        if credentials.session_token:
            request.headers["X-Amz-Security-Token"] = credentials.session_token
        request.headers["Authorization"] = authorization_header


class SigV4aSigner(BaseSigner):
    """
    AWS Signature Version 4A (multi-region) signer.

    Performs the same validation as :class:`SigV4Signer`, then reports
    :class:`SigV4aNotAvailableError`: the ECDSA P-256 key derivation that
    ``AWS4-ECDSA-P256-SHA256`` needs is not available here.
    """

    version = SignatureVersion.V4A
    label = "SigV4a"

    def sign(self, request: Request, payload_hash: str) -> None:
        self.validate()
        raise SigV4aNotAvailableError(
            f"SigV4a signing is not available: {ALGORITHM_V4A} requires an "
            "ECDSA P-256 signer, use signature version 'v4'"
        )


Signer = Union[SigV4Signer, SigV4aSigner]


def new_signer(
    version: Union[str, SignatureVersion],
    credentials: CredentialSource,
    region: str,
    service: str,
) -> Signer:
    """
    Build the signer for a configured signature version.

    :raises UnsupportedSignatureVersionError: For anything but "v4" or "v4a".
    """
    try:
        version = SignatureVersion(version)
    except ValueError:
        raise UnsupportedSignatureVersionError(
            f"unsupported signature version: {version} (must be 'v4' or 'v4a')"
        ) from None

    if version is SignatureVersion.V4A:
        return SigV4aSigner(credentials, region, service)
    return SigV4Signer(credentials, region, service)
