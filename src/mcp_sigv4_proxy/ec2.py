import http.client
from os import environ
from typing import Dict, Optional

from .credentials import CredentialsError

IMDS_HOST = "169.254.169.254"
TOKEN_TTL_SECONDS = "21600"


def _fetch(
    conn: http.client.HTTPConnection,
    method: str,
    path: str,
    headers: Dict[str, str],
    what: str,
) -> bytes:
    conn.request(method, path, headers=headers)
    response = conn.getresponse()
    body = response.read()
    if response.status != 200:
        raise CredentialsError(
            f"instance metadata: failed to get {what}: {response.status}"
        )
    return body


def ec2_credentials(timeout: float = 1) -> bytes:
    """
    Fetch the instance role credentials document from IMDSv2.

    Synchronous; only called while loading or refreshing credentials.

    :param timeout: Socket timeout in seconds for each metadata call.
    :type timeout: float
    :return: Raw JSON credentials document.
    :rtype: bytes
    :raises CredentialsError: If metadata is disabled or any call fails.
    """
    if environ.get("AWS_EC2_METADATA_DISABLED", "").lower() == "true":
        raise CredentialsError("instance metadata disabled by AWS_EC2_METADATA_DISABLED")

    conn: Optional[http.client.HTTPConnection] = None

    try:
        conn = http.client.HTTPConnection(IMDS_HOST, timeout=timeout)
        token = _fetch(
            conn,
            "PUT",
            "/latest/api/token",
            {"X-aws-ec2-metadata-token-ttl-seconds": TOKEN_TTL_SECONDS},
            "token",
        ).decode()

        role_name = (
            _fetch(
                conn,
                "GET",
                "/latest/meta-data/iam/security-credentials/",
                {"X-aws-ec2-metadata-token": token},
                "role name",
            )
            .decode()
            .strip()
            .splitlines()[0]
        )

        return _fetch(
            conn,
            "GET",
            f"/latest/meta-data/iam/security-credentials/{role_name}",
            {"X-aws-ec2-metadata-token": token},
            "credentials",
        )

    except (OSError, http.client.HTTPException, IndexError, ValueError) as err:
        raise CredentialsError(f"instance metadata unavailable: {err}") from err

    finally:
        if conn is not None:
            conn.close()
