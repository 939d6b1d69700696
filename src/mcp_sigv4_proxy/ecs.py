import http.client
import os
from typing import Dict, Optional
from urllib.parse import urlparse

from .credentials import CredentialsError

ECS_HOST = "169.254.170.2"


def container_credentials_uri() -> Optional[str]:
    full_uri = os.getenv("AWS_CONTAINER_CREDENTIALS_FULL_URI")
    if full_uri:
        return full_uri

    relative_uri = os.getenv("AWS_CONTAINER_CREDENTIALS_RELATIVE_URI")
    if relative_uri:
        return f"http://{ECS_HOST}{relative_uri}"

    return None


def _authorization_token() -> Optional[str]:
    token_file = os.getenv("AWS_CONTAINER_AUTHORIZATION_TOKEN_FILE")
    if token_file:
        with open(token_file) as f:
            return f.read().strip()
    return os.getenv("AWS_CONTAINER_AUTHORIZATION_TOKEN")


def ecs_credentials(timeout: float = 1) -> bytes:
    uri = container_credentials_uri()

    if not uri:
        raise CredentialsError(
            "Not running in ECS: AWS_CONTAINER_CREDENTIALS_FULL_URI "
            "and AWS_CONTAINER_CREDENTIALS_RELATIVE_URI not set"
        )

    parsed = urlparse(uri)
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"

    conn: Optional[http.client.HTTPConnection] = None
    try:
        if parsed.scheme == "https":
            conn = http.client.HTTPSConnection(
                parsed.hostname, parsed.port, timeout=timeout  # type: ignore
            )
        else:
            conn = http.client.HTTPConnection(
                parsed.hostname, parsed.port, timeout=timeout  # type: ignore
            )

        headers: Dict[str, str] = {}
        token = _authorization_token()
        if token:
            headers["Authorization"] = token

        conn.request("GET", path, headers=headers)
        response = conn.getresponse()
        body = response.read()

        if response.status != 200:
            raise CredentialsError(
                f"Failed to get container credentials: {response.status} {response.reason}"
            )

        return body

    except (OSError, http.client.HTTPException) as err:
        raise CredentialsError(f"container credentials unavailable: {err}") from err

    finally:
        if conn is not None:
            conn.close()
