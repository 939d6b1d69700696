import datetime
import hashlib
import http.client
import xml.etree.ElementTree as ET
from typing import Dict, Optional
from urllib.parse import urlencode

from .credentials import Credentials, CredentialsError
from .request import Request
from .signer import SigningError, SigV4Signer

STS_VERSION = "2011-06-15"
DEFAULT_REGION = "us-east-1"


def sts_host(region: Optional[str]) -> str:
    return f"sts.{region or DEFAULT_REGION}.amazonaws.com"


def _find(root: ET.Element, name: str) -> Optional[str]:
    # STS answers in a versioned XML namespace; match on the local name.
    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] == name:
            return (element.text or "").strip()
    return None


def parse_timestamp(value: str) -> datetime.datetime:
    try:
        return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as err:
        raise CredentialsError(f"invalid expiration {value!r} in STS response") from err


def parse_credentials(action: str, body: bytes) -> Credentials:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as err:
        raise CredentialsError(f"{action}: invalid STS response: {err}") from err

    access_key = _find(root, "AccessKeyId")
    secret_key = _find(root, "SecretAccessKey")
    if not access_key or not secret_key:
        raise CredentialsError(f"{action}: STS response did not contain credentials")

    expiration = _find(root, "Expiration")
    return Credentials(
        access_key_id=access_key,
        secret_access_key=secret_key,
        session_token=_find(root, "SessionToken") or None,
        expiration=parse_timestamp(expiration) if expiration else None,
    )


def _error_detail(body: bytes) -> str:
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return body.decode("utf-8", "replace").strip()[:200]
    return ": ".join(filter(None, [_find(root, "Code"), _find(root, "Message")]))


def call_sts(
    action: str,
    params: Dict[str, str],
    region: Optional[str] = None,
    credentials: Optional[Credentials] = None,
    timeout: float = 10,
) -> Credentials:
    """
    Call an STS query action that returns temporary credentials.

    The request is signed with SigV4 when ``credentials`` are given;
    ``AssumeRoleWithWebIdentity`` is called unsigned.

    :raises CredentialsError: If the call fails or returns no credentials.
    """
    host = sts_host(region)
    body = urlencode({"Action": action, "Version": STS_VERSION, **params}).encode()
    request = Request(
        "POST",
        f"https://{host}/",
        {
            "Host": host,
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        },
    )

    if credentials is not None:
        signer = SigV4Signer(credentials, region=region or DEFAULT_REGION, service="sts")
        try:
            signer.sign(request, hashlib.sha256(body).hexdigest())
        except SigningError as err:
            raise CredentialsError(f"{action}: {err}") from err

    conn: Optional[http.client.HTTPSConnection] = None
    try:
        conn = http.client.HTTPSConnection(host, timeout=timeout)
        conn.request("POST", "/", body=body, headers=dict(request.headers))
        response = conn.getresponse()
        data = response.read()
    except (OSError, http.client.HTTPException) as err:
        raise CredentialsError(f"{action} failed: {err}") from err
    finally:
        if conn is not None:
            conn.close()

    if response.status != 200:
        raise CredentialsError(
            f"{action} failed: {response.status} {_error_detail(data)}".rstrip()
        )

    return parse_credentials(action, data)


def assume_role(
    credentials: Credentials,
    role_arn: str,
    session_name: str,
    region: Optional[str] = None,
    external_id: Optional[str] = None,
    duration_seconds: Optional[str] = None,
) -> Credentials:
    params = {"RoleArn": role_arn, "RoleSessionName": session_name}
    if external_id:
        params["ExternalId"] = external_id
    if duration_seconds:
        params["DurationSeconds"] = duration_seconds
    return call_sts("AssumeRole", params, region, credentials)


def assume_role_with_web_identity(
    role_arn: str,
    token_file: str,
    session_name: str,
    region: Optional[str] = None,
) -> Credentials:
    """
    Exchange the OIDC token in ``token_file`` for role credentials.

    The file is read on every call, since orchestrators such as EKS rotate it.
    """
    try:
        with open(token_file) as f:
            token = f.read().strip()
    except OSError as err:
        raise CredentialsError(
            f"unable to read web identity token file {token_file}: {err}"
        ) from err

    return call_sts(
        "AssumeRoleWithWebIdentity",
        {"RoleArn": role_arn, "RoleSessionName": session_name, "WebIdentityToken": token},
        region,
    )
