import datetime
import shlex
import subprocess
from typing import Optional

import msgspec

from .credentials import Credentials, CredentialsError

DEFAULT_TIMEOUT: float = 30


class ProcessCredentials(msgspec.Struct, rename="pascal"):
    version: int
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    expiration: Optional[datetime.datetime] = None


process_decoder = msgspec.json.Decoder(ProcessCredentials)


def process_credentials(command: str, timeout: float = DEFAULT_TIMEOUT) -> Credentials:
    """
    Run a ``credential_process`` command and decode its output.

    The command must print a version 1 document with ``AccessKeyId``,
    ``SecretAccessKey`` and optionally ``SessionToken`` and ``Expiration``.

    :param command: Command line from the profile, split like a shell would.
    :type command: str
    :param timeout: Seconds to wait for the command.
    :type timeout: float
    :raises CredentialsError: If the command fails or prints something else.
    """
    try:
        result = subprocess.run(
            shlex.split(command), capture_output=True, timeout=timeout, check=False
        )
    except subprocess.TimeoutExpired as err:
        raise CredentialsError(
            f"credential process timed out after {timeout:g} seconds"
        ) from err
    except (OSError, ValueError) as err:
        raise CredentialsError(f"credential process could not be run: {err}") from err

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", "replace").strip()
        raise CredentialsError(
            f"credential process exited with status {result.returncode}: {stderr}"
        )

    try:
        document = process_decoder.decode(result.stdout)
    except msgspec.DecodeError as err:
        raise CredentialsError(f"invalid credential process output: {err}") from err

    if document.version != 1:
        raise CredentialsError(
            f"unsupported credential process version {document.version}, expected 1"
        )

    return Credentials(
        access_key_id=document.access_key_id,
        secret_access_key=document.secret_access_key,
        session_token=document.session_token or None,
        expiration=document.expiration,
    )
