import configparser
import datetime
import logging
import threading
import time
from functools import partial
from os import environ, path
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import msgspec

logger = logging.getLogger("mcp_sigv4_proxy")

DEFAULT_REFRESH_INTERVAL: float = 15 * 60


class CredentialsError(Exception):
    pass


class MetadataUnavailable(CredentialsError):
    # Raised by the metadata sources, which the chain skips past.
    def __init__(self, source: str, cause: CredentialsError):
        self.source = source
        super().__init__(str(cause))


class Credentials(msgspec.Struct, frozen=True):
    """
    An immutable AWS credential tuple.

    :param access_key_id: AWS access key.
    :type access_key_id: str
    :param secret_access_key: AWS secret key.
    :type secret_access_key: str
    :param session_token: Session token for temporary credentials.
    :type session_token: Optional[str]
    :param expiration: When temporary credentials stop being valid.
    :type expiration: Optional[datetime.datetime]
    """

    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None
    expiration: Optional[datetime.datetime] = None

    def is_complete(self) -> bool:
        return bool(self.access_key_id) and bool(self.secret_access_key)

    def __repr__(self) -> str:
        return f"Credentials(access_key_id={mask_access_key(self.access_key_id)!r})"


class MetadataCredentials(msgspec.Struct, rename="pascal"):
    # Shape shared by the ECS container endpoint and EC2 instance metadata.
    access_key_id: str
    secret_access_key: str
    token: Optional[str] = None
    expiration: Optional[datetime.datetime] = None


metadata_decoder = msgspec.json.Decoder(MetadataCredentials)


def mask_access_key(access_key: str) -> str:
    if len(access_key) <= 8:
        return "****"
    return f"{access_key[:4]}****{access_key[-4:]}"


def decode_metadata_credentials(body: bytes) -> Credentials:
    try:
        document = metadata_decoder.decode(body)
    except msgspec.DecodeError as err:
        raise CredentialsError(f"invalid credentials document: {err}") from err

    return Credentials(
        access_key_id=document.access_key_id,
        secret_access_key=document.secret_access_key,
        session_token=document.token or None,
        expiration=document.expiration,
    )


def fetch_ec2_credentials() -> Credentials:
    from .ec2 import ec2_credentials

    return decode_metadata_credentials(ec2_credentials())


def fetch_ecs_credentials() -> Credentials:
    from .ecs import ecs_credentials

    return decode_metadata_credentials(ecs_credentials())


# Profile settings that name a credential source this proxy cannot use.
UNSUPPORTED_PROFILE_KEYS = (
    "sso_session",
    "sso_start_url",
    "sso_account_id",
    "sso_role_name",
    "credential_source",
    "mfa_serial",
)

Fetch = Callable[[], Credentials]
Loaded = Tuple[str, Credentials, Optional[Fetch]]


def default_session_name() -> str:
    return f"mcp-sigv4-proxy-{int(time.time())}"


def static_credentials(settings: Dict[str, str]) -> Optional[Credentials]:
    access_key = settings.get("aws_access_key_id")
    secret_key = settings.get("aws_secret_access_key")
    if not access_key and not secret_key:
        return None

    return Credentials(
        access_key_id=access_key or "",
        secret_access_key=secret_key or "",
        session_token=settings.get("aws_session_token") or None,
    )


def read_ini(filename: str) -> Optional[configparser.RawConfigParser]:
    filename = path.expanduser(filename)
    if not path.isfile(filename):
        return None

    parser = configparser.RawConfigParser()
    try:
        parser.read(filename)
    except configparser.Error as err:
        raise CredentialsError(f"unable to parse {filename}: {err}") from err
    return parser


class Provider:
    """
    Resolve AWS credentials from the standard chain.

    Sources are tried in order:

    1. ``AWS_ACCESS_KEY_ID`` / ``AWS_SECRET_ACCESS_KEY``
    2. ``AWS_WEB_IDENTITY_TOKEN_FILE`` with ``AWS_ROLE_ARN``
    3. The profile in the shared credentials and config files, which may
       hold static keys, a ``credential_process``, or a ``role_arn`` assumed
       through ``source_profile`` or ``web_identity_token_file``
    4. The ECS container credentials endpoint
    5. EC2 instance metadata

    ``source`` records which one succeeded and ``fetch`` how to get fresh
    credentials from it, if they can be refreshed.

    :param profile: Profile name used for the shared files. Defaults to
        ``AWS_PROFILE`` or ``"default"``.
    :type profile: Optional[str]
    :param region: Region for STS calls when the profile names none.
        Defaults to ``AWS_REGION`` or ``AWS_DEFAULT_REGION``.
    :type region: Optional[str]
    """

    def __init__(self, profile: Optional[str] = None, region: Optional[str] = None):
        self.profile = profile or environ.get("AWS_PROFILE") or "default"
        self.region = (
            region or environ.get("AWS_REGION") or environ.get("AWS_DEFAULT_REGION")
        )
        self.source: Optional[str] = None
        self.fetch: Optional[Fetch] = None

    def load_credentials(self) -> Credentials:
        """
        Walk the credential chain.

        Blocking; intended to run once at startup. A source that is
        configured but broken, such as a profile with an unsupported key or
        a role that cannot be assumed, stops the walk.

        :return: The first complete credential tuple found.
        :rtype: Credentials
        :raises CredentialsError: If no source yields credentials, or the
            credentials found are missing the access key or secret key.
        """
        errors: List[str] = []

        chain: List[Callable[[], Optional[Loaded]]] = [
            self._from_environment,
            self._from_web_identity_environment,
            self._from_profile,
            self._from_container,
            self._from_instance_metadata,
        ]

        for loader in chain:
            try:
                loaded = loader()
            except MetadataUnavailable as err:
                logger.debug(f"{err.source} credential error: {err}")
                errors.append(f"{err.source}: {err}")
                continue

            if loaded is None:
                continue

            source, credentials, fetch = loaded
            if not credentials.is_complete():
                raise CredentialsError(
                    "AWS credentials are incomplete: missing access key or secret key"
                )

            logger.debug(f"Using {source} credentials")
            self.source = source
            self.fetch = fetch
            return credentials

        detail = "; ".join(errors)
        raise CredentialsError(
            "Could not determine credentials" + (f" ({detail})" if detail else "")
        )

    def watch(self, credentials: Credentials) -> "RefreshableCredentials":
        """
        Wrap temporary credentials so they are refreshed before they expire.

        :raises CredentialsError: If the source cannot produce new credentials.
        """
        if self.fetch is None:
            raise CredentialsError(f"credentials from {self.source} cannot be refreshed")

        refreshable = RefreshableCredentials(credentials, self.fetch)
        refreshable.start_refresh_thread()
        return refreshable

    def _from_environment(self) -> Optional[Loaded]:
        credentials = static_credentials(
            {
                "aws_access_key_id": environ.get("AWS_ACCESS_KEY_ID", ""),
                "aws_secret_access_key": environ.get("AWS_SECRET_ACCESS_KEY", ""),
                "aws_session_token": environ.get("AWS_SESSION_TOKEN")
                or environ.get("AWS_SECURITY_TOKEN", ""),
            }
        )
        if credentials is None:
            return None
        return "environment", credentials, None

    def _from_web_identity_environment(self) -> Optional[Loaded]:
        token_file = environ.get("AWS_WEB_IDENTITY_TOKEN_FILE")
        role_arn = environ.get("AWS_ROLE_ARN")
        if not token_file or not role_arn:
            return None

        from .sts import assume_role_with_web_identity

        fetch = partial(
            assume_role_with_web_identity,
            role_arn,
            token_file,
            environ.get("AWS_ROLE_SESSION_NAME") or default_session_name(),
            self.region,
        )
        return "web-identity", fetch(), fetch

    def _from_profile(self) -> Optional[Loaded]:
        return self._resolve_profile(self.profile, frozenset())

    def _from_container(self) -> Optional[Loaded]:
        from .ecs import container_credentials_uri

        if not container_credentials_uri():
            return None
        fetch = fetch_ecs_credentials
        try:
            return "ecs", fetch(), fetch
        except CredentialsError as err:
            raise MetadataUnavailable("ecs", err) from err

    def _from_instance_metadata(self) -> Optional[Loaded]:
        fetch = fetch_ec2_credentials
        try:
            return "ec2", fetch(), fetch
        except CredentialsError as err:
            raise MetadataUnavailable("ec2", err) from err

    def _profile_settings(self, name: str) -> Tuple[Optional[Dict[str, str]], str]:
        """
        Merge a profile's sections from both shared files.

        Keys in the credentials file win over the config file. The second
        value names the file the static keys would come from.
        """
        config = read_ini(environ.get("AWS_CONFIG_FILE", path.join("~", ".aws", "config")))
        credentials = read_ini(
            environ.get(
                "AWS_SHARED_CREDENTIALS_FILE", path.join("~", ".aws", "credentials")
            )
        )

        settings: Dict[str, str] = {}
        found = False
        source = "shared-config-file"

        section = "default" if name == "default" else f"profile {name}"
        if config is not None and config.has_section(section):
            settings.update(config.items(section))
            found = True

        if credentials is not None and credentials.has_section(name):
            items = dict(credentials.items(name))
            if static_credentials(items) is not None:
                source = "shared-credentials-file"
            settings.update(items)
            found = True

        return (settings if found else None), source

    def _resolve_profile(self, name: str, visited: FrozenSet[str]) -> Optional[Loaded]:
        settings, source = self._profile_settings(name)
        if settings is None:
            return None

        for key in UNSUPPORTED_PROFILE_KEYS:
            if key in settings:
                raise CredentialsError(
                    f"profile {name}: {key} is not supported; configure static keys, "
                    "credential_process, or role_arn with source_profile or "
                    "web_identity_token_file"
                )

        visited = visited | {name}
        region = settings.get("region") or self.region

        role_arn = settings.get("role_arn")
        if role_arn:
            return self._assume_profile_role(name, settings, role_arn, region, visited)

        command = settings.get("credential_process")
        if command:
            from .process import process_credentials

            fetch = partial(process_credentials, command)
            return "process", fetch(), fetch

        credentials = static_credentials(settings)
        if credentials is None:
            return None
        return source, credentials, None

    def _assume_profile_role(
        self,
        name: str,
        settings: Dict[str, str],
        role_arn: str,
        region: Optional[str],
        visited: FrozenSet[str],
    ) -> Loaded:
        from .sts import assume_role, assume_role_with_web_identity

        session_name = settings.get("role_session_name") or default_session_name()

        token_file = settings.get("web_identity_token_file")
        if token_file:
            exchange = partial(
                assume_role_with_web_identity, role_arn, token_file, session_name, region
            )
            return "web-identity", exchange(), exchange

        source_profile = settings.get("source_profile")
        if not source_profile:
            raise CredentialsError(
                f"profile {name}: role_arn requires source_profile or "
                "web_identity_token_file"
            )

        def fetch() -> Credentials:
            return assume_role(
                self._source_credentials(name, settings, source_profile, visited),
                role_arn,
                session_name,
                region,
                external_id=settings.get("external_id"),
                duration_seconds=settings.get("duration_seconds"),
            )

        return "assume-role", fetch(), fetch

    def _source_credentials(
        self,
        name: str,
        settings: Dict[str, str],
        source_profile: str,
        visited: FrozenSet[str],
    ) -> Credentials:
        # A profile may name itself as source to assume a role with its own keys.
        if source_profile == name:
            credentials = static_credentials(settings)
            if credentials is None:
                raise CredentialsError(
                    f"profile {name}: source_profile refers to itself but the "
                    "profile has no static keys"
                )
            return credentials

        if source_profile in visited:
            raise CredentialsError(
                f"profile {name}: source_profile {source_profile} forms a loop"
            )

        loaded = self._resolve_profile(source_profile, visited)
        if loaded is None:
            raise CredentialsError(
                f"profile {name}: source_profile {source_profile} has no credentials"
            )
        return loaded[1]


class RefreshableCredentials:
    """
    Holder for expiring credentials with a background refresh thread.

    Credentials are refreshed approximately 5 minutes before expiration.
    The whole tuple is swapped under a lock, so :meth:`get` never returns a
    new access key paired with an old secret.

    :param credentials: Initial credentials.
    :type credentials: Credentials
    :param fetch: Blocking call returning fresh credentials.
    :type fetch: Callable[[], Credentials]
    """

    def __init__(self, credentials: Credentials, fetch: Callable[[], Credentials]):
        self._credentials = credentials
        self._lock = threading.Lock()
        self.fetch = fetch
        self.shutdown_event = threading.Event()
        self.refresh_thread: Optional[threading.Thread] = None

    def get(self) -> Credentials:
        with self._lock:
            return self._credentials

    def set(self, credentials: Credentials) -> None:
        with self._lock:
            self._credentials = credentials

    def start_refresh_thread(self) -> None:
        if self.refresh_thread and self.refresh_thread.is_alive():
            return

        self.shutdown_event.clear()
        self.refresh_thread = threading.Thread(
            target=self.task_refresh_credentials, daemon=True
        )
        self.refresh_thread.start()

    def stop_refresh_thread(self) -> None:
        if self.refresh_thread and self.refresh_thread.is_alive():
            self.shutdown_event.set()
            self.refresh_thread.join()

    def seconds_until_refresh(self) -> float:
        expiration = self.get().expiration
        if expiration is None:
            return DEFAULT_REFRESH_INTERVAL
        refresh_time = (expiration - datetime.timedelta(minutes=5)).timestamp()
        now = datetime.datetime.now(datetime.timezone.utc).timestamp()
        return max(refresh_time - now, 5)  # Min sleep 5 sec

    def refresh(self) -> bool:
        try:
            credentials = self.fetch()
        except CredentialsError as e:
            logger.debug(f"Failed to refresh credentials: {e}")
            return False

        if not credentials.is_complete():
            logger.debug("Refreshed credentials are incomplete, keeping current ones")
            return False

        self.set(credentials)
        logger.debug(
            f"Refreshed credentials (Access Key: {mask_access_key(credentials.access_key_id)})"
        )
        return True

    def task_refresh_credentials(self) -> None:
        """
        Background thread body. Exits when ``shutdown_event`` is set.
        """
        while not self.shutdown_event.is_set():
            remaining_time = self.seconds_until_refresh()

            while remaining_time > 0 and not self.shutdown_event.is_set():
                interval = min(remaining_time, 30)  # Sleep in 30-second increments
                self.shutdown_event.wait(interval)
                remaining_time -= interval

            if self.shutdown_event.is_set():
                return

            if self.refresh():
                continue

            # Retry with exponential backoff
            for i in range(5):
                wait = min(2**i, 60)
                logger.debug(f"Retrying in {wait} seconds...")
                if self.shutdown_event.wait(wait):
                    return
                if self.refresh():
                    break
            else:
                logger.warning("Failed to refresh credentials after multiple attempts")
                # Avoid spinning when the old credentials have already expired.
                if self.shutdown_event.wait(60):
                    return
