import argparse
import logging
from dataclasses import dataclass, field
from os import environ
from typing import Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

from .signer import SignatureVersion


class ConfigError(Exception):
    pass


TRUTHY = ("1", "true", "yes", "on")


@dataclass
class Config:
    """
    Proxy configuration.

    Every field can come from a command line flag or an environment
    variable; flags win.
    """

    target_url: str = ""
    region: str = ""
    service_name: str = ""
    signature_version: str = SignatureVersion.V4.value
    profile: str = "default"
    enable_sse: bool = False
    timeout: Optional[float] = None
    headers: Dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"

    def validate(self) -> None:
        """
        :raises ConfigError: Listing every invalid or missing value.
        """
        errors: List[str] = []

        if not self.target_url:
            errors.append("target URL is required (set --target-url or MCP_TARGET_URL)")
        elif urlparse(self.target_url).scheme not in ("http", "https"):
            errors.append(
                f"target URL must use http or https scheme (got {self.target_url!r})"
            )

        if not self.region:
            errors.append("region is required (set --region or AWS_REGION)")

        if not self.service_name:
            errors.append(
                "service name is required (set --service-name or AWS_SERVICE_NAME)"
            )

        if self.signature_version not in {v.value for v in SignatureVersion}:
            errors.append(
                "signature version must be 'v4' or 'v4a' "
                f"(got {self.signature_version!r}; set --sig-version or AWS_SIG_VERSION)"
            )

        if self.timeout is not None and self.timeout <= 0:
            errors.append("timeout must be a positive number of seconds")

        if not isinstance(logging.getLevelName(self.log_level), int):
            errors.append(f"unknown log level {self.log_level!r}")

        if errors:
            raise ConfigError("invalid configuration: " + "; ".join(errors))


def parse_headers(value: str) -> Dict[str, str]:
    """
    Parse ``key=value,key2=value2`` into a header mapping.

    :raises ConfigError: On a pair without ``=`` or with an empty key.
    """
    headers: Dict[str, str] = {}
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        name, sep, header_value = token.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ConfigError(f"invalid header {token!r}: expected key=value")
        headers[name] = header_value.strip()
    return headers


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-sigv4-proxy",
        description="Forward MCP messages from stdio to a remote MCP server, "
        "signing every request with AWS SigV4.",
    )
    parser.add_argument("--target-url", help="target MCP server URL [MCP_TARGET_URL]")
    parser.add_argument("--region", help="AWS region for signing [AWS_REGION]")
    parser.add_argument(
        "--service-name", help="AWS service name for signing [AWS_SERVICE_NAME]"
    )
    parser.add_argument(
        "--sig-version", help="signature version, v4 or v4a [AWS_SIG_VERSION]"
    )
    parser.add_argument("--profile", help="AWS credential profile [AWS_PROFILE]")
    parser.add_argument(
        "--enable-sse",
        action="store_true",
        default=None,
        help="relay server-initiated messages over SSE [MCP_ENABLE_SSE]",
    )
    parser.add_argument(
        "--timeout", help="connect and response timeout in seconds, default 30 [MCP_TIMEOUT]"
    )
    parser.add_argument(
        "--headers", help="extra headers, key=value,key2=value2 [MCP_HEADERS]"
    )
    parser.add_argument("--log-level", help="logging level [LOG_LEVEL]")
    return parser


def load(
    argv: Optional[Sequence[str]] = None, env: Optional[Mapping[str, str]] = None
) -> Config:
    """
    Build a validated :class:`Config` from flags and environment variables.

    :raises ConfigError: If a value is missing or invalid.
    """
    env = environ if env is None else env
    args = build_parser().parse_args(argv)

    def pick(flag: Optional[str], *names: str) -> Optional[str]:
        if flag:
            return flag
        for name in names:
            if env.get(name):
                return env[name]
        return None

    config = Config(
        target_url=pick(args.target_url, "MCP_TARGET_URL") or "",
        region=pick(args.region, "AWS_REGION", "AWS_DEFAULT_REGION") or "",
        service_name=pick(args.service_name, "AWS_SERVICE_NAME") or "",
        signature_version=pick(args.sig_version, "AWS_SIG_VERSION")
        or SignatureVersion.V4.value,
        profile=pick(args.profile, "AWS_PROFILE") or "default",
        log_level=(pick(args.log_level, "LOG_LEVEL") or "INFO").upper(),
    )

    if args.enable_sse is not None:
        config.enable_sse = args.enable_sse
    else:
        config.enable_sse = env.get("MCP_ENABLE_SSE", "").lower() in TRUTHY

    timeout = pick(args.timeout, "MCP_TIMEOUT")
    if timeout is not None:
        try:
            config.timeout = float(timeout)
        except ValueError:
            raise ConfigError(f"invalid timeout {timeout!r}: expected seconds") from None

    headers = pick(args.headers, "MCP_HEADERS")
    if headers:
        config.headers = parse_headers(headers)

    config.validate()
    return config
