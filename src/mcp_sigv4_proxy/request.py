from dataclasses import dataclass, field
from typing import Union

from multidict import CIMultiDict
from yarl import URL


def url_host(url: URL) -> str:
    host = url.raw_host or ""
    if ":" in host:
        host = f"[{host}]"
    if url.port is not None and not url.is_default_port():
        host = f"{host}:{url.port}"
    return host


@dataclass
class Request:
    """
    The parts of an outbound HTTP request that a signature covers.

    The signer adds its headers to ``headers`` in place. The payload is
    passed to the signer as a precomputed SHA-256 hash, so no body is kept.

    :param method: HTTP method (e.g. "POST").
    :type method: str
    :param url: Target URL. Strings are parsed with :class:`yarl.URL`.
    :type url: Union[str, URL]
    :param headers: Case-insensitive request headers.
    :type headers: CIMultiDict[str]
    """

    method: str
    url: Union[str, URL]
    headers: "CIMultiDict[str]" = field(default_factory=CIMultiDict)

    def __post_init__(self) -> None:
        if isinstance(self.url, str):
            self.url = URL(self.url)
        if not isinstance(self.headers, CIMultiDict):
            self.headers = CIMultiDict(self.headers)

    @property
    def host(self) -> str:
        return url_host(self.url)  # type: ignore
