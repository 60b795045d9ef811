import logging
import time
from typing import Dict, Optional, Union

import requests

from ..errors import ResolutionError
from ..models import ResolutionResult, parse_resolution_result
from ..version import DOHBRIDGE_VERSION

logger = logging.getLogger("dohbridge.resolver")

DEFAULT_URL = "https://dns.google/resolve"


class ResolverClient:
    """
    Brief: JSON resolution API client (``GET /resolve?name=..&type=..``).

    Inputs (constructor):
    - url: resolver endpoint, default https://dns.google/resolve
    - timeout_ms: optional per-request timeout; None leaves latency unbounded
    - verify: verify TLS certificates
    - ca_file: optional CA bundle path used for verification
    - headers: optional extra request headers
    - session: optional pre-built requests.Session (tests)

    Outputs:
    - ResolverClient; one persistent connection is kept open across calls.

    Notes:
    - Nothing is retried. Transport failures, non-2xx status and non-JSON
      bodies raise ResolutionError; JSON that does not match the expected
      document raises MalformedResultError.

    Example:
        >>> with ResolverClient() as client:  # doctest: +SKIP
        ...     client.resolve("example.com", 1).status
        0
    """

    def __init__(
        self,
        url: str = DEFAULT_URL,
        *,
        timeout_ms: Optional[int] = None,
        verify: bool = True,
        ca_file: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout_ms / 1000.0 if timeout_ms else None
        self.verify: Union[bool, str] = (ca_file or True) if verify else False

        self.session = session if session is not None else requests.Session()
        hdrs = {"Accept": "application/dns-json"}
        extra = dict(headers or {})
        # Explicit User-Agent wins regardless of casing
        if not any(k.lower() == "user-agent" for k in extra):
            hdrs["User-Agent"] = f"dohbridge/{DOHBRIDGE_VERSION}"
        hdrs.update(extra)
        self.session.headers.update(hdrs)

    def resolve(self, name: str, qtype: int) -> ResolutionResult:
        """
        Brief: Resolve one (name, type) pair.

        Inputs:
        - name: query name as decoded from the datagram
        - qtype: numeric record type

        Outputs:
        - ResolutionResult

        Raises:
        - ResolutionError: network/TLS failure, non-success HTTP status, or
          a body that is not JSON
        - MalformedResultError: JSON missing required fields
        """
        params = {"name": name, "type": str(qtype)}
        started = time.monotonic()
        try:
            resp = self.session.get(
                self.url, params=params, timeout=self.timeout, verify=self.verify
            )
        except requests.RequestException as exc:
            raise ResolutionError(f"request for {name}/{qtype} failed: {exc}") from exc
        rtt = time.monotonic() - started
        logger.debug("query: %s, status=%d, rtt=%.3fs", resp.url, resp.status_code, rtt)

        if not resp.ok:
            raise ResolutionError(f"HTTP {resp.status_code}: {resp.reason}")

        try:
            doc = resp.json()
        except ValueError as exc:
            # requests raises a ValueError subclass (JSONDecodeError)
            raise ResolutionError(f"invalid JSON body for {name}/{qtype}: {exc}") from exc

        return parse_resolution_result(doc)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "ResolverClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = [
    "DEFAULT_URL",
    "ResolutionError",
    "ResolverClient",
]
