"""dohbridge package: classic UDP DNS in front of a JSON DNS-over-HTTPS resolver."""

from .bridge import Bridge, QueryState, Ticket
from .codec import decode_query, encode_response
from .errors import (
    BridgeError,
    FormatError,
    MalformedResultError,
    ResolutionError,
    UnsupportedRecordTypeError,
)
from .models import Query, ResolutionResult, Response
from .transports.json_api import ResolverClient
from .version import DOHBRIDGE_VERSION as __version__

__all__ = [
    "__version__",
    "Bridge",
    "BridgeError",
    "FormatError",
    "MalformedResultError",
    "Query",
    "QueryState",
    "ResolutionError",
    "ResolutionResult",
    "ResolverClient",
    "Response",
    "Ticket",
    "UnsupportedRecordTypeError",
    "decode_query",
    "encode_response",
]
