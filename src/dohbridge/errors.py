"""Exception hierarchy shared by the codec, resolver transport and bridge."""


class BridgeError(Exception):
    """Base class for every error raised by dohbridge."""


class FormatError(BridgeError):
    """
    Brief: A DNS message could not be decoded or encoded.

    Raised for truncated or malformed inbound datagrams, and for names or
    RDATA values that cannot be represented on the wire.
    """


class UnsupportedRecordTypeError(BridgeError):
    """
    Brief: An answer carries a record type the encoder cannot emit.

    Inputs:
      - rtype: the offending numeric record type

    Outputs:
      - Exception instance; ``rtype`` is kept as an attribute
    """

    def __init__(self, rtype: int):
        super().__init__(f"type {rtype} is not supported")
        self.rtype = rtype


class ResolutionError(BridgeError):
    """
    Brief: The HTTPS resolution request failed.

    Covers transport failures, non-success HTTP status and bodies that are not
    JSON. The underlying exception is chained as ``__cause__``.
    """


class MalformedResultError(BridgeError):
    """The resolver returned JSON that does not match the expected document."""
