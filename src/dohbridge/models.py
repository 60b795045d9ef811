"""Value objects handed across the bridge pipeline.

Brief:
  - Query / Response are immutable per-datagram records.
  - ResolutionResult and friends are the typed view of the resolver's JSON
    document; parsing fails fast with MalformedResultError instead of letting
    a missing key surface later as a KeyError inside the encoder.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, List, Mapping

from pydantic import BaseModel, Field, ValidationError

from .errors import MalformedResultError

__all__ = [
    "AnswerEntry",
    "Query",
    "QuestionEntry",
    "ResolutionResult",
    "Response",
    "parse_resolution_result",
]


@dataclass(frozen=True)
class Query:
    """
    Brief: One decoded inbound datagram.

    Inputs:
      - raw: original datagram bytes (ID and flag word are re-read from here)
      - name: dot-joined question name
      - qtype: requested record type
      - src_addr: transport address of the sender, carried opaquely

    Outputs:
      - Query instance

    Example:
        >>> q = Query(raw=b"\\x12\\x34\\x01\\x00" + b"\\x00" * 9, name="", qtype=1)
        >>> hex(q.id), hex(q.flags)
        ('0x1234', '0x100')
    """

    raw: bytes
    name: str
    qtype: int
    src_addr: Any = field(default=None, compare=False)

    @property
    def id(self) -> int:
        return struct.unpack("!H", self.raw[0:2])[0]

    @property
    def flags(self) -> int:
        return struct.unpack("!H", self.raw[2:4])[0]

    @property
    def key(self) -> tuple:
        """Correlation key: (transaction id, source address)."""
        return (self.id, self.src_addr)


@dataclass(frozen=True)
class Response:
    """Fully encoded DNS reply plus the address it goes back to."""

    data: bytes
    dst_addr: Any = None

    @property
    def id(self) -> int:
        return struct.unpack("!H", self.data[0:2])[0]


class QuestionEntry(BaseModel):
    """One entry of the resolver's ``Question`` array."""

    name: str
    type: int


class AnswerEntry(BaseModel):
    """One entry of the resolver's ``Answer`` array."""

    name: str
    type: int
    ttl: int = Field(alias="TTL")
    data: str


class ResolutionResult(BaseModel):
    """
    Brief: Typed JSON answer document returned by the resolver API.

    Inputs:
      - Status and Question (required); TC, RD, RA, AD, CD (absent means
        false); Answer (optional)

    Outputs:
      - ResolutionResult instance; unknown keys such as Comment/Authority are
        ignored.
    """

    status: int = Field(alias="Status")
    tc: bool = Field(default=False, alias="TC")
    rd: bool = Field(default=False, alias="RD")
    ra: bool = Field(default=False, alias="RA")
    ad: bool = Field(default=False, alias="AD")
    cd: bool = Field(default=False, alias="CD")
    question: List[QuestionEntry] = Field(alias="Question")
    answer: List[AnswerEntry] = Field(default_factory=list, alias="Answer")

    class Config:
        extra = "ignore"


def parse_resolution_result(doc: Any) -> ResolutionResult:
    """
    Brief: Validate a decoded JSON document into a ResolutionResult.

    Inputs:
      - doc: object produced by json.loads on the resolver body

    Outputs:
      - ResolutionResult

    Raises:
      - MalformedResultError: when doc is not a mapping or a required field is
        missing or has the wrong type.

    Example:
        >>> r = parse_resolution_result({
        ...     "Status": 0, "TC": False, "RD": True, "RA": True, "AD": False,
        ...     "CD": False, "Question": [{"name": "example.com.", "type": 1}],
        ... })
        >>> r.answer
        []
    """
    if isinstance(doc, ResolutionResult):
        return doc
    if not isinstance(doc, Mapping):
        raise MalformedResultError(
            f"resolver document must be a JSON object, got {type(doc).__name__}"
        )
    data = dict(doc)
    # "Answer": null is treated like an absent Answer
    if data.get("Answer") is None:
        data.pop("Answer", None)
    try:
        return ResolutionResult(**data)
    except ValidationError as exc:
        raise MalformedResultError(f"invalid resolver document: {exc}") from exc
