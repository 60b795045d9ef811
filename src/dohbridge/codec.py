"""DNS wire-format codec for the bridge.

Brief:
  Pure functions, no I/O and no state:
    - decode_query(): raw UDP payload -> Query (single question, no
      compression pointers)
    - encode_response(): Query + ResolutionResult -> Response
    - helpers to encode names, TXT character-strings and RDATA

Inputs:
  - bytes from the transport loop and parsed resolver documents

Outputs:
  - Query / Response value objects
"""

from __future__ import annotations

import ipaddress
import logging
import re
import struct
from typing import Any, Iterable, List, Mapping, Union

from dnslib import RCODE, DNSError, DNSRecord

from .errors import FormatError, UnsupportedRecordTypeError
from .models import (
    AnswerEntry,
    Query,
    QuestionEntry,
    ResolutionResult,
    Response,
    parse_resolution_result,
)

logger = logging.getLogger("dohbridge.codec")

__all__ = [
    "FormatError",
    "UnsupportedRecordTypeError",
    "build_query",
    "build_servfail",
    "decode_query",
    "encode_character_strings",
    "encode_name",
    "encode_rdata",
    "encode_response",
    "response_flags",
]

HEADER_LEN = 12
CLASS_IN = 1

TYPE_A = 1
TYPE_CNAME = 5
TYPE_PTR = 12
TYPE_TXT = 16
TYPE_AAAA = 28

FLAG_QR = 0x8000
FLAG_OPCODE = 0x7000
FLAG_AA = 0x0400
FLAG_TC = 0x0200
FLAG_RD = 0x0100
FLAG_RA = 0x0080
FLAG_AD = 0x0020
FLAG_CD = 0x0010
RCODE_MASK = 0x000F

MAX_LABEL_LEN = 63
MAX_NAME_LEN = 255
MAX_CHARSTRING_LEN = 255

# XXX: escaped quotes (\") inside TXT data are not recognised
_QUOTED = re.compile(r'"([^"]*)"')


def decode_query(data: bytes, src_addr: Any = None) -> Query:
    """
    Brief: Decode the question of an inbound DNS query.

    Inputs:
      - data: raw datagram bytes
      - src_addr: sender address, stored on the Query untouched

    Outputs:
      - Query with name and qtype read from offset 12 onward

    Raises:
      - FormatError: datagram shorter than a header, a label or the type
        field running past the end, a compression pointer, or a non-ASCII
        label.

    Notes:
      - QCLASS and any further questions are not read.

    Example:
        >>> q = decode_query(b"\\x00\\x01\\x01\\x00" + b"\\x00" * 8
        ...                  + b"\\x07example\\x03com\\x00\\x00\\x01\\x00\\x01")
        >>> q.name, q.qtype
        ('example.com', 1)
    """
    data = bytes(data)
    if len(data) < HEADER_LEN:
        raise FormatError(f"datagram too short for a DNS header ({len(data)} bytes)")

    labels: List[bytes] = []
    i = HEADER_LEN
    while True:
        if i >= len(data):
            raise FormatError("truncated question: missing label length")
        length = data[i]
        i += 1
        if length == 0:
            break
        if length & 0xC0:
            raise FormatError(f"unsupported label type 0x{length:02x} at offset {i - 1}")
        if i + length > len(data):
            raise FormatError(
                f"truncated label: need {length} bytes at offset {i}, "
                f"have {len(data) - i}"
            )
        labels.append(data[i : i + length])
        i += length

    if i + 2 > len(data):
        raise FormatError("truncated question: missing QTYPE")
    (qtype,) = struct.unpack("!H", data[i : i + 2])

    try:
        name = ".".join(label.decode("ascii") for label in labels)
    except UnicodeDecodeError as exc:
        raise FormatError(f"non-ASCII label in question name: {exc}") from exc

    return Query(raw=data, name=name, qtype=qtype, src_addr=src_addr)


def encode_name(name: str) -> bytes:
    """
    Brief: Encode a domain name as length-prefixed labels ending in a zero byte.

    Inputs:
      - name: dotted name; a single trailing dot is ignored

    Outputs:
      - bytes wire form

    Raises:
      - FormatError: empty inner label, label over 63 bytes, name over 255
        bytes, or non-ASCII text.

    Example:
        >>> encode_name("example.com.")
        b'\\x07example\\x03com\\x00'
        >>> encode_name(".")
        b'\\x00'
    """
    if name.endswith("."):
        name = name[:-1]
    if not name:
        return b"\x00"

    out = bytearray()
    for label in name.split("."):
        try:
            raw = label.encode("ascii")
        except UnicodeEncodeError as exc:
            raise FormatError(f"non-ASCII label {label!r} in {name!r}") from exc
        if not raw:
            raise FormatError(f"empty label in {name!r}")
        if len(raw) > MAX_LABEL_LEN:
            raise FormatError(f"label {label!r} exceeds {MAX_LABEL_LEN} bytes")
        out.append(len(raw))
        out += raw
    out.append(0)
    if len(out) > MAX_NAME_LEN:
        raise FormatError(f"name {name!r} exceeds {MAX_NAME_LEN} bytes")
    return bytes(out)


def encode_character_strings(data: str) -> bytes:
    """
    Brief: Turn resolver TXT data into DNS character-strings.

    Inputs:
      - data: TXT text as returned by the resolver, e.g. '"hello" "world"'

    Outputs:
      - bytes: one length-prefixed segment per double-quoted substring;
        unquoted text is dropped

    Example:
        >>> encode_character_strings('"hello" "world"')
        b'\\x05hello\\x05world'
    """
    out = bytearray()
    for segment in _QUOTED.findall(data):
        raw = segment.encode("utf-8")
        if len(raw) > MAX_CHARSTRING_LEN:
            raise FormatError(
                f"TXT segment of {len(raw)} bytes exceeds {MAX_CHARSTRING_LEN}"
            )
        out.append(len(raw))
        out += raw
    return bytes(out)


def _encode_address(rtype: int, data: str) -> bytes:
    try:
        if rtype == TYPE_A:
            return ipaddress.IPv4Address(data.strip()).packed
        return ipaddress.IPv6Address(data.strip()).packed
    except ValueError as exc:
        raise FormatError(f"invalid address {data!r} for type {rtype}") from exc


def encode_rdata(rtype: int, data: str) -> bytes:
    """
    Brief: Encode the RDATA of one answer record.

    Inputs:
      - rtype: numeric record type
      - data: textual record data from the resolver

    Outputs:
      - bytes RDATA

    Raises:
      - UnsupportedRecordTypeError: rtype outside A, AAAA, CNAME, PTR, TXT
      - FormatError: data cannot be represented for that type
    """
    if rtype in (TYPE_A, TYPE_AAAA):
        return _encode_address(rtype, data)
    if rtype in (TYPE_CNAME, TYPE_PTR):
        return encode_name(data)
    if rtype == TYPE_TXT:
        return encode_character_strings(data)
    raise UnsupportedRecordTypeError(rtype)


def response_flags(query_flags: int, result: ResolutionResult) -> int:
    """
    Brief: Compose the response flag word.

    Inputs:
      - query_flags: flag word of the original query
      - result: parsed resolver document

    Outputs:
      - int: QR set, Opcode/AA copied from the query, TC/RD/RA/AD/CD from the
        result, RCODE from the low four bits of Status
    """
    word = FLAG_QR
    word |= query_flags & FLAG_OPCODE
    word |= query_flags & FLAG_AA
    if result.tc:
        word |= FLAG_TC
    if result.rd:
        word |= FLAG_RD
    if result.ra:
        word |= FLAG_RA
    if result.ad:
        word |= FLAG_AD
    if result.cd:
        word |= FLAG_CD
    word |= result.status & RCODE_MASK
    return word


def _pack_u16(value: int, what: str) -> bytes:
    if not 0 <= value <= 0xFFFF:
        raise FormatError(f"{what} {value} does not fit in 16 bits")
    return struct.pack("!H", value)


def _encode_questions(questions: Iterable[QuestionEntry]) -> bytes:
    out = bytearray()
    for q in questions:
        out += encode_name(q.name)
        out += _pack_u16(q.type, "question type")
        out += struct.pack("!H", CLASS_IN)
    return bytes(out)


def _encode_answers(answers: Iterable[AnswerEntry]) -> bytes:
    out = bytearray()
    for a in answers:
        rdata = encode_rdata(a.type, a.data)
        if not 0 <= a.ttl <= 0xFFFFFFFF:
            raise FormatError(f"TTL {a.ttl} out of range for {a.name}")
        out += encode_name(a.name)
        out += struct.pack("!HHIH", a.type, CLASS_IN, a.ttl, len(rdata))
        out += rdata
    return bytes(out)


def encode_response(
    query: Query, result: Union[ResolutionResult, Mapping[str, Any]]
) -> Response:
    """
    Brief: Encode the resolver's answer as a DNS response to ``query``.

    Inputs:
      - query: the decoded inbound Query (ID and flags re-read from query.raw)
      - result: ResolutionResult, or a raw mapping that is parsed first

    Outputs:
      - Response whose bytes start with the query ID and whose dst_addr is the
        query's src_addr

    Raises:
      - UnsupportedRecordTypeError: any answer has a type the encoder cannot
        emit; nothing is returned for the whole message
      - FormatError: a name, address, TTL or TXT segment is not encodable
      - MalformedResultError: a raw mapping fails validation
    """
    result = parse_resolution_result(result)

    body = _encode_questions(result.question) + _encode_answers(result.answer)
    header = struct.pack(
        "!HHHHHH",
        query.id,
        response_flags(query.flags, result),
        len(result.question),
        len(result.answer),
        0,
        0,
    )
    return Response(data=header + body, dst_addr=query.src_addr)


def build_query(name: str, qtype: int, qid: int = 0, flags: int = FLAG_RD) -> bytes:
    """
    Brief: Build a minimal single-question query (class IN).

    Example:
        >>> decode_query(build_query("example.com", 28, qid=7)).qtype
        28
    """
    header = struct.pack("!HHHHHH", qid, flags, 1, 0, 0, 0)
    return header + encode_name(name) + _pack_u16(qtype, "query type") + struct.pack(
        "!H", CLASS_IN
    )


def build_servfail(query: Query) -> Response:
    """
    Brief: Build a SERVFAIL reply that echoes the query's ID and question.

    Inputs:
      - query: decoded Query

    Outputs:
      - Response addressed to query.src_addr

    Raises:
      - FormatError: dnslib cannot parse the original datagram
    """
    try:
        request = DNSRecord.parse(query.raw)
    except (DNSError, struct.error, IndexError) as exc:
        raise FormatError(f"cannot build SERVFAIL for query {query.id}: {exc}") from exc
    reply = request.reply(ra=1, aa=0)
    reply.header.rcode = RCODE.SERVFAIL
    wire = bytearray(reply.pack())
    wire[0:2] = query.raw[0:2]
    logger.debug("Synthesized SERVFAIL for %s (id=%d)", query.name, query.id)
    return Response(data=bytes(wire), dst_addr=query.src_addr)
