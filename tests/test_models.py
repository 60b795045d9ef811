"""
Brief: Tests for dohbridge.models value objects and resolver document parsing.

Inputs:
  - None

Outputs:
  - None
"""

import pytest

from dohbridge.codec import build_query
from dohbridge.errors import MalformedResultError
from dohbridge.models import Query, ResolutionResult, Response, parse_resolution_result


def test_query_reads_id_and_flags_from_raw():
    raw = build_query("example.com", 1, qid=0xABCD, flags=0x0900)
    q = Query(raw=raw, name="example.com", qtype=1, src_addr=("10.0.0.1", 53))
    assert q.id == 0xABCD
    assert q.flags == 0x0900
    assert q.key == (0xABCD, ("10.0.0.1", 53))


def test_query_equality_ignores_src_addr():
    raw = build_query("example.com", 1, qid=7)
    a = Query(raw=raw, name="example.com", qtype=1, src_addr=("10.0.0.1", 1))
    b = Query(raw=raw, name="example.com", qtype=1, src_addr=("10.0.0.2", 2))
    assert a == b
    assert a.key != b.key


def test_response_id():
    assert Response(b"\x01\x02" + b"\x00" * 10).id == 0x0102


def test_parse_full_document(resolver_doc):
    doc = resolver_doc(
        answers=[{"name": "example.com.", "type": 1, "TTL": 30, "data": "1.2.3.4"}],
        AD=True,
    )
    doc["Comment"] = "Response from 192.0.2.1."
    r = parse_resolution_result(doc)
    assert isinstance(r, ResolutionResult)
    assert r.status == 0
    assert (r.tc, r.rd, r.ra, r.ad, r.cd) == (False, True, True, True, False)
    assert r.question[0].name == "example.com."
    assert r.answer[0].ttl == 30
    assert r.answer[0].data == "1.2.3.4"


def test_flags_default_to_false():
    r = parse_resolution_result({"Status": 2, "Question": [{"name": "x.", "type": 1}]})
    assert not any((r.tc, r.rd, r.ra, r.ad, r.cd))
    assert r.answer == []


def test_parse_passes_result_through(resolver_doc):
    r = parse_resolution_result(resolver_doc())
    assert parse_resolution_result(r) is r


def test_null_answer_is_empty(resolver_doc):
    doc = resolver_doc()
    doc["Answer"] = None
    assert parse_resolution_result(doc).answer == []


@pytest.mark.parametrize(
    "doc",
    [
        {"Question": [{"name": "x.", "type": 1}]},
        {"Status": 0},
        {"Status": "zero", "Question": []},
        {"Status": 0, "Question": [{"name": "x."}]},
        {"Status": 0, "Question": [], "Answer": [{"name": "x.", "type": 1, "data": "1.1.1.1"}]},
    ],
)
def test_missing_or_bad_fields_raise(doc):
    with pytest.raises(MalformedResultError):
        parse_resolution_result(doc)


@pytest.mark.parametrize("doc", [None, [], "text", 3])
def test_non_object_raises(doc):
    with pytest.raises(MalformedResultError):
        parse_resolution_result(doc)
