"""
Brief: Global pytest configuration: src/ on sys.path, per-test 10s timeout,
and a local stub of the resolver JSON API.

Inputs:
  - None

Outputs:
  - None
"""

import json
import os
import signal
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

import pytest

# Ensure 'src' is on sys.path so 'dohbridge' is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def _no_http_proxy(monkeypatch):
    """Keep requests to the local resolver stub off any configured proxy."""
    for var in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


def make_doc(name="example.com.", qtype=1, answers=None, status=0, **flags):
    """Build a resolver JSON document the way dns.google returns it."""
    doc = {
        "Status": status,
        "TC": flags.get("TC", False),
        "RD": flags.get("RD", True),
        "RA": flags.get("RA", True),
        "AD": flags.get("AD", False),
        "CD": flags.get("CD", False),
        "Question": [{"name": name, "type": qtype}],
    }
    if answers is not None:
        doc["Answer"] = answers
    return doc


class _ResolverStubHandler(BaseHTTPRequestHandler):
    """Serves /resolve from server.routes: {(name, type): (status, body)}."""

    def do_GET(self):  # noqa: N802
        url = urlparse(self.path)
        qs = parse_qs(url.query)
        name = qs.get("name", [""])[0]
        qtype = qs.get("type", [""])[0]
        self.server.requests.append(  # type: ignore[attr-defined]
            {"path": url.path, "name": name, "type": qtype, "headers": dict(self.headers)}
        )
        srv = self.server
        with srv.lock:  # type: ignore[attr-defined]
            srv.in_flight += 1  # type: ignore[attr-defined]
            srv.peak_in_flight = max(srv.peak_in_flight, srv.in_flight)  # type: ignore[attr-defined]
        try:
            if srv.delay:  # type: ignore[attr-defined]
                time.sleep(srv.delay)  # type: ignore[attr-defined]
        finally:
            with srv.lock:  # type: ignore[attr-defined]
                srv.in_flight -= 1  # type: ignore[attr-defined]
        routes = self.server.routes  # type: ignore[attr-defined]
        status, body = routes.get((name, qtype), (200, make_doc(name or ".", int(qtype or 1))))
        payload = body if isinstance(body, bytes) else json.dumps(body).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, fmt, *args):  # quiet
        return


@pytest.fixture
def resolver_stub():
    """
    Brief: Run a local HTTP server imitating the JSON resolution API.

    Outputs:
      - server object with .url, .routes (mutable mapping), .requests log,
        .delay (seconds to hold each request) and .peak_in_flight
    """
    srv = ThreadingHTTPServer(("127.0.0.1", 0), _ResolverStubHandler)
    srv.daemon_threads = True
    srv.routes = {}
    srv.requests = []
    srv.delay = 0.0
    srv.lock = threading.Lock()
    srv.in_flight = 0
    srv.peak_in_flight = 0
    host, port = srv.server_address
    srv.url = f"http://{host}:{port}/resolve"
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    try:
        yield srv
    finally:
        srv.shutdown()
        srv.server_close()


@pytest.fixture
def resolver_doc():
    """Factory fixture for resolver JSON documents (see make_doc)."""
    return make_doc
