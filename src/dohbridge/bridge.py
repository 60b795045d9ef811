"""Pipeline that correlates inbound queries with resolver round trips.

Brief:
  A Bridge owns a bounded inbound queue, a pool of worker threads (each with
  its own ResolverClient and so its own persistent HTTPS connection) and an
  outbound queue of encoded Responses. Every submitted Query gets a Ticket
  that walks RECEIVED -> DISPATCHED -> ANSWERED | FAILED.

  Accepted queries are numbered; completions are released to the outbound
  queue in that order, so responses leave in arrival order even when several
  resolutions are in flight. A FAILED query releases its slot without a
  Response (unless servfail_on_failure is set).
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

from .codec import build_servfail, encode_response
from .errors import (
    BridgeError,
    FormatError,
    MalformedResultError,
    ResolutionError,
    UnsupportedRecordTypeError,
)
from .models import Query, ResolutionResult, Response, parse_resolution_result
from .stats import BridgeStats

logger = logging.getLogger("dohbridge.bridge")

__all__ = ["Bridge", "QueryState", "Resolver", "Ticket"]


class Resolver(Protocol):
    def resolve(self, name: str, qtype: int) -> ResolutionResult: ...


class QueryState(enum.Enum):
    RECEIVED = "received"
    DISPATCHED = "dispatched"
    ANSWERED = "answered"
    FAILED = "failed"


class Ticket:
    """
    Brief: Handle on one query travelling through the bridge.

    Inputs (constructor):
      - query: the decoded Query
      - seq: arrival sequence number, or None when the query was rejected

    Outputs:
      - Ticket; ``wait()`` returns once the query reached a terminal state and
        its response (if any) has been pushed to the outbound queue.
    """

    def __init__(self, query: Query, seq: Optional[int] = None) -> None:
        self.query = query
        self.seq = seq
        self.state = QueryState.RECEIVED
        self.response: Optional[Response] = None
        self.error: Optional[BaseException] = None
        self.reason: Optional[str] = None
        self._done = threading.Event()

    @property
    def key(self) -> tuple:
        return self.query.key

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def __repr__(self) -> str:
        return (
            f"<Ticket seq={self.seq} {self.query.name}/{self.query.qtype} "
            f"state={self.state.value} reason={self.reason}>"
        )


_STOP = object()

# Exception type -> failure reason; first match wins.
_FAILURE_REASONS = (
    (ResolutionError, "resolution_error"),
    (MalformedResultError, "malformed_result"),
    (UnsupportedRecordTypeError, "unsupported_type"),
    (FormatError, "encode_error"),
)


class Bridge:
    """
    Brief: Query/response pipeline between the UDP loop and the resolver API.

    Inputs (constructor):
      - client_factory: zero-argument callable returning a resolver client;
        called once per worker inside that worker's thread
      - max_in_flight: number of worker threads, i.e. concurrent resolutions
      - queue_size: capacity of the inbound queue
      - preserve_order: release responses in arrival order
      - servfail_on_failure: answer FAILED queries with SERVFAIL instead of
        dropping them
      - stats: optional shared BridgeStats

    Outputs:
      - Bridge; call start() before submit(), stop() when done.

    Example:
        >>> bridge = Bridge(lambda: ResolverClient())  # doctest: +SKIP
        >>> with bridge:  # doctest: +SKIP
        ...     ticket = bridge.submit(decode_query(data, addr))
        ...     ticket.wait()
        ...     resp = bridge.get_response(timeout=0)
    """

    def __init__(
        self,
        client_factory: Callable[[], Resolver],
        *,
        max_in_flight: int = 1,
        queue_size: int = 1024,
        preserve_order: bool = True,
        servfail_on_failure: bool = False,
        stats: Optional[BridgeStats] = None,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.client_factory = client_factory
        self.max_in_flight = int(max_in_flight)
        self.queue_size = int(queue_size)
        self.preserve_order = bool(preserve_order)
        self.servfail_on_failure = bool(servfail_on_failure)
        self.stats = stats if stats is not None else BridgeStats()

        self._inbound: "queue.Queue[Any]" = queue.Queue(maxsize=self.queue_size)
        self._outbound: "queue.Queue[Response]" = queue.Queue()
        self._lock = threading.Lock()
        self._pending: Dict[tuple, Ticket] = {}
        self._completed: Dict[int, Ticket] = {}
        self._next_seq = 0
        self._next_release = 0
        self._workers: List[threading.Thread] = []
        self._running = False
        self._stopping = threading.Event()
        self._generation = 0

    # -- lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> "Bridge":
        with self._lock:
            if self._running:
                return self
            self._stopping.clear()
            self._running = True
            self._generation += 1
            for i in range(self.max_in_flight):
                t = threading.Thread(
                    target=self._worker_loop,
                    args=(self._generation,),
                    name=f"bridge-worker-{i}",
                    daemon=True,
                )
                self._workers.append(t)
                t.start()
        logger.info("Bridge started with %d worker(s)", self.max_in_flight)
        return self

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """
        Brief: Stop accepting queries, let workers finish, fail what is queued.

        Inputs:
          - timeout: seconds to wait for each worker to exit

        Notes:
          - A worker stuck in a resolution with no timeout is abandoned (the
            threads are daemons). Its ticket stays pending and is released
            out of order whenever the resolution returns; nothing queued or
            submitted later waits behind it.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stopping.set()

        for _ in self._workers:
            try:
                self._inbound.put_nowait(_STOP)
            except queue.Full:
                # busy workers notice _stopping after their current item
                break
        for t in self._workers:
            t.join(timeout=timeout)
        alive = [t.name for t in self._workers if t.is_alive()]
        if alive:
            logger.warning("Bridge workers still busy at shutdown: %s", ", ".join(alive))
        self._workers = []

        drained: List[Ticket] = []
        while True:
            try:
                item = self._inbound.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, Ticket):
                drained.append(item)

        with self._lock:
            # completions parked behind an abandoned resolution
            for seq in sorted(self._completed):
                self._release_locked(self._completed.pop(seq))
            for ticket in drained:
                self._fail_locked(ticket, RuntimeError("bridge stopped"), "shutdown")
                self._release_locked(ticket)
            self._next_release = self._next_seq
        logger.info("Bridge stopped")

    def __enter__(self) -> "Bridge":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()

    # -- inbound / outbound channels ----------------------------------------

    def submit(self, query: Query) -> Ticket:
        """
        Brief: Hand a decoded query to the pipeline.

        Inputs:
          - query: Query with src_addr set

        Outputs:
          - Ticket; already FAILED when the query is a duplicate of one still
            pending (same ID and source address) or the inbound queue is full

        Raises:
          - RuntimeError: the bridge is not running
        """
        with self._lock:
            if not self._running:
                raise RuntimeError("bridge is not running")

            if query.key in self._pending:
                ticket = Ticket(query)
                self._reject_locked(ticket, "duplicate")
                return ticket

            ticket = Ticket(query, self._next_seq)
            try:
                self._inbound.put_nowait(ticket)
            except queue.Full:
                ticket.seq = None
                self._reject_locked(ticket, "queue_full")
                return ticket
            self._next_seq += 1
            self._pending[query.key] = ticket
            self.stats.record_accepted()
        return ticket

    def get_response(self, timeout: Optional[float] = None) -> Optional[Response]:
        """Pop the next Response from the outbound queue, or None on timeout."""
        try:
            if timeout == 0:
                return self._outbound.get_nowait()
            return self._outbound.get(timeout=timeout)
        except queue.Empty:
            return None

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    # -- worker side --------------------------------------------------------

    def _worker_loop(self, generation: int) -> None:
        client = self.client_factory()
        try:
            while True:
                item = self._inbound.get()
                if item is _STOP:
                    break
                self._process(client, item)
                if self._stopping.is_set() or generation != self._generation:
                    break
        finally:
            close = getattr(client, "close", None)
            if callable(close):
                close()

    def _process(self, client: Resolver, ticket: Ticket) -> None:
        query = ticket.query
        ticket.state = QueryState.DISPATCHED
        logger.debug(
            "dispatch seq=%s %s/%d from %s", ticket.seq, query.name, query.qtype, query.src_addr
        )

        response = None
        error: Optional[BaseException] = None
        reason: Optional[str] = None
        try:
            started = time.monotonic()
            try:
                raw = client.resolve(query.name, query.qtype)
            finally:
                self.stats.record_latency(time.monotonic() - started)
            result = parse_resolution_result(raw)
            response = encode_response(query, result)
        except BridgeError as exc:
            error = exc
            reason = next(
                (r for cls, r in _FAILURE_REASONS if isinstance(exc, cls)), "internal_error"
            )
        except Exception as exc:  # noqa: BLE001 - fails only this query
            logger.exception("Unexpected error resolving %s/%d", query.name, query.qtype)
            error = exc
            reason = "internal_error"
        if response is not None:
            self.stats.record_answered(result.status)
        self._complete(ticket, response, error, reason)

    # -- completion / ordered release ---------------------------------------

    def _complete(
        self,
        ticket: Ticket,
        response: Optional[Response],
        error: Optional[BaseException],
        reason: Optional[str],
    ) -> None:
        with self._lock:
            if response is not None:
                ticket.state = QueryState.ANSWERED
                ticket.response = response
            else:
                self._fail_locked(ticket, error, reason or "internal_error")

            # seq below _next_release: abandoned at stop(), already skipped
            if (
                not self.preserve_order
                or ticket.seq is None
                or ticket.seq < self._next_release
            ):
                self._release_locked(ticket)
                return
            self._completed[ticket.seq] = ticket
            while self._next_release in self._completed:
                self._release_locked(self._completed.pop(self._next_release))
                self._next_release += 1

    def _fail_locked(
        self, ticket: Ticket, error: Optional[BaseException], reason: str
    ) -> None:
        query = ticket.query
        ticket.state = QueryState.FAILED
        ticket.error = error
        ticket.reason = reason
        self.stats.record_failure(reason)
        logger.warning(
            "query failed: qname=%s qtype=%d client=%s reason=%s error=%s",
            query.name,
            query.qtype,
            query.src_addr,
            reason,
            error,
        )
        if self.servfail_on_failure and reason != "duplicate":
            try:
                ticket.response = build_servfail(query)
                self.stats.record_servfail()
            except FormatError as exc:
                logger.warning("could not build SERVFAIL for %s: %s", query.name, exc)

    def _reject_locked(self, ticket: Ticket, reason: str) -> None:
        self._fail_locked(ticket, None, reason)
        self._release_locked(ticket)

    def _release_locked(self, ticket: Ticket) -> None:
        if self._pending.get(ticket.key) is ticket:
            del self._pending[ticket.key]
        if ticket.response is not None:
            self._outbound.put(ticket.response)
        ticket._done.set()
