import logging
import socketserver
import threading
from typing import Any, Optional, Tuple

from ..bridge import Bridge
from ..codec import decode_query
from ..errors import FormatError
from ..models import Response
from ..stats import BridgeStats

logger = logging.getLogger("dohbridge.udp")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8053
MAX_DATAGRAM = 5000


class _BridgeUDPHandler(socketserver.BaseRequestHandler):
    """
    Brief: Per-datagram handler; delegates to the owning UDPTransport.

    Inputs:
    - request: (data, socket) tuple provided by socketserver
    - client_address: peer address

    Outputs:
    - None
    """

    def handle(self) -> None:
        data, _sock = self.request  # type: ignore
        self.server.transport.handle_datagram(data, self.client_address)  # type: ignore[attr-defined]


class _BridgeUDPServer(socketserver.UDPServer):
    allow_reuse_address = True

    def __init__(self, server_address: Tuple[str, int], transport: "UDPTransport"):
        self.transport = transport
        self.max_packet_size = transport.max_datagram
        super().__init__(server_address, _BridgeUDPHandler)


class UDPTransport:
    """
    Brief: UDP listener that feeds a Bridge and sends back its responses.

    Inputs (constructor):
    - bridge: a started (or soon started) Bridge
    - host, port: listen address; port 0 picks a free port
    - lockstep: wait for each query's ticket before reading the next datagram
    - max_datagram: largest datagram accepted
    - stats: optional BridgeStats (defaults to the bridge's)

    Outputs:
    - UDPTransport; start()/stop() manage the receive thread and, in
      pipelined mode, the sender thread that drains the bridge's outbound
      queue.

    Notes:
    - Datagrams that fail to decode are logged and counted; the loop keeps
      serving other clients.
    """

    def __init__(
        self,
        bridge: Bridge,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        lockstep: bool = False,
        max_datagram: int = MAX_DATAGRAM,
        stats: Optional[BridgeStats] = None,
    ) -> None:
        self.bridge = bridge
        self.host = host
        self.port = int(port)
        self.lockstep = bool(lockstep)
        self.max_datagram = int(max_datagram)
        self.stats = stats if stats is not None else bridge.stats

        self._server: Optional[_BridgeUDPServer] = None
        self._threads: list = []
        self._stop = threading.Event()

    @property
    def server_address(self) -> Tuple[str, int]:
        if self._server is None:
            return (self.host, self.port)
        return self._server.server_address  # type: ignore[return-value]

    def start(self) -> "UDPTransport":
        self._stop.clear()
        self._server = _BridgeUDPServer((self.host, self.port), self)
        host, port = self.server_address
        serve = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.2},
            name="udp-receive",
            daemon=True,
        )
        self._threads = [serve]
        if not self.lockstep:
            self._threads.append(
                threading.Thread(target=self._sender_loop, name="udp-send", daemon=True)
            )
        for t in self._threads:
            t.start()
        logger.info(
            "UDP listener on %s:%d (%s)", host, port, "lockstep" if self.lockstep else "pipelined"
        )
        return self

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._server is not None:
            self._server.shutdown()
            for t in self._threads:
                t.join(timeout=timeout)
            self._server.server_close()
            self._server = None
        self._threads = []
        logger.info("UDP listener stopped")

    def __enter__(self) -> "UDPTransport":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def handle_datagram(self, data: bytes, addr: Any) -> None:
        """
        Brief: Decode one datagram and hand it to the bridge.

        Inputs:
        - data: raw datagram bytes
        - addr: sender address

        Outputs:
        - None; in lockstep mode returns only after the query was answered or
          dropped and any response was sent.
        """
        try:
            query = decode_query(data, addr)
        except FormatError as exc:
            self.stats.record_received()
            self.stats.record_failure("format_error")
            logger.warning("Malformed datagram from %s (%d bytes): %s", addr, len(data), exc)
            return

        self.stats.record_received(query.qtype)
        try:
            ticket = self.bridge.submit(query)
        except RuntimeError as exc:
            logger.warning("Dropping %s/%d from %s: %s", query.name, query.qtype, addr, exc)
            return

        if not self.lockstep:
            return
        while not ticket.wait(0.2):
            if self._stop.is_set():
                return
        self._drain()

    def _drain(self) -> None:
        while True:
            resp = self.bridge.get_response(timeout=0)
            if resp is None:
                return
            self._send(resp)

    def _sender_loop(self) -> None:
        while not self._stop.is_set():
            resp = self.bridge.get_response(timeout=0.2)
            if resp is not None:
                self._send(resp)
        self._drain()

    def _send(self, resp: Response) -> None:
        server = self._server
        if server is None:
            logger.debug("Listener closed; discarding response for %s", resp.dst_addr)
            return
        try:
            server.socket.sendto(resp.data, resp.dst_addr)
            self.stats.record_sent()
        except OSError as exc:
            logger.warning("Failed to send %d bytes to %s: %s", len(resp.data), resp.dst_addr, exc)


def serve_udp(
    bridge: Bridge,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    *,
    lockstep: bool = False,
    max_datagram: int = MAX_DATAGRAM,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """
    Brief: Serve until stop_event is set (forever when omitted).

    Inputs:
    - bridge: Bridge to feed; started here if not running
    - host, port, lockstep, max_datagram: see UDPTransport
    - stop_event: optional Event that ends the loop

    Outputs:
    - None

    Example:
        >>> # In a thread:
        >>> # serve_udp(bridge, '127.0.0.1', 8053, stop_event=ev)
    """
    stop_event = stop_event or threading.Event()
    if not bridge.running:
        bridge.start()
    transport = UDPTransport(
        bridge, host, port, lockstep=lockstep, max_datagram=max_datagram
    )
    with transport:
        stop_event.wait()
