"""
Local cluster relay server.

Loopback TCP listener that lets other local programs (loggers, band maps,
telnet clients) share the active cluster connection. Every line received
from the cluster is broadcast to all attached peers, and every line a peer
types is handed to command_received subscribers (normally forwarded
upstream through ClusterManager.send_raw).
"""

import asyncio
import socket
import threading
from typing import List, Optional

from .constants import (
    CLUSTER_ENCODING,
    LINE_TERMINATOR,
    READ_CHUNK_SIZE,
    RELAY_BANNER,
    RELAY_DRAIN_TIMEOUT,
    RELAY_HOST,
    RELAY_PORT,
)
from .events import EventHook
from .framer import LineFramer
from .utils import escape_visible, print_debug, print_error, print_info, print_warning


class RelayPeer:
    """Represents a connected downstream client."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self.addr = writer.get_extra_info("peername")
        self.task: Optional[asyncio.Task] = None

    def write_line(self, line: str) -> None:
        """Queue one line for this peer.

        Raises:
            ConnectionResetError: the peer socket is already closing
        """
        if self.writer.transport.is_closing():
            raise ConnectionResetError(f"peer {self.addr} is closing")
        self.writer.write((line + LINE_TERMINATOR).encode(CLUSTER_ENCODING, errors="replace"))

    async def drain(self, timeout: float) -> None:
        await asyncio.wait_for(self.writer.drain(), timeout)

    def close(self, hard: bool = False) -> None:
        """Close the socket; with hard=True send RST instead of FIN."""
        if hard:
            sock = self.writer.get_extra_info("socket")
            if sock is not None:
                try:
                    # struct linger {1, 0}: reset so the client notices at once
                    sock.setsockopt(
                        socket.SOL_SOCKET,
                        socket.SO_LINGER,
                        bytes([1, 0, 0, 0, 0, 0, 0, 0]),
                    )
                except OSError as e:
                    print_debug(f"Relay: SO_LINGER failed for {self.addr}: {e}", level=5)
        try:
            self.writer.close()
        except (OSError, RuntimeError) as e:
            print_debug(f"Relay: error closing {self.addr}: {e}", level=5)


class RelayServer:
    """Loopback TCP server that fans out cluster lines to local peers."""

    def __init__(self, port: int = RELAY_PORT, host: str = RELAY_HOST):
        self.port = port
        self.host = host
        self.server: Optional[asyncio.AbstractServer] = None
        self._peers: List[RelayPeer] = []
        self._gate = threading.Lock()

        self.command_received = EventHook("relay.command_received")
        self.client_count_changed = EventHook("relay.client_count_changed")

    @property
    def client_count(self) -> int:
        with self._gate:
            return len(self._peers)

    @property
    def is_running(self) -> bool:
        return self.server is not None

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (useful when started with port 0)."""
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def start(self) -> bool:
        """Start listening. Returns True if running (already running counts)."""
        if self.server is not None:
            return True
        try:
            self.server = await asyncio.start_server(self.handle_client, self.host, self.port)
        except OSError as e:
            print_error(f"Relay: failed to bind {self.host}:{self.port} - {e}")
            self.server = None
            return False

        addr = self.server.sockets[0].getsockname()
        print_info(f"Relay: Listening on {addr[0]}:{addr[1]}")
        return True

    async def stop(self) -> None:
        """Force-close every peer and the listener. Safe to call twice."""
        with self._gate:
            peers = list(self._peers)
            self._peers.clear()

        for peer in peers:
            peer.close(hard=True)
            if peer.task is not None and peer.task is not asyncio.current_task():
                peer.task.cancel()

        tasks = [p.task for p in peers if p.task is not None and p.task is not asyncio.current_task()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        server = self.server
        self.server = None
        if server is not None:
            server.close()
            try:
                await asyncio.wait_for(server.wait_closed(), timeout=1.0)
            except asyncio.TimeoutError:
                pass
            print_info("Relay: Server stopped")

        if peers or server is not None:
            self.client_count_changed.emit(0)

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve one downstream peer until it disconnects."""
        peer = RelayPeer(reader, writer)
        peer.task = asyncio.current_task()
        with self._gate:
            self._peers.append(peer)
            count = len(self._peers)
        print_info(f"Relay: Client connected from {peer.addr}")
        self.client_count_changed.emit(count)

        try:
            for banner_line in RELAY_BANNER:
                peer.write_line(banner_line)
            await peer.drain(RELAY_DRAIN_TIMEOUT)

            framer = LineFramer()
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    break
                for line in framer.feed(data):
                    print_debug(f"Relay <- {peer.addr}: '{escape_visible(line)}'", level=4)
                    await self.command_received.emit_async(line)

        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.TimeoutError) as e:
            print_debug(f"Relay: Client {peer.addr} error: {e}", level=4)
        finally:
            self._remove_peer(peer)

    async def broadcast_line(self, line: str) -> None:
        """Send a line to every connected peer; failed peers are dropped."""
        if line is None:
            return

        with self._gate:
            snapshot = list(self._peers)
        if not snapshot:
            return

        written = []
        for peer in snapshot:
            try:
                peer.write_line(line)
                written.append(peer)
            except (OSError, RuntimeError) as e:
                print_warning(f"Relay: write to {peer.addr} failed: {e}")
                self._remove_peer(peer)

        if not written:
            return

        results = await asyncio.gather(
            *(peer.drain(RELAY_DRAIN_TIMEOUT) for peer in written),
            return_exceptions=True,
        )
        for peer, result in zip(written, results):
            if isinstance(result, BaseException):
                print_warning(f"Relay: dropping slow or dead client {peer.addr}: {result!r}")
                self._remove_peer(peer)

    def _remove_peer(self, peer: RelayPeer) -> None:
        with self._gate:
            if peer not in self._peers:
                return
            self._peers.remove(peer)
            count = len(self._peers)
        peer.close()
        print_info(f"Relay: Client {peer.addr} disconnected")
        self.client_count_changed.emit(count)


def link_relay(manager, relay: RelayServer) -> None:
    """Wire the manager and relay together.

    Cluster lines go out to relay peers, and lines typed by relay peers are
    sent upstream to the active cluster.
    """

    async def forward_line(cluster: str, line: str) -> None:
        await relay.broadcast_line(line)

    async def forward_command(line: str) -> None:
        await manager.send_raw(line)

    manager.line_received.subscribe(forward_line)
    relay.command_received.subscribe(forward_command)
