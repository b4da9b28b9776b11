"""Shared test doubles: an in-process cluster server and a scripted connection."""

import asyncio
from typing import List, Optional

from clusterlink.connection import ClusterNotConnected
from clusterlink.events import EventHook
from clusterlink.framer import LineFramer


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakeCluster:
    """Loopback TCP server standing in for a DX cluster node."""

    def __init__(self):
        self.server: Optional[asyncio.AbstractServer] = None
        self.port: Optional[int] = None
        self.lines: List[str] = []
        self.raw = b""
        self.accepted = 0
        self.writers: List[asyncio.StreamWriter] = []

    async def start(self, port: int = 0) -> "FakeCluster":
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader, writer):
        self.accepted += 1
        self.writers.append(writer)
        framer = LineFramer()
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                self.raw += data
                self.lines.extend(framer.feed(data))
        except (OSError, asyncio.CancelledError):
            pass
        finally:
            writer.close()

    async def push(self, data: bytes) -> None:
        """Send bytes to every connected client."""
        for writer in list(self.writers):
            if not writer.transport.is_closing():
                writer.write(data)
                await writer.drain()

    def drop_clients(self) -> None:
        """Close every client socket but keep listening."""
        for writer in self.writers:
            writer.close()
        self.writers = []

    async def stop(self) -> None:
        self.drop_clients()
        if self.server is not None:
            self.server.close()
            try:
                await asyncio.wait_for(self.server.wait_closed(), 1.0)
            except asyncio.TimeoutError:
                pass
            self.server = None


class FakeConnection:
    """Scripted stand-in for ClusterConnection used by manager tests."""

    def __init__(self, name: str, host: str, port: int):
        self.name = name
        self.host = host
        self.port = port
        self.connected = False
        self.connect_results: List[bool] = []
        self.connect_calls = 0
        self.sent: List[str] = []
        self.send_error: Optional[Exception] = None
        self.disconnect_calls = 0
        self._fault_pending = False

        self.line_received = EventHook(f"{name}.line_received")
        self.reconnected = EventHook(f"{name}.reconnected")
        self.faulted = EventHook(f"{name}.faulted")

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, timeout=None) -> bool:
        self.connect_calls += 1
        await asyncio.sleep(0)
        ok = self.connect_results.pop(0) if self.connect_results else True
        if not ok:
            self.connected = False
            self._fault_pending = True
            self.faulted.emit()
            return False

        self.connected = True
        if self._fault_pending:
            self._fault_pending = False
            self.reconnected.emit()
        return True

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        self._fault_pending = False

    async def send_line(self, text: str) -> None:
        await asyncio.sleep(0)
        if self.send_error is not None:
            raise self.send_error
        if not self.connected:
            raise ClusterNotConnected(f"Cluster {self.name} is not connected")
        self.sent.append(text)

    def fail(self) -> None:
        """Simulate a remote close detected by the read loop."""
        self.connected = False
        self._fault_pending = True
        self.faulted.emit()
