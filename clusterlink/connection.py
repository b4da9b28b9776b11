"""
TCP connection to one DX cluster endpoint.

Provides a single-reader line stream from the cluster, a serialized CRLF
line sender with liveness probing and one automatic reconnect-and-resend,
and three notifications:

    line_received(line)  every decoded line, in wire order
    reconnected()        a connect that recovered from a fault succeeded
    faulted()            the connection was lost or could not be restored

A deliberate disconnect() is never reported as a fault, and sends fail
without reconnecting until connect() is called again.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

from .constants import (
    CLUSTER_ENCODING,
    LINE_TERMINATOR,
    READ_CHUNK_SIZE,
    SEND_RECONNECT_TIMEOUT,
    WRITE_TIMEOUT,
)
from .events import EventHook
from .framer import LineFramer
from .utils import (
    call_in_loop,
    escape_visible,
    in_loop,
    preview,
    print_debug,
    print_error,
    print_info,
    print_warning,
)


class ClusterSendError(ConnectionError):
    """A line could not be delivered to the cluster."""


class ClusterNotConnected(ClusterSendError):
    """No usable socket could be (re)established for a send."""


WriteStrategy = Callable[[bytes], Awaitable[None]]


class ClusterConnection:
    """One TCP socket to a cluster, owned exclusively by this object."""

    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        encoding: str = CLUSTER_ENCODING,
        write_timeout: float = WRITE_TIMEOUT,
        reconnect_timeout: float = SEND_RECONNECT_TIMEOUT,
    ):
        """
        Initialize cluster connection.

        Args:
            name: Logical cluster name (used in notifications and logs)
            host: Hostname or IP address of the cluster
            port: TCP port number
            encoding: Single-byte text encoding used on the wire
            write_timeout: Seconds to wait for a line to drain
            reconnect_timeout: Seconds allowed for a reconnect from send_line
        """
        self._name = name
        self._host = host
        self._port = port
        self.encoding = encoding
        self.write_timeout = write_timeout
        self.reconnect_timeout = reconnect_timeout

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Serializes writes and every (re)connect attempt
        self._send_lock = asyncio.Lock()

        # Set when a fault was signalled; the next successful connect is a recovery
        self._fault_pending = False
        self._faults_raised = 0

        # Set by disconnect(); only an explicit connect() reopens the socket
        self._closed_by_user = False

        self.line_received = EventHook(f"{name}.line_received")
        self.reconnected = EventHook(f"{name}.reconnected")
        self.faulted = EventHook(f"{name}.faulted")

    @property
    def name(self) -> str:
        return self._name

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_connected(self) -> bool:
        """True while a socket is open and its read loop is running."""
        writer = self.writer
        task = self._read_task
        if writer is None or task is None or task.done():
            return False
        return not writer.transport.is_closing()

    # ------------------------------------------------------------------
    # Connect / disconnect

    async def connect(self, timeout: Optional[float] = None) -> bool:
        """
        Connect to the cluster and start the read loop.

        Any previous socket is released first, so this is safe to call again
        after a failure.

        Args:
            timeout: Seconds allowed for the TCP connect (None = no limit)

        Returns:
            True if connected, False otherwise (faulted is emitted)
        """
        async with self._send_lock:
            self._closed_by_user = False
            return await self._connect_locked(timeout)

    async def _connect_locked(self, timeout: Optional[float], recovering: bool = False) -> bool:
        self._teardown()

        print_debug(f"Cluster {self._name}: connecting to {self._host}:{self._port}...", level=3)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port), timeout
            )
        except asyncio.TimeoutError:
            print_warning(f"Cluster {self._name}: connect to {self._host}:{self._port} timed out")
            self._connect_failed()
            return False
        except ConnectionRefusedError:
            print_warning(f"Cluster {self._name}: connection refused by {self._host}:{self._port}")
            self._connect_failed()
            return False
        except OSError as e:
            print_warning(f"Cluster {self._name}: cannot connect to {self._host}:{self._port}: {e}")
            self._connect_failed()
            return False
        except Exception as e:
            print_error(f"Cluster {self._name}: connection error: {type(e).__name__}: {e}")
            self._connect_failed()
            return False

        self._loop = asyncio.get_running_loop()
        self.reader = reader
        self.writer = writer
        self._read_task = asyncio.create_task(self._read_loop(reader))

        recovered = recovering or self._fault_pending
        self._fault_pending = False

        print_info(f"Connected to cluster {self._name} ({self._host}:{self._port})")
        if recovered:
            self.reconnected.emit()
        return True

    def _connect_failed(self) -> None:
        self._teardown()
        self._raise_faulted()

    def disconnect(self) -> None:
        """Close the socket and stop the read loop.

        Idempotent and safe to call from any thread; never emits faulted.
        """
        call_in_loop(self._loop, self._disconnect_now)

    def _disconnect_now(self) -> None:
        self._fault_pending = False
        self._closed_by_user = True
        if self.writer is None and self._read_task is None:
            return
        print_debug(f"Cluster {self._name}: disconnect requested", level=3)
        self._teardown()
        print_info(f"Cluster connection closed: {self._name}")

    def _teardown(self) -> None:
        """Release the socket and cancel the read loop (not a fault)."""
        task = self._read_task
        writer = self.writer
        self._read_task = None
        self.reader = None
        self.writer = None

        if task is not None and not task.done():
            if not (in_loop(task.get_loop()) and task is asyncio.current_task()):
                task.cancel()

        if writer is not None:
            try:
                writer.close()
            except (OSError, RuntimeError) as e:
                print_debug(f"Cluster {self._name}: error closing socket: {e}", level=5)

    def _raise_faulted(self) -> None:
        self._fault_pending = True
        self._faults_raised += 1
        self.faulted.emit()

    # ------------------------------------------------------------------
    # Read side

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        """Background task: read bytes, frame lines, publish them."""
        framer = LineFramer(self.encoding)
        io_fault = False

        print_debug(f"Cluster {self._name}: read loop started", level=4)
        try:
            while True:
                data = await reader.read(READ_CHUNK_SIZE)
                if not data:
                    print_warning(f"Cluster {self._name}: connection closed by remote")
                    io_fault = True
                    break

                print_debug(
                    f"Cluster {self._name}: RX {len(data)} bytes: "
                    f"'{escape_visible(preview(data.decode(self.encoding, errors='replace')))}'",
                    level=5,
                )
                for line in framer.feed(data):
                    self._deliver(line)

        except asyncio.CancelledError:
            print_debug(f"Cluster {self._name}: read loop cancelled", level=4)
            raise
        except Exception as e:
            print_error(f"Cluster {self._name}: read error: {type(e).__name__}: {e}")
            io_fault = True
        finally:
            # Keep a partial last line rather than dropping it
            for line in framer.flush():
                self._deliver(line)

            # Only the current session may tear down and report; a cancelled
            # loop from an earlier session has already been replaced.
            if self._read_task is asyncio.current_task():
                self._teardown()
                if io_fault:
                    self._raise_faulted()

            print_debug(f"Cluster {self._name}: read loop stopped", level=4)

    def _deliver(self, line: str) -> None:
        print_debug(f"Cluster {self._name}: RX line '{escape_visible(line)}'", level=4)
        self.line_received.emit(line)

    # ------------------------------------------------------------------
    # Write side

    def _is_stream_usable(self) -> bool:
        """Non-blocking liveness check.

        A reader at EOF is the asyncio equivalent of "readable with zero
        bytes available": the remote side has closed.
        """
        writer = self.writer
        reader = self.reader
        if writer is None or reader is None:
            return False
        if writer.transport.is_closing():
            return False
        if reader.at_eof():
            return False
        return True

    async def send_line(self, text: str) -> None:
        """
        Send one line (CRLF appended).

        Raises:
            ClusterNotConnected: no usable connection could be restored
                (or the connection was closed by disconnect())
            ClusterSendError: the write failed again after one reconnect
        """
        line = text or ""
        data = (line + LINE_TERMINATOR).encode(self.encoding, errors="replace")

        async with self._send_lock:
            if self._closed_by_user:
                raise ClusterNotConnected(f"Cluster {self._name} was disconnected")

            if not self._is_stream_usable():
                print_warning(f"Cluster {self._name}: not usable, attempting quick reconnect before send")
                if not await self._connect_locked(self.reconnect_timeout, recovering=True):
                    raise ClusterNotConnected(f"Cluster {self._name} is not connected")

            print_debug(
                f"Cluster {self._name}: TX ({len(data)} bytes) '{escape_visible(line)}\\r\\n'",
                level=4,
            )
            await self._write_with_retry(data, [self._write_stream, self._reconnect_and_write])

    async def _write_with_retry(self, data: bytes, strategies: List[WriteStrategy]) -> None:
        """Try each write strategy in order until one succeeds."""
        last_error: Optional[BaseException] = None
        faults_before = self._faults_raised
        for strategy in strategies:
            try:
                await strategy(data)
                return
            except (OSError, asyncio.TimeoutError, RuntimeError) as e:
                last_error = e
                print_warning(
                    f"Cluster {self._name}: {strategy.__name__} failed: "
                    f"{type(e).__name__}: {e}"
                )

        # A failed reconnect has already reported the fault
        if self._faults_raised == faults_before and not self._closed_by_user:
            self._raise_faulted()
        raise ClusterSendError(f"Send to cluster {self._name} failed: {last_error}") from last_error

    async def _write_stream(self, data: bytes) -> None:
        writer = self.writer
        if writer is None or writer.transport.is_closing():
            raise ClusterNotConnected(f"Cluster {self._name} is not connected")
        writer.write(data)
        await asyncio.wait_for(writer.drain(), self.write_timeout)

    async def _reconnect_and_write(self, data: bytes) -> None:
        if self._closed_by_user:
            raise ClusterNotConnected(f"Cluster {self._name} was disconnected")
        if not await self._connect_locked(self.reconnect_timeout, recovering=True):
            raise ClusterNotConnected(f"Cluster {self._name}: reconnect for resend failed")
        await self._write_stream(data)
