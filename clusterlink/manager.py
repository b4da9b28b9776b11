"""
Cluster manager: owns every configured ClusterConnection and keeps exactly
one of them active.

Responsibilities:
  - connect / disconnect clusters by name and track the active one
  - re-publish lines as (cluster, line) after recording activity
  - replay the login credential and default commands after each (re)connect
  - keepalive pings for the active cluster when the link has gone quiet
  - one exponential-backoff reconnection worker per faulted active cluster

All per-cluster bookkeeping lives in ClusterActivity records that are only
mutated while holding ``self._lock``.
"""

import asyncio
import random
import re
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterator, List, Optional

from . import constants
from .config import ClusterConfig, ClusterDefinition
from .connection import ClusterConnection
from .events import EventHook
from .utils import call_in_loop, in_loop, print_debug, print_error, print_info, print_warning


def backoff_delays(
    initial: float = constants.BACKOFF_INITIAL,
    maximum: float = constants.BACKOFF_MAX,
    rng: Optional[random.Random] = None,
) -> Iterator[float]:
    """Yield reconnect waits: doubling delay plus 10-20% jitter, capped."""
    rng = rng or random.Random()
    delay = initial
    while True:
        jitter = delay * (
            constants.BACKOFF_JITTER_MIN
            + rng.random() * (constants.BACKOFF_JITTER_MAX - constants.BACKOFF_JITTER_MIN)
        )
        yield min(maximum, delay + jitter)
        delay = min(maximum, delay * 2)


def strip_comment(line: str) -> str:
    """Drop everything from the comment marker on and trim whitespace."""
    index = line.find(constants.COMMENT_MARKER)
    if index >= 0:
        line = line[:index]
    return line.strip()


@dataclass
class ClusterActivity:
    """Mutable per-cluster bookkeeping (guarded by the manager lock)."""

    name: str
    last_activity: float
    last_keepalive: float = 0.0
    suppressed: bool = False
    replay_in_progress: bool = False
    reconnect_task: Optional[asyncio.Task] = None
    replay_task: Optional[asyncio.Task] = None


@dataclass(frozen=True)
class ClusterStatus:
    """Read-only snapshot of one cluster for display."""

    name: str
    host: str
    port: int
    active: bool
    connected: bool
    suppressed: bool
    reconnecting: bool
    idle_seconds: float


class ClusterManager:
    """Manages all cluster connections and the single active selection."""

    def __init__(
        self,
        config: ClusterConfig,
        connection_factory: Callable[..., ClusterConnection] = ClusterConnection,
        keepalive_interval: float = constants.KEEPALIVE_INTERVAL,
        inactivity_threshold: float = constants.KEEPALIVE_INACTIVITY,
        worker_connect_timeout: float = constants.WORKER_CONNECT_TIMEOUT,
        backoff_initial: float = constants.BACKOFF_INITIAL,
        backoff_max: float = constants.BACKOFF_MAX,
        replay_grace: float = constants.REPLAY_GRACE,
        prompt_timeout: float = constants.LOGIN_PROMPT_TIMEOUT,
        login_delay: float = constants.LOGIN_DELAY,
        command_delay: float = constants.COMMAND_DELAY,
        reconnect_replay_timeout: float = constants.RECONNECT_REPLAY_TIMEOUT,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.keepalive_interval = keepalive_interval
        self.inactivity_threshold = inactivity_threshold
        self.worker_connect_timeout = worker_connect_timeout
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.replay_grace = replay_grace
        self.prompt_timeout = prompt_timeout
        self.login_delay = login_delay
        self.command_delay = command_delay
        self.reconnect_replay_timeout = reconnect_replay_timeout
        self._rng = rng or random.Random()
        self._clock = clock
        self._prompt_re = re.compile(constants.LOGIN_PROMPT_PATTERN, re.IGNORECASE)

        self._lock = threading.Lock()
        self._active: Optional[str] = None
        self._connections: Dict[str, ClusterConnection] = {}
        self._activity: Dict[str, ClusterActivity] = {}
        self._keepalive_task: Optional[asyncio.Task] = None

        self.line_received = EventHook("manager.line_received")
        self.command_sent = EventHook("manager.command_sent")
        self.active_changed = EventHook("manager.active_changed")

        now = self._clock()
        for definition in config.clusters.values():
            connection = connection_factory(definition.name, definition.host, definition.port)
            self._connections[definition.name] = connection
            self._activity[definition.name] = ClusterActivity(definition.name, last_activity=now)
            self._wire(connection)

    def _wire(self, connection: ClusterConnection) -> None:
        name = connection.name
        connection.line_received.subscribe(lambda line: self._on_line(name, line))
        connection.reconnected.subscribe(lambda: self._on_reconnected(name))
        connection.faulted.subscribe(lambda: self._on_faulted(name))

    # ------------------------------------------------------------------
    # Accessors

    @property
    def active_cluster(self) -> Optional[str]:
        with self._lock:
            return self._active

    @property
    def cluster_names(self) -> List[str]:
        return list(self._connections)

    def get_definition(self, name: str) -> Optional[ClusterDefinition]:
        return self.config.get_cluster(name)

    def get_connection(self, name: str) -> Optional[ClusterConnection]:
        return self._connections.get(name)

    def is_reconnecting(self, name: str) -> bool:
        with self._lock:
            record = self._activity.get(name)
            return bool(record and record.reconnect_task and not record.reconnect_task.done())

    def is_suppressed(self, name: str) -> bool:
        with self._lock:
            record = self._activity.get(name)
            return bool(record and record.suppressed)

    def status(self) -> List[ClusterStatus]:
        """Snapshot of every cluster for display."""
        now = self._clock()
        result = []
        with self._lock:
            for name, connection in self._connections.items():
                record = self._activity[name]
                result.append(
                    ClusterStatus(
                        name=name,
                        host=connection.host,
                        port=connection.port,
                        active=(name == self._active),
                        connected=connection.is_connected,
                        suppressed=record.suppressed,
                        reconnecting=bool(record.reconnect_task and not record.reconnect_task.done()),
                        idle_seconds=max(0.0, now - record.last_activity),
                    )
                )
        return result

    # ------------------------------------------------------------------
    # Lifetime

    def start(self) -> None:
        """Start the keepalive loop (requires a running event loop)."""
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def close(self) -> None:
        """Stop keepalive, reconnection workers and all connections."""
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        with self._lock:
            tasks = [
                task
                for record in self._activity.values()
                for task in (record.reconnect_task, record.replay_task)
                if task is not None
            ]

        self.disconnect()

        current = asyncio.current_task()
        pending = [t for t in tasks if t is not current]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Public operations

    async def connect_cluster(
        self, name: str, timeout: Optional[float] = None, force_login: bool = False
    ) -> bool:
        """
        Connect to a cluster and make it the active one.

        Args:
            name: Cluster name from the configuration
            timeout: Seconds allowed for the TCP connect
            force_login: Send the credential even if auto_login is off

        Returns:
            True if connected (login replay has completed), False otherwise.
            A disconnect() during the replay aborts it and returns False.
        """
        connection = self._connections.get(name)
        if connection is None:
            print_error(f"Unknown cluster '{name}'")
            return False

        ok = await connection.connect(timeout)
        if not ok:
            return False

        previous = self._set_active(name)
        with self._lock:
            record = self._activity[name]
            record.last_activity = self._clock()
            self._unsuppress_locked(record)
        self._stop_reconnect_worker(name)
        if previous is not None and previous != name:
            self._stop_reconnect_worker(previous)
            self._stop_replay(previous)

        definition = self.get_definition(name)
        if definition is None:
            return True

        replay = self._start_replay(
            name, lambda: self._replay_login(name, connection, definition, force_login)
        )
        try:
            await asyncio.wait({replay})
        except asyncio.CancelledError:
            replay.cancel()
            raise
        if replay.cancelled():
            print_warning(f"Cluster {name}: login replay aborted")
            return False
        replay.result()
        return True

    async def send_raw(self, line: str) -> None:
        """Send a line to the active cluster; no-op when nothing is active.

        Raises:
            ClusterSendError: the active connection could not deliver it
        """
        with self._lock:
            name = self._active
        if name is None:
            print_debug("send_raw: no active cluster, line dropped", level=3)
            return

        connection = self._connections[name]
        text = line or ""
        self.command_sent.emit(name, text)
        await connection.send_line(text)

    def disconnect(self, name: Optional[str] = None) -> None:
        """Disconnect one cluster, or all of them when name is None.

        Safe to call from any thread.
        """
        if name is None:
            names = list(self._connections)
        elif name in self._connections:
            names = [name]
        else:
            print_warning(f"Unknown cluster '{name}'")
            return

        for cluster in names:
            self._stop_reconnect_worker(cluster)
            self._stop_replay(cluster)
            try:
                self._connections[cluster].disconnect()
            except Exception as e:
                print_error(f"Error disconnecting {cluster}: {e}")

        cleared = False
        with self._lock:
            if self._active is not None and self._active in names:
                self._active = None
                cleared = True
        if cleared:
            self.active_changed.emit(None)

    # ------------------------------------------------------------------
    # Active pointer

    def _set_active(self, name: str) -> Optional[str]:
        with self._lock:
            previous = self._active
            self._active = name
        if previous != name:
            print_debug(f"Active cluster: {name}", level=3)
            self.active_changed.emit(name)
        return previous

    # ------------------------------------------------------------------
    # Connection notifications

    def _on_line(self, name: str, line: str) -> None:
        with self._lock:
            self._activity[name].last_activity = self._clock()
        self.line_received.emit(name, line)

    def _on_faulted(self, name: str) -> None:
        with self._lock:
            record = self._activity[name]
            if not record.suppressed:
                print_debug(f"Cluster {name}: fault, keepalive suppressed", level=3)
            record.suppressed = True
        self._start_reconnect_worker(name)

    def _on_reconnected(self, name: str) -> None:
        with self._lock:
            self._unsuppress_locked(self._activity[name])
            active = self._active == name
        self._stop_reconnect_worker(name)

        if not active:
            return
        print_info(f"Cluster {name}: reconnected")
        self._start_replay(name, lambda: self._replay_after_reconnect(name))

    def _unsuppress_locked(self, record: ClusterActivity) -> None:
        if record.suppressed:
            record.suppressed = False
            # Don't ping straight after a recovery
            record.last_keepalive = self._clock()

    # ------------------------------------------------------------------
    # Reconnection workers

    def _start_reconnect_worker(self, name: str) -> bool:
        """Start the backoff worker for name if it is active and has none."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            print_debug(f"Cluster {name}: no event loop, reconnect worker not started", level=3)
            return False

        with self._lock:
            record = self._activity.get(name)
            if record is None:
                return False
            if record.reconnect_task is not None and not record.reconnect_task.done():
                return False
            if self._active != name:
                return False
            record.reconnect_task = asyncio.create_task(self._reconnect_worker(name))

        print_info(f"Cluster {name}: starting reconnection worker")
        return True

    def _stop_reconnect_worker(self, name: str) -> None:
        with self._lock:
            record = self._activity.get(name)
            if record is None or record.reconnect_task is None:
                return
            task = record.reconnect_task
            record.reconnect_task = None

        if task.done():
            return
        loop = task.get_loop()
        if in_loop(loop) and task is asyncio.current_task():
            # The worker itself triggered this via reconnected; it exits on its own
            return
        print_debug(f"Cluster {name}: stopping reconnection worker", level=3)
        call_in_loop(loop, task.cancel)

    async def _reconnect_worker(self, name: str) -> None:
        connection = self._connections[name]
        delays = backoff_delays(self.backoff_initial, self.backoff_max, self._rng)
        attempt = 0
        try:
            while True:
                if self.active_cluster != name:
                    print_debug(f"Cluster {name}: no longer active, worker exiting", level=3)
                    break
                if connection.is_connected:
                    break

                attempt += 1
                print_debug(f"Cluster {name}: reconnect attempt {attempt}", level=3)
                if await connection.connect(self.worker_connect_timeout):
                    # reconnected handler clears suppression and replays login
                    break

                wait = next(delays)
                print_info(f"Cluster {name}: reconnect failed, retrying in {wait:.1f}s")
                await asyncio.sleep(wait)
        finally:
            with self._lock:
                record = self._activity[name]
                if record.reconnect_task is asyncio.current_task():
                    record.reconnect_task = None

    # ------------------------------------------------------------------
    # Login / default command replay

    def _start_replay(self, name: str, factory: Callable[[], Awaitable[object]]) -> asyncio.Task:
        """Run a replay as a tracked task, or return the one already running."""
        with self._lock:
            record = self._activity[name]
            task = record.replay_task
            if task is not None and not task.done():
                return task
            task = asyncio.create_task(factory())
            record.replay_task = task

        def _done(t: asyncio.Task) -> None:
            with self._lock:
                if record.replay_task is t:
                    record.replay_task = None

        task.add_done_callback(_done)
        return task

    def _stop_replay(self, name: str) -> None:
        with self._lock:
            record = self._activity.get(name)
            if record is None or record.replay_task is None:
                return
            task = record.replay_task
            record.replay_task = None

        if task.done():
            return
        loop = task.get_loop()
        if in_loop(loop) and task is asyncio.current_task():
            return
        print_debug(f"Cluster {name}: cancelling login replay", level=3)
        call_in_loop(loop, task.cancel)

    async def _replay_after_reconnect(self, name: str) -> None:
        connection = self._connections[name]
        definition = self.get_definition(name)
        if definition is None:
            return
        try:
            await asyncio.wait_for(
                self._replay_login(name, connection, definition, force_login=True),
                self.reconnect_replay_timeout,
            )
        except asyncio.TimeoutError:
            print_warning(f"Cluster {name}: login replay timed out")

    async def _replay_login(
        self,
        name: str,
        connection: ClusterConnection,
        definition: ClusterDefinition,
        force_login: bool,
    ) -> bool:
        """Send credential, default commands and a flush line.

        Returns False if another replay for this cluster was already running.
        """
        with self._lock:
            record = self._activity[name]
            if record.replay_in_progress:
                print_debug(f"Cluster {name}: replay already in progress", level=3)
                return False
            record.replay_in_progress = True

        try:
            await self._wait_for_activity(name)

            credential = self.config.mycall
            authorized = definition.auto_login or force_login
            do_login = authorized and bool(credential)
            print_debug(
                f"Cluster {name}: replay start login={do_login} "
                f"defaults={len(definition.default_commands)}",
                level=3,
            )

            if do_login:
                await self._wait_for_login_prompt(name)
                await self._send_replay_line(name, connection, credential)
                await asyncio.sleep(self.login_delay)

            if authorized:
                for raw in definition.default_commands:
                    command = strip_comment(raw)
                    if not command:
                        continue
                    await self._send_replay_line(name, connection, command)
                    await asyncio.sleep(self.command_delay)

            await self._send_replay_line(name, connection, "")
            print_debug(f"Cluster {name}: replay complete", level=3)
            return True

        except asyncio.CancelledError:
            print_debug(f"Cluster {name}: replay cancelled", level=3)
            raise
        finally:
            with self._lock:
                record.replay_in_progress = False

    async def _send_replay_line(self, name: str, connection: ClusterConnection, line: str) -> None:
        self.command_sent.emit(name, line)
        try:
            await connection.send_line(line)
        except Exception as e:
            print_warning(f"Cluster {name}: replay line '{line}' failed: {e}")

    async def _wait_for_activity(self, name: str) -> None:
        """Give the cluster a moment to greet us before sending anything."""
        deadline = self._clock() + self.replay_grace
        while self._clock() < deadline:
            with self._lock:
                idle = self._clock() - self._activity[name].last_activity
            if idle < constants.REPLAY_ACTIVITY_WINDOW:
                return
            await asyncio.sleep(constants.REPLAY_POLL_INTERVAL)

    async def _wait_for_login_prompt(self, name: str) -> bool:
        """Wait (bounded) for a login prompt line from this cluster."""
        seen = asyncio.Event()

        def on_line(cluster: str, line: str) -> None:
            if cluster == name and self._prompt_re.search(line):
                seen.set()

        self.line_received.subscribe(on_line)
        try:
            await asyncio.wait_for(seen.wait(), self.prompt_timeout)
            print_debug(f"Cluster {name}: login prompt seen", level=3)
            return True
        except asyncio.TimeoutError:
            print_debug(f"Cluster {name}: no login prompt, sending credential anyway", level=3)
            return False
        finally:
            self.line_received.unsubscribe(on_line)

    # ------------------------------------------------------------------
    # Keepalive

    async def _keepalive_loop(self) -> None:
        """Periodic keepalive check for the active cluster."""
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await self.keepalive_tick()
            except Exception as e:
                print_error(f"Keepalive error: {e}")

    async def keepalive_tick(self) -> bool:
        """Send a keepalive to the active cluster if it has gone quiet.

        Returns True if a keepalive line was sent.
        """
        now = self._clock()
        with self._lock:
            name = self._active
            if name is None:
                return False
            record = self._activity[name]
            if record.suppressed:
                return False
            quiet = now - record.last_activity >= self.inactivity_threshold
            unpinged = now - record.last_keepalive >= self.inactivity_threshold
        if not (quiet and unpinged):
            return False

        connection = self._connections[name]
        try:
            await connection.send_line(constants.KEEPALIVE_LINE)
        except Exception as e:
            print_warning(f"Cluster {name}: keepalive failed: {e}")
            with self._lock:
                record.suppressed = True
            self._start_reconnect_worker(name)
            return False

        with self._lock:
            record.last_keepalive = now
        print_debug(f"Cluster {name}: keepalive sent", level=3)
        return True

    # ------------------------------------------------------------------
