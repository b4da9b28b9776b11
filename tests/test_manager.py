import asyncio

import pytest

from clusterlink.connection import ClusterConnection, ClusterSendError

from tests.helpers import eventually


CLUSTER_A = {
    "name": "A",
    "host": "a.example.org",
    "port": 7300,
    "auto_login": True,
    "default_commands": ["SH/FILTER", "# comment", ""],
}
CLUSTER_B = {"name": "B", "host": "b.example.org", "port": 7000}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestConnectAndReplay:
    @pytest.mark.asyncio
    async def test_auto_login_replays_credential_and_commands(self, manager_factory):
        manager = manager_factory([CLUSTER_A])

        assert await manager.connect_cluster("A") is True

        assert manager.get_connection("A").sent == ["N0CALL", "SH/FILTER", ""]
        assert manager.active_cluster == "A"
        await manager.close()

    @pytest.mark.asyncio
    async def test_without_auto_login_only_flush_line_is_sent(self, manager_factory):
        manager = manager_factory([dict(CLUSTER_A, auto_login=False)])

        await manager.connect_cluster("A")

        assert manager.get_connection("A").sent == [""]
        await manager.close()

    @pytest.mark.asyncio
    async def test_force_login_overrides_auto_login(self, manager_factory):
        manager = manager_factory([dict(CLUSTER_A, auto_login=False)])

        await manager.connect_cluster("A", force_login=True)

        assert manager.get_connection("A").sent == ["N0CALL", "SH/FILTER", ""]
        await manager.close()

    @pytest.mark.asyncio
    async def test_missing_credential_skips_login_only(self, manager_factory):
        manager = manager_factory([CLUSTER_A], mycall="")

        await manager.connect_cluster("A")

        assert manager.get_connection("A").sent == ["SH/FILTER", ""]
        await manager.close()

    @pytest.mark.asyncio
    async def test_replay_lines_are_announced(self, manager_factory):
        manager = manager_factory([CLUSTER_A])
        announced = []
        manager.command_sent.subscribe(lambda cluster, line: announced.append((cluster, line)))

        await manager.connect_cluster("A")

        assert announced == [("A", "N0CALL"), ("A", "SH/FILTER"), ("A", "")]
        await manager.close()

    @pytest.mark.asyncio
    async def test_login_prompt_releases_credential_early(self, manager_factory):
        manager = manager_factory([CLUSTER_A], prompt_timeout=5.0)
        connection = manager.get_connection("A")

        task = asyncio.ensure_future(manager.connect_cluster("A"))
        assert await eventually(lambda: connection.connected)
        await asyncio.sleep(0.01)
        assert connection.sent == []

        connection.line_received.emit("login: ")
        assert await asyncio.wait_for(task, 1.0) is True
        assert connection.sent == ["N0CALL", "SH/FILTER", ""]
        await manager.close()

    @pytest.mark.asyncio
    async def test_replay_failures_are_swallowed(self, manager_factory):
        manager = manager_factory([CLUSTER_A])
        connection = manager.get_connection("A")
        connection.send_error = ClusterSendError("gone")

        assert await manager.connect_cluster("A") is True
        assert connection.sent == []
        await manager.close()

    @pytest.mark.asyncio
    async def test_only_one_replay_in_flight(self, manager_factory):
        manager = manager_factory([CLUSTER_A], prompt_timeout=0.05)
        connection = manager.get_connection("A")
        await connection.connect()
        definition = manager.get_definition("A")

        results = await asyncio.gather(
            manager._replay_login("A", connection, definition, True),
            manager._replay_login("A", connection, definition, True),
        )

        assert sorted(results) == [False, True]
        assert connection.sent.count("N0CALL") == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_connect_unknown_cluster(self, manager_factory):
        manager = manager_factory([CLUSTER_A])
        assert await manager.connect_cluster("nope") is False
        assert manager.active_cluster is None
        await manager.close()

    @pytest.mark.asyncio
    async def test_failed_connect_leaves_active_unchanged(self, manager_factory):
        manager = manager_factory([CLUSTER_A, CLUSTER_B])
        await manager.connect_cluster("A")
        manager.get_connection("B").connect_results = [False]

        assert await manager.connect_cluster("B") is False
        assert manager.active_cluster == "A"
        assert manager.is_reconnecting("B") is False
        await manager.close()

    @pytest.mark.asyncio
    async def test_active_changed_notifications(self, manager_factory):
        manager = manager_factory([CLUSTER_A, CLUSTER_B])
        changes = []
        manager.active_changed.subscribe(changes.append)

        await manager.connect_cluster("A")
        await manager.connect_cluster("A")
        await manager.connect_cluster("B")
        manager.disconnect("B")

        assert changes == ["A", "B", None]
        await manager.close()


class TestLines:
    @pytest.mark.asyncio
    async def test_lines_are_tagged_with_cluster(self, manager_factory):
        manager = manager_factory([CLUSTER_A, CLUSTER_B])
        received = []
        manager.line_received.subscribe(lambda cluster, line: received.append((cluster, line)))

        manager.get_connection("A").line_received.emit("DX de K1ABC")
        manager.get_connection("B").line_received.emit("WWV")

        assert received == [("A", "DX de K1ABC"), ("B", "WWV")]
        await manager.close()


class TestSendRaw:
    @pytest.mark.asyncio
    async def test_no_active_cluster_is_a_no_op(self, manager_factory):
        manager = manager_factory([CLUSTER_A])
        announced = []
        manager.command_sent.subscribe(lambda cluster, line: announced.append(line))

        await manager.send_raw("SH/DX")

        assert announced == []
        assert manager.get_connection("A").sent == []
        await manager.close()

    @pytest.mark.asyncio
    async def test_sends_to_active_cluster(self, manager_factory):
        manager = manager_factory([dict(CLUSTER_A, auto_login=False), CLUSTER_B])
        await manager.connect_cluster("A")
        announced = []
        manager.command_sent.subscribe(lambda cluster, line: announced.append((cluster, line)))

        await manager.send_raw("SH/DX 5")

        assert manager.get_connection("A").sent == ["", "SH/DX 5"]
        assert manager.get_connection("B").sent == []
        assert announced == [("A", "SH/DX 5")]
        await manager.close()

    @pytest.mark.asyncio
    async def test_send_errors_propagate(self, manager_factory):
        manager = manager_factory([CLUSTER_A])
        await manager.connect_cluster("A")
        manager.get_connection("A").send_error = ClusterSendError("gone")

        with pytest.raises(ClusterSendError):
            await manager.send_raw("SH/DX")
        await manager.close()


class TestReconnection:
    @pytest.mark.asyncio
    async def test_fault_suppresses_and_starts_single_worker(self, manager_factory):
        manager = manager_factory([CLUSTER_A], backoff_initial=10.0, backoff_max=10.0)
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.connect_results = [False] * 10

        connection.fail()
        worker = manager._activity["A"].reconnect_task
        connection.fail()
        connection.fail()

        assert manager.is_suppressed("A") is True
        assert manager.is_reconnecting("A") is True
        assert manager._activity["A"].reconnect_task is worker
        await manager.close()
        assert worker.done()

    @pytest.mark.asyncio
    async def test_worker_recovers_and_replays_login(self, manager_factory):
        manager = manager_factory([dict(CLUSTER_A, auto_login=False, default_commands=[])])
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.sent.clear()
        connection.connect_results = [False, False, True]

        connection.fail()

        assert await eventually(lambda: connection.sent == ["N0CALL", ""])
        assert connection.connect_calls == 4
        assert manager.is_suppressed("A") is False
        assert manager.is_reconnecting("A") is False
        await manager.close()

    @pytest.mark.asyncio
    async def test_no_worker_for_inactive_cluster(self, manager_factory):
        manager = manager_factory([CLUSTER_A, CLUSTER_B])
        await manager.connect_cluster("A")
        manager.get_connection("B").fail()

        assert manager.is_suppressed("B") is True
        assert manager.is_reconnecting("B") is False
        await manager.close()

    @pytest.mark.asyncio
    async def test_switching_active_cancels_previous_worker(self, manager_factory):
        manager = manager_factory([CLUSTER_A, CLUSTER_B], backoff_initial=10.0, backoff_max=10.0)
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.connect_results = [False] * 10
        connection.fail()
        worker = manager._activity["A"].reconnect_task
        assert worker is not None

        await manager.connect_cluster("B")
        await asyncio.sleep(0.01)

        assert manager.is_reconnecting("A") is False
        assert worker.cancelled()
        assert manager.active_cluster == "B"
        await manager.close()

    @pytest.mark.asyncio
    async def test_disconnect_stops_worker_and_clears_active(self, manager_factory):
        manager = manager_factory([CLUSTER_A], backoff_initial=10.0, backoff_max=10.0)
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.connect_results = [False] * 10
        connection.fail()

        manager.disconnect()
        await asyncio.sleep(0.01)

        assert manager.is_reconnecting("A") is False
        assert manager.active_cluster is None
        assert connection.disconnect_calls == 1
        await manager.close()


class TestKeepalive:
    @pytest.mark.asyncio
    async def test_keepalive_only_after_inactivity(self, manager_factory):
        clock = FakeClock()
        manager = manager_factory([dict(CLUSTER_A, auto_login=False)], clock=clock)
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.sent.clear()

        clock.now = 1100.0
        assert await manager.keepalive_tick() is False

        clock.now = 1200.0
        assert await manager.keepalive_tick() is True
        assert connection.sent == [" "]

        clock.now = 1250.0
        assert await manager.keepalive_tick() is False

        clock.now = 1400.0
        assert await manager.keepalive_tick() is True
        assert connection.sent == [" ", " "]
        await manager.close()

    @pytest.mark.asyncio
    async def test_inbound_lines_postpone_keepalive(self, manager_factory):
        clock = FakeClock()
        manager = manager_factory([dict(CLUSTER_A, auto_login=False)], clock=clock)
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.sent.clear()

        clock.now = 1150.0
        connection.line_received.emit("DX de K1ABC")
        clock.now = 1250.0
        assert await manager.keepalive_tick() is False
        assert connection.sent == []
        await manager.close()

    @pytest.mark.asyncio
    async def test_no_keepalive_without_active_cluster(self, manager_factory):
        clock = FakeClock()
        manager = manager_factory([CLUSTER_A], clock=clock)
        clock.now = 5000.0
        assert await manager.keepalive_tick() is False
        await manager.close()

    @pytest.mark.asyncio
    async def test_suppressed_cluster_gets_no_keepalive(self, manager_factory):
        clock = FakeClock()
        manager = manager_factory(
            [dict(CLUSTER_A, auto_login=False)], clock=clock,
            backoff_initial=10.0, backoff_max=10.0,
        )
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.connect_results = [False] * 10
        connection.fail()
        connection.sent.clear()

        clock.now = 2000.0
        assert await manager.keepalive_tick() is False
        assert connection.sent == []
        await manager.close()

    @pytest.mark.asyncio
    async def test_failed_keepalive_suppresses_and_starts_worker(self, manager_factory):
        clock = FakeClock()
        manager = manager_factory(
            [dict(CLUSTER_A, auto_login=False)], clock=clock,
            backoff_initial=10.0, backoff_max=10.0,
        )
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.send_error = ClusterSendError("gone")
        connection.connect_results = [False] * 10

        clock.now = 1200.0
        assert await manager.keepalive_tick() is False

        assert manager.is_suppressed("A") is True
        assert manager.is_reconnecting("A") is True
        await manager.close()


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_snapshot(self, manager_factory):
        clock = FakeClock()
        manager = manager_factory([CLUSTER_A, CLUSTER_B], clock=clock)
        await manager.connect_cluster("A")
        clock.now = 1030.0

        by_name = {s.name: s for s in manager.status()}

        assert by_name["A"].active is True
        assert by_name["A"].connected is True
        assert by_name["A"].idle_seconds == 30.0
        assert by_name["B"].active is False
        assert by_name["B"].connected is False
        assert (by_name["B"].host, by_name["B"].port) == ("b.example.org", 7000)
        await manager.close()


class TestDisconnectDuringReplay:
    @pytest.mark.asyncio
    async def test_disconnect_aborts_login_and_keeps_socket_closed(self, manager_factory, fake_cluster):
        manager = manager_factory(
            [
                {
                    "name": "A",
                    "host": "127.0.0.1",
                    "port": fake_cluster.port,
                    "auto_login": True,
                    "default_commands": ["SH/DX"],
                }
            ],
            connection_factory=ClusterConnection,
            prompt_timeout=0.3,
        )
        connection = manager.get_connection("A")

        task = asyncio.ensure_future(manager.connect_cluster("A"))
        assert await eventually(lambda: manager._activity["A"].replay_task is not None)
        await asyncio.sleep(0.05)
        manager.disconnect("A")

        assert await asyncio.wait_for(task, 2.0) is False
        await asyncio.sleep(0.1)

        assert fake_cluster.accepted == 1
        assert fake_cluster.lines == []
        assert connection.is_connected is False
        assert manager.active_cluster is None
        await manager.close()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_replay_after_recovery(self, manager_factory):
        manager = manager_factory([dict(CLUSTER_A, auto_login=False)], prompt_timeout=5.0)
        await manager.connect_cluster("A")
        connection = manager.get_connection("A")
        connection.sent.clear()

        connection.fail()
        assert await eventually(lambda: manager._activity["A"].replay_task is not None)
        replay = manager._activity["A"].replay_task

        manager.disconnect("A")
        await asyncio.sleep(0.01)

        assert replay.cancelled()
        assert manager._activity["A"].replay_task is None
        assert connection.sent == []
        await manager.close()

    @pytest.mark.asyncio
    async def test_switching_active_cancels_previous_replay(self, manager_factory):
        manager = manager_factory([dict(CLUSTER_A, auto_login=False), CLUSTER_B], prompt_timeout=5.0)
        await manager.connect_cluster("A")
        manager.get_connection("A").fail()
        assert await eventually(lambda: manager._activity["A"].replay_task is not None)
        replay = manager._activity["A"].replay_task

        await manager.connect_cluster("B")
        await asyncio.sleep(0.01)

        assert replay.cancelled()
        assert manager.active_cluster == "B"
        await manager.close()

    @pytest.mark.asyncio
    async def test_close_cancels_running_replay(self, manager_factory):
        manager = manager_factory([dict(CLUSTER_A, auto_login=False)], prompt_timeout=5.0)
        await manager.connect_cluster("A")
        manager.get_connection("A").fail()
        assert await eventually(lambda: manager._activity["A"].replay_task is not None)
        replay = manager._activity["A"].replay_task

        await manager.close()

        assert replay.done()
