"""Tests for the viewer fan-out hub."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from conftest import FakeWebSocket, make_record
from hwmon.hub import (
    HARDWARE_INFO,
    HOST_LIST,
    ConnectionState,
    Hub,
    ViewerConnection,
    hardware_info_message,
    host_list_message,
)


@pytest_asyncio.fixture
async def hub():
    h = Hub(queue_size=100, write_timeout=0.5)
    await h.start()
    yield h
    await h.stop()


async def _connect(hub: Hub, **ws_kwargs) -> tuple[ViewerConnection, FakeWebSocket]:
    ws = FakeWebSocket(**ws_kwargs)
    conn = ViewerConnection(ws)
    assert await hub.register(conn)
    return conn, ws


# ── Messages ──────────────────────────────────────────────────────


class TestMessages:
    def test_hardware_info_shape(self):
        rec = make_record("a")
        msg = hardware_info_message({"a": rec})
        assert msg["type"] == HARDWARE_INFO
        assert isinstance(msg["time"], int)
        assert msg["data"]["a"]["hostname"] == "a"
        assert msg["data"]["a"]["timestamp"].startswith("2024-01-01T00:00:00")

    def test_host_list_shape(self):
        msg = host_list_message({"a": {"record_count": 1}})
        assert msg["type"] == HOST_LIST
        assert msg["data"] == {"a": {"record_count": 1}}


# ── Membership ────────────────────────────────────────────────────


class TestMembership:
    @pytest.mark.asyncio
    async def test_register_requires_running_hub(self):
        h = Hub()
        with pytest.raises(RuntimeError):
            await h.register(ViewerConnection(FakeWebSocket()))

    @pytest.mark.asyncio
    async def test_register_and_unregister(self, hub):
        conn, ws = await _connect(hub)
        assert conn.state is ConnectionState.REGISTERED
        assert hub.connection_count == 1
        await hub.unregister(conn)
        assert conn.state is ConnectionState.UNREGISTERED
        assert hub.connection_count == 0
        assert ws.close_calls == 1

    @pytest.mark.asyncio
    async def test_unregister_is_idempotent(self, hub):
        conn, ws = await _connect(hub)
        other, _ = await _connect(hub)
        await hub.unregister(conn)
        await hub.unregister(conn)
        assert hub.connection_count == 1
        assert ws.close_calls == 1
        assert other.state is ConnectionState.REGISTERED

    @pytest.mark.asyncio
    async def test_unregistered_is_terminal(self, hub):
        conn, _ = await _connect(hub)
        await hub.unregister(conn)
        assert await hub.register(conn) is False
        assert hub.connection_count == 0

    @pytest.mark.asyncio
    async def test_no_replay_for_late_joiners(self, hub):
        hub.broadcast({"type": "x", "n": 1})
        await hub.flush()
        _, ws = await _connect(hub)
        hub.broadcast({"type": "x", "n": 2})
        await hub.flush()
        assert [m["n"] for m in ws.sent] == [2]

    @pytest.mark.asyncio
    async def test_stop_closes_connections(self):
        h = Hub()
        await h.start()
        conn, ws = await _connect(h)
        await h.stop()
        assert conn.state is ConnectionState.UNREGISTERED
        assert ws.close_calls == 1
        assert h.connection_count == 0

    @pytest.mark.asyncio
    async def test_membership_change_after_stop_returns(self):
        h = Hub()
        await h.start()
        await h.stop()
        conn = ViewerConnection(FakeWebSocket())
        await asyncio.wait_for(h._submit("register", conn), timeout=0.5)
        assert conn.state is ConnectionState.CONNECTING
        assert h.connection_count == 0
        await asyncio.wait_for(h._submit("unregister", conn), timeout=0.5)
        assert conn.state is ConnectionState.UNREGISTERED

    @pytest.mark.asyncio
    async def test_hung_close_does_not_stall_hub(self):
        h = Hub(write_timeout=0.05)
        await h.start()
        try:
            stuck, stuck_ws = await _connect(h, close_delay=5.0)
            _, ws = await _connect(h)
            await asyncio.wait_for(h.unregister(stuck), timeout=0.5)
            assert stuck.state is ConnectionState.UNREGISTERED
            assert stuck_ws.close_calls == 1
            h.broadcast({"type": "x"})
            await asyncio.wait_for(h.flush(), timeout=0.5)
            assert ws.sent == [{"type": "x"}]
        finally:
            await h.stop()


# ── Delivery ──────────────────────────────────────────────────────


class TestDelivery:
    @pytest.mark.asyncio
    async def test_fan_out_to_all(self, hub):
        _, ws1 = await _connect(hub)
        _, ws2 = await _connect(hub)
        msg = {"type": "x", "n": 1}
        hub.broadcast(msg)
        await hub.flush()
        assert ws1.sent == [msg]
        assert ws2.sent == [msg]

    @pytest.mark.asyncio
    async def test_order_preserved(self, hub):
        _, ws1 = await _connect(hub)
        _, ws2 = await _connect(hub)
        for n in range(10):
            hub.broadcast({"type": "x", "n": n})
        await hub.flush()
        assert [m["n"] for m in ws1.sent] == list(range(10))
        assert [m["n"] for m in ws2.sent] == list(range(10))

    @pytest.mark.asyncio
    async def test_failed_connection_removed(self, hub):
        bad, bad_ws = await _connect(hub, fail=True)
        _, good_ws = await _connect(hub)

        hub.broadcast({"type": "x", "n": 1})
        await hub.flush()
        assert good_ws.sent == [{"type": "x", "n": 1}]
        assert bad.state is ConnectionState.UNREGISTERED
        assert hub.connection_count == 1

        bad_ws.fail = False
        hub.broadcast({"type": "x", "n": 2})
        await hub.flush()
        assert [m["n"] for m in good_ws.sent] == [1, 2]
        assert bad_ws.sent == []
        assert hub.stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_slow_connection_times_out(self):
        h = Hub(write_timeout=0.05)
        await h.start()
        try:
            slow, _ = await _connect(h, delay=1.0)
            _, fast_ws = await _connect(h)
            h.broadcast({"type": "x"})
            await asyncio.wait_for(h.flush(), timeout=0.5)
            assert fast_ws.sent == [{"type": "x"}]
            assert slow.state is ConnectionState.UNREGISTERED
        finally:
            await h.stop()

    @pytest.mark.asyncio
    async def test_broadcast_without_viewers(self, hub):
        assert hub.broadcast({"type": "x"}) is True
        await hub.flush()
        assert hub.stats()["delivered"] == 0

    @pytest.mark.asyncio
    async def test_broadcast_helpers(self, hub):
        _, ws = await _connect(hub)
        hub.broadcast_hardware_info({"a": make_record("a")})
        hub.broadcast_host_list({})
        await hub.flush()
        assert [m["type"] for m in ws.sent] == [HARDWARE_INFO, HOST_LIST]


# ── Overflow ──────────────────────────────────────────────────────


class TestOverflow:
    @pytest.mark.asyncio
    async def test_drop_oldest_when_full(self, caplog):
        # Not started: messages accumulate in the queue.
        h = Hub(queue_size=3)
        results = [h.broadcast({"type": "x", "n": n}) for n in range(5)]
        assert results == [True, True, True, False, False]
        stats = h.stats()
        assert stats["dropped"] == 2
        assert stats["queue_depth"] == 3
        assert [m["n"] for _, m in h._outbound] == [2, 3, 4]
        assert "dropped oldest" in caplog.text

        await h.start()
        try:
            _, ws = await _connect(h)
            await h.flush()
            # Queued before registration, so never delivered to this viewer
            assert ws.sent == []
        finally:
            await h.stop()

    @pytest.mark.asyncio
    async def test_broadcast_never_blocks(self, hub):
        _, ws = await _connect(hub, delay=0.001)
        for n in range(500):
            hub.broadcast({"type": "x", "n": n})
        assert hub.stats()["queue_depth"] <= hub.queue_size
        await hub.flush()
        received = [m["n"] for m in ws.sent]
        assert received == sorted(received)
        assert received[-1] == 499
