"""Real-time fan-out of telemetry updates to viewer WebSockets.

One coordinating asyncio task owns the set of live viewer connections.  It
consumes two ordered inputs:

  * membership changes (register / unregister), applied first;
  * outbound messages, delivered one at a time to every connection that
    registered before the message was enqueued.

Nothing else touches the connection set, so it needs no lock.  Delivery of a
message fans out concurrently, each write bounded by ``write_timeout``; a
connection whose write fails or times out is removed for good.  The next
message starts only after the current one finished everywhere, which keeps
per-connection order equal to enqueue order.

Server → Viewer messages::

    {"type": "hardware_info", "data": {hostname: SnapshotRecord}, "time": 1700000000}
    {"type": "host_list",     "data": {hostname: HostSummary},    "time": 1700000000}
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from collections import deque
from typing import Any, Mapping

from fastapi import WebSocket
from pydantic import BaseModel

logger = logging.getLogger(__name__)

HARDWARE_INFO = "hardware_info"
HOST_LIST = "host_list"


# ── Messages ──────────────────────────────────────────────────────


def _encode(data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        key: value.model_dump(mode="json") if isinstance(value, BaseModel) else value
        for key, value in data.items()
    }


def hardware_info_message(latest: Mapping[str, Any]) -> dict[str, Any]:
    """Latest snapshot per host."""
    return {"type": HARDWARE_INFO, "data": _encode(latest), "time": int(time.time())}


def host_list_message(hosts: Mapping[str, Any]) -> dict[str, Any]:
    """Host summaries (or full ledgers) keyed by hostname."""
    return {"type": HOST_LIST, "data": _encode(hosts), "time": int(time.time())}


# ── Connections ───────────────────────────────────────────────────


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    REGISTERED = "registered"
    UNREGISTERED = "unregistered"  # terminal


class ViewerConnection:
    """A viewer's WebSocket plus its lifecycle state."""

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or f"viewer-{uuid.uuid4().hex[:8]}"
        self.connected_at = time.time()
        self.state = ConnectionState.CONNECTING
        # Only messages enqueued after this sequence number are delivered
        self.registered_seq = 0
        self._closed = False

    async def send(self, message: dict) -> None:
        await self.websocket.send_json(message)

    async def close(self) -> None:
        """Close the socket once; errors from an already-dead socket are ignored."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close()
        except Exception as exc:
            logger.debug("Close of %s failed: %s", self.connection_id, exc)

    def __repr__(self) -> str:
        return f"ViewerConnection({self.connection_id!r}, {self.state.value})"


# ── Hub ───────────────────────────────────────────────────────────

_REGISTER = "register"
_UNREGISTER = "unregister"


class Hub:
    """Serialising broadcast hub for viewer connections."""

    def __init__(self, queue_size: int = 100, write_timeout: float = 5.0) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.queue_size = queue_size
        self.write_timeout = write_timeout

        self._connections: set[ViewerConnection] = set()
        self._control: deque[tuple[str, ViewerConnection, asyncio.Future | None, int]] = deque()
        self._outbound: deque[tuple[int, dict]] = deque()
        self._seq = 0  # shared by membership changes and messages
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task | None = None

        self._published = 0
        self._delivered = 0
        self._dropped = 0
        self._failed = 0

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the coordinating loop."""
        if self.running:
            logger.warning("Hub is already running")
            return
        self._task = asyncio.create_task(self._loop(), name="hwmon-hub")
        logger.info("Hub started (queue=%d, write_timeout=%.1fs)", self.queue_size, self.write_timeout)

    async def stop(self) -> None:
        """Stop the loop and close every live connection."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        while self._control:
            _, conn, fut, _ = self._control.popleft()
            await self._remove(conn)
            if fut is not None and not fut.done():
                fut.set_result(None)
        for conn in list(self._connections):
            await self._remove(conn)
        self._outbound.clear()
        self._idle.set()
        logger.info("Hub stopped")

    # ── Public API ─────────────────────────────────────────────────

    async def register(self, conn: ViewerConnection) -> bool:
        """Add *conn* to the live set.

        Returns once the loop has applied the change, so every broadcast
        enqueued afterwards reaches *conn*.  Returns ``False`` for a
        connection that was already unregistered.
        """
        if conn.state is ConnectionState.UNREGISTERED:
            logger.warning("Refusing to re-register %s", conn.connection_id)
            return False
        if not self.running:
            raise RuntimeError("Hub is not running")
        await self._submit(_REGISTER, conn)
        return conn.state is ConnectionState.REGISTERED

    async def unregister(self, conn: ViewerConnection) -> None:
        """Remove and close *conn*.  Calling it again is a no-op."""
        if conn.state is ConnectionState.UNREGISTERED:
            return
        if not self.running:
            await self._remove(conn)
            return
        await self._submit(_UNREGISTER, conn)

    def broadcast(self, message: dict) -> bool:
        """Queue *message* for every live connection without blocking.

        When the queue is full the oldest queued message is discarded.
        Returns ``False`` if that happened.
        """
        accepted = True
        if len(self._outbound) >= self.queue_size:
            _, dropped = self._outbound.popleft()
            self._dropped += 1
            accepted = False
            logger.warning(
                "Broadcast queue full (%d), dropped oldest %s message",
                self.queue_size, dropped.get("type", "?"),
            )
        self._seq += 1
        self._outbound.append((self._seq, message))
        self._published += 1
        self._idle.clear()
        self._wakeup.set()
        return accepted

    def broadcast_hardware_info(self, latest: Mapping[str, Any]) -> bool:
        return self.broadcast(hardware_info_message(latest))

    def broadcast_host_list(self, hosts: Mapping[str, Any]) -> bool:
        return self.broadcast(host_list_message(hosts))

    async def flush(self) -> None:
        """Wait until all queued membership changes and messages are processed."""
        if not self.running:
            return
        await self._idle.wait()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def stats(self) -> dict[str, int]:
        return {
            "published": self._published,
            "delivered": self._delivered,
            "dropped": self._dropped,
            "failed": self._failed,
            "connections": len(self._connections),
            "queue_depth": len(self._outbound),
        }

    # ── Coordinating loop ──────────────────────────────────────────

    async def _submit(self, op: str, conn: ViewerConnection) -> None:
        if not self.running:
            # Nothing drains the control queue once the loop is gone.
            if op == _UNREGISTER:
                await self._remove(conn)
            return
        fut = asyncio.get_running_loop().create_future()
        self._seq += 1
        self._control.append((op, conn, fut, self._seq))
        self._idle.clear()
        self._wakeup.set()
        await fut

    async def _loop(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._control or self._outbound:
                try:
                    await self._apply_control()
                    if self._outbound:
                        await self._deliver(*self._outbound.popleft())
                except Exception:
                    logger.exception("Hub loop iteration failed")
            if not self._control and not self._outbound:
                self._idle.set()

    async def _apply_control(self) -> None:
        while self._control:
            op, conn, fut, seq = self._control.popleft()
            try:
                if op == _REGISTER:
                    self._add(conn, seq)
                else:
                    await self._remove(conn)
            finally:
                if fut is not None and not fut.done():
                    fut.set_result(None)

    def _add(self, conn: ViewerConnection, seq: int) -> None:
        if conn.state is ConnectionState.UNREGISTERED:
            return
        conn.state = ConnectionState.REGISTERED
        conn.registered_seq = seq
        self._connections.add(conn)
        logger.info(
            "Viewer connected: %s (%d connected)",
            conn.connection_id, len(self._connections),
        )

    async def _remove(self, conn: ViewerConnection) -> None:
        if conn.state is ConnectionState.UNREGISTERED:
            return
        conn.state = ConnectionState.UNREGISTERED
        self._connections.discard(conn)
        try:
            await asyncio.wait_for(conn.close(), timeout=self.write_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Close of %s timed out after %.1fs", conn.connection_id, self.write_timeout,
            )
        logger.info(
            "Viewer disconnected: %s (%d connected)",
            conn.connection_id, len(self._connections),
        )

    async def _deliver(self, seq: int, message: dict) -> None:
        targets = [c for c in self._connections if c.registered_seq < seq]
        if not targets:
            return
        results = await asyncio.gather(*(self._send_one(conn, message) for conn in targets))
        for conn, ok in zip(targets, results):
            if ok:
                self._delivered += 1
            else:
                self._failed += 1
                await self._remove(conn)

    async def _send_one(self, conn: ViewerConnection, message: dict) -> bool:
        try:
            await asyncio.wait_for(conn.send(message), timeout=self.write_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Write to %s timed out after %.1fs, dropping viewer",
                conn.connection_id, self.write_timeout,
            )
        except Exception as exc:
            logger.warning("Failed to send to %s: %s", conn.connection_id, exc)
        return False
