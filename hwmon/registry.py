"""Bounded multi-host snapshot store.

The registry maps hostname → :class:`~hwmon.models.HostLedger` and enforces
two capacity limits:

  * at most ``max_hosts`` hosts; adding a new host at capacity evicts the
    host with the oldest ``last_update``;
  * at most ``max_records`` records per host; the oldest record is dropped
    (FIFO) when a new one would exceed the limit.

Mutations (ingest, eviction, sweep) hold the exclusive side of a single
reader/writer lock; queries hold the shared side and always return copies.

Every ingest persists the host's full ledger.  The file write happens after
the in-memory mutation, on a copy, outside the registry lock.  Failures are
logged and never reach the caller.
"""

from __future__ import annotations

import contextlib
import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator

from hwmon.models import HostLedger, HostSummary, SnapshotRecord
from hwmon.storage import PersistenceError, load_ledgers, save_ledger

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _ReadWriteLock:
    """Many readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class Registry:
    """The ingestion store.  Safe to call from multiple threads."""

    def __init__(
        self,
        data_dir: str | Path,
        max_hosts: int = 100,
        max_records: int = 100,
        clock: Clock | None = None,
    ) -> None:
        if max_hosts < 1 or max_records < 1:
            raise ValueError("max_hosts and max_records must be at least 1")
        self.data_dir = Path(data_dir)
        self.max_hosts = max_hosts
        self.max_records = max_records
        self._clock = clock or _utcnow
        self._hosts: dict[str, HostLedger] = {}
        self._lock = _ReadWriteLock()

        # File writes: one at a time, newest revision wins per host.
        self._io_lock = threading.Lock()
        self._revisions = itertools.count(1)
        self._written: dict[str, int] = {}

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Failed to create data directory %s: %s", self.data_dir, exc)

    # ── Mutation ───────────────────────────────────────────────────

    def ingest(self, record: SnapshotRecord) -> None:
        """Append *record* to its host's ledger and persist the ledger.

        Never raises on persistence failure.
        """
        hostname = record.hostname
        evicted: str | None = None
        evicted_rev = 0
        with self._lock.write():
            now = self._clock()
            ledger = self._hosts.get(hostname)
            if ledger is None:
                if len(self._hosts) >= self.max_hosts:
                    evicted = self._evict_oldest_host()
                    evicted_rev = next(self._revisions)
                ledger = HostLedger(
                    hostname=hostname,
                    last_update=now,
                    max_records=self.max_records,
                )
                self._hosts[hostname] = ledger
                logger.info("Tracking new host %s (%d hosts)", hostname, len(self._hosts))

            if ledger.append(record) is not None:
                logger.debug("Dropped oldest record for %s", hostname)
            if now > ledger.last_update:
                ledger.last_update = now

            snapshot = ledger.copy_out()
            revision = next(self._revisions)

        if evicted is not None:
            self._forget_written([evicted], evicted_rev)
        self._persist(snapshot, revision)

    def _evict_oldest_host(self) -> str | None:
        # Caller holds the write lock.
        oldest: HostLedger | None = None
        for ledger in self._hosts.values():
            if oldest is None or ledger.last_update < oldest.last_update:
                oldest = ledger
        if oldest is None:
            return None
        del self._hosts[oldest.hostname]
        logger.info(
            "Host capacity (%d) reached, evicted %s (last update %s)",
            self.max_hosts, oldest.hostname, oldest.last_update.isoformat(),
        )
        return oldest.hostname

    def sweep(self, max_age: timedelta) -> list[str]:
        """Drop every host whose last update is older than ``now - max_age``."""
        with self._lock.write():
            now = self._clock()
            stale = [
                name for name, ledger in self._hosts.items()
                if now - ledger.last_update > max_age
            ]
            for name in stale:
                del self._hosts[name]
            remaining = len(self._hosts)
            removed_rev = next(self._revisions)

        if stale:
            self._forget_written(stale, removed_rev)
            logger.info(
                "Sweep removed %d stale host(s) older than %s, %d remaining",
                len(stale), max_age, remaining,
            )
        return stale

    def restore(self) -> int:
        """Reload persisted ledgers from ``data_dir``.

        Each ledger is trimmed to the newest ``max_records`` records and only
        the ``max_hosts`` most recently updated hosts are kept.  Returns the
        number of hosts restored.
        """
        ledgers = load_ledgers(self.data_dir)
        ledgers.sort(key=lambda ledger: ledger.last_update, reverse=True)
        restored = 0
        with self._lock.write():
            for ledger in ledgers:
                if ledger.hostname in self._hosts:
                    continue
                if len(self._hosts) >= self.max_hosts:
                    break
                trimmed = ledger.copy_out(limit=self.max_records)
                trimmed.max_records = self.max_records
                self._hosts[ledger.hostname] = trimmed
                restored += 1
        if restored:
            logger.info("Restored %d host ledger(s) from %s", restored, self.data_dir)
        return restored

    # ── Persistence ────────────────────────────────────────────────

    def _persist(self, ledger: HostLedger, revision: int) -> None:
        with self._io_lock:
            if self._written.get(ledger.hostname, 0) > revision:
                return
            try:
                save_ledger(self.data_dir, ledger)
            except PersistenceError as exc:
                logger.warning("Ledger for %s not persisted: %s", ledger.hostname, exc)
                return
            except Exception:
                logger.exception("Unexpected error persisting ledger for %s", ledger.hostname)
                return
            self._written[ledger.hostname] = revision

    def _forget_written(self, hostnames: list[str], revision: int) -> None:
        # A host re-ingested after *revision* keeps its newer mark.
        with self._io_lock:
            for name in hostnames:
                if self._written.get(name, 0) <= revision:
                    self._written.pop(name, None)

    # ── Queries ────────────────────────────────────────────────────

    def list_hosts(self) -> dict[str, HostLedger]:
        """Point-in-time copy of every host's ledger."""
        with self._lock.read():
            return {name: ledger.copy_out() for name, ledger in self._hosts.items()}

    def get_host(self, hostname: str, limit: int | None = None) -> HostLedger | None:
        """Copy of one host's ledger, keeping only the newest *limit* records if given."""
        with self._lock.read():
            ledger = self._hosts.get(hostname)
            if ledger is None:
                return None
            return ledger.copy_out(limit=limit)

    def latest_per_host(self) -> dict[str, SnapshotRecord]:
        """The newest record of every host that has one."""
        with self._lock.read():
            return {
                name: ledger.records[-1]
                for name, ledger in self._hosts.items()
                if ledger.records
            }

    def summaries(self) -> dict[str, HostSummary]:
        with self._lock.read():
            return {name: ledger.summary() for name, ledger in self._hosts.items()}

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._hosts)

    def __contains__(self, hostname: object) -> bool:
        with self._lock.read():
            return hostname in self._hosts
