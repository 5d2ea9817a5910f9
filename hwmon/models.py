"""Data model for hardware telemetry snapshots and per-host ledgers.

A :class:`SnapshotRecord` is one host's hardware facts at one point in time,
exactly as the collection agent posts it.  Records are frozen after
construction; the nested sequences are tuples for the same reason.

A :class:`HostLedger` is the bounded, append-ordered history the registry keeps
for a single host.  Ledgers handed out by the registry are always copies.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


# ── Snapshot sub-records ──────────────────────────────────────────


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class CPUInfo(_Frozen):
    model_name: str = ""
    cores: int = Field(default=0, ge=0)
    usage: float = Field(default=0.0, ge=0.0, le=100.0)
    temperature: float = Field(default=0.0, ge=0.0)
    frequency: float = Field(default=0.0, ge=0.0)  # MHz


class MemoryInfo(_Frozen):
    total: int = Field(default=0, ge=0)
    used: int = Field(default=0, ge=0)
    free: int = Field(default=0, ge=0)
    usage: float = Field(default=0.0, ge=0.0, le=100.0)
    swap_total: int = Field(default=0, ge=0)
    swap_used: int = Field(default=0, ge=0)
    swap_free: int = Field(default=0, ge=0)


class PartitionInfo(_Frozen):
    device: str = ""
    mount_point: str = ""
    total: int = Field(default=0, ge=0)
    used: int = Field(default=0, ge=0)
    free: int = Field(default=0, ge=0)
    usage: float = Field(default=0.0, ge=0.0, le=100.0)


class DiskInfo(_Frozen):
    partitions: tuple[PartitionInfo, ...] = ()


class InterfaceInfo(_Frozen):
    name: str = ""
    addresses: tuple[str, ...] = ()
    bytes_sent: int = Field(default=0, ge=0)
    bytes_recv: int = Field(default=0, ge=0)
    packets_sent: int = Field(default=0, ge=0)
    packets_recv: int = Field(default=0, ge=0)


class NetworkInfo(_Frozen):
    interfaces: tuple[InterfaceInfo, ...] = ()


class OSInfo(_Frozen):
    name: str = ""
    version: str = ""
    architecture: str = ""
    platform: str = ""


# ── Snapshot ──────────────────────────────────────────────────────


class SnapshotRecord(_Frozen):
    """One timestamped capture of a host's hardware and OS facts.

    Categories the agent failed to collect arrive empty and keep their
    zero defaults.  ``timestamp`` is the agent's capture time; it may be
    omitted on the wire, in which case the ingestion endpoint stamps it.
    """

    hostname: str = Field(min_length=1)
    timestamp: datetime | None = None
    cpu: CPUInfo = Field(default_factory=CPUInfo)
    memory: MemoryInfo = Field(default_factory=MemoryInfo)
    disk: DiskInfo = Field(default_factory=DiskInfo)
    network: NetworkInfo = Field(default_factory=NetworkInfo)
    os: OSInfo = Field(default_factory=OSInfo)


# ── Ledgers ───────────────────────────────────────────────────────


class HostLedger(BaseModel):
    """Bounded history of snapshots for one host, oldest first.

    Only the registry mutates a ledger, and only under its lock.
    """

    # Files and API responses name the record list "hardware_info".
    model_config = ConfigDict(populate_by_name=True)

    hostname: str = Field(min_length=1)
    last_update: datetime
    max_records: int = Field(default=100, ge=1)
    records: list[SnapshotRecord] = Field(default_factory=list, alias="hardware_info")

    def append(self, record: SnapshotRecord) -> SnapshotRecord | None:
        """Append *record*; return the evicted oldest record, if any."""
        self.records.append(record)
        if len(self.records) > self.max_records:
            return self.records.pop(0)
        return None

    @property
    def latest(self) -> SnapshotRecord | None:
        return self.records[-1] if self.records else None

    def copy_out(self, limit: int | None = None) -> HostLedger:
        """Return a detached copy, optionally keeping only the newest *limit* records."""
        records = self.records
        if limit is not None and len(records) > limit:
            records = records[len(records) - limit:] if limit > 0 else []
        return HostLedger(
            hostname=self.hostname,
            last_update=self.last_update,
            max_records=self.max_records,
            records=list(records),
        )

    def summary(self) -> HostSummary:
        return HostSummary(
            hostname=self.hostname,
            last_update=self.last_update,
            record_count=len(self.records),
            max_records=self.max_records,
        )


class HostSummary(BaseModel):
    """Per-host entry of the ``host_list`` broadcast."""

    hostname: str
    last_update: datetime
    record_count: int
    max_records: int


__all__ = [
    "CPUInfo",
    "MemoryInfo",
    "PartitionInfo",
    "DiskInfo",
    "InterfaceInfo",
    "NetworkInfo",
    "OSInfo",
    "SnapshotRecord",
    "HostLedger",
    "HostSummary",
]
