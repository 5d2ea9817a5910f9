"""pytest configuration and shared fixtures for hwmon tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from hwmon.models import (
    CPUInfo,
    DiskInfo,
    InterfaceInfo,
    MemoryInfo,
    NetworkInfo,
    OSInfo,
    PartitionInfo,
    SnapshotRecord,
)


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeWebSocket:
    """Records sent JSON; can be told to fail or stall on send."""

    def __init__(self, fail: bool = False, delay: float = 0.0, close_delay: float = 0.0) -> None:
        self.sent: list[dict] = []
        self.fail = fail
        self.delay = delay
        self.close_delay = close_delay
        self.close_calls = 0

    async def send_json(self, data: dict) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_calls += 1
        if self.close_delay:
            await asyncio.sleep(self.close_delay)


def make_record(hostname: str = "host-a", seq: int = 0, **overrides) -> SnapshotRecord:
    """Build a realistic snapshot; *seq* makes records distinguishable."""
    fields = dict(
        hostname=hostname,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seq),
        cpu=CPUInfo(model_name="Intel Xeon", cores=8, usage=float(seq % 100)),
        memory=MemoryInfo(
            total=16_000_000_000, used=8_000_000_000, free=8_000_000_000,
            usage=50.0, swap_total=2_000_000_000,
        ),
        disk=DiskInfo(partitions=(
            PartitionInfo(device="/dev/sda1", mount_point="/", total=500, used=200, free=300, usage=40.0),
        )),
        network=NetworkInfo(interfaces=(
            InterfaceInfo(name="eth0", addresses=("10.0.0.5/24",), bytes_sent=seq, bytes_recv=seq),
        )),
        os=OSInfo(name="linux", version="6.1", architecture="x86_64", platform="debian"),
    )
    fields.update(overrides)
    return SnapshotRecord(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
