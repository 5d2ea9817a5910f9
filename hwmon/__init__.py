"""hwmon: hardware telemetry ingestion and live fan-out.

Agents post periodic hardware snapshots; the server keeps a bounded history
per host and pushes each new snapshot to connected viewers.

Quickstart::

    from hwmon.registry import Registry
    from hwmon.hub import Hub

    registry = Registry("./data", max_hosts=100, max_records=100)
    registry.ingest(record)

    hub = Hub()
    await hub.start()
    hub.broadcast_hardware_info(registry.latest_per_host())
"""

__version__ = "1.0.0"
