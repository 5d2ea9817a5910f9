"""Server configuration: dataclass defaults, ``HWMON_*`` environment, CLI flags."""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass, fields
from typing import Sequence

logger = logging.getLogger(__name__)

_ENV_PREFIX = "HWMON_"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080

    # Store limits
    max_hosts: int = 100
    max_records: int = 100  # per host
    data_dir: str = "./data"
    restore_on_start: bool = True

    # Sweep: hourly, dropping hosts silent for 24h
    sweep_interval_seconds: float = 3600
    max_age_seconds: float = 86400

    # Hub
    broadcast_queue_size: int = 100
    write_timeout_seconds: float = 5.0

    # Returned to agents as "action" after each ingestion; empty disables it
    agent_directive: str = "stop_and_delete"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ServerConfig:
        """Build a config from ``HWMON_<FIELD>`` variables, e.g. ``HWMON_MAX_HOSTS``."""
        env = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                values[f.name] = _coerce(raw, f.type)
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", _ENV_PREFIX, f.name.upper(), raw)
        return cls(**values)


def _coerce(raw: str, type_name: object) -> object:
    # Annotations are strings under ``from __future__ import annotations``
    name = type_name if isinstance(type_name, str) else getattr(type_name, "__name__", "str")
    if name == "bool":
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
        raise ValueError(raw)
    if name == "int":
        return int(raw)
    if name == "float":
        return float(raw)
    return raw


def parse_args(argv: Sequence[str] | None = None, base: ServerConfig | None = None) -> ServerConfig:
    """Apply command-line flags on top of *base* (default: the environment)."""
    cfg = base or ServerConfig.from_env()
    ap = argparse.ArgumentParser(description="Hardware telemetry ingestion server")
    ap.add_argument("--host", default=cfg.host)
    ap.add_argument("--port", type=int, default=cfg.port)
    ap.add_argument("--max-hosts", type=int, default=cfg.max_hosts, help="maximum tracked hosts")
    ap.add_argument("--max-records", type=int, default=cfg.max_records, help="records kept per host")
    ap.add_argument("--data-dir", default=cfg.data_dir, help="directory for per-host ledger files")
    ap.add_argument("--sweep-interval", type=float, default=cfg.sweep_interval_seconds,
                    help="seconds between stale-host sweeps")
    ap.add_argument("--max-age", type=float, default=cfg.max_age_seconds,
                    help="seconds without updates before a host is swept")
    ap.add_argument("--agent-directive", default=cfg.agent_directive,
                    help="action returned to agents after ingestion ('' to disable)")
    ap.add_argument("--no-restore", action="store_true", help="do not reload ledgers at startup")
    ap.add_argument("--log-level", default=cfg.log_level)
    args = ap.parse_args(argv)

    return ServerConfig(
        host=args.host,
        port=args.port,
        max_hosts=args.max_hosts,
        max_records=args.max_records,
        data_dir=args.data_dir,
        restore_on_start=cfg.restore_on_start and not args.no_restore,
        sweep_interval_seconds=args.sweep_interval,
        max_age_seconds=args.max_age,
        broadcast_queue_size=cfg.broadcast_queue_size,
        write_timeout_seconds=cfg.write_timeout_seconds,
        agent_directive=args.agent_directive,
        log_level=args.log_level,
    )
