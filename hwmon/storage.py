"""Per-host ledger files.

Each host's full ledger lives in one JSON file inside the data directory and
is rewritten in full on every save.  Hostnames come from remote agents, so the
file name is derived from a sanitised form plus a digest of the raw name.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import ValidationError

from hwmon.models import HostLedger

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_MAX_STEM = 64
_SUFFIX = ".json"


class PersistenceError(Exception):
    """Raised when a ledger cannot be written to or read from disk."""


def ledger_filename(hostname: str) -> str:
    """Return a file name for *hostname* that is safe inside the data directory."""
    stem = _UNSAFE_CHARS.sub("_", hostname)[:_MAX_STEM].lstrip(".") or "host"
    digest = hashlib.sha256(hostname.encode("utf-8")).hexdigest()[:12]
    return f"{stem}-{digest}{_SUFFIX}"


def ledger_path(data_dir: str | Path, hostname: str) -> Path:
    return Path(data_dir) / ledger_filename(hostname)


def save_ledger(data_dir: str | Path, ledger: HostLedger) -> Path:
    """Atomically replace the ledger file for ``ledger.hostname``."""
    path = ledger_path(data_dir, ledger.hostname)
    payload = ledger.model_dump_json(indent=2, by_alias=True)
    tmp_name: str | None = None
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=".tmp-", suffix=_SUFFIX,
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
        raise PersistenceError(
            f"Failed to save ledger for {ledger.hostname!r}: {exc}"
        ) from exc
    logger.debug("Saved ledger for %s to %s", ledger.hostname, path)
    return path


def load_ledger(path: str | Path) -> HostLedger:
    """Read one ledger file back into a :class:`HostLedger`."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
        return HostLedger.model_validate_json(raw)
    except (OSError, ValidationError) as exc:
        raise PersistenceError(f"Failed to load ledger {path}: {exc}") from exc


def load_ledgers(data_dir: str | Path) -> list[HostLedger]:
    """Load every readable ledger in *data_dir*; bad files are logged and skipped."""
    directory = Path(data_dir)
    if not directory.is_dir():
        return []
    ledgers: list[HostLedger] = []
    for path in sorted(directory.glob(f"*{_SUFFIX}")):
        if path.name.startswith("."):
            continue
        try:
            ledgers.append(load_ledger(path))
        except PersistenceError as exc:
            logger.warning("Skipping unreadable ledger file: %s", exc)
    return ledgers
