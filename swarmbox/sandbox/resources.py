"""Parsers for the human-readable strings the container runtime reports.

``docker stats --no-stream --format '{{json .}}'`` reports values such as
``"128MiB / 512MiB"``, ``"15.5%"`` and ``"1.2MB / 3.4MB"``.  These helpers
normalize them into bytes and percentages.

Every function here is pure and total: unparseable input yields ``0``
instead of raising, and results are never negative.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from swarmbox.models import ResourceUsage

log = logging.getLogger(__name__)

#: Multipliers keyed by lower-cased unit suffix.  Binary units use 1024,
#: decimal units use 1000.
UNIT_FACTORS: dict[str, int] = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "tb": 1000**4,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
    "tib": 1024**4,
}

_QUANTITY_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+(?:[eE][+-]?[0-9]+)?)\s*([A-Za-z]*)\s*$")


def parse_bytes(value: str | None) -> int:
    """Parse a single quantity such as ``"1.5GiB"`` or ``"300kB"`` into bytes."""
    if not value:
        return 0
    match = _QUANTITY_RE.match(value)
    if match is None:
        return 0
    number, unit = match.groups()
    factor = UNIT_FACTORS.get(unit.lower())
    if factor is None:
        return 0
    try:
        return max(0, round(float(number) * factor))
    except (ValueError, OverflowError):
        return 0


def _split_pair(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split("/")]


def parse_memory(value: str | None) -> int:
    """Return the *used* component of a ``"used / limit"`` memory string."""
    parts = _split_pair(value)
    if not parts:
        return 0
    return parse_bytes(parts[0])


def parse_memory_limit(value: str | None) -> int:
    """Return the *limit* component of a ``"used / limit"`` memory string."""
    parts = _split_pair(value)
    if len(parts) < 2:
        return 0
    return parse_bytes(parts[1])


def parse_cpu_percent(value: str | None) -> float:
    """Parse ``"15.5%"`` into ``15.5``."""
    if not value:
        return 0.0
    try:
        result = float(value.strip().rstrip("%").strip())
    except ValueError:
        return 0.0
    if not math.isfinite(result) or result < 0:
        return 0.0
    return result


def parse_io_pair(value: str | None) -> int:
    """Sum both components of an ``"in / out"`` I/O string, in bytes."""
    return sum(parse_bytes(part) for part in _split_pair(value))


def parse_stats(raw: str | dict[str, Any] | None) -> ResourceUsage:
    """Build a ``ResourceUsage`` from one runtime stats record.

    *raw* is either the JSON line emitted by ``stats --no-stream --format
    json`` or an already-decoded mapping.  Missing or malformed fields
    become zero.  ``cpu_time`` carries the CPU percentage the runtime
    reported for the sampling window.
    """
    record: dict[str, Any]
    if raw is None:
        return ResourceUsage()
    if isinstance(raw, dict):
        record = raw
    else:
        line = raw.strip().splitlines()[0] if raw.strip() else ""
        try:
            decoded = json.loads(line) if line else {}
        except json.JSONDecodeError:
            log.debug("Unparseable stats record: %.120s", line)
            return ResourceUsage()
        if not isinstance(decoded, dict):
            return ResourceUsage()
        record = decoded

    def _field(name: str) -> str:
        value = record.get(name)
        return value if isinstance(value, str) else ""

    return ResourceUsage(
        cpu_time=parse_cpu_percent(_field("CPUPerc")),
        peak_memory_bytes=parse_memory(_field("MemUsage")),
        disk_io_bytes=parse_io_pair(_field("BlockIO")),
        network_io_bytes=parse_io_pair(_field("NetIO")),
    )
