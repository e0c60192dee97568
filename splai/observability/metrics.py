"""In-process counters and gauges with a Prometheus text rendering."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from decimal import Decimal

__all__ = [
    "DEFAULT_REGISTRY",
    "MetricPoint",
    "Registry",
    "Snapshot",
    "format_prom_line",
    "sanitize_metric_name",
]


@dataclass
class MetricPoint:
    """One named, labelled metric value."""

    name: str
    labels: dict[str, str] | None = None
    value: float = 0.0


@dataclass
class Snapshot:
    """A point-in-time copy of every counter and gauge, sorted by name."""

    counters: list[MetricPoint] = field(default_factory=list)
    gauges: list[MetricPoint] = field(default_factory=list)


@dataclass
class _Entry:
    name: str
    labels: dict[str, str] | None
    value: float = 0.0


def _metric_key(
    name: str, labels: dict[str, str] | None
) -> tuple[str, dict[str, str] | None]:
    if not labels:
        return name, None
    ordered = sorted(labels)
    key = "|".join([name, *(f"{k}={labels[k]}" for k in ordered)])
    return key, {k: labels[k] for k in ordered}


class Registry:
    """Thread-safe store of counters and gauges keyed by name and labels."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, _Entry] = {}
        self._gauges: dict[str, _Entry] = {}

    def inc_counter(self, name: str, labels: dict[str, str] | None = None, delta: float = 1.0) -> None:
        """Add ``delta`` to a counter; a zero delta changes nothing."""
        if delta == 0:
            return
        key, label_copy = _metric_key(name, labels)
        with self._lock:
            entry = self._counters.get(key)
            if entry is None or not entry.name:
                entry = _Entry(name, label_copy)
                self._counters[key] = entry
            entry.value += delta

    def set_gauge(self, name: str, labels: dict[str, str] | None, value: float) -> None:
        """Set a gauge to ``value``."""
        key, label_copy = _metric_key(name, labels)
        with self._lock:
            self._gauges[key] = _Entry(name, label_copy, value)

    def snapshot(self) -> Snapshot:
        """Return copies of all metrics, each list sorted by metric name."""
        with self._lock:
            counters = [_to_point(e) for e in self._counters.values()]
            gauges = [_to_point(e) for e in self._gauges.values()]
        counters.sort(key=lambda p: p.name)
        gauges.sort(key=lambda p: p.name)
        return Snapshot(counters=counters, gauges=gauges)

    def reset(self) -> None:
        """Forget every metric."""
        with self._lock:
            self._counters = {}
            self._gauges = {}

    def render_prometheus(self) -> str:
        """Render all metrics in the Prometheus text exposition format."""
        snap = self.snapshot()
        lines = sorted(
            format_prom_line(sanitize_metric_name(p.name), p.labels, p.value)
            for p in (*snap.counters, *snap.gauges)
        )
        return "\n".join(lines) + "\n"


def _to_point(entry: _Entry) -> MetricPoint:
    labels = dict(entry.labels) if entry.labels else None
    return MetricPoint(name=entry.name, labels=labels, value=entry.value)


def sanitize_metric_name(name: str) -> str:
    """Replace characters not allowed in a metric name with underscores."""
    name = name.strip()
    if not name:
        return "splai_metric"
    out = []
    for index, ch in enumerate(name):
        valid = (
            ("a" <= ch <= "z")
            or ("A" <= ch <= "Z")
            or ch == "_"
            or ("0" <= ch <= "9" and index > 0)
        )
        out.append(ch if valid else "_")
    return "".join(out)


def _format_float(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


_NAMED_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
}


def _quote(text: str) -> str:
    parts = []
    for ch in text:
        if ch in _NAMED_ESCAPES:
            parts.append(_NAMED_ESCAPES[ch])
        elif ch.isprintable():
            parts.append(ch)
        elif ord(ch) < 0x80:
            parts.append(f"\\x{ord(ch):02x}")
        elif ord(ch) < 0x10000:
            parts.append(f"\\u{ord(ch):04x}")
        else:
            parts.append(f"\\U{ord(ch):08x}")
    return '"' + "".join(parts) + '"'


def format_prom_line(name: str, labels: dict[str, str] | None, value: float) -> str:
    """Format one exposition line, with labels sorted by key."""
    if not labels:
        return f"{name} {_format_float(value)}"
    rendered = ",".join(
        f"{sanitize_metric_name(k)}={_quote(labels[k])}" for k in sorted(labels)
    )
    return f"{name}{{{rendered}}} {_format_float(value)}"


DEFAULT_REGISTRY = Registry()