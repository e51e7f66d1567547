"""In-process counters for the payment server, exported in Prometheus text format."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class Counter:
    """Monotonic counter keyed by an ordered set of label values."""

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self.label_names: Tuple[str, ...] = tuple(label_names or ())
        self._values: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelKey:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError(f"{self.name}: counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def _sample(self, key: LabelKey, value: float) -> str:
        if not self.label_names:
            return f"{self.name} {value}"
        pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
        return f"{self.name}{{{pairs}}} {value}"

    def export(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} counter")
        with self._lock:
            samples = sorted(self._values.items())
        lines.extend(self._sample(key, value) for key, value in samples)
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class MetricsRegistry:
    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Counter:
        """Return the counter registered under `name`, creating it on first use."""
        with self._lock:
            existing = self.counters.get(name)
            if existing is None:
                existing = self.counters[name] = Counter(name, label_names, help_text)
            return existing

    def export_prometheus(self) -> str:
        with self._lock:
            counters = list(self.counters.values())
        lines: List[str] = []
        for counter in counters:
            lines.extend(counter.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        with self._lock:
            counters = list(self.counters.values())
        for counter in counters:
            counter.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", ["method", "path", "status"], "HTTP requests by method, path and status."
)
payment_intents_total = METRICS.counter(
    "payment_intents_total", ["outcome"], "PaymentIntent creation attempts (created, rejected, gateway_error)."
)
payment_verifications_total = METRICS.counter(
    "payment_verifications_total", ["status"], "Verification lookups by reported intent status."
)
webhook_events_total = METRICS.counter(
    "webhook_events_total", ["type", "outcome"], "Stripe webhook deliveries by event type and outcome."
)


# Stripe object ids (pi_, evt_, ch_, re_) and uuid-ish or numeric segments
_ID_SEGMENT = re.compile(r"^(?:\d+|[0-9a-fA-F-]{8,}|(?:pi|evt|ch|re)_[A-Za-z0-9]+)$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to ``:id`` so label cardinality stays bounded."""
    segments = [seg for seg in path.split("/") if seg]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(seg) else seg for seg in segments)
