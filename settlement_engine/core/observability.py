from __future__ import annotations

import os
import threading
from collections import defaultdict
from dataclasses import dataclass, field


@dataclass
class _CounterFamily:
    help_text: str
    label_names: tuple[str, ...]
    values: dict[tuple[str, ...], float] = field(default_factory=lambda: defaultdict(float))


class PrometheusMetrics:
    """In-process counters rendered in the Prometheus text format."""

    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self._lock = threading.Lock()
        self._families: dict[str, _CounterFamily] = {
            "http_requests_total": _CounterFamily("Total HTTP requests by route and method.", ("path", "method")),
            "http_request_duration_seconds_sum": _CounterFamily(
                "Total request latency in seconds by route and method.", ("path", "method")
            ),
            "settlement_batches_total": _CounterFamily(
                "Settlement batches by pool source and final status.", ("pool_source", "status")
            ),
            "pool_fetch_total": _CounterFamily("Pool API polls by pool source and outcome.", ("pool_source", "outcome")),
            "alerts_opened_total": _CounterFamily("Risk alerts opened by kind.", ("kind",)),
        }

    @classmethod
    def from_env(cls) -> "PrometheusMetrics":
        raw = os.getenv("ENABLE_PROMETHEUS_METRICS", "false").strip().lower()
        return cls(enabled=raw in {"1", "true", "yes", "on"})

    def _inc(self, name: str, labels: tuple[str, ...], amount: float = 1) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._families[name].values[labels] += amount

    def observe_http_request(self, path: str, method: str, elapsed_seconds: float) -> None:
        self._inc("http_requests_total", (path, method))
        self._inc("http_request_duration_seconds_sum", (path, method), elapsed_seconds)

    def record_batch(self, pool_source: str, status: str) -> None:
        self._inc("settlement_batches_total", (pool_source, status))

    def record_fetch(self, pool_source: str, outcome: str) -> None:
        self._inc("pool_fetch_total", (pool_source, outcome))

    def record_alert(self, kind: str) -> None:
        self._inc("alerts_opened_total", (kind,))

    def render(self) -> str:
        if not self.enabled:
            return "# metrics disabled\n"

        lines: list[str] = []
        with self._lock:
            for name, family in self._families.items():
                lines.append(f"# HELP {name} {family.help_text}")
                lines.append(f"# TYPE {name} counter")
                for labels, value in sorted(family.values.items()):
                    rendered = ",".join(
                        f'{label}="{label_value}"' for label, label_value in zip(family.label_names, labels)
                    )
                    # latency sums keep six decimals; counts are whole numbers
                    number = f"{value:.6f}" if name.endswith("_seconds_sum") else str(int(value))
                    lines.append(f"{name}{{{rendered}}} {number}")
        lines.append("")
        return "\n".join(lines)
