"""Prometheus-compatible metrics for broker observability.

Tracks matchmaking throughput (searches, matches, cancellations), failures
(contention, unreachable partners, disconnects) and current occupancy
(waiting parties, active pairings, open connections). Metrics are held in
memory and exposed via the /metrics endpoint in Prometheus exposition format.
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Seconds a receiver waited before being claimed: 100ms to 10min
WAIT_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, float("inf"))


@dataclass
class Histogram:
    """Wait-time distribution with cumulative bucket counts."""

    name: str
    help: str
    bounds: tuple[float, ...] = WAIT_BUCKETS
    counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        """Record an observation.

        Args:
            value: Observed value in seconds
        """
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1

    def mean(self) -> float | None:
        if self.count == 0:
            return None
        return self.sum / self.count

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} histogram"]
        for bound, bucket_count in zip(self.bounds, self.counts):
            le = "+Inf" if bound == float("inf") else str(bound)
            lines.append(f'{self.name}_bucket{{le="{le}"}} {bucket_count}')
        lines.append(f"{self.name}_sum {self.sum}")
        lines.append(f"{self.name}_count {self.count}")
        return lines


@dataclass
class Metric:
    """Single-valued metric. ``kind`` is ``counter`` or ``gauge``."""

    name: str
    help: str
    kind: str = "counter"
    value: float = 0.0

    def add(self, amount: float = 1.0) -> None:
        if self.kind == "counter" and amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        self.value += amount

    def render(self) -> list[str]:
        return [
            f"# HELP {self.name} {self.help}",
            f"# TYPE {self.name} {self.kind}",
            f"{self.name} {self.value}",
        ]


COUNTERS = {
    "searches_total": "Total number of find_partner requests",
    "matches_total": "Total number of pairings established",
    "cancellations_total": "Total number of cancelled searches",
    "disconnects_total": "Total number of connections dropped while waiting or paired",
    "contention_errors_total": "Total number of searches failed by slot contention",
    "partner_unreachable_total": "Total number of pairings lost to peer failures",
}

GAUGES = {
    "waiting_parties": "Number of local parties occupying the waiting slot (0 or 1)",
    "active_pairings": "Number of active pairings with at least one local party",
    "connections_active": "Number of open client connections",
}


class MetricsCollector:
    """Thread-safe metrics collector with Prometheus-compatible output.

    Thread-safety: All public methods are thread-safe via mutex.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._metrics: dict[str, Metric] = {
            name: Metric(name=name, help=help_text) for name, help_text in COUNTERS.items()
        }
        for name, help_text in GAUGES.items():
            self._metrics[name] = Metric(name=name, help=help_text, kind="gauge")
        self._match_wait = Histogram(
            name="match_wait_seconds",
            help="Time the receiver spent waiting before being claimed",
        )
        logger.info("MetricsCollector initialized")

    def _add(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._metrics[name].add(amount)

    def _set(self, name: str, value: float) -> None:
        with self._lock:
            self._metrics[name].value = value

    # === Recording ===

    def record_search(self) -> None:
        self._add("searches_total")

    def record_match(self, wait_seconds: float) -> None:
        """Record a pairing.

        Args:
            wait_seconds: How long the receiver waited in the slot
        """
        with self._lock:
            self._metrics["matches_total"].add()
            self._match_wait.observe(max(wait_seconds, 0.0))

    def record_cancellation(self) -> None:
        self._add("cancellations_total")

    def record_contention(self) -> None:
        self._add("contention_errors_total")

    def record_partner_unreachable(self) -> None:
        self._add("partner_unreachable_total")

    def record_disconnect(self) -> None:
        self._add("disconnects_total")

    def record_connection_opened(self) -> None:
        self._add("connections_active")

    def record_connection_closed(self) -> None:
        self._add("connections_active", -1.0)

    def set_waiting_parties(self, count: int) -> None:
        self._set("waiting_parties", count)

    def set_active_pairings(self, count: int) -> None:
        self._set("active_pairings", count)

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        with self._lock:
            lines: list[str] = []
            for metric in self._metrics.values():
                lines.extend(metric.render())
            lines.extend(self._match_wait.render())
            return "\n".join(lines) + "\n"

    def get_summary(self) -> dict[str, float | None]:
        """Get summary statistics for the /metrics/summary endpoint."""
        with self._lock:
            summary: dict[str, float | None] = {
                name: metric.value for name, metric in self._metrics.items()
            }
            summary["match_wait_mean_s"] = self._match_wait.mean()
            return summary


_metrics_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton.

    Thread-safety: Safe for concurrent access.
    """
    global _metrics_collector

    if _metrics_collector is None:
        with _collector_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()

    return _metrics_collector
