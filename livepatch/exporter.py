# FILE: livepatch/exporter.py
# Prometheus exporter wrapper for the live-patch agent.
#
# - Metrics cover the poll/apply cycle, the interception rules and the
#   hotspot table.
# - Label sets are small and controlled; label values are truncated.
# - Each exporter owns a private CollectorRegistry so several agents (or
#   test cases) in one process never collide on metric names.
# - The exporter does not expose an HTTP endpoint unless ensure_server()
#   is called with a non-zero port.

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

logger = logging.getLogger(__name__)


def _safe_str(value: Any) -> str:
    """
    Convert values to short strings for labels.

    - None -> ""
    - Long strings are truncated to 64 characters to limit label explosion.
    """
    if value is None:
        return ""
    s = str(value)
    if len(s) > 64:
        s = s[:61] + "..."
    return s


class LivepatchExporter:
    """
    Prometheus metrics for the agent.

        exporter = LivepatchExporter(port=9109)
        exporter.ensure_server()
        exporter.record_cycle("applied", latency_s=0.12)
    """

    def __init__(self, port: int = 0, *, registry: Optional[CollectorRegistry] = None) -> None:
        self.port = int(port)
        self.registry = registry or CollectorRegistry(auto_describe=True)

        self._lock = threading.Lock()
        self._initialized = False
        self._server_started = False

        self._cycle_counter: Optional[Counter] = None
        self._cycle_latency: Optional[Histogram] = None
        self._entry_counter: Optional[Counter] = None
        self._sanitized_counter: Optional[Counter] = None
        self._redirect_counter: Optional[Counter] = None
        self._hotspot_gauge: Optional[Gauge] = None
        self._ledger_gauge: Optional[Gauge] = None

    def _init_metrics_if_needed(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._cycle_counter = Counter(
                "livepatch_poll_cycles_total",
                "Poll cycles by outcome",
                ["status"],
                registry=self.registry,
            )
            self._cycle_latency = Histogram(
                "livepatch_cycle_latency_seconds",
                "Wall time of one check-apply cycle",
                buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
                registry=self.registry,
            )
            self._entry_counter = Counter(
                "livepatch_patch_entries_total",
                "Patch entries by outcome",
                ["status"],
                registry=self.registry,
            )
            self._sanitized_counter = Counter(
                "livepatch_sanitized_total",
                "Values rewritten by sanitization rules",
                ["kind"],
                registry=self.registry,
            )
            self._redirect_counter = Counter(
                "livepatch_redirect_total",
                "Deprecated calls redirected to a shim",
                ["target"],
                registry=self.registry,
            )
            self._hotspot_gauge = Gauge(
                "livepatch_hotspot_signatures",
                "Distinct call-site signatures above the hotspot threshold",
                registry=self.registry,
            )
            self._ledger_gauge = Gauge(
                "livepatch_ledger_versions",
                "Manifest versions recorded in the applied-patch ledger",
                registry=self.registry,
            )
            self._initialized = True

    def ensure_server(self) -> bool:
        """Start the standalone HTTP endpoint once; no-op for port 0."""
        if self.port <= 0:
            return False
        self._init_metrics_if_needed()
        with self._lock:
            if self._server_started:
                return True
            try:
                start_http_server(self.port, registry=self.registry)
            except OSError:
                logger.warning("metrics server failed to bind port %d", self.port, exc_info=True)
                return False
            self._server_started = True
            logger.info("metrics server listening on port %d", self.port)
            return True

    # ------------------------------------------------------------------
    # Recorders
    # ------------------------------------------------------------------

    def record_cycle(self, status: str, *, latency_s: Optional[float] = None) -> None:
        self._init_metrics_if_needed()
        self._cycle_counter.labels(status=_safe_str(status)).inc()
        if latency_s is not None and latency_s >= 0.0:
            self._cycle_latency.observe(latency_s)

    def record_entry(self, status: str) -> None:
        self._init_metrics_if_needed()
        self._entry_counter.labels(status=_safe_str(status)).inc()

    def record_sanitized(self, kind: str) -> None:
        self._init_metrics_if_needed()
        self._sanitized_counter.labels(kind=_safe_str(kind)).inc()

    def record_redirect(self, target: str) -> None:
        self._init_metrics_if_needed()
        self._redirect_counter.labels(target=_safe_str(target)).inc()

    def set_hotspot_signatures(self, n: int) -> None:
        self._init_metrics_if_needed()
        self._hotspot_gauge.set(max(0, int(n)))

    def set_ledger_versions(self, n: int) -> None:
        self._init_metrics_if_needed()
        self._ledger_gauge.set(max(0, int(n)))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        self._init_metrics_if_needed()
        return self.registry.get_sample_value(name, labels or {})

    def render(self) -> bytes:
        self._init_metrics_if_needed()
        return generate_latest(self.registry)
