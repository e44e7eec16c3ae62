# FILE: livepatch/scheduler.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .applicator import EntryOutcome, PatchApplicator
from .ledger import AppliedPatchLedger
from .source import FetchStatus, ManifestSource

_log = logging.getLogger(__name__)


@dataclass
class CycleResult:
    # no_manifest | fetch_failed | already_applied | applied | error
    status: str
    version: Optional[str] = None
    timestamp: Optional[int] = None
    outcomes: List[EntryOutcome] = field(default_factory=list)
    detail: str = ""

    @property
    def applied_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status.value == "applied")


class PollScheduler:
    """
    Periodic check-apply loop.

    Threading model:
      - a single daemon thread runs the loop, first cycle immediately;
      - cycles are serialized by a cycle lock, so a cycle started through
        run_cycle() never overlaps one started by the loop;
      - start() and stop() are idempotent; stop() keeps any in-flight
        cycle running to completion but no further cycle starts.
    """

    def __init__(
        self,
        source: ManifestSource,
        applicator: PatchApplicator,
        ledger: AppliedPatchLedger,
        *,
        metrics: Any = None,
    ) -> None:
        self.source = source
        self.applicator = applicator
        self.ledger = ledger
        self._metrics = metrics
        self._thread: Optional[threading.Thread] = None
        # One event per loop; a loop abandoned by stop() never sees a later start().
        self._stop = threading.Event()
        self._lock = threading.RLock()
        self._cycle_lock = threading.Lock()
        self._interval_s = 0.0
        self.cycles_run = 0

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self, interval_s: float) -> bool:
        """Start the loop; returns False if it was already running."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._interval_s = max(0.01, float(interval_s))
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(self._stop,),
                name="livepatch-poller",
                daemon=True,
            )
            _log.info(
                "patch poller starting: endpoint=%s interval=%.1fs",
                self.source.endpoint,
                self._interval_s,
            )
            self._thread.start()
            return True

    def stop(self, *, wait: bool = False, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            t = self._thread
            if t is None:
                return
            self._stop.set()
        if wait and t is not threading.current_thread():
            t.join(timeout=timeout)
        with self._lock:
            if self._thread is t:
                self._thread = None
        _log.info("patch poller stopped")

    def _run_loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.run_cycle()
            except Exception:
                # run_cycle already contains failures; this keeps the thread alive regardless.
                _log.exception("poll cycle crashed")
            stop.wait(timeout=self._interval_s)

    def run_cycle(self) -> CycleResult:
        """One fetch, filter, apply, commit pass."""
        with self._cycle_lock:
            t0 = time.perf_counter()
            try:
                result = self._cycle()
            except Exception as e:
                _log.exception("unexpected error during poll cycle")
                result = CycleResult(status="error", detail=repr(e))
            self.cycles_run += 1
            if self._metrics is not None:
                self._metrics.record_cycle(result.status, latency_s=time.perf_counter() - t0)
                self._metrics.set_ledger_versions(len(self.ledger))
            return result

    def _cycle(self) -> CycleResult:
        fetched = self.source.fetch_manifest()
        if fetched.status is FetchStatus.NOT_FOUND:
            _log.info("no manifest available at %s", self.source.endpoint)
            return CycleResult(status="no_manifest", detail=fetched.detail)
        if fetched.status is FetchStatus.TRANSPORT_ERROR or fetched.manifest is None:
            _log.warning("manifest fetch failed: %s", fetched.detail)
            return CycleResult(status="fetch_failed", detail=fetched.detail)

        manifest = fetched.manifest
        if not self.ledger.should_apply(manifest.version, manifest.timestamp):
            _log.debug("manifest %s@%d already applied", manifest.version, manifest.timestamp)
            return CycleResult(
                status="already_applied",
                version=manifest.version,
                timestamp=manifest.timestamp,
            )

        _log.info("applying manifest %s@%d", manifest.version, manifest.timestamp)
        outcomes = self.applicator.apply(manifest)
        self.ledger.commit(manifest.version, manifest.timestamp)
        return CycleResult(
            status="applied",
            version=manifest.version,
            timestamp=manifest.timestamp,
            outcomes=outcomes,
        )
