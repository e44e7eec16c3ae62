# FILE: livepatch/hotspots.py
from __future__ import annotations

import logging
import os
import tempfile
import threading
from typing import Dict, List, Tuple

_log = logging.getLogger(__name__)

REPORT_HEADER = "method,hits"


class _Counter:
    __slots__ = ("value", "lock")

    def __init__(self) -> None:
        self.value = 0
        self.lock = threading.Lock()

    def incr(self) -> int:
        with self.lock:
            self.value += 1
            return self.value


class HotspotTable:
    """
    Call-site signature -> number of executions slower than the threshold.

    Incrementing an existing signature only takes that signature's lock;
    the table lock is held just to insert a new signature. Every
    `snapshot_every`-th distinct signature logs the current top entries.
    """

    def __init__(self, threshold_ms: float = 50.0, *, snapshot_every: int = 10, top_n: int = 5) -> None:
        self.threshold_ms = float(threshold_ms)
        self.snapshot_every = max(1, int(snapshot_every))
        self.top_n = max(1, int(top_n))
        self._counters: Dict[str, _Counter] = {}
        self._lock = threading.Lock()

    def record(self, signature: str, duration_ms: float) -> bool:
        """Count one execution; returns True if it was above the threshold."""
        if duration_ms <= self.threshold_ms:
            return False
        counter = self._counters.get(signature)
        inserted = 0
        if counter is None:
            with self._lock:
                counter = self._counters.get(signature)
                if counter is None:
                    counter = _Counter()
                    self._counters[signature] = counter
                    inserted = len(self._counters)
        counter.incr()
        if inserted and inserted % self.snapshot_every == 0:
            self._log_snapshot()
        return True

    def hits(self, signature: str) -> int:
        counter = self._counters.get(signature)
        return counter.value if counter is not None else 0

    def _sorted(self) -> List[Tuple[str, int]]:
        with self._lock:
            items = [(sig, c.value) for sig, c in self._counters.items()]
        items.sort(key=lambda kv: (-kv[1], kv[0]))
        return items

    def top(self, n: int = 5) -> List[Tuple[str, int]]:
        return self._sorted()[: max(0, int(n))]

    def _log_snapshot(self) -> None:
        top = self.top(self.top_n)
        _log.info(
            "hotspot snapshot (%d signatures): %s",
            len(self),
            "; ".join(f"{sig}={hits}" for sig, hits in top),
        )

    def report(self) -> str:
        lines = [REPORT_HEADER]
        lines.extend(f"{sig},{hits}" for sig, hits in self._sorted())
        return "\n".join(lines) + "\n"

    def write_report(self, path: str) -> str:
        """Write the CSV report atomically; returns the path written."""
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".hotspots-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(self.report())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        _log.info("hotspot report written to %s (%d signatures)", path, len(self))
        return path

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)
