# FILE: livepatch/ledger.py
from __future__ import annotations

"""
Applied-patch ledger.

Records, per manifest version, the timestamp of the last batch that was
fully processed. A version is reprocessed only when a manifest carries a
strictly newer timestamp for it, which makes re-fetching an unchanged
manifest a no-op.

Only the poll scheduler commits; any thread may read.
"""

import threading
from typing import Dict, Optional


class AppliedPatchLedger:
    def __init__(self) -> None:
        self._applied: Dict[str, int] = {}
        self._lock = threading.Lock()

    def should_apply(self, version: str, timestamp: int) -> bool:
        with self._lock:
            last = self._applied.get(version)
        return last is None or int(timestamp) > last

    def commit(self, version: str, timestamp: int) -> None:
        ts = int(timestamp)
        with self._lock:
            last = self._applied.get(version)
            if last is None or ts > last:
                self._applied[version] = ts

    def get(self, version: str) -> Optional[int]:
        with self._lock:
            return self._applied.get(version)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._applied)

    def __contains__(self, version: object) -> bool:
        with self._lock:
            return version in self._applied

    def __len__(self) -> int:
        with self._lock:
            return len(self._applied)
