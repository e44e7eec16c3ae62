# FILE: livepatch/source.py
"""
Manifest sources.

Both transports share one contract: a fetch returns a FetchResult whose
status tells expected absence (NOT_FOUND) apart from real failures
(TRANSPORT_ERROR). Neither raises for I/O problems; the caller retries on
the next poll cycle.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests

from .manifest import ManifestError, PatchEntry, PatchManifest

_log = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
DEFAULT_CONNECT_TIMEOUT_S = 10.0


class FetchStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class FetchResult:
    status: FetchStatus
    manifest: Optional[PatchManifest] = None
    body: Optional[bytes] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.OK

    @classmethod
    def not_found(cls, detail: str = "") -> "FetchResult":
        return cls(FetchStatus.NOT_FOUND, detail=detail)

    @classmethod
    def transport_error(cls, detail: str) -> "FetchResult":
        return cls(FetchStatus.TRANSPORT_ERROR, detail=detail)


class ManifestSource(ABC):
    """Where manifests and replacement bodies come from."""

    endpoint: str

    @abstractmethod
    def fetch_manifest(self) -> FetchResult:
        ...

    @abstractmethod
    def fetch_body(self, manifest: PatchManifest, entry: PatchEntry) -> FetchResult:
        ...


class HttpManifestSource(ManifestSource):
    """
    GET <endpoint>/manifest.json and <endpoint>/<version>/<path>.

    Only the connect phase is bounded; a slow body download is not cut off.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.connect_timeout = float(connect_timeout)
        self._session = session or requests.Session()

    def _get(self, url: str) -> FetchResult:
        try:
            resp = self._session.get(url, timeout=(self.connect_timeout, None))
        except requests.RequestException as e:
            return FetchResult.transport_error(f"GET {url} failed: {e}")
        if resp.status_code == 404:
            return FetchResult.not_found(url)
        if not 200 <= resp.status_code < 300:
            return FetchResult.transport_error(f"GET {url} returned HTTP {resp.status_code}")
        return FetchResult(FetchStatus.OK, body=resp.content, detail=url)

    def fetch_manifest(self) -> FetchResult:
        res = self._get(f"{self.endpoint}/{MANIFEST_NAME}")
        if not res.ok:
            return res
        try:
            manifest = PatchManifest.from_json(res.body or b"")
        except ManifestError as e:
            return FetchResult.transport_error(str(e))
        return FetchResult(FetchStatus.OK, manifest=manifest, detail=res.detail)

    def fetch_body(self, manifest: PatchManifest, entry: PatchEntry) -> FetchResult:
        path = entry.path.lstrip("/")
        return self._get(f"{self.endpoint}/{manifest.version}/{path}")


class FilesystemManifestSource(ManifestSource):
    """Reads <root>/manifest.json and <root>/<path>."""

    def __init__(self, root: str) -> None:
        self.endpoint = root

    def _read(self, path: str) -> FetchResult:
        try:
            with open(path, "rb") as f:
                return FetchResult(FetchStatus.OK, body=f.read(), detail=path)
        except FileNotFoundError:
            return FetchResult.not_found(path)
        except OSError as e:
            return FetchResult.transport_error(f"read {path} failed: {e}")

    def fetch_manifest(self) -> FetchResult:
        res = self._read(os.path.join(self.endpoint, MANIFEST_NAME))
        if not res.ok:
            return res
        try:
            manifest = PatchManifest.from_json(res.body or b"")
        except ManifestError as e:
            return FetchResult.transport_error(str(e))
        return FetchResult(FetchStatus.OK, manifest=manifest, detail=res.detail)

    def fetch_body(self, manifest: PatchManifest, entry: PatchEntry) -> FetchResult:
        return self._read(os.path.join(self.endpoint, entry.path))


def make_source(endpoint: str, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_S) -> ManifestSource:
    if endpoint.startswith("http"):
        return HttpManifestSource(endpoint, connect_timeout=connect_timeout)
    return FilesystemManifestSource(endpoint)
