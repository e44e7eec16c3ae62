# livepatch/tests/conftest.py
import importlib
import sys
import textwrap
import uuid

import pytest

from livepatch.source import FetchResult, FetchStatus, ManifestSource


@pytest.fixture
def module_factory(tmp_path, monkeypatch):
    """Write `source` as a uniquely named module under tmp_path.

    Returns (name, import_fn); call import_fn() to import it. Modules are
    dropped from sys.modules after the test.
    """
    monkeypatch.syspath_prepend(str(tmp_path))
    created = []

    def make(stem, source, *, load=True):
        name = f"lpfix_{stem}_{uuid.uuid4().hex[:8]}"
        (tmp_path / f"{name}.py").write_text(textwrap.dedent(source), encoding="utf-8")
        importlib.invalidate_caches()
        created.append(name)
        if load:
            return importlib.import_module(name)
        return name

    yield make

    for name in created:
        sys.modules.pop(name, None)


class DictSource(ManifestSource):
    """In-memory manifest source: bodies keyed by entry path."""

    endpoint = "memory://"

    def __init__(self, manifest=None, bodies=None):
        self.manifest = manifest
        self.bodies = dict(bodies or {})
        self.manifest_fetches = 0
        self.body_fetches = []

    def fetch_manifest(self):
        self.manifest_fetches += 1
        if self.manifest is None:
            return FetchResult.not_found("memory://manifest.json")
        return FetchResult(FetchStatus.OK, manifest=self.manifest)

    def fetch_body(self, manifest, entry):
        self.body_fetches.append(entry.path)
        body = self.bodies.get(entry.path)
        if body is None:
            return FetchResult.not_found(entry.path)
        return FetchResult(FetchStatus.OK, body=body)


@pytest.fixture
def dict_source():
    return DictSource
