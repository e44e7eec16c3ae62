# livepatch/tests/test_agent.py
import json

import pytest

from livepatch import agent
from livepatch.__main__ import main as cli_main
from livepatch.config import Settings
from livepatch.source import FilesystemManifestSource

APP = """
import time


class Orders:
    def place(self, qty):
        time.sleep(0.002)
        return qty

    def get_parameter(self, name):
        return self.params[name]


def price():
    return 10
"""


@pytest.fixture(autouse=True)
def detached():
    agent.detach(flush=False)
    yield
    agent.detach(flush=False)


def _settings(tmp_path, packages, **overrides):
    base = dict(
        patch_endpoint=str(tmp_path / "patches"),
        profiler_packages=tuple(packages),
        deprecation_config_path=str(tmp_path / "no-mappings.json"),
        security_patterns_path=str(tmp_path / "no-patterns.json"),
        hotspot_threshold_ms=0.0,
        profiler_output_dir=str(tmp_path / "profiler-data"),
    )
    base.update(overrides)
    return Settings(**base)


def test_attach_is_idempotent(tmp_path, module_factory):
    app = module_factory("app", APP)
    settings = _settings(tmp_path, [app.__name__])

    ctx = agent.attach(settings, start_poller=False, configure_logging=False)
    again = agent.attach(_settings(tmp_path, ["other"]), start_poller=False, configure_logging=False)

    assert again is ctx
    assert agent.current_context() is ctx
    assert ctx.install_report.profiled == 2
    assert ctx.install_report.sanitized == 1
    assert not ctx.scheduler.running


def test_hotspot_report_and_flush_on_detach(tmp_path, module_factory):
    app = module_factory("app", APP)
    agent.attach(_settings(tmp_path, [app.__name__]), start_poller=False, configure_logging=False)

    app.Orders().place(1)
    app.Orders().place(2)
    app.price()

    report = agent.get_hotspot_report().splitlines()
    assert report[0] == "method,hits"
    assert report[1] == f"{app.__name__}.Orders.place,2"

    agent.detach()
    written = (tmp_path / "profiler-data" / "hotspots.csv").read_text().splitlines()
    assert written[:2] == report[:2]
    assert agent.current_context() is None
    assert agent.get_hotspot_report() == "method,hits\n"
    # Interception is removed with the context.
    assert not hasattr(app.price, "__livepatch_site__")


def test_save_hotspot_data_to_custom_path(tmp_path, module_factory):
    app = module_factory("app", APP)
    assert agent.save_hotspot_data(str(tmp_path / "x.csv")) is None

    agent.attach(_settings(tmp_path, [app.__name__]), start_poller=False, configure_logging=False)
    app.price()
    path = agent.save_hotspot_data(str(tmp_path / "out" / "custom.csv"))
    assert path.endswith("custom.csv")
    assert (tmp_path / "out" / "custom.csv").read_text().startswith("method,hits\n")


def test_update_security_pattern_is_live(tmp_path, module_factory):
    app = module_factory("app", APP)
    assert agent.update_security_pattern("XSS", "<b>") is False

    agent.attach(_settings(tmp_path, [app.__name__]), start_poller=False, configure_logging=False)
    orders = app.Orders()
    orders.params = {"n": "<b>x</b>"}

    assert orders.get_parameter("n") == "<b>x</b>"
    assert agent.update_security_pattern("XSS", "<b>") is True
    assert orders.get_parameter("n") == "&lt;b&gt;x&lt;&#x2F;b&gt;"
    assert agent.update_security_pattern("XSS", "(") is False


def test_attach_polls_and_applies_patches(tmp_path, module_factory):
    app = module_factory("app", APP)
    patches = tmp_path / "patches"
    patches.mkdir()
    (patches / "price.py").write_text("def price():\n    return 99\n")
    (patches / "manifest.json").write_text(
        json.dumps(
            {
                "version": "1.0.1",
                "timestamp": 1,
                "patches": [{"className": app.__name__, "path": "price.py"}],
            }
        )
    )
    settings = _settings(tmp_path, ["unrelated_pkg"], profiler_enabled=False)

    ctx = agent.attach(
        settings,
        source=FilesystemManifestSource(str(patches)),
        start_poller=False,
        configure_logging=False,
    )
    result = ctx.scheduler.run_cycle()

    assert result.status == "applied"
    assert app.price() == 99
    assert ctx.ledger.get("1.0.1") == 1
    assert ctx.scheduler.run_cycle().status == "already_applied"
    assert ctx.metrics.sample("livepatch_patch_entries_total", {"status": "applied"}) == 1.0


def test_context_helpers(tmp_path):
    ctx = agent.attach(
        _settings(tmp_path, ["unrelated_pkg"], profiler_enabled=False, security_patches_enabled=False),
        start_poller=False,
        configure_logging=False,
    )
    assert ctx.sql_sanitizer().clean("SELECT 1; DROP TABLE t") == "SELECT 1 t"
    assert ctx.html_escaper().escape("<i>") == "&lt;i&gt;"
    assert ctx.hotspot_report_path.endswith("hotspots.csv")
    assert set(ctx.deprecation_mappings) == {"legacy.math_util", "legacy.file_utils", "legacy.web_utils"}


def test_cli_attaches_then_runs_script(tmp_path, monkeypatch, module_factory):
    app = module_factory("app", APP)
    for name, value in (
        ("LIVEPATCH_ENDPOINT", str(tmp_path / "patches")),
        ("LIVEPATCH_PROFILER_PACKAGES", app.__name__),
        ("LIVEPATCH_DEPRECATION_CONFIG", str(tmp_path / "none.json")),
        ("LIVEPATCH_SECURITY_PATTERNS", str(tmp_path / "none.json")),
        ("LIVEPATCH_PROFILER_OUTPUT_DIR", str(tmp_path / "profiler-data")),
    ):
        monkeypatch.setenv(name, value)
    monkeypatch.delenv("LIVEPATCH_CONFIG_PATH", raising=False)
    out = tmp_path / "out.txt"
    script = tmp_path / "script.py"
    script.write_text(
        "import sys\n"
        f"import {app.__name__} as app\n"
        "open(sys.argv[1], 'w').write(str(hasattr(app.price, '__livepatch_site__')))\n"
    )
    monkeypatch.setattr("sys.argv", ["python -m livepatch"])

    assert cli_main(["--no-poll", str(script), str(out)]) == 0
    assert out.read_text() == "True"


def test_patched_in_members_are_sanitized(tmp_path, module_factory):
    app = module_factory("app", APP)
    patches = tmp_path / "patches"
    patches.mkdir()
    (patches / "orders.py").write_text("class Orders:\n    def execute(self, sql):\n        return sql\n")
    (patches / "manifest.json").write_text(
        json.dumps(
            {
                "version": "2.0.0",
                "timestamp": 5,
                "patches": [{"className": f"{app.__name__}.Orders", "path": "orders.py"}],
            }
        )
    )
    ctx = agent.attach(
        _settings(tmp_path, [app.__name__], profiler_enabled=False),
        source=FilesystemManifestSource(str(patches)),
        start_poller=False,
        configure_logging=False,
    )

    assert ctx.scheduler.run_cycle().status == "applied"
    assert app.Orders().execute("SELECT 1; DROP TABLE t") == "SELECT 1 t"
