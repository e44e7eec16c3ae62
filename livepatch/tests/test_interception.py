# livepatch/tests/test_interception.py
import importlib
import json
import logging
import time
import types

import pytest

from livepatch.applicator import PatchApplicator, PythonLiveReplaceHost, resolve_unit
from livepatch.config import Settings
from livepatch.exporter import LivepatchExporter
from livepatch.hotspots import HotspotTable
from livepatch.interception import (
    CallSite,
    InterceptionHost,
    InterceptionRule,
    RuleKind,
    in_packages,
    is_method,
    named,
    owner_named,
)
from livepatch.manifest import PatchManifest
from livepatch.rules import (
    ParamArraySanitizerRule,
    ParamSanitizerRule,
    ProfilingRule,
    RedirectRule,
    RuleInstaller,
    SqlSanitizerRule,
    profile_matcher,
)
from livepatch.sanitize import XSS, SecurityPatternSet
from livepatch.shims import add_exact

SERVICE = """
import time


class Repository:
    def __init__(self):
        self.seen = []

    def execute(self, sql, params=()):
        self.seen.append(sql)
        return sql

    def get_parameter(self, name):
        return self.params[name]

    def get_parameter_values(self, name):
        return self.multi[name]

    def get_name(self):
        return "repo"

    def __repr__(self):
        return "Repository()"

    def slow(self):
        time.sleep(0.002)
        return "done"

    @staticmethod
    def helper(x):
        return x + 1

    def broken(self):
        raise ValueError("nope")


def main():
    return "entry"


def total(a, b):
    return a + b
"""


@pytest.fixture
def host():
    h = InterceptionHost()
    yield h
    h.uninstall()


def test_matchers_compose():
    site = CallSite(module="app.orders", qualname="Orders.place", name="place", owner="app.orders.Orders", arg_offset=1)
    fn_site = CallSite(module="app.orders", qualname="total", name="total")

    m = in_packages(["app"]) & is_method()
    assert m(site) and not m(fn_site)
    assert (named("total") | is_method())(fn_site)
    assert not (~in_packages(["app"]))(site)
    assert owner_named("app.orders")(fn_site)
    assert owner_named("app.orders.Orders").accepts_module("app.orders")
    assert not in_packages(["app"]).accepts_module("application")

    pm = profile_matcher(["app"])
    for name in ("__init__", "main", "get_total", "setValue", "toString", "__repr__"):
        assert not pm(CallSite(module="app.x", qualname=name, name=name))
    assert pm(site)


def test_profiling_rule_records_slow_calls(host, module_factory, caplog):
    mod = module_factory("svc", SERVICE)
    hotspots = HotspotTable(threshold_ms=0)
    host.install_rule(profile_matcher([mod.__name__]), RuleKind.PROFILE, ProfilingRule(hotspots))
    host.apply([mod])

    repo = mod.Repository()
    with caplog.at_level(logging.DEBUG, logger="livepatch.rules"):
        assert repo.slow() == "done"
    assert mod.Repository.helper(1) == 2
    with pytest.raises(ValueError):
        repo.broken()
    assert mod.main() == "entry"
    repo.get_name()

    profiled = {s.name for s in host.instrumented_sites(RuleKind.PROFILE)}
    assert {"slow", "helper", "broken", "execute", "total"} <= profiled
    assert not profiled & {"__init__", "__repr__", "main", "get_name"}
    assert hotspots.hits(f"{mod.__name__}.Repository.slow") == 1
    # Exceptional exits are timed too.
    assert hotspots.hits(f"{mod.__name__}.Repository.broken") == 1
    slow_sig = f"{mod.__name__}.Repository.slow"
    assert any(r.getMessage().startswith(f"{slow_sig} took ") for r in caplog.records)


def test_one_wrapper_per_site_carries_all_rules(host, module_factory):
    mod = module_factory("svc", SERVICE)
    patterns = SecurityPatternSet()
    host.install_rule(profile_matcher([mod.__name__]), RuleKind.PROFILE, ProfilingRule(HotspotTable()))
    host.install_rule(
        in_packages([mod.__name__]) & named("execute"), RuleKind.SANITIZE_SQL, SqlSanitizerRule(patterns)
    )
    assert host.apply([mod]) > 0
    wrapper = mod.Repository.__dict__["execute"]

    assert host.apply([mod]) == 0
    assert mod.Repository.__dict__["execute"] is wrapper
    kinds = [r.kind for r in host.rules_for(f"{mod.__name__}.Repository.execute")]
    assert kinds == [RuleKind.PROFILE, RuleKind.SANITIZE_SQL]


def test_sql_sanitized_before_call(host, module_factory):
    mod = module_factory("svc", SERVICE)
    metrics = LivepatchExporter()
    host.install_rule(
        in_packages([mod.__name__]) & is_method() & named("execute"),
        RuleKind.SANITIZE_SQL,
        SqlSanitizerRule(SecurityPatternSet(), metrics=metrics),
    )
    host.apply([mod])
    repo = mod.Repository()

    assert repo.execute("SELECT * FROM t WHERE id = 1; DROP TABLE t") == "SELECT * FROM t WHERE id = 1 t"
    assert repo.execute("SELECT 1", (1,)) == "SELECT 1"
    assert repo.seen == ["SELECT * FROM t WHERE id = 1 t", "SELECT 1"]
    assert metrics.sample("livepatch_sanitized_total", {"kind": "sanitize_sql"}) == 1.0


def test_sql_passed_by_keyword_is_sanitized(host, module_factory):
    mod = module_factory("svc", SERVICE)
    host.install_rule(
        in_packages([mod.__name__]) & is_method() & named("execute"),
        RuleKind.SANITIZE_SQL,
        SqlSanitizerRule(SecurityPatternSet()),
    )
    host.apply([mod])
    repo = mod.Repository()

    assert repo.execute(sql="SELECT 1; DROP TABLE t", params=()) == "SELECT 1 t"
    assert repo.execute(params=(2,), sql="SELECT 2") == "SELECT 2"
    assert repo.seen == ["SELECT 1 t", "SELECT 2"]


def test_param_reads_escaped_and_pattern_update_is_live(host, module_factory):
    mod = module_factory("svc", SERVICE)
    patterns = SecurityPatternSet()
    sec = in_packages([mod.__name__]) & is_method()
    host.install_rule(sec & named("get_parameter"), RuleKind.SANITIZE_PARAM, ParamSanitizerRule(patterns))
    host.install_rule(
        sec & named("get_parameter_values"), RuleKind.SANITIZE_PARAM_ARRAY, ParamArraySanitizerRule(patterns)
    )
    host.apply([mod])

    repo = mod.Repository()
    repo.params = {"q": "<script>alert(1)</script>", "b": "<b>hi</b>"}
    repo.multi = {"tags": ["ok", "<img onerror=x>", None]}

    assert repo.get_parameter("q") == "&lt;script&gt;alert(1)&lt;&#x2F;script&gt;"
    assert repo.get_parameter_values("tags") == ["ok", "&lt;img onerror=x&gt;", None]

    before = repo.get_parameter("b")
    assert before == "<b>hi</b>"
    patterns.replace(XSS, r"<b>")
    assert repo.get_parameter("b") == "&lt;b&gt;hi&lt;&#x2F;b&gt;"
    assert before == "<b>hi</b>"


def test_redirect_replaces_body(host, module_factory):
    legacy = module_factory("math_util", "def sum(a, b):\n    return (a + b) & 0xFFFFFFFF\n")
    metrics = LivepatchExporter()
    host.install_rule(
        owner_named(legacy.__name__) & named("sum"),
        RuleKind.REDIRECT,
        RedirectRule("operator#add_exact", add_exact, metrics=metrics),
    )
    host.apply([legacy])

    assert legacy.sum(2, 3) == 5
    with pytest.raises(OverflowError):
        legacy.sum(2**31 - 1, 1)
    assert metrics.sample("livepatch_redirect_total", {"target": "operator#add_exact"}) == 2.0


def test_failing_rule_does_not_break_call(host, module_factory):
    mod = module_factory("svc", SERVICE)

    class Broken(InterceptionRule):
        def enter(self, site, args, kwargs):
            raise RuntimeError("rule bug")

    host.install_rule(named("total"), RuleKind.PROFILE, Broken())
    host.apply([mod])
    assert mod.total(1, 2) == 3


def test_import_hook_instruments_later_modules(host, module_factory):
    name = module_factory("late", SERVICE, load=False)
    hotspots = HotspotTable(threshold_ms=0)
    host.install_rule(profile_matcher([name]), RuleKind.PROFILE, ProfilingRule(hotspots))
    host.install_import_hook()

    mod = importlib.import_module(name)

    assert hasattr(mod.total, "__livepatch_site__")
    mod.Repository().slow()
    assert hotspots.hits(f"{name}.Repository.slow") == 1


def test_uninstall_restores_originals(module_factory):
    mod = module_factory("svc", SERVICE)
    original = mod.Repository.__dict__["slow"]
    h = InterceptionHost()
    h.install_rule(profile_matcher([mod.__name__]), RuleKind.PROFILE, ProfilingRule(HotspotTable()))
    h.apply([mod])
    assert mod.Repository.__dict__["slow"] is not original

    h.uninstall()
    assert mod.Repository.__dict__["slow"] is original
    assert h.instrumented_sites() == []


def test_live_patch_reaches_instrumented_function(host, module_factory):
    mod = module_factory("svc", SERVICE)
    hotspots = HotspotTable(threshold_ms=0)
    host.install_rule(profile_matcher([mod.__name__]), RuleKind.PROFILE, ProfilingRule(hotspots))
    host.apply([mod])

    PythonLiveReplaceHost().replace(
        resolve_unit(f"{mod.__name__}.Repository"),
        b"import time\n\nclass Repository:\n    def slow(self):\n        time.sleep(0.002)\n        return 'patched'\n",
    )

    assert mod.Repository().slow() == "patched"
    assert hotspots.hits(f"{mod.__name__}.Repository.slow") == 1


def test_members_added_by_patch_are_instrumented(host, module_factory, dict_source):
    mod = module_factory("repo", "class Repo:\n    def ping(self):\n        return 'pong'\n")
    host.install_rule(
        in_packages([mod.__name__]) & is_method() & named("execute"),
        RuleKind.SANITIZE_SQL,
        SqlSanitizerRule(SecurityPatternSet()),
    )
    host.apply([mod])
    assert host.instrumented_sites() == []

    manifest = PatchManifest.model_validate(
        {"version": "v1", "timestamp": 1, "patches": [{"className": f"{mod.__name__}.Repo", "path": "repo.py"}]}
    )
    source = dict_source(manifest, {"repo.py": b"class Repo:\n    def execute(self, sql):\n        return sql\n"})
    PatchApplicator(source, reinstrument=host.instrument_module).apply(manifest)

    assert mod.Repo().execute("SELECT 1; DROP TABLE t") == "SELECT 1 t"
    assert [s.name for s in host.instrumented_sites(RuleKind.SANITIZE_SQL)] == ["execute"]
    assert mod.Repo().ping() == "pong"


def test_installer_builds_families(host, module_factory, tmp_path):
    svc = module_factory("svc", SERVICE)
    legacy = module_factory("legacy_math", "def sum(a, b):\n    return a + b\n")
    mappings = tmp_path / "deprecation-mappings.json"
    mappings.write_text(
        json.dumps(
            {
                legacy.__name__: {"sum": "operator#add_exact", "drop": "shutil#rmtree"},
                "absent.module": {"x": "bad-target"},
            }
        )
    )
    settings = Settings(
        profiler_packages=(svc.__name__,),
        deprecation_config_path=str(mappings),
        security_patterns_path=str(tmp_path / "missing.json"),
        hotspot_threshold_ms=0.0,
    )
    context = types.SimpleNamespace(
        host=host,
        hotspots=HotspotTable(threshold_ms=0),
        patterns=SecurityPatternSet(),
        metrics=None,
        deprecation_mappings={},
        install_report=None,
    )

    report = RuleInstaller().install(settings, context)

    assert report.redirect_rules == 1
    assert sorted(s["reason"] for s in report.skipped_mappings) == ["malformed", "unsupported"]
    assert report.redirected == 1
    assert report.profiled > 0
    assert report.sanitized == 3
    with pytest.raises(OverflowError):
        legacy.sum(2**31 - 1, 1)
    assert svc.Repository().execute("SELECT 1; drop table x") == "SELECT 1 x"
    assert RuleInstaller().install(settings, context) is report
    assert set(context.deprecation_mappings) == {legacy.__name__, "absent.module"}


def test_disabled_features_install_nothing(host):
    settings = Settings(profiler_enabled=False, deprecation_rescue_enabled=False, security_patches_enabled=False)
    context = types.SimpleNamespace(
        host=host,
        hotspots=HotspotTable(),
        patterns=SecurityPatternSet(),
        metrics=None,
        deprecation_mappings={},
        install_report=None,
    )
    report = RuleInstaller().install(settings, context)
    assert report.to_dict() == {
        "profiled": 0,
        "redirected": 0,
        "sanitized": 0,
        "redirect_rules": 0,
        "skipped_mappings": [],
    }
    assert host.rule_count == 0


def test_profiling_overhead_is_bounded(host, module_factory):
    mod = module_factory("svc", SERVICE)
    host.install_rule(profile_matcher([mod.__name__]), RuleKind.PROFILE, ProfilingRule(HotspotTable()))
    host.apply([mod])
    t0 = time.perf_counter()
    for _ in range(1000):
        mod.total(1, 2)
    assert time.perf_counter() - t0 < 2.0
