# FILE: livepatch/rules.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Settings
from .hotspots import HotspotTable
from .interception import (
    CallSite,
    InterceptionHost,
    InterceptionRule,
    Matcher,
    RuleKind,
    in_packages,
    is_constructor,
    is_dunder,
    is_entry_point,
    is_method,
    name_contains,
    name_starts_with,
    named,
    owner_named,
)
from .logging import log_security_event
from .rule_config import iter_mappings, load_deprecation_mappings, load_security_patterns, parse_target
from .sanitize import SQL_INJECTION, XSS, SecurityPatternSet, escape_html, sanitize_sql
from .shims import resolve_shim

_log = logging.getLogger(__name__)

SQL_ENTRY_POINTS = (
    "execute",
    "executemany",
    "executescript",
    "execute_query",
    "execute_update",
    "executeQuery",
    "executeUpdate",
)
PARAM_READS = ("get_parameter", "getParameter")
PARAM_ARRAY_READS = ("get_parameter_values", "getParameterValues", "getlist")


def profile_matcher(packages) -> Matcher:
    return (
        in_packages(packages)
        & ~is_constructor()
        & ~is_entry_point()
        & ~name_starts_with("get", "set")
        & ~name_contains("toString", "equals", "hashCode")
        & ~is_dunder()
    )


# ----------------------------------------------------------------------
# Handlers
# ----------------------------------------------------------------------


class ProfilingRule(InterceptionRule):
    kind = RuleKind.PROFILE

    def __init__(self, hotspots: HotspotTable, *, metrics: Any = None) -> None:
        self.hotspots = hotspots
        self._metrics = metrics

    def enter(
        self, site: CallSite, args: Tuple[Any, ...], kwargs: Dict[str, Any]
    ) -> Tuple[Tuple[Any, ...], Any]:
        return args, time.perf_counter_ns()

    def exit(self, site: CallSite, token: Any, result: Any, failed: bool) -> Any:
        elapsed_ms = (time.perf_counter_ns() - token) / 1_000_000.0
        if self.hotspots.record(site.signature, elapsed_ms):
            _log.debug("%s took %.1fms", site.signature, elapsed_ms)
            if self._metrics is not None:
                self._metrics.set_hotspot_signatures(len(self.hotspots))
        return result


class RedirectRule(InterceptionRule):
    """Runs `shim` in place of the deprecated body; bound self/cls is dropped."""

    kind = RuleKind.REDIRECT

    def __init__(self, target: str, shim: Callable[..., Any], *, metrics: Any = None) -> None:
        self.target = target
        self.shim = shim
        self._metrics = metrics

    def invoke(self, site, original, args, kwargs):
        if self._metrics is not None:
            self._metrics.record_redirect(self.target)
        return self.shim(*args[site.arg_offset:], **kwargs)


class _SanitizerRule(InterceptionRule):
    pattern_name = XSS

    def __init__(self, patterns: SecurityPatternSet, *, metrics: Any = None) -> None:
        self.patterns = patterns
        self._metrics = metrics

    def _flagged(self, value: Any) -> bool:
        # Looked up per call so runtime pattern updates apply immediately.
        pattern = self.patterns.get(self.pattern_name)
        return isinstance(value, str) and pattern is not None and pattern.search(value) is not None

    def _report(self, site: CallSite, label: str, vector: str, value: str) -> None:
        log_security_event(
            _log,
            threat_label=label,
            threat_vector=vector,
            value=value,
            message=f"potential {label} at {site.signature}",
            extra={"site": site.signature},
        )
        if self._metrics is not None:
            self._metrics.record_sanitized(self.kind.value)


class SqlSanitizerRule(_SanitizerRule):
    kind = RuleKind.SANITIZE_SQL
    pattern_name = SQL_INJECTION

    def enter(self, site, args, kwargs):
        idx = site.arg_offset
        if len(args) > idx:
            if self._flagged(args[idx]):
                args = args[:idx] + (self._clean(site, args[idx]),) + args[idx + 1:]
            return args, None
        # SQL passed by keyword: the first string keyword argument.
        key = next((k for k, v in kwargs.items() if isinstance(v, str)), None)
        if key is not None and self._flagged(kwargs[key]):
            kwargs[key] = self._clean(site, kwargs[key])
        return args, None

    def _clean(self, site: CallSite, sql: str) -> str:
        self._report(site, "sql_injection", "sql_text", sql)
        return sanitize_sql(sql, self.patterns.get(SQL_INJECTION))


class ParamSanitizerRule(_SanitizerRule):
    kind = RuleKind.SANITIZE_PARAM

    def exit(self, site, token, result, failed):
        if failed or not self._flagged(result):
            return result
        self._report(site, "xss", "request_parameter", result)
        return escape_html(result)


class ParamArraySanitizerRule(_SanitizerRule):
    kind = RuleKind.SANITIZE_PARAM_ARRAY

    def exit(self, site, token, result, failed):
        if failed or not isinstance(result, (list, tuple)) or not result:
            return result
        changed = False
        cleaned = []
        for value in result:
            if self._flagged(value):
                self._report(site, "xss", "request_parameter_array", value)
                value = escape_html(value)
                changed = True
            cleaned.append(value)
        if not changed:
            return result
        _log.info("sanitized parameter array values at %s", site.signature)
        return type(result)(cleaned) if isinstance(result, tuple) else cleaned


# ----------------------------------------------------------------------
# Installer
# ----------------------------------------------------------------------


@dataclass
class InstallReport:
    profiled: int = 0
    redirected: int = 0
    sanitized: int = 0
    redirect_rules: int = 0
    skipped_mappings: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profiled": self.profiled,
            "redirected": self.redirected,
            "sanitized": self.sanitized,
            "redirect_rules": self.redirect_rules,
            "skipped_mappings": list(self.skipped_mappings),
        }


class RuleInstaller:
    """
    Builds the three rule families from settings and rule documents and
    installs them in one pass.

    `context` needs: host, hotspots, patterns, metrics, and the mutable
    `deprecation_mappings` / `install_report` attributes.
    """

    def install(self, settings: Settings, context: Any) -> InstallReport:
        if context.install_report is not None:
            return context.install_report

        host: InterceptionHost = context.host
        report = InstallReport()

        if settings.profiler_enabled:
            host.install_rule(
                profile_matcher(settings.profiler_packages),
                RuleKind.PROFILE,
                ProfilingRule(context.hotspots, metrics=context.metrics),
            )

        if settings.deprecation_rescue_enabled:
            mapping = load_deprecation_mappings(settings.deprecation_config_path)
            context.deprecation_mappings = mapping
            self._install_redirects(host, mapping, report, context.metrics)

        if settings.security_patches_enabled:
            context.patterns.update(load_security_patterns(settings.security_patterns_path))
            sec = in_packages(settings.effective_security_packages) & is_method()
            host.install_rule(
                sec & named(*SQL_ENTRY_POINTS),
                RuleKind.SANITIZE_SQL,
                SqlSanitizerRule(context.patterns, metrics=context.metrics),
            )
            host.install_rule(
                sec & named(*PARAM_READS),
                RuleKind.SANITIZE_PARAM,
                ParamSanitizerRule(context.patterns, metrics=context.metrics),
            )
            host.install_rule(
                sec & named(*PARAM_ARRAY_READS),
                RuleKind.SANITIZE_PARAM_ARRAY,
                ParamArraySanitizerRule(context.patterns, metrics=context.metrics),
            )

        if host.rule_count:
            host.install_import_hook()
            host.apply()

        report.profiled = len(host.instrumented_sites(RuleKind.PROFILE))
        report.redirected = len(host.instrumented_sites(RuleKind.REDIRECT))
        report.sanitized = sum(
            len(host.instrumented_sites(k))
            for k in (RuleKind.SANITIZE_SQL, RuleKind.SANITIZE_PARAM, RuleKind.SANITIZE_PARAM_ARRAY)
        )
        context.install_report = report
        _log.info(
            "interception rules installed: profiled=%d redirected=%d sanitized=%d skipped_mappings=%d",
            report.profiled,
            report.redirected,
            report.sanitized,
            len(report.skipped_mappings),
        )
        return report

    @staticmethod
    def _install_redirects(
        host: InterceptionHost,
        mapping: Dict[str, Dict[str, str]],
        report: InstallReport,
        metrics: Optional[Any],
    ) -> None:
        for unit, method, target in iter_mappings(mapping):
            try:
                parse_target(target)
            except ValueError as e:
                _log.warning("skipping deprecation mapping %s.%s: %s", unit, method, e)
                report.skipped_mappings.append({"unit": unit, "method": method, "target": target, "reason": "malformed"})
                continue
            shim = resolve_shim(target)
            if shim is None:
                _log.warning("skipping deprecation mapping %s.%s: unsupported target %s", unit, method, target)
                report.skipped_mappings.append({"unit": unit, "method": method, "target": target, "reason": "unsupported"})
                continue
            host.install_rule(
                owner_named(unit) & named(method),
                RuleKind.REDIRECT,
                RedirectRule(target, shim, metrics=metrics),
            )
            report.redirect_rules += 1
