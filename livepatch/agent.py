# FILE: livepatch/agent.py
"""
Attach surface.

Everything the agent mutates at runtime (ledger, hotspot table, pattern
set, interception host, poller) lives on one `AgentContext`. A process has
at most one; `attach()` creates it once and returns it on every later call.

    from livepatch import agent
    ctx = agent.attach()                      # settings from env / YAML
    agent.update_security_pattern("XSS", r"<script|javascript:")
    print(agent.get_hotspot_report())
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from .applicator import LiveReplaceHost, PatchApplicator
from .config import Settings, load_settings
from .exporter import LivepatchExporter
from .hotspots import REPORT_HEADER, HotspotTable
from .interception import InterceptionHost
from .ledger import AppliedPatchLedger
from .logging import configure_json_logging
from .rules import InstallReport, RuleInstaller
from .sanitize import HtmlEscaper, SecurityPatternSet, SqlSanitizer
from .scheduler import PollScheduler
from .source import ManifestSource, make_source

_log = logging.getLogger(__name__)

HOTSPOT_REPORT_NAME = "hotspots.csv"


@dataclass
class AgentContext:
    settings: Settings
    ledger: AppliedPatchLedger
    hotspots: HotspotTable
    patterns: SecurityPatternSet
    host: InterceptionHost
    scheduler: PollScheduler
    metrics: LivepatchExporter
    deprecation_mappings: Dict[str, Dict[str, str]] = field(default_factory=dict)
    install_report: Optional[InstallReport] = None

    @property
    def hotspot_report_path(self) -> str:
        return os.path.join(self.settings.profiler_output_dir, HOTSPOT_REPORT_NAME)

    def sql_sanitizer(self) -> SqlSanitizer:
        return SqlSanitizer(self.patterns)

    def html_escaper(self) -> HtmlEscaper:
        return HtmlEscaper(self.patterns)


_CONTEXT: Optional[AgentContext] = None
_CONTEXT_LOCK = threading.RLock()
_FINALIZER_REGISTERED = False


def current_context() -> Optional[AgentContext]:
    return _CONTEXT


def attach(
    settings: Optional[Settings] = None,
    *,
    source: Optional[ManifestSource] = None,
    replace_host: Optional[LiveReplaceHost] = None,
    start_poller: bool = True,
    configure_logging: bool = True,
) -> AgentContext:
    """Attach the agent once per process; later calls return the same context."""
    global _CONTEXT, _FINALIZER_REGISTERED
    if _CONTEXT is not None:
        return _CONTEXT
    with _CONTEXT_LOCK:
        if _CONTEXT is not None:
            return _CONTEXT

        settings = settings or load_settings()
        if configure_logging:
            configure_json_logging(level=settings.log_level)

        metrics = LivepatchExporter(port=settings.metrics_port if settings.metrics_enabled else 0)
        metrics.ensure_server()

        ledger = AppliedPatchLedger()
        source = source or make_source(settings.patch_endpoint, connect_timeout=settings.connect_timeout_s)
        host = InterceptionHost()
        applicator = PatchApplicator(
            source,
            host=replace_host,
            metrics=metrics,
            reinstrument=host.instrument_module,
        )
        ctx = AgentContext(
            settings=settings,
            ledger=ledger,
            hotspots=HotspotTable(threshold_ms=settings.hotspot_threshold_ms),
            patterns=SecurityPatternSet(),
            host=host,
            scheduler=PollScheduler(source, applicator, ledger, metrics=metrics),
            metrics=metrics,
        )
        _log.info(
            "attaching livepatch agent: endpoint=%s config=%s",
            settings.patch_endpoint,
            settings.config_origin,
        )

        if settings.any_feature_enabled:
            RuleInstaller().install(settings, ctx)
        else:
            _log.info("all interception features disabled")

        if start_poller:
            ctx.scheduler.start(settings.poll_interval_s)

        if not _FINALIZER_REGISTERED:
            atexit.register(_finalize)
            _FINALIZER_REGISTERED = True

        _CONTEXT = ctx
        return ctx


def detach(*, flush: bool = True) -> None:
    """Stop polling, remove interception and drop the context."""
    global _CONTEXT
    with _CONTEXT_LOCK:
        ctx = _CONTEXT
        if ctx is None:
            return
        ctx.scheduler.stop(wait=True)
        ctx.host.uninstall()
        if flush:
            _flush(ctx)
        _CONTEXT = None
    _log.info("livepatch agent detached")


def _flush(ctx: AgentContext) -> None:
    if not ctx.settings.profiler_enabled:
        return
    try:
        ctx.hotspots.write_report(ctx.hotspot_report_path)
    except OSError as e:
        _log.error("failed to write hotspot report to %s: %s", ctx.hotspot_report_path, e)


def _finalize() -> None:
    ctx = _CONTEXT
    if ctx is None:
        return
    ctx.scheduler.stop(wait=False)
    _flush(ctx)


def get_hotspot_report() -> str:
    ctx = _CONTEXT
    if ctx is None:
        return REPORT_HEADER + "\n"
    return ctx.hotspots.report()


def save_hotspot_data(path: Optional[str] = None) -> Optional[str]:
    ctx = _CONTEXT
    if ctx is None:
        _log.warning("agent not attached; no hotspot data to save")
        return None
    return ctx.hotspots.write_report(path or ctx.hotspot_report_path)


def update_security_pattern(name: str, regex: str) -> bool:
    """Swap one live sanitization pattern; False if not attached or it does not compile."""
    ctx = _CONTEXT
    if ctx is None:
        _log.warning("agent not attached; pattern %s not updated", name)
        return False
    return ctx.patterns.replace(name, regex)
