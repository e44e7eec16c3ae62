# FILE: livepatch/config.py
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Callable, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, field_validator


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_number(name: str, default: Any, cast: Callable[[str], Any] = float) -> Any:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        _log.warning("ignoring %s=%r: not a number", name, raw)
        return default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return _split_list(raw)


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path missing.
      - Only accept dict at top-level.
      - Lists are kept (package prefix lists); other non-scalars are
        coerced via str().
    """
    if not path:
        return {}
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except Exception:
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        elif isinstance(v, (list, tuple)):
            out[str(k)] = tuple(str(x) for x in v)
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model (single snapshot of the agent configuration)
# ---------------------------------------------------------------------------

DEFAULT_PROFILER_PACKAGES: Tuple[str, ...] = ("app", "services", "legacy")


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Patch delivery ---------------------------------------------------

    # URL (http/https) or directory holding manifest.json.
    patch_endpoint: str = "http://localhost:8080/patches"
    poll_interval_minutes: float = 5.0
    connect_timeout_s: float = 10.0

    # --- Interception features --------------------------------------------

    profiler_enabled: bool = True
    deprecation_rescue_enabled: bool = True
    security_patches_enabled: bool = True

    profiler_packages: Tuple[str, ...] = DEFAULT_PROFILER_PACKAGES
    # Empty means "same as profiler_packages".
    security_packages: Tuple[str, ...] = ()

    deprecation_config_path: str = "config/deprecation-mappings.json"
    security_patterns_path: str = "config/security-patterns.json"

    hotspot_threshold_ms: float = 50.0
    profiler_output_dir: str = "profiler-data"

    # --- Observability ----------------------------------------------------

    metrics_enabled: bool = False
    metrics_port: int = 0
    log_level: str = "INFO"

    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    @field_validator("profiler_packages", "security_packages", mode="before")
    @classmethod
    def _coerce_packages(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _split_list(v)
        if isinstance(v, (list, tuple)):
            return tuple(str(p).strip() for p in v if str(p).strip())
        return v

    @field_validator("poll_interval_minutes")
    @classmethod
    def _check_interval(cls, v: float) -> float:
        if v < 0.01:
            raise ValueError("poll_interval_minutes must be >= 0.01")
        return v

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    @property
    def poll_interval_s(self) -> float:
        return float(self.poll_interval_minutes) * 60.0

    @property
    def effective_security_packages(self) -> Tuple[str, ...]:
        return self.security_packages or self.profiler_packages

    @property
    def any_feature_enabled(self) -> bool:
        return (
            self.profiler_enabled
            or self.deprecation_rescue_enabled
            or self.security_patches_enabled
        )

    @property
    def uses_http(self) -> bool:
        return self.patch_endpoint.startswith("http")


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by LIVEPATCH_CONFIG_PATH.
      3. Environment variables (LIVEPATCH_*), with bounds.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get("LIVEPATCH_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # enforces extra="forbid"
        origin = "yaml"

    env_seen = False

    def _mark(name: str) -> None:
        nonlocal env_seen
        if os.environ.get(name, "") != "":
            env_seen = True

    # 2) Environment overrides

    # Patch delivery
    _mark("LIVEPATCH_ENDPOINT")
    merged["patch_endpoint"] = os.environ.get("LIVEPATCH_ENDPOINT", merged["patch_endpoint"]).strip() or merged["patch_endpoint"]

    _mark("LIVEPATCH_POLL_MINUTES")
    interval = _env_number("LIVEPATCH_POLL_MINUTES", merged["poll_interval_minutes"])
    if interval >= 0.01:
        merged["poll_interval_minutes"] = interval

    _mark("LIVEPATCH_CONNECT_TIMEOUT_S")
    timeout = _env_number("LIVEPATCH_CONNECT_TIMEOUT_S", merged["connect_timeout_s"])
    if 0.0 < timeout <= 600.0:
        merged["connect_timeout_s"] = timeout

    # Feature toggles
    for env_name, key in (
        ("LIVEPATCH_PROFILER", "profiler_enabled"),
        ("LIVEPATCH_DEPRECATION_RESCUE", "deprecation_rescue_enabled"),
        ("LIVEPATCH_SECURITY_PATCHES", "security_patches_enabled"),
        ("LIVEPATCH_METRICS_ENABLE", "metrics_enabled"),
    ):
        _mark(env_name)
        merged[key] = _env_bool(env_name, merged[key])

    # Package prefixes
    _mark("LIVEPATCH_PROFILER_PACKAGES")
    merged["profiler_packages"] = _env_list("LIVEPATCH_PROFILER_PACKAGES", tuple(merged["profiler_packages"]))
    _mark("LIVEPATCH_SECURITY_PACKAGES")
    merged["security_packages"] = _env_list("LIVEPATCH_SECURITY_PACKAGES", tuple(merged["security_packages"]))

    # Rule config paths
    _mark("LIVEPATCH_DEPRECATION_CONFIG")
    merged["deprecation_config_path"] = os.environ.get("LIVEPATCH_DEPRECATION_CONFIG", merged["deprecation_config_path"])
    _mark("LIVEPATCH_SECURITY_PATTERNS")
    merged["security_patterns_path"] = os.environ.get("LIVEPATCH_SECURITY_PATTERNS", merged["security_patterns_path"])

    # Profiler knobs
    _mark("LIVEPATCH_HOTSPOT_THRESHOLD_MS")
    threshold = _env_number("LIVEPATCH_HOTSPOT_THRESHOLD_MS", merged["hotspot_threshold_ms"])
    if threshold >= 0.0:
        merged["hotspot_threshold_ms"] = threshold
    _mark("LIVEPATCH_PROFILER_OUTPUT_DIR")
    merged["profiler_output_dir"] = os.environ.get("LIVEPATCH_PROFILER_OUTPUT_DIR", merged["profiler_output_dir"])

    # Observability
    _mark("LIVEPATCH_METRICS_PORT")
    merged["metrics_port"] = max(0, _env_number("LIVEPATCH_METRICS_PORT", merged["metrics_port"], int))
    _mark("LIVEPATCH_LOG_LEVEL")
    merged["log_level"] = os.environ.get("LIVEPATCH_LOG_LEVEL", merged["log_level"])

    if env_seen:
        origin = "env" if origin == "defaults" else origin + "+env"
    merged["config_origin"] = origin

    return Settings(**merged)


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe wrapper around Settings.

      - get(): returns the current immutable Settings snapshot.
      - refresh(): reloads from YAML and environment.
      - set(): in-memory overrides of known fields; unknown keys are ignored.

    Settings that were consumed at attach time (rule config paths, package
    prefixes) only take effect on the next attach.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            self._settings = _load_settings()
            return self._settings

    def set(self, **overrides: Any) -> Settings:
        with self._lock:
            data = self._settings.model_dump()
            for key, value in overrides.items():
                if key not in data:
                    _log.warning("ignoring unknown settings override %r", key)
                    continue
                data[key] = value
            self._settings = Settings(**data)
            return self._settings


def load_settings() -> Settings:
    return _load_settings()
