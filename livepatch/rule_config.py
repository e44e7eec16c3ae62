# FILE: livepatch/rule_config.py
"""
JSON rule documents for the interception rules.

deprecation-mappings.json:
    {"legacy.math_util": {"sum": "operator#add_exact"}, ...}

security-patterns.json:
    {"SQL_INJECTION": "<regex>", "XSS": "<regex>"}

Loading never raises. A missing file is normal (INFO); an unreadable,
malformed or wrongly shaped document is a WARNING. Both fall back to the
built-in defaults.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from .sanitize import DEFAULT_SECURITY_PATTERNS

_log = logging.getLogger(__name__)

DeprecationMapping = Dict[str, Dict[str, str]]

DEFAULT_DEPRECATION_MAPPINGS: Mapping[str, Mapping[str, str]] = {
    "legacy.math_util": {"sum": "operator#add_exact"},
    "legacy.file_utils": {"delete_file": "pathlib.Path#unlink_if_exists"},
    "legacy.web_utils": {"encode_url": "urllib.parse#quote_plus"},
}


def default_deprecation_mappings() -> DeprecationMapping:
    return {cls: dict(methods) for cls, methods in DEFAULT_DEPRECATION_MAPPINGS.items()}


def default_security_patterns() -> Dict[str, str]:
    return dict(DEFAULT_SECURITY_PATTERNS)


def _read_json(path: Optional[str], what: str) -> Optional[Any]:
    if not path:
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        _log.info("%s not found at %s, using defaults", what, path)
    except OSError as e:
        _log.warning("cannot read %s at %s (%s), using defaults", what, path, e)
    except ValueError as e:
        _log.warning("malformed %s at %s (%s), using defaults", what, path, e)
    return None


def load_deprecation_mappings(path: Optional[str]) -> DeprecationMapping:
    doc = _read_json(path, "deprecation mappings")
    if doc is None:
        return default_deprecation_mappings()
    if not isinstance(doc, dict):
        _log.warning("deprecation mappings at %s must be an object, using defaults", path)
        return default_deprecation_mappings()

    out: DeprecationMapping = {}
    for cls, methods in doc.items():
        if not isinstance(methods, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in methods.items()
        ):
            _log.warning("deprecation mappings at %s: entry %r has the wrong shape, using defaults", path, cls)
            return default_deprecation_mappings()
        out[str(cls)] = dict(methods)
    return out


def load_security_patterns(path: Optional[str]) -> Dict[str, str]:
    doc = _read_json(path, "security patterns")
    if doc is None:
        return default_security_patterns()
    if not isinstance(doc, dict) or not all(isinstance(v, str) for v in doc.values()):
        _log.warning("security patterns at %s must map names to strings, using defaults", path)
        return default_security_patterns()
    return {str(k): v for k, v in doc.items()}


def parse_target(target: str) -> Tuple[str, str]:
    """'owner#member' -> (owner, member)."""
    owner, sep, member = (target or "").partition("#")
    if not sep or not owner or not member or "#" in member:
        raise ValueError(f"target must look like 'owner#member': {target!r}")
    return owner, member


def iter_mappings(mapping: Mapping[str, Mapping[str, str]]) -> Iterator[Tuple[str, str, str]]:
    """Yields (source_unit, source_member, target) in document order."""
    for cls, methods in mapping.items():
        for method, target in methods.items():
            yield cls, method, target
