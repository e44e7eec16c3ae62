# FILE: livepatch/sanitize.py
"""
Input sanitization primitives.

`SecurityPatternSet` holds the live, swappable compiled patterns. Readers
take the current mapping reference without locking; writers build a fresh
immutable mapping and publish it with one assignment, so a reader sees
either the old or the new pattern and never a partial update.
"""

from __future__ import annotations

import logging
import re
import threading
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Pattern, Union

_log = logging.getLogger(__name__)

SQL_INJECTION = "SQL_INJECTION"
XSS = "XSS"

DEFAULT_SECURITY_PATTERNS: Mapping[str, str] = MappingProxyType(
    {
        SQL_INJECTION: (
            r"(?i)('\s*or\s*'\s*=\s*')|('\s*or\s*1\s*=\s*1)|(;\s*drop\s+table)|"
            r"(;\s*delete\s+from)|(--\s*$)|(\bUNION\b.*\bSELECT\b)|"
            r"(\bSELECT\b.*\bFROM\b.*information_schema)"
        ),
        XSS: (
            r"<script>|<\/script>|javascript:|onerror=|onclick=|onload=|onmouseover=|"
            r"onfocus=|onblur=|onkeydown=|onsubmit=|ondblclick=|data:text\/html"
        ),
    }
)

# Ampersand first so entities produced below are not escaped again.
_HTML_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#39;"),
    ("/", "&#x2F;"),
    ("`", "&#x60;"),
)


def compile_pattern(regex: str) -> Pattern[str]:
    """Compile a pattern written for the Java-style engine.

    A leading `(?i)` is a global inline flag in both dialects; Python only
    accepts it at the start, which is where the shipped patterns carry it.
    """
    return re.compile(regex)


def sanitize_sql(text: str, pattern: Pattern[str]) -> str:
    """Remove every match of `pattern`, repeating until nothing matches."""
    out = text
    while True:
        cleaned = pattern.sub("", out)
        if cleaned == out:
            return out
        out = cleaned


def escape_html(text: str) -> str:
    for ch, entity in _HTML_ESCAPES:
        text = text.replace(ch, entity)
    return text


class SecurityPatternSet:
    """Named compiled patterns, replaceable at runtime."""

    def __init__(self, patterns: Optional[Mapping[str, str]] = None) -> None:
        self._write_lock = threading.Lock()
        compiled: Dict[str, Pattern[str]] = {}
        for name, regex in DEFAULT_SECURITY_PATTERNS.items():
            compiled[name] = compile_pattern(regex)
        self._patterns: Mapping[str, Pattern[str]] = MappingProxyType(compiled)
        if patterns:
            self.update(patterns)

    def get(self, name: str) -> Optional[Pattern[str]]:
        return self._patterns.get(name)

    def snapshot(self) -> Mapping[str, Pattern[str]]:
        return self._patterns

    def replace(self, name: str, regex: Union[str, Pattern[str]]) -> bool:
        """Swap one named pattern. Returns False (old pattern kept) if it does not compile."""
        return self.update({name: regex}) == 1

    def update(self, patterns: Mapping[str, Union[str, Pattern[str]]]) -> int:
        staged: Dict[str, Pattern[str]] = {}
        for name, regex in patterns.items():
            if isinstance(regex, re.Pattern):
                staged[name] = regex
                continue
            try:
                staged[name] = compile_pattern(regex)
            except (re.error, TypeError) as e:
                _log.warning("security pattern %s does not compile (%s); keeping previous", name, e)
        if not staged:
            return 0
        with self._write_lock:
            merged = dict(self._patterns)
            merged.update(staged)
            self._patterns = MappingProxyType(merged)
        _log.info("security patterns updated: %s", ", ".join(sorted(staged)))
        return len(staged)


class SqlSanitizer:
    """Callable from application code: `SqlSanitizer(patterns).clean(query)`."""

    def __init__(self, patterns: SecurityPatternSet) -> None:
        self._patterns = patterns

    def clean(self, query: Optional[str]) -> Optional[str]:
        if query is None:
            return None
        pattern = self._patterns.get(SQL_INJECTION)
        if pattern is None:
            return query
        return sanitize_sql(query, pattern)


class HtmlEscaper:
    def __init__(self, patterns: SecurityPatternSet) -> None:
        self._patterns = patterns

    def escape(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return escape_html(value)

    def clean_if_suspicious(self, value: Optional[str]) -> Optional[str]:
        """Escape only values the live XSS pattern flags."""
        if value is None:
            return None
        pattern = self._patterns.get(XSS)
        if pattern is None or not pattern.search(value):
            return value
        return escape_html(value)
