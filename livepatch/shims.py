# FILE: livepatch/shims.py
"""Replacement implementations deprecated calls are redirected to."""

from __future__ import annotations

import logging
import os
from typing import Callable, Dict, Optional, Union
from urllib.parse import quote_plus

_log = logging.getLogger(__name__)

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


def add_exact(a: int, b: int) -> int:
    """Signed 32-bit addition; OverflowError instead of wrapping."""
    result = int(a) + int(b)
    if result < _INT32_MIN or result > _INT32_MAX:
        raise OverflowError(f"integer overflow: {a} + {b}")
    return result


def delete_if_exists(path: Union[str, os.PathLike]) -> bool:
    """True if a file was deleted, False if absent or on I/O failure."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        _log.warning("failed to delete %s: %s", path, e)
        return False


def url_encode(value: str) -> str:
    try:
        return quote_plus(value, encoding="utf-8")
    except (TypeError, UnicodeError) as e:
        _log.warning("failed to encode %r: %s", value, e)
        return value


SUPPORTED_SHIMS: Dict[str, Callable[..., object]] = {
    "operator#add_exact": add_exact,
    "pathlib.Path#unlink_if_exists": delete_if_exists,
    "urllib.parse#quote_plus": url_encode,
}


def resolve_shim(target: str) -> Optional[Callable[..., object]]:
    return SUPPORTED_SHIMS.get(target)
