# FILE: livepatch/interception.py
"""
Call-site interception.

Rules are registered against matchers first; `InterceptionHost.apply()`
then walks the selected modules once and replaces every matched function
with a single wrapper carrying all of its rules. Modules imported later
go through the same pass from a `sys.meta_path` finder.

Wrapper semantics, in order:
  1. every rule's `enter` runs; it may return rewritten positional
     arguments and may rewrite the keyword arguments in place;
  2. a redirect rule, if present, runs instead of the original body;
  3. every rule's `exit` runs in reverse order, on normal and exceptional
     exit, and may rewrite the return value (normal exit only).

A failing rule hook is logged and skipped; the intercepted call proceeds.
"""

from __future__ import annotations

import functools
import importlib.abc
import inspect
import logging
import sys
import threading
import types
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .applicator import WRAPPER_MARKER

_log = logging.getLogger(__name__)

RULES_ATTR = "__livepatch_rules__"

# The agent never instruments itself.
_SELF_PACKAGE = __name__.split(".")[0]


class RuleKind(str, Enum):
    PROFILE = "profile"
    REDIRECT = "redirect"
    SANITIZE_SQL = "sanitize_sql"
    SANITIZE_PARAM = "sanitize_param"
    SANITIZE_PARAM_ARRAY = "sanitize_param_array"


@dataclass(frozen=True)
class CallSite:
    module: str
    qualname: str
    name: str
    # Dotted name of the defining class, None for module-level functions.
    owner: Optional[str] = None
    # Positional arguments consumed by the binding (self / cls).
    arg_offset: int = 0

    @property
    def signature(self) -> str:
        return f"{self.module}.{self.qualname}"

    @property
    def unit(self) -> str:
        return self.owner or self.module

    @property
    def is_method(self) -> bool:
        return self.owner is not None


# ----------------------------------------------------------------------
# Matchers
# ----------------------------------------------------------------------


def _any_module(_name: str) -> bool:
    return True


class Matcher:
    """
    Predicate over call sites, combinable with `&`, `|` and `~`.

    `accepts_module` narrows which modules are walked at all; it must never
    reject a module that holds a matching site.
    """

    def __init__(
        self,
        predicate: Callable[[CallSite], bool],
        description: str = "",
        *,
        accepts_module: Callable[[str], bool] = _any_module,
    ) -> None:
        self._predicate = predicate
        self.description = description or getattr(predicate, "__name__", "matcher")
        self.accepts_module = accepts_module

    def __call__(self, site: CallSite) -> bool:
        return bool(self._predicate(site))

    def __and__(self, other: "Matcher") -> "Matcher":
        return Matcher(
            lambda s: self(s) and other(s),
            f"({self.description} & {other.description})",
            accepts_module=lambda m: self.accepts_module(m) and other.accepts_module(m),
        )

    def __or__(self, other: "Matcher") -> "Matcher":
        return Matcher(
            lambda s: self(s) or other(s),
            f"({self.description} | {other.description})",
            accepts_module=lambda m: self.accepts_module(m) or other.accepts_module(m),
        )

    def __invert__(self) -> "Matcher":
        return Matcher(lambda s: not self(s), f"~{self.description}")

    def __repr__(self) -> str:
        return f"Matcher({self.description})"


def _under(module: str, prefix: str) -> bool:
    return module == prefix or module.startswith(prefix + ".")


def in_packages(prefixes: Iterable[str]) -> Matcher:
    pfx = tuple(p for p in prefixes if p)
    return Matcher(
        lambda s: any(_under(s.module, p) for p in pfx),
        f"in_packages{pfx}",
        accepts_module=lambda m: any(_under(m, p) for p in pfx),
    )


def named(*names: str) -> Matcher:
    wanted = frozenset(names)
    return Matcher(lambda s: s.name in wanted, f"named{tuple(sorted(wanted))}")


def name_starts_with(*prefixes: str) -> Matcher:
    return Matcher(lambda s: s.name.startswith(prefixes), f"name_starts_with{prefixes}")


def name_contains(*fragments: str) -> Matcher:
    return Matcher(lambda s: any(f in s.name for f in fragments), f"name_contains{fragments}")


def owner_named(*units: str) -> Matcher:
    """Sites whose defining class (or module, for functions) is one of `units`."""
    wanted = frozenset(units)
    return Matcher(
        lambda s: s.unit in wanted,
        f"owner_named{tuple(sorted(wanted))}",
        accepts_module=lambda m: any(_under(u, m) for u in wanted),
    )


def is_constructor() -> Matcher:
    return Matcher(lambda s: s.name in ("__init__", "__new__"), "is_constructor")


def is_entry_point() -> Matcher:
    return Matcher(lambda s: s.name == "main", "is_entry_point")


def is_method() -> Matcher:
    return Matcher(lambda s: s.is_method, "is_method")


def is_dunder() -> Matcher:
    return Matcher(lambda s: s.name.startswith("__") and s.name.endswith("__"), "is_dunder")


# ----------------------------------------------------------------------
# Rules
# ----------------------------------------------------------------------


class InterceptionRule:
    """Base handler. Subclasses override the hooks they need."""

    kind: RuleKind = RuleKind.PROFILE

    def enter(
        self, site: CallSite, args: Tuple[Any, ...], kwargs: Dict[str, Any]
    ) -> Tuple[Tuple[Any, ...], Any]:
        return args, None

    def exit(self, site: CallSite, token: Any, result: Any, failed: bool) -> Any:
        return result

    def invoke(self, site: CallSite, original: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
        return original(*args, **kwargs)


@dataclass
class _Registration:
    matcher: Matcher
    kind: RuleKind
    handler: InterceptionRule


@dataclass
class _Instrumented:
    site: CallSite
    owner: Any
    attr: str
    original: Any
    wrapper: Callable[..., Any]
    rules: List[InterceptionRule]


def _make_wrapper(fn: Callable[..., Any], site: CallSite, rules: List[InterceptionRule]) -> Callable[..., Any]:
    # `rules` is shared with the host so later installs extend it in place.

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        active = tuple(rules)
        entered: List[Tuple[InterceptionRule, Any]] = []
        redirect: Optional[InterceptionRule] = None
        for rule in active:
            if rule.kind is RuleKind.REDIRECT:
                redirect = redirect or rule
                continue
            try:
                args, token = rule.enter(site, args, kwargs)
            except Exception:
                _log.exception("%s enter hook failed at %s", rule.kind.value, site.signature)
                continue
            entered.append((rule, token))
        try:
            if redirect is not None:
                result = redirect.invoke(site, fn, args, kwargs)
            else:
                result = fn(*args, **kwargs)
        except BaseException:
            for rule, token in reversed(entered):
                try:
                    rule.exit(site, token, None, True)
                except Exception:
                    _log.exception("%s exit hook failed at %s", rule.kind.value, site.signature)
            raise
        for rule, token in reversed(entered):
            try:
                result = rule.exit(site, token, result, False)
            except Exception:
                _log.exception("%s exit hook failed at %s", rule.kind.value, site.signature)
        return result

    setattr(wrapper, WRAPPER_MARKER, site)
    setattr(wrapper, RULES_ATTR, rules)
    return wrapper


def _instrumentable(fn: Any) -> bool:
    if not isinstance(fn, types.FunctionType):
        return False
    return not (inspect.iscoroutinefunction(fn) or inspect.isasyncgenfunction(fn) or inspect.isgeneratorfunction(fn))


class InterceptionHost:
    """Registers rules and instruments matching call sites."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._registrations: List[_Registration] = []
        self._sites: Dict[str, _Instrumented] = {}
        self._finder: Optional[_InstrumentingFinder] = None

    # ---- registration ---------------------------------------------------

    def install_rule(self, matcher: Matcher, kind: RuleKind, handler: InterceptionRule) -> None:
        with self._lock:
            self._registrations.append(_Registration(matcher, RuleKind(kind), handler))

    @property
    def rule_count(self) -> int:
        return len(self._registrations)

    def wants_module(self, name: str) -> bool:
        if _under(name, _SELF_PACKAGE):
            return False
        return any(r.matcher.accepts_module(name) for r in self._registrations)

    # ---- instrumentation pass ------------------------------------------

    def apply(self, modules: Optional[Iterable[types.ModuleType]] = None) -> int:
        """Instrument all matching sites; returns the number of new sites."""
        with self._lock:
            if modules is None:
                modules = [m for m in list(sys.modules.values()) if isinstance(m, types.ModuleType)]
            added = 0
            for module in modules:
                added += self.instrument_module(module)
            return added

    def instrument_module(self, module: types.ModuleType) -> int:
        name = getattr(module, "__name__", None)
        if not isinstance(name, str) or not self.wants_module(name):
            return 0
        with self._lock:
            added = 0
            for attr, value in list(vars(module).items()):
                if inspect.isclass(value):
                    if value.__module__ == name:
                        added += self._instrument_class(name, value, value.__qualname__)
                elif isinstance(value, types.FunctionType) and getattr(value, "__module__", None) == name:
                    site = CallSite(module=name, qualname=value.__qualname__, name=attr)
                    added += self._instrument(module, attr, value, value, site)
            return added

    def _instrument_class(self, module_name: str, cls: type, qualname: str) -> int:
        added = 0
        owner = f"{module_name}.{qualname}"
        for attr, raw in list(vars(cls).items()):
            if inspect.isclass(raw):
                if raw.__module__ == module_name and raw.__qualname__ == f"{qualname}.{attr}":
                    added += self._instrument_class(module_name, raw, raw.__qualname__)
                continue
            if isinstance(raw, staticmethod):
                fn, offset = raw.__func__, 0
            elif isinstance(raw, classmethod):
                fn, offset = raw.__func__, 1
            elif isinstance(raw, types.FunctionType):
                fn, offset = raw, 1
            else:
                continue
            site = CallSite(
                module=module_name,
                qualname=f"{qualname}.{attr}",
                name=attr,
                owner=owner,
                arg_offset=offset,
            )
            added += self._instrument(cls, attr, raw, fn, site)
        return added

    def _instrument(self, owner: Any, attr: str, raw: Any, fn: Any, site: CallSite) -> int:
        handlers = [r.handler for r in self._registrations if r.matcher(site)]
        if not handlers:
            return 0

        existing = getattr(fn, RULES_ATTR, None)
        if existing is not None:
            # Already wrapped: merge rules registered since the last pass.
            for h in handlers:
                if not any(h is e for e in existing):
                    existing.append(h)
            return 0
        if not _instrumentable(fn):
            return 0

        rules = list(handlers)
        wrapper = _make_wrapper(fn, site, rules)
        if isinstance(raw, staticmethod):
            replacement: Any = staticmethod(wrapper)
        elif isinstance(raw, classmethod):
            replacement = classmethod(wrapper)
        else:
            replacement = wrapper
        try:
            setattr(owner, attr, replacement)
        except (AttributeError, TypeError) as e:
            _log.warning("cannot instrument %s: %s", site.signature, e)
            return 0
        self._sites[site.signature] = _Instrumented(site, owner, attr, raw, wrapper, rules)
        _log.debug("instrumented %s with %s", site.signature, ", ".join(r.kind.value for r in rules))
        return 1

    # ---- inspection -----------------------------------------------------

    def instrumented_sites(self, kind: Optional[RuleKind] = None) -> List[CallSite]:
        with self._lock:
            return [
                inst.site
                for inst in self._sites.values()
                if kind is None or any(r.kind is kind for r in inst.rules)
            ]

    def rules_for(self, signature: str) -> Sequence[InterceptionRule]:
        with self._lock:
            inst = self._sites.get(signature)
            return tuple(inst.rules) if inst is not None else ()

    # ---- import hook ----------------------------------------------------

    def install_import_hook(self) -> None:
        with self._lock:
            if self._finder is not None:
                return
            self._finder = _InstrumentingFinder(self)
            sys.meta_path.insert(0, self._finder)

    def uninstall(self) -> None:
        """Remove the import hook and restore every instrumented site."""
        with self._lock:
            if self._finder is not None:
                try:
                    sys.meta_path.remove(self._finder)
                except ValueError:
                    pass
                self._finder = None
            for inst in self._sites.values():
                current = inst.owner.__dict__.get(inst.attr) if hasattr(inst.owner, "__dict__") else None
                current_fn = getattr(current, "__func__", current)
                if current_fn is inst.wrapper:
                    setattr(inst.owner, inst.attr, inst.original)
            self._sites.clear()
            self._registrations.clear()


class _InstrumentingLoader(importlib.abc.Loader):
    def __init__(self, host: InterceptionHost, loader: Any) -> None:
        self._host = host
        self._loader = loader

    def create_module(self, spec):
        return self._loader.create_module(spec)

    def exec_module(self, module: types.ModuleType) -> None:
        self._loader.exec_module(module)
        self._host.instrument_module(module)

    def __getattr__(self, name: str) -> Any:
        # get_source, get_resource_reader and friends.
        return getattr(self._loader, name)


class _InstrumentingFinder(importlib.abc.MetaPathFinder):
    def __init__(self, host: InterceptionHost) -> None:
        self._host = host

    def find_spec(self, fullname, path, target=None):
        if not self._host.wants_module(fullname):
            return None
        for finder in sys.meta_path:
            if finder is self:
                continue
            find = getattr(finder, "find_spec", None)
            if find is None:
                continue
            spec = find(fullname, path, target)
            if spec is not None:
                break
        else:
            return None
        if spec.loader is None or not hasattr(spec.loader, "exec_module"):
            return spec
        spec.loader = _InstrumentingLoader(self._host, spec.loader)
        return spec
