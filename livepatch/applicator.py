# FILE: livepatch/applicator.py
from __future__ import annotations

import importlib
import inspect
import logging
import sys
import threading
import types
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .logging import bind, unbind
from .manifest import InvalidPatchEntry, PatchEntry, PatchManifest
from .source import FetchStatus, ManifestSource

_log = logging.getLogger(__name__)

# Live replacement of overlapping units is unsafe; one writer at a time.
_REPLACE_LOCK = threading.Lock()

# Attribute set on interception wrappers; replacements go to the wrapped
# function so installed rules survive a patch.
WRAPPER_MARKER = "__livepatch_site__"

_CLASS_SKIP_ATTRS = frozenset({"__dict__", "__weakref__", "__module__", "__qualname__"})

_MISSING = object()


# ----------------------------------------------------------------------
# Errors and outcomes
# ----------------------------------------------------------------------


class ResolutionError(LookupError):
    """No resolution strategy could find the live unit."""


class ReplaceRejected(RuntimeError):
    """The replacement body cannot be applied to the live unit."""


class EntryStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class EntryOutcome:
    class_name: str
    path: str
    status: EntryStatus
    # invalid_entry | not_found | transport_error | empty_body | resolution_error |
    # replace_rejected | error
    error: Optional[str] = None
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "class_name": self.class_name,
            "path": self.path,
            "status": self.status.value,
            "error": self.error,
            "detail": self.detail,
        }


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class ResolvedUnit:
    """A live class or module addressed by its dotted name."""

    name: str
    obj: Any
    module: types.ModuleType
    resolver: str

    @property
    def is_module(self) -> bool:
        return isinstance(self.obj, types.ModuleType)

    @property
    def simple_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]


def _walk(module: types.ModuleType, attrs: Sequence[str]) -> Any:
    obj: Any = module
    for a in attrs:
        obj = getattr(obj, a, _MISSING)
        if obj is _MISSING:
            return _MISSING
    if attrs and not inspect.isclass(obj):
        return _MISSING
    return obj


class UnitResolver(ABC):
    name = "resolver"

    @abstractmethod
    def _module(self, module_name: str) -> Optional[types.ModuleType]:
        ...

    def resolve(self, dotted: str) -> Optional[ResolvedUnit]:
        parts = dotted.split(".")
        # Longest module prefix first: "pkg.mod.Class" tries pkg.mod.Class, pkg.mod, pkg.
        for i in range(len(parts), 0, -1):
            module = self._module(".".join(parts[:i]))
            if module is None:
                continue
            obj = _walk(module, parts[i:])
            if obj is _MISSING:
                continue
            return ResolvedUnit(name=dotted, obj=obj, module=module, resolver=self.name)
        return None


class LoadedModuleResolver(UnitResolver):
    """Only looks at modules the process has already imported."""

    name = "loaded"

    def _module(self, module_name: str) -> Optional[types.ModuleType]:
        mod = sys.modules.get(module_name)
        return mod if isinstance(mod, types.ModuleType) else None


class ImportResolver(UnitResolver):
    """Imports the owning module when it is not loaded yet."""

    name = "import"

    def _module(self, module_name: str) -> Optional[types.ModuleType]:
        try:
            return importlib.import_module(module_name)
        except ImportError:
            return None
        except Exception:
            _log.debug("import of %s raised during resolution", module_name, exc_info=True)
            return None


DEFAULT_RESOLVERS: Tuple[UnitResolver, ...] = (LoadedModuleResolver(), ImportResolver())


def resolve_unit(dotted: str, resolvers: Sequence[UnitResolver] = DEFAULT_RESOLVERS) -> ResolvedUnit:
    for r in resolvers:
        unit = r.resolve(dotted)
        if unit is not None:
            return unit
    raise ResolutionError(f"unit not found: {dotted}")


# ----------------------------------------------------------------------
# Live replacement
# ----------------------------------------------------------------------


class LiveReplaceHost(ABC):
    """Host capability that swaps the executable body of a live unit."""

    @abstractmethod
    def replace(self, unit: ResolvedUnit, body: bytes) -> int:
        """Apply `body` to `unit` atomically; returns the number of members changed."""


def _unwrap(fn: Any) -> Any:
    # Interception wrappers keep the original function in __wrapped__.
    while getattr(fn, WRAPPER_MARKER, None) is not None and hasattr(fn, "__wrapped__"):
        fn = fn.__wrapped__
    return fn


def _defined_in(fn: Any, namespace: Dict[str, Any]) -> bool:
    # Functions the body imports from elsewhere keep their own globals.
    return isinstance(fn, types.FunctionType) and fn.__globals__ is namespace


def _rebuild_function(
    fn: types.FunctionType, module: types.ModuleType, owner: Optional[type]
) -> types.FunctionType:
    """Re-create `fn` bound to the live module globals (and live class cell)."""
    cells = []
    for free in fn.__code__.co_freevars:
        if free == "__class__" and owner is not None:
            cells.append(types.CellType(owner))
        else:
            raise ReplaceRejected(f"{fn.__qualname__}: closure variable {free!r} cannot be rebound")
    new_fn = types.FunctionType(
        fn.__code__, module.__dict__, fn.__name__, fn.__defaults__, tuple(cells) or None
    )
    new_fn.__kwdefaults__ = fn.__kwdefaults__
    new_fn.__doc__ = fn.__doc__
    new_fn.__qualname__ = fn.__qualname__
    new_fn.__module__ = module.__name__
    new_fn.__dict__.update(fn.__dict__)
    return new_fn


class _Staging:
    """Collects reversible mutations; commit applies all or none."""

    def __init__(self) -> None:
        self._ops: List[Tuple[Callable[[], None], Callable[[], None]]] = []

    def __len__(self) -> int:
        return len(self._ops)

    def swap_code(self, target: types.FunctionType, new: types.FunctionType) -> None:
        old_state = (target.__code__, target.__defaults__, target.__kwdefaults__, target.__doc__)

        def do() -> None:
            target.__code__ = new.__code__
            target.__defaults__ = new.__defaults__
            target.__kwdefaults__ = new.__kwdefaults__
            target.__doc__ = new.__doc__

        def undo() -> None:
            target.__code__, target.__defaults__, target.__kwdefaults__, target.__doc__ = old_state

        self._ops.append((do, undo))

    def set_attr(self, owner: Any, name: str, value: Any) -> None:
        old = owner.__dict__.get(name, _MISSING) if hasattr(owner, "__dict__") else _MISSING

        def do() -> None:
            setattr(owner, name, value)

        def undo() -> None:
            if old is _MISSING:
                try:
                    delattr(owner, name)
                except AttributeError:
                    pass
            else:
                setattr(owner, name, old)

        self._ops.append((do, undo))

    def commit(self) -> None:
        done: List[Callable[[], None]] = []
        try:
            for do, undo in self._ops:
                do()
                done.append(undo)
        except Exception as e:
            for undo in reversed(done):
                try:
                    undo()
                except Exception:
                    _log.exception("failed to restore member after rejected replacement")
            raise ReplaceRejected(f"commit failed: {e}") from e


class PythonLiveReplaceHost(LiveReplaceHost):
    """
    Replaces function bodies in place.

    The body is Python source defining the unit again (a class with the
    unit's name, or module-level members for a module unit). Existing
    functions keep their identity and receive the new code object, so
    references held elsewhere (bound methods, callbacks, imports by name)
    run the new body. Members that did not exist are added.
    """

    def replace(self, unit: ResolvedUnit, body: bytes) -> int:
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ReplaceRejected(f"body is not UTF-8: {e}") from e
        filename = f"<livepatch:{unit.name}>"
        try:
            code = compile(text, filename, "exec")
        except (SyntaxError, ValueError) as e:
            raise ReplaceRejected(f"body does not compile: {e}") from e

        seed = dict(unit.module.__dict__)
        namespace = dict(seed)
        try:
            exec(code, namespace)
        except Exception as e:
            raise ReplaceRejected(f"body raised while loading: {e!r}") from e

        staging = _Staging()
        if unit.is_module:
            self._stage_module(staging, unit.module, seed, namespace)
        else:
            new_cls = namespace.get(unit.simple_name, _MISSING)
            if new_cls is _MISSING or new_cls is seed.get(unit.simple_name, _MISSING):
                raise ReplaceRejected(f"body does not define {unit.simple_name!r}")
            if not inspect.isclass(new_cls):
                raise ReplaceRejected(f"{unit.simple_name!r} in body is not a class")
            self._stage_class(staging, unit.module, unit.obj, new_cls, namespace)

        with _REPLACE_LOCK:
            staging.commit()
        return len(staging)

    # ---- staging helpers ------------------------------------------------

    def _stage_function(
        self,
        staging: _Staging,
        module: types.ModuleType,
        owner: Any,
        name: str,
        current: Any,
        new_fn: types.FunctionType,
        cls: Optional[type],
    ) -> None:
        target = _unwrap(current) if current is not _MISSING else _MISSING
        if isinstance(target, types.FunctionType) and target.__code__.co_freevars == new_fn.__code__.co_freevars:
            staging.swap_code(target, new_fn)
            return
        if current is not _MISSING and getattr(current, WRAPPER_MARKER, None) is not None:
            raise ReplaceRejected(f"{name}: closure layout changed under an installed interception rule")
        staging.set_attr(owner, name, _rebuild_function(new_fn, module, cls))

    def _stage_class(
        self,
        staging: _Staging,
        module: types.ModuleType,
        live: type,
        new_cls: type,
        namespace: Dict[str, Any],
    ) -> None:
        for name, new_attr in vars(new_cls).items():
            if name in _CLASS_SKIP_ATTRS:
                continue
            current = live.__dict__.get(name, _MISSING)

            if isinstance(new_attr, types.FunctionType):
                if _defined_in(new_attr, namespace):
                    self._stage_function(staging, module, live, name, current, new_attr, live)
                else:
                    staging.set_attr(live, name, new_attr)
            elif isinstance(new_attr, (staticmethod, classmethod)):
                kind = type(new_attr)
                inner = new_attr.__func__
                if not _defined_in(inner, namespace):
                    staging.set_attr(live, name, new_attr)
                    continue
                if isinstance(current, kind):
                    cur_inner = _unwrap(current.__func__)
                    if isinstance(cur_inner, types.FunctionType) and cur_inner.__code__.co_freevars == inner.__code__.co_freevars:
                        staging.swap_code(cur_inner, inner)
                        continue
                staging.set_attr(live, name, kind(_rebuild_function(inner, module, live)))
            elif isinstance(new_attr, property):
                parts = [
                    _rebuild_function(f, module, live) if _defined_in(f, namespace) else f
                    for f in (new_attr.fget, new_attr.fset, new_attr.fdel)
                ]
                staging.set_attr(live, name, property(*parts, doc=new_attr.__doc__))
            elif inspect.isclass(new_attr) and inspect.isclass(current) and new_attr.__module__ == module.__name__:
                self._stage_class(staging, module, current, new_attr, namespace)
            elif isinstance(new_attr, (types.MemberDescriptorType, types.GetSetDescriptorType)):
                # Slot layout belongs to the live class.
                continue
            elif name == "__doc__":
                if new_attr is not None:
                    staging.set_attr(live, name, new_attr)
            elif name.startswith("__") and name.endswith("__"):
                continue
            else:
                staging.set_attr(live, name, new_attr)

    def _stage_module(
        self,
        staging: _Staging,
        module: types.ModuleType,
        seed: Dict[str, Any],
        namespace: Dict[str, Any],
    ) -> None:
        for name, value in namespace.items():
            if name.startswith("__") and name.endswith("__"):
                continue
            before = seed.get(name, _MISSING)
            if value is before:
                continue
            current = module.__dict__.get(name, _MISSING)
            if _defined_in(value, namespace):
                self._stage_function(staging, module, module, name, current, value, None)
            elif inspect.isclass(value) and inspect.isclass(current) and value.__module__ == module.__name__:
                self._stage_class(staging, module, current, value, namespace)
            else:
                staging.set_attr(module, name, value)


# ----------------------------------------------------------------------
# Applicator
# ----------------------------------------------------------------------


class PatchApplicator:
    """
    Applies every entry of a manifest against the live process.

    Entries are processed in manifest order and isolated from each other:
    a missing body, an unknown unit or a rejected replacement is logged and
    recorded, and the next entry is still attempted.

    `reinstrument`, when given, is called with the owning module after each
    successful replacement so members the patch added pick up the installed
    interception rules.
    """

    def __init__(
        self,
        source: ManifestSource,
        *,
        host: Optional[LiveReplaceHost] = None,
        resolvers: Optional[Sequence[UnitResolver]] = None,
        metrics: Any = None,
        reinstrument: Optional[Callable[[types.ModuleType], Any]] = None,
    ) -> None:
        self.source = source
        self.host = host or PythonLiveReplaceHost()
        self.resolvers: Tuple[UnitResolver, ...] = tuple(resolvers or DEFAULT_RESOLVERS)
        self._metrics = metrics
        self._reinstrument = reinstrument

    def apply(self, manifest: PatchManifest) -> List[EntryOutcome]:
        if not manifest.patches:
            _log.info("manifest %s has no patches", manifest.version)
            return []
        outcomes = []
        bind(patch_version=manifest.version)
        try:
            for entry in manifest.patches:
                bind(class_name=entry.class_name)
                outcome = self.apply_entry(manifest, entry)
                outcomes.append(outcome)
                if self._metrics is not None:
                    self._metrics.record_entry(outcome.status.value)
        finally:
            unbind("patch_version", "class_name")
        applied = sum(1 for o in outcomes if o.status is EntryStatus.APPLIED)
        _log.info(
            "manifest %s processed: %d/%d entries applied",
            manifest.version,
            applied,
            len(outcomes),
        )
        return outcomes

    def apply_entry(self, manifest: PatchManifest, entry: PatchEntry) -> EntryOutcome:
        name = entry.class_name
        if isinstance(entry, InvalidPatchEntry):
            _log.warning("skipping invalid manifest entry %r: %s", name or entry.path, entry.reason)
            return self._outcome(entry, EntryStatus.SKIPPED, "invalid_entry", entry.reason)
        try:
            fetched = self.source.fetch_body(manifest, entry)
            if fetched.status is FetchStatus.NOT_FOUND:
                _log.warning("no replacement body for %s at %s", name, entry.path)
                return self._outcome(entry, EntryStatus.SKIPPED, "not_found", fetched.detail)
            if fetched.status is FetchStatus.TRANSPORT_ERROR:
                _log.warning("fetching body for %s failed: %s", name, fetched.detail)
                return self._outcome(entry, EntryStatus.SKIPPED, "transport_error", fetched.detail)
            if not fetched.body:
                _log.warning("empty replacement body for %s at %s", name, entry.path)
                return self._outcome(entry, EntryStatus.SKIPPED, "empty_body", entry.path)

            try:
                unit = resolve_unit(name, self.resolvers)
            except ResolutionError as e:
                _log.warning("skipping patch: %s", e)
                return self._outcome(entry, EntryStatus.SKIPPED, "resolution_error", str(e))

            _log.info("applying patch for %s (resolved via %s)", name, unit.resolver)
            changed = self.host.replace(unit, fetched.body)
            self._after_replace(unit)
            return self._outcome(entry, EntryStatus.APPLIED, None, f"{changed} member(s) replaced")
        except ReplaceRejected as e:
            _log.error("replacement rejected for %s: %s", name, e)
            return self._outcome(entry, EntryStatus.FAILED, "replace_rejected", str(e))
        except Exception as e:
            _log.exception("failed to apply patch for %s", name)
            return self._outcome(entry, EntryStatus.FAILED, "error", repr(e))

    def _after_replace(self, unit: ResolvedUnit) -> None:
        if self._reinstrument is None:
            return
        try:
            self._reinstrument(unit.module)
        except Exception:
            # The replacement itself is committed; only interception of new members is lost.
            _log.exception("re-instrumenting %s after patch failed", unit.module.__name__)

    @staticmethod
    def _outcome(entry: PatchEntry, status: EntryStatus, error: Optional[str], detail: str) -> EntryOutcome:
        return EntryOutcome(
            class_name=entry.class_name,
            path=entry.path,
            status=status,
            error=error,
            detail=detail,
        )
