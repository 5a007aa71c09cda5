"""Handler registry and handler loading.

A handler is anything callable with one :class:`Event`. Handlers are found
through explicit sources:

- a manifest: ``"package.module:attr"`` strings (or the objects themselves)
  naming handler objects (``tags`` + ``handle(event)``), functions marked
  with :func:`handler_for`, or zero-argument factories returning either;
- a handler directory: ``*.py`` files exposing ``handle(event)`` and
  optionally ``EVENT_TYPES``, plus executables that receive the raw JSON on
  stdin. Without ``EVENT_TYPES`` the tag is the filename prefix
  (``ComputerCheckIn-notify.py`` handles ``ComputerCheckIn``).

Load failures are collected as :class:`HandlerLoadError` and never stop the
remaining handlers from loading.
"""
from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import (
    Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union,
)

from jamfhooks.core import log
from jamfhooks.core.contracts import Event, EventTypeTag, Handler, HandlerRegistration
from jamfhooks.core.errors import (
    ExternalHandlerFailed, HandlerLoadError, RegistryFrozen, UnknownEventType,
)
from jamfhooks.core.schema import TagLike

l = log.get("handlers")

ManifestEntry = Union[str, "EventHandler", Handler, Callable[[], Any]]
HandlerSource = Union[str, Path, Iterable[ManifestEntry]]


class EventHandler(Protocol):
    """Capability interface for handler objects."""
    tags: Iterable[TagLike]

    def handle(self, event: Event) -> Any: ...


def handler_for(*tags: TagLike) -> Callable[[Handler], Handler]:
    """Mark a plain function as a handler for ``tags`` (for manifests)."""
    def wrap(fn: Handler) -> Handler:
        fn.event_types = tuple(tags)  # type: ignore[attr-defined]
        return fn
    return wrap


def _identity(handler: Any) -> str:
    name = getattr(handler, "name", None)
    if isinstance(name, str) and name:
        return name
    qual = getattr(handler, "__qualname__", None) or type(handler).__qualname__
    mod = getattr(handler, "__module__", None) or type(handler).__module__
    return f"{mod}.{qual}" if mod else qual


def _coerce_tags(tags: Optional[Iterable[TagLike]]) -> Tuple[EventTypeTag, ...]:
    if tags is None:
        raise ValueError("handler declares no event types")
    if isinstance(tags, str):
        tags = [tags]
    out = []
    for t in tags:
        et = EventTypeTag.coerce(t)
        if et is None:
            raise UnknownEventType(t)
        out.append(et)
    if not out:
        raise ValueError("handler declares no event types")
    return tuple(out)


class ExternalHandler:
    """Runs an executable with the event's raw JSON on stdin."""

    def __init__(self, path: Union[str, Path], timeout: Optional[float] = None):
        self.path = Path(path)
        self.timeout = timeout
        self.name = f"external:{self.path.name}"

    def __call__(self, event: Event) -> None:
        proc = subprocess.run(
            [str(self.path)],
            input=event.raw_json,
            capture_output=True,
            text=True,
            timeout=self.timeout,
            check=False,
        )
        if proc.stdout:
            l.debug("%s stdout: %s", self.name, proc.stdout.strip())
        if proc.returncode != 0:
            raise ExternalHandlerFailed(str(self.path), proc.returncode, proc.stderr)

    def __repr__(self) -> str:
        return f"ExternalHandler({str(self.path)!r})"


class HandlerRegistry:
    """Event tag -> ordered handlers. Populated at startup, then frozen."""

    def __init__(self) -> None:
        self._table: Dict[EventTypeTag, List[HandlerRegistration]] = {}
        self._frozen = False

    # ---- registration ----

    def register(self, tag: TagLike, handler: Handler, identity: Optional[str] = None) -> HandlerRegistration:
        """Append ``handler`` for ``tag``. Registering twice means running twice."""
        if self._frozen:
            raise RegistryFrozen("handler registry is frozen")
        et = EventTypeTag.coerce(tag)
        if et is None:
            raise UnknownEventType(tag)
        if not callable(handler):
            raise TypeError(f"handler for {et} is not callable: {handler!r}")
        reg = HandlerRegistration(et, identity or _identity(handler), handler)
        self._table.setdefault(et, []).append(reg)
        l.info("registered tag=%s handler=%s", et, reg.identity)
        return reg

    def handles(self, *tags: TagLike) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""
        def wrap(fn: Handler) -> Handler:
            for t in tags:
                self.register(t, fn)
            return fn
        return wrap

    def handlers_for(self, tag: TagLike) -> Tuple[HandlerRegistration, ...]:
        et = EventTypeTag.coerce(tag)
        if et is None:
            return ()
        return tuple(self._table.get(et, ()))

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def tags(self) -> Tuple[EventTypeTag, ...]:
        return tuple(t for t, regs in self._table.items() if regs)

    def __len__(self) -> int:
        return sum(len(v) for v in self._table.values())

    # ---- loading ----

    def load_handlers(self, source: HandlerSource, *, external_timeout: Optional[float] = None) -> List[HandlerLoadError]:
        """Load a handler directory (str/Path) or a manifest (iterable)."""
        if isinstance(source, (str, Path)):
            return self.load_directory(source, external_timeout=external_timeout)
        return self.load_manifest(source)

    def load_manifest(self, entries: Iterable[ManifestEntry]) -> List[HandlerLoadError]:
        errors: List[HandlerLoadError] = []
        for entry in entries:
            ident = entry if isinstance(entry, str) else _identity(entry)
            try:
                obj = _import_ref(entry) if isinstance(entry, str) else entry
                found = _expand(obj, ident)
            except Exception as e:
                errors.append(self._load_failed(ident, e))
                continue
            for handler_ident, tags, fn in found:
                self._register_checked(handler_ident, tags, fn, errors)
        return errors

    def load_directory(self, directory: Union[str, Path], *, external_timeout: Optional[float] = None) -> List[HandlerLoadError]:
        root = Path(directory)
        errors: List[HandlerLoadError] = []
        try:
            entries = sorted(root.iterdir())
        except OSError as e:
            errors.append(self._load_failed(str(root), e))
            return errors

        for path in entries:
            if path.name.startswith(".") or path.name.startswith("__") or path.is_dir():
                continue
            if path.suffix == ".pyc":
                continue
            ident = path.name
            try:
                if path.suffix == ".py":
                    module = _import_file(path)
                    fn = getattr(module, "handle", None)
                    if not callable(fn):
                        raise AttributeError(f"{path.name} defines no handle(event) function")
                    tags = getattr(module, "EVENT_TYPES", None) or _tag_from_filename(path)
                elif os.access(path, os.X_OK):
                    fn = ExternalHandler(path, timeout=external_timeout)
                    tags = _tag_from_filename(path)
                else:
                    raise TypeError(f"{path.name} is neither a .py module nor executable")
            except Exception as e:
                errors.append(self._load_failed(ident, e))
                continue
            self._register_checked(ident, tags, fn, errors)
        l.info("handler dir loaded path=%s total=%d failed=%d", root, len(self), len(errors))
        return errors

    def _register_checked(self, ident: str, tags: Any, fn: Handler, errors: List[HandlerLoadError]) -> None:
        # validate every tag first so a bad declaration registers nothing
        try:
            ets = _coerce_tags(tags)
        except (UnknownEventType, ValueError, TypeError) as e:
            errors.append(self._load_failed(ident, e))
            return
        for et in ets:
            self.register(et, fn, identity=ident)

    @staticmethod
    def _load_failed(ident: str, e: BaseException) -> HandlerLoadError:
        l.warning("handler load failed handler=%s err=%s", ident, e)
        return HandlerLoadError(ident, e)


# ---------------- helpers ----------------

def _tag_from_filename(path: Path) -> str:
    return re.split(r"[-.]", path.name, maxsplit=1)[0]


def _import_ref(ref: str) -> Any:
    """``package.module:attr.sub`` -> object; ``package.module`` -> module."""
    mod_name, _, attr = ref.partition(":")
    obj: Any = importlib.import_module(mod_name)
    for part in filter(None, attr.split(".")):
        obj = getattr(obj, part)
    return obj


def _import_file(path: Path):
    digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()[:8]
    stem = re.sub(r"\W", "_", path.stem)
    mod_name = f"jamfhooks_handler_{stem}_{digest}"
    spec = importlib.util.spec_from_file_location(mod_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(mod_name, None)
        raise
    return module


def _as_handler(obj: Any, ident: str) -> Optional[Tuple[str, Any, Handler]]:
    handle = getattr(obj, "handle", None)
    if callable(handle):
        tags = getattr(obj, "tags", None) or getattr(obj, "EVENT_TYPES", None)
        name = getattr(obj, "name", None)
        return (name if isinstance(name, str) and name else ident), tags, handle
    if callable(obj) and hasattr(obj, "event_types"):
        return ident, obj.event_types, obj
    return None


def _expand(obj: Any, ident: str) -> List[Tuple[str, Any, Handler]]:
    """Manifest object -> [(identity, tags, callable)]; factories are called once."""
    found = _as_handler(obj, ident)
    if found is not None:
        return [found]
    if not callable(obj):
        raise TypeError(f"{ident} is not a handler, handler function or factory")
    produced = obj()
    items = produced if isinstance(produced, (list, tuple, set)) else [produced]
    out = []
    for i, item in enumerate(items):
        sub_ident = ident if len(items) == 1 else f"{ident}[{i}]"
        h = _as_handler(item, sub_ident)
        if h is None:
            raise TypeError(f"factory {ident} returned a non-handler: {item!r}")
        out.append(h)
    return out
