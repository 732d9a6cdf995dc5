"""
Pluggable per-event transformation.

A transform receives a ParsedEvent and returns it (possibly modified), or
None to skip the event. Setting ``event.ignore`` has the same effect.
"""

import importlib
from typing import Callable, Optional, Protocol, runtime_checkable

from .models import ParsedEvent, TransformError


@runtime_checkable
class TransformHook(Protocol):
    """Strategy interface for event transformation."""

    def transform(self, event: ParsedEvent) -> Optional[ParsedEvent]:
        ...


class CallableTransform:
    """Adapt a plain function to the TransformHook interface."""

    def __init__(self, func: Callable[[ParsedEvent], Optional[ParsedEvent]]):
        self.func = func

    def transform(self, event: ParsedEvent) -> Optional[ParsedEvent]:
        try:
            return self.func(event)
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(f"{getattr(self.func, '__name__', self.func)} failed: {e}") from e

    def __repr__(self) -> str:
        return f"CallableTransform({getattr(self.func, '__qualname__', self.func)!r})"


def load_transform(path: str) -> TransformHook:
    """
    Resolve a transform from a 'package.module:attribute' path.

    The attribute may be a function, or an object/class exposing ``transform``.

    Raises:
        ValueError: If the path is malformed or does not name a usable object
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"transform must look like 'package.module:function', got {path!r}")

    try:
        target = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"cannot load transform {path!r}: {e}") from e

    if isinstance(target, type):
        target = target()
    if isinstance(target, TransformHook):
        return target
    if callable(target):
        return CallableTransform(target)
    raise ValueError(f"transform {path!r} is neither callable nor a TransformHook")
