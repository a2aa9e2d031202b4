from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Protocol

from petriflow.errors import CallbackError


@dataclass(frozen=True, slots=True)
class WorkItemContext:
    """Inputs handed to a transition callback.

    Keep this explicit. Callbacks get no other view of the engine.
    """

    workflow_id: int
    case_id: int
    transition_id: int
    consumed_token_ids: tuple[int, ...]
    data: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CallbackResult:
    ok: bool
    work_item_id: int | None = None
    message: str = ""
    # Only meaningful for an OR split: the output places to mark.
    output_places: frozenset[int] | None = None


@dataclass(frozen=True, slots=True)
class GuardContext:
    """What a guard sees when a split offers it a token."""

    workflow_id: int
    case_id: int
    transition_id: int
    place_id: int
    token_id: int
    work_item_id: int | None = None


# Guards may run concurrently for different cases: keep them quick and side-effect free.
Guard = Callable[[GuardContext], bool]


class TransitionCallback(Protocol):
    """Work executed when an AUTO transition fires (e.g. create a work item)."""

    def execute(self, context: WorkItemContext) -> CallbackResult: ...


@dataclass(frozen=True, slots=True)
class FunctionCallback:
    func: Callable[[WorkItemContext], CallbackResult]

    def execute(self, context: WorkItemContext) -> CallbackResult:
        return self.func(context)


class CallbackRegistry:
    """Resolves the opaque callback references stored on transitions."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: dict[str, TransitionCallback] = {}
        self._guards: dict[str, Guard] = {}

    def register(
        self,
        ref: str,
        callback: TransitionCallback | Callable[[WorkItemContext], CallbackResult],
    ) -> None:
        if not ref.strip():
            raise ValueError("callback reference is required")
        if not hasattr(callback, "execute"):
            callback = FunctionCallback(callback)  # type: ignore[arg-type]
        with self._lock:
            self._callbacks[ref] = callback  # type: ignore[assignment]

    def get(self, ref: str) -> TransitionCallback:
        with self._lock:
            callback = self._callbacks.get(ref)
        if callback is None:
            raise CallbackError(f"No callback registered for {ref!r}")
        return callback

    def register_guard(self, ref: str, guard: Guard) -> None:
        if not ref.strip():
            raise ValueError("guard reference is required")
        with self._lock:
            self._guards[ref] = guard

    def guard(self, ref: str) -> Guard:
        with self._lock:
            guard = self._guards.get(ref)
        if guard is None:
            raise CallbackError(f"No guard registered for {ref!r}")
        return guard

    def missing_guards(self, refs: Iterable[str]) -> list[str]:
        with self._lock:
            return sorted({ref for ref in refs if ref not in self._guards})

    def missing(self, refs: Iterable[str]) -> list[str]:
        with self._lock:
            return sorted({ref for ref in refs if ref not in self._callbacks})

    def __contains__(self, ref: object) -> bool:
        with self._lock:
            return ref in self._callbacks
