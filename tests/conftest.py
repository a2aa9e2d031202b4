"""Test configuration and fixtures."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from petriflow.callbacks import CallbackRegistry, CallbackResult, WorkItemContext
from petriflow.config import EngineSettings
from petriflow.models import ArcDirection, ArcKind, PlaceKind, TriggerKind
from petriflow.runtime import WorkflowRuntime
from petriflow.store.memory import InMemoryStore


class FakeClock:
    """Deterministic UTC clock advancing one second per reading."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._now = datetime(2025, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=1)
            return self._now


class Recorder:
    """Callback that records every context it is invoked with."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: list[WorkItemContext] = []

    def execute(self, context: WorkItemContext) -> CallbackResult:
        with self._lock:
            self.calls.append(context)
            return CallbackResult(ok=True, work_item_id=100 + len(self.calls))


@dataclass(frozen=True)
class JoinWorkflow:
    """A(start), B(start) -AND-> T1 -> C -> T2 -> D(end)."""

    workflow_id: int
    a: int
    b: int
    c: int
    d: int
    t1: int
    t2: int


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def registry(recorder: Recorder) -> CallbackRegistry:
    registry = CallbackRegistry()
    registry.register("record", recorder)
    return registry


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(_env_file=None, conflict_warn_interval=3)


@pytest.fixture
def runtime(
    store: InMemoryStore,
    registry: CallbackRegistry,
    settings: EngineSettings,
    clock: FakeClock,
) -> WorkflowRuntime:
    return WorkflowRuntime(store, registry, settings, clock=clock)


def build_join_workflow(store: InMemoryStore) -> JoinWorkflow:
    wf = store.add_workflow("order fulfilment", is_valid=True, is_draft=False)
    a = store.add_place(wf.id, "A", sort_order=1)
    b = store.add_place(wf.id, "B", sort_order=2)
    c = store.add_place(wf.id, "C", sort_order=3)
    d = store.add_place(wf.id, "D", sort_order=4, kind=PlaceKind.END)
    t1 = store.add_transition(wf.id, "T1", callbacks=["record"])
    t2 = store.add_transition(wf.id, "T2", trigger=TriggerKind.AUTO)

    for place in (a, b):
        store.add_arc(
            wf.id,
            transition_id=t1.id,
            place_id=place.id,
            direction=ArcDirection.IN,
            kind=ArcKind.AND,
        )
    store.add_arc(wf.id, transition_id=t1.id, place_id=c.id, direction=ArcDirection.OUT)
    store.add_arc(wf.id, transition_id=t2.id, place_id=c.id, direction=ArcDirection.IN)
    store.add_arc(wf.id, transition_id=t2.id, place_id=d.id, direction=ArcDirection.OUT)

    return JoinWorkflow(
        workflow_id=wf.id, a=a.id, b=b.id, c=c.id, d=d.id, t1=t1.id, t2=t2.id
    )


@pytest.fixture
def join_workflow(store: InMemoryStore) -> JoinWorkflow:
    return build_join_workflow(store)
