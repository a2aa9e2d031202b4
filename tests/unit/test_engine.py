"""Unit tests for enablement and firing.

These tests drive the engine through the runtime so the full token chain is
exercised, and assert on the marking left in the store.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest

from petriflow.callbacks import GuardContext
from petriflow.engine import FiringEngine, KeyedLocks
from petriflow.errors import StaleStateError
from petriflow.events import TokenProduced
from petriflow.models import ArcDirection, ArcKind, CaseState, PlaceKind, TokenState, TriggerKind
from petriflow.runtime import WorkflowRuntime
from petriflow.store.memory import InMemoryStore
from petriflow.topology import TopologyCache

if TYPE_CHECKING:
    from conftest import FakeClock, JoinWorkflow, Recorder

    from petriflow.callbacks import CallbackRegistry
    from petriflow.config import EngineSettings


@dataclass(frozen=True)
class FanIn:
    """inputs -> T (join) -> middle -> hold (MANUAL) -> end"""

    workflow_id: int
    inputs: list[int]
    transition: int
    middle: int


def _fan_in(store: InMemoryStore, width: int, join: ArcKind) -> FanIn:
    wf = store.add_workflow(f"fan-in {width}", is_valid=True, is_draft=False)
    inputs = [store.add_place(wf.id, f"in-{i}").id for i in range(width)]
    middle = store.add_place(wf.id, "middle")
    end = store.add_place(wf.id, "end", kind=PlaceKind.END)
    t = store.add_transition(wf.id, "join", callbacks=["record"])
    hold = store.add_transition(wf.id, "hold", trigger=TriggerKind.MANUAL)
    for place_id in inputs:
        store.add_arc(
            wf.id, transition_id=t.id, place_id=place_id, direction=ArcDirection.IN, kind=join
        )
    store.add_arc(wf.id, transition_id=t.id, place_id=middle.id, direction=ArcDirection.OUT)
    store.add_arc(wf.id, transition_id=hold.id, place_id=middle.id, direction=ArcDirection.IN)
    store.add_arc(wf.id, transition_id=hold.id, place_id=end.id, direction=ArcDirection.OUT)
    return FanIn(workflow_id=wf.id, inputs=inputs, transition=t.id, middle=middle.id)


def _arrive(
    runtime: WorkflowRuntime, gate: threading.Barrier, case_id: int, place_id: int
) -> None:
    gate.wait()
    runtime.produce_token(case_id, place_id)


def _states(store: InMemoryStore, case_id: int, place_id: int) -> list[TokenState]:
    return [t.state for t in store.list_tokens(case_id, place_ids={place_id})]


def test_and_join_waits_for_every_input_place(
    runtime: WorkflowRuntime, store: InMemoryStore, recorder: Recorder
) -> None:
    fan = _fan_in(store, 3, ArcKind.AND)
    case = runtime.start_case(fan.workflow_id, mark_start_places=False)
    first, second, third = fan.inputs

    runtime.produce_token(case.id, third)
    runtime.produce_token(case.id, first)
    assert recorder.calls == []
    assert _states(store, case.id, third) == [TokenState.LOCKED]
    assert _states(store, case.id, first) == [TokenState.LOCKED]
    assert store.list_tokens(case.id, place_ids={fan.middle}) == []

    runtime.produce_token(case.id, second)

    assert len(recorder.calls) == 1
    for place_id in fan.inputs:
        assert _states(store, case.id, place_id) == [TokenState.CONSUMED]
    # The output token was taken straight away by the manual hold.
    assert _states(store, case.id, fan.middle) == [TokenState.CONSUMED]
    assert len(runtime.dispatcher.pending_firings(case.id)) == 1


def test_and_join_counts_one_token_per_place(
    runtime: WorkflowRuntime, store: InMemoryStore, recorder: Recorder
) -> None:
    fan = _fan_in(store, 3, ArcKind.AND)
    case = runtime.start_case(fan.workflow_id, mark_start_places=False)
    x, y, z = fan.inputs

    older = runtime.produce_token(case.id, x)
    newer = runtime.produce_token(case.id, x)
    runtime.produce_token(case.id, y)
    assert recorder.calls == []

    runtime.produce_token(case.id, z)

    assert len(recorder.calls) == 1
    assert older.id in recorder.calls[0].consumed_token_ids
    assert store.get_token(older.id).state == TokenState.CONSUMED
    assert store.get_token(newer.id).state == TokenState.LOCKED

    # The spare token at x joins the next round.
    runtime.produce_token(case.id, y)
    runtime.produce_token(case.id, z)
    assert len(recorder.calls) == 2
    assert store.get_token(newer.id).state == TokenState.CONSUMED
    assert len(store.list_tokens(case.id, place_ids={fan.middle})) == 2


def test_or_join_fires_on_each_arrival(
    runtime: WorkflowRuntime, store: InMemoryStore, recorder: Recorder
) -> None:
    fan = _fan_in(store, 2, ArcKind.OR)
    case = runtime.start_case(fan.workflow_id, mark_start_places=False)

    token = runtime.produce_token(case.id, fan.inputs[0])

    assert token.state == TokenState.CONSUMED
    assert len(recorder.calls) == 1
    assert _states(store, case.id, fan.inputs[1]) == []
    assert len(runtime.dispatcher.pending_firings(case.id)) == 1

    runtime.produce_token(case.id, fan.inputs[1])
    assert len(recorder.calls) == 2


def test_concurrent_arrivals_fire_the_join_once(
    runtime: WorkflowRuntime, store: InMemoryStore, recorder: Recorder
) -> None:
    fan = _fan_in(store, 4, ArcKind.AND)
    rounds = 25

    for _ in range(rounds):
        case = runtime.start_case(fan.workflow_id, mark_start_places=False)
        barrier = threading.Barrier(len(fan.inputs))

        threads = [
            threading.Thread(target=_arrive, args=(runtime, barrier, case.id, pid))
            for pid in fan.inputs
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        consumed = store.list_tokens(
            case.id, place_ids=set(fan.inputs), states={TokenState.CONSUMED}
        )
        assert len(consumed) == len(fan.inputs)
        assert len(store.list_tokens(case.id, place_ids={fan.middle})) == 1

    assert len(recorder.calls) == rounds
    assert len(runtime.engine.locks) == 0


def test_conflicting_commit_is_retried(
    registry: CallbackRegistry,
    settings: EngineSettings,
    clock: FakeClock,
    recorder: Recorder,
) -> None:
    store = _ConflictingStore(conflicts=2)
    wf = _join(store)
    runtime = WorkflowRuntime(store, registry, settings, clock=clock)
    case = runtime.start_case(wf.workflow_id)

    assert store.conflicts == 0
    assert len(recorder.calls) == 1
    assert runtime.store.get_case(case.id).state == CaseState.CLOSED


def test_commit_keeps_retrying_until_conflicts_clear(
    registry: CallbackRegistry,
    settings: EngineSettings,
    clock: FakeClock,
    recorder: Recorder,
    caplog: pytest.LogCaptureFixture,
) -> None:
    store = _ConflictingStore(conflicts=10)
    wf = _join(store)
    runtime = WorkflowRuntime(store, registry, settings, clock=clock)

    with caplog.at_level(logging.INFO, logger="petriflow.engine"):
        case = runtime.start_case(wf.workflow_id)

    assert store.conflicts == 0
    assert len(recorder.calls) == 1
    assert case.state == CaseState.CLOSED
    conflicts = [r for r in caplog.records if r.getMessage().startswith("Enablement commit")]
    assert len(conflicts) == 10
    # Every third consecutive conflict is escalated.
    assert [r.attempt for r in conflicts if r.levelno == logging.WARNING] == [3, 6, 9]


@dataclass(frozen=True)
class Choice:
    """start -OR-> {urgent (guarded), normal} -> end"""

    workflow_id: int
    start: int
    urgent_done: int
    normal_done: int


def _choice(store: InMemoryStore) -> Choice:
    wf = store.add_workflow("choice", is_valid=True, is_draft=False)
    start = store.add_place(wf.id, "start")
    urgent_done = store.add_place(wf.id, "urgent done", kind=PlaceKind.END)
    normal_done = store.add_place(wf.id, "normal done", kind=PlaceKind.END)
    normal = store.add_transition(wf.id, "normal", sort_order=2)
    urgent = store.add_transition(wf.id, "urgent", sort_order=1, guard="is-urgent")
    for t, end in ((urgent, urgent_done), (normal, normal_done)):
        store.add_arc(
            wf.id,
            transition_id=t.id,
            place_id=start.id,
            direction=ArcDirection.IN,
            kind=ArcKind.OR,
        )
        store.add_arc(wf.id, transition_id=t.id, place_id=end.id, direction=ArcDirection.OUT)
    return Choice(
        workflow_id=wf.id,
        start=start.id,
        urgent_done=urgent_done.id,
        normal_done=normal_done.id,
    )


def test_split_offers_the_token_to_branches_in_order(
    runtime: WorkflowRuntime, store: InMemoryStore, registry: CallbackRegistry
) -> None:
    seen: list[GuardContext] = []

    def is_urgent(context: GuardContext) -> bool:
        seen.append(context)
        return context.work_item_id == 1

    registry.register_guard("is-urgent", is_urgent)
    choice = _choice(store)

    urgent_case = runtime.start_case(choice.workflow_id, mark_start_places=False)
    runtime.produce_token(urgent_case.id, choice.start, work_item_id=1)
    normal_case = runtime.start_case(choice.workflow_id, mark_start_places=False)
    runtime.produce_token(normal_case.id, choice.start, work_item_id=2)

    assert len(store.list_tokens(urgent_case.id, place_ids={choice.urgent_done})) == 1
    assert store.list_tokens(urgent_case.id, place_ids={choice.normal_done}) == []
    # The guard declined, so the next branch took the token.
    assert store.list_tokens(normal_case.id, place_ids={choice.urgent_done}) == []
    assert len(store.list_tokens(normal_case.id, place_ids={choice.normal_done})) == 1
    assert store.get_case(normal_case.id).state == CaseState.CLOSED
    assert [c.case_id for c in seen] == [urgent_case.id, normal_case.id]
    assert seen[0].place_id == choice.start


def test_failing_guard_declines_its_branch(
    runtime: WorkflowRuntime, store: InMemoryStore, registry: CallbackRegistry
) -> None:
    def broken(_context: GuardContext) -> bool:
        raise RuntimeError("guard backend down")

    registry.register_guard("is-urgent", broken)
    choice = _choice(store)

    case = runtime.start_case(choice.workflow_id)

    assert case.state == CaseState.CLOSED
    assert len(store.list_tokens(case.id, place_ids={choice.normal_done})) == 1


def test_tokens_for_a_closed_case_are_ignored(
    runtime: WorkflowRuntime, store: InMemoryStore, join_workflow: JoinWorkflow
) -> None:
    case = runtime.start_case(join_workflow.workflow_id)
    assert case.state == CaseState.CLOSED

    stray = runtime.produce_token(case.id, join_workflow.c)

    assert stray.state == TokenState.PRODUCED
    assert len(store.list_tokens(case.id, place_ids={join_workflow.d})) == 1


def test_engine_reports_firings_without_dispatching(
    store: InMemoryStore, join_workflow: JoinWorkflow, clock: FakeClock
) -> None:
    engine = FiringEngine(store, TopologyCache(store), clock=clock)
    case = store.create_case(join_workflow.workflow_id, at=clock())
    a = store.create_token(case.id, join_workflow.a, at=clock())
    b = store.create_token(case.id, join_workflow.b, at=clock())

    assert engine.on_token_produced(TokenProduced(case.id, a.place_id, a.id)) == []
    fired = engine.on_token_produced(TokenProduced(case.id, b.place_id, b.id))

    assert len(fired) == 1
    assert fired[0].transition_id == join_workflow.t1
    assert set(fired[0].consumed_token_ids) == {a.id, b.id}
    # Output tokens are the dispatcher's job.
    assert store.list_tokens(case.id, place_ids={join_workflow.c}) == []


def test_keyed_locks_are_released() -> None:
    locks = KeyedLocks()
    with locks.hold(("case", 1)):
        assert len(locks) == 1
    assert len(locks) == 0


class _ConflictingStore(InMemoryStore):
    """Reports a conflicting update for the first `conflicts` batch commits."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    def transition_tokens(self, token_ids, **kwargs):  # type: ignore[no-untyped-def]
        if self.conflicts > 0:
            self.conflicts -= 1
            raise StaleStateError("token", 0, "locked/produced", "consumed")
        return super().transition_tokens(token_ids, **kwargs)


def _join(store: InMemoryStore) -> FanIn:
    wf = store.add_workflow("join", is_valid=True, is_draft=False)
    a = store.add_place(wf.id, "A")
    b = store.add_place(wf.id, "B")
    end = store.add_place(wf.id, "End", kind=PlaceKind.END)
    t = store.add_transition(wf.id, "T", callbacks=["record"])
    for place in (a, b):
        store.add_arc(
            wf.id,
            transition_id=t.id,
            place_id=place.id,
            direction=ArcDirection.IN,
            kind=ArcKind.AND,
        )
    store.add_arc(wf.id, transition_id=t.id, place_id=end.id, direction=ArcDirection.OUT)
    return FanIn(workflow_id=wf.id, inputs=[a.id, b.id], transition=t.id, middle=end.id)
