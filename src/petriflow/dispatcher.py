"""Transition dispatcher: runs fired transitions and produces their output tokens.

AUTO transitions run their callbacks right away and then mark the output
places. MANUAL transitions wait for `complete_manual_trigger`. A non-zero
trigger limit caps in-flight firings per transition; firings beyond the cap
are queued and started as earlier ones finish.

Callbacks run outside every engine lock. A failing callback does not roll back
the consumed input tokens: the failure is recorded on the case instead.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from petriflow.callbacks import CallbackRegistry, WorkItemContext
from petriflow.engine import utc_now
from petriflow.errors import CallbackError, NoPendingFiringError
from petriflow.events import TransitionFired
from petriflow.models import ArcKind, Token, Transition, TriggerKind
from petriflow.store.base import MarkingStore
from petriflow.topology import TopologyCache, TopologyIndex

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Dispatch:
    """Result of handing a firing to the dispatcher.

    `produced` holds every token created by the call, including tokens of
    deferred firings that this call released.
    """

    outcome: DispatchOutcome
    produced: tuple[Token, ...] = ()
    message: str = ""


@dataclass(frozen=True, slots=True)
class PendingFiring:
    fired: TransitionFired
    since: datetime


class TransitionDispatcher:
    def __init__(
        self,
        store: MarkingStore,
        topology: TopologyCache,
        registry: CallbackRegistry,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._topology = topology
        self._registry = registry
        self._clock = clock

        self._lock = threading.Lock()
        self._in_flight: dict[int, int] = defaultdict(int)
        self._deferred: dict[int, deque[TransitionFired]] = defaultdict(deque)
        self._pending: dict[tuple[int, int], deque[PendingFiring]] = defaultdict(deque)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def in_flight(self, transition_id: int) -> int:
        with self._lock:
            return self._in_flight.get(transition_id, 0)

    def deferred(self, transition_id: int) -> list[TransitionFired]:
        with self._lock:
            return list(self._deferred.get(transition_id, ()))

    def pending_firings(self, case_id: int | None = None) -> list[PendingFiring]:
        with self._lock:
            return [
                p
                for (pending_case, _), queue in self._pending.items()
                if case_id is None or pending_case == case_id
                for p in queue
            ]

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def dispatch(self, fired: TransitionFired) -> Dispatch:
        index = self._topology.for_workflow(fired.workflow_id, fired.workflow_version)
        transition = index.transition(fired.transition_id)

        if not self._acquire_slot(transition, fired):
            logger.info(
                "Trigger limit reached; firing deferred",
                extra={
                    "case_id": fired.case_id,
                    "transition_id": fired.transition_id,
                    "trigger_limit": transition.trigger_limit,
                },
            )
            return Dispatch(outcome=DispatchOutcome.DEFERRED, message="trigger limit reached")

        first, released = self._start(index, fired)
        return self._drain(first, released)

    def complete_manual_trigger(
        self,
        case_id: int,
        transition_id: int,
        work_item_id: int | None,
        *,
        output_places: Collection[int] | None = None,
    ) -> Dispatch:
        """Finish a MANUAL firing and mark its output places.

        Raises:
            NoPendingFiringError: if the transition is not waiting for this case.
            CallbackError: if `output_places` is not a valid choice; the firing
                stays pending.
        """

        key = (case_id, transition_id)
        with self._lock:
            queue = self._pending.get(key)
            if not queue:
                raise NoPendingFiringError(
                    f"Transition {transition_id} has no pending firing for case {case_id}"
                )
            fired = queue[0].fired

        index = self._topology.for_workflow(fired.workflow_id, fired.workflow_version)
        targets = self._route(index, transition_id, output_places)

        with self._lock:
            queue = self._pending.get(key)
            if not queue or queue[0].fired is not fired:
                raise NoPendingFiringError(
                    f"Transition {transition_id} has no pending firing for case {case_id}"
                )
            queue.popleft()
            if not queue:
                del self._pending[key]

        produced = self._produce(fired, targets, work_item_id)
        logger.info(
            "Manual trigger completed",
            extra={
                "case_id": case_id,
                "transition_id": transition_id,
                "work_item_id": work_item_id,
            },
        )
        released = self._release_slot(transition_id)
        return self._drain(Dispatch(DispatchOutcome.COMPLETED, produced), released)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drain(self, first: Dispatch, released: TransitionFired | None) -> Dispatch:
        produced = list(first.produced)
        while released is not None:
            index = self._topology.for_workflow(released.workflow_id, released.workflow_version)
            follow_on, released = self._start(index, released)
            produced.extend(follow_on.produced)
        return Dispatch(outcome=first.outcome, produced=tuple(produced), message=first.message)

    def _start(
        self, index: TopologyIndex, fired: TransitionFired
    ) -> tuple[Dispatch, TransitionFired | None]:
        """Run a firing that already holds a trigger slot."""

        transition = index.transition(fired.transition_id)
        if transition.trigger == TriggerKind.MANUAL:
            with self._lock:
                self._pending[(fired.case_id, fired.transition_id)].append(
                    PendingFiring(fired=fired, since=self._clock())
                )
            logger.info(
                "Manual transition awaiting completion",
                extra={"case_id": fired.case_id, "transition_id": fired.transition_id},
            )
            return Dispatch(outcome=DispatchOutcome.PENDING), None

        try:
            result = self._run_auto(index, transition, fired)
        except Exception:
            # Deferred firings stay queued for the next completion.
            self._release_slot(transition.id, start_next=False)
            raise
        return result, self._release_slot(transition.id)

    def _run_auto(
        self, index: TopologyIndex, transition: Transition, fired: TransitionFired
    ) -> Dispatch:
        context = WorkItemContext(
            workflow_id=fired.workflow_id,
            case_id=fired.case_id,
            transition_id=fired.transition_id,
            consumed_token_ids=fired.consumed_token_ids,
        )
        work_item_id: int | None = None
        chosen: frozenset[int] | None = None
        try:
            for ref in transition.callbacks:
                result = self._registry.get(ref).execute(context)
                if not result.ok:
                    raise CallbackError(result.message or f"Callback {ref!r} reported failure")
                if result.work_item_id is not None:
                    work_item_id = result.work_item_id
                if result.output_places is not None:
                    chosen = result.output_places
            targets = self._route(index, transition.id, chosen)
        except Exception as e:
            logger.exception(
                "Transition callback failed",
                extra={"case_id": fired.case_id, "transition_id": transition.id},
            )
            self._store.set_case_error(fired.case_id, f"{transition.name}: {e}")
            return Dispatch(outcome=DispatchOutcome.FAILED, message=str(e))

        produced = self._produce(fired, targets, work_item_id)
        return Dispatch(outcome=DispatchOutcome.COMPLETED, produced=produced)

    def _route(
        self, index: TopologyIndex, transition_id: int, chosen: Collection[int] | None
    ) -> frozenset[int]:
        outputs = index.output_places(transition_id)
        if chosen is None:
            return outputs
        choice = frozenset(chosen)
        if index.split_kind(transition_id) != ArcKind.OR:
            raise CallbackError("Only an OR split may choose its output places")
        if not choice or not choice <= outputs:
            raise CallbackError(
                f"Output choice {sorted(choice)} is not a non-empty subset of {sorted(outputs)}"
            )
        return choice

    def _produce(
        self, fired: TransitionFired, targets: frozenset[int], work_item_id: int | None
    ) -> tuple[Token, ...]:
        now = self._clock()
        return tuple(
            self._store.create_token(
                fired.case_id, place_id, at=now, work_item_id=work_item_id
            )
            for place_id in sorted(targets)
        )

    def _acquire_slot(self, transition: Transition, fired: TransitionFired) -> bool:
        with self._lock:
            limit = transition.trigger_limit
            if limit and self._in_flight[transition.id] >= limit:
                self._deferred[transition.id].append(fired)
                return False
            self._in_flight[transition.id] += 1
            return True

    def _release_slot(
        self, transition_id: int, *, start_next: bool = True
    ) -> TransitionFired | None:
        """Free a slot; hand it straight to the oldest deferred firing, if any."""

        with self._lock:
            self._in_flight[transition_id] -= 1
            if self._in_flight[transition_id] <= 0:
                del self._in_flight[transition_id]
            queue = self._deferred.get(transition_id)
            if not start_next or not queue:
                return None
            released = queue.popleft()
            if not queue:
                del self._deferred[transition_id]
            self._in_flight[transition_id] += 1
            return released
