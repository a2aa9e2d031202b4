"""Firing engine: decides enablement when a token arrives and commits firings.

Given a token that has just been produced at a place, the engine:

1. closes the case if the place is an END place;
2. otherwise evaluates each transition downstream of the place;
3. for an AND-join, counts one countable token per input place and, when
   every input place is marked, consumes exactly those tokens in one atomic
   store update;
4. for a PLAIN or OR join, consumes the arriving token alone.

Each evaluation runs inside a critical section keyed by (case, transition),
and every state change is a conditional store update. A conflicting update
means another evaluation got there first: the engine re-reads and retries until
the evaluation settles. A place feeding several transitions offers its token to
each branch in sort order; a branch whose guard declines is skipped.
Every case is evaluated against the workflow version it was started on.
The engine never runs transition callbacks; it only reports what fired.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from petriflow.callbacks import CallbackRegistry, GuardContext
from petriflow.errors import StaleStateError
from petriflow.events import TokenProduced, TransitionFired
from petriflow.models import (
    COUNTABLE_TOKEN_STATES,
    ArcKind,
    Case,
    CaseState,
    PlaceKind,
    Token,
    TokenState,
    Transition,
)
from petriflow.state_machine import is_terminal
from petriflow.store.base import Store
from petriflow.topology import TopologyCache, TopologyIndex

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class _KeyedLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class KeyedLocks:
    """Per-key mutexes that exist only while someone holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, _KeyedLock] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyedLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class FiringEngine:
    def __init__(
        self,
        store: Store,
        topology: TopologyCache,
        *,
        conflict_warn_interval: int = 5,
        guards: CallbackRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if conflict_warn_interval < 1:
            raise ValueError("conflict_warn_interval must be at least 1")
        self._store = store
        self._topology = topology
        self._conflict_warn_interval = conflict_warn_interval
        self._guards = guards or CallbackRegistry()
        self._clock = clock
        self._locks = KeyedLocks()

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    def on_token_produced(self, event: TokenProduced) -> list[TransitionFired]:
        """Evaluate the transitions downstream of a freshly produced token."""

        case = self._store.get_case(event.case_id)
        index = self._topology.for_workflow(case.workflow_id, case.workflow_version)
        place = index.place(event.place_id)

        if place.kind == PlaceKind.END:
            self._close_case(event.case_id)
            return []

        if case.state == CaseState.CLOSED:
            logger.debug(
                "Ignoring token for closed case",
                extra={"case_id": case.id, "token_id": event.token_id},
            )
            return []

        fired: list[TransitionFired] = []
        arcs = index.outgoing_transitions(place.id)
        for arc in arcs:
            transition = index.transition(arc.transition_id)
            if transition.guard is not None and not self._guard_accepts(transition, case, event):
                continue
            outcome = self._evaluate(index, event, arc.transition_id)
            if outcome is not None:
                fired.append(outcome)
            # A consumed token cannot enable another branch of a split.
            if is_terminal(self._store.get_token(event.token_id).state):
                break
        else:
            if len(arcs) > 1:
                logger.warning(
                    "No branch of the split took the token",
                    extra={"case_id": case.id, "place_id": place.id, "token_id": event.token_id},
                )
        return fired

    def _guard_accepts(self, transition: Transition, case: Case, event: TokenProduced) -> bool:
        token = self._store.get_token(event.token_id)
        if token.state not in COUNTABLE_TOKEN_STATES:
            return False
        context = GuardContext(
            workflow_id=case.workflow_id,
            case_id=case.id,
            transition_id=transition.id,
            place_id=event.place_id,
            token_id=token.id,
            work_item_id=token.work_item_id,
        )
        try:
            return bool(self._guards.guard(transition.guard or "")(context))
        except Exception:
            logger.exception(
                "Guard failed; branch declined",
                extra={
                    "case_id": case.id,
                    "transition_id": transition.id,
                    "guard": transition.guard,
                },
            )
            return False

    def _close_case(self, case_id: int) -> None:
        closed = self._store.set_case_state(
            case_id, from_state=CaseState.OPEN, to_state=CaseState.CLOSED, at=self._clock()
        )
        if closed:
            logger.info("Case closed", extra={"case_id": case_id})
        else:
            logger.debug("Case already closed", extra={"case_id": case_id})

    def _evaluate(
        self, index: TopologyIndex, event: TokenProduced, transition_id: int
    ) -> TransitionFired | None:
        join = index.join_kind(transition_id)
        with self._locks.hold((event.case_id, transition_id)):
            # Every conflict means another writer made progress, so this terminates.
            attempt = 0
            while True:
                attempt += 1
                try:
                    if join == ArcKind.AND:
                        return self._evaluate_and_join(index, event, transition_id)
                    return self._consume_arriving(index, event, transition_id)
                except StaleStateError as exc:
                    level = (
                        logging.WARNING
                        if attempt % self._conflict_warn_interval == 0
                        else logging.INFO
                    )
                    logger.log(
                        level,
                        "Enablement commit conflicted; re-evaluating",
                        extra={
                            "case_id": event.case_id,
                            "transition_id": transition_id,
                            "attempt": attempt,
                            "conflict": str(exc),
                        },
                    )

    def _consume_arriving(
        self, index: TopologyIndex, event: TokenProduced, transition_id: int
    ) -> TransitionFired | None:
        token = self._store.get_token(event.token_id)
        if token.state not in COUNTABLE_TOKEN_STATES:
            return None
        consumed = self._store.update_token_state(
            token.id,
            from_states=COUNTABLE_TOKEN_STATES,
            to_state=TokenState.CONSUMED,
            at=self._clock(),
        )
        return self._fired(index, event.case_id, transition_id, [consumed])

    def _evaluate_and_join(
        self, index: TopologyIndex, event: TokenProduced, transition_id: int
    ) -> TransitionFired | None:
        required = index.input_places(transition_id)
        candidates = self._store.list_tokens(
            event.case_id, place_ids=required, states=COUNTABLE_TOKEN_STATES
        )

        # Oldest token per place; extra tokens at a place wait for the next round.
        chosen: dict[int, Token] = {}
        for token in candidates:
            chosen.setdefault(token.place_id, token)

        if len(chosen) < len(required):
            self._lock_arriving(event)
            logger.debug(
                "AND-join waiting for sibling tokens",
                extra={
                    "case_id": event.case_id,
                    "transition_id": transition_id,
                    "marked": len(chosen),
                    "required": len(required),
                },
            )
            return None

        consumed = self._store.transition_tokens(
            [t.id for t in chosen.values()],
            from_states=COUNTABLE_TOKEN_STATES,
            to_state=TokenState.CONSUMED,
            at=self._clock(),
        )
        fired = self._fired(index, event.case_id, transition_id, consumed)
        if event.token_id not in fired.consumed_token_ids:
            self._lock_arriving(event)
        return fired

    def _lock_arriving(self, event: TokenProduced) -> None:
        token = self._store.get_token(event.token_id)
        if token.state != TokenState.PRODUCED:
            return
        try:
            self._store.update_token_state(
                token.id,
                from_states={TokenState.PRODUCED},
                to_state=TokenState.LOCKED,
                at=self._clock(),
            )
        except StaleStateError:
            # Another evaluation already locked or consumed it.
            logger.debug(
                "Arriving token changed state before it could be locked",
                extra={"case_id": event.case_id, "token_id": event.token_id},
            )

    def _fired(
        self,
        index: TopologyIndex,
        case_id: int,
        transition_id: int,
        consumed: list[Token],
    ) -> TransitionFired:
        fired = TransitionFired(
            workflow_id=index.workflow_id,
            workflow_version=index.version,
            case_id=case_id,
            transition_id=transition_id,
            consumed_token_ids=tuple(t.id for t in consumed),
            fired_at=self._clock(),
        )
        logger.info(
            "Transition fired",
            extra={
                "case_id": case_id,
                "transition_id": transition_id,
                "transition": index.transition(transition_id).name,
                "consumed_token_ids": list(fired.consumed_token_ids),
            },
        )
        return fired
