"""Thread-safe in-memory store.

Every public operation is atomic under a single re-entrant lock, which makes
the conditional token/case updates linearizable within one process.
"""

from __future__ import annotations

import threading
from collections.abc import Collection, Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from petriflow.errors import StaleStateError, UnknownEntityError
from petriflow.models import (
    Arc,
    ArcDirection,
    ArcKind,
    Case,
    CaseState,
    Place,
    PlaceKind,
    Token,
    TokenState,
    Transition,
    TriggerKind,
    Workflow,
    WorkflowGraph,
)
from petriflow.state_machine import transition_case, transition_token


class StoreSnapshot(BaseModel):
    """Serializable image of a store's full contents."""

    workflows: list[Workflow] = Field(default_factory=list)
    places: list[Place] = Field(default_factory=list)
    transitions: list[Transition] = Field(default_factory=list)
    arcs: list[Arc] = Field(default_factory=list)
    cases: list[Case] = Field(default_factory=list)
    tokens: list[Token] = Field(default_factory=list)
    # Graphs pinned by running cases, one per (workflow, version).
    graphs: list[WorkflowGraph] = Field(default_factory=list)
    next_ids: dict[str, int] = Field(default_factory=dict)


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._workflows: dict[int, Workflow] = {}
        self._places: dict[int, Place] = {}
        self._transitions: dict[int, Transition] = {}
        self._arcs: dict[int, Arc] = {}
        self._cases: dict[int, Case] = {}
        self._tokens: dict[int, Token] = {}
        self._graphs: dict[tuple[int, int], WorkflowGraph] = {}
        self._next_ids: dict[str, int] = {}

    # Hook for persistent subclasses; called with the lock held after each mutation.
    def _commit(self) -> None:
        return None

    def _new_id(self, kind: str) -> int:
        value = self._next_ids.get(kind, 1)
        self._next_ids[kind] = value + 1
        return value

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return StoreSnapshot(
                workflows=list(self._workflows.values()),
                places=list(self._places.values()),
                transitions=list(self._transitions.values()),
                arcs=list(self._arcs.values()),
                cases=list(self._cases.values()),
                tokens=list(self._tokens.values()),
                graphs=list(self._graphs.values()),
                next_ids=dict(self._next_ids),
            )

    def restore(self, snapshot: StoreSnapshot) -> None:
        with self._lock:
            self._workflows = {w.id: w for w in snapshot.workflows}
            self._places = {p.id: p for p in snapshot.places}
            self._transitions = {t.id: t for t in snapshot.transitions}
            self._arcs = {a.id: a for a in snapshot.arcs}
            self._cases = {c.id: c for c in snapshot.cases}
            self._tokens = {t.id: t for t in snapshot.tokens}
            self._graphs = {(g.workflow.id, g.workflow.version): g for g in snapshot.graphs}
            self._next_ids = dict(snapshot.next_ids)

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    def add_workflow(
        self,
        name: str,
        *,
        description: str = "",
        is_valid: bool = False,
        is_draft: bool = True,
    ) -> Workflow:
        with self._lock:
            workflow = Workflow(
                id=self._new_id("workflow"),
                name=name,
                description=description,
                is_valid=is_valid,
                is_draft=is_draft,
            )
            self._workflows[workflow.id] = workflow
            self._commit()
            return workflow

    def update_workflow(self, workflow_id: int, **updates: Any) -> Workflow:
        with self._lock:
            merged = self.get_workflow(workflow_id).model_copy(update=updates)
            self._workflows[workflow_id] = merged
            self._commit()
            return merged

    def _bump_version(self, workflow_id: int) -> None:
        workflow = self.get_workflow(workflow_id)
        self._workflows[workflow_id] = workflow.model_copy(
            update={"version": workflow.version + 1}
        )

    def add_place(
        self,
        workflow_id: int,
        name: str,
        *,
        kind: PlaceKind = PlaceKind.NORMAL,
        sort_order: int = 0,
        description: str = "",
    ) -> Place:
        with self._lock:
            self._bump_version(workflow_id)
            place = Place(
                id=self._new_id("place"),
                workflow_id=workflow_id,
                name=name,
                kind=kind,
                sort_order=sort_order,
                description=description,
            )
            self._places[place.id] = place
            self._commit()
            return place

    def add_transition(
        self,
        workflow_id: int,
        name: str,
        *,
        trigger: TriggerKind = TriggerKind.AUTO,
        trigger_limit: int = 0,
        callbacks: list[str] | None = None,
        guard: str | None = None,
        sort_order: int = 0,
        description: str = "",
    ) -> Transition:
        with self._lock:
            self._bump_version(workflow_id)
            transition = Transition(
                id=self._new_id("transition"),
                workflow_id=workflow_id,
                name=name,
                trigger=trigger,
                trigger_limit=trigger_limit,
                callbacks=list(callbacks or []),
                guard=guard,
                sort_order=sort_order,
                description=description,
            )
            self._transitions[transition.id] = transition
            self._commit()
            return transition

    def add_arc(
        self,
        workflow_id: int,
        *,
        transition_id: int,
        place_id: int,
        direction: ArcDirection,
        kind: ArcKind = ArcKind.PLAIN,
    ) -> Arc:
        with self._lock:
            self._bump_version(workflow_id)
            arc = Arc(
                id=self._new_id("arc"),
                workflow_id=workflow_id,
                transition_id=transition_id,
                place_id=place_id,
                direction=direction,
                kind=kind,
            )
            self._arcs[arc.id] = arc
            self._commit()
            return arc

    # ------------------------------------------------------------------
    # GraphStore
    # ------------------------------------------------------------------

    def get_workflow(self, workflow_id: int) -> Workflow:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                raise UnknownEntityError("workflow", workflow_id)
            return workflow

    def load_topology(self, workflow_id: int, version: int | None = None) -> WorkflowGraph:
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            if version is None or version == workflow.version:
                return self._current_graph(workflow_id)
            graph = self._graphs.get((workflow_id, version))
            if graph is None:
                raise UnknownEntityError(f"workflow {workflow_id} version", version)
            return graph

    def _current_graph(self, workflow_id: int) -> WorkflowGraph:
        with self._lock:
            return WorkflowGraph(
                workflow=self.get_workflow(workflow_id),
                places=[p for p in self._places.values() if p.workflow_id == workflow_id],
                transitions=[
                    t for t in self._transitions.values() if t.workflow_id == workflow_id
                ],
                arcs=[a for a in self._arcs.values() if a.workflow_id == workflow_id],
            )

    # ------------------------------------------------------------------
    # MarkingStore
    # ------------------------------------------------------------------

    def create_case(self, workflow_id: int, *, at: datetime) -> Case:
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            key = (workflow_id, workflow.version)
            if key not in self._graphs:
                self._graphs[key] = self._current_graph(workflow_id)
            case = Case(
                id=self._new_id("case"),
                workflow_id=workflow_id,
                workflow_version=workflow.version,
                state=CaseState.OPEN,
                start_at=at,
            )
            self._cases[case.id] = case
            self._commit()
            return case

    def get_case(self, case_id: int) -> Case:
        with self._lock:
            case = self._cases.get(case_id)
            if case is None:
                raise UnknownEntityError("case", case_id)
            return case

    def set_case_state(
        self, case_id: int, *, from_state: CaseState, to_state: CaseState, at: datetime
    ) -> bool:
        with self._lock:
            case = self.get_case(case_id)
            if case.state != from_state:
                return False
            self._cases[case_id] = transition_case(case, to=to_state, at=at)
            self._commit()
            return True

    def set_case_error(self, case_id: int, message: str) -> Case:
        with self._lock:
            case = self.get_case(case_id).model_copy(update={"error_msg": message})
            self._cases[case_id] = case
            self._commit()
            return case

    def create_token(
        self, case_id: int, place_id: int, *, at: datetime, work_item_id: int | None = None
    ) -> Token:
        with self._lock:
            case = self.get_case(case_id)
            place = self._places.get(place_id)
            if place is None or place.workflow_id != case.workflow_id:
                raise UnknownEntityError("place", place_id)
            token = Token(
                id=self._new_id("token"),
                workflow_id=case.workflow_id,
                case_id=case_id,
                place_id=place_id,
                state=TokenState.PRODUCED,
                work_item_id=work_item_id,
                produced_at=at,
            )
            self._tokens[token.id] = token
            self._commit()
            return token

    def get_token(self, token_id: int) -> Token:
        with self._lock:
            token = self._tokens.get(token_id)
            if token is None:
                raise UnknownEntityError("token", token_id)
            return token

    def _check_token(self, token_id: int, from_states: Collection[TokenState]) -> Token:
        token = self.get_token(token_id)
        if token.state not in from_states:
            expected = "/".join(sorted(s.value for s in from_states))
            raise StaleStateError("token", token_id, expected, token.state.value)
        return token

    def update_token_state(
        self,
        token_id: int,
        *,
        from_states: Collection[TokenState],
        to_state: TokenState,
        at: datetime,
    ) -> Token:
        with self._lock:
            token = self._check_token(token_id, from_states)
            updated = transition_token(token, to=to_state, at=at)
            self._tokens[token_id] = updated
            self._commit()
            return updated

    def transition_tokens(
        self,
        token_ids: Iterable[int],
        *,
        from_states: Collection[TokenState],
        to_state: TokenState,
        at: datetime,
    ) -> list[Token]:
        with self._lock:
            # Validate everything first so a conflict leaves no partial update.
            ids = list(dict.fromkeys(token_ids))
            updated = [
                transition_token(self._check_token(token_id, from_states), to=to_state, at=at)
                for token_id in ids
            ]
            for token in updated:
                self._tokens[token.id] = token
            self._commit()
            return updated

    def list_tokens(
        self,
        case_id: int,
        *,
        place_ids: Collection[int] | None = None,
        states: Collection[TokenState] | None = None,
    ) -> list[Token]:
        with self._lock:
            return sorted(
                (
                    t
                    for t in self._tokens.values()
                    if t.case_id == case_id
                    and (place_ids is None or t.place_id in place_ids)
                    and (states is None or t.state in states)
                ),
                key=lambda t: t.id,
            )

    def count_tokens(
        self,
        case_id: int,
        *,
        place_ids: Collection[int],
        states: Collection[TokenState],
    ) -> int:
        return len(self.list_tokens(case_id, place_ids=place_ids, states=states))
