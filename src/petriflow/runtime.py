"""Workflow runtime: wires the store, topology cache, engine and dispatcher."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Collection, Iterable
from datetime import datetime

from petriflow.callbacks import CallbackRegistry
from petriflow.config import EngineSettings
from petriflow.dispatcher import TransitionDispatcher
from petriflow.engine import FiringEngine, utc_now
from petriflow.errors import DefinitionError, UnknownEntityError, WorkflowNotRunnableError
from petriflow.events import TokenProduced
from petriflow.models import Case, Token
from petriflow.store.base import Store
from petriflow.store.json_file import JsonFileStore
from petriflow.store.memory import InMemoryStore
from petriflow.topology import TopologyCache, TopologyIndex

logger = logging.getLogger(__name__)


class WorkflowRuntime:
    """Runs cases of Petri-net workflows.

    Token arrivals are explicit events: every token the runtime creates is
    handed to the firing engine, every firing to the dispatcher, and every
    token the dispatcher produces back to the engine, until nothing is left.
    Methods may be called from several threads at once.
    """

    def __init__(
        self,
        store: Store,
        registry: CallbackRegistry | None = None,
        settings: EngineSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the runtime.

        Args:
            store: Authoritative store for definitions and markings.
            registry: Callbacks referenced by AUTO transitions.
            settings: Engine settings. If None, loads from environment.
            clock: Source of timestamps (UTC).
        """
        self.settings = settings or EngineSettings()
        self.store = store
        self.registry = registry or CallbackRegistry()
        self.topology = TopologyCache(store)
        self.engine = FiringEngine(
            store,
            self.topology,
            conflict_warn_interval=self.settings.conflict_warn_interval,
            guards=self.registry,
            clock=clock,
        )
        self.dispatcher = TransitionDispatcher(store, self.topology, self.registry, clock=clock)
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: EngineSettings | None = None, registry: CallbackRegistry | None = None
    ) -> WorkflowRuntime:
        """Build a runtime backed by a JSON file when a state path is configured."""

        settings = settings or EngineSettings()
        store: Store
        if settings.state_path is not None:
            store = JsonFileStore(settings.state_path)
        else:
            store = InMemoryStore()
        return cls(store, registry, settings)

    def activate(self, workflow_id: int, version: int | None = None) -> TopologyIndex:
        """Validate a workflow version (the current one by default) and return its index.

        Raises:
            DefinitionError: if the graph is malformed or a callback or guard is unknown.
        """
        index = self.topology.for_workflow(workflow_id, version)
        problems = [
            f"callback {ref!r} is not registered"
            for ref in self.registry.missing(
                ref for t in index.transitions for ref in t.callbacks
            )
        ]
        problems += [
            f"guard {ref!r} is not registered"
            for ref in self.registry.missing_guards(
                t.guard for t in index.transitions if t.guard is not None
            )
        ]
        if problems:
            raise DefinitionError(workflow_id, problems)
        return index

    def start_case(self, workflow_id: int, *, mark_start_places: bool = True) -> Case:
        """Open a case and, by default, put a token on every START place.

        Raises:
            WorkflowNotRunnableError: for draft or invalid workflows.
            DefinitionError: if the workflow cannot be activated.
        """
        workflow = self.store.get_workflow(workflow_id)
        if workflow.is_draft or not workflow.is_valid:
            raise WorkflowNotRunnableError(
                f"Workflow {workflow.name!r} must be valid and not a draft to start cases"
            )
        index = self.activate(workflow_id)

        now = self._clock()
        case = self.store.create_case(workflow_id, at=now)
        if case.workflow_version != index.version:
            # Edited between activation and creation; the case keeps the newer graph.
            index = self.activate(workflow_id, case.workflow_version)
        logger.info("Case started", extra={"case_id": case.id, "workflow_id": workflow_id})

        if mark_start_places:
            tokens = [
                self.store.create_token(case.id, place_id, at=now)
                for place_id in sorted(index.start_places)
            ]
            self._propagate(tokens)
        return self.store.get_case(case.id)

    def produce_token(
        self, case_id: int, place_id: int, *, work_item_id: int | None = None
    ) -> Token:
        """Put a token on a place for a case and advance the case.

        Raises:
            UnknownEntityError: if the place is not part of the graph version the
                case runs on.
        """
        case = self.store.get_case(case_id)
        index = self.topology.for_workflow(case.workflow_id, case.workflow_version)
        if not index.has_place(place_id):
            raise UnknownEntityError("place", place_id)

        token = self.store.create_token(
            case_id, place_id, at=self._clock(), work_item_id=work_item_id
        )
        self._propagate([token])
        return self.store.get_token(token.id)

    def complete_manual_trigger(
        self,
        case_id: int,
        transition_id: int,
        work_item_id: int | None = None,
        *,
        output_places: Collection[int] | None = None,
    ) -> list[Token]:
        """Resume a MANUAL transition and advance the case.

        Returns:
            The tokens the completion produced (including any released deferred
            firings), in their state after propagation.
        """
        dispatch = self.dispatcher.complete_manual_trigger(
            case_id, transition_id, work_item_id, output_places=output_places
        )
        self._propagate(dispatch.produced)
        return [self.store.get_token(t.id) for t in dispatch.produced]

    def _propagate(self, tokens: Iterable[Token]) -> None:
        queue = deque(tokens)
        while queue:
            token = queue.popleft()
            event = TokenProduced(case_id=token.case_id, place_id=token.place_id, token_id=token.id)
            for fired in self.engine.on_token_produced(event):
                queue.extend(self.dispatcher.dispatch(fired).produced)
