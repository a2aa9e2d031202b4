"""Topology index: graph lookups the firing engine needs.

An index is built once per workflow version, validated as it is built, and
never mutated afterwards. Editing a workflow bumps its version, which makes the
cache build a fresh index instead of changing arcs under running cases.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass

from petriflow.errors import DefinitionError
from petriflow.models import (
    Arc,
    ArcDirection,
    ArcKind,
    Place,
    PlaceKind,
    Transition,
    WorkflowGraph,
)
from petriflow.store.base import GraphStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OutgoingArc:
    transition_id: int
    kind: ArcKind


class TopologyIndex:
    """Read-only lookups over one validated workflow version."""

    def __init__(
        self,
        *,
        workflow_id: int,
        version: int,
        places: dict[int, Place],
        transitions: dict[int, Transition],
        outgoing: dict[int, tuple[OutgoingArc, ...]],
        inputs: dict[int, frozenset[int]],
        outputs: dict[int, frozenset[int]],
        joins: dict[int, ArcKind],
        splits: dict[int, ArcKind],
    ) -> None:
        self.workflow_id = workflow_id
        self.version = version
        self._places = places
        self._transitions = transitions
        self._outgoing = outgoing
        self._inputs = inputs
        self._outputs = outputs
        self._joins = joins
        self._splits = splits
        self.start_places: frozenset[int] = frozenset(
            pid for pid in places if not any(pid in outs for outs in outputs.values())
        )
        self.end_places: frozenset[int] = frozenset(
            pid for pid, place in places.items() if place.kind == PlaceKind.END
        )

    @classmethod
    def build(cls, graph: WorkflowGraph) -> TopologyIndex:
        """Validate `graph` and index it.

        Raises:
            DefinitionError: listing every problem found.
        """

        workflow_id = graph.workflow.id
        problems: list[str] = []

        places = {p.id: p for p in graph.places}
        transitions = {t.id: t for t in graph.transitions}
        for entity in [*graph.places, *graph.transitions]:
            if entity.workflow_id != workflow_id:
                problems.append(f"{entity.name!r} belongs to workflow {entity.workflow_id}")

        in_arcs: dict[int, list[Arc]] = defaultdict(list)  # transition -> arcs from places
        out_arcs: dict[int, list[Arc]] = defaultdict(list)  # transition -> arcs to places
        leaving: dict[int, list[Arc]] = defaultdict(list)  # place -> arcs to transitions
        seen: set[tuple[int, int, ArcDirection]] = set()

        for arc in graph.arcs:
            if arc.workflow_id != workflow_id:
                problems.append(f"arc {arc.id} belongs to workflow {arc.workflow_id}")
                continue
            if arc.place_id not in places:
                problems.append(f"arc {arc.id} references unknown place {arc.place_id}")
                continue
            if arc.transition_id not in transitions:
                problems.append(
                    f"arc {arc.id} references unknown transition {arc.transition_id}"
                )
                continue
            key = (arc.place_id, arc.transition_id, arc.direction)
            if key in seen:
                problems.append(f"arc {arc.id} duplicates another {arc.direction.value} arc")
                continue
            seen.add(key)
            if arc.direction == ArcDirection.IN:
                in_arcs[arc.transition_id].append(arc)
                leaving[arc.place_id].append(arc)
            else:
                out_arcs[arc.transition_id].append(arc)

        joins: dict[int, ArcKind] = {}
        splits: dict[int, ArcKind] = {}
        for tid, transition in transitions.items():
            join_kinds = {arc.kind for arc in in_arcs[tid]}
            split_kinds = {arc.kind for arc in out_arcs[tid]}
            if not join_kinds:
                problems.append(f"transition {transition.name!r} has no input arc")
            elif len(join_kinds) > 1:
                problems.append(f"transition {transition.name!r} mixes join kinds on input arcs")
            else:
                joins[tid] = join_kinds.pop()
            if not split_kinds:
                problems.append(f"transition {transition.name!r} has no output arc")
            elif len(split_kinds) > 1:
                problems.append(
                    f"transition {transition.name!r} mixes split kinds on output arcs"
                )
            else:
                splits[tid] = split_kinds.pop()

        inputs = {tid: frozenset(a.place_id for a in in_arcs[tid]) for tid in transitions}
        outputs = {tid: frozenset(a.place_id for a in out_arcs[tid]) for tid in transitions}

        def _order(arc: Arc) -> tuple[int, int]:
            t = transitions[arc.transition_id]
            return (t.sort_order, t.id)

        outgoing: dict[int, tuple[OutgoingArc, ...]] = {}
        branches: set[int] = set()
        for pid, place in places.items():
            arcs = sorted(leaving[pid], key=_order)
            outgoing[pid] = tuple(OutgoingArc(a.transition_id, a.kind) for a in arcs)
            if place.kind == PlaceKind.END:
                if arcs:
                    problems.append(f"end place {place.name!r} has outgoing arcs")
            elif not arcs:
                problems.append(f"place {place.name!r} has no outgoing arc")
            elif len(arcs) > 1 and any(a.kind != ArcKind.OR for a in arcs):
                problems.append(
                    f"place {place.name!r} feeds several transitions but is not an OR split"
                )
            elif len(arcs) > 1:
                branches.update(a.transition_id for a in arcs)
                # Branches are offered the token in order; only the last may be unguarded.
                for arc in arcs[:-1]:
                    branch = transitions[arc.transition_id]
                    if branch.guard is None:
                        problems.append(
                            f"place {place.name!r} branch {branch.name!r} has no guard, "
                            "so later branches can never fire"
                        )

        for tid, transition in transitions.items():
            if transition.guard is not None and tid not in branches:
                problems.append(
                    f"transition {transition.name!r} has a guard but is not a branch of an OR split"
                )

        targets = {pid for outs in outputs.values() for pid in outs}
        starts = [pid for pid in places if pid not in targets]
        if places and not starts:
            problems.append("workflow has no start place")
        if not any(p.kind == PlaceKind.END for p in places.values()):
            problems.append("workflow has no end place")

        reachable: set[int] = set(starts)
        queue = deque(starts)
        while queue:
            pid = queue.popleft()
            for arc in leaving[pid]:
                for nxt in outputs.get(arc.transition_id, frozenset()):
                    if nxt not in reachable:
                        reachable.add(nxt)
                        queue.append(nxt)
        for pid in sorted(set(places) - reachable):
            problems.append(f"place {places[pid].name!r} is unreachable from any start place")

        if problems:
            raise DefinitionError(workflow_id, problems)

        return cls(
            workflow_id=workflow_id,
            version=graph.workflow.version,
            places=places,
            transitions=transitions,
            outgoing=outgoing,
            inputs=inputs,
            outputs=outputs,
            joins=joins,
            splits=splits,
        )

    def place(self, place_id: int) -> Place:
        return self._places[place_id]

    def has_place(self, place_id: int) -> bool:
        return place_id in self._places

    def transition(self, transition_id: int) -> Transition:
        return self._transitions[transition_id]

    @property
    def transitions(self) -> list[Transition]:
        return list(self._transitions.values())

    def outgoing_transitions(self, place_id: int) -> tuple[OutgoingArc, ...]:
        """Arcs leaving `place_id`, ordered by transition sort order."""

        return self._outgoing.get(place_id, ())

    def outgoing_transition(self, place_id: int) -> OutgoingArc:
        """The unique arc leaving a place that is not a split."""

        arcs = self.outgoing_transitions(place_id)
        if len(arcs) != 1:
            raise DefinitionError(
                self.workflow_id,
                [f"place {place_id} has {len(arcs)} outgoing arcs, expected exactly one"],
            )
        return arcs[0]

    def input_places(self, transition_id: int) -> frozenset[int]:
        return self._inputs[transition_id]

    def output_places(self, transition_id: int) -> frozenset[int]:
        return self._outputs[transition_id]

    def join_kind(self, transition_id: int) -> ArcKind:
        return self._joins[transition_id]

    def split_kind(self, transition_id: int) -> ArcKind:
        return self._splits[transition_id]


class TopologyCache:
    """Indexes keyed by (workflow, version).

    Running cases look up the version they were started on, so edits made
    while they run never change the arcs they see.
    """

    def __init__(self, store: GraphStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._indexes: dict[tuple[int, int], TopologyIndex] = {}

    def for_workflow(self, workflow_id: int, version: int | None = None) -> TopologyIndex:
        if version is None:
            version = self._store.get_workflow(workflow_id).version
        key = (workflow_id, version)
        with self._lock:
            index = self._indexes.get(key)
        if index is not None:
            return index

        graph = self._store.load_topology(workflow_id, version)
        index = TopologyIndex.build(graph)
        logger.info(
            "Built topology index",
            extra={
                "workflow_id": workflow_id,
                "version": index.version,
                "places": len(graph.places),
                "transitions": len(graph.transitions),
            },
        )
        with self._lock:
            return self._indexes.setdefault(key, index)
