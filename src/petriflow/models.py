"""Pydantic models for workflow definitions and markings.

Definitions (workflows, places, transitions, arcs) are read-mostly. Markings
(cases and tokens) are mutated by the engine, always through a store.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class PlaceKind(str, Enum):
    NORMAL = "normal"
    END = "end"


class TriggerKind(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class ArcDirection(str, Enum):
    IN = "in"  # place -> transition
    OUT = "out"  # transition -> place


class ArcKind(str, Enum):
    PLAIN = "plain"
    AND = "and"
    OR = "or"


class CaseState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class TokenState(str, Enum):
    PRODUCED = "produced"
    LOCKED = "locked"
    CONSUMED = "consumed"
    CANCELED = "canceled"


COUNTABLE_TOKEN_STATES: frozenset[TokenState] = frozenset(
    {TokenState.PRODUCED, TokenState.LOCKED}
)


class Workflow(BaseModel):
    """A workflow process definition, such as 'Order Fulfillment'."""

    id: int
    name: str
    description: str = ""
    version: int = Field(default=1, description="Bumped whenever the graph is edited")
    is_valid: bool = False
    is_draft: bool = True
    error_msg: str = ""


class Place(BaseModel):
    """A wait condition within a workflow.

    START places are not flagged: they are the places without inbound arcs.
    """

    id: int
    workflow_id: int
    name: str
    description: str = ""
    sort_order: int = 0
    kind: PlaceKind = PlaceKind.NORMAL


class Transition(BaseModel):
    """A task within a workflow, such as 'Charge Customer' or 'Ship Order'."""

    id: int
    workflow_id: int
    name: str
    description: str = ""
    sort_order: int = 0
    trigger: TriggerKind = TriggerKind.AUTO
    trigger_limit: int = Field(default=0, ge=0, description="Max in-flight firings, 0 = unlimited")
    callbacks: list[str] = Field(
        default_factory=list,
        description="Opaque references resolved through a CallbackRegistry",
    )
    guard: str | None = Field(
        default=None,
        description="Guard reference deciding whether this branch of an OR split takes a token",
    )


class Arc(BaseModel):
    """A directed edge between a place and a transition."""

    id: int
    workflow_id: int
    transition_id: int
    place_id: int
    direction: ArcDirection
    kind: ArcKind = ArcKind.PLAIN


class Case(BaseModel):
    """One running instance of a workflow."""

    id: int
    workflow_id: int
    workflow_version: int = Field(default=1, description="Graph version the case runs on")
    state: CaseState = CaseState.OPEN
    start_at: datetime | None = None
    end_at: datetime | None = None
    error_msg: str | None = Field(
        default=None,
        description="Last callback failure, left for external remediation",
    )


class Token(BaseModel):
    """A mark saying a case currently occupies a place."""

    id: int
    workflow_id: int
    case_id: int
    place_id: int
    state: TokenState = TokenState.PRODUCED
    work_item_id: int | None = None
    locked_work_item_id: int | None = None

    produced_at: datetime | None = None
    locked_at: datetime | None = None
    canceled_at: datetime | None = None
    consumed_at: datetime | None = None


class WorkflowGraph(BaseModel):
    """Everything needed to build a topology index for one workflow version."""

    workflow: Workflow
    places: list[Place] = Field(default_factory=list)
    transitions: list[Transition] = Field(default_factory=list)
    arcs: list[Arc] = Field(default_factory=list)
