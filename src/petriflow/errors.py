"""Exceptions raised by the firing engine and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field


class PetriflowError(Exception):
    """Base class for engine errors."""


@dataclass(eq=False)
class DefinitionError(PetriflowError):
    """A workflow graph is malformed and cannot run until corrected.

    Raised when a topology is built, never while a case is running.
    """

    workflow_id: int
    problems: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        joined = "; ".join(self.problems) or "unknown problem"
        return f"Workflow {self.workflow_id} is not runnable: {joined}"


@dataclass(eq=False)
class StaleStateError(PetriflowError):
    """A conditional update found an entity in an unexpected state."""

    entity: str
    entity_id: int
    expected: str
    actual: str

    def __str__(self) -> str:
        return (
            f"{self.entity} {self.entity_id} is {self.actual!r}, expected {self.expected}"
        )


class UnknownEntityError(PetriflowError, KeyError):
    """Lookup of a workflow, place, transition, case or token id failed."""

    def __init__(self, entity: str, entity_id: int) -> None:
        super().__init__(entity, entity_id)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self) -> str:
        return f"Unknown {self.entity}: {self.entity_id}"


class WorkflowNotRunnableError(PetriflowError):
    """Cases can only be started for valid, non-draft workflows."""


class NoPendingFiringError(PetriflowError, LookupError):
    """A manual completion arrived for a transition that is not waiting on one."""


class CallbackError(PetriflowError):
    """A transition callback failed or returned an unusable result."""
