"""Persistence boundary used by the engine.

The engine never holds entities across calls. It reads definitions through a
`GraphStore` and mutates markings through a `MarkingStore`, whose conditional
updates are the optimistic concurrency contract.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import datetime
from typing import Protocol

from petriflow.models import Case, CaseState, Token, TokenState, Workflow, WorkflowGraph


class GraphStore(Protocol):
    def get_workflow(self, workflow_id: int) -> Workflow: ...

    def load_topology(self, workflow_id: int, version: int | None = None) -> WorkflowGraph:
        """The graph at `version` (the current one when None).

        Versions that cases were started on stay loadable after later edits.
        """
        ...


class MarkingStore(Protocol):
    def create_case(self, workflow_id: int, *, at: datetime) -> Case:
        """Open a case pinned to the workflow's current graph version."""
        ...

    def get_case(self, case_id: int) -> Case: ...

    def set_case_state(
        self, case_id: int, *, from_state: CaseState, to_state: CaseState, at: datetime
    ) -> bool:
        """Move a case between states; return False if it was not in `from_state`."""
        ...

    def set_case_error(self, case_id: int, message: str) -> Case: ...

    def create_token(
        self, case_id: int, place_id: int, *, at: datetime, work_item_id: int | None = None
    ) -> Token: ...

    def get_token(self, token_id: int) -> Token: ...

    def update_token_state(
        self,
        token_id: int,
        *,
        from_states: Collection[TokenState],
        to_state: TokenState,
        at: datetime,
    ) -> Token:
        """Raises StaleStateError when the token is not in one of `from_states`."""
        ...

    def transition_tokens(
        self,
        token_ids: Iterable[int],
        *,
        from_states: Collection[TokenState],
        to_state: TokenState,
        at: datetime,
    ) -> list[Token]:
        """All-or-nothing variant of `update_token_state`."""
        ...

    def list_tokens(
        self,
        case_id: int,
        *,
        place_ids: Collection[int] | None = None,
        states: Collection[TokenState] | None = None,
    ) -> list[Token]: ...

    def count_tokens(
        self,
        case_id: int,
        *,
        place_ids: Collection[int],
        states: Collection[TokenState],
    ) -> int: ...


class Store(GraphStore, MarkingStore, Protocol):
    """A single authoritative store serving both definitions and markings."""
