from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class TokenProduced:
    """A token entered PRODUCED at a place.

    Delivered explicitly to the firing engine after the token is persisted.
    """

    case_id: int
    place_id: int
    token_id: int


@dataclass(frozen=True, slots=True)
class TransitionFired:
    """A transition's inputs were consumed for a case; output work may start."""

    workflow_id: int
    workflow_version: int
    case_id: int
    transition_id: int
    consumed_token_ids: tuple[int, ...]
    fired_at: datetime
