from __future__ import annotations

from datetime import datetime

from petriflow.models import Case, CaseState, Token, TokenState

ALLOWED_TOKEN_TRANSITIONS: dict[TokenState, set[TokenState]] = {
    TokenState.PRODUCED: {TokenState.LOCKED, TokenState.CONSUMED, TokenState.CANCELED},
    TokenState.LOCKED: {TokenState.CONSUMED, TokenState.CANCELED},
    TokenState.CONSUMED: set(),
    TokenState.CANCELED: set(),
}

ALLOWED_CASE_TRANSITIONS: dict[CaseState, set[CaseState]] = {
    CaseState.OPEN: {CaseState.CLOSED},
    CaseState.CLOSED: set(),
}

_TOKEN_TIMESTAMPS: dict[TokenState, str] = {
    TokenState.PRODUCED: "produced_at",
    TokenState.LOCKED: "locked_at",
    TokenState.CONSUMED: "consumed_at",
    TokenState.CANCELED: "canceled_at",
}


class IllegalTransitionError(ValueError):
    pass


def transition_token(token: Token, *, to: TokenState, at: datetime) -> Token:
    allowed = ALLOWED_TOKEN_TRANSITIONS.get(token.state, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal token transition: {token.state.value} -> {to.value} (token {token.id})"
        )
    return token.model_copy(update={"state": to, _TOKEN_TIMESTAMPS[to]: at})


def transition_case(case: Case, *, to: CaseState, at: datetime) -> Case:
    allowed = ALLOWED_CASE_TRANSITIONS.get(case.state, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal case transition: {case.state.value} -> {to.value} (case {case.id})"
        )
    update: dict[str, object] = {"state": to}
    if to == CaseState.CLOSED:
        update["end_at"] = at
    return case.model_copy(update=update)


def is_terminal(state: TokenState) -> bool:
    return not ALLOWED_TOKEN_TRANSITIONS[state]
