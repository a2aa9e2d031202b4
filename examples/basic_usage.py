#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the runtime components directly:

* load settings from `.env` (set `PETRIFLOW_STATE_PATH` to persist the marking)
* define a workflow with an AND-join and a manual approval step
* run a case and complete the manual step

    intake  --+
              +-AND-> pack -> packed -> approve (MANUAL) -> shipped
    payment --+
"""

from __future__ import annotations

import argparse
import logging
from typing import Sequence

from petriflow import CallbackRegistry, CallbackResult, EngineSettings, WorkflowRuntime
from petriflow.callbacks import WorkItemContext
from petriflow.logging import configure_logging
from petriflow.models import ArcDirection, ArcKind, PlaceKind, TriggerKind
from petriflow.store import InMemoryStore, JsonFileStore

logger = logging.getLogger("petriflow.example")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an order case through a Petri-net workflow.")
    parser.add_argument(
        "--reject-packing",
        action="store_true",
        help="Make the packing callback fail to show how errors surface on the case",
    )
    parser.add_argument(
        "--no-approve",
        action="store_true",
        help="Leave the manual approval pending",
    )
    return parser.parse_args(argv)


def _define(store: InMemoryStore) -> tuple[int, int]:
    wf = store.add_workflow("order", is_valid=True, is_draft=False)
    intake = store.add_place(wf.id, "intake", sort_order=1)
    payment = store.add_place(wf.id, "payment", sort_order=2)
    packed = store.add_place(wf.id, "packed", sort_order=3)
    shipped = store.add_place(wf.id, "shipped", sort_order=4, kind=PlaceKind.END)

    pack = store.add_transition(wf.id, "pack", callbacks=["pack"], trigger_limit=2)
    approve = store.add_transition(wf.id, "approve", trigger=TriggerKind.MANUAL)

    for place in (intake, payment):
        store.add_arc(
            wf.id,
            transition_id=pack.id,
            place_id=place.id,
            direction=ArcDirection.IN,
            kind=ArcKind.AND,
        )
    store.add_arc(wf.id, transition_id=pack.id, place_id=packed.id, direction=ArcDirection.OUT)
    store.add_arc(wf.id, transition_id=approve.id, place_id=packed.id, direction=ArcDirection.IN)
    store.add_arc(
        wf.id, transition_id=approve.id, place_id=shipped.id, direction=ArcDirection.OUT
    )
    return wf.id, approve.id


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    def pack(context: WorkItemContext) -> CallbackResult:
        if args.reject_packing:
            return CallbackResult(ok=False, message="warehouse closed")
        logger.info("Packing order", extra={"case_id": context.case_id})
        return CallbackResult(ok=True, work_item_id=1000 + context.case_id)

    registry = CallbackRegistry()
    registry.register("pack", pack)

    store = JsonFileStore(settings.state_path) if settings.state_path else InMemoryStore()
    runtime = WorkflowRuntime(store, registry, settings)
    workflow_id, approve_id = _define(store)

    case = runtime.start_case(workflow_id)
    print(f"Case {case.id} started: {case.state.value}")
    if case.error_msg:
        print(f"Error: {case.error_msg}")
        return 1

    pending = runtime.dispatcher.pending_firings(case.id)
    print(f"Waiting for approval: {len(pending)} pending firing(s)")
    if args.no_approve:
        return 0

    runtime.complete_manual_trigger(case.id, approve_id, work_item_id=2000 + case.id)
    case = store.get_case(case.id)
    print(f"Case {case.id} is now {case.state.value} (ended {case.end_at})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
