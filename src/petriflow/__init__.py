"""Petri-net workflow execution engine.

Provides:
- pydantic models for workflows, places, transitions, arcs, cases and tokens
- a validated topology index per workflow version
- a firing engine with exactly-once AND-join commits
- a transition dispatcher for AUTO and MANUAL triggers
- in-memory and JSON-file stores
"""

__version__ = "0.1.0"

from petriflow.callbacks import CallbackRegistry, CallbackResult, WorkItemContext
from petriflow.config import EngineSettings
from petriflow.runtime import WorkflowRuntime

__all__ = [
    "__version__",
    "CallbackRegistry",
    "CallbackResult",
    "EngineSettings",
    "WorkItemContext",
    "WorkflowRuntime",
]
