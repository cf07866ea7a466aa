"""Workflow engine package: dependency-ordered execution of generation workflows."""

from .dispatcher import DispatchResult, HumanTaskRequest, StepDispatcher
from .engine import WorkflowEngine
from .state_manager import InMemoryRunStateStore, RedisRunStateStore, RunStateStore

__all__ = [
    "DispatchResult",
    "HumanTaskRequest",
    "InMemoryRunStateStore",
    "RedisRunStateStore",
    "RunStateStore",
    "StepDispatcher",
    "WorkflowEngine",
]
