"""Data models package."""

from .provider import (
    GenerationResult,
    ModelConfig,
    ProviderAttempt,
    ProviderHealth,
    ProviderModelConfig,
    RouteResult,
)
from .workflow import (
    Comparator,
    HumanTask,
    HumanTaskCompleteRequest,
    HumanTaskStatus,
    HumanTaskType,
    InputField,
    Run,
    RunResumeRequest,
    RunStartRequest,
    RunState,
    RunStatus,
    RunStatusResponse,
    StateTransition,
    StepCondition,
    StepDefinition,
    StepRun,
    StepRunStatus,
    StepType,
    WorkflowCreateRequest,
    WorkflowDefinition,
)

__all__ = [
    "Comparator",
    "GenerationResult",
    "HumanTask",
    "HumanTaskCompleteRequest",
    "HumanTaskStatus",
    "HumanTaskType",
    "InputField",
    "ModelConfig",
    "ProviderAttempt",
    "ProviderHealth",
    "ProviderModelConfig",
    "RouteResult",
    "Run",
    "RunResumeRequest",
    "RunStartRequest",
    "RunState",
    "RunStatus",
    "RunStatusResponse",
    "StateTransition",
    "StepCondition",
    "StepDefinition",
    "StepRun",
    "StepRunStatus",
    "StepType",
    "WorkflowCreateRequest",
    "WorkflowDefinition",
]
