"""Workflow, run and human task models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class StepType(str, Enum):
    """Step types understood by the dispatcher."""

    LLM = "llm"
    IMAGE = "image"
    VIDEO = "video"
    EMBEDDING = "embedding"
    TRANSFORM = "transform"
    CONDITION = "condition"
    LOOP = "loop"
    HUMAN = "human"
    WEBHOOK = "webhook"


GENERATION_STEP_TYPES = (
    StepType.LLM.value,
    StepType.IMAGE.value,
    StepType.VIDEO.value,
    StepType.EMBEDDING.value,
)


class RunStatus(str, Enum):
    """Run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepRunStatus(str, Enum):
    """Individual step execution states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class HumanTaskType(str, Enum):
    APPROVAL = "approval"
    INPUT = "input"
    REVIEW = "review"


class HumanTaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Comparator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"


class StepCondition(BaseModel):
    """Conditional execution rule for a step.

    Accepts either the explicit form ``{"if": ..., "comparator": ..., "operand": ...}``
    or the shorthand ``{"if": ..., "equals": x}`` (also ``notEquals`` and ``contains``).
    With no comparator the resolved ``if`` value is tested for truthiness.
    """

    model_config = ConfigDict(populate_by_name=True)

    if_expr: Any = Field(..., alias="if", description="Value or reference to test")
    comparator: Optional[Comparator] = None
    operand: Any = None

    @model_validator(mode="before")
    @classmethod
    def normalize_shorthand(cls, data: Any) -> Any:
        """Fold ``equals``/``notEquals``/``contains`` keys into comparator/operand."""
        if not isinstance(data, dict) or data.get("comparator"):
            return data
        data = dict(data)
        for comparator in Comparator:
            if comparator.value in data:
                data["comparator"] = comparator.value
                data["operand"] = data.pop(comparator.value)
                break
        return data


class InputField(BaseModel):
    """Declared workflow input."""

    type: str = Field(default="text")
    label: Optional[str] = None
    required: bool = False
    default: Any = None
    options: Optional[List[Any]] = None


class StepDefinition(BaseModel):
    """A single step of a workflow template."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Step identifier, unique within the workflow")
    name: Optional[str] = Field(None, description="Human-readable step name")
    type: str = Field(..., description="Step type (llm, image, video, transform, ...)")
    model: Optional[str] = Field(None, description="Model id for generation steps")
    config: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    condition: Optional[StepCondition] = None
    optional: bool = False
    retry_count: int = Field(default=0, alias="retryCount")
    timeout: Optional[float] = Field(None, gt=0, description="Step timeout in seconds")
    steps: List["StepDefinition"] = Field(
        default_factory=list, description="Inner steps run once per item of a loop step"
    )


class WorkflowDefinition(BaseModel):
    """Immutable workflow template.

    Structural checks (duplicate ids, unknown types, dependency cycles) live in
    :func:`app.workflows.graph.validate_definition` so they surface as
    orchestration validation errors at submission time.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique workflow identifier")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = None
    version: str = Field(default="1.0.0", pattern=r"^\d+\.\d+\.\d+$")
    steps: List[StepDefinition] = Field(default_factory=list)
    inputs: Dict[str, InputField] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(
        default_factory=dict, description="Output name to reference expression"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class RunState(BaseModel):
    """Mutable execution state of a run.

    ``completed_steps`` holds every *resolved* step: succeeded or skipped.
    Skipped steps have an empty dict in ``step_outputs``.
    """

    completed_steps: List[str] = Field(default_factory=list)
    step_outputs: Dict[str, Any] = Field(default_factory=dict)
    current_step: Optional[str] = None
    execution_order: List[str] = Field(default_factory=list)

    def mark_resolved(self, step_id: str, outputs: Any) -> None:
        self.step_outputs[step_id] = outputs
        if step_id not in self.completed_steps:
            self.completed_steps.append(step_id)


class StateTransition(BaseModel):
    """Run status transition record."""

    from_state: RunStatus
    to_state: RunStatus
    timestamp: datetime = Field(default_factory=utcnow)
    trigger: str = Field(..., description="What triggered the transition")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Run(BaseModel):
    """One execution instance of a workflow definition."""

    id: str = Field(..., description="Unique run identifier")
    workflow_id: str = Field(..., description="Reference to workflow definition")
    user_id: str
    workspace_id: Optional[str] = None
    status: RunStatus = Field(default=RunStatus.PENDING)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    state: RunState = Field(default_factory=RunState)
    credits_used: float = Field(default=0.0, ge=0.0)
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    history: List[StateTransition] = Field(default_factory=list)


class StepRun(BaseModel):
    """Execution record of one step within a run. Retries reuse the record."""

    id: str
    run_id: str
    step_id: str
    status: StepRunStatus = Field(default=StepRunStatus.PENDING)
    resolved_inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    credits_used: float = 0.0
    retry_count: int = Field(default=0, ge=0)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def attempts(self) -> int:
        if self.status == StepRunStatus.SKIPPED:
            return 0
        return self.retry_count + 1


class HumanTask(BaseModel):
    """Pending human action that suspends a run."""

    id: str
    run_id: str
    step_id: str
    type: HumanTaskType = HumanTaskType.APPROVAL
    title: str
    description: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    response: Any = None
    status: HumanTaskStatus = HumanTaskStatus.PENDING
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowCreateRequest(BaseModel):
    """API request for registering a workflow definition."""

    definition: Union[Dict[str, Any], str] = Field(
        ..., description="YAML/JSON workflow definition"
    )


class RunStartRequest(BaseModel):
    """API request for starting a run."""

    user_id: str = Field(..., min_length=1)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    workspace_id: Optional[str] = None


class RunResumeRequest(BaseModel):
    """API request for resuming a paused run."""

    task_response: Any = None
    task_id: Optional[str] = None


class HumanTaskCompleteRequest(BaseModel):
    response: Any = None


class RunStatusResponse(BaseModel):
    """Polling view of a run."""

    run_id: str
    workflow_id: str
    status: RunStatus
    current_step: Optional[str]
    total_steps: int
    completed_steps: int
    progress_percent: float = Field(ge=0.0, le=100.0)
    credits_used: float
    step_runs: List[StepRun] = Field(default_factory=list)
    pending_human_tasks: List[HumanTask] = Field(default_factory=list)
    prompt: Optional[str] = Field(
        None, description="Actionable prompt of the pending human task"
    )
    outputs: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
