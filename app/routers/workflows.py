"""Workflow API endpoints for definitions, runs and human tasks."""

from typing import Optional

import yaml
from fastapi import APIRouter, HTTPException, status
from loguru import logger

from ..config import get_settings
from ..errors import (
    HumanTaskExpiredError,
    HumanTaskNotFoundError,
    RunNotFoundError,
    RunStateError,
    ValidationError,
    WorkflowNotFoundError,
)
from ..models.workflow import (
    HumanTaskCompleteRequest,
    RunResumeRequest,
    RunStartRequest,
    RunStatus,
    RunStatusResponse,
    WorkflowCreateRequest,
    WorkflowDefinition,
)
from ..providers import (
    ModelRegistry,
    ProviderHealthTracker,
    ProviderRouter,
    RoutedGenerationClient,
)
from ..workflows.dispatcher import StepDispatcher
from ..workflows.engine import WorkflowEngine
from ..workflows.state_manager import (
    InMemoryRunStateStore,
    RedisRunStateStore,
    RunStateStore,
)

router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])

# Global instances (initialized on first request)
_state_manager: Optional[RunStateStore] = None
_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create workflow engine instance."""
    global _state_manager, _engine

    settings = get_settings()

    if not _state_manager:
        if settings.redis_url:
            _state_manager = RedisRunStateStore(settings.redis_url)
        else:
            logger.warning("GENFLOW_REDIS_URL not set, run state is kept in memory")
            _state_manager = InMemoryRunStateStore()

    if not _engine:
        registry = (
            ModelRegistry.from_yaml(settings.model_registry_path)
            if settings.model_registry_path
            else ModelRegistry()
        )
        health = ProviderHealthTracker(
            failure_threshold=settings.provider_failure_threshold,
            recovery_time=settings.provider_recovery_seconds,
        )
        provider_router = ProviderRouter(registry, {}, health)
        dispatcher = StepDispatcher(settings, RoutedGenerationClient(provider_router))
        _engine = WorkflowEngine(_state_manager, dispatcher, settings, health)

    return _engine


def _http_error(e: Exception, action: str) -> HTTPException:
    """Map orchestration errors onto HTTP status codes."""
    if isinstance(e, ValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(e), "errors": e.errors},
        )
    if isinstance(e, (WorkflowNotFoundError, RunNotFoundError, HumanTaskNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (RunStateError, HumanTaskExpiredError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.error(f"Failed to {action}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(e)}",
    )


@router.post(
    "/create",
    response_model=WorkflowDefinition,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
    summary="Register a workflow definition",
)
async def create_workflow(request: WorkflowCreateRequest) -> WorkflowDefinition:
    """
    Register a workflow definition given as a JSON object or a YAML string.

    Example workflow definition:
    ```yaml
    id: product-shot
    name: Product Shot
    version: 1.0.0
    inputs:
      product:
        type: text
        required: true
    steps:
      - id: script
        type: llm
        model: gpt-4o-mini
        inputs:
          prompt: "Write a tagline for ${input.product}"
      - id: hero
        type: image
        model: flux-schnell
        dependsOn: [script]
        inputs:
          prompt: "${script.text}"
    outputs:
      image: "${hero.image}"
    ```
    """
    try:
        engine = get_workflow_engine()

        if isinstance(request.definition, dict):
            definition_dict = request.definition
        else:
            definition_dict = yaml.safe_load(request.definition)
        if not isinstance(definition_dict, dict):
            raise ValidationError("Workflow definition must be a mapping")

        try:
            definition = WorkflowDefinition.model_validate(definition_dict)
        except ValueError as e:
            raise ValidationError(f"Invalid workflow definition: {e}")

        await engine.register_workflow(definition)

        logger.info(f"Created workflow: {definition.name} (ID: {definition.id})")
        return definition

    except yaml.YAMLError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid workflow YAML: {str(e)}",
        )
    except Exception as e:
        raise _http_error(e, "create workflow")


@router.post(
    "/{workflow_id}/runs",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow run",
)
async def start_run(workflow_id: str, request: RunStartRequest) -> dict:
    """
    Start a run of a registered workflow.

    The run executes in the background. Poll ``/runs/{run_id}/status``
    with the returned ``run_id``.
    """
    try:
        engine = get_workflow_engine()

        run = await engine.start_run(
            workflow_id,
            user_id=request.user_id,
            inputs=request.inputs,
            workspace_id=request.workspace_id,
        )

        logger.info(f"Started workflow run: {run.id}")

        return {
            "run_id": run.id,
            "workflow_id": workflow_id,
            "status": run.status.value,
            "message": "Workflow run started",
        }

    except Exception as e:
        raise _http_error(e, "start workflow run")


@router.get("/runs", summary="List workflow runs")
async def list_runs(
    workflow_id: Optional[str] = None,
    status: Optional[RunStatus] = None,
    limit: int = 50,
) -> dict:
    """List runs, optionally filtered by workflow and status."""
    try:
        engine = get_workflow_engine()
        runs = (await engine.list_runs(workflow_id, status))[:limit]

        return {
            "total": len(runs),
            "runs": [
                {
                    "run_id": r.id,
                    "workflow_id": r.workflow_id,
                    "user_id": r.user_id,
                    "status": r.status.value,
                    "credits_used": r.credits_used,
                    "created_at": r.created_at.isoformat(),
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "completed_at": r.completed_at.isoformat() if r.completed_at else None,
                }
                for r in runs
            ],
        }

    except Exception as e:
        raise _http_error(e, "list runs")


@router.get(
    "/runs/{run_id}/status",
    response_model=RunStatusResponse,
    summary="Get workflow run status",
)
async def get_run_status(run_id: str) -> RunStatusResponse:
    """
    Current status of a run.

    Includes progress, per-step runs, credits spent, the pending human
    task prompt when paused, the outputs when completed and the error and
    failing step when failed.
    """
    try:
        engine = get_workflow_engine()
        return await engine.get_run_status(run_id)

    except Exception as e:
        raise _http_error(e, "retrieve run status")


@router.get("/runs/{run_id}/history", summary="Get workflow run history")
async def get_run_history(run_id: str) -> dict:
    """Audit trail of every status transition of a run."""
    try:
        engine = get_workflow_engine()
        history = await engine.state_manager.get_history(run_id)

        return {
            "run_id": run_id,
            "total_transitions": len(history),
            "history": [
                {
                    "from_state": h.from_state.value,
                    "to_state": h.to_state.value,
                    "timestamp": h.timestamp.isoformat(),
                    "trigger": h.trigger,
                    "metadata": h.metadata,
                }
                for h in history
            ],
        }

    except Exception as e:
        raise _http_error(e, "retrieve run history")


@router.post("/runs/{run_id}/resume", summary="Resume a paused run")
async def resume_run(run_id: str, request: RunResumeRequest) -> dict:
    """Submit the human response for a paused run and continue it."""
    try:
        engine = get_workflow_engine()
        run = await engine.resume_run(run_id, request.task_response, task_id=request.task_id)

        return {
            "run_id": run.id,
            "status": run.status.value,
            "message": "Workflow run resumed",
        }

    except Exception as e:
        raise _http_error(e, "resume run")


@router.post("/runs/{run_id}/cancel", summary="Cancel a workflow run")
async def cancel_run(run_id: str) -> dict:
    """
    Cancel a run that is pending, running or paused.

    The step currently executing finishes; no further steps start.
    """
    try:
        engine = get_workflow_engine()
        success = await engine.cancel_run(run_id)

        if not success:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Run cannot be cancelled (not found or already finished)",
            )

        return {
            "run_id": run_id,
            "status": RunStatus.CANCELLED.value,
            "message": "Workflow run cancelled",
        }

    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "cancel run")


@router.post("/tasks/{task_id}/complete", summary="Complete a human task")
async def complete_task(task_id: str, request: HumanTaskCompleteRequest) -> dict:
    """Complete a pending human task; its run resumes with the response."""
    try:
        engine = get_workflow_engine()
        run = await engine.complete_human_task(task_id, request.response)

        return {
            "task_id": task_id,
            "run_id": run.id,
            "status": run.status.value,
            "message": "Human task completed",
        }

    except Exception as e:
        raise _http_error(e, "complete human task")


@router.post("/tasks/expire", summary="Expire overdue human tasks")
async def expire_tasks() -> dict:
    """Expire pending human tasks past their deadline, failing their runs."""
    try:
        engine = get_workflow_engine()
        expired = await engine.expire_human_tasks()
        return {"expired": expired}

    except Exception as e:
        raise _http_error(e, "expire human tasks")
