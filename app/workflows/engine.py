"""Workflow execution engine."""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import OrchestratorSettings
from ..errors import (
    HumanTaskExpiredError,
    HumanTaskNotFoundError,
    RunExecutionError,
    RunNotFoundError,
    RunStateError,
    StepExecutionError,
    ValidationError,
    WorkflowNotFoundError,
)
from ..models.provider import ProviderHealth
from ..models.workflow import (
    TERMINAL_RUN_STATUSES,
    HumanTask,
    HumanTaskStatus,
    Run,
    RunStatus,
    RunStatusResponse,
    StepDefinition,
    StepRun,
    StepRunStatus,
    WorkflowDefinition,
    utcnow,
)
from ..providers.health import ProviderHealthTracker
from .conditions import evaluate_condition
from .dispatcher import DispatchResult, HumanTaskRequest, StepDispatcher
from .graph import dependencies_met, get_execution_order, validate_definition
from .references import build_context, resolve_inputs
from .state_manager import RunStateStore


class WorkflowEngine:
    """
    Runs workflow definitions step by step.

    Features:
    - Deterministic topological ordering computed once per run
    - Conditional skipping; skipped steps count as resolved for dependents
    - Per-step retries with a persisted attempt counter
    - Human-in-the-loop suspension and resumption
    - Fail-fast on exhausted retries, with state persisted before the error propagates
    - Cooperative cancellation checked before every step
    """

    def __init__(
        self,
        state_manager: RunStateStore,
        dispatcher: StepDispatcher,
        settings: Optional[OrchestratorSettings] = None,
        health: Optional[ProviderHealthTracker] = None,
    ) -> None:
        self.state_manager = state_manager
        self.dispatcher = dispatcher
        self.settings = settings or dispatcher.settings
        self.health = health
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._running_runs: Dict[str, asyncio.Task] = {}

    # -- definitions ------------------------------------------------------------

    async def register_workflow(self, definition: WorkflowDefinition) -> None:
        """Validate and register a workflow definition."""
        validate_definition(definition)
        self._workflows[definition.id] = definition
        await self.state_manager.save_workflow(definition)
        logger.info(
            f"Registered workflow: {definition.name} "
            f"(ID: {definition.id}, Version: {definition.version})"
        )

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        definition = self._workflows.get(workflow_id)
        if definition is None:
            definition = await self.state_manager.get_workflow(workflow_id)
            if definition is None:
                raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
            self._workflows[workflow_id] = definition
        return definition

    # -- run lifecycle ------------------------------------------------------------

    async def start_run(
        self,
        workflow: Union[str, WorkflowDefinition],
        user_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        workspace_id: Optional[str] = None,
    ) -> Run:
        """Validate, create a pending run and start executing it in the background.

        Raises :class:`ValidationError` before any run exists when the
        definition or the inputs are invalid.
        """
        if isinstance(workflow, WorkflowDefinition):
            await self.register_workflow(workflow)
            definition = workflow
        else:
            definition = await self.get_workflow(workflow)
            validate_definition(definition)

        run = Run(
            id=str(uuid.uuid4()),
            workflow_id=definition.id,
            user_id=user_id,
            workspace_id=workspace_id,
            status=RunStatus.PENDING,
            inputs=self._validate_inputs(definition, inputs or {}),
        )
        await self.state_manager.create_run(run)
        logger.info(f"Created run {run.id} for workflow {definition.id}")

        self._spawn(run.id)
        return run

    def _spawn(self, run_id: str) -> None:
        task = asyncio.create_task(self.execute_run(run_id))
        self._running_runs[run_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._running_runs.get(run_id) is done:
                del self._running_runs[run_id]

        task.add_done_callback(_forget)

    async def execute_run(self, run_id: str) -> None:
        """Walk the run's execution order until it completes, pauses or fails."""
        run = await self.state_manager.get_run(run_id)
        if not run:
            raise RunNotFoundError(f"Run not found: {run_id}")
        if run.status not in (RunStatus.PENDING, RunStatus.RUNNING):
            logger.info(f"Run {run_id} is {run.status.value}, nothing to execute")
            return

        try:
            definition = await self.get_workflow(run.workflow_id)
            state = run.state

            if not state.execution_order:
                state.execution_order = get_execution_order(definition.steps)
                logger.info(f"Run {run_id} execution order: {' -> '.join(state.execution_order)}")

            if run.status == RunStatus.PENDING:
                started = await self.state_manager.compare_and_set_status(
                    run_id, RunStatus.PENDING, RunStatus.RUNNING, state=state
                )
                if started is None:
                    logger.info(f"Run {run_id} left pending before it started")
                    return
            else:
                await self.state_manager.update_run(run_id, state=state)

            for step_id in state.execution_order:
                if step_id in state.completed_steps:
                    continue

                current = await self.state_manager.get_run(run_id)
                if current is None or current.status != RunStatus.RUNNING:
                    status = current.status.value if current else "missing"
                    logger.info(f"Run {run_id} is {status}, stopping before step {step_id}")
                    return

                step = definition.get_step(step_id)
                if not dependencies_met(step, state.completed_steps):
                    logger.warning(f"Step {step_id} dependencies not met, skipping")
                    continue

                context = build_context(run.inputs, state.step_outputs)

                if not evaluate_condition(step.condition, context):
                    logger.info(f"Step condition not met, skipping: {step_id}")
                    await self._record_skipped(run_id, step)
                    state.mark_resolved(step_id, {})
                    await self.state_manager.update_run(run_id, state=state)
                    continue

                state.current_step = step_id
                await self.state_manager.update_run(run_id, state=state)

                logger.info(f"Executing step: {step_id} ({step.type})")
                result = await self._execute_step(run_id, step, context)

                if result is None:
                    state.mark_resolved(step_id, {})
                    await self.state_manager.update_run(run_id, state=state)
                    continue

                if result.human_task is not None:
                    task = await self._create_human_task(run_id, step, result.human_task)
                    paused = await self.state_manager.compare_and_set_status(
                        run_id,
                        RunStatus.RUNNING,
                        RunStatus.PAUSED,
                        trigger=f"Waiting for human task {task.id}",
                        state=state,
                    )
                    if paused is None:
                        logger.warning(f"Run {run_id} changed status before it could pause")
                    else:
                        logger.info(f"Step {step_id} requires human input, run {run_id} paused")
                    return

                state.mark_resolved(step_id, result.outputs)
                await self.state_manager.update_run(
                    run_id,
                    state=state,
                    credits_used=current.credits_used + result.credits_used,
                )

            state.current_step = None
            outputs = resolve_inputs(definition.outputs, build_context(run.inputs, state.step_outputs))
            completed = await self.state_manager.compare_and_set_status(
                run_id, RunStatus.RUNNING, RunStatus.COMPLETED, state=state, outputs=outputs
            )
            if completed is not None:
                logger.info(f"Run {run_id} completed successfully")

        except RunExecutionError as e:
            logger.error(f"Run {run_id} failed at step {e.step_id}: {e}")
            await self._fail_run(run_id, str(e), e.step_id)

        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}")
            await self._fail_run(run_id, str(e))

    async def _execute_step(
        self, run_id: str, step: StepDefinition, context: Dict[str, Any]
    ) -> Optional[DispatchResult]:
        """
        Dispatch one step with retries.

        Returns ``None`` when an optional step exhausted its retries.
        Raises :class:`RunExecutionError` when a required step did.
        """
        step_run = await self.state_manager.get_step_run(run_id, step.id) or StepRun(
            id=str(uuid.uuid4()), run_id=run_id, step_id=step.id
        )
        step_run.status = StepRunStatus.RUNNING
        step_run.started_at = utcnow()
        step_run.resolved_inputs = resolve_inputs(step.inputs, context)
        step_run.error = None
        await self.state_manager.save_step_run(step_run)

        timeout = step.timeout or self.settings.default_step_timeout_seconds
        retrying = AsyncRetrying(
            stop=stop_after_attempt(step.retry_count + 1),
            wait=wait_exponential(
                multiplier=self.settings.retry_backoff_seconds,
                max=self.settings.retry_max_delay_seconds,
            ),
            retry=retry_if_exception_type(StepExecutionError),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        step_run.retry_count += 1
                        await self.state_manager.save_step_run(step_run)
                        logger.warning(
                            f"Retrying step {step.id} (attempt {number}/{step.retry_count + 1})"
                        )
                    try:
                        result = await self._dispatch(step, step_run.resolved_inputs, context, timeout)
                    except StepExecutionError as e:
                        step_run.error = str(e)
                        await self.state_manager.save_step_run(step_run)
                        raise

        except StepExecutionError as e:
            step_run.status = StepRunStatus.FAILED
            step_run.completed_at = utcnow()
            await self.state_manager.save_step_run(step_run)

            if step.optional:
                logger.warning(f"Optional step {step.id} failed, continuing: {e}")
                return None
            raise RunExecutionError(step.id, f"Step {step.id} failed: {e}") from e

        if result.human_task is not None:
            step_run.status = StepRunStatus.PENDING
        else:
            step_run.status = StepRunStatus.COMPLETED
            step_run.outputs = result.outputs
            step_run.credits_used = result.credits_used
            step_run.completed_at = utcnow()
            logger.info(f"Step completed: {step.id}")
        await self.state_manager.save_step_run(step_run)
        return result

    async def _dispatch(
        self,
        step: StepDefinition,
        inputs: Dict[str, Any],
        context: Dict[str, Any],
        timeout: float,
    ) -> DispatchResult:
        try:
            return await asyncio.wait_for(
                self.dispatcher.dispatch(step, inputs, context), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise StepExecutionError(step.id, f"Step timeout after {timeout}s")

    async def _record_skipped(self, run_id: str, step: StepDefinition) -> None:
        now = utcnow()
        await self.state_manager.save_step_run(
            StepRun(
                id=str(uuid.uuid4()),
                run_id=run_id,
                step_id=step.id,
                status=StepRunStatus.SKIPPED,
                started_at=now,
                completed_at=now,
            )
        )

    async def _create_human_task(
        self, run_id: str, step: StepDefinition, request: HumanTaskRequest
    ) -> HumanTask:
        expires_at = None
        if request.expires_in:
            expires_at = utcnow() + timedelta(seconds=request.expires_in)

        task = HumanTask(
            id=str(uuid.uuid4()),
            run_id=run_id,
            step_id=step.id,
            type=request.type,
            title=request.title,
            description=request.description,
            data=request.data,
            expires_at=expires_at,
        )
        await self.state_manager.create_human_task(task)
        logger.info(f"Created human task: {task.id} for step {step.id}")
        return task

    async def _fail_run(self, run_id: str, error: str, step_id: Optional[str] = None) -> None:
        run = await self.state_manager.get_run(run_id)
        if run is None or run.status in TERMINAL_RUN_STATUSES:
            return
        failed = await self.state_manager.compare_and_set_status(
            run_id, run.status, RunStatus.FAILED, error=error, failed_step=step_id
        )
        if failed is None:
            logger.warning(f"Run {run_id} changed status before it could be marked failed")

    # -- human tasks ----------------------------------------------------------------

    async def resume_run(
        self, run_id: str, task_response: Any, task_id: Optional[str] = None
    ) -> Run:
        """Feed a human response into a paused run and continue executing it.

        Only one of several concurrent resumes wins: the paused -> running
        transition is a compare-and-set, losers get :class:`RunStateError`.
        """
        run = await self.state_manager.get_run(run_id)
        if not run:
            raise RunNotFoundError(f"Run not found: {run_id}")
        if run.status != RunStatus.PAUSED:
            raise RunStateError(f"Run {run_id} is not paused (status: {run.status.value})")

        pending = await self.state_manager.list_human_tasks(run_id, HumanTaskStatus.PENDING)
        if task_id is not None:
            task = next((t for t in pending if t.id == task_id), None)
            if task is None:
                raise RunStateError(f"Task {task_id} is not pending for run {run_id}")
        else:
            task = next((t for t in pending if t.step_id == run.state.current_step), None)

        if task is not None and self._is_expired(task, utcnow()):
            await self._expire_task(task)
            raise HumanTaskExpiredError(task.id, run_id)

        claimed = await self.state_manager.compare_and_set_status(
            run_id, RunStatus.PAUSED, RunStatus.RUNNING, trigger="Resumed with human response"
        )
        if claimed is None:
            raise RunStateError(f"Run {run_id} was resumed or changed concurrently")

        step_id = task.step_id if task else claimed.state.current_step
        outputs = task_response if isinstance(task_response, dict) else {"response": task_response}

        if task is not None:
            task.status = HumanTaskStatus.COMPLETED
            task.response = task_response
            task.completed_at = utcnow()
            await self.state_manager.save_human_task(task)

        step_run = await self.state_manager.get_step_run(run_id, step_id)
        if step_run is not None:
            step_run.status = StepRunStatus.COMPLETED
            step_run.outputs = outputs
            step_run.completed_at = utcnow()
            await self.state_manager.save_step_run(step_run)

        claimed.state.mark_resolved(step_id, outputs)
        claimed = await self.state_manager.update_run(run_id, state=claimed.state)
        logger.info(f"Resumed run {run_id} after step {step_id}")

        self._spawn(run_id)
        return claimed

    async def complete_human_task(self, task_id: str, response: Any) -> Run:
        """Complete a pending human task and resume its run."""
        task = await self.state_manager.get_human_task(task_id)
        if not task:
            raise HumanTaskNotFoundError(f"Human task not found: {task_id}")
        if task.status != HumanTaskStatus.PENDING:
            raise RunStateError(f"Human task {task_id} is {task.status.value}")
        return await self.resume_run(task.run_id, response, task_id=task.id)

    async def expire_human_tasks(self, now: Optional[datetime] = None) -> int:
        """Expire pending tasks past their deadline and fail their paused runs.

        The engine has no timer of its own; a periodic caller drives this.
        """
        now = now or utcnow()
        expired = 0
        for task in await self.state_manager.list_human_tasks(status=HumanTaskStatus.PENDING):
            if self._is_expired(task, now):
                await self._expire_task(task)
                expired += 1
        if expired:
            logger.info(f"Expired {expired} human tasks")
        return expired

    @staticmethod
    def _is_expired(task: HumanTask, now: datetime) -> bool:
        return task.expires_at is not None and task.expires_at <= now

    async def _expire_task(self, task: HumanTask) -> None:
        task.status = HumanTaskStatus.EXPIRED
        await self.state_manager.save_human_task(task)

        error = HumanTaskExpiredError(task.id, task.run_id)
        failed = await self.state_manager.compare_and_set_status(
            task.run_id,
            RunStatus.PAUSED,
            RunStatus.FAILED,
            trigger="Human task expired",
            error=str(error),
            failed_step=task.step_id,
        )
        if failed is not None:
            logger.warning(f"Run {task.run_id} failed: {error}")

    # -- control and visibility -----------------------------------------------------

    async def cancel_run(self, run_id: str) -> bool:
        """Cancel a run that has not reached a terminal state.

        In-flight provider calls are not interrupted; the run loop notices the
        status change before its next step.
        """
        run = await self.state_manager.get_run(run_id)
        if not run:
            return False

        if run.status in TERMINAL_RUN_STATUSES:
            return False

        cancelled = await self.state_manager.compare_and_set_status(
            run_id, run.status, RunStatus.CANCELLED, trigger="Cancelled by user"
        )
        if cancelled is None:
            return False

        for task in await self.state_manager.list_human_tasks(run_id, HumanTaskStatus.PENDING):
            task.status = HumanTaskStatus.EXPIRED
            await self.state_manager.save_human_task(task)

        logger.info(f"Cancelled run: {run_id}")
        return True

    async def get_run(self, run_id: str) -> Optional[Run]:
        return await self.state_manager.get_run(run_id)

    async def list_runs(
        self, workflow_id: Optional[str] = None, status: Optional[RunStatus] = None
    ) -> List[Run]:
        return await self.state_manager.list_runs(workflow_id, status)

    async def get_run_status(self, run_id: str) -> RunStatusResponse:
        """Polling view: progress, step runs, pending tasks, outputs or error."""
        run = await self.state_manager.get_run(run_id)
        if not run:
            raise RunNotFoundError(f"Run not found: {run_id}")

        total_steps = len(run.state.execution_order)
        if not total_steps:
            try:
                total_steps = len((await self.get_workflow(run.workflow_id)).steps)
            except WorkflowNotFoundError:
                total_steps = 0

        completed = len(run.state.completed_steps)
        progress = (completed / total_steps * 100) if total_steps > 0 else 0.0

        pending = await self.state_manager.list_human_tasks(run_id, HumanTaskStatus.PENDING)
        prompt = None
        if run.status == RunStatus.PAUSED and pending:
            task = pending[0]
            prompt = f"{task.title}: {task.description}" if task.description else task.title

        return RunStatusResponse(
            run_id=run.id,
            workflow_id=run.workflow_id,
            status=run.status,
            current_step=run.state.current_step,
            total_steps=total_steps,
            completed_steps=completed,
            progress_percent=round(min(progress, 100.0), 2),
            credits_used=run.credits_used,
            step_runs=await self.state_manager.list_step_runs(run_id),
            pending_human_tasks=pending,
            prompt=prompt,
            outputs=run.outputs,
            error=run.error,
            failed_step=run.failed_step,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )

    def get_provider_health_status(self) -> Dict[str, ProviderHealth]:
        return self.health.status() if self.health else {}

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Optional[Run]:
        """Wait for the run's background task, if any, and return the stored run."""
        task = self._running_runs.get(run_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.state_manager.get_run(run_id)

    # -- helpers ----------------------------------------------------------------------

    @staticmethod
    def _validate_inputs(definition: WorkflowDefinition, inputs: Dict[str, Any]) -> Dict[str, Any]:
        resolved = dict(inputs)
        errors = []

        for key, field in definition.inputs.items():
            value = resolved.get(key)
            if value is None or value == "":
                if field.default is not None:
                    resolved[key] = field.default
                elif field.required:
                    errors.append(f"Required input missing: {key}")
            elif field.options and str(value) not in {str(o) for o in field.options}:
                errors.append(f"Input {key} must be one of: {', '.join(map(str, field.options))}")

        if errors:
            raise ValidationError(f"Input validation failed: {', '.join(errors)}", errors)
        return resolved
