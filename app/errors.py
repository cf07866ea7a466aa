"""Exception hierarchy for workflow orchestration."""

from typing import Any, Dict, List, Optional


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""


class ValidationError(OrchestrationError):
    """Malformed workflow definition or run inputs. Never retried."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        self.errors = errors or [message]
        super().__init__(message)


class CyclicDependencyError(ValidationError):
    """The step dependency graph contains a cycle."""

    def __init__(self, step_ids: List[str]) -> None:
        self.step_ids = step_ids
        message = f"Cyclic dependency between steps: {', '.join(step_ids)}"
        super().__init__(message)


class WorkflowNotFoundError(OrchestrationError):
    """No workflow definition is registered under the given id."""


class RunNotFoundError(OrchestrationError):
    """No run exists with the given id."""


class HumanTaskNotFoundError(OrchestrationError):
    """No human task exists with the given id."""


class RunStateError(OrchestrationError):
    """The run is not in a status that allows the requested operation."""


class StepExecutionError(OrchestrationError):
    """A dispatched step failed. Governed by the step's retry count."""

    def __init__(self, step_id: str, message: str) -> None:
        self.step_id = step_id
        super().__init__(message)


class RunExecutionError(OrchestrationError):
    """Terminal failure of a run, raised once a step exhausts its retries."""

    def __init__(self, step_id: str, message: str) -> None:
        self.step_id = step_id
        super().__init__(message)


class HumanTaskExpiredError(OrchestrationError):
    """A paused run's human task passed its expiry time."""

    def __init__(self, task_id: str, run_id: str) -> None:
        self.task_id = task_id
        self.run_id = run_id
        super().__init__(f"Human task {task_id} for run {run_id} expired")


class UnknownModelError(OrchestrationError):
    """The model id is not present in the model registry."""


class ProviderUnavailableError(OrchestrationError):
    """Every candidate provider for a model was skipped or failed."""

    def __init__(
        self,
        model_id: str,
        attempts: List[Dict[str, Any]],
        last_error: Optional[BaseException] = None,
    ) -> None:
        self.model_id = model_id
        self.attempts = attempts
        self.last_error = last_error
        tried = ", ".join(a["provider"] for a in attempts) or "none"
        reason = str(last_error) if last_error else "no healthy provider"
        super().__init__(
            f"All providers failed for model {model_id} ({tried}): {reason}"
        )
