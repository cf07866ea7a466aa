"""Step dependency graph: validation and topological ordering."""

from collections import deque
from typing import Dict, Iterable, List, Sequence

from ..errors import CyclicDependencyError, ValidationError
from ..models.workflow import StepDefinition, StepType, WorkflowDefinition

RESERVED_STEP_IDS = frozenset({"input"})

_STEP_TYPES = frozenset(step_type.value for step_type in StepType)


def get_execution_order(steps: Sequence[StepDefinition]) -> List[str]:
    """Kahn's algorithm with definition order as the tie-break.

    Raises :class:`CyclicDependencyError` when some step never reaches
    in-degree zero. Callers are expected to have validated the definition.
    """
    dependents: Dict[str, List[str]] = {step.id: [] for step in steps}
    in_degree: Dict[str, int] = {step.id: 0 for step in steps}

    for step in steps:
        for dep in step.depends_on:
            if dep in dependents:
                dependents[dep].append(step.id)
                in_degree[step.id] += 1

    queue = deque(step.id for step in steps if in_degree[step.id] == 0)
    order: List[str] = []

    while queue:
        step_id = queue.popleft()
        order.append(step_id)
        for neighbor in dependents[step_id]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) != len(steps):
        raise CyclicDependencyError([s.id for s in steps if in_degree[s.id] > 0])

    return order


def dependencies_met(step: StepDefinition, completed_steps: Iterable[str]) -> bool:
    completed = set(completed_steps)
    return all(dep in completed for dep in step.depends_on)


def _loop_errors(step: StepDefinition) -> List[str]:
    errors: List[str] = []
    max_parallel = step.config.get("maxParallel")
    if max_parallel is not None and (
        isinstance(max_parallel, bool) or not isinstance(max_parallel, int) or max_parallel < 1
    ):
        errors.append(f"Step {step.id} has invalid maxParallel: {max_parallel!r}")

    inner_ids = set()
    for inner in step.steps:
        if inner.id in inner_ids:
            errors.append(f"Step {step.id} has duplicate inner step ID: {inner.id}")
        inner_ids.add(inner.id)
        if inner.type not in _STEP_TYPES:
            errors.append(f"Step {step.id}.{inner.id} has invalid type: {inner.type}")
        elif inner.type == StepType.HUMAN.value:
            errors.append(f"Step {step.id}.{inner.id}: human steps are not allowed inside loops")
    return errors


def validate_definition(definition: WorkflowDefinition) -> None:
    """Reject malformed definitions before any run is created.

    Collects every problem and raises a single :class:`ValidationError`;
    a cycle on an otherwise sound definition raises
    :class:`CyclicDependencyError`.
    """
    errors: List[str] = []

    if not definition.steps:
        errors.append("Workflow must have at least one step")

    seen = set()
    for step in definition.steps:
        if step.id in seen:
            errors.append(f"Duplicate step ID: {step.id}")
        seen.add(step.id)
        if step.id in RESERVED_STEP_IDS:
            errors.append(f"Step ID is reserved: {step.id}")
        if step.type not in _STEP_TYPES:
            errors.append(f"Step {step.id} has invalid type: {step.type}")
        if step.retry_count < 0:
            errors.append(f"Step {step.id} has negative retryCount")
        if step.type == StepType.LOOP.value:
            errors.extend(_loop_errors(step))

    for step in definition.steps:
        for dep in step.depends_on:
            if dep == step.id:
                errors.append(f"Step {step.id} depends on itself")
            elif dep not in seen:
                errors.append(f"Step {step.id} depends on unknown step: {dep}")

    if errors:
        raise ValidationError(
            f"Invalid workflow definition {definition.id}: {'; '.join(errors)}",
            errors,
        )

    get_execution_order(definition.steps)
