"""Tests for dependency ordering and definition validation."""

import pytest

from app.errors import CyclicDependencyError, ValidationError
from app.models.workflow import StepDefinition, WorkflowDefinition
from app.workflows.graph import dependencies_met, get_execution_order, validate_definition


def _step(step_id, *deps, step_type="transform"):
    return StepDefinition(id=step_id, type=step_type, dependsOn=list(deps))


def _workflow(*steps):
    return WorkflowDefinition(id="wf", name="Graph Test", steps=list(steps))


@pytest.mark.unit
class TestExecutionOrder:
    """Kahn ordering with definition order as tie-break."""

    def test_dependencies_come_first(self):
        steps = [_step("publish", "hero", "copy"), _step("hero", "brief"), _step("brief"), _step("copy", "brief")]
        order = get_execution_order(steps)

        assert order.index("brief") < order.index("hero")
        assert order.index("brief") < order.index("copy")
        assert order.index("hero") < order.index("publish")
        assert order.index("copy") < order.index("publish")

    def test_definition_order_breaks_ties(self):
        steps = [_step("a"), _step("c", "a"), _step("b", "a"), _step("d")]
        assert get_execution_order(steps) == ["a", "d", "c", "b"]

    def test_abc_scenario(self):
        assert get_execution_order([_step("A"), _step("B", "A"), _step("C", "A")]) == ["A", "B", "C"]

    def test_cycle_raises(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            get_execution_order([_step("a", "c"), _step("b", "a"), _step("c", "b"), _step("d")])
        assert set(exc_info.value.step_ids) == {"a", "b", "c"}

    def test_dependencies_met(self):
        step = _step("b", "a", "c")
        assert not dependencies_met(step, ["a"])
        assert dependencies_met(step, ["c", "a"])


@pytest.mark.unit
class TestValidateDefinition:
    """Structural validation collects every problem."""

    def test_valid_definition_passes(self):
        validate_definition(_workflow(_step("a"), _step("b", "a", step_type="llm")))

    def test_empty_workflow_rejected(self):
        with pytest.raises(ValidationError, match="at least one step"):
            validate_definition(_workflow())

    def test_collects_all_errors(self):
        definition = _workflow(
            _step("a"),
            _step("a"),
            _step("input"),
            _step("x", "ghost", step_type="teleport"),
            _step("self", "self"),
        )
        with pytest.raises(ValidationError) as exc_info:
            validate_definition(definition)

        errors = exc_info.value.errors
        assert "Duplicate step ID: a" in errors
        assert "Step ID is reserved: input" in errors
        assert "Step x has invalid type: teleport" in errors
        assert "Step x depends on unknown step: ghost" in errors
        assert "Step self depends on itself" in errors

    def test_negative_retry_rejected(self):
        step = StepDefinition(id="a", type="llm", retryCount=-1)
        with pytest.raises(ValidationError, match="negative retryCount"):
            validate_definition(_workflow(step))

    def test_cycle_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            validate_definition(_workflow(_step("a", "b"), _step("b", "a")))

    @pytest.mark.parametrize("max_parallel", [-1, 0, "4", True])
    def test_invalid_loop_max_parallel_rejected(self, max_parallel):
        step = StepDefinition(
            id="shots", type="loop", config={"items": [1, 2, 3], "maxParallel": max_parallel}
        )
        with pytest.raises(ValidationError, match="invalid maxParallel") as exc_info:
            validate_definition(_workflow(step))
        assert exc_info.value.errors == [f"Step shots has invalid maxParallel: {max_parallel!r}"]

    def test_loop_inner_steps_validated(self):
        step = StepDefinition.model_validate(
            {
                "id": "gen",
                "type": "loop",
                "config": {"items": ["a"], "maxParallel": 2},
                "steps": [
                    {"id": "img", "type": "image"},
                    {"id": "img", "type": "teleport"},
                    {"id": "ok", "type": "human"},
                ],
            }
        )
        with pytest.raises(ValidationError) as exc_info:
            validate_definition(_workflow(step))

        assert exc_info.value.errors == [
            "Step gen has duplicate inner step ID: img",
            "Step gen.img has invalid type: teleport",
            "Step gen.ok: human steps are not allowed inside loops",
        ]

    def test_loop_with_inner_steps_passes(self):
        step = StepDefinition.model_validate(
            {
                "id": "gen",
                "type": "loop",
                "config": {"items": ["a"], "parallel": True, "maxParallel": 3},
                "steps": [{"id": "img", "type": "image", "inputs": {"prompt": "${item}"}}],
            }
        )
        validate_definition(_workflow(step))
