"""Tests for reference expression resolution."""

import pytest

from app.workflows.references import (
    build_context,
    is_unresolved,
    parse_references,
    resolve_inputs,
    resolve_value,
)


@pytest.fixture
def context():
    return build_context(
        {"topic": "sneakers", "count": 3, "tags": ["red", "blue"]},
        {
            "draft": {"text": "Fresh kicks", "scores": [0.2, 0.9]},
            "meta": {"nested": {"flag": True}, "empty": None},
        },
    )


@pytest.mark.unit
class TestResolveValue:
    """Reference lookups against run inputs and step outputs."""

    def test_input_reference(self, context):
        assert resolve_value("${input.topic}", context) == "sneakers"

    def test_step_output_reference(self, context):
        assert resolve_value("${draft.text}", context) == "Fresh kicks"

    def test_whole_reference_keeps_raw_type(self, context):
        assert resolve_value("${input.count}", context) == 3
        assert resolve_value("${input.tags}", context) == ["red", "blue"]
        assert resolve_value("${meta.nested.flag}", context) is True

    def test_list_index_in_path(self, context):
        assert resolve_value("${draft.scores.1}", context) == 0.9

    def test_embedded_references_are_stringified(self, context):
        value = resolve_value("Ad for ${input.topic}: ${draft.text} x${input.count}", context)
        assert value == "Ad for sneakers: Fresh kicks x3"

    def test_embedded_list_is_json(self, context):
        assert resolve_value("tags=${input.tags}", context) == 'tags=["red", "blue"]'

    def test_unresolved_reference_left_verbatim(self, context):
        assert resolve_value("${missing.text}", context) == "${missing.text}"
        assert resolve_value("${draft.nope}", context) == "${draft.nope}"

    def test_none_value_counts_as_unresolved(self, context):
        assert resolve_value("${meta.empty}", context) == "${meta.empty}"

    def test_partial_resolution_keeps_unknown_placeholders(self, context):
        value = resolve_value("${input.topic} and ${ghost.value}", context)
        assert value == "sneakers and ${ghost.value}"

    def test_nested_structures_are_resolved(self, context):
        value = resolve_value(
            {"prompt": "${draft.text}", "refs": ["${input.topic}", 7]}, context
        )
        assert value == {"prompt": "Fresh kicks", "refs": ["sneakers", 7]}

    def test_non_string_passthrough(self, context):
        assert resolve_value(42, context) == 42
        assert resolve_value(None, context) is None


@pytest.mark.unit
def test_resolve_inputs_maps_every_key(context):
    resolved = resolve_inputs({"prompt": "${draft.text}", "size": "1024"}, context)
    assert resolved == {"prompt": "Fresh kicks", "size": "1024"}


@pytest.mark.unit
def test_parse_references():
    refs = parse_references("${input.topic} then ${draft.text}")
    assert refs == [("input", "topic", "input.topic"), ("draft", "text", "draft.text")]


@pytest.mark.unit
def test_is_unresolved():
    assert is_unresolved("${a.b}")
    assert not is_unresolved("plain")
    assert not is_unresolved(["${a.b}"])


@pytest.mark.unit
def test_build_context_does_not_alias_inputs():
    inputs = {"x": 1}
    context = build_context(inputs, {})
    context["input"]["x"] = 2
    assert inputs == {"x": 1}
