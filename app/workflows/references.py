"""Resolution of ``${type.path}`` reference expressions.

References point into an accumulated context of the form::

    {"input": <run inputs>, "<step_id>": <outputs of that step>, ...}

``${input.topic}`` reads a run input, ``${draft.text}`` reads the ``text``
output of step ``draft``. A string that is exactly one reference resolves to
the raw value so lists, dicts and numbers survive. References embedded in
longer text are replaced by their string form. Anything that cannot be
resolved is left verbatim.
"""

import json
import re
from typing import Any, Dict, List, Mapping, Tuple

REFERENCE_PATTERN = re.compile(r"\$\{([^}]+)\}")

_MISSING = object()


def parse_references(value: str) -> List[Tuple[str, str, str]]:
    """Return ``(type, path, full)`` for each reference found in ``value``."""
    refs = []
    for match in REFERENCE_PATTERN.finditer(value):
        full = match.group(1)
        ref_type, _, path = full.partition(".")
        refs.append((ref_type, path, full))
    return refs


def lookup_path(context: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted path through dicts and lists. Returns ``_MISSING`` on a miss."""
    current: Any = context
    for part in path.strip().split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return _MISSING if current is None else current


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Resolve references inside ``value``. Never raises on a missing path."""
    if isinstance(value, dict):
        return {key: resolve_value(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, context) for item in value]
    if not isinstance(value, str):
        return value

    whole = REFERENCE_PATTERN.fullmatch(value.strip())
    if whole:
        resolved = lookup_path(context, whole.group(1))
        return value if resolved is _MISSING else resolved

    def substitute(match: "re.Match[str]") -> str:
        resolved = lookup_path(context, match.group(1))
        if resolved is _MISSING:
            return match.group(0)
        return _stringify(resolved)

    return REFERENCE_PATTERN.sub(substitute, value)


def resolve_inputs(inputs: Mapping[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
    """Resolve every value of a step's input mapping."""
    return {key: resolve_value(value, context) for key, value in inputs.items()}


def build_context(run_inputs: Mapping[str, Any], step_outputs: Mapping[str, Any]) -> Dict[str, Any]:
    """Assemble the lookup context for a run."""
    context: Dict[str, Any] = dict(step_outputs)
    context["input"] = dict(run_inputs)
    return context


def is_unresolved(value: Any) -> bool:
    """True when ``value`` still carries a reference placeholder."""
    return isinstance(value, str) and bool(REFERENCE_PATTERN.search(value))
