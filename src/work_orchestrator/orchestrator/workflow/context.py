"""Chain context helpers.

The accumulated context of an execution is a plain key/value map that only the
engine writes. Everything here is a pure function over snapshots of it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

Context = dict[str, Any]


def filter_context(
    context: Mapping[str, Any],
    *,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
) -> Context:
    include_keys = list(include)
    exclude_keys = set(exclude)
    if include_keys:
        selected = {key: context[key] for key in include_keys if key in context}
    else:
        selected = dict(context)
    return {key: value for key, value in selected.items() if key not in exclude_keys}


def merge_context(context: Mapping[str, Any], *outputs: Mapping[str, Any]) -> Context:
    """Later outputs override earlier keys of the same name."""

    merged = dict(context)
    for output in outputs:
        merged.update(output)
    return merged


def _flatten(output: Mapping[str, Any], *, agent_ref: str) -> Context:
    flat: Context = {}

    def walk(prefix: str, value: Any) -> None:
        if isinstance(value, Mapping) and value:
            for key, inner in value.items():
                walk(f"{prefix}_{key}" if prefix else str(key), inner)
        else:
            flat[prefix] = value

    for key, value in output.items():
        walk(str(key), value)
    return flat


def _drop_nulls(output: Mapping[str, Any], *, agent_ref: str) -> Context:
    return {key: value for key, value in output.items() if value is not None}


def _namespace_by_agent(output: Mapping[str, Any], *, agent_ref: str) -> Context:
    return {agent_ref.replace("-", "_"): dict(output)}


OUTPUT_TRANSFORMERS: dict[str, Callable[..., Context]] = {
    "flatten": _flatten,
    "drop_nulls": _drop_nulls,
    "namespace_by_agent": _namespace_by_agent,
}


def apply_transformers(output: Mapping[str, Any], names: Iterable[str], *, agent_ref: str) -> Context:
    result: Context = dict(output)
    for name in names:
        result = OUTPUT_TRANSFORMERS[name](result, agent_ref=agent_ref)
    return result


def unmet_conditions(
    conditions: Mapping[str, Any],
    *,
    context: Mapping[str, Any],
    step_index: int,
    completed_steps: Iterable[int],
) -> list[str]:
    """Describe every step condition that does not hold.

    Supported kinds: `previous_step_completed`, `context_has`, `context_equals`.
    Unknown kinds are reported as unmet.
    """

    completed = set(completed_steps)
    problems: list[str] = []
    for name, expected in conditions.items():
        if name == "previous_step_completed":
            if expected and step_index > 0 and (step_index - 1) not in completed:
                problems.append(f"step {step_index - 1} has not completed")
        elif name == "context_has":
            keys = [expected] if isinstance(expected, str) else list(expected or [])
            missing = [key for key in keys if key not in context]
            if missing:
                problems.append(f"context is missing keys {missing}")
        elif name == "context_equals":
            for key, value in dict(expected or {}).items():
                if context.get(key) != value:
                    problems.append(f"context[{key!r}] != {value!r}")
        else:
            problems.append(f"unsupported condition {name!r}")
    return problems


_MISSING = object()

_OPERATORS = (">=", "<=", "==", "!=", ">", "<", "not_contains", "contains")


def lookup_path(data: Any, path: str) -> Any:
    """Resolve a dotted path through nested mappings and lists.

    Returns `None` when any segment is missing.
    """

    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return None
        if current is _MISSING:
            return None
    return current


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_expression(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate `<path> <op> <value>` against the context.

    Unparseable expressions and missing paths evaluate to False.
    """

    for operator in _OPERATORS:
        token = f" {operator} "
        if token in expression:
            path, raw_expected = expression.split(token, 1)
            break
    else:
        return False

    actual = lookup_path(context, path.strip())
    if actual is None:
        return False
    expected = raw_expected.strip().strip("\"'")

    if operator in ("==", "!="):
        if isinstance(actual, bool):
            rendered = "true" if actual else "false"
        else:
            rendered = str(actual)
        return (rendered == expected) == (operator == "==")
    if operator in ("contains", "not_contains"):
        if not isinstance(actual, str):
            return False
        return (expected in actual) == (operator == "contains")

    actual_number = _as_float(actual)
    expected_number = _as_float(expected)
    if actual_number is None or expected_number is None:
        return False
    if operator == ">":
        return actual_number > expected_number
    if operator == "<":
        return actual_number < expected_number
    if operator == ">=":
        return actual_number >= expected_number
    return actual_number <= expected_number
