"""Argument validation for ``tools/call``.

Validation runs before the executor is invoked, so a bad call never has a
side effect.
"""

from collections.abc import Mapping
from typing import Any

from tooltunnel.catalog.models import ToolDefinition, matches_type
from tooltunnel.exceptions import ValidationError


def json_type(value: Any) -> str:
    """Name of the JSON type of a decoded value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def validate_arguments(tool: ToolDefinition, arguments: Mapping[str, Any]) -> dict[str, Any]:
    """
    Check call arguments against the tool's declared parameters.

    All problems are collected and reported together. An explicit ``null``
    counts as "not given".

    Args:
        tool: Tool being called
        arguments: Decoded ``arguments`` object of the call

    Returns:
        Arguments with parameter defaults applied

    Raises:
        ValidationError: Unknown argument, missing required argument or
            wrong type. ``field`` names the first offending argument.
    """
    problems: list[str] = []
    fields: list[str] = []

    for name in arguments:
        if tool.parameter(name) is None:
            problems.append(f"unknown argument '{name}'")
            fields.append(name)

    values: dict[str, Any] = {}
    for spec in tool.parameters:
        value = arguments.get(spec.name)
        if value is None:
            if spec.required:
                problems.append(f"missing required argument '{spec.name}'")
                fields.append(spec.name)
            elif spec.default is not None:
                values[spec.name] = spec.default
            continue
        if not matches_type(value, spec.type):
            problems.append(
                f"argument '{spec.name}' must be {spec.type.value}, got {json_type(value)}"
            )
            fields.append(spec.name)
            continue
        values[spec.name] = value

    if problems:
        raise ValidationError(
            f"Invalid arguments for tool '{tool.name}': {'; '.join(problems)}",
            field=fields[0],
            details={"problems": problems},
        )
    return values
