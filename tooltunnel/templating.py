"""Templating engine for tool execution specs.

Two placeholder forms are supported:

* ``{{param}}`` is replaced by the value of a tool parameter.
* ``${ENV_VAR}`` is replaced by an environment variable, resolved at render
  time so that changes to the environment take effect on the next call.

``$${NAME}`` renders as a literal ``${NAME}``.

Substitution is purely textual and happens in a single pass: text inserted
from a parameter value is never scanned again, so a value such as
``${HOME}`` stays literal. No shell quoting is applied. When the rendered
string is handed to a shell (``ShellExecution.command``) the parameter
values are trusted input; use the argv form to keep them out of the shell.
"""

import json
import re
from collections.abc import Collection, Mapping
from typing import Any

from tooltunnel.exceptions import TemplateError

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"

PLACEHOLDER_RE = re.compile(
    r"(?P<escape>\$\$\{)"
    rf"|\{{\{{\s*(?P<param>{_IDENT})\s*\}}\}}"
    rf"|\$\{{(?P<env>{_IDENT})\}}"
)
PARAM_ONLY_RE = re.compile(rf"^\{{\{{\s*(?P<param>{_IDENT})\s*\}}\}}$")
LOOSE_PARAM_RE = re.compile(r"\{\{(.*?)\}\}")


def template_parameters(template: str) -> list[str]:
    """Return parameter names referenced by ``template`` in first-use order."""
    names: list[str] = []
    for match in PLACEHOLDER_RE.finditer(template):
        name = match.group("param")
        if name and name not in names:
            names.append(name)
    return names


def find_malformed(template: str) -> list[str]:
    """Return ``{{...}}`` fragments that are not valid parameter placeholders.

    An opening ``{{`` without a matching ``}}`` is reported as well.
    """
    problems = []
    for match in LOOSE_PARAM_RE.finditer(template):
        if not re.fullmatch(rf"\s*{_IDENT}\s*", match.group(1)):
            problems.append(match.group(0))
    leftover = LOOSE_PARAM_RE.sub("", template)
    if "{{" in leftover:
        problems.append(leftover[leftover.index("{{"):][:40])
    return problems


def format_value(value: Any) -> str:
    """Convert a parameter value to its textual form."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def render(
    template: str,
    params: Mapping[str, Any],
    env: Mapping[str, str],
    *,
    optional: Collection[str] = (),
) -> str:
    """Render a template against parameters and the environment.

    Args:
        template: Template text
        params: Parameter values (defaults already applied)
        env: Environment used for ``${VAR}`` expansion
        optional: Parameter names that render as an empty string when absent

    Returns:
        The rendered string

    Raises:
        TemplateError: A referenced parameter has no value and is not
            optional, or a referenced environment variable is not set.

    Example:
        >>> render("echo {{msg}} from ${USER}", {"msg": "hi"}, {"USER": "ada"})
        'echo hi from ada'
    """

    def substitute(match: re.Match) -> str:
        if match.group("escape"):
            return "${"
        param = match.group("param")
        if param is not None:
            if params.get(param) is not None:
                return format_value(params[param])
            if param in optional:
                return ""
            raise TemplateError(f"Missing required parameter '{param}'", field=param)
        name = match.group("env")
        if name not in env:
            raise TemplateError(
                f"Environment variable '{name}' is not set",
                details={"env": name},
            )
        return env[name]

    return PLACEHOLDER_RE.sub(substitute, template)


def render_structure(
    value: Any,
    params: Mapping[str, Any],
    env: Mapping[str, str],
    *,
    optional: Collection[str] = (),
) -> Any:
    """Render every string inside a nested dict/list structure.

    A string consisting of exactly one ``{{param}}`` placeholder is replaced
    by the typed parameter value, so integers and objects survive into a
    JSON body unchanged.
    """
    if isinstance(value, dict):
        return {
            key: render_structure(item, params, env, optional=optional)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [render_structure(item, params, env, optional=optional) for item in value]
    if isinstance(value, str):
        whole = PARAM_ONLY_RE.match(value)
        if whole:
            name = whole.group("param")
            if name in params and params[name] is not None:
                return params[name]
            if name in optional:
                return None
            raise TemplateError(f"Missing required parameter '{name}'", field=name)
        return render(value, params, env, optional=optional)
    return value

def iter_strings(value: Any):
    """Yield every string contained in a nested dict/list structure."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_strings(item)
