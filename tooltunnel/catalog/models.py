"""Data models for tool definitions.

A tool declares its parameters and exactly one execution variant:

* ``ShellExecution``: a shell command line (``command``) or an argv list
  (``argv``) run as a local process.
* ``HttpExecution``: an outbound HTTP request.

The catalog document uses ``shell:`` / ``http:`` blocks; they are folded
into the ``execution`` union (discriminated by ``kind``) during validation.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from tooltunnel.templating import find_malformed, iter_strings, template_parameters

TOOL_NAME_PATTERN = r"^[A-Za-z0-9_.\-]{1,128}$"
PARAMETER_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


class ParameterType(str, Enum):
    """JSON types a tool parameter may take."""

    STRING = "string"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


def matches_type(value: Any, param_type: ParameterType) -> bool:
    """Check a JSON value against a parameter type.

    Booleans are not accepted as integers even though ``bool`` subclasses
    ``int`` in Python.
    """
    if param_type is ParameterType.STRING:
        return isinstance(value, str)
    if param_type is ParameterType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if param_type is ParameterType.BOOLEAN:
        return isinstance(value, bool)
    if param_type is ParameterType.OBJECT:
        return isinstance(value, dict)
    return isinstance(value, list)


class ParameterSpec(BaseModel):
    """A single declared tool parameter."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=PARAMETER_NAME_PATTERN)
    type: ParameterType | None = None
    required: bool = False
    default: Any = None
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _default_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("type") is None:
            if data.get("required"):
                raise ValueError(f"required parameter '{data.get('name')}' must declare a type")
            data = {**data, "type": ParameterType.STRING}
        return data

    @model_validator(mode="after")
    def _check_default(self) -> ParameterSpec:
        if self.default is not None and not matches_type(self.default, self.type):
            raise ValueError(
                f"default for parameter '{self.name}' is not of type '{self.type.value}'"
            )
        return self

    def to_schema(self) -> dict[str, Any]:
        """JSON Schema fragment for this parameter."""
        schema: dict[str, Any] = {"type": self.type.value}
        if self.description:
            schema["description"] = self.description
        if self.default is not None:
            schema["default"] = self.default
        return schema


class ShellExecution(BaseModel):
    """Run a local process.

    Exactly one of ``command`` (shell form, run through ``/bin/sh -c``) or
    ``argv`` (argv form, executed directly, one rendered element per
    argument) must be given.

    Parameter values are inserted verbatim. In the shell form a value can
    carry shell syntax; the argv form never passes through a shell, so use
    it for untrusted input.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["shell"] = "shell"
    command: str | None = Field(
        default=None, validation_alias=AliasChoices("command", "command_template")
    )
    argv: list[str] | None = None
    working_dir: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    env: dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("env", "env_overrides")
    )

    @model_validator(mode="after")
    def _check_form(self) -> ShellExecution:
        if (self.command is None) == (self.argv is None):
            raise ValueError("shell execution needs exactly one of 'command' or 'argv'")
        if self.argv is not None and not self.argv:
            raise ValueError("'argv' must not be empty")
        return self

    @property
    def form(self) -> str:
        """``"shell"`` or ``"argv"``."""
        return "argv" if self.argv is not None else "shell"

    def templates(self) -> list[str]:
        """Every template string in this execution spec."""
        texts = [self.command] if self.command is not None else list(self.argv or [])
        if self.working_dir:
            texts.append(self.working_dir)
        texts.extend(self.env.values())
        return texts


class HttpExecution(BaseModel):
    """Issue an outbound HTTP request."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["http"] = "http"
    method: str = "GET"
    url: str = Field(validation_alias=AliasChoices("url", "url_template"))
    headers: dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("headers", "headers_template")
    )
    body: str | dict[str, Any] | list[Any] | None = Field(
        default=None, validation_alias=AliasChoices("body", "body_template")
    )
    timeout: float | None = Field(default=None, gt=0)
    json_extract_path: str | None = None

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    def templates(self) -> list[str]:
        """Every template string in this execution spec."""
        texts = [self.url, *self.headers.values()]
        texts.extend(iter_strings(self.body))
        return texts


ExecutionSpec = Annotated[Union[ShellExecution, HttpExecution], Field(discriminator="kind")]


class ToolDefinition(BaseModel):
    """A declared tool: identity, parameters and one execution variant."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=TOOL_NAME_PATTERN)
    description: str = ""
    parameters: list[ParameterSpec] = Field(default_factory=list)
    execution: ExecutionSpec

    @model_validator(mode="before")
    @classmethod
    def _fold_execution_block(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "execution" in data:
            return data
        blocks = [key for key in ("shell", "http") if key in data]
        if len(blocks) != 1:
            raise ValueError("tool needs exactly one of a 'shell' or an 'http' block")
        data = dict(data)
        block = data.pop(blocks[0])
        if not isinstance(block, dict):
            raise ValueError(f"'{blocks[0]}' block must be a mapping")
        data["execution"] = {**block, "kind": blocks[0]}
        return data

    @model_validator(mode="after")
    def _check_templates(self) -> ToolDefinition:
        declared = [p.name for p in self.parameters]
        duplicates = sorted({name for name in declared if declared.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate parameter names: {', '.join(duplicates)}")

        for text in self.execution.templates():
            malformed = find_malformed(text)
            if malformed:
                raise ValueError(f"malformed placeholder {malformed[0]!r} in template {text!r}")
            unknown = [name for name in template_parameters(text) if name not in declared]
            if unknown:
                raise ValueError(
                    f"template {text!r} references undeclared parameter(s): {', '.join(unknown)}"
                )
        return self

    def parameter(self, name: str) -> ParameterSpec | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    @property
    def optional_parameters(self) -> list[str]:
        return [p.name for p in self.parameters if not p.required]

    def input_schema(self) -> dict[str, Any]:
        """JSON Schema of the tool arguments, properties in declaration order."""
        return {
            "type": "object",
            "properties": {p.name: p.to_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def to_mcp(self) -> dict[str, Any]:
        """Entry for the ``tools/list`` response."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema(),
        }
