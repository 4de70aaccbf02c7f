"""Load a tool catalog document from disk.

Supported formats (chosen by file extension): YAML (``.yaml``/``.yml``),
JSON (``.json``) and TOML (``.toml``). The document is a mapping with a
``tools`` list::

    tools:
      - name: echo
        description: Echo a message back
        parameters:
          - {name: msg, type: string, required: true}
        shell:
          command: "echo {{msg}}"
          timeout: 5
"""

import json
import logging
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from tooltunnel.catalog.catalog import Catalog
from tooltunnel.catalog.models import ToolDefinition
from tooltunnel.exceptions import ConfigError

logger = logging.getLogger(__name__)


def _read_document(path: Path) -> Any:
    suffix = path.suffix.lower()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read catalog {path}: {e}") from e

    try:
        if suffix in (".yaml", ".yml"):
            return yaml.safe_load(text)
        if suffix == ".json":
            return json.loads(text)
        if suffix == ".toml":
            return tomllib.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Cannot parse catalog {path}: {e}") from e

    raise ConfigError(f"Unsupported catalog format '{suffix}' (use .yaml, .json or .toml)")


def _format_errors(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


def parse_catalog(document: Any, source: str = "<memory>") -> Catalog:
    """
    Build a catalog from an already-parsed document.

    Args:
        document: Mapping with a ``tools`` list (a bare list is accepted)
        source: Name used in error messages

    Returns:
        Validated Catalog

    Raises:
        ConfigError: If the document or any tool is invalid
    """
    if isinstance(document, dict):
        entries = document.get("tools")
    else:
        entries = document

    if not isinstance(entries, list):
        raise ConfigError(f"Catalog {source} must contain a 'tools' list")

    tools = []
    for index, entry in enumerate(entries):
        label = entry.get("name") if isinstance(entry, dict) else None
        label = f"'{label}'" if label else f"#{index + 1}"
        try:
            tools.append(ToolDefinition.model_validate(entry))
        except PydanticValidationError as e:
            raise ConfigError(
                f"Invalid tool {label} in {source}: {_format_errors(e)}",
                details={"tool": label},
            ) from e

    catalog = Catalog(tools)
    logger.info(f"Loaded {len(catalog)} tools from {source}")
    return catalog


def load_catalog(path: str | Path) -> Catalog:
    """
    Load and validate a catalog file.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    path = Path(path)
    return parse_catalog(_read_document(path), source=str(path))
