"""Tests for loading catalog files."""

import json

import pytest

from tooltunnel.catalog import load_catalog, parse_catalog
from tooltunnel.exceptions import ConfigError

YAML_CATALOG = """
tools:
  - name: echo
    description: Echo a message back
    parameters:
      - {name: msg, type: string, required: true}
    shell:
      command: "echo {{msg}}"
      timeout: 5
  - name: status
    http:
      url: "https://api.test/status"
      json_extract_path: data.state
"""

TOML_CATALOG = """
[[tools]]
name = "echo"
description = "Echo a message back"
parameters = [{ name = "msg", type = "string", required = true }]

[tools.shell]
argv = ["echo", "{{msg}}"]
"""


class TestLoadCatalog:
    """Test load_catalog for each supported format."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "tools.yaml"
        path.write_text(YAML_CATALOG)
        catalog = load_catalog(path)

        assert catalog.names == ["echo", "status"]
        assert catalog.lookup("echo").execution.timeout == 5
        assert catalog.lookup("status").execution.json_extract_path == "data.state"

    def test_json(self, tmp_path):
        path = tmp_path / "tools.json"
        path.write_text(
            json.dumps({"tools": [{"name": "noop", "shell": {"command": "true"}}]})
        )
        assert load_catalog(str(path)).names == ["noop"]

    def test_toml(self, tmp_path):
        path = tmp_path / "tools.toml"
        path.write_text(TOML_CATALOG)
        tool = load_catalog(path).lookup("echo")
        assert tool.execution.argv == ["echo", "{{msg}}"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_catalog(tmp_path / "missing.yaml")

    def test_unparseable(self, tmp_path):
        path = tmp_path / "tools.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Cannot parse"):
            load_catalog(path)

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "tools.ini"
        path.write_text("")
        with pytest.raises(ConfigError, match="Unsupported"):
            load_catalog(path)


class TestParseCatalog:
    """Test document validation."""

    def test_bare_list(self):
        assert parse_catalog([{"name": "noop", "shell": {"command": "true"}}]).names == ["noop"]

    def test_missing_tools_list(self):
        with pytest.raises(ConfigError, match="'tools' list"):
            parse_catalog({"tool": []})

    def test_invalid_tool_names_the_tool(self):
        with pytest.raises(ConfigError, match="'broken'") as exc_info:
            parse_catalog({"tools": [{"name": "broken", "shell": {"command": "echo {{x}}"}}]})
        assert "undeclared" in exc_info.value.message

    def test_unnamed_tool_uses_index(self):
        with pytest.raises(ConfigError, match="#2"):
            parse_catalog({"tools": [{"name": "ok", "shell": {"command": "true"}}, {}]})

    def test_duplicate_names(self):
        tools = [{"name": "a", "shell": {"command": "true"}}] * 2
        with pytest.raises(ConfigError, match="Duplicate"):
            parse_catalog({"tools": tools})
