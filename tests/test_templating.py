"""Tests for the template renderer."""

import pytest

from tooltunnel.exceptions import ErrorKind, TemplateError
from tooltunnel.templating import (
    find_malformed,
    format_value,
    iter_strings,
    render,
    render_structure,
    template_parameters,
)


class TestRender:
    """Test render()."""

    def test_parameters_and_environment(self):
        result = render("echo {{msg}} from ${USER}", {"msg": "hi"}, {"USER": "ada"})
        assert result == "echo hi from ada"

    def test_whitespace_inside_braces(self):
        assert render("{{ msg }}", {"msg": "x"}, {}) == "x"

    def test_missing_required_parameter(self):
        with pytest.raises(TemplateError) as exc_info:
            render("echo {{msg}}", {}, {})
        assert exc_info.value.kind is ErrorKind.TEMPLATE
        assert exc_info.value.field == "msg"

    def test_optional_parameter_renders_empty(self):
        assert render("ls {{path}}", {}, {}, optional=["path"]) == "ls "

    def test_missing_environment_variable(self):
        with pytest.raises(TemplateError) as exc_info:
            render("curl ${TOKEN}", {}, {})
        assert exc_info.value.details["env"] == "TOKEN"

    def test_environment_read_at_render_time(self):
        env = {"STAGE": "dev"}
        assert render("${STAGE}", {}, env) == "dev"
        env["STAGE"] = "prod"
        assert render("${STAGE}", {}, env) == "prod"

    def test_escaped_dollar_brace(self):
        assert render("echo $${HOME}", {}, {}) == "echo ${HOME}"

    def test_single_pass(self):
        # Inserted values are never expanded again.
        result = render("echo {{msg}}", {"msg": "${HOME} {{other}}"}, {"HOME": "/root"})
        assert result == "echo ${HOME} {{other}}"

    def test_no_shell_quoting(self):
        assert render("echo {{msg}}", {"msg": "a; b"}, {}) == "echo a; b"


class TestFormatValue:
    """Test parameter value formatting."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (True, "true"),
            (False, "false"),
            (42, "42"),
            ("text", "text"),
            (None, ""),
            ({"a": 1}, '{"a":1}'),
            ([1, 2], "[1,2]"),
        ],
    )
    def test_format(self, value, expected):
        assert format_value(value) == expected


class TestRenderStructure:
    """Test rendering of JSON bodies."""

    def test_whole_placeholder_keeps_type(self):
        body = {"count": "{{n}}", "tags": ["{{tag}}", "x-{{tag}}"], "fixed": 1}
        result = render_structure(body, {"n": 3, "tag": "a"}, {})
        assert result == {"count": 3, "tags": ["a", "x-a"], "fixed": 1}

    def test_optional_whole_placeholder_becomes_null(self):
        assert render_structure({"v": "{{v}}"}, {}, {}, optional=["v"]) == {"v": None}

    def test_missing_required_in_structure(self):
        with pytest.raises(TemplateError):
            render_structure({"v": "{{v}}"}, {}, {})


class TestTemplateInspection:
    """Test parameter discovery and malformed placeholder detection."""

    def test_template_parameters_in_order(self):
        assert template_parameters("{{b}} {{a}} {{b}} ${ENV}") == ["b", "a"]

    def test_iter_strings(self):
        document = {"x": ["{{a}}", {"y": "{{b}}"}], "z": 1}
        assert list(iter_strings(document)) == ["{{a}}", "{{b}}"]

    def test_find_malformed(self):
        assert find_malformed("echo {{msg}}") == []
        assert find_malformed("echo {{1bad}}") == ["{{1bad}}"]
        assert find_malformed("echo {{msg") == ["{{msg"]
