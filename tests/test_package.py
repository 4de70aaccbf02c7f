"""Tests for the package entry points."""

import pytest

import tooltunnel
from tooltunnel.catalog import load_catalog
from tooltunnel.executor import ToolExecutor


class TestLazyExports:
    """Test lazy top-level imports."""

    def test_exports(self):
        assert tooltunnel.ToolExecutor is ToolExecutor
        assert tooltunnel.load_catalog is load_catalog
        assert tooltunnel.__version__

    def test_unknown_attribute(self):
        with pytest.raises(AttributeError):
            tooltunnel.not_there
