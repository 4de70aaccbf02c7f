"""
Tool catalog.

Usage:
    from tooltunnel.catalog import load_catalog

    catalog = load_catalog("tools.yaml")
    tool = catalog.lookup("echo")
"""

from tooltunnel.catalog.catalog import Catalog, CatalogStore
from tooltunnel.catalog.loader import load_catalog, parse_catalog
from tooltunnel.catalog.models import (
    HttpExecution,
    ParameterSpec,
    ParameterType,
    ShellExecution,
    ToolDefinition,
)

__all__ = [
    "Catalog",
    "CatalogStore",
    "HttpExecution",
    "ParameterSpec",
    "ParameterType",
    "ShellExecution",
    "ToolDefinition",
    "load_catalog",
    "parse_catalog",
]
