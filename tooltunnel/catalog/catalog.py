"""Tool catalog: ordered, name-keyed, immutable collection of tools."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from tooltunnel.catalog.models import ToolDefinition
from tooltunnel.exceptions import ConfigError, NotFoundError

logger = logging.getLogger(__name__)


class Catalog:
    """
    Read-only set of tool definitions in declaration order.

    The ``tools/list`` payload is computed once at construction, so every
    call to ``list()`` returns identical content. Instances are never
    mutated; hot reload replaces the whole catalog (see ``CatalogStore``).

    Example:
        >>> catalog = Catalog([echo_tool])
        >>> catalog.lookup("echo").description
        'Echo a message'
        >>> [t["name"] for t in catalog.list()]
        ['echo']
    """

    def __init__(self, tools: Iterable[ToolDefinition]):
        """
        Build a catalog.

        Args:
            tools: Tool definitions in declaration order

        Raises:
            ConfigError: If a tool name is declared twice
        """
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ConfigError(
                    f"Duplicate tool name '{tool.name}'", details={"tool": tool.name}
                )
            self._tools[tool.name] = tool
        self._listing = [tool.to_mcp() for tool in self._tools.values()]

    def lookup(self, name: str) -> ToolDefinition:
        """
        Find a tool by name.

        Raises:
            NotFoundError: If no tool has that name
        """
        tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"Unknown tool '{name}'", details={"tool": name})
        return tool

    def list(self) -> list[dict[str, Any]]:
        """Return ``{name, description, inputSchema}`` entries in declaration order."""
        return copy.deepcopy(self._listing)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools


CatalogListener = Callable[[Catalog], None]


class CatalogStore:
    """Holds the current catalog and announces replacements.

    Readers take ``store.current`` once per operation, so an in-flight call
    keeps using the catalog it started with.
    """

    def __init__(self, catalog: Catalog):
        self._current = catalog
        self._listeners: list[CatalogListener] = []

    @property
    def current(self) -> Catalog:
        return self._current

    def replace(self, catalog: Catalog) -> None:
        """Swap in a new catalog and notify listeners."""
        self._current = catalog
        logger.info(f"Catalog replaced ({len(catalog)} tools)")
        for listener in list(self._listeners):
            try:
                listener(catalog)
            except Exception:
                logger.exception("Catalog listener failed")

    def subscribe(self, listener: CatalogListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
