"""tooltunnel - expose local tools to remote AI agents over MCP.

The CLI loads a declarative tool catalog, connects to a relay server and
serves the Model Context Protocol on a public URL while executing every
tool call on the local machine.

Note: Imports are lazy so that ``import tooltunnel`` stays cheap for the
CLI. Use explicit imports: `from tooltunnel.catalog import load_catalog`
"""

__version__ = "0.4.0"

__all__ = ["ToolExecutor", "load_catalog", "__version__"]


def __getattr__(name: str):
    """Lazy import of the most used entry points."""
    if name == "ToolExecutor":
        from .executor import ToolExecutor

        return ToolExecutor
    if name == "load_catalog":
        from .catalog import load_catalog

        return load_catalog
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
