"""
MCP protocol handling.

Usage:
    from tooltunnel.mcp import McpSession

    session = McpSession(store, executor)
    response = await session.handle(message)
"""

from tooltunnel.mcp.session import McpSession, SessionState, call_result
from tooltunnel.mcp.validation import validate_arguments

__all__ = ["McpSession", "SessionState", "call_result", "validate_arguments"]
