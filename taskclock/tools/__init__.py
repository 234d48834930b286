"""Tool-calling surface for language-model agents."""

from taskclock.tools.base import BaseTool, ToolParams, ToolResult
from taskclock.tools.registry import ToolDef, ToolRegistry
from taskclock.tools.scheduler_tools import register_scheduler_tools

__all__ = [
    "BaseTool",
    "ToolDef",
    "ToolParams",
    "ToolRegistry",
    "ToolResult",
    "register_scheduler_tools",
]
