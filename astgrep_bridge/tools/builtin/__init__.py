"""
Built-in Tools

This module provides the ast-grep tools that are included by default:
- AstSearchTool: structural search
- AstReplaceTool: structural rewrite with dry-run preview
- AstScanTool: rule scan
- AstBuildRuleTool: rule generation
"""

from ..base import ToolRegistry
from ...config import is_tool_enabled
from .ast_grep_tools import AstBuildRuleTool, AstReplaceTool, AstScanTool, AstSearchTool


def register_builtin_tools():
    """Register all built-in tools in the registry"""
    for tool in (AstSearchTool(), AstReplaceTool(), AstScanTool(), AstBuildRuleTool()):
        if is_tool_enabled(tool.name) and ToolRegistry.get(tool.name) is None:
            ToolRegistry.register(tool)


__all__ = [
    "AstSearchTool",
    "AstReplaceTool",
    "AstScanTool",
    "AstBuildRuleTool",
    "register_builtin_tools"
]
