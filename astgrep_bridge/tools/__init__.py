"""Tools package initialization"""

from .base import Tool, ToolParameter, ToolRegistry

__all__ = ["Tool", "ToolParameter", "ToolRegistry"]
