"""
Tool System Base Classes

This module defines the core abstractions for the tool system:
- ToolParameter: Defines tool input parameters
- Tool: Abstract base class for all tools
- ToolRegistry: Central registry for tool management
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ToolParameter(BaseModel):
    """Defines a single parameter for a tool"""
    name: str
    type: str  # "string", "number", "boolean", "object", "array"
    description: str
    required: bool = True
    default: Any = None
    items: Optional[Dict[str, Any]] = None
    enum: Optional[List[str]] = None


class Tool(ABC):
    """
    Abstract base class for all tools.

    Each tool wraps one request kind of the ast-grep pipeline:
    - ast_grep_search: structural search
    - ast_grep_replace: structural rewrite (dry run by default)
    - ast_grep_scan: rule-based scan
    - ast_grep_build_rule: render a rule document without running it
    """

    def __init__(self):
        self.name: str = ""
        self.description: str = ""
        self.parameters: List[ToolParameter] = []

    @abstractmethod
    async def execute(self, input_data: str) -> str:
        """
        Execute the tool with given input.

        Args:
            input_data: JSON object text with the tool parameters

        Returns:
            Tool execution result as JSON text

        Raises:
            ToolError: Typed pipeline failure (validation, security, ...)
        """
        pass

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert tool to dictionary format for LLM.

        Returns:
            Dict with tool metadata for LLM prompt
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": [p.model_dump(exclude_none=True) for p in self.parameters]
        }


def _build_tool_parameters_schema(tool: "Tool") -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    required: List[str] = []

    for param in tool.parameters:
        param_type = param.type if param.type in ("string", "number", "integer", "boolean", "object", "array") else "string"
        schema: Dict[str, Any] = {
            "type": param_type,
            "description": param.description
        }
        if param.default is not None:
            schema["default"] = param.default
        if param.enum:
            schema["enum"] = list(param.enum)
        if param_type == "array":
            schema["items"] = param.items or {"type": "string"}
        properties[param.name] = schema
        if param.required:
            required.append(param.name)

    parameters_schema: Dict[str, Any] = {
        "type": "object",
        "properties": properties,
        "additionalProperties": False
    }
    if required:
        parameters_schema["required"] = required

    return parameters_schema


def tool_to_openai_function(tool: "Tool") -> Dict[str, Any]:
    """
    Convert a Tool to OpenAI Chat Completions tool schema.

    Returns:
        {"type": "function", "function": {"name", "description", "parameters"}}
    """
    parameters_schema = _build_tool_parameters_schema(tool)
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": parameters_schema
        }
    }


class ToolRegistry:
    """
    Central registry for tool management.

    Provides:
    - Tool registration
    - Tool lookup by name
    """

    _tools: Dict[str, Tool] = {}

    @classmethod
    def register(cls, tool: Tool):
        """
        Register a tool in the registry.

        Raises:
            ValueError: If tool with same name already exists
        """
        if tool.name in cls._tools:
            raise ValueError(f"Tool '{tool.name}' already registered")
        cls._tools[tool.name] = tool

    @classmethod
    def get(cls, tool_name: str) -> Optional[Tool]:
        return cls._tools.get(tool_name)

    @classmethod
    def get_all(cls) -> List[Tool]:
        return list(cls._tools.values())

    @classmethod
    def clear(cls):
        """Clear all registered tools (mainly for testing)"""
        cls._tools.clear()

    @classmethod
    def list_names(cls) -> List[str]:
        return list(cls._tools.keys())
