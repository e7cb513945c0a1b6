from contextvars import ContextVar, Token
from typing import Any, Dict, Optional


_tool_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("_tool_context", default=None)


def set_tool_context(value: Optional[Dict[str, Any]]) -> Token:
    return _tool_context.set(dict(value or {}))


def reset_tool_context(token: Token) -> None:
    _tool_context.reset(token)


def get_tool_context() -> Dict[str, Any]:
    return _tool_context.get() or {}


def get_work_path() -> Optional[str]:
    work_path = get_tool_context().get("work_path")
    return str(work_path) if work_path else None
