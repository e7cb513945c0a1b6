import argparse
import json
import logging
import sys
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import get_config
from .errors import ToolError
from .tools.base import ToolRegistry, tool_to_openai_function
from .tools.builtin import register_builtin_tools
from .tools.context import reset_tool_context, set_tool_context


logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "VALIDATION_ERROR": 400,
    "SECURITY_ERROR": 403,
    "RESOURCE_ERROR": 413,
    "BINARY_ERROR": 503,
    "TIMEOUT_ERROR": 504,
    "EXECUTION_ERROR": 502
}

app = FastAPI(title="ast-grep bridge")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_builtin_tools()


@app.exception_handler(ToolError)
async def handle_tool_error(request, exc: ToolError):
    return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 500), content={"error": exc.to_dict()})


# ==================== Base routes ====================

@app.get("/")
def read_root():
    return {"status": "ast-grep bridge is running", "version": __version__}


@app.get("/config")
def get_effective_config():
    return get_config()


# ==================== Tools ====================

@app.get("/tools")
def get_tools():
    tools = ToolRegistry.get_all()
    return [tool.to_dict() for tool in tools]


@app.get("/tools/schema")
def get_tool_schemas():
    return [tool_to_openai_function(tool) for tool in ToolRegistry.get_all()]


@app.post("/tools/{tool_name}")
async def run_tool(tool_name: str, payload: Dict[str, Any] = Body(...)):
    tool = ToolRegistry.get(tool_name)
    if tool is None:
        raise HTTPException(status_code=404, detail=f"Tool not found: {tool_name}")

    data = dict(payload)
    work_path: Optional[str] = data.pop("workPath", None)
    work_path = data.pop("work_path", None) or work_path
    token = set_tool_context({"work_path": work_path})
    try:
        result_text = await tool.execute(json.dumps(data))
    finally:
        reset_tool_context(token)
    return json.loads(result_text)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="ast-grep bridge server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
    logger.info("Starting ast-grep bridge on %s:%s", args.host, args.port)
    uvicorn.run("astgrep_bridge.main:app", host=args.host, port=args.port, reload=args.reload, log_level=args.log_level)


if __name__ == "__main__":
    main()
