import json
from typing import Any, Dict, List

from ...errors import ValidationError
from ...pipeline import get_pipeline
from ..base import Tool, ToolParameter
from ..context import get_work_path


def _parse_json_input(input_data: str) -> Dict[str, Any]:
    if not input_data or not input_data.strip():
        return {}
    try:
        data = json.loads(input_data)
    except ValueError as exc:
        raise ValidationError(f"Tool input is not valid JSON: {exc}")
    if not isinstance(data, dict):
        raise ValidationError("Tool input must be a JSON object")
    return data


def _dump(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False)


def _common_parameters() -> List[ToolParameter]:
    return [
        ToolParameter(
            name="paths",
            type="array",
            description="Files or directories to search, relative to the workspace root. Defaults to the root.",
            required=False
        ),
        ToolParameter(
            name="code",
            type="string",
            description="Inline source code to operate on instead of files. Requires language.",
            required=False
        ),
        ToolParameter(
            name="stdinFilepath",
            type="string",
            description="Virtual file name for inline code; reported as the match file and used to infer the language.",
            required=False
        ),
        ToolParameter(
            name="language",
            type="string",
            description="Language of the pattern (javascript, typescript, python, rust, go, java, cpp, ...).",
            required=False
        ),
        ToolParameter(
            name="include",
            type="array",
            description="Glob patterns of files to include.",
            required=False
        ),
        ToolParameter(
            name="exclude",
            type="array",
            description="Glob patterns of files to exclude. Defaults to build, dependency and VCS directories.",
            required=False
        ),
        ToolParameter(
            name="timeoutMs",
            type="integer",
            description="Timeout in milliseconds (1000-180000).",
            required=False
        ),
        ToolParameter(
            name="threads",
            type="integer",
            description="Engine thread count (1-64).",
            required=False
        ),
        ToolParameter(
            name="relativePaths",
            type="boolean",
            description="Report file paths relative to the workspace root.",
            required=False,
            default=False
        )
    ]


class AstSearchTool(Tool):
    def __init__(self):
        super().__init__()
        self.name = "ast_grep_search"
        self.description = (
            "Structural code search with ast-grep. Patterns are code with metavariables: "
            "$NAME captures one node, $$$ARGS captures a sequence. Example: console.log($ARG)."
        )
        self.parameters = [
            ToolParameter(
                name="pattern",
                type="string",
                description="ast-grep pattern, e.g. 'console.log($ARG)'.",
                required=True
            ),
            *_common_parameters(),
            ToolParameter(
                name="context",
                type="integer",
                description="Lines of context around each match (0-10).",
                required=False,
                default=3
            ),
            ToolParameter(
                name="maxMatches",
                type="integer",
                description="Maximum matches to return (1-10000).",
                required=False,
                default=100
            ),
            ToolParameter(
                name="perFileMatchLimit",
                type="integer",
                description="Maximum matches per file (1-1000).",
                required=False
            )
        ]

    async def execute(self, input_data: str) -> str:
        data = _parse_json_input(input_data)
        result = await get_pipeline(get_work_path()).execute("search", data)
        return _dump(result)


class AstReplaceTool(Tool):
    def __init__(self):
        super().__init__()
        self.name = "ast_grep_replace"
        self.description = (
            "Structural find-and-replace with ast-grep. Dry run by default: returns a diff preview per file. "
            "Set dryRun to false to apply; touched files are backed up under .ast-grep-backups first."
        )
        self.parameters = [
            ToolParameter(
                name="pattern",
                type="string",
                description="ast-grep pattern to match, e.g. 'var $NAME = $VALUE'.",
                required=True
            ),
            ToolParameter(
                name="replacement",
                type="string",
                description="Rewrite template using the pattern's metavariables, e.g. 'let $NAME = $VALUE'.",
                required=True
            ),
            *_common_parameters(),
            ToolParameter(
                name="dryRun",
                type="boolean",
                description="Preview only (default true).",
                required=False,
                default=True
            )
        ]

    async def execute(self, input_data: str) -> str:
        data = _parse_json_input(input_data)
        result = await get_pipeline(get_work_path()).execute("replace", data)
        return _dump(result)


def _rule_parameters() -> List[ToolParameter]:
    return [
        ToolParameter(
            name="pattern",
            type="string",
            description="Main pattern of the rule.",
            required=False
        ),
        ToolParameter(
            name="id",
            type="string",
            description="Rule id.",
            required=False,
            default="inline-rule"
        ),
        ToolParameter(
            name="message",
            type="string",
            description="Message reported for each finding.",
            required=False
        ),
        ToolParameter(
            name="ruleSeverity",
            type="string",
            description="Severity of the generated rule.",
            required=False,
            default="warning",
            enum=["error", "warning", "info"]
        ),
        ToolParameter(
            name="ruleKind",
            type="string",
            description="Restrict matches to this tree-sitter node kind, e.g. call_expression.",
            required=False
        ),
        ToolParameter(
            name="insidePattern",
            type="string",
            description="Only match inside nodes matching this pattern.",
            required=False
        ),
        ToolParameter(
            name="hasPattern",
            type="string",
            description="Only match nodes containing this pattern.",
            required=False
        ),
        ToolParameter(
            name="notPattern",
            type="string",
            description="Exclude nodes matching this pattern.",
            required=False
        ),
        ToolParameter(
            name="where",
            type="array",
            description="Metavariable constraints: {metavariable, regex?, notRegex?, equals?, includes?}.",
            required=False,
            items={"type": "object"}
        ),
        ToolParameter(
            name="fix",
            type="string",
            description="Suggested fix template.",
            required=False
        ),
        ToolParameter(
            name="saveTo",
            type="string",
            description="Workspace path to save the generated rule (.yml appended when missing).",
            required=False
        )
    ]


class AstScanTool(Tool):
    def __init__(self):
        super().__init__()
        self.name = "ast_grep_scan"
        self.description = (
            "Run an ast-grep rule over the workspace: either an existing rule file (ruleFile) "
            "or a rule built from pattern, insidePattern, hasPattern, notPattern, where and fix."
        )
        self.parameters = [
            ToolParameter(
                name="ruleFile",
                type="string",
                description="Path to an existing rule YAML file inside the workspace.",
                required=False
            ),
            *_rule_parameters(),
            *_common_parameters(),
            ToolParameter(
                name="severity",
                type="string",
                description="Only report findings of this severity.",
                required=False,
                default="all",
                enum=["error", "warning", "info", "all"]
            ),
            ToolParameter(
                name="ruleIds",
                type="array",
                description="Only report findings of these rule ids.",
                required=False
            ),
            ToolParameter(
                name="format",
                type="string",
                description="Engine output format.",
                required=False,
                default="json",
                enum=["json", "text", "github"]
            )
        ]

    async def execute(self, input_data: str) -> str:
        data = _parse_json_input(input_data)
        result = await get_pipeline(get_work_path()).execute("scan", data)
        return _dump(result)


class AstBuildRuleTool(Tool):
    def __init__(self):
        super().__init__()
        self.name = "ast_grep_build_rule"
        self.description = (
            "Generate an ast-grep rule YAML from structured fields and save it "
            "(saveTo, or .tree-ast-grep/rules/<id>.yml). Does not run a scan."
        )
        self.parameters = [
            *_rule_parameters(),
            ToolParameter(
                name="language",
                type="string",
                description="Rule language; inferred from the pattern when omitted.",
                required=False
            )
        ]

    async def execute(self, input_data: str) -> str:
        data = _parse_json_input(input_data)
        result = get_pipeline(get_work_path()).build_rule(data)
        return _dump(result)
