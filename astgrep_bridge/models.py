from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


RequestKind = Literal["search", "replace", "scan"]
JsonStyle = Literal["stream", "pretty", "compact"]
SeverityFilter = Literal["error", "warning", "info", "all"]
RuleSeverity = Literal["error", "warning", "info"]
OutputFormat = Literal["json", "text", "github"]
FindingSeverity = Literal["error", "warning", "info"]


class _RequestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore"
    )


class _CommonRequest(_RequestModel):
    code: Optional[str] = None
    stdin_filepath: Optional[str] = None
    paths: Optional[List[str]] = None
    language: Optional[str] = None
    include: Optional[List[str]] = None
    exclude: Optional[List[str]] = None
    no_ignore: bool = False
    ignore_path: Optional[List[str]] = None
    root: Optional[str] = None
    workdir: Optional[str] = None
    follow: bool = False
    threads: Optional[int] = Field(default=None, ge=1, le=64)
    timeout_ms: Optional[int] = Field(default=None, ge=1000, le=180000)
    relative_paths: bool = False


class SearchRequest(_CommonRequest):
    kind: Literal["search"] = "search"
    pattern: str
    context: int = Field(default=3, ge=0, le=10)
    max_matches: int = Field(default=100, ge=1, le=10000)
    per_file_match_limit: Optional[int] = Field(default=None, ge=1, le=1000)
    json_style: JsonStyle = "stream"


class ReplaceRequest(_CommonRequest):
    kind: Literal["replace"] = "replace"
    pattern: str
    replacement: str
    dry_run: bool = True
    interactive: bool = False


class WhereConstraint(_RequestModel):
    metavariable: str
    regex: Optional[str] = None
    not_regex: Optional[str] = None
    equals: Optional[str] = None
    includes: Optional[str] = None


class RuleScanRequest(_CommonRequest):
    kind: Literal["scan"] = "scan"
    pattern: Optional[str] = None
    rule_file: Optional[str] = None
    id: str = "inline-rule"
    message: Optional[str] = None
    rule_severity: RuleSeverity = "warning"
    rule_kind: Optional[str] = None
    inside_pattern: Optional[str] = None
    has_pattern: Optional[str] = None
    not_pattern: Optional[str] = None
    where: Optional[List[WhereConstraint]] = None
    fix: Optional[str] = None
    save_to: Optional[str] = None
    severity: SeverityFilter = "all"
    rule_ids: Optional[List[str]] = None
    format: OutputFormat = "json"
    json_style: JsonStyle = "stream"


AnyRequest = Union[SearchRequest, ReplaceRequest, RuleScanRequest]

REQUEST_MODELS = {
    "search": SearchRequest,
    "replace": ReplaceRequest,
    "scan": RuleScanRequest
}


class _ResultModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Position(_ResultModel):
    line: int
    column: int


class Span(_ResultModel):
    start: Position
    end: Position


class Capture(_ResultModel):
    name: str
    text: str
    span: Optional[Span] = None


class Match(_ResultModel):
    file: str
    line: int = Field(ge=1)
    column: int = 0
    end_line: Optional[int] = None
    end_column: Optional[int] = None
    text: str = ""
    context_before: List[str] = Field(default_factory=list)
    context_after: List[str] = Field(default_factory=list)
    captures: Optional[List[Capture]] = None


class Change(_ResultModel):
    file: str
    match_count: int = Field(ge=1)
    unified_preview: Optional[str] = None
    applied: bool = False


class Finding(_ResultModel):
    rule_id: str = "unknown"
    severity: FindingSeverity = "info"
    message: str = ""
    file: str = "unknown"
    line: int = Field(default=1, ge=1)
    column: int = 0
    fix: Optional[str] = None


@dataclass
class ValidationOutcome:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized: Optional[AnyRequest] = None


@dataclass(frozen=True)
class ExecutionOptions:
    cwd: str
    timeout_ms: int
    stdin: Optional[str] = None


@dataclass
class ExecutionResult:
    stdout: str
    stderr: str
    returncode: int
    duration_ms: int
