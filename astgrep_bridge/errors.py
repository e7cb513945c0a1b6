"""
Error taxonomy for the request pipeline.

Every failure that leaves the pipeline is one of six kinds, each with a
stable machine-readable code, a recoverability flag and a remediation hint:

- ValidationError: malformed or unsafe input
- SecurityError: sandbox violation
- ResourceError: file count / size limits exceeded
- BinaryError: the ast-grep executable cannot be spawned
- TimeoutError: the engine did not finish in time
- ExecutionError: the engine ran but reported a failure

ErrorTranslator turns raw engine stderr into one of these using an
ordered table of substring rules.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Type


class ToolError(Exception):
    """Base class for all typed pipeline errors."""

    kind = "EXECUTION_ERROR"
    recoverable = True
    default_hint = "Check the request and try again."

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        details: Optional[Sequence[str]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint or self.default_hint
        self.details: List[str] = list(details or [])
        self.context: Dict[str, Any] = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "recoverable": self.recoverable,
            "hint": self.hint
        }
        if self.details:
            payload["details"] = list(self.details)
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class ValidationError(ToolError, ValueError):
    kind = "VALIDATION_ERROR"
    recoverable = True
    default_hint = "Correct the listed parameters and retry."


class SecurityError(ToolError):
    kind = "SECURITY_ERROR"
    recoverable = False
    default_hint = "Only paths inside the workspace root are allowed; pass relative paths within the project."


class ResourceError(ToolError):
    kind = "RESOURCE_ERROR"
    recoverable = True
    default_hint = "Narrow the scope with more specific paths or include globs."


class BinaryError(ToolError):
    kind = "BINARY_ERROR"
    recoverable = False
    default_hint = (
        "Install ast-grep (e.g. `npm i -g @ast-grep/cli` or `cargo install ast-grep`) "
        "or point AST_GREP_BINARY_PATH at the executable."
    )


class TimeoutError(ToolError):
    kind = "TIMEOUT_ERROR"
    recoverable = True
    default_hint = "Narrow the search paths or raise timeoutMs."


class ExecutionError(ToolError):
    kind = "EXECUTION_ERROR"
    recoverable = True
    default_hint = "Review the engine message, adjust the pattern or rule and retry."


ERROR_KINDS: Tuple[Type[ToolError], ...] = (
    ValidationError,
    SecurityError,
    ResourceError,
    BinaryError,
    TimeoutError,
    ExecutionError
)


# (lowercase substrings, error class, message template, hint)
# Rows are tried in order; the first row with any matching substring wins.
TranslationRule = Tuple[Tuple[str, ...], Type[ToolError], str, str]

DEFAULT_TRANSLATION_RULES: Tuple[TranslationRule, ...] = (
    (
        ("command not found", "is not recognized as an internal or external command"),
        BinaryError,
        "ast-grep executable could not be started: {detail}",
        BinaryError.default_hint
    ),
    (
        ("timed out", "timeout"),
        TimeoutError,
        "ast-grep timed out in workspace {workspace}: {detail}",
        TimeoutError.default_hint
    ),
    (
        ("out of memory", "memory allocation", "cannot allocate memory", "too many open files"),
        ResourceError,
        "ast-grep ran out of resources in workspace {workspace}: {detail}",
        ResourceError.default_hint
    ),
    (
        ("no such file or directory", "cannot find the path", "file not found", "path does not exist"),
        ExecutionError,
        "File or directory not found in workspace {workspace}: {detail}",
        "Paths are resolved relative to the workspace root; check spelling and that the file exists."
    ),
    (
        ("permission denied", "access is denied", "operation not permitted"),
        ExecutionError,
        "Permission denied while reading files in workspace {workspace}: {detail}",
        "Check file permissions or exclude the unreadable paths."
    ),
    (
        ("yaml", "cannot parse rule", "rule file", "invalid rule"),
        ExecutionError,
        "Rule definition is invalid: {detail}",
        "Check the rule YAML: it needs id, language and a rule with at least one pattern."
    ),
    (
        ("language", "unsupported lang", "unknown lang"),
        ExecutionError,
        "Language is not supported or does not match the files: {detail}",
        "Use a supported language such as javascript, typescript, python, rust, go, java or cpp."
    ),
    (
        ("constraint", "metavariable", "meta variable"),
        ExecutionError,
        "Metavariable or constraint error: {detail}",
        "Metavariables look like $NAME or $$$ARGS and constraints must reference names used in the pattern."
    ),
    (
        ("invalid utf-8", "stream did not contain valid utf-8", "encoding"),
        ExecutionError,
        "Input could not be decoded as UTF-8: {detail}",
        "Exclude binary or non UTF-8 files with exclude globs."
    ),
    (
        ("parse", "syntax", "pattern"),
        ExecutionError,
        "Pattern could not be parsed: {detail}",
        "Make sure the pattern is valid code in the target language, e.g. console.log($ARG)."
    ),
)


class ErrorTranslator:
    """
    Map raw engine stderr onto the error taxonomy.

    Unmatched messages are passed through with the workspace appended so
    that nothing is swallowed.
    """

    def __init__(self, rules: Sequence[TranslationRule] = DEFAULT_TRANSLATION_RULES):
        self.rules = tuple(rules)

    def match(self, stderr: str) -> Optional[TranslationRule]:
        lowered = (stderr or "").lower()
        for rule in self.rules:
            substrings = rule[0]
            if any(token in lowered for token in substrings):
                return rule
        return None

    def translate(self, stderr: str, workspace: str = "", exit_code: Optional[int] = None) -> ToolError:
        detail = _first_meaningful_line(stderr) or f"ast-grep exited with code {exit_code}"
        context: Dict[str, Any] = {"workspace": workspace}
        if exit_code is not None:
            context["exitCode"] = exit_code
        raw = (stderr or "").strip()
        details = [raw] if raw and raw != detail else []

        rule = self.match(stderr)
        if rule is None:
            message = f"{detail} (workspace: {workspace})" if workspace else detail
            return ExecutionError(message, details=details, context=context)

        _, error_cls, template, hint = rule
        message = template.format(detail=detail, workspace=workspace or "<unknown>")
        return error_cls(message, hint=hint, details=details, context=context)


def _first_meaningful_line(text: str) -> str:
    for line in (text or "").splitlines():
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


def translate_exception(exc: BaseException, workspace: str = "") -> ToolError:
    """Wrap any exception into a typed ToolError."""
    if isinstance(exc, ToolError):
        return exc
    context = {"workspace": workspace} if workspace else {}
    if isinstance(exc, FileNotFoundError):
        return ExecutionError(
            f"File or directory not found: {exc}",
            hint="Paths are resolved relative to the workspace root; check that the file exists.",
            context=context
        )
    if isinstance(exc, PermissionError):
        return SecurityError(f"Permission denied: {exc}", context=context)
    if isinstance(exc, MemoryError):
        return ResourceError("Out of memory while processing the request.", context=context)
    message = str(exc) or exc.__class__.__name__
    if workspace:
        message = f"{message} (workspace: {workspace})"
    return ExecutionError(message, context=context)
