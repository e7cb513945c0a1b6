"""
Request validation.

``RequestValidator.validate(kind, raw)`` is total over its inputs: malformed
values produce a ValidationOutcome with accumulated errors, never an
exception. Structural checks come from the pydantic request models; pattern
syntax, metavariable consistency and language inference are layered on top.
"""

import re
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .models import (
    REQUEST_MODELS,
    AnyRequest,
    ReplaceRequest,
    RuleScanRequest,
    SearchRequest,
    ValidationOutcome
)


DEFAULT_EXCLUDES = (
    "node_modules/**",
    ".git/**",
    "dist/**",
    "build/**",
    "coverage/**",
    "*.min.js",
    "*.bundle.js",
    ".next/**",
    ".vscode/**",
    ".idea/**"
)

DEFAULT_TIMEOUTS = {
    "search_ms": 30000,
    "replace_ms": 30000,
    "apply_ms": 60000,
    "scan_ms": 60000
}

LANGUAGE_ALIASES = {
    "js": "javascript",
    "jsx": "javascript",
    "javascript": "javascript",
    "ts": "typescript",
    "typescript": "typescript",
    "tsx": "tsx",
    "py": "python",
    "python": "python",
    "rs": "rust",
    "rust": "rust",
    "go": "go",
    "golang": "go",
    "java": "java",
    "kt": "kotlin",
    "kotlin": "kotlin",
    "c": "c",
    "cpp": "cpp",
    "c++": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "cs": "csharp",
    "c#": "csharp",
    "csharp": "csharp",
    "rb": "ruby",
    "ruby": "ruby",
    "php": "php",
    "swift": "swift",
    "scala": "scala",
    "lua": "lua",
    "html": "html",
    "css": "css",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "bash": "bash",
    "sh": "bash"
}

DANGEROUS_FRAGMENTS = ("rm -rf", "del /f", "format c:", "> /dev/null")

_DOLLAR_VARIABLE_LANGUAGES = frozenset({"php", "bash"})

TIMEOUT_RANGE = (1000, 180000)

_BRACKET_PAIRS = {")": "(", "]": "[", "}": "{"}

_INVALID_METAVAR = re.compile(r"(?<!\$)\$([a-z][a-zA-Z0-9_]*)")
_INCOMPLETE_MULTI = re.compile(r"(?<!\$)\$\$(?!\$)([A-Za-z_][A-Za-z0-9_]*)")
_MULTI_METAVAR = re.compile(r"\$\$\$([A-Z_][A-Z0-9_]*)")
_SINGLE_METAVAR = re.compile(r"(?<!\$)\$([A-Z_][A-Z0-9_]*)")

_JS_KEYWORDS = re.compile(r"\b(function|const|let|var|import|export|class|interface|type)\b|=>|console\.")
_TS_HINTS = re.compile(r"\binterface\b|\btype\s+[A-Z$]|:\s*(string|number|boolean|any|void)\b")
_PY_STRONG = re.compile(
    r"^\s*(async\s+)?def\s|\bself\.|^\s*(class|if|elif|for|while|with|try|except)\b[^{};]*:\s*(\$\$\$[A-Z_]*)?\s*$",
    re.MULTILINE
)
_PY_KEYWORDS = re.compile(r"^\s*(import|from|print|lambda|elif)\b")
_JAVA_KEYWORDS = re.compile(r"\b(public|private|protected|static|void|System\.out)\b")
_RUST_KEYWORDS = re.compile(r"\b(fn|impl|trait|struct|enum|use|mod|let mut|println!)\b")
_GO_KEYWORDS = re.compile(r"\b(func|package|defer|go func|chan)\b|:=")
_CPP_KEYWORDS = re.compile(r"#include|\bstd::|\btemplate\s*<|\bcout\b")


def normalize_language(language: Optional[str]) -> Optional[str]:
    if language is None:
        return None
    key = str(language).strip().lower()
    if not key:
        return None
    return LANGUAGE_ALIASES.get(key, key)


def language_from_filename(name: str) -> Optional[str]:
    """Language for a file name's extension, when it is one ast-grep knows."""
    suffix = PurePosixPath(name.replace("\\", "/")).suffix.lstrip(".").lower()
    return LANGUAGE_ALIASES.get(suffix) if suffix else None


def extract_metavariables(text: str) -> Set[str]:
    """Named metavariables in ``text`` (single and multi form), without sigils."""
    if not text:
        return set()
    names: Set[str] = set()
    stripped = text
    for match in _MULTI_METAVAR.finditer(text):
        names.add(match.group(1))
    stripped = _MULTI_METAVAR.sub(" ", stripped)
    for match in _SINGLE_METAVAR.finditer(stripped):
        names.add(match.group(1))
    return {name for name in names if not name.startswith("_")}


def check_brackets(pattern: str) -> Optional[str]:
    stack: List[Tuple[str, int]] = []
    for index, char in enumerate(pattern):
        if char in "([{":
            stack.append((char, index))
        elif char in _BRACKET_PAIRS:
            if not stack or stack[-1][0] != _BRACKET_PAIRS[char]:
                return f"Unbalanced '{char}' at position {index} in pattern"
            stack.pop()
    if stack:
        char, index = stack[-1]
        return f"Unclosed '{char}' at position {index} in pattern"
    return None


def check_metavariable_syntax(text: str, field: str = "pattern") -> List[str]:
    errors: List[str] = []
    for match in _INVALID_METAVAR.finditer(text):
        name = match.group(1)
        errors.append(
            f"Invalid metavariable '${name}' in {field}: metavariables must start with an uppercase "
            f"letter or underscore (did you mean '${name.upper()}'?)"
        )
    for match in _INCOMPLETE_MULTI.finditer(text):
        name = match.group(1)
        errors.append(
            f"Incomplete multi-node metavariable '$${name}' in {field}: use three sigils, e.g. '$$${name.upper()}'"
        )
    return errors


def check_pattern_syntax(pattern: str, field: str = "pattern", language: Optional[str] = None) -> List[str]:
    errors: List[str] = []
    lowered = pattern.lower()
    for fragment in DANGEROUS_FRAGMENTS:
        if fragment in lowered:
            errors.append(f"{field} contains a potentially dangerous fragment: '{fragment}'")

    bracket_error = check_brackets(pattern)
    if bracket_error:
        errors.append(bracket_error.replace("in pattern", f"in {field}"))

    # Lowercase $name is ordinary syntax in these languages.
    if language not in _DOLLAR_VARIABLE_LANGUAGES:
        errors.extend(check_metavariable_syntax(pattern, field))
    return errors


def infer_language(pattern: str) -> Optional[str]:
    """Guess the language of a pattern from distinguishing keywords and punctuation."""
    if not pattern:
        return None
    if _PY_STRONG.search(pattern):
        return "python"
    if _CPP_KEYWORDS.search(pattern):
        return "cpp"
    if _JAVA_KEYWORDS.search(pattern):
        return "java"
    if _RUST_KEYWORDS.search(pattern):
        return "rust"
    if _GO_KEYWORDS.search(pattern):
        return "go"
    if _JS_KEYWORDS.search(pattern):
        if _TS_HINTS.search(pattern):
            return "typescript"
        return "javascript"
    if _PY_KEYWORDS.search(pattern):
        return "python"
    return None


def language_warnings(pattern: str, language: Optional[str]) -> List[str]:
    warnings: List[str] = []
    if not language:
        return warnings
    text = pattern.strip()
    if language in ("javascript", "typescript", "tsx") and text.startswith("function") and "(" not in text:
        warnings.append("JavaScript function patterns usually need parentheses, e.g. 'function $NAME($$$PARAMS) { $$$BODY }'")
    if language == "python" and text.startswith("def ") and ":" not in text:
        warnings.append("Python def patterns need a colon, e.g. 'def $NAME($$$PARAMS): $$$BODY'")
    if language == "java" and text.startswith("public ") and "(" not in text and "class" not in text:
        warnings.append("Java method patterns usually need parentheses, e.g. 'public $TYPE $NAME($$$PARAMS)'")
    return warnings


def _format_pydantic_error(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "__root__")
    message = error.get("msg", "invalid value")
    if location:
        return f"{location}: {message}"
    return str(message)


def _as_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _format_names(names: Iterable[str]) -> str:
    return ", ".join(f"${name}" for name in sorted(names))


class RequestValidator:
    """Validate and sanitize raw request objects for one request kind."""

    def __init__(self, timeouts: Optional[Mapping[str, int]] = None):
        merged = dict(DEFAULT_TIMEOUTS)
        if timeouts:
            for key, value in timeouts.items():
                if key in merged:
                    merged[key] = min(max(int(value), TIMEOUT_RANGE[0]), TIMEOUT_RANGE[1])
        self.timeouts = merged

    def validate(self, kind: str, raw: Union[Mapping[str, Any], BaseModel, None]) -> ValidationOutcome:
        model_cls = REQUEST_MODELS.get(kind)
        if model_cls is None:
            return ValidationOutcome(False, errors=[f"Unknown request kind: {kind!r}"])

        if isinstance(raw, BaseModel):
            raw = raw.model_dump(by_alias=True)
        if not isinstance(raw, Mapping):
            return ValidationOutcome(False, errors=["Request must be an object"])

        data: Dict[str, Any] = dict(raw)
        data.pop("kind", None)
        for key in ("pattern", "replacement"):
            if isinstance(data.get(key), str):
                data[key] = data[key].strip()

        pattern = data.get("pattern")
        if kind != "scan" or pattern is not None:
            if not isinstance(pattern, str) or not pattern:
                # Structural precondition: nothing else is meaningful without a pattern.
                return ValidationOutcome(False, errors=["pattern is required and must be a non-empty string"])

        errors: List[str] = []
        warnings: List[str] = []
        if isinstance(pattern, str):
            errors.extend(check_pattern_syntax(pattern, language=normalize_language(_as_text(data.get("language")))))

        try:
            request = model_cls.model_validate(data)
        except PydanticValidationError as exc:
            errors.extend(_format_pydantic_error(item) for item in exc.errors())
            return ValidationOutcome(False, errors=errors, warnings=warnings)

        updates: Dict[str, Any] = {}
        self._check_common(request, updates, errors, warnings)
        if isinstance(request, ReplaceRequest):
            self._check_replace(request, updates, errors, warnings)
        elif isinstance(request, RuleScanRequest):
            self._check_scan(request, updates, errors, warnings)
        self._apply_timeout_default(request, updates)

        if errors:
            return ValidationOutcome(False, errors=errors, warnings=warnings)
        sanitized = request.model_copy(update=updates)
        return ValidationOutcome(True, errors=[], warnings=warnings, sanitized=sanitized)

    def _check_common(self, request: AnyRequest, updates: Dict[str, Any], errors: List[str], warnings: List[str]) -> None:
        language = normalize_language(request.language)
        pattern = request.pattern or ""
        if language is None and request.code is not None and request.stdin_filepath:
            from_name = language_from_filename(request.stdin_filepath)
            if from_name:
                language = from_name
                warnings.append(f"No language specified; inferred '{from_name}' from stdinFilepath.")
        if language is None and pattern:
            inferred = infer_language(pattern)
            if inferred:
                language = inferred
                warnings.append(
                    f"No language specified; inferred '{inferred}' from the pattern. "
                    "Provide a language hint for more reliable matching."
                )
            elif request.code is None:
                warnings.append(
                    "No language specified; ast-grep will infer it from file extensions. "
                    "Provide a language hint for more reliable matching."
                )
        if language != request.language:
            updates["language"] = language
        warnings.extend(language_warnings(pattern, language))

        if request.code is not None:
            if not request.code.strip():
                errors.append("code must not be empty when provided")
            if request.stdin_filepath is not None and (not request.stdin_filepath.strip() or "\x00" in request.stdin_filepath):
                errors.append("stdinFilepath must be a non-empty file name")
            if not language:
                errors.append("language is required when code is provided (could not infer it from the pattern)")
            if request.paths:
                warnings.append("Ignoring paths since code is provided")
                updates["paths"] = []
            elif request.paths is None:
                updates["paths"] = []
        else:
            if request.stdin_filepath is not None:
                warnings.append("Ignoring stdinFilepath since no code is provided")
                updates["stdin_filepath"] = None
            if not request.paths:
                updates["paths"] = ["."]
            for item in request.paths or []:
                if not item or not item.strip():
                    errors.append("paths must not contain empty entries")
                elif "\x00" in item:
                    errors.append(f"paths entry contains a NUL byte: {item!r}")

        for name in ("include", "exclude", "ignore_path"):
            values = getattr(request, name) or []
            if any(not value or not value.strip() for value in values):
                errors.append(f"{name} must not contain empty entries")
        if request.exclude is None:
            updates["exclude"] = list(DEFAULT_EXCLUDES)

    def _check_replace(self, request: ReplaceRequest, updates: Dict[str, Any], errors: List[str], warnings: List[str]) -> None:
        if normalize_language(request.language) not in _DOLLAR_VARIABLE_LANGUAGES:
            errors.extend(check_metavariable_syntax(request.replacement, field="replacement"))
        pattern_vars = extract_metavariables(request.pattern)
        replacement_vars = extract_metavariables(request.replacement)
        undefined = replacement_vars - pattern_vars
        if undefined:
            available = _format_names(pattern_vars) if pattern_vars else "(none)"
            errors.append(
                f"Replacement uses metavariables not defined in pattern: {_format_names(undefined)}. "
                f"Available from pattern: {available}"
            )
        unused = pattern_vars - replacement_vars
        if unused:
            warnings.append(f"Pattern metavariables not used in replacement (they will be dropped): {_format_names(unused)}")
        if request.code is not None and not request.dry_run:
            errors.append("dryRun must be true when code is provided; inline code cannot be written back")
        if request.dry_run and request.interactive:
            warnings.append("interactive has no effect during a dry run")

    def _check_scan(self, request: RuleScanRequest, updates: Dict[str, Any], errors: List[str], warnings: List[str]) -> None:
        if request.rule_file:
            if request.pattern:
                warnings.append("ruleFile is provided; pattern and structured rule fields are ignored")
            return
        if not request.pattern:
            errors.append("Either ruleFile or pattern is required for a scan")
            return
        if not re.match(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$", request.id):
            errors.append("id must contain only letters, digits, '.', '_' or '-' and start with a letter or digit")
        language = updates.get("language", request.language)
        if not language:
            errors.append("language is required to build a rule (could not infer it from the pattern)")
        for field in ("inside_pattern", "has_pattern", "not_pattern", "fix"):
            value = getattr(request, field)
            if value is not None and not value.strip():
                errors.append(f"{field} must not be empty when provided")
            elif value and field != "fix":
                errors.extend(check_pattern_syntax(value, field=field, language=language))
        pattern_vars = extract_metavariables(request.pattern)
        for constraint in request.where or []:
            name = constraint.metavariable.lstrip("$")
            if name not in pattern_vars:
                errors.append(f"where constraint references ${name}, which is not in the pattern")
            if not any((constraint.regex, constraint.not_regex, constraint.equals, constraint.includes)):
                errors.append(f"where constraint for ${name} needs regex, notRegex, equals or includes")
            for label, expression in (("regex", constraint.regex), ("notRegex", constraint.not_regex)):
                if expression is None:
                    continue
                try:
                    re.compile(expression)
                except re.error as exc:
                    errors.append(f"where constraint {label} for ${name} is not a valid regular expression: {exc}")
        if request.fix:
            undefined = extract_metavariables(request.fix) - pattern_vars
            if undefined:
                errors.append(f"fix uses metavariables not defined in pattern: {_format_names(undefined)}")

    def _apply_timeout_default(self, request: AnyRequest, updates: Dict[str, Any]) -> None:
        if request.timeout_ms is not None:
            return
        if isinstance(request, SearchRequest):
            updates["timeout_ms"] = self.timeouts["search_ms"]
        elif isinstance(request, ReplaceRequest):
            updates["timeout_ms"] = self.timeouts["replace_ms"] if request.dry_run else self.timeouts["apply_ms"]
        else:
            updates["timeout_ms"] = self.timeouts["scan_ms"]
