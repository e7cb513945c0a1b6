"""
Output normalization.

Turns the engine's stdout into canonical result lists:

- search: line-delimited JSON (or one JSON array/object) -> Match
- replace: diff-like text -> Change, via a three-state machine; applied
  runs report JSON match records or summary lines instead
- scan: line-delimited JSON findings (or text / GitHub annotations) -> Finding

Every parser is total. Unparseable input degrades to an empty or
best-effort list and is logged; it never raises.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from .models import (
    Capture,
    Change,
    Finding,
    Match,
    Position,
    ReplaceRequest,
    RuleScanRequest,
    SearchRequest,
    Span
)


logger = logging.getLogger(__name__)

ReadLines = Callable[[str], Optional[List[str]]]
Relativize = Callable[[str], str]

STDIN_FILE = "STDIN"
CHANGE_MARKER = "│"
DIAGNOSTIC_PREFIXES = ("warning:", "help:", "error:", "note:", "info:")

_TEXT_FINDING = re.compile(r"^(?P<file>.+?):(?P<line>\d+):(?P<column>\d+):\s*(?P<message>.+)$")
_GITHUB_FINDING = re.compile(
    r"^::(?P<level>error|warning|notice)\s+(?P<props>[^:]*)::(?P<message>.*)$"
)
_APPLIED_COUNT = re.compile(r"(\d+)\s+(?:changes?|matches?|replacements?)", re.IGNORECASE)
_APPLIED_SUMMARY = re.compile(r"^applied\s+(\d+)\s+(?:changes?|matches?|replacements?)\b", re.IGNORECASE)
_APPLIED_IN_FILE = re.compile(r"^(\d+)\s+(?:changes?|matches?|replacements?)\s+in\s+(.+)$", re.IGNORECASE)

DIFF_FALLBACK_WARNING = "ast-grep diff output was not in the expected format; it is reported as a single change"


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def rebase_line(value: Any) -> int:
    """Convert an engine 0-based line to a 1-based line, never below 1."""
    if value is None:
        return 1
    return max(1, _as_int(value, 0) + 1)


def _position(point: Any) -> Optional[Tuple[int, int]]:
    if not isinstance(point, dict) or point.get("line") is None:
        return None
    return rebase_line(point.get("line")), max(0, _as_int(point.get("column"), 0))


def _span(range_data: Any) -> Optional[Span]:
    if not isinstance(range_data, dict):
        return None
    start = _position(range_data.get("start"))
    end = _position(range_data.get("end"))
    if start is None:
        return None
    end = end or start
    return Span(start=Position(line=start[0], column=start[1]), end=Position(line=end[0], column=end[1]))


def iter_json_records(stdout: str) -> Iterator[Dict[str, Any]]:
    """Yield JSON objects from a whole-document or line-delimited stream."""
    text = (stdout or "").strip()
    if not text:
        return
    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
        for number, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
            except ValueError:
                logger.debug("Skipping non-JSON output line %d: %.120s", number, line)
                continue
            if isinstance(item, dict):
                yield item
            elif isinstance(item, list):
                for entry in item:
                    if isinstance(entry, dict):
                        yield entry
        return
    if isinstance(parsed, list):
        for entry in parsed:
            if isinstance(entry, dict):
                yield entry
    elif isinstance(parsed, dict):
        yield parsed


def _default_file(request: Any) -> str:
    """File name reported for records without one: the inline code name, or 'unknown'."""
    if request.code is not None:
        return request.stdin_filepath or STDIN_FILE
    return "unknown"


def _flatten(record: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    nested = record.get(key)
    if isinstance(nested, list):
        return [item for item in nested if isinstance(item, dict)]
    return [record]


def _captures(record: Dict[str, Any]) -> Optional[List[Capture]]:
    captures: List[Capture] = []
    meta = record.get("metaVariables")
    if isinstance(meta, dict):
        single = meta.get("single")
        if isinstance(single, dict):
            for name, value in single.items():
                if isinstance(value, dict):
                    captures.append(Capture(name=str(name), text=str(value.get("text", "")), span=_span(value.get("range"))))
        multi = meta.get("multi")
        if isinstance(multi, dict):
            for name, values in multi.items():
                if not isinstance(values, list):
                    continue
                nodes = [value for value in values if isinstance(value, dict)]
                if not nodes:
                    continue
                first = _span(nodes[0].get("range"))
                last = _span(nodes[-1].get("range"))
                span = Span(start=first.start, end=last.end) if first and last else None
                text = ", ".join(str(node.get("text", "")) for node in nodes)
                captures.append(Capture(name=str(name), text=text, span=span))
    elif isinstance(record.get("captures"), list):
        for item in record["captures"]:
            if isinstance(item, dict):
                captures.append(Capture(name=str(item.get("name", "")), text=str(item.get("text", "")), span=_span(item.get("range"))))
    return captures or None


@dataclass
class MatchCollection:
    matches: List[Match] = field(default_factory=list)
    truncated: bool = False
    seen: int = 0


class OutputNormalizer:
    """
    Parse engine stdout for one request.

    ``read_lines`` returns the lines of a reported file (used to synthesize
    context when the engine returns none); ``relativize`` rewrites paths
    relative to the workspace root.
    """

    def __init__(self, read_lines: Optional[ReadLines] = None, relativize: Optional[Relativize] = None):
        self.read_lines = read_lines
        self.relativize = relativize
        self.warnings: List[str] = []

    def parse(
        self,
        kind: str,
        stdout: str,
        request: Union[SearchRequest, ReplaceRequest, RuleScanRequest]
    ) -> Union[List[Match], List[Change], List[Finding]]:
        if kind == "search":
            return self.collect_matches(stdout, request).matches
        if kind == "replace":
            return self.parse_changes(stdout, request)
        if kind == "scan":
            return self.parse_findings(stdout, request)
        logger.warning("No output parser for request kind %r", kind)
        return []

    def _display_path(self, file: str, relative: bool) -> str:
        if relative and self.relativize and file != STDIN_FILE:
            try:
                return self.relativize(file)
            except (TypeError, ValueError):
                return file
        return file

    # Search

    def collect_matches(self, stdout: str, request: SearchRequest) -> MatchCollection:
        collection = MatchCollection()
        per_file: Dict[str, int] = {}
        source_cache: Dict[str, Optional[List[str]]] = {}
        default_file = _default_file(request)

        for record in iter_json_records(stdout):
            for item in _flatten(record, "matches"):
                try:
                    match = self._match_from_record(item, request, default_file, source_cache)
                except (TypeError, ValueError, KeyError, AttributeError) as exc:
                    logger.debug("Skipping malformed match record: %s", exc)
                    continue
                collection.seen += 1
                if request.per_file_match_limit:
                    count = per_file.get(match.file, 0)
                    if count >= request.per_file_match_limit:
                        collection.truncated = True
                        continue
                    per_file[match.file] = count + 1
                if len(collection.matches) >= request.max_matches:
                    collection.truncated = True
                    continue
                collection.matches.append(match)
        return collection

    def _match_from_record(
        self,
        record: Dict[str, Any],
        request: SearchRequest,
        default_file: str,
        source_cache: Dict[str, Optional[List[str]]]
    ) -> Match:
        raw_file = str(record.get("file") or record.get("path") or default_file)
        range_data = record.get("range") if isinstance(record.get("range"), dict) else {}
        start = range_data.get("start") if isinstance(range_data.get("start"), dict) else {}
        end = range_data.get("end") if isinstance(range_data.get("end"), dict) else None

        line = rebase_line(start.get("line"))
        column = max(0, _as_int(start.get("column"), 0))
        end_line = rebase_line(end.get("line")) if end and end.get("line") is not None else None
        end_column = max(0, _as_int(end.get("column"), 0)) if end and end.get("column") is not None else None

        before: List[str] = []
        after: List[str] = []
        context = record.get("context")
        if isinstance(context, dict):
            before = [str(item) for item in context.get("before") or []]
            after = [str(item) for item in context.get("after") or []]
        elif request.context > 0:
            lines = self._source_lines(raw_file, request, source_cache)
            if lines:
                first = line - 1
                last = (end_line or line) - 1
                before = lines[max(0, first - request.context):first]
                after = lines[last + 1:last + 1 + request.context]

        return Match(
            file=self._display_path(raw_file, request.relative_paths),
            line=line,
            column=column,
            end_line=end_line,
            end_column=end_column,
            text=str(record.get("text") or record.get("lines") or ""),
            context_before=before,
            context_after=after,
            captures=_captures(record)
        )

    def _source_lines(
        self,
        file: str,
        request: SearchRequest,
        cache: Dict[str, Optional[List[str]]]
    ) -> Optional[List[str]]:
        if file in cache:
            return cache[file]
        lines: Optional[List[str]] = None
        if request.code is not None and file == _default_file(request):
            lines = request.code.splitlines()
        elif self.read_lines is not None:
            try:
                lines = self.read_lines(file)
            except (OSError, ValueError) as exc:
                logger.debug("Cannot read %s for context: %s", file, exc)
        cache[file] = lines
        return lines

    # Replace

    def parse_changes(self, stdout: str, request: ReplaceRequest) -> List[Change]:
        if not (stdout or "").strip():
            return []
        applied = not request.dry_run
        default_file = _default_file(request)
        if applied:
            reported = self._applied_changes(stdout, request)
            if reported is not None:
                return reported
        try:
            segments = segment_diff(stdout)
        except DiffFormatError as exc:
            logger.warning("Unrecognized ast-grep diff output (%s); reporting it as a single change", exc)
            self.warnings.append(DIFF_FALLBACK_WARNING)
            return [_synthetic_change(stdout, default_file, applied)]

        if not segments:
            if not _has_substantive_lines(stdout):
                return []
            logger.warning("ast-grep diff output had no file segments; reporting it as a single change")
            self.warnings.append(DIFF_FALLBACK_WARNING)
            return [_synthetic_change(stdout, default_file, applied)]

        changes: List[Change] = []
        for segment in segments:
            changes.append(Change(
                file=self._display_path(segment.file, request.relative_paths),
                match_count=max(segment.removals, 1),
                unified_preview=None if applied else segment.preview(),
                applied=applied
            ))
        return changes

    def _applied_changes(self, stdout: str, request: ReplaceRequest) -> Optional[List[Change]]:
        """
        Changes from an ``--update-all`` run: JSON match records counted per
        file, or the engine's plain summary lines. None when neither is present.
        """
        text = stdout.strip()
        counts: Dict[str, int] = {}
        if text[0] in "[{":
            for record in iter_json_records(text):
                for item in _flatten(record, "changes"):
                    file = str(
                        item.get("file") or item.get("path")
                        or record.get("file") or record.get("path")
                        or _default_file(request)
                    )
                    counts[file] = counts.get(file, 0) + 1
        else:
            total = None
            for line in text.splitlines():
                line = line.strip()
                per_file = _APPLIED_IN_FILE.match(line)
                if per_file:
                    file = per_file.group(2).strip()
                    counts[file] = counts.get(file, 0) + int(per_file.group(1))
                    continue
                summary = _APPLIED_SUMMARY.match(line)
                if summary:
                    total = int(summary.group(1))
            if not counts and total is not None:
                if total == 0:
                    return []
                counts[_summary_file(request)] = total
            if not counts:
                return None
        return [
            Change(
                file=self._display_path(file, request.relative_paths),
                match_count=max(count, 1),
                applied=True
            )
            for file, count in counts.items()
        ]

    # Scan

    def parse_findings(self, stdout: str, request: RuleScanRequest) -> List[Finding]:
        text = (stdout or "").strip()
        if not text:
            return []
        findings: List[Finding] = []
        if text[0] in "[{":
            for record in iter_json_records(text):
                for item in _flatten(record, "findings"):
                    try:
                        findings.append(self._finding_from_record(item, request))
                    except (TypeError, ValueError, KeyError, AttributeError) as exc:
                        logger.debug("Skipping malformed finding record: %s", exc)
        else:
            findings = self._findings_from_text(text, request)
        return filter_findings(findings, request.severity, request.rule_ids)

    def _finding_from_record(self, record: Dict[str, Any], request: RuleScanRequest) -> Finding:
        range_data = record.get("range")
        if isinstance(range_data, dict) and isinstance(range_data.get("start"), dict):
            line = rebase_line(range_data["start"].get("line"))
            column = max(0, _as_int(range_data["start"].get("column"), 0))
        else:
            line = max(1, _as_int(record.get("line"), 1))
            column = max(0, _as_int(record.get("column"), 0))
        fix = record.get("replacement", record.get("fix", record.get("suggestion")))
        raw_file = str(record.get("file") or record.get("path") or _default_file(request))
        return Finding(
            rule_id=str(record.get("ruleId") or record.get("id") or "unknown"),
            severity=normalize_severity(record.get("severity") or record.get("level")),
            message=str(record.get("message") or ""),
            file=self._display_path(raw_file, request.relative_paths),
            line=line,
            column=column,
            fix=fix if isinstance(fix, str) else None
        )

    def _findings_from_text(self, text: str, request: RuleScanRequest) -> List[Finding]:
        findings: List[Finding] = []
        for raw_line in text.splitlines():
            line = raw_line.strip()
            github = _GITHUB_FINDING.match(line)
            if github:
                props = dict(
                    part.split("=", 1) for part in github.group("props").split(",") if "=" in part
                )
                findings.append(Finding(
                    rule_id=props.get("title", "unknown").strip() or "unknown",
                    severity=normalize_severity(github.group("level")),
                    message=github.group("message").strip(),
                    file=self._display_path(props.get("file", "unknown").strip(), request.relative_paths),
                    line=max(1, _as_int(props.get("line"), 1)),
                    column=max(0, _as_int(props.get("col"), 0))
                ))
                continue
            plain = _TEXT_FINDING.match(line)
            if plain:
                findings.append(Finding(
                    message=plain.group("message").strip(),
                    file=self._display_path(plain.group("file").strip(), request.relative_paths),
                    line=max(1, _as_int(plain.group("line"), 1)),
                    column=max(0, _as_int(plain.group("column"), 0))
                ))
        return findings


def normalize_severity(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text in ("error", "err", "fatal"):
        return "error"
    if text in ("warning", "warn"):
        return "warning"
    return "info"


def filter_findings(findings: Sequence[Finding], severity: str = "all", rule_ids: Optional[Sequence[str]] = None) -> List[Finding]:
    wanted = set(rule_ids or [])
    result: List[Finding] = []
    for finding in findings:
        if severity != "all" and finding.severity != severity:
            continue
        if wanted and finding.rule_id not in wanted:
            continue
        result.append(finding)
    return result


# Diff segmentation


class DiffFormatError(ValueError):
    pass


class DiffState(Enum):
    IDLE = "idle"
    IN_FILE_HEADER = "in_file_header"
    IN_HUNK = "in_hunk"


@dataclass
class DiffSegment:
    file: str
    lines: List[str] = field(default_factory=list)
    removals: int = 0

    @property
    def has_content(self) -> bool:
        return bool(self.lines)

    def preview(self) -> str:
        return "\n".join([self.file] + self.lines)


def _is_diagnostic(line: str) -> bool:
    return line.strip().lower().startswith(DIAGNOSTIC_PREFIXES)


def _is_hunk_start(line: str) -> bool:
    return line.startswith("@@")


def _is_change_line(line: str) -> bool:
    if CHANGE_MARKER in line:
        return True
    return line.startswith(("-", "+")) and not line.startswith(("---", "+++"))


def _is_removal(line: str) -> bool:
    if CHANGE_MARKER in line:
        return f"{CHANGE_MARKER}-" in line
    return line.startswith("-") and not line.startswith("---")


def _is_file_header(line: str) -> bool:
    if not line.strip() or line[0].isspace():
        return False
    if _is_hunk_start(line) or _is_change_line(line) or _is_diagnostic(line):
        return False
    return True


def segment_diff(stdout: str) -> List[DiffSegment]:
    """
    Split ast-grep's diff preview into per-file segments.

    Idle: waiting for a file header; diff content here is a format error.
    InFileHeader: a header was seen; a hunk marker or change line opens a hunk.
    InHunk: collecting change lines until the next header or diagnostic.
    Segments with no diff content are dropped.
    """
    state = DiffState.IDLE
    segments: List[DiffSegment] = []
    current: Optional[DiffSegment] = None

    def close() -> None:
        if current is not None and current.has_content:
            segments.append(current)

    for line in stdout.splitlines():
        if not line.strip():
            continue
        if state is DiffState.IDLE:
            if _is_diagnostic(line):
                continue
            if _is_file_header(line):
                current = DiffSegment(file=line.strip())
                state = DiffState.IN_FILE_HEADER
                continue
            raise DiffFormatError(f"diff content before any file header: {line[:80]!r}")

        if _is_diagnostic(line):
            close()
            current = None
            state = DiffState.IDLE
            continue

        if _is_file_header(line):
            close()
            current = DiffSegment(file=line.strip())
            state = DiffState.IN_FILE_HEADER
            continue

        if state is DiffState.IN_FILE_HEADER and not (_is_hunk_start(line) or _is_change_line(line)):
            raise DiffFormatError(f"unexpected line after file header: {line[:80]!r}")

        state = DiffState.IN_HUNK
        current.lines.append(line)
        if _is_removal(line):
            current.removals += 1

    close()
    return segments


def _has_substantive_lines(stdout: str) -> bool:
    return any(line.strip() and not _is_diagnostic(line) for line in stdout.splitlines())


def _summary_file(request: ReplaceRequest) -> str:
    # A bare total names no file; attribute it to the only target when there is one.
    if request.code is None and len(request.paths or []) == 1:
        return request.paths[0]
    return _default_file(request)


def _synthetic_change(stdout: str, file: str, applied: bool) -> Change:
    counted = _APPLIED_COUNT.search(stdout)
    match_count = max(1, int(counted.group(1))) if counted else 1
    return Change(
        file=file,
        match_count=match_count,
        unified_preview=None if applied else stdout.strip(),
        applied=applied
    )
