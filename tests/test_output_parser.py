from __future__ import annotations

import json
from typing import Dict, List, Optional

import pytest

from astgrep_bridge.models import ReplaceRequest, RuleScanRequest, SearchRequest
from astgrep_bridge.output_parser import (
    DIFF_FALLBACK_WARNING,
    DiffFormatError,
    OutputNormalizer,
    filter_findings,
    iter_json_records,
    normalize_severity,
    rebase_line,
    segment_diff,
)


def _record(file: str, line: int, text: str, **extra) -> Dict:
    record = {
        "file": file,
        "text": text,
        "range": {"start": {"line": line, "column": 2}, "end": {"line": line, "column": 2 + len(text)}},
    }
    record.update(extra)
    return record


def _stream(*records: Dict) -> str:
    return "\n".join(json.dumps(record) for record in records) + "\n"


DIFF = """src/app.js
@@ -1,3 +1,3 @@
1  1│ const a = 1;
3   │-var x = 5;
   3│+let x = 5;
src/nested/util.js
@@ -1,1 +1,1 @@
1   │-var y = 2;
   1│+let y = 2;
"""


@pytest.mark.parametrize(("value", "expected"), [(0, 1), (4, 5), (-3, 1), (None, 1), ("7", 8), ("x", 1)])
def test_rebase_line(value, expected: int) -> None:
    assert rebase_line(value) == expected


def test_iter_json_records_accepts_array_and_stream() -> None:
    assert list(iter_json_records('[{"a": 1}, 2, {"b": 2}]')) == [{"a": 1}, {"b": 2}]
    assert list(iter_json_records('{"a": 1}\nnot json\n{"b": 2}\n')) == [{"a": 1}, {"b": 2}]
    assert list(iter_json_records("   ")) == []


def test_matches_are_rebased_and_capped() -> None:
    request = SearchRequest(pattern="console.log($A)", max_matches=2, context=0)
    stdout = _stream(
        _record("src/app.js", 0, "console.log(a)"),
        _record("src/app.js", 3, "console.log(b)"),
        _record("src/other.js", 9, "console.log(c)"),
    )

    collection = OutputNormalizer().collect_matches(stdout, request)

    assert [match.line for match in collection.matches] == [1, 4]
    assert collection.matches[0].column == 2
    assert collection.matches[0].end_line == 1
    assert collection.truncated is True
    assert collection.seen == 3


def test_per_file_limit_applies_before_global_cap() -> None:
    request = SearchRequest(pattern="f($A)", per_file_match_limit=1, context=0)
    stdout = _stream(_record("a.js", 0, "f(1)"), _record("a.js", 1, "f(2)"), _record("b.js", 0, "f(3)"))

    collection = OutputNormalizer().collect_matches(stdout, request)

    assert [(match.file, match.line) for match in collection.matches] == [("a.js", 1), ("b.js", 1)]
    assert collection.truncated is True


def test_malformed_lines_are_skipped() -> None:
    request = SearchRequest(pattern="f($A)", context=0)
    stdout = "garbage\n" + _stream(_record("a.js", 2, "f(1)")) + "{truncated"

    matches = OutputNormalizer().parse("search", stdout, request)

    assert len(matches) == 1
    assert matches[0].line == 3


def test_context_is_synthesized_from_file_lines() -> None:
    lines = ["l1", "l2", "l3", "l4", "l5"]
    reads: List[str] = []

    def read_lines(path: str) -> Optional[List[str]]:
        reads.append(path)
        return lines

    request = SearchRequest(pattern="x", context=1)
    stdout = _stream(_record("a.js", 2, "l3"), _record("a.js", 4, "l5"))

    matches = OutputNormalizer(read_lines=read_lines).collect_matches(stdout, request).matches

    assert matches[0].context_before == ["l2"]
    assert matches[0].context_after == ["l4"]
    assert matches[1].context_after == []
    assert reads == ["a.js"]


def test_inline_code_matches_report_stdin_with_context() -> None:
    code = "const a = 1;\nconsole.log(a);\nconsole.log('done');"
    request = SearchRequest(pattern="console.log($A)", code=code, language="javascript", context=1)
    record = _record("", 1, "console.log(a)")
    record.pop("file")

    matches = OutputNormalizer().collect_matches(_stream(record), request).matches

    assert matches[0].file == "STDIN"
    assert matches[0].line == 2
    assert matches[0].context_before == ["const a = 1;"]
    assert matches[0].context_after == ["console.log('done');"]


def test_engine_context_is_used_when_present() -> None:
    request = SearchRequest(pattern="x", context=2)
    record = _record("a.js", 0, "x", context={"before": ["b"], "after": ["c"]})

    match = OutputNormalizer().collect_matches(_stream(record), request).matches[0]

    assert match.context_before == ["b"]
    assert match.context_after == ["c"]


def test_captures_from_meta_variables() -> None:
    request = SearchRequest(pattern="f($A, $$$REST)", context=0)
    record = _record("a.js", 0, "f(1, 2, 3)", metaVariables={
        "single": {"A": {"text": "1", "range": {"start": {"line": 0, "column": 2}, "end": {"line": 0, "column": 3}}}},
        "multi": {"REST": [
            {"text": "2", "range": {"start": {"line": 0, "column": 5}, "end": {"line": 0, "column": 6}}},
            {"text": "3", "range": {"start": {"line": 0, "column": 8}, "end": {"line": 0, "column": 9}}},
        ]},
    })

    captures = OutputNormalizer().collect_matches(_stream(record), request).matches[0].captures

    assert [(capture.name, capture.text) for capture in captures] == [("A", "1"), ("REST", "2, 3")]
    assert captures[1].span.start.column == 5
    assert captures[1].span.end.column == 9


def test_paths_are_relativized_on_request() -> None:
    request = SearchRequest(pattern="x", context=0, relative_paths=True)
    normalizer = OutputNormalizer(relativize=lambda path: path.replace("/repo/", ""))

    match = normalizer.collect_matches(_stream(_record("/repo/src/a.js", 0, "x")), request).matches[0]

    assert match.file == "src/a.js"


def test_segment_diff_splits_files_and_counts_removals() -> None:
    segments = segment_diff(DIFF)

    assert [segment.file for segment in segments] == ["src/app.js", "src/nested/util.js"]
    assert segments[0].removals == 1
    assert segments[0].preview().startswith("src/app.js\n@@ -1,3 +1,3 @@")


def test_segment_diff_closes_segment_on_diagnostic() -> None:
    segments = segment_diff(DIFF + "warning: 2 files changed\n")

    assert len(segments) == 2
    assert "warning" not in segments[-1].preview()


def test_segment_diff_rejects_content_before_header() -> None:
    with pytest.raises(DiffFormatError):
        segment_diff("-var x = 5;\n+let x = 5;\n")


def test_segment_diff_rejects_header_followed_by_prose() -> None:
    with pytest.raises(DiffFormatError):
        segment_diff("src/app.js\n  something unexpected\n")


def test_parse_changes_dry_run_keeps_preview() -> None:
    request = ReplaceRequest(pattern="var $N = $V", replacement="let $N = $V")

    changes = OutputNormalizer().parse_changes(DIFF, request)

    assert [change.file for change in changes] == ["src/app.js", "src/nested/util.js"]
    assert all(change.applied is False for change in changes)
    assert "+let x = 5;" in changes[0].unified_preview


def test_parse_changes_applied_drops_preview() -> None:
    request = ReplaceRequest(pattern="var $N = $V", replacement="let $N = $V", dry_run=False)

    changes = OutputNormalizer().parse_changes(DIFF, request)

    assert all(change.applied and change.unified_preview is None for change in changes)


def test_unrecognized_diff_becomes_single_change() -> None:
    request = ReplaceRequest(pattern="a", replacement="b", dry_run=False)
    normalizer = OutputNormalizer()

    changes = normalizer.parse_changes("+ applied 3 changes\n", request)

    assert len(changes) == 1
    assert changes[0].file == "unknown"
    assert changes[0].match_count == 3
    assert changes[0].applied is True
    assert normalizer.warnings == [DIFF_FALLBACK_WARNING]


def test_applied_summary_line_is_not_a_format_problem() -> None:
    request = ReplaceRequest(pattern="a", replacement="b", dry_run=False, paths=["src"])
    normalizer = OutputNormalizer()

    changes = normalizer.parse_changes("Applied 2 changes\n", request)

    assert len(changes) == 1
    assert changes[0].file == "src"
    assert changes[0].match_count == 2
    assert changes[0].applied is True
    assert normalizer.warnings == []


def test_applied_per_file_summary_lines() -> None:
    request = ReplaceRequest(pattern="a", replacement="b", dry_run=False, paths=["."])
    normalizer = OutputNormalizer()

    changes = normalizer.parse_changes("2 matches in src/app.js\n1 match in src/nested/util.js\nApplied 3 changes\n", request)

    assert [(change.file, change.match_count) for change in changes] == [("src/app.js", 2), ("src/nested/util.js", 1)]
    assert normalizer.warnings == []


def test_applied_json_records_are_counted_per_file() -> None:
    request = ReplaceRequest(pattern="var $N = $V", replacement="let $N = $V", dry_run=False, relative_paths=True)
    normalizer = OutputNormalizer(relativize=lambda path: path.replace("/repo/", ""))
    stdout = _stream(
        _record("/repo/src/app.js", 2, "var x = 5;", replacement="let x = 5;"),
        _record("/repo/src/app.js", 6, "var z = 1;", replacement="let z = 1;"),
        _record("/repo/src/nested/util.js", 0, "var y = 2;", replacement="let y = 2;"),
    )

    changes = normalizer.parse_changes(stdout, request)

    assert [(change.file, change.match_count) for change in changes] == [("src/app.js", 2), ("src/nested/util.js", 1)]
    assert all(change.applied and change.unified_preview is None for change in changes)
    assert normalizer.warnings == []


def test_applied_summary_of_zero_means_no_changes() -> None:
    request = ReplaceRequest(pattern="a", replacement="b", dry_run=False)

    assert OutputNormalizer().parse_changes("Applied 0 changes\n", request) == []


def test_inline_code_matches_use_the_virtual_file_name() -> None:
    request = SearchRequest(pattern="x", code="a\nx\n", stdin_filepath="src/virtual.ts", context=1)

    match = OutputNormalizer().collect_matches(_stream(_record("src/virtual.ts", 1, "x")), request).matches[0]

    assert match.file == "src/virtual.ts"
    assert match.context_before == ["a"]


def test_empty_replace_output_means_no_changes() -> None:
    request = ReplaceRequest(pattern="a", replacement="b")

    assert OutputNormalizer().parse_changes("", request) == []
    assert OutputNormalizer().parse_changes("warning: nothing to do\n", request) == []


def test_findings_from_json() -> None:
    request = RuleScanRequest(rule_file="r.yml")
    stdout = _stream(
        {"ruleId": "no-console", "severity": "warning", "message": "no console", "file": "a.js",
         "range": {"start": {"line": 4, "column": 1}}, "replacement": "logger.info(a)"},
        {"id": "other", "severity": "hint", "file": "b.js", "line": 0},
    )

    findings = OutputNormalizer().parse_findings(stdout, request)

    assert findings[0].rule_id == "no-console"
    assert findings[0].line == 5
    assert findings[0].fix == "logger.info(a)"
    assert findings[1].severity == "info"
    assert findings[1].line == 1


def test_findings_from_github_annotations_and_text() -> None:
    request = RuleScanRequest(rule_file="r.yml", format="github")
    stdout = (
        "::error file=src/a.js,line=3,col=5,title=no-eval::Avoid eval\n"
        "src/b.js:7:2: plain text finding\n"
    )

    findings = OutputNormalizer().parse_findings(stdout, request)

    assert (findings[0].rule_id, findings[0].severity, findings[0].file, findings[0].line) == ("no-eval", "error", "src/a.js", 3)
    assert (findings[1].file, findings[1].line, findings[1].column) == ("src/b.js", 7, 2)


def test_findings_are_filtered_by_severity_and_rule() -> None:
    request = RuleScanRequest(rule_file="r.yml", severity="error", rule_ids=["keep"])
    stdout = _stream(
        {"ruleId": "keep", "severity": "error", "file": "a.js", "line": 1},
        {"ruleId": "keep", "severity": "warning", "file": "a.js", "line": 2},
        {"ruleId": "drop", "severity": "error", "file": "a.js", "line": 3},
    )

    findings = OutputNormalizer().parse("scan", stdout, request)

    assert [(finding.rule_id, finding.line) for finding in findings] == [("keep", 1)]


def test_normalize_severity_and_filter_defaults() -> None:
    assert normalize_severity("ERR") == "error"
    assert normalize_severity("warn") == "warning"
    assert normalize_severity(None) == "info"
    assert filter_findings([]) == []
