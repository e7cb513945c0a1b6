"""
Argument vectors for the ast-grep CLI.

All builders share one flag order:

    subcommand, match flags, --lang, context/format flags, include globs,
    exclude globs, ignore toggles, root/workdir, --follow/--threads,
    output format, then positional paths or --stdin (with --stdin-filepath).
"""

from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from .models import ExecutionOptions, ReplaceRequest, RuleScanRequest, SearchRequest


NO_IGNORE_KINDS = ("hidden", "dot", "vcs")

AnyCommonRequest = Union[SearchRequest, ReplaceRequest, RuleScanRequest]


def _language_flags(request: AnyCommonRequest) -> List[str]:
    if request.language:
        return ["--lang", request.language]
    return []


def _glob_flags(request: AnyCommonRequest) -> List[str]:
    args: List[str] = []
    for pattern in request.include or []:
        args.extend(["--globs", pattern])
    for pattern in request.exclude or []:
        negated = pattern if pattern.startswith("!") else f"!{pattern}"
        args.extend(["--globs", negated])
    return args


def _ignore_flags(request: AnyCommonRequest) -> List[str]:
    args: List[str] = []
    for ignore_file in request.ignore_path or []:
        args.extend(["--ignore-path", ignore_file])
    if request.no_ignore:
        for kind in NO_IGNORE_KINDS:
            args.extend(["--no-ignore", kind])
    return args


def _location_flags(root: Optional[str], workdir: Optional[str]) -> List[str]:
    args: List[str] = []
    if root:
        args.extend(["--root", root])
    if workdir:
        args.extend(["--workdir", workdir])
    return args


def _traversal_flags(request: AnyCommonRequest) -> List[str]:
    args: List[str] = []
    if request.follow:
        args.append("--follow")
    if request.threads:
        args.extend(["--threads", str(request.threads)])
    return args


def _targets(request: AnyCommonRequest, paths: Sequence[Union[str, Path]]) -> Tuple[List[str], Optional[str]]:
    if request.code is not None:
        if request.stdin_filepath:
            return ["--stdin", "--stdin-filepath", request.stdin_filepath], request.code
        return ["--stdin"], request.code
    return [str(path) for path in paths], None


def _shared_tail(
    request: AnyCommonRequest,
    root: Optional[str],
    workdir: Optional[str]
) -> List[str]:
    return (
        _glob_flags(request)
        + _ignore_flags(request)
        + _location_flags(root, workdir)
        + _traversal_flags(request)
    )


def build_search_command(
    request: SearchRequest,
    paths: Sequence[Union[str, Path]],
    cwd: str,
    root: Optional[str] = None,
    workdir: Optional[str] = None
) -> Tuple[List[str], ExecutionOptions]:
    args = ["run", "--pattern", request.pattern]
    args.extend(_language_flags(request))
    if request.context > 0:
        args.extend(["--context", str(request.context)])
    args.extend(_shared_tail(request, root, workdir))
    args.append(f"--json={request.json_style}")
    targets, stdin = _targets(request, paths)
    args.extend(targets)
    return args, ExecutionOptions(cwd=cwd, timeout_ms=request.timeout_ms, stdin=stdin)


def build_replace_command(
    request: ReplaceRequest,
    paths: Sequence[Union[str, Path]],
    cwd: str,
    root: Optional[str] = None,
    workdir: Optional[str] = None
) -> Tuple[List[str], ExecutionOptions]:
    args = ["run", "--pattern", request.pattern, "--rewrite", request.replacement]
    args.extend(_language_flags(request))
    args.extend(["--color", "never"])
    args.extend(_shared_tail(request, root, workdir))
    if not request.dry_run:
        if request.interactive:
            args.append("--interactive")
        else:
            args.extend(["--update-all", "--json=stream"])
    targets, stdin = _targets(request, paths)
    args.extend(targets)
    return args, ExecutionOptions(cwd=cwd, timeout_ms=request.timeout_ms, stdin=stdin)


def build_scan_command(
    request: RuleScanRequest,
    rule_path: Union[str, Path],
    paths: Sequence[Union[str, Path]],
    cwd: str,
    root: Optional[str] = None,
    workdir: Optional[str] = None
) -> Tuple[List[str], ExecutionOptions]:
    # The rule file carries the language; --lang is not a scan flag.
    args = ["scan", "--rule", str(rule_path)]
    args.extend(_shared_tail(request, root, workdir))
    if request.format == "json":
        args.append(f"--json={request.json_style}")
    elif request.format == "github":
        args.extend(["--format", "github"])
    targets, stdin = _targets(request, paths)
    args.extend(targets)
    return args, ExecutionOptions(cwd=cwd, timeout_ms=request.timeout_ms, stdin=stdin)
