import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .models import RuleScanRequest, WhereConstraint


logger = logging.getLogger(__name__)

RULE_SUFFIXES = (".yml", ".yaml")


def _constraint_document(constraint: WhereConstraint) -> Dict[str, Any]:
    positive: List[str] = []
    if constraint.regex:
        positive.append(constraint.regex)
    if constraint.equals is not None:
        positive.append(f"^{re.escape(constraint.equals)}$")
    if constraint.includes is not None:
        positive.append(re.escape(constraint.includes))

    document: Dict[str, Any] = {}
    if len(positive) == 1:
        document["regex"] = positive[0]
    elif positive:
        document["all"] = [{"regex": item} for item in positive]
    if constraint.not_regex:
        document["not"] = {"regex": constraint.not_regex}
    return document


def _rule_body(request: RuleScanRequest) -> Dict[str, Any]:
    relational = any((request.inside_pattern, request.has_pattern, request.not_pattern))
    if not relational:
        body: Dict[str, Any] = {"pattern": request.pattern}
        if request.rule_kind:
            body["kind"] = request.rule_kind
        return body

    clauses: List[Dict[str, Any]] = [{"pattern": request.pattern}]
    if request.rule_kind:
        clauses.append({"kind": request.rule_kind})
    if request.inside_pattern:
        clauses.append({"inside": {"pattern": request.inside_pattern, "stopBy": "end"}})
    if request.has_pattern:
        clauses.append({"has": {"pattern": request.has_pattern, "stopBy": "end"}})
    if request.not_pattern:
        clauses.append({"not": {"pattern": request.not_pattern}})
    return {"all": clauses}


def build_rule_document(request: RuleScanRequest) -> Dict[str, Any]:
    """
    Build an ast-grep rule document from the structured fields of a scan request.

    Only ``pattern`` (plus optional ``ruleKind``) gives a simple rule; any of
    insidePattern / hasPattern / notPattern turns it into an ``all`` rule.
    """
    document: Dict[str, Any] = {
        "id": request.id,
        "message": request.message or f"Matched rule {request.id}",
        "severity": request.rule_severity,
        "language": request.language,
        "rule": _rule_body(request)
    }
    constraints: Dict[str, Any] = {}
    for constraint in request.where or []:
        name = constraint.metavariable.lstrip("$")
        item = _constraint_document(constraint)
        if item:
            constraints[name] = item
    if constraints:
        document["constraints"] = constraints
    if request.fix:
        document["fix"] = request.fix
    return document


def render_rule_yaml(document: Dict[str, Any]) -> str:
    header = f"# ast-grep rule generated by astgrep-bridge\n# id: {document.get('id')}\n"
    body = yaml.safe_dump(document, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return header + body


def normalize_rule_target(raw: str) -> str:
    if raw.lower().endswith(RULE_SUFFIXES):
        return raw
    return raw + ".yml"


def default_rule_path(root: Path, rule_id: str, rules_dir: str = ".tree-ast-grep/rules") -> Path:
    return root / rules_dir / f"{rule_id}.yml"


def save_rule(yaml_text: str, target: Path) -> Path:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(yaml_text, encoding="utf-8")
    logger.info("Saved rule to %s", target)
    return target


def write_temporary_rule(yaml_text: str) -> Path:
    """Write a rule to a temporary file; the caller removes it."""
    fd, name = tempfile.mkstemp(prefix="astgrep-rule-", suffix=".yml")
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(yaml_text)
    return Path(name)


def remove_temporary_rule(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Could not remove temporary rule %s: %s", path, exc)
