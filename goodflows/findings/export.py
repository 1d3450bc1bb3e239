"""
goodflows.findings.export — Markdown rendering of findings.

Output is a pure function of its input: no clock values, sections in
alphabetical type order, bullets in the order given (the store passes
``query`` order, newest first).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from goodflows.core.types import CLOSED_STATUSES


def _location(finding: Dict[str, Any]) -> str:
    line_range = finding.get("line_range")
    if not line_range:
        return finding["file"]
    start, end = line_range[0], line_range[-1]
    if start == end:
        return f"{finding['file']}:{start}"
    return f"{finding['file']}:{start}-{end}"


def _bullet(finding: Dict[str, Any]) -> str:
    line = (
        f"- `{finding['hash'][:8]}` **{_location(finding)}** "
        f"[{finding['status']}] {finding['description']}"
    )
    extras = []
    if finding.get("severity"):
        extras.append(f"severity: {finding['severity']}")
    if finding.get("issue_id"):
        extras.append(f"issue: {finding['issue_id']}")
    if extras:
        line += f" ({', '.join(extras)})"
    return line


def render_findings_markdown(
    findings: List[Dict[str, Any]],
    type: Optional[str] = None,
    status: Optional[str] = None,
) -> str:
    """Render *findings* as a findings-log markdown document."""
    closed = sum(1 for f in findings if f["status"] in CLOSED_STATUSES)
    lines = ["# Findings Log", ""]

    filters = []
    if type:
        filters.append(f"type={type}")
    if status:
        filters.append(f"status={status}")
    if filters:
        lines += [f"*Filters: {', '.join(filters)}*", ""]

    lines += [
        "## Summary",
        "",
        f"- **Total**: {len(findings)}",
        f"- **Open**: {len(findings) - closed}",
        f"- **Closed**: {closed}",
        "",
    ]

    if not findings:
        lines += ["_No findings._", ""]
        return "\n".join(lines)

    sections: Dict[str, List[Dict[str, Any]]] = {}
    for finding in findings:
        sections.setdefault(finding["type"], []).append(finding)

    for section_type in sorted(sections):
        lines += [f"## {section_type}", ""]
        lines += [_bullet(f) for f in sections[section_type]]
        lines.append("")

    return "\n".join(lines)
