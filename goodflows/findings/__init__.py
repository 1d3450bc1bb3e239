"""goodflows.findings — Deduplicated finding registry with similarity search."""

from goodflows.findings.export import render_findings_markdown
from goodflows.findings.store import FindingStore

__all__ = ["FindingStore", "render_findings_markdown"]
