"""
goodflows.findings.store — Content-addressed finding registry.

Findings are keyed by ``finding_hash(file, type, description)``, so a
second report of the same issue is recognised and skipped instead of
stored twice.  The whole registry (records plus file / type / issue
indices) lives in one JSON document that is rewritten atomically on
every mutation; on start-up the indices are rebuilt from the records.

Near-duplicates that differ in wording are caught by ``find_similar``
(token Jaccard, see ``goodflows.search.similarity``), which callers run
before ``add_finding`` when they want semantic dedup.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from goodflows.core.errors import NotFoundError, ValidationError
from goodflows.core.persistence import atomic_write_json, read_json
from goodflows.core.types import (
    CLOSED_STATUSES,
    FINDING_STATUSES,
    Finding,
    finding_hash,
    normalize_path,
    now_iso,
)
from goodflows.findings.export import render_findings_markdown
from goodflows.search.similarity import jaccard

log = logging.getLogger("goodflows.findings")

STORE_VERSION = 1

_REQUIRED = ("file", "type", "description")
_PATCHABLE = ("status", "issue_id")


def _validate_status(status: Any, errors: List[str]) -> None:
    if status not in FINDING_STATUSES:
        errors.append(
            f"status must be one of {sorted(FINDING_STATUSES)}, got {status!r}"
        )


def _coerce_line_range(value: Any, errors: List[str]) -> Optional[List[int]]:
    if value is None:
        return None
    if isinstance(value, bool):
        errors.append("line_range must be an int or a [start, end] pair")
        return None
    if isinstance(value, int):
        return [value, value]
    if isinstance(value, (list, tuple)) and 1 <= len(value) <= 2:
        if all(isinstance(v, int) and not isinstance(v, bool) for v in value):
            start, end = value[0], value[-1]
            if start <= end:
                return [start, end]
    errors.append("line_range must be an int or a [start, end] pair")
    return None


class FindingStore:
    """Persisted, indexed, deduplicated finding registry.

    Parameters
    ----------
    path : Path
        JSON document holding records and indices.
    default_limit : int
        Page size used by ``query`` when no limit is given.
    similarity_threshold : float
        Default cut-off for ``find_similar``.
    lock_timeout : float
        Seconds to wait for the store file lock when writing.
    """

    def __init__(
        self,
        path: Path,
        default_limit: int = 20,
        similarity_threshold: float = 0.85,
        lock_timeout: float = 5.0,
    ) -> None:
        self.path = Path(path)
        self.default_limit = default_limit
        self.similarity_threshold = similarity_threshold
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()

        self._records: Dict[str, Finding] = {}
        self._by_file: Dict[str, List[str]] = {}
        self._by_type: Dict[str, List[str]] = {}
        self._by_issue: Dict[str, str] = {}
        self._duplicates_skipped = 0

        self._load()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_finding(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a finding unless one with the same hash exists.

        Returns ``{"added": True, "hash": h}`` for a new record, or
        ``{"added": False, "hash": h, "existing": {...}}`` for a
        duplicate (whose timestamps are left untouched).
        """
        finding = self._build(data)
        with self._mutation():
            existing = self._records.get(finding.hash)
            if existing is not None:
                self._duplicates_skipped += 1
                log.debug("Duplicate finding skipped: %s", finding.hash)
                return {"added": False, "hash": finding.hash, "existing": existing.to_dict()}

            self._records[finding.hash] = finding
            self._index(finding)
            log.debug("Finding added: %s (%s in %s)", finding.hash, finding.type, finding.file)
            return {"added": True, "hash": finding.hash}

    def add_findings(self, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Bulk ``add_finding``.  Each item is its own atomic operation."""
        added = 0
        skipped = 0
        hashes: List[str] = []
        for item in items:
            result = self.add_finding(item)
            hashes.append(result["hash"])
            if result["added"]:
                added += 1
            else:
                skipped += 1
        return {"added": added, "skipped": skipped, "hashes": hashes}

    def update_finding(self, hash: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``status`` and/or ``issue_id`` into a stored finding."""
        errors: List[str] = []
        if "status" in patch:
            _validate_status(patch["status"], errors)
        if "issue_id" in patch and patch["issue_id"] is not None:
            if not isinstance(patch["issue_id"], str) or not patch["issue_id"].strip():
                errors.append("issue_id must be a non-empty string or None")
        if errors:
            raise ValidationError("Invalid finding update", errors)

        with self._mutation():
            finding = self._records.get(hash)
            if finding is None:
                raise NotFoundError("Finding", hash)

            if "status" in patch:
                finding.status = patch["status"]
            if "issue_id" in patch:
                if finding.issue_id and self._by_issue.get(finding.issue_id) == hash:
                    del self._by_issue[finding.issue_id]
                finding.issue_id = patch["issue_id"]
                if finding.issue_id:
                    self._by_issue[finding.issue_id] = hash
            finding.updated_at = now_iso()
            log.debug("Finding updated: %s -> %s", hash, finding.status)
            return finding.to_dict()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, hash: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            finding = self._records.get(hash)
            return finding.to_dict() if finding else None

    def get_by_issue(self, issue_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            hash = self._by_issue.get(issue_id)
            return self._records[hash].to_dict() if hash in self._records else None

    def exists(self, data: Dict[str, Any]) -> bool:
        """True if a finding with the same dedup hash is stored."""
        try:
            key = finding_hash(data["file"], data["type"], data["description"])
        except (KeyError, AttributeError):
            return False
        with self._lock:
            return key in self._records

    def query(
        self,
        type: Optional[str] = None,
        file: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Findings matching every given filter, newest-first.

        ``file`` is a substring match; ``type`` and ``status`` are
        exact.  The result is capped at ``limit`` (default
        ``default_limit``) even when no filter is given.
        """
        limit = self.default_limit if limit is None else limit
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValidationError("limit must be a positive integer", [f"limit={limit!r}"])
        with self._lock:
            return [f.to_dict() for f in self._select(type, file, status)[:limit]]

    def find_similar(
        self,
        description: str,
        threshold: Optional[float] = None,
        file: Optional[str] = None,
        type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Stored findings whose description scores >= *threshold*.

        Each result is a finding dict with an extra ``similarity``
        key; results are sorted by descending similarity.  No match
        yields an empty list.
        """
        threshold = self.similarity_threshold if threshold is None else threshold
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be within [0, 1]", [f"threshold={threshold!r}"])

        with self._lock:
            candidates = self._select(type, file, None)
            scored = []
            for finding in candidates:
                score = jaccard(description or "", finding.description)
                if score >= threshold and score > 0.0:
                    entry = finding.to_dict()
                    entry["similarity"] = round(score, 4)
                    scored.append(entry)

        scored.sort(key=lambda e: e["similarity"], reverse=True)
        return scored

    def export_to_markdown(
        self,
        type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> str:
        """Render matching findings as a deterministic markdown document."""
        with self._lock:
            findings = [f.to_dict() for f in self._select(type, None, status)]
        return render_findings_markdown(findings, type=type, status=status)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            by_status = {s: 0 for s in sorted(FINDING_STATUSES)}
            by_type: Dict[str, int] = {}
            for finding in self._records.values():
                by_status[finding.status] = by_status.get(finding.status, 0) + 1
                by_type[finding.type] = by_type.get(finding.type, 0) + 1
            closed = sum(n for s, n in by_status.items() if s in CLOSED_STATUSES)
            total = len(self._records)
            return {
                "total": total,
                "open": total - closed,
                "closed": closed,
                "by_status": by_status,
                "by_type": dict(sorted(by_type.items())),
                "duplicates_skipped": self._duplicates_skipped,
                "files_covered": len(self._by_file),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build(self, data: Dict[str, Any]) -> Finding:
        if not isinstance(data, dict):
            raise ValidationError("Finding data must be a mapping")
        errors: List[str] = []
        for key in _REQUIRED:
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"{key} is required")
        status = data.get("status") or "open"
        _validate_status(status, errors)
        line_range = _coerce_line_range(data.get("line_range"), errors)
        if errors:
            raise ValidationError("Invalid finding", errors)

        return Finding(
            hash=finding_hash(data["file"], data["type"], data["description"]),
            file=normalize_path(data["file"]),
            type=data["type"].strip(),
            description=data["description"].strip(),
            status=status,
            line_range=line_range,
            severity=data.get("severity"),
            proposed_fix=data.get("proposed_fix"),
            issue_id=data.get("issue_id") or None,
            source=data.get("source"),
        )

    def _select(
        self,
        type: Optional[str],
        file: Optional[str],
        status: Optional[str],
    ) -> List[Finding]:
        """Filtered findings, newest ``updated_at`` first.

        Ties fall back to reverse insertion order so the ordering is
        total and stable across calls.
        """
        if type is not None:
            hashes = set(self._by_type.get(type, []))
        else:
            hashes = None
        if file is not None:
            needle = normalize_path(file) if file.strip() else file
            file_hashes = {
                h for path, hs in self._by_file.items() if needle in path for h in hs
            }
            hashes = file_hashes if hashes is None else hashes & file_hashes

        newest_first = list(reversed(list(self._records.values())))
        selected = [
            f
            for f in newest_first
            if (hashes is None or f.hash in hashes)
            and (status is None or f.status == status)
        ]
        selected.sort(key=lambda f: f.updated_at, reverse=True)
        return selected

    def _index(self, finding: Finding) -> None:
        self._by_file.setdefault(finding.file, []).append(finding.hash)
        self._by_type.setdefault(finding.type, []).append(finding.hash)
        if finding.issue_id:
            self._by_issue[finding.issue_id] = finding.hash

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Hold the store lock, persist on success, revert on any failure."""
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield
                self._save()
            except Exception:
                self._restore(snapshot)
                raise

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "records": copy.deepcopy(self._records),
            "by_file": copy.deepcopy(self._by_file),
            "by_type": copy.deepcopy(self._by_type),
            "by_issue": dict(self._by_issue),
            "duplicates_skipped": self._duplicates_skipped,
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._records = snapshot["records"]
        self._by_file = snapshot["by_file"]
        self._by_type = snapshot["by_type"]
        self._by_issue = snapshot["by_issue"]
        self._duplicates_skipped = snapshot["duplicates_skipped"]

    def _save(self) -> None:
        data = {
            "version": STORE_VERSION,
            "updated_at": now_iso(),
            "findings": [f.to_dict() for f in self._records.values()],
            "index": {
                "by_file": self._by_file,
                "by_type": self._by_type,
                "by_issue": self._by_issue,
            },
            "stats": {"duplicates_skipped": self._duplicates_skipped},
        }
        atomic_write_json(self.path, data, lock_timeout=self.lock_timeout)

    def _load(self) -> None:
        data = read_json(self.path)
        if not data:
            return
        for raw in data.get("findings", []):
            finding = Finding.from_dict(raw)
            self._records[finding.hash] = finding
            self._index(finding)
        self._duplicates_skipped = data.get("stats", {}).get("duplicates_skipped", 0)
        log.debug("Loaded %d findings from %s", len(self._records), self.path)
