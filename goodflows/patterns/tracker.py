"""
goodflows.patterns.tracker — Fix patterns scored by outcome history.

Each pattern carries a ``confidence`` in [0, 1] that moves toward 1.0
on every recorded success and toward 0.0 on every failure::

    success:  c' = c + α (1 - c)
    failure:  c' = c - α c

with a fixed learning rate α (default 0.1).  Both updates are convex
combinations of ``c`` and a bound, so confidence can never leave the
unit interval no matter how many outcomes are recorded.

Recommendations rank candidates by ``confidence * match_score`` where
``match_score`` is the token Jaccard between the finding description
and the pattern's keywords plus description.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from goodflows.core.errors import ConflictError, NotFoundError, ValidationError
from goodflows.core.persistence import atomic_write_json, read_json
from goodflows.core.types import Pattern, generate_id, now_iso
from goodflows.patterns.builtins import BUILTIN_PATTERNS
from goodflows.search.similarity import jaccard, tokenize

log = logging.getLogger("goodflows.patterns")

STORE_VERSION = 1

#: Starting confidence for patterns added through ``add_pattern``.
INITIAL_CONFIDENCE = 0.5

#: Starting confidence for patterns learned from an applied fix.
LEARNED_CONFIDENCE = 0.7

CHANGE_PLACEHOLDER = "${change}"

_NON_WORD = re.compile(r"[^a-z0-9\s]")


def extract_template(before: str, after: str) -> str:
    """Template of *after* with the part that differs from *before* elided.

    The common prefix and suffix are kept and the changed middle becomes
    ``${change}``::

        extract_template("x = foo(a)", "x = foo(a, b)")  ->  "x = foo(a${change})"
    """
    limit = min(len(before), len(after))
    prefix = 0
    while prefix < limit and before[prefix] == after[prefix]:
        prefix += 1

    suffix = 0
    while (
        suffix < len(before) - prefix
        and suffix < len(after) - prefix
        and before[-1 - suffix] == after[-1 - suffix]
    ):
        suffix += 1

    return after[:prefix] + CHANGE_PLACEHOLDER + after[len(after) - suffix:]


def pattern_id_from(description: str) -> str:
    """Slug of the first four words of *description*."""
    words = _NON_WORD.sub("", description.lower()).split()
    return "-".join(words[:4]) or f"pattern-{generate_id()}"


class PatternTracker:
    """Persisted fix-pattern registry with confidence learning.

    Parameters
    ----------
    path : Path
        JSON document holding every pattern (history included).
    learning_rate : float
        α in the confidence update rule.
    history_limit : int
        Outcome entries kept per pattern (oldest dropped first).
    seed_builtins : bool
        Install ``BUILTIN_PATTERNS`` when the store file does not yet
        exist.
    min_confidence : float
        Default confidence floor for ``recommend``.
    """

    def __init__(
        self,
        path: Path,
        learning_rate: float = 0.1,
        history_limit: int = 20,
        seed_builtins: bool = True,
        lock_timeout: float = 5.0,
        min_confidence: float = 0.5,
    ) -> None:
        self.path = Path(path)
        self.learning_rate = learning_rate
        self.min_confidence = min_confidence
        self.history_limit = history_limit
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._patterns: Dict[str, Pattern] = {}

        if not self._load() and seed_builtins:
            self._seed_builtins()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_pattern(self, spec: Dict[str, Any]) -> Dict[str, Any]:
        """Register a new pattern at confidence 0.5.

        Raises ``ConflictError`` if the id is taken.
        """
        pattern = self._build(spec)
        with self._mutation():
            if pattern.id in self._patterns:
                raise ConflictError("Pattern", pattern.id)
            self._patterns[pattern.id] = pattern
            log.debug("Pattern added: %s (%s)", pattern.id, pattern.type)
            return pattern.to_dict()

    def register_pattern(self, fix: Dict[str, Any]) -> Dict[str, Any]:
        """Learn a pattern from a fix that was just applied successfully.

        *fix* needs ``type`` and ``description`` plus either a
        ``template`` or the ``before``/``after`` code, from which a
        template is extracted.  The id is ``fix["id"]`` or a slug of the
        description.  A new pattern starts at confidence 0.7 with one
        recorded success; if the id already exists the fix counts as
        another success for it instead.
        """
        if not isinstance(fix, dict):
            raise ValidationError("fix must be a mapping", [f"fix={fix!r}"])
        errors: List[str] = []
        for key in ("type", "description"):
            value = fix.get(key)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"{key} is required")
        before, after, template = fix.get("before"), fix.get("after"), fix.get("template")
        if template is None:
            if not isinstance(before, str) or not isinstance(after, str):
                errors.append("before and after are required without a template")
        elif not isinstance(template, str):
            errors.append("template must be a string")
        file = fix.get("file")
        if file is not None and not isinstance(file, str):
            errors.append("file must be a string")
        keywords = fix.get("keywords")
        if keywords is not None and (
            isinstance(keywords, str) or not all(isinstance(k, str) for k in keywords)
        ):
            errors.append("keywords must be a list of strings")
        pattern_id = fix.get("id")
        if pattern_id is not None and (not isinstance(pattern_id, str) or not pattern_id.strip()):
            errors.append("id must be a non-empty string")
        if errors:
            raise ValidationError("Invalid fix", errors)

        pattern_id = pattern_id.strip() if pattern_id else pattern_id_from(fix["description"])
        ctx = {"file": file} if file else None

        with self._mutation():
            existing = self._patterns.get(pattern_id)
            if existing is not None:
                self._apply_outcome(existing, True, ctx)
                log.debug("Fix reinforced pattern %s", pattern_id)
                return existing.to_dict()

            pattern = Pattern(
                id=pattern_id,
                type=fix["type"].strip(),
                description=fix["description"],
                template=template if template is not None else extract_template(before, after),
                before=before,
                after=after,
                keywords=set(keywords or tokenize(fix["description"])),
                confidence=LEARNED_CONFIDENCE,
                success_count=1,
            )
            stamp = now_iso()
            pattern.last_used_at = stamp
            pattern.history.append({**(ctx or {}), "success": True, "timestamp": stamp})
            self._patterns[pattern.id] = pattern
            log.info("Learned pattern %s from applied fix", pattern.id)
            return pattern.to_dict()

    def record_success(
        self, pattern_id: str, ctx: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return self._record(pattern_id, True, ctx)

    def record_failure(
        self, pattern_id: str, ctx: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return self._record(pattern_id, False, ctx)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_pattern(self, pattern_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            return pattern.to_dict() if pattern else None

    def list_patterns(
        self,
        type: Optional[str] = None,
        min_confidence: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Patterns by descending confidence (ties by id)."""
        with self._lock:
            selected = [
                p
                for p in self._patterns.values()
                if (type is None or p.type == type)
                and (min_confidence is None or p.confidence >= min_confidence)
            ]
            selected.sort(key=lambda p: (-p.confidence, p.id))
            if limit:
                selected = selected[:limit]
            return [p.to_dict() for p in selected]

    def recommend(
        self,
        type: str,
        description: str = "",
        min_confidence: Optional[float] = None,
        limit: int = 3,
    ) -> List[Dict[str, Any]]:
        """Patterns of *type* suited to a finding *description*.

        Candidates must have ``confidence >= min_confidence`` (default
        ``self.min_confidence``).  With a description, candidates
        sharing no tokens with it are dropped and the rest are ranked
        by ``confidence * match_score``; without one, rank is plain
        confidence.  Returns at most *limit* pattern dicts with
        ``match_score`` and ``rank`` added.
        """
        if min_confidence is None:
            min_confidence = self.min_confidence
        results = []
        with self._lock:
            for pattern in self._patterns.values():
                if pattern.type != type or pattern.confidence < min_confidence:
                    continue
                if description:
                    match = jaccard(description, [pattern.description, *pattern.keywords])
                    if match == 0.0:
                        continue
                else:
                    match = 1.0
                entry = pattern.to_dict()
                entry["match_score"] = round(match, 4)
                entry["rank"] = round(pattern.confidence * match, 6)
                results.append(entry)

        results.sort(key=lambda e: (-e["rank"], e["id"]))
        return results[:limit] if limit else results

    def get_stats(self, top_n: int = 5) -> Dict[str, Any]:
        with self._lock:
            patterns = list(self._patterns.values())
            total = len(patterns)
            successes = sum(p.success_count for p in patterns)
            applications = sum(p.applications for p in patterns)

            by_type: Dict[str, Dict[str, Any]] = {}
            for p in patterns:
                group = by_type.setdefault(p.type, {"count": 0, "avg_confidence": 0.0})
                group["count"] += 1
                group["avg_confidence"] += p.confidence
            for group in by_type.values():
                group["avg_confidence"] = round(group["avg_confidence"] / group["count"], 4)

            top = sorted(patterns, key=lambda p: (-p.confidence, p.id))[:top_n]
            return {
                "total_patterns": total,
                "builtin_patterns": sum(1 for p in patterns if p.builtin),
                "avg_confidence": round(sum(p.confidence for p in patterns) / total, 4)
                if total
                else 0.0,
                "total_applications": applications,
                "success_rate": round(successes / applications, 4) if applications else 0.0,
                "by_type": dict(sorted(by_type.items())),
                "top_patterns": [
                    {
                        "id": p.id,
                        "confidence": round(p.confidence, 4),
                        "applications": p.applications,
                    }
                    for p in top
                ],
            }

    def export_to_markdown(self) -> str:
        """Render all patterns, highest confidence first."""
        patterns = self.list_patterns()
        lines = ["# Fix Patterns", ""]
        if not patterns:
            lines += ["_No patterns._", ""]
            return "\n".join(lines)

        for p in patterns:
            lines += [
                f"## {p['id']}",
                "",
                f"**{p['description'] or 'N/A'}**",
                "",
                f"- Type: `{p['type']}`",
                f"- Confidence: {p['confidence'] * 100:.1f}%",
                f"- Applications: {p['success_count'] + p['failure_count']} "
                f"({p['success_count']} success, {p['failure_count']} failure)",
            ]
            if p["keywords"]:
                lines.append(f"- Keywords: {', '.join(p['keywords'])}")
            lines.append("")
            if p["template"]:
                lines += ["```", p["template"], "```", ""]
        return "\n".join(lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._patterns)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(
        self, pattern_id: str, success: bool, ctx: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        if ctx is not None and not isinstance(ctx, dict):
            raise ValidationError("ctx must be a mapping", [f"ctx={ctx!r}"])
        with self._mutation():
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                raise NotFoundError("Pattern", pattern_id)
            self._apply_outcome(pattern, success, ctx)
            return pattern.to_dict()

    def _apply_outcome(
        self, pattern: Pattern, success: bool, ctx: Optional[Dict[str, Any]]
    ) -> None:
        alpha = self.learning_rate
        if success:
            pattern.confidence += alpha * (1.0 - pattern.confidence)
            pattern.success_count += 1
        else:
            pattern.confidence -= alpha * pattern.confidence
            pattern.failure_count += 1
        pattern.confidence = max(0.0, min(1.0, pattern.confidence))

        stamp = now_iso()
        pattern.last_used_at = stamp
        entry = copy.deepcopy(ctx) if ctx else {}
        entry.update({"success": success, "timestamp": stamp})
        pattern.history.append(entry)
        if len(pattern.history) > self.history_limit:
            del pattern.history[: len(pattern.history) - self.history_limit]

        log.debug(
            "Pattern %s %s -> confidence %.3f",
            pattern.id,
            "succeeded" if success else "failed",
            pattern.confidence,
        )

    def _build(self, spec: Dict[str, Any]) -> Pattern:
        if not isinstance(spec, dict):
            raise ValidationError("Pattern spec must be a mapping")
        errors: List[str] = []
        for key in ("id", "type"):
            value = spec.get(key)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"{key} is required")
        keywords = spec.get("keywords") or []
        if isinstance(keywords, str) or not all(isinstance(k, str) for k in keywords):
            errors.append("keywords must be a list of strings")
        if errors:
            raise ValidationError("Invalid pattern", errors)

        return Pattern(
            id=spec["id"].strip(),
            type=spec["type"].strip(),
            description=spec.get("description") or "",
            template=spec.get("template"),
            keywords=set(keywords),
            confidence=INITIAL_CONFIDENCE,
        )

    def _seed_builtins(self) -> None:
        with self._mutation():
            for raw in BUILTIN_PATTERNS:
                pattern = Pattern(
                    id=raw["id"],
                    type=raw["type"],
                    description=raw["description"],
                    template=raw["template"],
                    keywords=set(raw["keywords"]),
                    confidence=raw["confidence"],
                    builtin=True,
                )
                self._patterns[pattern.id] = pattern
        log.info("Installed %d built-in patterns", len(BUILTIN_PATTERNS))

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy(self._patterns)
            try:
                yield
                self._save()
            except Exception:
                self._patterns = snapshot
                raise

    def _save(self) -> None:
        data = {
            "version": STORE_VERSION,
            "updated_at": now_iso(),
            "patterns": [p.to_dict() for p in self._patterns.values()],
        }
        atomic_write_json(self.path, data, lock_timeout=self.lock_timeout)

    def _load(self) -> bool:
        data = read_json(self.path)
        if data is None:
            return False
        for raw in data.get("patterns", []):
            pattern = Pattern.from_dict(raw)
            self._patterns[pattern.id] = pattern
        log.debug("Loaded %d patterns from %s", len(self._patterns), self.path)
        return True
