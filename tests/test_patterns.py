"""Tests for goodflows.patterns: fix patterns with confidence learning."""

import json
from unittest.mock import patch

import pytest

from goodflows.core.errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from goodflows.patterns import (
    BUILTIN_PATTERNS,
    INITIAL_CONFIDENCE,
    LEARNED_CONFIDENCE,
    PatternTracker,
    extract_template,
)


def _spec(id="guard-clause", type="refactor_suggestion", **extra):
    return {
        "id": id,
        "type": type,
        "description": "Replace nested ifs with guard clauses",
        "keywords": ["nested", "if", "guard"],
        **extra,
    }


class TestBuiltins:
    def test_seeded_on_first_start(self, patterns):
        assert len(patterns) == len(BUILTIN_PATTERNS)
        p = patterns.get_pattern("env-var-secret")
        assert p["builtin"] is True
        assert p["confidence"] == 0.95

    def test_existing_store_not_reseeded(self, config):
        tracker = PatternTracker(config.patterns_path)
        tracker.record_failure("null-check")
        again = PatternTracker(config.patterns_path)
        assert again.get_pattern("null-check")["confidence"] == pytest.approx(0.81)

    def test_seeding_disabled(self, empty_patterns):
        assert len(empty_patterns) == 0


class TestAddPattern:
    def test_add(self, empty_patterns):
        p = empty_patterns.add_pattern(_spec(confidence=0.99))
        assert p["confidence"] == INITIAL_CONFIDENCE
        assert p["success_count"] == 0
        assert p["keywords"] == ["guard", "if", "nested"]
        assert p["builtin"] is False

    def test_duplicate_id(self, empty_patterns):
        empty_patterns.add_pattern(_spec())
        with pytest.raises(ConflictError):
            empty_patterns.add_pattern(_spec())

    def test_builtin_id_conflicts(self, patterns):
        with pytest.raises(ConflictError):
            patterns.add_pattern(_spec(id="null-check"))

    @pytest.mark.parametrize("bad", [
        {"type": "x"},
        {"id": "x"},
        {"id": "x", "type": "y", "keywords": "not-a-list"},
        {"id": "x", "type": "y", "keywords": [1, 2]},
    ])
    def test_invalid(self, empty_patterns, bad):
        with pytest.raises(ValidationError):
            empty_patterns.add_pattern(bad)
        assert len(empty_patterns) == 0


class TestConfidence:
    def test_success_update(self, empty_patterns):
        empty_patterns.add_pattern(_spec())
        p = empty_patterns.record_success("guard-clause", {"file": "a.py"})
        assert p["confidence"] == pytest.approx(0.55)
        assert p["success_count"] == 1
        assert p["last_used_at"] is not None
        assert p["history"][-1]["success"] is True
        assert p["history"][-1]["file"] == "a.py"

    def test_failure_update(self, empty_patterns):
        empty_patterns.add_pattern(_spec())
        p = empty_patterns.record_failure("guard-clause")
        assert p["confidence"] == pytest.approx(0.45)
        assert p["failure_count"] == 1

    def test_success_then_failure(self, empty_patterns):
        empty_patterns.add_pattern(_spec())
        empty_patterns.record_success("guard-clause")
        p = empty_patterns.record_failure("guard-clause")
        assert p["confidence"] == pytest.approx(0.495)

    def test_stays_in_unit_interval(self, empty_patterns):
        empty_patterns.add_pattern(_spec(id="up"))
        empty_patterns.add_pattern(_spec(id="down"))
        for _ in range(300):
            up = empty_patterns.record_success("up")
            down = empty_patterns.record_failure("down")
            assert 0.0 <= up["confidence"] <= 1.0
            assert 0.0 <= down["confidence"] <= 1.0
        assert up["confidence"] > 0.99
        assert down["confidence"] < 0.01

    def test_history_bounded(self, config):
        tracker = PatternTracker(config.patterns_path, seed_builtins=False, history_limit=5)
        tracker.add_pattern(_spec())
        for i in range(8):
            tracker.record_success("guard-clause", {"n": i})
        history = tracker.get_pattern("guard-clause")["history"]
        assert [h["n"] for h in history] == [3, 4, 5, 6, 7]

    def test_custom_learning_rate(self, config):
        tracker = PatternTracker(config.patterns_path, seed_builtins=False, learning_rate=0.5)
        tracker.add_pattern(_spec())
        assert tracker.record_success("guard-clause")["confidence"] == pytest.approx(0.75)

    def test_unknown_pattern(self, patterns):
        with pytest.raises(NotFoundError):
            patterns.record_success("does-not-exist")

    def test_bad_context(self, patterns):
        with pytest.raises(ValidationError):
            patterns.record_success("null-check", ctx="oops")

    def test_history_context_is_copied(self, empty_patterns):
        empty_patterns.add_pattern(_spec())
        ctx = {"file": "a.py", "lines": [10, 12]}
        empty_patterns.record_success("guard-clause", ctx)
        ctx["lines"].append(99)
        ctx["file"] = "b.py"
        entry = empty_patterns.get_pattern("guard-clause")["history"][-1]
        assert entry["lines"] == [10, 12]
        assert entry["file"] == "a.py"


class TestRegisterPattern:
    def _fix(self, **extra):
        return {
            "type": "potential_issue",
            "description": "Add default argument to foo call",
            "before": "x = foo(a)",
            "after": "x = foo(a, b)",
            "file": "svc/api.py",
            **extra,
        }

    @pytest.mark.parametrize("before, after, template", [
        ("x = foo(a)", "x = foo(a, b)", "x = foo(a${change})"),
        ("return user.name", "return user.name if user else None",
         "return user.name${change}"),
        ("eval(s)", "ast.literal_eval(s)", "${change}eval(s)"),
        ("same", "same", "same${change}"),
        ("", "new code", "${change}"),
    ])
    def test_extract_template(self, before, after, template):
        assert extract_template(before, after) == template

    def test_learns_new_pattern(self, empty_patterns):
        p = empty_patterns.register_pattern(self._fix())
        assert p["id"] == "add-default-argument-to"
        assert p["template"] == "x = foo(a${change})"
        assert p["before"] == "x = foo(a)"
        assert p["after"] == "x = foo(a, b)"
        assert p["confidence"] == LEARNED_CONFIDENCE
        assert p["success_count"] == 1
        assert p["history"][0]["file"] == "svc/api.py"
        assert "default" in p["keywords"]

    def test_explicit_template_and_id(self, empty_patterns):
        p = empty_patterns.register_pattern(
            {"id": "wrap-foo", "type": "refactor_suggestion",
             "description": "Wrap foo", "template": "wrap(${call})"}
        )
        assert p["id"] == "wrap-foo"
        assert p["template"] == "wrap(${call})"
        assert p["before"] is None

    def test_repeat_fix_reinforces(self, empty_patterns):
        empty_patterns.register_pattern(self._fix())
        p = empty_patterns.register_pattern(self._fix(file="svc/other.py"))
        assert len(empty_patterns) == 1
        assert p["success_count"] == 2
        assert p["confidence"] == pytest.approx(0.73)
        assert [h["file"] for h in p["history"]] == ["svc/api.py", "svc/other.py"]

    def test_learned_pattern_is_recommended(self, empty_patterns):
        empty_patterns.register_pattern(self._fix())
        results = empty_patterns.recommend("potential_issue", "foo call is missing an argument")
        assert [r["id"] for r in results] == ["add-default-argument-to"]

    def test_symbol_only_description_gets_generated_id(self, empty_patterns):
        p = empty_patterns.register_pattern(self._fix(description="!!!"))
        assert p["id"].startswith("pattern-")

    @pytest.mark.parametrize("bad", [
        {"description": "x", "before": "a", "after": "b"},
        {"type": "t", "before": "a", "after": "b"},
        {"type": "t", "description": "x", "before": "a"},
        {"type": "t", "description": "x", "template": 3},
        {"type": "t", "description": "x", "template": "t", "keywords": "kw"},
        {"type": "t", "description": "x", "template": "t", "id": ""},
    ])
    def test_invalid(self, empty_patterns, bad):
        with pytest.raises(ValidationError):
            empty_patterns.register_pattern(bad)
        assert len(empty_patterns) == 0

    def test_reload_keeps_code(self, config):
        tracker = PatternTracker(config.patterns_path, seed_builtins=False)
        tracker.register_pattern(self._fix())
        again = PatternTracker(config.patterns_path, seed_builtins=False)
        assert again.get_pattern("add-default-argument-to")["after"] == "x = foo(a, b)"

    def test_write_failure_reverts(self, empty_patterns):
        with patch("goodflows.patterns.tracker.atomic_write_json",
                   side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                empty_patterns.register_pattern(self._fix())
        assert len(empty_patterns) == 0


class TestRecommend:
    def test_matches_by_keywords(self, patterns):
        results = patterns.recommend("potential_issue", "Missing null check on user object")
        assert [r["id"] for r in results] == ["null-check"]
        assert results[0]["match_score"] == pytest.approx(0.25)
        assert results[0]["rank"] == pytest.approx(0.225)

    def test_type_filter(self, patterns):
        assert patterns.recommend("documentation", "null check") == []

    def test_min_confidence_filter(self, patterns):
        results = patterns.recommend("critical_security", "hardcoded api key", min_confidence=0.99)
        assert results == []
        assert patterns.recommend("critical_security", "hardcoded api key")[0]["id"] == "env-var-secret"

    def test_no_description_ranks_by_confidence(self, patterns):
        results = patterns.recommend("potential_issue", limit=10)
        assert [r["id"] for r in results] == [
            "null-check", "async-lock", "input-validation", "try-catch-async"
        ]
        assert all(r["match_score"] == 1.0 for r in results)

    def test_limit(self, patterns):
        assert len(patterns.recommend("potential_issue")) == 3

    def test_low_confidence_dropped(self, empty_patterns):
        empty_patterns.add_pattern(_spec())
        for _ in range(3):
            empty_patterns.record_failure("guard-clause")
        assert empty_patterns.recommend("refactor_suggestion", "nested if guard") == []
        assert empty_patterns.recommend("refactor_suggestion", "nested if guard", min_confidence=0.3)

    def test_configured_floor(self, config):
        tracker = PatternTracker(config.patterns_path, min_confidence=0.9)
        ids = [r["id"] for r in tracker.recommend("potential_issue", limit=10)]
        assert ids == ["null-check"]


class TestReadsAndExport:
    def test_list_patterns(self, patterns):
        listed = patterns.list_patterns(type="potential_issue")
        confidences = [p["confidence"] for p in listed]
        assert confidences == sorted(confidences, reverse=True)
        assert len(patterns.list_patterns(min_confidence=0.9)) == 2
        assert len(patterns.list_patterns(limit=2)) == 2

    def test_get_missing(self, patterns):
        assert patterns.get_pattern("nope") is None

    def test_stats(self, patterns):
        patterns.record_success("null-check")
        patterns.record_failure("async-lock")
        stats = patterns.get_stats(top_n=2)
        assert stats["total_patterns"] == 5
        assert stats["builtin_patterns"] == 5
        assert stats["total_applications"] == 2
        assert stats["success_rate"] == 0.5
        assert stats["by_type"]["potential_issue"]["count"] == 4
        assert [t["id"] for t in stats["top_patterns"]] == ["env-var-secret", "null-check"]

    def test_stats_empty(self, empty_patterns):
        stats = empty_patterns.get_stats()
        assert stats["total_patterns"] == 0
        assert stats["avg_confidence"] == 0.0
        assert stats["success_rate"] == 0.0

    def test_export(self, patterns):
        md = patterns.export_to_markdown()
        assert md.startswith("# Fix Patterns")
        assert md.index("## env-var-secret") < md.index("## null-check")
        assert "- Confidence: 95.0%" in md

    def test_export_empty(self, empty_patterns):
        assert "_No patterns._" in empty_patterns.export_to_markdown()


class TestPersistence:
    def test_reload(self, config):
        tracker = PatternTracker(config.patterns_path, seed_builtins=False)
        tracker.add_pattern(_spec())
        tracker.record_success("guard-clause", {"issue": "GOO-9"})
        again = PatternTracker(config.patterns_path, seed_builtins=False)
        assert again.get_pattern("guard-clause") == tracker.get_pattern("guard-clause")

    def test_document_layout(self, config, patterns):
        doc = json.loads(config.patterns_path.read_text(encoding="utf-8"))
        assert doc["version"] == 1
        assert {p["id"] for p in doc["patterns"]} == {b["id"] for b in BUILTIN_PATTERNS}

    def test_write_failure_reverts(self, patterns):
        before = patterns.get_pattern("null-check")
        with patch("goodflows.patterns.tracker.atomic_write_json",
                   side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                patterns.record_success("null-check")
            with pytest.raises(PersistenceError):
                patterns.add_pattern(_spec())
        assert patterns.get_pattern("null-check") == before
        assert patterns.get_pattern("guard-clause") is None
