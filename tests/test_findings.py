"""Tests for goodflows.findings: the deduplicated finding store."""

import json
from unittest.mock import patch

import pytest

from goodflows.core.errors import NotFoundError, PersistenceError, ValidationError
from goodflows.findings.export import render_findings_markdown
from goodflows.findings.store import FindingStore


def _finding(file="src/a.py", type="potential_issue", description="Null dereference", **extra):
    return {"file": file, "type": type, "description": description, **extra}


class TestAddFinding:
    def test_add_new(self, findings, sample_finding):
        result = findings.add_finding(sample_finding)
        assert result["added"] is True
        assert len(result["hash"]) == 16
        stored = findings.get(result["hash"])
        assert stored["file"] == "src/auth/login.py"
        assert stored["status"] == "open"
        assert stored["line_range"] == [42, 48]
        assert stored["created_at"] == stored["updated_at"]

    def test_duplicate_is_idempotent(self, findings, sample_finding):
        first = findings.add_finding(sample_finding)
        before = findings.get(first["hash"])
        second = findings.add_finding(dict(sample_finding))
        assert second["added"] is False
        assert second["hash"] == first["hash"]
        assert second["existing"] == before
        assert findings.get(first["hash"]) == before
        assert len(findings) == 1
        assert findings.get_stats()["duplicates_skipped"] == 1

    def test_normalized_duplicate(self, findings):
        findings.add_finding(_finding(file="src/a.py", description="Null dereference"))
        result = findings.add_finding(_finding(file="./src\\a.py", description="  null DEREFERENCE "))
        assert result["added"] is False

    def test_single_line_range(self, findings):
        h = findings.add_finding(_finding(line_range=7))["hash"]
        assert findings.get(h)["line_range"] == [7, 7]

    @pytest.mark.parametrize("missing", ["file", "type", "description"])
    def test_missing_required_field(self, findings, missing):
        data = _finding()
        del data[missing]
        with pytest.raises(ValidationError) as exc_info:
            findings.add_finding(data)
        assert f"{missing} is required" in exc_info.value.errors
        assert len(findings) == 0

    def test_bad_line_range(self, findings):
        with pytest.raises(ValidationError):
            findings.add_finding(_finding(line_range=[9, 3]))

    def test_bad_status(self, findings):
        with pytest.raises(ValidationError):
            findings.add_finding(_finding(status="done"))

    def test_not_a_mapping(self, findings):
        with pytest.raises(ValidationError):
            findings.add_finding("src/a.py")

    def test_add_findings_bulk(self, findings):
        result = findings.add_findings([
            _finding(description="one"),
            _finding(description="two"),
            _finding(description="one"),
        ])
        assert result["added"] == 2
        assert result["skipped"] == 1
        assert len(result["hashes"]) == 3
        assert result["hashes"][0] == result["hashes"][2]


class TestUpdateFinding:
    def test_update_status_and_issue(self, findings):
        h = findings.add_finding(_finding())["hash"]
        updated = findings.update_finding(h, {"status": "fixed", "issue_id": "GOO-31"})
        assert updated["status"] == "fixed"
        assert updated["issue_id"] == "GOO-31"
        assert updated["updated_at"] >= updated["created_at"]
        assert findings.get_by_issue("GOO-31")["hash"] == h

    def test_relink_issue(self, findings):
        h = findings.add_finding(_finding())["hash"]
        findings.update_finding(h, {"issue_id": "GOO-1"})
        findings.update_finding(h, {"issue_id": "GOO-2"})
        assert findings.get_by_issue("GOO-1") is None
        assert findings.get_by_issue("GOO-2")["hash"] == h

    def test_unknown_hash(self, findings):
        with pytest.raises(NotFoundError):
            findings.update_finding("0" * 16, {"status": "fixed"})

    def test_invalid_status(self, findings):
        h = findings.add_finding(_finding())["hash"]
        with pytest.raises(ValidationError):
            findings.update_finding(h, {"status": "resolved"})
        assert findings.get(h)["status"] == "open"


class TestReads:
    def test_get_missing(self, findings):
        assert findings.get("nope") is None
        assert findings.get_by_issue("GOO-404") is None

    def test_exists(self, findings):
        findings.add_finding(_finding())
        assert findings.exists(_finding())
        assert not findings.exists(_finding(description="other"))
        assert not findings.exists({"file": "a.py"})

    def test_query_filters(self, findings):
        findings.add_finding(_finding(file="src/api/user.py", type="potential_issue"))
        findings.add_finding(_finding(file="src/api/order.py", type="performance"))
        findings.add_finding(_finding(file="docs/readme.md", type="documentation"))

        assert len(findings.query()) == 3
        assert [f["type"] for f in findings.query(type="performance")] == ["performance"]
        assert {f["file"] for f in findings.query(file="src/api")} == {
            "src/api/user.py", "src/api/order.py"
        }
        assert findings.query(type="performance", file="user") == []
        assert findings.query(type="nonexistent") == []

    def test_query_status_filter(self, findings):
        h = findings.add_finding(_finding(description="a"))["hash"]
        findings.add_finding(_finding(description="b"))
        findings.update_finding(h, {"status": "fixed"})
        fixed = findings.query(status="fixed")
        assert [f["hash"] for f in fixed] == [h]

    def test_query_newest_first(self, findings):
        hashes = [findings.add_finding(_finding(description=f"issue {i}"))["hash"] for i in range(3)]
        assert [f["hash"] for f in findings.query()] == list(reversed(hashes))

    def test_query_limit_and_uniqueness(self, findings):
        for i in range(30):
            findings.add_finding(_finding(description=f"issue number {i}"))
        page = findings.query()
        assert len(page) == 20
        assert len({f["hash"] for f in page}) == 20
        assert len(findings.query(limit=5)) == 5

    def test_query_bad_limit(self, findings):
        with pytest.raises(ValidationError):
            findings.query(limit=0)

    def test_results_are_copies(self, findings):
        h = findings.add_finding(_finding())["hash"]
        findings.get(h)["status"] = "fixed"
        findings.query()[0]["description"] = "mutated"
        assert findings.get(h)["status"] == "open"
        assert findings.get(h)["description"] == "Null dereference"


class TestFindSimilar:
    def test_below_threshold_not_returned(self, findings):
        findings.add_finding(_finding(description="SQL injection in login handler"))
        assert findings.find_similar("Possible SQL injection on login endpoint") == []

    def test_lower_threshold_matches(self, findings):
        findings.add_finding(_finding(description="SQL injection in login handler"))
        results = findings.find_similar("Possible SQL injection on login endpoint", threshold=0.3)
        assert len(results) == 1
        assert results[0]["similarity"] == pytest.approx(0.375)

    def test_sorted_descending(self, findings):
        findings.add_finding(_finding(description="missing null check in parser"))
        findings.add_finding(_finding(description="missing null check"))
        results = findings.find_similar("missing null check", threshold=0.5)
        assert [r["description"] for r in results] == [
            "missing null check", "missing null check in parser"
        ]
        assert results[0]["similarity"] == 1.0

    def test_filters(self, findings):
        findings.add_finding(_finding(file="a.py", description="missing null check"))
        findings.add_finding(_finding(file="b.py", type="performance", description="missing null check"))
        assert len(findings.find_similar("missing null check", threshold=0.9)) == 2
        assert len(findings.find_similar("missing null check", threshold=0.9, file="b.py")) == 1
        assert len(findings.find_similar("missing null check", threshold=0.9, type="potential_issue")) == 1

    def test_no_tokens_no_results(self, findings):
        findings.add_finding(_finding())
        assert findings.find_similar("", threshold=0.0) == []

    def test_bad_threshold(self, findings):
        with pytest.raises(ValidationError):
            findings.find_similar("x", threshold=1.5)


class TestStatsAndExport:
    def test_stats(self, findings):
        h = findings.add_finding(_finding(file="a.py", description="one"))["hash"]
        findings.add_finding(_finding(file="b.py", type="performance", description="two"))
        findings.add_finding(_finding(file="a.py", description="one"))
        findings.update_finding(h, {"status": "fixed"})
        stats = findings.get_stats()
        assert stats["total"] == 2
        assert stats["open"] == 1
        assert stats["closed"] == 1
        assert stats["by_status"]["fixed"] == 1
        assert stats["by_type"] == {"performance": 1, "potential_issue": 1}
        assert stats["duplicates_skipped"] == 1
        assert stats["files_covered"] == 2

    def test_export_empty(self, findings):
        md = findings.export_to_markdown()
        assert md.startswith("# Findings Log")
        assert "_No findings._" in md

    def test_export_sections(self, findings):
        h = findings.add_finding(_finding(file="src/a.py", line_range=[3, 9], severity="high"))["hash"]
        findings.add_finding(_finding(type="documentation", description="Missing docstring"))
        findings.update_finding(h, {"issue_id": "GOO-7"})
        md = findings.export_to_markdown()
        assert md.index("## documentation") < md.index("## potential_issue")
        assert f"- `{h[:8]}` **src/a.py:3-9** [open] Null dereference (severity: high, issue: GOO-7)" in md
        assert "- **Total**: 2" in md

    def test_export_filters_line(self, findings):
        findings.add_finding(_finding())
        md = findings.export_to_markdown(type="potential_issue", status="open")
        assert "*Filters: type=potential_issue, status=open*" in md

    def test_export_deterministic(self, findings):
        findings.add_finding(_finding())
        assert findings.export_to_markdown() == findings.export_to_markdown()

    def test_render_single_line(self):
        md = render_findings_markdown([{
            "hash": "abcdef0123456789", "file": "x.py", "line_range": [4, 4],
            "type": "performance", "status": "fixed", "description": "slow loop",
        }])
        assert "**x.py:4**" in md
        assert "- **Closed**: 1" in md


class TestPersistence:
    def test_reload(self, config):
        store = FindingStore(config.findings_path)
        h = store.add_finding(_finding())["hash"]
        store.update_finding(h, {"issue_id": "GOO-3"})
        store.add_finding(_finding())

        reloaded = FindingStore(config.findings_path)
        assert reloaded.get(h) == store.get(h)
        assert reloaded.get_by_issue("GOO-3")["hash"] == h
        assert reloaded.query(file="src/a.py")[0]["hash"] == h
        assert reloaded.get_stats()["duplicates_skipped"] == 1

    def test_document_layout(self, config, findings):
        findings.add_finding(_finding())
        doc = json.loads(config.findings_path.read_text(encoding="utf-8"))
        assert doc["version"] == 1
        assert len(doc["findings"]) == 1
        assert set(doc["index"]) == {"by_file", "by_type", "by_issue"}

    def test_write_failure_reverts(self, findings):
        h = findings.add_finding(_finding())["hash"]
        with patch("goodflows.findings.store.atomic_write_json",
                   side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                findings.add_finding(_finding(description="another"))
            with pytest.raises(PersistenceError):
                findings.update_finding(h, {"status": "fixed"})
        assert len(findings) == 1
        assert findings.get(h)["status"] == "open"
        assert findings.query(type="potential_issue") == [findings.get(h)]

    def test_corrupt_file_starts_empty(self, config):
        config.findings_path.write_text("{broken", encoding="utf-8")
        store = FindingStore(config.findings_path)
        assert len(store) == 0
        assert config.findings_path.with_suffix(".json.corrupt").exists()
