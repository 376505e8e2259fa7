"""Tests for the SQLite solution store."""

from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest

from webrecover.errors import StoreError
from webrecover.generator.models import RiskLevel
from webrecover.solutions.models import (
    SolutionSearchOptions,
    UsageRecord,
    UsageStatistics,
    error_signature,
    normalize_error_message,
)
from webrecover.solutions.store import SolutionStore, compare_versions

from conftest import make_stored_solution


@pytest.fixture
def store():
    store = SolutionStore()
    yield store
    store.close()


# =============================================================================
# Error shape helpers
# =============================================================================


class TestErrorSignature:
    def test_normalization(self):
        assert normalize_error_message("Timeout  3000ms for 'button'") == "timeout Nms for button"

    def test_messages_differing_in_numbers_share_signature(self):
        first = error_signature("Timeout 3000ms exceeded")
        assert first == error_signature("timeout 5000ms   exceeded")
        assert first != error_signature("Element not found")
        assert len(first) == 16

    def test_compare_versions(self):
        assert compare_versions("1.1.0", "1.0.9") == 1
        assert compare_versions("1.0", "1.0.0") == 0
        assert compare_versions("0.9", "1.0") == -1


# =============================================================================
# Writes
# =============================================================================


class TestStoreAndGet:
    """Tests for persisting solutions."""

    def test_round_trip(self, store):
        solution = make_stored_solution()
        store.store(solution)

        loaded = store.get("sol-1")
        assert loaded.to_dict() == solution.to_dict()
        assert store.count() == 1

    def test_store_is_an_upsert(self, store):
        store.store(make_stored_solution())
        store.store(make_stored_solution(explanation="Updated"))

        assert store.count() == 1
        assert store.get("sol-1").explanation == "Updated"

    def test_unknown_id(self, store):
        assert store.get("missing") is None

    def test_file_store_survives_reopen(self, tmp_path):
        path = tmp_path / "library" / "solutions.db"
        first = SolutionStore(path)
        first.store(make_stored_solution())
        first.close()

        second = SolutionStore(path)
        assert second.get("sol-1") is not None
        assert second.schema_version() == "1.1.0"
        second.close()

    def test_unopenable_file_degrades_to_memory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        store = SolutionStore(blocker / "solutions.db")
        assert store.degraded is True
        assert store.in_memory is True
        store.store(make_stored_solution())
        assert store.count() == 1


class TestRecordUsage:
    """Tests for folding outcomes into usage statistics."""

    def test_each_call_counts_once(self, store):
        store.store(make_stored_solution())
        for _ in range(3):
            store.record_usage(UsageRecord("sol-1", success=True, execution_time_ms=1000))
        updated = store.record_usage(UsageRecord("sol-1", success=False, execution_time_ms=3000))

        assert updated.usage_statistics.total_uses == 4
        assert updated.usage_statistics.success_count == 3
        assert updated.usage_statistics.failure_count == 1
        assert updated.actual_success_rate == 0.75
        assert updated.performance_metrics.average_execution_time_ms == 1500
        assert store.get("sol-1").actual_success_rate == 0.75

    def test_usage_rows_are_kept(self, store):
        store.store(make_stored_solution())
        store.record_usage(UsageRecord("sol-1", success=False, execution_time_ms=50, error="detached"))

        [row] = store.usage_history("sol-1")
        assert row["success"] is False
        assert row["error"] == "detached"

    def test_unknown_solution_is_ignored(self, store):
        assert store.record_usage(UsageRecord("missing", success=True, execution_time_ms=1)) is None
        assert store.usage_history("missing") == []

    def test_low_success_rate_deprecates(self, store):
        store.store(
            make_stored_solution(
                actual_success_rate=0.1,
                usage_statistics=UsageStatistics(total_uses=10, success_count=1, failure_count=9),
            )
        )
        updated = store.record_usage(UsageRecord("sol-1", success=False, execution_time_ms=100))

        assert updated.deprecated is True
        assert updated.metadata.deprecated_reason == (
            "Auto-deprecated due to low success rate: 9% over 11 attempts"
        )
        assert store.get("sol-1").deprecated is True
        assert store.search() == []

    def test_not_deprecated_before_enough_uses(self, store):
        store.store(make_stored_solution())
        for _ in range(5):
            updated = store.record_usage(UsageRecord("sol-1", success=False, execution_time_ms=10))
        assert updated.deprecated is False

    def test_manual_deprecation(self, store):
        store.store(make_stored_solution())
        solution = store.deprecate("sol-1", "Page redesigned")
        assert solution.metadata.deprecated_reason == "Page redesigned"
        assert solution.metadata.deprecated_at is not None

    def test_deprecate_unknown_raises(self, store):
        with pytest.raises(StoreError, match="Solution missing not found"):
            store.deprecate("missing", "gone")


# =============================================================================
# Reads
# =============================================================================


class TestSearch:
    """Tests for filtered and sorted lookup."""

    @pytest.fixture
    def populated(self, store):
        store.store(make_stored_solution("strong", actual_success_rate=0.9, confidence=0.6))
        store.store(
            make_stored_solution(
                "weak",
                actual_success_rate=0.4,
                confidence=0.9,
                risk_level=RiskLevel.HIGH,
                tags=["input-related"],
                strategy="element_location",
            )
        )
        return store

    def test_sort_by_success_rate(self, populated):
        ids = [s.id for s in populated.search(SolutionSearchOptions(sort_by="success_rate"))]
        assert ids == ["strong", "weak"]

        ids = [s.id for s in populated.search(SolutionSearchOptions(sort_by="success_rate", sort_order="asc"))]
        assert ids == ["weak", "strong"]

    def test_sort_by_confidence(self, populated):
        ids = [s.id for s in populated.search(SolutionSearchOptions(sort_by="confidence"))]
        assert ids == ["weak", "strong"]

    @pytest.mark.parametrize(
        "options,expected",
        [
            (SolutionSearchOptions(min_success_rate=0.5), ["strong"]),
            (SolutionSearchOptions(max_risk_level=RiskLevel.MEDIUM), ["strong"]),
            (SolutionSearchOptions(tags=["input-related"]), ["weak"]),
            (SolutionSearchOptions(strategy="element_location"), ["weak"]),
            (SolutionSearchOptions(categories=["timing"]), ["strong", "weak"]),
            (SolutionSearchOptions(error_pattern="exceeded waiting"), ["strong", "weak"]),
        ],
    )
    def test_filters(self, populated, options, expected):
        assert sorted(s.id for s in populated.search(options)) == expected

    def test_limit_and_offset(self, populated):
        page = populated.search(SolutionSearchOptions(sort_by="success_rate", limit=1, offset=1))
        assert [s.id for s in page] == ["weak"]

    def test_deprecated_solutions_are_opt_in(self, populated):
        populated.deprecate("weak", "obsolete")
        assert [s.id for s in populated.search()] == ["strong"]
        assert len(populated.search(SolutionSearchOptions(include_deprecated=True))) == 2


class TestFullTextSearch:
    def test_matches_any_field(self, store):
        store.store(make_stored_solution("a", explanation="Dismiss the cookie overlay first"))
        store.store(make_stored_solution("b", strategy="network_retry", explanation="Retry once requests settle"))

        assert [s.id for s in store.full_text_search(["overlay"])] == ["a"]
        assert [s.id for s in store.full_text_search(["network_retry"])] == ["b"]

    def test_no_terms(self, store):
        store.store(make_stored_solution())
        assert store.full_text_search([]) == []

    def test_no_match(self, store):
        store.store(make_stored_solution())
        assert store.full_text_search(["captcha"]) == []


class TestFindSimilar:
    """Tests for fuzzy matching of error shapes."""

    def test_exact_signature_scores_one(self, store):
        store.store(make_stored_solution())
        [(solution, similarity)] = store.find_similar("Timeout 5000ms exceeded waiting for #pay")

        assert solution.id == "sol-1"
        assert similarity == 1.0

    def test_contained_pattern(self, store):
        store.store(make_stored_solution())
        [(solution, similarity)] = store.find_similar("exceeded waiting")
        assert similarity == 0.8

    def test_unrelated_message(self, store):
        store.store(make_stored_solution())
        assert store.find_similar("Permission denied by policy") == []


# =============================================================================
# Statistics and maintenance
# =============================================================================


class TestStatistics:
    def test_totals(self, store):
        store.store(make_stored_solution("a", actual_success_rate=1.0))
        store.store(make_stored_solution("b", actual_success_rate=0.5, strategy="element_location"))
        store.deprecate("b", "obsolete")
        store.record_usage(UsageRecord("a", success=True, execution_time_ms=200))

        stats = store.get_statistics()
        assert stats["total_solutions"] == 2
        assert stats["active_solutions"] == 1
        assert stats["deprecated_solutions"] == 1
        assert stats["average_success_rate"] == 0.75
        assert stats["top_strategies"] == [{"strategy": "wait_strategy", "count": 1, "avg_success_rate": 1.0}]
        assert stats["recent_activity"][0]["uses"] == 1
        assert stats["performance_metrics"]["fastest_solution"] == "a"

    def test_empty_store(self, store):
        stats = store.get_statistics()
        assert stats["total_solutions"] == 0
        assert stats["average_success_rate"] == 0.0


class TestMaintenance:
    def test_cleanup_old_usage(self, store):
        store.store(make_stored_solution())
        old = datetime.now() - timedelta(days=200)
        store.record_usage(UsageRecord("sol-1", success=True, execution_time_ms=10, timestamp=old))
        store.record_usage(UsageRecord("sol-1", success=True, execution_time_ms=10))

        assert store.cleanup_old_usage(days=90) == 1
        assert len(store.usage_history("sol-1")) == 1

    def test_backups_are_pruned(self, tmp_path):
        store = SolutionStore(backup_dir=tmp_path, max_backups=2)
        store.store(make_stored_solution())

        paths = [store.create_backup() for _ in range(3)]

        assert len(store.list_backups()) == 2
        assert not paths[0].exists()
        info = json.loads((tmp_path / f"{paths[-1].name}.metadata.json").read_text())
        assert info["total_solutions"] == 1
        assert info["version"] == "1.1.0"


# =============================================================================
# Export / import
# =============================================================================


class TestExportImport:
    """Tests for moving solutions between stores."""

    def test_json_export_skips_deprecated(self, store):
        store.store(make_stored_solution("a"))
        store.store(make_stored_solution("b"))
        store.deprecate("b", "obsolete")

        document = json.loads(store.export())
        assert document["total_solutions"] == 1
        assert document["solutions"][0]["id"] == "a"
        assert json.loads(store.export(include_deprecated=True))["total_solutions"] == 2

    def test_sql_export(self, store):
        store.store(make_stored_solution(explanation="It's late"))
        sql = store.export(fmt="sql")

        assert sql.startswith("-- Solution library export")
        assert "INSERT OR REPLACE INTO solutions" in sql
        assert "It''s late" in sql

    def test_import_into_another_store(self, store):
        store.store(make_stored_solution())
        exported = store.export()

        target = SolutionStore()
        first = target.import_solutions(exported)
        again = target.import_solutions(exported)
        replaced = target.import_solutions(exported, overwrite=True)

        assert (first.imported, first.skipped) == (1, 0)
        assert (again.imported, again.skipped) == (0, 1)
        assert replaced.imported == 1
        assert target.get("sol-1").explanation == "Wait for the overlay to clear"

    def test_validation_rejects_incomplete_records(self, store):
        result = store.import_solutions({"solutions": [{"id": "x", "error_pattern": "boom"}]}, validate=True)
        assert result.imported == 0
        assert result.errors == ["Invalid solution data: x"]

    def test_malformed_document(self, store):
        assert store.import_solutions("{not json").errors[0].startswith("Import failed:")
        assert store.import_solutions({"items": []}).errors == [
            "Import failed: Invalid import format: missing solutions array"
        ]
