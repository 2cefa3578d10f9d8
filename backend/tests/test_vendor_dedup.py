"""
Tests for vendor name normalization, exclusion lists and the safety-net
classification of provider candidates.
"""

from models.vendor import DiscoveredVendor
from services.vendor_dedup import (
    MAX_EXCLUDE_NAMES,
    build_exclusion_list,
    classify_candidates,
    normalize_vendor_name,
)


def _vendor(name: str, **overrides) -> DiscoveredVendor:
    return DiscoveredVendor(name=name, **overrides)


class TestNormalizeVendorName:

    def test_trims_and_lowercases(self):
        assert normalize_vendor_name("  Lotus Blooms Florals ") == "lotus blooms florals"

    def test_none_becomes_empty(self):
        assert normalize_vendor_name(None) == ""


class TestBuildExclusionList:

    def test_staged_names_come_first(self):
        result = build_exclusion_list(["b"], ["a", "c"])
        assert result == ["b", "a", "c"]

    def test_deduplicates_across_sources(self):
        result = build_exclusion_list(["Studio One"], ["studio one ", "Other"])
        assert result == ["studio one", "other"]

    def test_capped(self):
        onboarded = [f"vendor {i}" for i in range(MAX_EXCLUDE_NAMES + 50)]
        result = build_exclusion_list(["mine"], onboarded)
        assert len(result) == MAX_EXCLUDE_NAMES
        assert result[0] == "mine"

    def test_custom_cap(self):
        assert build_exclusion_list(["a", "b", "c"], ["d"], cap=2) == ["a", "b"]

    def test_blank_names_ignored(self):
        assert build_exclusion_list(["", "  "], ["x"]) == ["x"]


class TestClassifyCandidates:

    def test_new_vendor_is_staged(self):
        result = classify_candidates([_vendor("Fresh Studio")], {}, {})
        assert [d.action for d in result.decisions] == ["stage"]
        assert len(result.to_stage) == 1
        assert result.duplicates_found == 0

    def test_already_staged_for_job_is_skipped(self):
        result = classify_candidates(
            [_vendor("Old Studio")],
            {"old studio": "staged-1"},
            {},
        )
        decision = result.decisions[0]
        assert decision.action == "skip"
        assert decision.matched_id == "staged-1"
        assert result.to_stage == []
        assert result.skipped_same_job == 1
        assert result.duplicates_found == 1

    def test_onboarded_match_is_staged_as_duplicate(self):
        result = classify_candidates(
            [_vendor("Known Caterer")],
            {},
            {"known caterer": "vendor-9"},
        )
        decision = result.decisions[0]
        assert decision.action == "duplicate"
        assert decision.matched_id == "vendor-9"
        assert len(result.to_stage) == 1
        assert result.onboarded_duplicates == 1
        assert result.duplicates_found == 1

    def test_same_job_skip_wins_over_onboarded(self):
        result = classify_candidates(
            [_vendor("Both")],
            {"both": "staged-1"},
            {"both": "vendor-1"},
        )
        assert result.decisions[0].action == "skip"

    def test_repeat_within_batch_is_skipped(self):
        result = classify_candidates([_vendor("Twice"), _vendor(" twice ")], {}, {})
        assert [d.action for d in result.decisions] == ["stage", "skip"]
        assert result.decisions[1].matched_id is None
        assert result.skipped_same_job == 1

    def test_blank_name_is_ignored(self):
        result = classify_candidates([_vendor("   "), _vendor("Real")], {}, {})
        assert [d.normalized_name for d in result.decisions] == ["real"]

    def test_mixed_batch_counts(self):
        """Scenario: 5 returned, 2 already staged, 1 onboarded duplicate."""
        candidates = [_vendor(n) for n in ("A", "B", "C", "D", "E")]
        result = classify_candidates(
            candidates,
            {"a": "s1", "b": "s2"},
            {"c": "v1"},
        )
        assert result.skipped_same_job == 2
        assert result.onboarded_duplicates == 1
        assert len(result.to_stage) == 3
        assert result.duplicates_found == 3

    def test_limit_applies_after_dedup(self):
        """Already-staged names never use up the staging limit."""
        candidates = [_vendor(n) for n in ("Old", "New A", "New B", "New C")]
        result = classify_candidates(candidates, {"old": "s1"}, {}, limit=2)

        assert [d.normalized_name for d in result.to_stage] == ["new a", "new b"]
        assert result.skipped_same_job == 1
        assert result.over_limit == 1

    def test_no_limit_stages_everything_new(self):
        result = classify_candidates([_vendor("A"), _vendor("B")], {}, {})
        assert len(result.to_stage) == 2
        assert result.over_limit == 0
