"""
Tests for the run_discovery CLI helpers (pure functions only, no DB).
"""

from models.discovery import DiscoveryJob, DiscoveryLogEntry
from scripts.run_discovery import filter_jobs, format_entry, parse_args


def _jobs():
    return [
        DiscoveryJob(area="Bay Area", specialty="florist"),
        DiscoveryJob(area="Bay Area", specialty="dj"),
        DiscoveryJob(area="Seattle", specialty="florist"),
    ]


class TestFilterJobs:

    def test_no_filters(self):
        assert len(filter_jobs(_jobs())) == 3

    def test_area_is_case_insensitive(self):
        result = filter_jobs(_jobs(), area="bay area")
        assert [j.specialty for j in result] == ["florist", "dj"]

    def test_area_and_specialty(self):
        result = filter_jobs(_jobs(), area="Seattle", specialty="FLORIST")
        assert len(result) == 1

    def test_no_match(self):
        assert filter_jobs(_jobs(), specialty="caterer") == []


class TestFormatEntry:

    def test_info_line(self):
        line = format_entry(DiscoveryLogEntry(level="info", message="Step 1/8: Checking job validity"))
        assert line == "  [INFO ] Step 1/8: Checking job validity"

    def test_error_includes_reason(self):
        entry = DiscoveryLogEntry(level="error", message="FAILED", data={"error": "boom"})
        assert format_entry(entry).endswith("FAILED (boom)")


class TestParseArgs:

    def test_flags(self):
        args = parse_args(["--area", "Bay Area", "--dry-run"])
        assert args.area == "Bay Area"
        assert args.dry_run is True
        assert args.sweep is False
