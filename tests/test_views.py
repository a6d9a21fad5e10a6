"""
Tests for derived flight views, local filters, shift analysis and backups.
"""
import json
import pytest
from datetime import date, datetime

from shiftplan.models import VisibilityOverride
from shiftplan.views import (
    FilterMode,
    LocalFilters,
    ReportPeriod,
    analyze,
    export_backup,
    flight_view,
    parse_backup,
    performance_report,
    staff_completion_counts,
    stats_count,
    visible_flights,
)


def _ids(views):
    return [v.flight.id for v in views]


class TestFlightView:
    """Test per-flight derived flags."""

    def test_gate_changed(self, plan):
        plan.gate_overrides["ARR-7701"] = "305"
        view = flight_view(plan, plan.find_flight("ARR-7701"))
        assert view.gate == "305"
        assert view.gate_changed is True

    def test_override_back_to_original_is_not_a_change(self, plan):
        plan.gate_overrides["ARR-7701"] = "301"
        assert flight_view(plan, plan.find_flight("ARR-7701")).gate_changed is False

    def test_flags(self, plan):
        plan.completed_ids.add("ARR-3001")
        plan.delayed_flags["ARR-3001"] = True
        plan.assignments["ARR-3001"] = "CAN B."
        plan.visibility_overrides["ARR-3001"] = VisibilityOverride.FORCE_FOCUS

        view = flight_view(plan, plan.find_flight("ARR-3001"))

        assert view.in_focus and view.is_done and view.is_delayed
        assert view.assigned_to == "CAN B."
        data = view.to_dict()
        assert data['override'] == "FORCE_FOCUS"
        assert data['id'] == "ARR-3001"


class TestVisibleFlights:
    """Test local filtering."""

    def test_default_shows_everything(self, plan):
        assert len(visible_flights(plan)) == 5

    def test_focus_mode(self, plan):
        views = visible_flights(plan, LocalFilters(filter_mode=FilterMode.FOCUS))
        assert _ids(views) == ["ARR-1234", "ARR-7701", "DEP-7702"]

    def test_hide_completed(self, plan):
        plan.completed_ids.add("ARR-7701")
        views = visible_flights(plan, LocalFilters(show_completed=False))
        assert "ARR-7701" not in _ids(views)

    def test_completed_mode_ignores_hide_completed(self, plan):
        plan.completed_ids.add("ARR-7701")
        views = visible_flights(plan, LocalFilters(filter_mode=FilterMode.COMPLETED, show_completed=False))
        assert _ids(views) == ["ARR-7701"]

    def test_search(self, plan):
        views = visible_flights(plan, LocalFilters(search="thy7702"))
        assert _ids(views) == ["DEP-7702"]

    def test_updated_only(self, plan):
        plan.find_flight("DEP-3002").gate_was_updated_by_import = True
        plan.time_changes["ARR-1234"] = {'original': "07:50", 'current': "08:00"}
        views = visible_flights(plan, LocalFilters(show_updated_only=True))
        assert _ids(views) == ["ARR-1234", "DEP-3002"]

    def test_staff_filter(self, plan):
        plan.assignments["DEP-7702"] = "AHMET Y."
        views = visible_flights(plan, LocalFilters(staff_filter="AHMET Y."))
        assert _ids(views) == ["DEP-7702"]


class TestAnalysis:
    """Test the shift analysis summary."""

    def test_empty_plan(self, plan):
        plan.flights = []
        assert analyze(plan).focus_count == 0

    def test_counts_and_load(self, plan):
        plan.assignments.update({"ARR-1234": "CAN B.", "ARR-7701": "CAN B.", "DEP-7702": "AHMET Y."})
        plan.completed_ids.add("ARR-1234")
        plan.delayed_flags["DEP-7702"] = True

        result = analyze(plan, now=datetime(2024, 1, 10, 15, 30))

        assert result.focus_count == 3
        assert result.hourly_counts == {"08": 1, "16": 1, "17": 1}
        assert result.staff_load == {"CAN B.": {'total': 2, 'done': 1}, "AHMET Y.": {'total': 1, 'done': 0}}
        assert result.pending_by_staff == {"CAN B.": 1, "AHMET Y.": 1}
        assert result.completion_pct == 33
        assert [f.id for f in result.delayed_flights] == ["DEP-7702"]
        assert [f.id for f in result.next_hour] == ["ARR-7701"]

    def test_break_gaps(self, plan):
        result = analyze(plan, now=datetime(2024, 1, 10, 6, 0))
        assert result.gaps == [
            {'start': "08:00", 'end': "16:00", 'minutes': 480},
            {'start': "16:00", 'end': "17:10", 'minutes': 70},
        ]

    def test_short_gaps_ignored(self, plan):
        result = analyze(plan, break_gap_minutes=90)
        assert [g['end'] for g in result.gaps] == ["16:00"]

    def test_change_summary(self, plan):
        plan.find_flight("ARR-7701").was_created_by_import = True
        plan.gate_overrides["DEP-7702"] = "302"
        plan.time_changes["ARR-1234"] = {'original': "07:50", 'current': "08:00"}

        result = analyze(plan)

        assert result.new_added_count == 1
        assert result.gate_changed_count == 1
        assert result.time_changed_count == 1

    def test_to_dict(self, plan):
        data = analyze(plan, now=datetime(2024, 1, 10, 6, 0)).to_dict()
        assert data['focusCount'] == 3
        assert data['completionPct'] == 0


class TestStatsAndBackup:
    """Test stats archive counts and JSON backups."""

    def test_staff_completion_counts(self, plan):
        plan.assignments.update({"ARR-1234": "CAN B.", "ARR-7701": "SOMEONE ELSE"})
        plan.completed_ids.update({"ARR-1234", "ARR-7701"})
        assert staff_completion_counts(plan) == {"AHMET Y.": 0, "CAN B.": 1}

    def test_backup_round_trip(self, plan):
        text = export_backup(plan)
        assert parse_backup(text) == json.loads(json.dumps(plan.to_document()))

    def test_backup_must_be_object(self):
        with pytest.raises(ValueError):
            parse_backup("[1, 2]")


class TestPerformanceReport:
    """Test per-person completion totals over a period."""

    ARCHIVE = {
        "2024-01-04": {"AHMET Y.": 2},
        "2024-01-03": {"CAN B.": 5},
        "not-a-date": {"AHMET Y.": 50},
    }

    @pytest.fixture
    def busy_plan(self, plan):
        plan.assignments.update({"ARR-1234": "CAN B.", "ARR-7701": "CAN B."})
        plan.completed_ids.update({"ARR-1234", "ARR-7701"})
        return plan

    def test_today_ignores_archive(self, busy_plan):
        report = performance_report(busy_plan, self.ARCHIVE, ReportPeriod.TODAY, today=date(2024, 1, 10))
        assert report.counts == {"AHMET Y.": 0, "CAN B.": 2}

    def test_week_window_covers_seven_days(self, busy_plan):
        report = performance_report(busy_plan, self.ARCHIVE, ReportPeriod.WEEK, today=date(2024, 1, 10))
        assert report.counts == {"AHMET Y.": 2, "CAN B.": 2}

    def test_archived_today_is_not_counted_twice(self, busy_plan):
        archive = {"2024-01-10": {"CAN B.": 2}}
        report = performance_report(busy_plan, archive, ReportPeriod.ALL, today=date(2024, 1, 10))
        assert report.counts == {"AHMET Y.": 0, "CAN B.": 2}

    def test_to_dict(self, busy_plan):
        data = performance_report(busy_plan, self.ARCHIVE, ReportPeriod.MONTH, today=date(2024, 1, 10)).to_dict()
        assert data == {
            'period': "month",
            'counts': {"AHMET Y.": 2, "CAN B.": 7},
            'total': 9,
            'staffCount': 2,
        }

    @pytest.mark.parametrize("value,expected", [(3, 3), ("4", 4), ("x", 0), (None, 0), (-2, 0)])
    def test_stats_count(self, value, expected):
        assert stats_count(value) == expected
