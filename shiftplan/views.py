"""
Read-side projections of the plan: per-flight views, local filtering,
shift analysis, stats archive counts, performance reports and JSON backups.

Nothing here mutates the plan.
"""
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from shiftplan import config
from shiftplan.focus import focus_flights, is_in_focus
from shiftplan.models import Flight, PlanState, VisibilityOverride, matches_search, parse_base_date


class FilterMode(str, Enum):
    ALL = "all"
    FOCUS = "focus"
    COMPLETED = "completed"


@dataclass
class LocalFilters:
    """Per-client view settings. Never written to the shared document."""
    search: str = ''
    filter_mode: FilterMode = FilterMode.ALL
    show_completed: bool = True
    show_updated_only: bool = False
    staff_filter: Optional[str] = None


@dataclass
class FlightView:
    flight: Flight
    in_focus: bool
    is_done: bool
    is_delayed: bool
    gate: str
    gate_changed: bool
    time_changed: bool
    assigned_to: Optional[str] = None
    override: Optional[VisibilityOverride] = None
    change_log: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_updated(self) -> bool:
        f = self.flight
        return f.was_created_by_import or f.gate_was_updated_by_import or self.time_changed

    def to_dict(self) -> Dict[str, Any]:
        data = self.flight.to_dict()
        data.update({
            'inFocus': self.in_focus,
            'isDone': self.is_done,
            'isDelayed': self.is_delayed,
            'gate': self.gate,
            'gateChanged': self.gate_changed,
            'timeChanged': self.time_changed,
            'assignedTo': self.assigned_to,
            'override': self.override.value if self.override else None,
            'changeLog': list(self.change_log),
        })
        return data


def flight_view(plan: PlanState, flight: Flight) -> FlightView:
    override = plan.visibility_overrides.get(flight.id)
    gate = plan.effective_gate(flight)
    return FlightView(
        flight=flight,
        in_focus=is_in_focus(flight, plan.shift_config, override),
        is_done=flight.id in plan.completed_ids,
        is_delayed=bool(plan.delayed_flags.get(flight.id)),
        gate=gate,
        gate_changed=str(gate).strip() != flight.original_gate.strip(),
        time_changed=flight.id in plan.time_changes,
        assigned_to=plan.assignments.get(flight.id),
        override=override,
        change_log=plan.per_flight_change_log.get(flight.id, []),
    )


def flight_views(plan: PlanState) -> List[FlightView]:
    return [flight_view(plan, f) for f in plan.flights]


def visible_flights(plan: PlanState, filters: Optional[LocalFilters] = None) -> List[FlightView]:
    """Apply a client's local filters to the plan, in schedule order."""
    filters = filters or LocalFilters()
    mode = FilterMode(filters.filter_mode)
    visible = []
    for view in flight_views(plan):
        if not matches_search(view.flight, filters.search):
            continue
        if mode is FilterMode.FOCUS and not view.in_focus:
            continue
        if mode is FilterMode.COMPLETED and not view.is_done:
            continue
        if view.is_done and not filters.show_completed and mode is not FilterMode.COMPLETED:
            continue
        if filters.show_updated_only and not view.is_updated:
            continue
        if filters.staff_filter and view.assigned_to != filters.staff_filter:
            continue
        visible.append(view)
    return visible


@dataclass
class ShiftAnalysis:
    focus_count: int = 0
    completed_count: int = 0
    completion_pct: int = 0
    hourly_counts: Dict[str, int] = field(default_factory=dict)
    staff_load: Dict[str, Dict[str, int]] = field(default_factory=dict)
    pending_by_staff: Dict[str, int] = field(default_factory=dict)
    time_changed_count: int = 0
    gate_changed_count: int = 0
    new_added_count: int = 0
    delayed_count: int = 0
    delayed_flights: List[Flight] = field(default_factory=list)
    gaps: List[Dict[str, Any]] = field(default_factory=list)
    next_hour: List[Flight] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'focusCount': self.focus_count,
            'completedCount': self.completed_count,
            'completionPct': self.completion_pct,
            'hourlyCounts': dict(self.hourly_counts),
            'staffLoad': {k: dict(v) for k, v in self.staff_load.items()},
            'pendingByStaff': dict(self.pending_by_staff),
            'timeChangedCount': self.time_changed_count,
            'gateChangedCount': self.gate_changed_count,
            'newAddedCount': self.new_added_count,
            'delayedCount': self.delayed_count,
            'delayedFlights': [f.id for f in self.delayed_flights],
            'gaps': list(self.gaps),
            'nextHour': [f.id for f in self.next_hour],
        }


def analyze(plan: PlanState, now: Optional[datetime] = None,
            break_gap_minutes: int = config.BREAK_GAP_MINUTES) -> ShiftAnalysis:
    """Summarise the focused part of the shift: density, load, changes, delays and break gaps."""
    now = now or datetime.now()
    focused = focus_flights(plan)
    analysis = ShiftAnalysis(focus_count=len(focused))
    if not focused:
        return analysis

    for flight in focused:
        hour = f"{flight.scheduled_timestamp.hour:02d}"
        analysis.hourly_counts[hour] = analysis.hourly_counts.get(hour, 0) + 1

    load = {name: {'total': 0, 'done': 0} for name in plan.staff}
    for flight in focused:
        staff = plan.assignments.get(flight.id)
        if staff in load:
            load[staff]['total'] += 1
            if flight.id in plan.completed_ids:
                load[staff]['done'] += 1
            else:
                analysis.pending_by_staff[staff] = analysis.pending_by_staff.get(staff, 0) + 1
    analysis.staff_load = {name: counts for name, counts in load.items() if counts['total'] > 0}

    analysis.time_changed_count = len(plan.time_changes)
    analysis.gate_changed_count = sum(
        1 for f in focused
        if f.gate_was_updated_by_import
        or (plan.gate_overrides.get(f.id) and plan.gate_overrides[f.id] != f.original_gate)
    )
    analysis.new_added_count = sum(
        1 for f in focused if f.was_created_by_import and not f.gate_was_updated_by_import)

    analysis.completed_count = sum(1 for f in focused if f.id in plan.completed_ids)
    analysis.completion_pct = round(analysis.completed_count * 100 / len(focused))

    delayed = [f for f in focused if plan.delayed_flags.get(f.id)]
    analysis.delayed_count = len(delayed)
    analysis.delayed_flights = delayed[:5]

    for current, following in zip(focused, focused[1:]):
        diff = (following.scheduled_timestamp - current.scheduled_timestamp).total_seconds() / 60
        if diff >= break_gap_minutes:
            analysis.gaps.append({
                'start': current.time_label,
                'end': following.time_label,
                'minutes': int(diff),
            })

    horizon = now + timedelta(minutes=config.UPCOMING_WINDOW_MINUTES)
    analysis.next_hour = [
        f for f in focused
        if now < f.scheduled_timestamp <= horizon and f.id not in plan.completed_ids
    ]
    return analysis


def staff_completion_counts(plan: PlanState) -> Dict[str, int]:
    """Completed flights per roster member; assignments to people off the roster are not counted."""
    counts = {name: 0 for name in plan.staff}
    for flight_id in plan.completed_ids:
        staff = plan.assignments.get(flight_id)
        if staff in counts:
            counts[staff] += 1
    return counts


def stats_count(value: Any) -> int:
    """Archived counts are whole, non-negative numbers; anything unreadable counts as zero."""
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


class ReportPeriod(str, Enum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"

    def start(self, today: date) -> date:
        if self is ReportPeriod.WEEK:
            return today - timedelta(days=6)
        if self is ReportPeriod.MONTH:
            return today.replace(day=1)
        if self is ReportPeriod.TODAY:
            return today
        return date.min


@dataclass
class PerformanceReport:
    period: ReportPeriod
    counts: Dict[str, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def ranking(self) -> List[Tuple[str, int]]:
        return sorted(self.counts.items(), key=lambda item: -item[1])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'period': self.period.value,
            'counts': dict(self.counts),
            'total': self.total,
            'staffCount': len(self.counts),
        }


def performance_report(plan: PlanState, archive: Dict[str, Dict[str, Any]],
                       period: ReportPeriod = ReportPeriod.TODAY,
                       today: Optional[date] = None) -> PerformanceReport:
    """
    Completed flights per person over a period.

    TODAY reads the live plan only. Longer periods sum every archived day on or
    after the period start, then add the live plan when today has not been
    archived yet. Archive entries whose id is not an ISO date are ignored.
    """
    period = ReportPeriod(period)
    today = today or date.today()
    live = staff_completion_counts(plan)
    if period is ReportPeriod.TODAY:
        return PerformanceReport(period=period, counts=live)

    start = period.start(today)
    counts = {name: 0 for name in plan.staff}
    for day_id, day_counts in archive.items():
        try:
            day = parse_base_date(day_id)
        except ValueError:
            continue
        if day is None or day < start:
            continue
        for name, value in (day_counts or {}).items():
            counts[name] = counts.get(name, 0) + stats_count(value)

    if today.isoformat() not in archive:
        for name, value in live.items():
            counts[name] = counts.get(name, 0) + value
    return PerformanceReport(period=period, counts=counts)


def export_backup(plan: PlanState) -> str:
    return json.dumps(plan.to_document(), ensure_ascii=False)


def parse_backup(text: str) -> Dict[str, Any]:
    document = json.loads(text)
    if not isinstance(document, dict):
        raise ValueError("Backup must contain a JSON object")
    return document
