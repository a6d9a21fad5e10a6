"""
Focus-window evaluation: which flights belong to the active shift.

Windows are never wrapped. A night shift 20:00-08:00 is stored as 1200-1920 and
next-day flights are shifted by +1440 before the comparison.
"""
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from shiftplan import config
from shiftplan.models import Flight, PlanState, ShiftConfig, ShiftMode, VisibilityOverride, minutes_to_label


class ReportTag(str, Enum):
    IN_WINDOW = "in-window"
    BUFFER = "buffer"


def is_in_focus(flight: Flight, shift_config: ShiftConfig,
                override: Optional[VisibilityOverride] = None) -> bool:
    if override is VisibilityOverride.FORCE_FOCUS:
        return True
    if override is VisibilityOverride.FORCE_HIDE:
        return False
    if shift_config.mode is ShiftMode.ALL:
        return True
    minute = flight.minute_of_day
    return shift_config.window_start_minutes <= minute <= shift_config.window_end_minutes


def classify_for_report(flight: Flight, shift_config: ShiftConfig,
                        override: Optional[VisibilityOverride] = None,
                        completed: bool = False,
                        buffer_minutes: int = config.REPORT_BUFFER_MINUTES) -> Optional[ReportTag]:
    """
    Report variant of the focus check.

    Flights within buffer_minutes of either window edge are kept and tagged as
    buffer. Completed and pinned flights are always kept, tagged by where their
    time falls. Returns None for flights left out of the report.
    """
    if shift_config.mode is ShiftMode.ALL:
        return ReportTag.IN_WINDOW

    start = shift_config.window_start_minutes
    end = shift_config.window_end_minutes
    minute = flight.minute_of_day
    in_range = start - buffer_minutes <= minute <= end + buffer_minutes
    pinned = override is VisibilityOverride.FORCE_FOCUS
    if not (in_range or completed or pinned):
        return None
    return ReportTag.BUFFER if minute < start or minute > end else ReportTag.IN_WINDOW


def focus_flights(plan: PlanState) -> List[Flight]:
    return [
        f for f in sorted(plan.flights, key=lambda f: f.scheduled_timestamp)
        if is_in_focus(f, plan.shift_config, plan.visibility_overrides.get(f.id))
    ]


def report_entries(plan: PlanState,
                   buffer_minutes: int = config.REPORT_BUFFER_MINUTES) -> List[Tuple[Flight, ReportTag]]:
    entries = []
    for flight in sorted(plan.flights, key=lambda f: f.scheduled_timestamp):
        tag = classify_for_report(
            flight, plan.shift_config,
            override=plan.visibility_overrides.get(flight.id),
            completed=flight.id in plan.completed_ids,
            buffer_minutes=buffer_minutes,
        )
        if tag is not None:
            entries.append((flight, tag))
    return entries


def next_incomplete_in_window(flights: Iterable[Flight], plan: PlanState) -> Optional[Flight]:
    """Earliest flight inside the raw shift window that is not completed yet (overrides ignored)."""
    candidates = [
        f for f in flights
        if is_in_focus(f, plan.shift_config) and f.id not in plan.completed_ids
    ]
    return min(candidates, key=lambda f: f.scheduled_timestamp, default=None)


def describe_shift(shift_config: ShiftConfig) -> str:
    """Header label such as 'DAY (08:00 - 20:00)'."""
    name = shift_config.mode.value.upper()
    if shift_config.mode is ShiftMode.ALL:
        return f"{name} (ALL DAY)"
    start = minutes_to_label(shift_config.window_start_minutes)
    end = minutes_to_label(shift_config.window_end_minutes)
    return f"{name} ({start} - {end})"
