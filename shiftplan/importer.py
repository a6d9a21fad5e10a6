"""
Schedule import: header detection, row parsing and the merge/replace engine.

Rows arrive as a 2-D list of raw cell values (already decoded by the
spreadsheet collaborator). The sheet has an arrival half and a departure half
sharing the airline, gate and route columns.
"""
import logging
import re
import time as _time
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from shiftplan import config
from shiftplan.errors import HeaderNotFound, ImportModeRequired
from shiftplan.history import GATE_FIELD, log_change, push_snapshot
from shiftplan.models import (
    Flight,
    FlightType,
    PlanState,
    airline_code,
    derive_timestamp,
    flight_number_digits,
    match_key,
    minutes_to_label,
    new_flight_id,
    new_pair_id,
)

logger = logging.getLogger(__name__)

_DATE_TOKEN_RE = re.compile(r'(\d{2})\.(\d{2})\.(\d{4})')


class ImportMode(str, Enum):
    MERGE = "merge"
    REPLACE = "replace"


@dataclass
class HeaderLayout:
    row_index: int
    airline: int = -1
    gate: int = -1
    route: int = -1
    arrival_number: int = -1
    arrival_time: int = -1
    departure_number: int = -1
    departure_time: int = -1
    source_date: Optional[date] = None


@dataclass
class ParsedLeg:
    type: FlightType
    flight_number: str
    minutes: int
    airline_raw: str
    gate: str
    route: str

    @property
    def time_label(self) -> str:
        return minutes_to_label(self.minutes)

    @property
    def is_next_day(self) -> bool:
        return self.minutes < config.IMPORT_ROLLOVER_MINUTES

    @property
    def key(self):
        return self.flight_number, self.type, self.is_next_day


@dataclass
class ParsedRow:
    index: int
    legs: List[ParsedLeg] = field(default_factory=list)


@dataclass
class ParsedSchedule:
    layout: HeaderLayout
    rows: List[ParsedRow]

    @property
    def leg_count(self) -> int:
        return sum(len(r.legs) for r in self.rows)


@dataclass
class MergeResult:
    updated: int = 0
    added: int = 0
    unchanged: int = 0
    mode: ImportMode = ImportMode.MERGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode.value,
            'updated': self.updated,
            'added': self.added,
            'unchanged': self.unchanged,
        }


def _cell_text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _parse_date_token(text: str) -> Optional[date]:
    match = _DATE_TOKEN_RE.search(text)
    if not match:
        return None
    day, month, year = (int(g) for g in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        logger.warning(f"[importer] Ignoring invalid date token {match.group(0)}")
        return None


def locate_header(rows: Sequence[Sequence[Any]]) -> HeaderLayout:
    """
    Find the header row within the first HEADER_SCAN_ROWS rows and map its columns.

    Raises HeaderNotFound when no row carries both the flight number and airline markers.
    """
    source_date = None
    header_index = -1
    for i, row in enumerate(rows[:config.HEADER_SCAN_ROWS]):
        if not row:
            continue
        text = ' '.join(_cell_text(c) for c in row).upper()
        source_date = _parse_date_token(text) or source_date
        if all(marker in text for marker in config.HEADER_MARKERS):
            header_index = i
            break

    if header_index == -1:
        raise HeaderNotFound(min(len(rows), config.HEADER_SCAN_ROWS))

    header = [_cell_text(c).upper() for c in rows[header_index]]
    layout = HeaderLayout(row_index=header_index, source_date=source_date)

    for i, column in enumerate(header):
        if "AIRLINE" in column:
            layout.airline = i
        if "BRIDGE" in column or "GATE" in column:
            layout.gate = i
        if "STATIONS" in column or "ROUTE" in column:
            layout.route = i

    split = len(header) // 2
    for i, column in enumerate(header):
        is_number = "FLIGHT" in column or "NO" in column
        if i < split:
            if is_number:
                layout.arrival_number = i
            if "STA" in column or "TIME" in column:
                layout.arrival_time = i
        else:
            if is_number and layout.departure_number == -1:
                layout.departure_number = i
            if ("STD" in column or "TIME" in column) and layout.departure_time == -1:
                layout.departure_time = i

    logger.info(f"[importer] Header found at row {header_index}: {layout}")
    return layout


def cell_to_minutes(value: Any) -> Optional[int]:
    """Minute-of-day from a time cell: day fraction, 'H:MM' text, or a time/datetime value."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (datetime, time)):
        return value.hour * 60 + value.minute
    if isinstance(value, (int, float)):
        return round(value * config.MINUTES_PER_DAY) % config.MINUTES_PER_DAY
    if isinstance(value, str) and ':' in value:
        parts = value.strip().split(':')
        try:
            return (int(parts[0]) * 60 + int(parts[1])) % config.MINUTES_PER_DAY
        except ValueError:
            return None
    return None


def _cell(row: Sequence[Any], index: int) -> Any:
    if index < 0 or index >= len(row):
        return None
    return row[index]


def _split_route(route_raw: str):
    if '-' in route_raw:
        parts = route_raw.split('-')
        origin = parts[0].strip()
        destination = parts[1].strip() or route_raw
        return origin, destination
    return route_raw, route_raw


def parse_rows(rows: Sequence[Sequence[Any]]) -> ParsedSchedule:
    layout = locate_header(rows)
    parsed = []
    for offset, row in enumerate(rows[layout.row_index + 1:]):
        if not row:
            continue
        airline_raw = _cell_text(_cell(row, layout.airline))
        gate = _cell_text(_cell(row, layout.gate))
        origin, destination = _split_route(_cell_text(_cell(row, layout.route)))

        parsed_row = ParsedRow(index=offset)
        for flight_type, number_col, time_col, route in (
            (FlightType.ARRIVAL, layout.arrival_number, layout.arrival_time, origin),
            (FlightType.DEPARTURE, layout.departure_number, layout.departure_time, destination),
        ):
            number = _cell_text(_cell(row, number_col))
            raw_time = _cell(row, time_col)
            if not number or raw_time in (None, ''):
                continue
            minutes = cell_to_minutes(raw_time)
            if minutes is None:
                logger.warning(f"[importer] Row {offset}: unreadable {flight_type.short} time {raw_time!r}")
                continue
            parsed_row.legs.append(ParsedLeg(
                type=flight_type,
                flight_number=number,
                minutes=minutes,
                airline_raw=airline_raw,
                gate=gate,
                route=route,
            ))
        if parsed_row.legs:
            parsed.append(parsed_row)

    return ParsedSchedule(layout=layout, rows=parsed)


def build_flight(leg: ParsedLeg, base_date: date, pair_id: Optional[str],
                 created_by_import: bool) -> Flight:
    scheduled, is_next_day = derive_timestamp(base_date, leg.time_label, config.IMPORT_ROLLOVER_MINUTES)
    return Flight(
        id=new_flight_id(leg.type),
        type=leg.type,
        flight_number=leg.flight_number,
        flight_number_digits=flight_number_digits(leg.flight_number),
        airline_raw=leg.airline_raw,
        airline_code=airline_code(leg.airline_raw),
        route=leg.route,
        scheduled_timestamp=scheduled,
        time_label=leg.time_label,
        is_next_day=is_next_day,
        original_gate=leg.gate,
        pair_id=pair_id,
        was_created_by_import=created_by_import,
    )


def _apply_import_gate(plan: PlanState, flight: Flight, new_gate: str, timestamp: int) -> None:
    old_gate = flight.original_gate
    flight.original_gate = new_gate
    plan.gate_overrides[flight.id] = new_gate
    flight.gate_was_updated_by_import = True
    log_change(plan, flight.id, GATE_FIELD, old_gate, new_gate, timestamp)


def _row_pair_id(plan: PlanState, row: ParsedRow, matches: Dict[int, Optional[Flight]]) -> str:
    """
    Pair id for the legs of a row that will be inserted.

    When the other leg of the row already exists and its pair has no partner of
    the inserted type, the existing pair id is reused so the rotation stays linked.
    """
    for i, leg in enumerate(row.legs):
        existing = matches[i]
        if existing is None or not existing.pair_id:
            continue
        inserted_types = {l.type for j, l in enumerate(row.legs) if matches[j] is None}
        if existing.type.opposite in inserted_types and plan.paired_flight(existing) is None:
            return existing.pair_id
    return new_pair_id()


def merge_schedule(plan: PlanState, schedule: ParsedSchedule, timestamp: Optional[int] = None) -> MergeResult:
    """
    Reconcile imported legs with existing records without touching operator annotations.

    Existing ids are never reassigned; only gates change on matched records.
    """
    timestamp = timestamp or int(_time.time() * 1000)
    result = MergeResult(mode=ImportMode.MERGE)
    base_date = plan.pin_base_date(schedule.layout.source_date)
    index = {match_key(f): f for f in plan.flights}
    touched: Set[str] = set()

    for row in schedule.rows:
        matches = {i: index.get(leg.key) for i, leg in enumerate(row.legs)}
        pair_id = None
        if any(m is None for m in matches.values()):
            pair_id = _row_pair_id(plan, row, matches)

        for i, leg in enumerate(row.legs):
            existing = matches[i]
            if existing is None:
                flight = build_flight(leg, base_date, pair_id, created_by_import=True)
                plan.flights.append(flight)
                index[match_key(flight)] = flight
                result.added += 1
                logger.debug(f"[importer] Added {flight.type.short} {flight.flight_number} {flight.time_label}")
                continue

            if existing.id in touched:
                continue

            new_gate = leg.gate.strip()
            if existing.original_gate.strip() == new_gate:
                result.unchanged += 1
                continue

            _apply_import_gate(plan, existing, new_gate, timestamp)
            touched.add(existing.id)
            result.updated += 1

            paired = plan.paired_flight(existing)
            if paired is not None and paired.id not in touched and paired.original_gate.strip() != new_gate:
                _apply_import_gate(plan, paired, new_gate, timestamp)
                touched.add(paired.id)
                result.updated += 1

    plan.sort_flights()
    logger.info(f"[importer] Merge complete: {result.to_dict()}")
    return result


def replace_schedule(plan: PlanState, schedule: ParsedSchedule) -> MergeResult:
    """Discard every record and its annotations and rebuild the plan from the import."""
    # every annotation is keyed by an id that is about to disappear
    plan.assignments.clear()
    plan.gate_overrides.clear()
    plan.visibility_overrides.clear()
    plan.completed_ids.clear()
    plan.delayed_flags.clear()
    plan.time_changes.clear()
    plan.per_flight_change_log.clear()

    plan.base_date = schedule.layout.source_date or date.today()
    plan.flights = []
    for row in schedule.rows:
        pair_id = new_pair_id()
        for leg in row.legs:
            plan.flights.append(build_flight(leg, plan.base_date, pair_id, created_by_import=False))

    plan.sort_flights()
    result = MergeResult(added=len(plan.flights), mode=ImportMode.REPLACE)
    logger.info(f"[importer] Replaced plan with {result.added} flights for {plan.base_date}")
    return result


def import_schedule(plan: PlanState, rows: Sequence[Sequence[Any]],
                    mode: Optional[ImportMode] = None, timestamp: Optional[int] = None) -> MergeResult:
    """
    Import a schedule into the plan.

    A plan that already holds flights requires an explicit mode; an empty plan
    is built with the replace path. Parsing happens before any mutation, so a
    HeaderNotFound leaves the plan untouched.
    """
    if plan.flights and mode is None:
        raise ImportModeRequired(len(plan.flights))
    schedule = parse_rows(rows)
    mode = ImportMode(mode) if mode is not None else ImportMode.REPLACE

    push_snapshot(plan)
    if mode is ImportMode.MERGE:
        return merge_schedule(plan, schedule, timestamp)
    return replace_schedule(plan, schedule)
