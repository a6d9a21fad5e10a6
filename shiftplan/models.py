"""
Flight entity model and the shared plan document.

The plan document is serialized as a flat camelCase keyed structure so every
connected client reads and writes the same shape.
"""
import re
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from shiftplan import config
from shiftplan.errors import FlightNotFound, InvalidTimeLabel


class FlightType(str, Enum):
    ARRIVAL = "ARRIVAL"
    DEPARTURE = "DEPARTURE"

    @property
    def opposite(self) -> "FlightType":
        return FlightType.DEPARTURE if self is FlightType.ARRIVAL else FlightType.ARRIVAL

    @property
    def short(self) -> str:
        return "ARR" if self is FlightType.ARRIVAL else "DEP"


class VisibilityOverride(str, Enum):
    FORCE_FOCUS = "FORCE_FOCUS"
    FORCE_HIDE = "FORCE_HIDE"


class ShiftMode(str, Enum):
    DAY = "day"
    NIGHT = "night"
    ALL = "all"


MatchKey = Tuple[str, FlightType, bool]

_TIME_LABEL_RE = re.compile(r'^([0-2]?[0-9]):([0-5][0-9])$')
_DIGITS_RE = re.compile(r'\d+')


def parse_time_label(value: str) -> Tuple[int, int]:
    """
    Parse an operator-entered time into (hours, minutes).
    Accepts "17:45", "7:45", "1745" and "745".
    """
    text = str(value or '').strip()
    if re.fullmatch(r'\d{4}', text):
        text = f"{text[:2]}:{text[2:]}"
    elif re.fullmatch(r'\d{3}', text):
        text = f"0{text[:1]}:{text[1:]}"

    match = _TIME_LABEL_RE.match(text)
    if not match:
        raise InvalidTimeLabel(value)
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23:
        raise InvalidTimeLabel(value)
    return hours, minutes


def minutes_to_label(minutes: int) -> str:
    hours = (minutes // 60) % 24
    return f"{hours:02d}:{minutes % 60:02d}"


def flight_number_digits(flight_number: str) -> str:
    match = _DIGITS_RE.search(flight_number)
    return match.group(0) if match else flight_number


def airline_code(airline_raw: str) -> str:
    return str(airline_raw).split('/')[0].strip()


def derive_timestamp(base_date: date, time_label: str,
                     rollover_threshold_minutes: int) -> Tuple[datetime, bool]:
    """
    Resolve a wall-clock label against the plan's base date.

    A label whose minute-of-day is below the rollover threshold belongs to the
    next calendar day. Returns (scheduled datetime, is_next_day).
    """
    hours, minutes = parse_time_label(time_label)
    is_next_day = hours * 60 + minutes < rollover_threshold_minutes
    day = base_date + timedelta(days=1) if is_next_day else base_date
    return datetime(day.year, day.month, day.day, hours, minutes), is_next_day


def new_flight_id(flight_type: "FlightType", manual: bool = False) -> str:
    prefix = f"MANUAL-{flight_type.short}" if manual else flight_type.short
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def new_pair_id() -> str:
    return f"pair-{uuid.uuid4().hex[:10]}"


@dataclass
class Flight:
    id: str
    type: FlightType
    flight_number: str
    flight_number_digits: str
    airline_raw: str
    airline_code: str
    route: str
    scheduled_timestamp: datetime
    time_label: str
    is_next_day: bool
    original_gate: str = ''
    pair_id: Optional[str] = None
    was_created_by_import: bool = False
    gate_was_updated_by_import: bool = False
    original_time_label: Optional[str] = None
    is_manual: bool = False

    @property
    def minute_of_day(self) -> int:
        """Minutes since midnight of the base date, extended past 1440 for next-day flights."""
        ts = self.scheduled_timestamp
        return ts.hour * 60 + ts.minute + (config.MINUTES_PER_DAY if self.is_next_day else 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'flightNumber': self.flight_number,
            'flightNumberDigits': self.flight_number_digits,
            'airlineRaw': self.airline_raw,
            'airlineCode': self.airline_code,
            'route': self.route,
            'scheduledTimestamp': self.scheduled_timestamp.isoformat(),
            'timeLabel': self.time_label,
            'isNextDay': self.is_next_day,
            'originalGate': self.original_gate,
            'pairId': self.pair_id,
            'wasCreatedByImport': self.was_created_by_import,
            'gateWasUpdatedByImport': self.gate_was_updated_by_import,
            'originalTimeLabel': self.original_time_label,
            'isManual': self.is_manual,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Flight":
        number = str(data.get('flightNumber', '')).strip()
        airline_raw = str(data.get('airlineRaw', '') or '')
        return cls(
            id=data['id'],
            type=FlightType(data['type']),
            flight_number=number,
            flight_number_digits=data.get('flightNumberDigits') or flight_number_digits(number),
            airline_raw=airline_raw,
            airline_code=data.get('airlineCode') or airline_code(airline_raw),
            route=data.get('route', '') or '',
            scheduled_timestamp=datetime.fromisoformat(data['scheduledTimestamp']),
            time_label=data['timeLabel'],
            is_next_day=bool(data.get('isNextDay', False)),
            original_gate=str(data.get('originalGate', '') or ''),
            pair_id=data.get('pairId'),
            was_created_by_import=bool(data.get('wasCreatedByImport', False)),
            gate_was_updated_by_import=bool(data.get('gateWasUpdatedByImport', False)),
            original_time_label=data.get('originalTimeLabel'),
            is_manual=bool(data.get('isManual', False)),
        )


def match_key(flight: Flight) -> MatchKey:
    """Identity used to recognise the same flight across re-imports."""
    return flight.flight_number, flight.type, flight.is_next_day


def matches_search(flight: Flight, term: str) -> bool:
    """Lenient search over number, airline aliases, gate, route and type."""
    needle = re.sub(r'\s+', '', term or '').lower()
    if not needle:
        return True
    haystack = ''.join([
        flight.flight_number, flight.airline_code, flight.original_gate, flight.route,
        flight.type.short, flight.airline_raw, flight.flight_number_digits
    ])
    if needle in re.sub(r'\s+', '', haystack).lower():
        return True
    # "PC3001" should find a row stored as number "3001" with airline "PC/PGT"
    aliases = [alias.strip().lower() for alias in flight.airline_raw.split('/')]
    return any(needle in f"{alias}{flight.flight_number_digits}".lower() for alias in aliases)


@dataclass
class ShiftConfig:
    mode: ShiftMode = ShiftMode.DAY
    window_start_minutes: int = config.SHIFT_PRESETS["day"][0]
    window_end_minutes: int = config.SHIFT_PRESETS["day"][1]

    @classmethod
    def preset(cls, mode: ShiftMode) -> "ShiftConfig":
        start, end = config.SHIFT_PRESETS[ShiftMode(mode).value]
        return cls(ShiftMode(mode), start, end)

    @classmethod
    def from_labels(cls, mode: ShiftMode, start_label: str, end_label: str) -> "ShiftConfig":
        """Build a window from HH:MM labels; an end before the start crosses midnight."""
        start_h, start_m = parse_time_label(start_label)
        end_h, end_m = parse_time_label(end_label)
        start = start_h * 60 + start_m
        end = end_h * 60 + end_m
        if end < start:
            end += config.MINUTES_PER_DAY
        return cls(ShiftMode(mode), start, end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode.value,
            'windowStartMinutes': self.window_start_minutes,
            'windowEndMinutes': self.window_end_minutes,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ShiftConfig":
        if not data:
            return cls()
        default = cls.preset(ShiftMode(data.get('mode') or config.DEFAULT_SHIFT_MODE))
        return cls(
            mode=default.mode,
            window_start_minutes=int(data.get('windowStartMinutes', default.window_start_minutes)),
            window_end_minutes=int(data.get('windowEndMinutes', default.window_end_minutes)),
        )


def parse_base_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(str(value)[:10])


@dataclass
class PlanState:
    """The single shared plan document."""
    flights: List[Flight] = field(default_factory=list)
    assignments: Dict[str, str] = field(default_factory=dict)
    gate_overrides: Dict[str, str] = field(default_factory=dict)
    visibility_overrides: Dict[str, VisibilityOverride] = field(default_factory=dict)
    completed_ids: Set[str] = field(default_factory=set)
    delayed_flags: Dict[str, bool] = field(default_factory=dict)
    time_changes: Dict[str, Dict[str, str]] = field(default_factory=dict)
    shift_config: ShiftConfig = field(default_factory=ShiftConfig)
    base_date: Optional[date] = None
    history_snapshots: Deque[Dict[str, Any]] = field(
        default_factory=lambda: deque(maxlen=config.HISTORY_LIMIT))
    per_flight_change_log: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    staff: List[str] = field(default_factory=lambda: list(config.DEFAULT_STAFF))
    last_mutation_timestamp: int = 0

    def find_flight(self, flight_id: str) -> Optional[Flight]:
        return next((f for f in self.flights if f.id == flight_id), None)

    def require_flight(self, flight_id: str) -> Flight:
        flight = self.find_flight(flight_id)
        if flight is None:
            raise FlightNotFound(flight_id)
        return flight

    def paired_flight(self, flight: Flight) -> Optional[Flight]:
        if not flight.pair_id:
            return None
        return next(
            (f for f in self.flights
             if f.pair_id == flight.pair_id and f.id != flight.id and f.type is flight.type.opposite),
            None
        )

    def effective_gate(self, flight: Flight) -> str:
        return self.gate_overrides.get(flight.id, flight.original_gate)

    def pin_base_date(self, day: Optional[date] = None) -> date:
        """The plan's day; a dateless plan is pinned to day (default today) the first time a flight needs one."""
        if self.base_date is None:
            self.base_date = day or date.today()
        return self.base_date

    def sort_flights(self) -> None:
        self.flights.sort(key=lambda f: f.scheduled_timestamp)

    def forget_flight(self, flight_id: str) -> None:
        """Drop every annotation keyed by a flight id."""
        self.assignments.pop(flight_id, None)
        self.gate_overrides.pop(flight_id, None)
        self.visibility_overrides.pop(flight_id, None)
        self.delayed_flags.pop(flight_id, None)
        self.time_changes.pop(flight_id, None)
        self.per_flight_change_log.pop(flight_id, None)
        self.completed_ids.discard(flight_id)

    def to_document(self) -> Dict[str, Any]:
        return {
            'flights': [f.to_dict() for f in self.flights],
            'assignments': dict(self.assignments),
            'gateOverrides': dict(self.gate_overrides),
            'visibilityOverrides': {k: v.value for k, v in self.visibility_overrides.items()},
            'completedIds': sorted(self.completed_ids),
            'delayedFlags': dict(self.delayed_flags),
            'timeChanges': {k: dict(v) for k, v in self.time_changes.items()},
            'shiftConfig': self.shift_config.to_dict(),
            'baseDate': self.base_date.isoformat() if self.base_date else None,
            'historySnapshots': list(self.history_snapshots),
            'perFlightChangeLog': {k: list(v) for k, v in self.per_flight_change_log.items()},
            'staff': list(self.staff),
            'lastMutationTimestamp': self.last_mutation_timestamp,
        }

    @classmethod
    def from_document(cls, document: Optional[Dict[str, Any]]) -> "PlanState":
        """Build plan state from a stored document; unknown keys (e.g. local role flags) are ignored."""
        if not document:
            return cls()
        flights = [Flight.from_dict(f) for f in document.get('flights') or []]
        plan = cls(
            flights=flights,
            assignments=dict(document.get('assignments') or {}),
            gate_overrides={k: str(v) for k, v in (document.get('gateOverrides') or {}).items()},
            visibility_overrides={
                k: VisibilityOverride(v)
                for k, v in (document.get('visibilityOverrides') or {}).items()
            },
            completed_ids=set(document.get('completedIds') or []),
            delayed_flags={k: bool(v) for k, v in (document.get('delayedFlags') or {}).items() if v},
            time_changes={k: dict(v) for k, v in (document.get('timeChanges') or {}).items()},
            shift_config=ShiftConfig.from_dict(document.get('shiftConfig')),
            base_date=parse_base_date(document.get('baseDate')),
            history_snapshots=deque(document.get('historySnapshots') or [],
                                    maxlen=config.HISTORY_LIMIT),
            per_flight_change_log={
                k: list(v) for k, v in (document.get('perFlightChangeLog') or {}).items()
            },
            staff=list(document['staff'] if document.get('staff') is not None else config.DEFAULT_STAFF),
            last_mutation_timestamp=int(document.get('lastMutationTimestamp') or 0),
        )
        plan.sort_flights()
        return plan
