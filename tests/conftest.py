"""
Pytest configuration and fixtures for shiftplan tests.
"""
import pytest
import sys
import os
from datetime import date, datetime, time, timedelta

# Add repository root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shiftplan.models import Flight, FlightType, PlanState, ShiftConfig, ShiftMode, airline_code, flight_number_digits
from shiftplan.store import InMemoryBackend, InMemoryDocumentStore

BASE_DATE = date(2024, 1, 10)


@pytest.fixture
def base_date():
    return BASE_DATE


@pytest.fixture
def schedule_header():
    """Title row with the date token followed by the two-sided header row."""
    return [
        ["DAILY FLIGHT PLAN 10.01.2024", None, None, None, None, None, None],
        ["FLIGHT NO", "STA", "AIRLINE", "BRIDGE", "STATIONS", "FLIGHT NO", "STD"],
    ]


@pytest.fixture
def schedule_rows(schedule_header):
    """Sample schedule: a night rotation crossing midnight and an afternoon rotation."""
    return schedule_header + [
        ["3001", 23.5 / 24, "PC/PGT", "204", "SAW-AYT", "3002", "01:15"],
        ["7701", "16:00", "TK/THY", "301", "ESB-IST", "7702", time(17, 10)],
    ]


@pytest.fixture
def make_flight():
    """Factory for flights resolved against the sample base date."""
    def _make(flight_type, number, label, is_next_day=False, gate='', pair_id=None,
              airline='PC/PGT', route='SAW', flight_id=None):
        hours, minutes = (int(p) for p in label.split(':'))
        day = BASE_DATE + timedelta(days=1) if is_next_day else BASE_DATE
        flight_type = FlightType(flight_type)
        return Flight(
            id=flight_id or f"{flight_type.short}-{number}",
            type=flight_type,
            flight_number=number,
            flight_number_digits=flight_number_digits(number),
            airline_raw=airline,
            airline_code=airline_code(airline),
            route=route,
            scheduled_timestamp=datetime(day.year, day.month, day.day, hours, minutes),
            time_label=label,
            is_next_day=is_next_day,
            original_gate=gate,
            pair_id=pair_id,
        )
    return _make


@pytest.fixture
def plan(make_flight):
    """Day-shift plan with two rotations and one early-morning flight."""
    flights = [
        make_flight(FlightType.ARRIVAL, "3001", "23:30", gate="204", pair_id="pair-a"),
        make_flight(FlightType.DEPARTURE, "3002", "01:15", is_next_day=True, gate="204",
                    pair_id="pair-a", route="AYT"),
        make_flight(FlightType.ARRIVAL, "7701", "16:00", gate="301", pair_id="pair-b",
                    airline="TK/THY", route="ESB"),
        make_flight(FlightType.DEPARTURE, "7702", "17:10", gate="301", pair_id="pair-b",
                    airline="TK/THY", route="IST"),
        make_flight(FlightType.ARRIVAL, "1234", "08:00", gate="210", airline="XQ/SXS", route="ADB"),
    ]
    state = PlanState(
        flights=flights,
        shift_config=ShiftConfig.preset(ShiftMode.DAY),
        base_date=BASE_DATE,
        staff=["AHMET Y.", "CAN B."],
        last_mutation_timestamp=1_000_000,
    )
    state.sort_flights()
    return state


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend):
    return InMemoryDocumentStore(backend, client_id="client-a")
