"""
Admin mutations on the plan.

Every operation that changes flight data pushes exactly one history snapshot
before it mutates anything. Operations only touch the in-memory plan; the sync
controller checks permission beforehand and pushes the document afterwards.
"""
import dataclasses
import logging
import time
from typing import Optional

from shiftplan import config
from shiftplan.focus import next_incomplete_in_window
from shiftplan.history import GATE_FIELD, TIME_FIELD, log_change, push_snapshot
from shiftplan.models import (
    Flight,
    FlightType,
    PlanState,
    ShiftConfig,
    ShiftMode,
    VisibilityOverride,
    airline_code,
    derive_timestamp,
    flight_number_digits,
    minutes_to_label,
    new_flight_id,
    parse_time_label,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def toggle_complete(plan: PlanState, flight_id: str) -> bool:
    """Flip completion; returns the new completed state."""
    plan.require_flight(flight_id)
    push_snapshot(plan)
    if flight_id in plan.completed_ids:
        plan.completed_ids.discard(flight_id)
        return False
    plan.completed_ids.add(flight_id)
    return True


def toggle_delay(plan: PlanState, flight_id: str) -> bool:
    plan.require_flight(flight_id)
    push_snapshot(plan)
    if plan.delayed_flags.pop(flight_id, False):
        return False
    plan.delayed_flags[flight_id] = True
    return True


def toggle_override(plan: PlanState, flight_id: str, override: VisibilityOverride) -> Optional[VisibilityOverride]:
    """Set a visibility override; setting the active one again clears it."""
    plan.require_flight(flight_id)
    override = VisibilityOverride(override)
    push_snapshot(plan)
    if plan.visibility_overrides.get(flight_id) is override:
        del plan.visibility_overrides[flight_id]
        return None
    plan.visibility_overrides[flight_id] = override
    return override


def assign_staff(plan: PlanState, flight_id: str, staff_name: Optional[str]) -> None:
    plan.require_flight(flight_id)
    push_snapshot(plan)
    if staff_name:
        plan.assignments[flight_id] = staff_name
    else:
        plan.assignments.pop(flight_id, None)


def update_gate(plan: PlanState, flight_id: str, gate: str,
                timestamp: Optional[int] = None) -> Optional[Flight]:
    """
    Set the live gate of a flight and of its paired leg.
    Returns the paired flight when the change was propagated.
    """
    flight = plan.require_flight(flight_id)
    timestamp = timestamp or _now_ms()
    gate = str(gate).strip()
    push_snapshot(plan)

    old_gate = plan.effective_gate(flight)
    plan.gate_overrides[flight.id] = gate
    log_change(plan, flight.id, GATE_FIELD, old_gate, gate, timestamp)

    paired = plan.paired_flight(flight)
    if paired is not None:
        old_paired_gate = plan.effective_gate(paired)
        plan.gate_overrides[paired.id] = gate
        log_change(plan, paired.id, GATE_FIELD, old_paired_gate, gate, timestamp)
        logger.info(f"[operations] Gate {gate} propagated from {flight.id} to paired {paired.id}")
    return paired


def update_flight_time(plan: PlanState, flight_id: str, new_label: str,
                       timestamp: Optional[int] = None) -> bool:
    """
    Move a flight to a new HH:MM time. Manual edits use the tighter edit-time
    rollover threshold. Returns False when the time did not change.
    """
    flight = plan.require_flight(flight_id)
    hours, minutes = parse_time_label(new_label)
    label = minutes_to_label(hours * 60 + minutes)
    if label == flight.time_label:
        return False

    timestamp = timestamp or _now_ms()
    push_snapshot(plan)

    original = flight.original_time_label or flight.time_label
    flight.original_time_label = original
    flight.time_label = label
    flight.scheduled_timestamp, flight.is_next_day = derive_timestamp(
        plan.pin_base_date(), label, config.EDIT_ROLLOVER_MINUTES)

    if label != original:
        plan.time_changes[flight.id] = {'original': original, 'current': label}
        log_change(plan, flight.id, TIME_FIELD, original, label, timestamp)
    else:
        plan.time_changes.pop(flight.id, None)

    plan.sort_flights()
    logger.info(f"[operations] {flight.flight_number} time {original} -> {label}")
    return True


def add_manual_flight(plan: PlanState, flight_type: FlightType, time_label: str,
                      flight_number: str, airline: str, route: str, gate: str = '') -> Flight:
    flight_number = (flight_number or '').strip().upper()
    airline = (airline or '').strip().upper()
    route = (route or '').strip().upper()
    for name, value in (("flight number", flight_number), ("airline", airline), ("route", route)):
        if not value:
            raise ValueError(f"A {name} is required")

    hours, minutes = parse_time_label(time_label)
    label = minutes_to_label(hours * 60 + minutes)
    flight_type = FlightType(flight_type)

    push_snapshot(plan)
    scheduled, is_next_day = derive_timestamp(plan.pin_base_date(), label, config.EDIT_ROLLOVER_MINUTES)
    flight = Flight(
        id=new_flight_id(flight_type, manual=True),
        type=flight_type,
        flight_number=flight_number,
        flight_number_digits=flight_number_digits(flight_number),
        airline_raw=airline,
        airline_code=airline_code(airline),
        route=route,
        scheduled_timestamp=scheduled,
        time_label=label,
        is_next_day=is_next_day,
        original_gate=(gate or '').strip(),
        is_manual=True,
    )
    plan.flights.append(flight)
    plan.sort_flights()
    return flight


def delete_flight(plan: PlanState, flight_id: str) -> Flight:
    flight = plan.require_flight(flight_id)
    push_snapshot(plan)
    plan.flights = [f for f in plan.flights if f.id != flight_id]
    plan.forget_flight(flight_id)
    return flight


def clear_update_badges(plan: PlanState) -> None:
    push_snapshot(plan)
    for flight in plan.flights:
        flight.was_created_by_import = False
        flight.gate_was_updated_by_import = False
    plan.time_changes.clear()


def quick_complete(plan: PlanState) -> Optional[Flight]:
    """Complete the earliest open flight in the shift window; None when there is nothing to do."""
    flight = next_incomplete_in_window(plan.flights, plan)
    if flight is None:
        return None
    toggle_complete(plan, flight.id)
    return flight


def apply_shift_config(plan: PlanState, mode: ShiftMode,
                       start_label: Optional[str] = None, end_label: Optional[str] = None) -> ShiftConfig:
    mode = ShiftMode(mode)
    if start_label and end_label:
        plan.shift_config = ShiftConfig.from_labels(mode, start_label, end_label)
    else:
        plan.shift_config = ShiftConfig.preset(mode)
    return plan.shift_config


def add_staff(plan: PlanState, name: str) -> bool:
    name = (name or '').strip().upper()
    if not name or name in plan.staff:
        return False
    plan.staff.append(name)
    return True


def remove_staff(plan: PlanState, name: str) -> None:
    plan.staff = [s for s in plan.staff if s != name]


def reset_plan(plan: PlanState) -> None:
    """Clear the plan for a new shift. The staff roster and the mutation clock survive."""
    fresh = PlanState(staff=list(plan.staff), last_mutation_timestamp=plan.last_mutation_timestamp)
    for f in dataclasses.fields(PlanState):
        setattr(plan, f.name, getattr(fresh, f.name))


def load_backup(plan: PlanState, document: dict) -> None:
    """Replace the plan content with a backup document. History and the mutation clock stay local."""
    restored = PlanState.from_document(document)
    push_snapshot(plan)
    for f in dataclasses.fields(PlanState):
        if f.name in ('history_snapshots', 'last_mutation_timestamp'):
            continue
        setattr(plan, f.name, getattr(restored, f.name))
    logger.info(f"[operations] Backup loaded with {len(plan.flights)} flights")
