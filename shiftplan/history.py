"""
Bounded undo ring and per-flight change log.

Both are lossy: the ring keeps the last HISTORY_LIMIT snapshots and
each flight keeps its last CHANGE_LOG_LIMIT changes.
"""
import copy
import logging
from typing import Any, Dict, Optional

from shiftplan import config
from shiftplan.errors import EmptyHistory
from shiftplan.models import Flight, PlanState, VisibilityOverride, parse_base_date

logger = logging.getLogger(__name__)

GATE_FIELD = "Gate"
TIME_FIELD = "Time"


def take_snapshot(plan: PlanState) -> Dict[str, Any]:
    """Deep copy of the mutable plan collections, in document form."""
    return copy.deepcopy({
        'flights': [f.to_dict() for f in plan.flights],
        'assignments': plan.assignments,
        'gateOverrides': plan.gate_overrides,
        'visibilityOverrides': {k: v.value for k, v in plan.visibility_overrides.items()},
        'completedIds': sorted(plan.completed_ids),
        'delayedFlags': plan.delayed_flags,
        'timeChanges': plan.time_changes,
        'baseDate': plan.base_date.isoformat() if plan.base_date else None,
        'perFlightChangeLog': plan.per_flight_change_log,
    })


def push_snapshot(plan: PlanState) -> None:
    """
    Record the current state before a mutation.

    Must run once per logical mutation and before the mutation is applied,
    otherwise undo restores the already-mutated state.
    """
    plan.history_snapshots.append(take_snapshot(plan))
    logger.debug(f"[history] Snapshot pushed ({len(plan.history_snapshots)}/{config.HISTORY_LIMIT})")


def restore_snapshot(plan: PlanState, snapshot: Dict[str, Any]) -> None:
    plan.flights = [Flight.from_dict(f) for f in snapshot.get('flights') or []]
    plan.assignments = dict(snapshot.get('assignments') or {})
    plan.gate_overrides = dict(snapshot.get('gateOverrides') or {})
    plan.visibility_overrides = {
        k: VisibilityOverride(v) for k, v in (snapshot.get('visibilityOverrides') or {}).items()
    }
    plan.completed_ids = set(snapshot.get('completedIds') or [])
    plan.delayed_flags = dict(snapshot.get('delayedFlags') or {})
    plan.time_changes = {k: dict(v) for k, v in (snapshot.get('timeChanges') or {}).items()}
    # snapshots written before these keys existed leave the current values alone
    if 'baseDate' in snapshot:
        plan.base_date = parse_base_date(snapshot['baseDate'])
    if 'perFlightChangeLog' in snapshot:
        plan.per_flight_change_log = {k: list(v) for k, v in (snapshot['perFlightChangeLog'] or {}).items()}
    plan.sort_flights()


def undo(plan: PlanState) -> None:
    """Restore the most recent snapshot. There is no redo."""
    if not plan.history_snapshots:
        raise EmptyHistory()
    snapshot = plan.history_snapshots.pop()
    restore_snapshot(plan, snapshot)
    logger.info(f"[history] Undo applied, {len(plan.history_snapshots)} snapshots left")


def log_change(plan: PlanState, flight_id: str, field: str,
               old_value: Optional[str], new_value: Optional[str], timestamp: int) -> None:
    entries = plan.per_flight_change_log.setdefault(flight_id, [])
    entries.append({
        'timestamp': timestamp,
        'field': field,
        'oldValue': old_value,
        'newValue': new_value,
    })
    del entries[:-config.CHANGE_LOG_LIMIT]
