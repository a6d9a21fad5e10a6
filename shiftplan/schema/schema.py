from typing import List, Optional

import strawberry
from strawberry.types import Info

from shiftplan import config
from shiftplan.focus import describe_shift, report_entries
from shiftplan.models import PlanState
from shiftplan.views import (
    FilterMode,
    FlightView,
    LocalFilters,
    ReportPeriod,
    analyze,
    flight_view,
    performance_report,
    visible_flights,
)


@strawberry.type
class ChangeEntry:
    timestamp: float
    field: str
    old_value: Optional[str]
    new_value: Optional[str]


@strawberry.type
class FlightNode:
    id: str
    type: str
    flight_number: str
    airline_code: str
    route: str
    time_label: str
    scheduled: str
    is_next_day: bool
    gate: str
    gate_changed: bool
    time_changed: bool
    in_focus: bool
    is_done: bool
    is_delayed: bool
    is_manual: bool
    assigned_to: Optional[str]
    override: Optional[str]
    changes: List[ChangeEntry]

    @classmethod
    def from_view(cls, view: FlightView) -> "FlightNode":
        f = view.flight
        return cls(
            id=f.id,
            type=f.type.short,
            flight_number=f.flight_number,
            airline_code=f.airline_code,
            route=f.route,
            time_label=f.time_label,
            scheduled=f.scheduled_timestamp.isoformat(),
            is_next_day=f.is_next_day,
            gate=view.gate,
            gate_changed=view.gate_changed,
            time_changed=view.time_changed,
            in_focus=view.in_focus,
            is_done=view.is_done,
            is_delayed=view.is_delayed,
            is_manual=f.is_manual,
            assigned_to=view.assigned_to,
            override=view.override.value if view.override else None,
            changes=[
                ChangeEntry(
                    timestamp=entry['timestamp'],
                    field=entry['field'],
                    old_value=entry.get('oldValue'),
                    new_value=entry.get('newValue'),
                )
                for entry in view.change_log
            ],
        )


@strawberry.type
class PlanSnapshot:
    base_date: Optional[str]
    shift: str
    last_mutation_timestamp: float
    staff: List[str]
    flights: List[FlightNode]


@strawberry.type
class ReportEntry:
    tag: str
    flight: FlightNode


@strawberry.type
class HourCount:
    hour: str
    count: int


@strawberry.type
class StaffLoad:
    name: str
    total: int
    done: int
    pending: int


@strawberry.type
class BreakGap:
    start: str
    end: str
    minutes: int


@strawberry.type
class Analysis:
    focus_count: int
    completed_count: int
    completion_pct: int
    time_changed_count: int
    gate_changed_count: int
    new_added_count: int
    delayed_count: int
    hourly: List[HourCount]
    staff_load: List[StaffLoad]
    gaps: List[BreakGap]
    delayed: List[str]
    next_hour: List[str]


@strawberry.type
class StaffCount:
    name: str
    count: int


@strawberry.type
class Performance:
    period: str
    total: int
    ranking: List[StaffCount]


async def load_plan(info: Info) -> PlanState:
    store = info.context["store"]
    document = await store.get(info.context.get("document_path") or config.get_plan_document_path())
    return PlanState.from_document(document)


@strawberry.type
class Query:
    @strawberry.field
    async def plan(self, info: Info, search: str = '', filter_mode: str = FilterMode.ALL.value,
                   staff: Optional[str] = None, show_completed: bool = True,
                   updated_only: bool = False) -> PlanSnapshot:
        state = await load_plan(info)
        filters = LocalFilters(
            search=search,
            filter_mode=FilterMode(filter_mode),
            show_completed=show_completed,
            show_updated_only=updated_only,
            staff_filter=staff,
        )
        return PlanSnapshot(
            base_date=state.base_date.isoformat() if state.base_date else None,
            shift=describe_shift(state.shift_config),
            last_mutation_timestamp=state.last_mutation_timestamp,
            staff=list(state.staff),
            flights=[FlightNode.from_view(v) for v in visible_flights(state, filters)],
        )

    @strawberry.field
    async def report(self, info: Info, buffer_minutes: int = config.REPORT_BUFFER_MINUTES) -> List[ReportEntry]:
        state = await load_plan(info)
        return [
            ReportEntry(tag=tag.value, flight=FlightNode.from_view(flight_view(state, flight)))
            for flight, tag in report_entries(state, buffer_minutes)
        ]

    @strawberry.field
    async def analysis(self, info: Info) -> Analysis:
        state = await load_plan(info)
        result = analyze(state)
        return Analysis(
            focus_count=result.focus_count,
            completed_count=result.completed_count,
            completion_pct=result.completion_pct,
            time_changed_count=result.time_changed_count,
            gate_changed_count=result.gate_changed_count,
            new_added_count=result.new_added_count,
            delayed_count=result.delayed_count,
            hourly=[HourCount(hour=h, count=c) for h, c in result.hourly_counts.items()],
            staff_load=[
                StaffLoad(name=name, total=load['total'], done=load['done'],
                          pending=result.pending_by_staff.get(name, 0))
                for name, load in result.staff_load.items()
            ],
            gaps=[BreakGap(start=g['start'], end=g['end'], minutes=g['minutes']) for g in result.gaps],
            delayed=[f.id for f in result.delayed_flights],
            next_hour=[f.id for f in result.next_hour],
        )

    @strawberry.field
    async def performance(self, info: Info, period: str = ReportPeriod.TODAY.value) -> Performance:
        state = await load_plan(info)
        period = ReportPeriod(period)
        archive = {}
        if period is not ReportPeriod.TODAY:
            archive = await info.context["store"].list_documents(config.STATS_ARCHIVE_COLLECTION)
        report = performance_report(state, archive, period)
        return Performance(
            period=period.value,
            total=report.total,
            ranking=[StaffCount(name=name, count=count) for name, count in report.ranking],
        )


schema = strawberry.Schema(query=Query)
