"""
Plan state synchronization controller.

One controller owns the local projection of the shared plan document. It keeps
a live subscription to the store, gates writes behind the admin role and the
liveness flag, and detects stale writes with a timestamp check before every
push (optimistic concurrency, no locks).

States:
    DISCONNECTED -> SUBSCRIBED -> WRITABLE | READ_ONLY
    WRITABLE -> CONFLICT_PENDING -> WRITABLE | READ_ONLY
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from shiftplan import config, history, importer, operations
from shiftplan.errors import PermissionDenied, StaleWrite, StoreUnavailable
from shiftplan.models import PlanState
from shiftplan.store import DocumentStore, SnapshotMetadata
from shiftplan.views import (
    LocalFilters,
    PerformanceReport,
    ReportPeriod,
    export_backup,
    parse_backup,
    performance_report,
    staff_completion_counts,
    stats_count,
)

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    OBSERVER = "observer"


class SyncState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    SUBSCRIBED = "SUBSCRIBED"
    WRITABLE = "WRITABLE"
    READ_ONLY = "READ_ONLY"
    CONFLICT_PENDING = "CONFLICT_PENDING"


class ConflictResolution(str, Enum):
    REFRESH = "refresh"
    OVERWRITE = "overwrite"
    WAIT = "wait"


@dataclass
class LocalSession:
    """Client-local state; never read from or written to the shared document."""
    role: Role = Role.OBSERVER
    is_live: bool = True
    filters: LocalFilters = field(default_factory=LocalFilters)

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class PlanSyncController:
    def __init__(self, store: DocumentStore, document_path: Optional[str] = None,
                 role: Role = Role.OBSERVER,
                 clock: Callable[[], int] = wall_clock_ms,
                 on_change: Optional[Callable[[PlanState], None]] = None,
                 on_conflict: Optional[Callable[[Dict[str, int]], None]] = None,
                 on_notice: Optional[Callable[[str, str], None]] = None,
                 staleness_threshold_ms: int = config.STALENESS_THRESHOLD_MS,
                 resubscribe_backoff: float = config.RESUBSCRIBE_BACKOFF_SECONDS):
        self.store = store
        self.document_path = document_path or config.get_plan_document_path()
        self.session = LocalSession(role=Role(role))
        self.clock = clock
        self.on_change = on_change
        self.on_conflict = on_conflict
        self.on_notice = on_notice
        self.staleness_threshold_ms = staleness_threshold_ms
        self.resubscribe_backoff = resubscribe_backoff

        self.plan = PlanState()
        self.state = SyncState.DISCONNECTED
        self.has_unsynced_changes = False
        self.pending_conflict: Optional[Dict[str, int]] = None

        self._first_snapshot: Optional[asyncio.Event] = None
        self._subscription_task: Optional[asyncio.Task] = None
        self._autosave_task: Optional[asyncio.Task] = None

    # ---- lifecycle ----

    async def connect(self) -> None:
        """Open the subscription and wait for the first snapshot."""
        if self._subscription_task is not None:
            return
        self._first_snapshot = asyncio.Event()
        self._subscription_task = asyncio.create_task(self._run_subscription())
        await self._first_snapshot.wait()
        self.state = SyncState.WRITABLE if self.can_write else SyncState.READ_ONLY
        logger.info(f"[plan-sync] Connected to {self.document_path} as {self.session.role.value} ({self.state.value})")

    async def disconnect(self) -> None:
        for task in (self._autosave_task, self._subscription_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"[plan-sync] Background task ended with an error: {str(e)}")
        self._autosave_task = None
        self._subscription_task = None
        self.state = SyncState.DISCONNECTED
        logger.info(f"[plan-sync] Disconnected from {self.document_path}")

    async def _run_subscription(self) -> None:
        while True:
            try:
                async for document, metadata in self.store.subscribe(self.document_path, include_local_echoes=True):
                    try:
                        self._apply_remote(document, metadata)
                    except (KeyError, TypeError, ValueError) as e:
                        logger.error(f"[plan-sync] Skipping unreadable snapshot of {self.document_path}: {str(e)}")
                        self._notify('error', "Received an unreadable plan, keeping the current one")
                        self._mark_subscribed()
                logger.warning(f"[plan-sync] Subscription to {self.document_path} ended")
            except StoreUnavailable as e:
                logger.error(f"[plan-sync] Subscription error: {str(e)}")
                self._notify('error', "Connection lost, retrying...")
            await asyncio.sleep(self.resubscribe_backoff)
            logger.info(f"[plan-sync] Resubscribing to {self.document_path}")

    def _apply_remote(self, document: Optional[Dict[str, Any]], metadata: SnapshotMetadata) -> None:
        if document is None:
            logger.info(f"[plan-sync] No plan document at {self.document_path} yet")
        elif self._is_superseded(document):
            logger.debug(f"[plan-sync] Snapshot older than local ts={self.plan.last_mutation_timestamp} skipped, local changes pending")
            self._mark_subscribed()
            return
        else:
            self.plan = PlanState.from_document(document)
            self.has_unsynced_changes = False
            logger.debug(
                f"[plan-sync] Snapshot applied: {len(self.plan.flights)} flights, "
                f"ts={self.plan.last_mutation_timestamp}, cache={metadata.from_cache}"
            )
        self._mark_subscribed()
        self._changed()

    def _is_superseded(self, document: Dict[str, Any]) -> bool:
        """
        An admin skips deliveries older than its own last write, and the echo of that
        write while newer local edits wait to be pushed. Applying either would drop them.
        """
        if not self.session.is_admin:
            return False
        remote_timestamp = int(document.get('lastMutationTimestamp') or 0)
        local_timestamp = self.plan.last_mutation_timestamp
        return remote_timestamp < local_timestamp or (
            remote_timestamp == local_timestamp and self.has_unsynced_changes
        )

    def _mark_subscribed(self) -> None:
        if self.state is SyncState.DISCONNECTED:
            self.state = SyncState.SUBSCRIBED
        if self._first_snapshot is not None:
            self._first_snapshot.set()

    # ---- permission & liveness ----

    @property
    def can_write(self) -> bool:
        return self.session.is_admin and self.session.is_live and self.state is not SyncState.CONFLICT_PENDING

    def _require_admin(self, action: str) -> None:
        if not self.session.is_admin:
            logger.warning(f"[plan-sync] Write lock: {action} denied for {self.session.role.value}")
            raise PermissionDenied(action)

    def set_background(self) -> None:
        """The client went to the background; stop writing until foreground re-checks the remote."""
        self.session.is_live = False
        if self.state is SyncState.WRITABLE:
            self.state = SyncState.READ_ONLY
        logger.info("[plan-sync] Backgrounded, write access revoked")

    async def set_foreground(self) -> SyncState:
        """
        Re-evaluate write access when the client becomes visible again.
        A remote that moved on while we were away puts the controller in CONFLICT_PENDING.
        """
        if not self.session.is_admin:
            self.session.is_live = True
            self.state = SyncState.READ_ONLY
            return self.state

        try:
            remote_timestamp = await self._fetch_remote_timestamp()
            self._check_staleness(remote_timestamp)
        except StaleWrite as e:
            self._enter_conflict(e)
            return self.state
        except StoreUnavailable as e:
            logger.error(f"[plan-sync] Foreground check failed, granting write access: {str(e)}")

        self.session.is_live = True
        self.state = SyncState.WRITABLE
        self.pending_conflict = None
        logger.info("[plan-sync] Foregrounded, write access granted")
        if self.has_unsynced_changes:
            await self.push()
        return self.state

    # ---- write path ----

    async def _fetch_remote_timestamp(self) -> int:
        document = await self.store.get(self.document_path)
        if not document:
            return 0
        return int(document.get('lastMutationTimestamp') or 0)

    def _check_staleness(self, remote_timestamp: int) -> None:
        local_timestamp = self.plan.last_mutation_timestamp
        if remote_timestamp - local_timestamp > self.staleness_threshold_ms:
            raise StaleWrite(remote_timestamp, local_timestamp)

    def _next_timestamp(self, remote_timestamp: int = 0) -> int:
        # strictly increasing even when the wall clock lags the last writer
        return max(self.clock(), self.plan.last_mutation_timestamp + 1, remote_timestamp + 1)

    def _enter_conflict(self, error: StaleWrite) -> None:
        self.state = SyncState.CONFLICT_PENDING
        self.pending_conflict = error.payload()
        logger.warning(f"[plan-sync] Conflict: {str(error)}")
        if self.on_conflict:
            self.on_conflict(dict(self.pending_conflict))

    async def _write(self, remote_timestamp: int) -> None:
        previous = self.plan.last_mutation_timestamp
        self.plan.last_mutation_timestamp = self._next_timestamp(remote_timestamp)
        try:
            await self.store.set(self.document_path, self.plan.to_document())
        except StoreUnavailable:
            self.plan.last_mutation_timestamp = previous
            raise
        self.has_unsynced_changes = False

    async def push(self) -> bool:
        """
        Push the full plan document. Returns True when the store accepted it.

        A stale remote aborts the push without bumping the local timestamp; the
        change stays applied in memory and the controller moves to CONFLICT_PENDING.
        """
        if not self.session.is_admin:
            logger.info("[plan-sync] Write lock: observer clients never push")
            return False
        if not self.session.is_live:
            logger.info("[plan-sync] Write lock: client is in the background, change kept unsynced")
            return False
        if self.state is SyncState.CONFLICT_PENDING:
            logger.info("[plan-sync] Conflict pending, change kept unsynced")
            return False

        try:
            remote_timestamp = await self._fetch_remote_timestamp()
            self._check_staleness(remote_timestamp)
            await self._write(remote_timestamp)
        except StaleWrite as e:
            self._enter_conflict(e)
            return False
        except StoreUnavailable as e:
            logger.error(f"[plan-sync] Save failed: {str(e)}")
            self._notify('error', "Sync error, change kept locally")
            return False

        logger.info(f"[plan-sync] Plan saved (ts={self.plan.last_mutation_timestamp})")
        return True

    async def apply(self, operation: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Run an admin operation on the local plan and push the result.

        Observers get PermissionDenied before anything changes. Operation errors
        propagate untouched; operations validate before they snapshot.
        """
        self._require_admin(getattr(operation, '__name__', 'mutate the plan').replace('_', ' '))
        result = operation(self.plan, *args, **kwargs)
        self.has_unsynced_changes = True
        self._changed()
        await self.push()
        return result

    async def undo(self) -> None:
        await self.apply(history.undo)

    async def import_schedule(self, rows: Sequence[Sequence[Any]],
                              mode: Optional[importer.ImportMode] = None) -> importer.MergeResult:
        result = await self.apply(importer.import_schedule, rows, mode, self.clock())
        self._notify('success', f"{result.updated} updated, {result.added} added, {result.unchanged} unchanged")
        return result

    async def load_backup(self, text: str) -> None:
        document = parse_backup(text)
        await self.apply(operations.load_backup, document)

    def export_backup(self) -> str:
        return export_backup(self.plan)

    async def archive_stats(self, day: Optional[date] = None) -> Optional[Dict[str, int]]:
        """Write per-staff completion counts for the day, then reset the plan. No reset when the write fails."""
        self._require_admin("archive stats")
        day = day or date.today()
        counts = staff_completion_counts(self.plan)
        path = config.get_stats_archive_path(day.isoformat())
        try:
            await self.store.set(path, counts)
        except StoreUnavailable as e:
            logger.error(f"[plan-sync] Stats archive failed: {str(e)}")
            self._notify('error', "Archive error")
            return None
        logger.info(f"[plan-sync] Stats archived to {path}: {counts}")
        await self.apply(operations.reset_plan)
        return counts

    async def list_stats_archive(self) -> Optional[List[Tuple[str, Dict[str, int]]]]:
        """Archived days, newest first. None when the archive cannot be read."""
        try:
            archive = await self.store.list_documents(config.STATS_ARCHIVE_COLLECTION)
        except StoreUnavailable as e:
            logger.error(f"[plan-sync] Stats archive read failed: {str(e)}")
            self._notify('error', "Archive could not be read")
            return None
        return sorted(archive.items(), key=lambda item: item[0], reverse=True)

    async def load_stats_day(self, day: str) -> Optional[Dict[str, int]]:
        try:
            counts = await self.store.get(config.get_stats_archive_path(day))
        except StoreUnavailable as e:
            logger.error(f"[plan-sync] Stats day {day} could not be loaded: {str(e)}")
            self._notify('error', "Archive could not be read")
            return None
        if counts is None:
            self._notify('error', f"No archived stats for {day}")
        return counts

    async def _write_stats_day(self, day: str, counts: Dict[str, int]) -> bool:
        path = config.get_stats_archive_path(day)
        try:
            await self.store.set(path, counts)
        except StoreUnavailable as e:
            logger.error(f"[plan-sync] Stats write to {path} failed: {str(e)}")
            self._notify('error', "Archive error")
            return False
        logger.info(f"[plan-sync] Stats written to {path}: {counts}")
        return True

    async def edit_stats_day(self, day: str, counts: Dict[str, Any]) -> Optional[Dict[str, int]]:
        """Overwrite the counts of an archived day. Only names already archived for that day are kept."""
        self._require_admin("edit stats")
        existing = await self.load_stats_day(day)
        if existing is None:
            return None
        edited = {name: stats_count(counts.get(name, value)) for name, value in existing.items()}
        if not await self._write_stats_day(day, edited):
            return None
        self._notify('success', f"Stats for {day} updated")
        return edited

    async def add_stats_day(self, day: date, counts: Dict[str, Any]) -> Optional[Dict[str, int]]:
        """Archive a day by hand, one entry per current staff member."""
        self._require_admin("add stats")
        added = {name: stats_count(counts.get(name, 0)) for name in self.plan.staff}
        if not await self._write_stats_day(day.isoformat(), added):
            return None
        self._notify('success', f"{day.isoformat()} saved")
        return added

    async def delete_stats_day(self, day: str) -> bool:
        self._require_admin("delete stats")
        path = config.get_stats_archive_path(day)
        try:
            await self.store.delete(path)
        except StoreUnavailable as e:
            logger.error(f"[plan-sync] Stats delete of {path} failed: {str(e)}")
            self._notify('error', "Delete error")
            return False
        logger.info(f"[plan-sync] Stats deleted at {path}")
        return True

    async def performance_report(self, period: ReportPeriod = ReportPeriod.TODAY,
                                 today: Optional[date] = None) -> Optional[PerformanceReport]:
        """Completions per person over the period; None when the archive is needed but unreadable."""
        period = ReportPeriod(period)
        archive: Dict[str, Dict[str, Any]] = {}
        if period is not ReportPeriod.TODAY:
            try:
                archive = await self.store.list_documents(config.STATS_ARCHIVE_COLLECTION)
            except StoreUnavailable as e:
                logger.error(f"[plan-sync] Performance report failed: {str(e)}")
                self._notify('error', "Archive could not be read")
                return None
        return performance_report(self.plan, archive, period, today)

    # ---- conflicts ----

    async def resolve_conflict(self, resolution: ConflictResolution) -> SyncState:
        self._require_admin("resolve a conflict")
        resolution = ConflictResolution(resolution)

        if resolution is ConflictResolution.WAIT:
            self.session.is_live = False
            self.state = SyncState.READ_ONLY
            logger.info("[plan-sync] Conflict left unresolved, waiting read-only")
            return self.state

        try:
            if resolution is ConflictResolution.REFRESH:
                document = await self.store.get(self.document_path)
                self.plan = PlanState.from_document(document)
                self.has_unsynced_changes = False
            else:
                remote_timestamp = (self.pending_conflict or {}).get('remoteTimestamp', 0)
                await self._write(remote_timestamp)
        except StoreUnavailable as e:
            logger.error(f"[plan-sync] Conflict resolution {resolution.value} failed: {str(e)}")
            self._notify('error', "Sync error, conflict still pending")
            return self.state

        self.session.is_live = True
        self.state = SyncState.WRITABLE
        self.pending_conflict = None
        logger.info(f"[plan-sync] Conflict resolved with {resolution.value}")
        self._changed()
        return self.state

    # ---- autosave ----

    def start_autosave(self, interval: float = config.AUTOSAVE_INTERVAL_SECONDS) -> None:
        if self._autosave_task is None:
            self._autosave_task = asyncio.create_task(self._run_autosave(interval))

    async def _run_autosave(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.has_unsynced_changes and self.can_write:
                await self.push()

    # ---- callbacks ----

    def _changed(self) -> None:
        if self.on_change:
            self.on_change(self.plan)

    def _notify(self, level: str, message: str) -> None:
        if self.on_notice:
            self.on_notice(level, message)
