"""Keeps one SpreadsheetStore in step with a shared RemoteStore.

Outbound: every history-recording action (and UNDO / REDO) is turned into
the set of remote writes that make the remote match the new local state,
computed as a diff between the state before and after the action. Plans
are queued and written by a single worker task, in dispatch order.

Inbound: cell events become UPDATE_CELL_EXTERNAL / DELETE_CELL_EXTERNAL;
column and archived-row events trigger a refetch of that collection.

Echo suppression is timing based. While one of our writes is in flight,
and for `echo_window` seconds after it, every inbound event is dropped.
Cell events whose commit timestamp is not newer than our latest write to
that cell are dropped as well. Concurrent edits by two clients inside the
window can lose one of the updates; last write wins otherwise.
"""

import time
import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from gridsync import config
from gridsync.actions import (
    HISTORY_ACTIONS, DeleteCellExternal, LoadArchivedRows, LoadColumns, LoadData,
    UpdateCellExternal,
)
from gridsync.models import (
    CellRecord, ChangeEvent, ChangeKind, ColumnRecord, EntityKind, SpreadsheetState,
)
from gridsync.persistence import (
    cell_to_record, column_to_record, records_to_cells, records_to_columns,
)
from gridsync.remote.base import RemoteStore, RemoteStoreError, Subscription
from gridsync.store import SpreadsheetStore

logger = logging.getLogger(__name__)

SYNCED_ACTIONS = HISTORY_ACTIONS | {"UNDO", "REDO"}


class SyncState(str, Enum):
    INIT = "init"
    RUNNING = "running"
    DISPOSED = "disposed"


class SyncPlan(BaseModel):
    """Remote writes that bring the remote sheet from one local state to the next."""
    deleted_columns: List[str] = Field(default_factory=list)
    columns: List[ColumnRecord] = Field(default_factory=list)
    cells: List[CellRecord] = Field(default_factory=list)
    archived_rows: Optional[List[int]] = None

    @property
    def empty(self) -> bool:
        return not (self.deleted_columns or self.columns or self.cells) and self.archived_rows is None


def diff_states(before: SpreadsheetState, after: SpreadsheetState, sheet_id: str) -> SyncPlan:
    plan = SyncPlan()

    after_ids = {c.id for c in after.columns}
    plan.deleted_columns = [c.id for c in before.columns if c.id not in after_ids]

    before_positions = {c.id: (pos, c) for pos, c in enumerate(before.columns)}
    for pos, column in enumerate(after.columns):
        if before_positions.get(column.id) != (pos, column):
            plan.columns.append(column_to_record(column, sheet_id, pos))

    if before.cells is not after.cells:
        for cell_id, cell in after.cells.items():
            old = before.cells.get(cell_id)
            if old is not cell and old != cell:
                plan.cells.append(cell_to_record(cell, sheet_id))
        # A cell that disappeared (sort, undo) is cleared remotely; cells of a
        # deleted column go with delete_column_cells instead.
        for cell_id, cell in before.cells.items():
            if cell_id not in after.cells and cell.column in after_ids:
                cleared = cell.model_copy(update={"value": "", "formula": None, "is_formula": False})
                plan.cells.append(cell_to_record(cleared, sheet_id))

    if before.archived_rows != after.archived_rows:
        plan.archived_rows = sorted(after.archived_rows)
    return plan


class SyncCoordinator:
    def __init__(self, store: SpreadsheetStore, remote: RemoteStore,
                 sheet_id: str = config.SHEET_ID,
                 echo_window: float = config.ECHO_WINDOW,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.remote = remote
        self.sheet_id = sheet_id
        self.echo_window = echo_window
        self._clock = clock

        self.lifecycle = SyncState.INIT
        self._syncing = False
        self._syncing_timer: Optional[asyncio.TimerHandle] = None
        self._last_local_write: Dict[str, float] = {}

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._unsubscribe_store: Optional[Callable[[], None]] = None
        self._refetch_tasks: Dict[EntityKind, asyncio.Task] = {}
        self._refetch_pending: Set[EntityKind] = set()

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def pending_writes(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> bool:
        """Hydrate from the remote store and begin mirroring.

        A sheet with no remote columns is seeded from the local state.

        Returns False (and stays in INIT) when the remote store cannot be
        reached; local editing keeps working without sync.
        """
        if self.lifecycle != SyncState.INIT:
            return self.lifecycle == SyncState.RUNNING

        try:
            cell_records = await self.remote.fetch_cells(self.sheet_id)
            column_records = await self.remote.fetch_columns(self.sheet_id)
            archived = await self.remote.fetch_archived_rows(self.sheet_id)
        except RemoteStoreError as e:
            logger.error("Initial fetch for sheet %s failed, staying offline: %s", self.sheet_id, e)
            return False

        if column_records:
            self.store.dispatch(LoadColumns(columns=records_to_columns(column_records)))
        if cell_records:
            self.store.dispatch(LoadData(cells=records_to_cells(cell_records)))
        if archived:
            self.store.dispatch(LoadArchivedRows(rows=archived))
        logger.info("Hydrated sheet %s: %d cells, %d columns, %d archived rows",
                    self.sheet_id, len(cell_records), len(column_records), len(archived))

        try:
            self._subscription = await self.remote.subscribe(self.sheet_id, self._on_remote_event)
        except RemoteStoreError as e:
            logger.error("Subscribing to sheet %s failed, staying offline: %s", self.sheet_id, e)
            return False

        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._drain())
        self._unsubscribe_store = self.store.subscribe(self._on_local_change)
        self.lifecycle = SyncState.RUNNING
        logger.info("Sync running for sheet %s", self.sheet_id)

        if not column_records:
            # First client on this sheet publishes what it has
            plan = diff_states(SpreadsheetState(), self.store.state, self.sheet_id)
            if not plan.empty:
                logger.info("Sheet %s has no remote columns, seeding it from local state", self.sheet_id)
                self._queue.put_nowait(plan)
        return True

    async def flush(self):
        """Wait until queued writes and in-flight refetches are done."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()
        pending = [t for t in self._refetch_tasks.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def dispose(self):
        if self.lifecycle == SyncState.DISPOSED:
            return
        if self.lifecycle == SyncState.RUNNING:
            await self.flush()
        self.lifecycle = SyncState.DISPOSED

        if self._unsubscribe_store is not None:
            self._unsubscribe_store()
            self._unsubscribe_store = None
        if self._subscription is not None:
            try:
                await self._subscription.unsubscribe()
            except RemoteStoreError as e:
                logger.error("Unsubscribe from sheet %s failed: %s", self.sheet_id, e)
            self._subscription = None

        tasks = [t for t in self._refetch_tasks.values() if not t.done()]
        if self._worker is not None:
            tasks.append(self._worker)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._worker = None
        self._refetch_tasks.clear()

        if self._syncing_timer is not None:
            self._syncing_timer.cancel()
            self._syncing_timer = None
        self._syncing = False
        logger.info("Sync disposed for sheet %s", self.sheet_id)

    # ── Outbound ─────────────────────────────────────────────────────

    def _on_local_change(self, action, before: SpreadsheetState, after: SpreadsheetState):
        if action.type not in SYNCED_ACTIONS:
            return
        if self.lifecycle != SyncState.RUNNING:
            logger.debug("Sync not running, %s stays local", action.type)
            return
        plan = diff_states(before, after, self.sheet_id)
        if plan.empty:
            return
        self._queue.put_nowait(plan)

    async def _drain(self):
        while True:
            plan = await self._queue.get()
            try:
                await self._apply_plan(plan)
            except RemoteStoreError as e:
                logger.error("Remote write for sheet %s failed, dropping it: %s", self.sheet_id, e)
            except Exception:
                logger.exception("Unexpected error while writing sheet %s", self.sheet_id)
            finally:
                self._queue.task_done()

    async def _apply_plan(self, plan: SyncPlan):
        for column_id in plan.deleted_columns:
            self._begin_write()
            await self.remote.delete_column(self.sheet_id, column_id)
            await self.remote.delete_column_cells(self.sheet_id, column_id)
            self._begin_write()
        for record in plan.columns:
            self._begin_write()
            await self.remote.upsert_column(record)
            self._begin_write()
        for record in plan.cells:
            self._begin_write(record.id)
            await self.remote.upsert_cell(record)
            self._begin_write()
        if plan.archived_rows is not None:
            self._begin_write()
            await self.remote.replace_archived_rows(self.sheet_id, plan.archived_rows)
            self._begin_write()

    def _begin_write(self, cell_id: Optional[str] = None):
        """Raise the syncing flag and (re)arm the timer that lowers it."""
        self._syncing = True
        if cell_id is not None:
            self._last_local_write[cell_id] = self._clock()
        if self._syncing_timer is not None:
            self._syncing_timer.cancel()
        self._syncing_timer = asyncio.get_running_loop().call_later(self.echo_window, self._end_write)

    def _end_write(self):
        self._syncing = False
        self._syncing_timer = None

    # ── Inbound ──────────────────────────────────────────────────────

    def _on_remote_event(self, event: ChangeEvent):
        if self.lifecycle == SyncState.DISPOSED:
            return
        if self._syncing:
            logger.debug("Dropping %s %s event received while syncing",
                         event.entity.value, event.change.value)
            return
        if event.entity == EntityKind.CELL:
            self._apply_cell_event(event)
        else:
            self._schedule_refetch(event.entity)

    def _apply_cell_event(self, event: ChangeEvent):
        if event.change == ChangeKind.DELETE:
            cell_id = (event.previous_record or {}).get("id")
            if cell_id:
                self.store.dispatch(DeleteCellExternal(cell_id=cell_id))
            return

        try:
            record = CellRecord(**(event.record or {}))
        except ValidationError as e:
            logger.debug("Ignoring malformed cell event: %s", e)
            return

        last = self._last_local_write.get(record.id)
        if last is not None and event.commit_timestamp is not None and event.commit_timestamp <= last:
            logger.debug("Dropping stale event for %s (%.3f <= %.3f)", record.id, event.commit_timestamp, last)
            return

        self.store.dispatch(UpdateCellExternal(
            cell_id=record.id,
            value=record.value or "",
            formula=record.formula,
            is_formula=record.is_formula,
        ))

    def _schedule_refetch(self, entity: EntityKind):
        task = self._refetch_tasks.get(entity)
        if task is not None and not task.done():
            self._refetch_pending.add(entity)
            return
        self._refetch_tasks[entity] = asyncio.get_running_loop().create_task(self._refetch(entity))

    async def _refetch(self, entity: EntityKind):
        while True:
            self._refetch_pending.discard(entity)
            try:
                if entity == EntityKind.COLUMN:
                    records = await self.remote.fetch_columns(self.sheet_id)
                    action = LoadColumns(columns=records_to_columns(records))
                else:
                    rows = await self.remote.fetch_archived_rows(self.sheet_id)
                    action = LoadArchivedRows(rows=rows)
            except RemoteStoreError as e:
                logger.error("Refetching %s for sheet %s failed: %s", entity.value, self.sheet_id, e)
                action = None

            if action is not None and self.lifecycle != SyncState.DISPOSED:
                self.store.dispatch(action)
            if entity not in self._refetch_pending:
                return
