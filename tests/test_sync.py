"""Tests for the sync coordinator against the SQLite remote store."""

import asyncio

import pytest

from conftest import make_cell, settle
from gridsync.actions import (
    AddColumn, ArchiveRows, DeleteColumn, SelectCells, SortByColumn,
    ToggleArchivedRowsVisibility, Undo, UpdateCell, UpdateCellExternal,
)
from gridsync.models import (
    CellRecord, ChangeEvent, ChangeKind, Column, ColumnRecord, EntityKind, SpreadsheetState,
)
from gridsync.reducer import initial_state, reduce
from gridsync.remote.base import RemoteStore, RemoteStoreError, Subscription
from gridsync.store import SpreadsheetStore
from gridsync.sync import SyncCoordinator, SyncState, diff_states

SHEET = "sheet-1"
WINDOW = 0.05


async def started(remote, store=None, **kwargs) -> SyncCoordinator:
    coordinator = SyncCoordinator(store or SpreadsheetStore(), remote, sheet_id=SHEET,
                                  echo_window=kwargs.pop("echo_window", WINDOW), **kwargs)
    await coordinator.start()
    return coordinator


async def two_clients(remote):
    a = await started(remote)
    await settle(a)
    b = await started(remote)
    await settle(a, b)
    await asyncio.sleep(WINDOW * 2)
    return a, b


class BrokenRemote(RemoteStore):
    """Remote whose writes always fail; reads fail too when `reads_fail` is set."""

    def __init__(self, reads_fail=False):
        self.reads_fail = reads_fail
        self.write_attempts = 0

    async def _read(self, empty):
        if self.reads_fail:
            raise RemoteStoreError("remote is down")
        return empty

    async def fetch_cells(self, sheet_id):
        return await self._read([])

    async def fetch_columns(self, sheet_id):
        return await self._read([])

    async def fetch_archived_rows(self, sheet_id):
        return await self._read([])

    async def _write(self):
        self.write_attempts += 1
        raise RemoteStoreError("write refused")

    async def upsert_cell(self, record):
        await self._write()

    async def upsert_column(self, record):
        await self._write()

    async def delete_column(self, sheet_id, column_id):
        await self._write()

    async def delete_column_cells(self, sheet_id, column_id):
        await self._write()

    async def replace_archived_rows(self, sheet_id, rows):
        await self._write()

    async def subscribe(self, sheet_id, callback):
        return Subscription()


class TestDiff:
    def test_cell_edit_yields_single_upsert(self, state):
        after = reduce(state, UpdateCell(cell_id="A1", value="5"))
        plan = diff_states(state, after, SHEET)
        assert [(r.id, r.value) for r in plan.cells] == [("A1", "5")]
        assert plan.columns == [] and plan.deleted_columns == []
        assert plan.archived_rows is None

    def test_deleted_column_is_not_diffed_cell_by_cell(self, state):
        after = reduce(state, DeleteColumn(column_id="D"))
        plan = diff_states(state, after, SHEET)
        assert plan.deleted_columns == ["D"]
        assert plan.cells == []
        # E moved from position 4 to 3
        assert [(r.id, r.position) for r in plan.columns] == [("E", 3)]

    def test_vanished_cells_are_cleared(self, empty_state):
        before = reduce(empty_state, UpdateCell(cell_id="A5", value="1"))
        after = reduce(before, SortByColumn(column="A"))
        plan = diff_states(before, after, SHEET)
        by_id = {r.id: r.value for r in plan.cells}
        assert by_id == {"A1": "1", "A5": ""}

    def test_archive_replaces_whole_set(self, state):
        after = reduce(state, ArchiveRows(rows=[3, 1]))
        assert diff_states(state, after, SHEET).archived_rows == [1, 3]

    def test_seed_plan_from_empty_state(self, state):
        plan = diff_states(SpreadsheetState(), state, SHEET)
        assert [r.id for r in plan.columns] == ["A", "B", "C", "D", "E"]
        assert [r.position for r in plan.columns] == [0, 1, 2, 3, 4]
        assert len(plan.cells) == 9
        assert plan.archived_rows is None


class TestHydration:
    @pytest.mark.asyncio
    async def test_start_loads_remote_sheet(self, remote):
        await remote.upsert_column(ColumnRecord(id="A", sheet_id=SHEET, label="Qty", type="number", position=0))
        await remote.upsert_column(ColumnRecord(id="B", sheet_id=SHEET, label="Name", position=1))
        await remote.upsert_cell(CellRecord(id="A1", value="5", row_num=1, col_id="A", sheet_id=SHEET))
        await remote.replace_archived_rows(SHEET, [1])

        coordinator = await started(remote)
        try:
            state = coordinator.store.state
            assert coordinator.lifecycle == SyncState.RUNNING
            assert [(c.id, c.label) for c in state.columns] == [("A", "Qty"), ("B", "Name")]
            assert set(state.cells) == {"A1"}
            assert state.archived_rows == frozenset({1})
            assert len(state.history) == 1
        finally:
            await coordinator.dispose()

    @pytest.mark.asyncio
    async def test_empty_remote_is_seeded_from_local_state(self, remote):
        coordinator = await started(remote)
        try:
            await settle(coordinator)
            assert len(await remote.fetch_columns(SHEET)) == 5
            cells = {c.id: c.value for c in await remote.fetch_cells(SHEET)}
            assert cells["A2"] == "200"
            assert coordinator.store.state.cells["A2"].value == "200"
        finally:
            await coordinator.dispose()

    @pytest.mark.asyncio
    async def test_unreachable_remote_keeps_working_locally(self, caplog):
        coordinator = await started(BrokenRemote(reads_fail=True))
        assert coordinator.lifecycle == SyncState.INIT
        assert "staying offline" in caplog.text
        coordinator.store.dispatch(UpdateCell(cell_id="A1", value="1"))
        assert coordinator.store.state.cells["A1"].value == "1"
        await coordinator.dispose()
        assert coordinator.lifecycle == SyncState.DISPOSED


class TestOutbound:
    @pytest.mark.asyncio
    async def test_local_edit_reaches_remote(self, remote):
        coordinator = await started(remote)
        try:
            coordinator.store.dispatch(UpdateCell(cell_id="B3", value="=A3/3"))
            await settle(coordinator)
            cells = {c.id: c for c in await remote.fetch_cells(SHEET)}
            assert cells["B3"].value == "100"
            assert cells["B3"].is_formula
            assert cells["B3"].formula == "A3/3"
        finally:
            await coordinator.dispose()

    @pytest.mark.asyncio
    async def test_changes_before_start_stay_local(self, remote):
        coordinator = SyncCoordinator(SpreadsheetStore(), remote, sheet_id=SHEET, echo_window=WINDOW)
        coordinator.store.dispatch(UpdateCell(cell_id="A1", value="1"))
        assert await remote.fetch_cells(SHEET) == []

    @pytest.mark.asyncio
    async def test_undo_syncs_the_restored_state(self, remote):
        coordinator = await started(remote)
        try:
            await settle(coordinator)
            coordinator.store.dispatch(UpdateCell(cell_id="A1", value="5"))
            await settle(coordinator)
            coordinator.store.dispatch(Undo())
            await settle(coordinator)
            cells = {c.id: c.value for c in await remote.fetch_cells(SHEET)}
            assert cells["A1"] == "100"
        finally:
            await coordinator.dispose()

    @pytest.mark.asyncio
    async def test_failed_writes_are_logged_and_dropped(self, caplog):
        broken = BrokenRemote()
        coordinator = await started(broken)
        try:
            await settle(coordinator)
            coordinator.store.dispatch(UpdateCell(cell_id="A1", value="5"))
            await settle(coordinator)
            assert coordinator.store.state.cells["A1"].value == "5"
            assert broken.write_attempts >= 2
            assert caplog.text.count("failed, dropping it") >= 2
            assert coordinator.pending_writes == 0
        finally:
            await coordinator.dispose()

    @pytest.mark.asyncio
    async def test_view_and_external_actions_are_not_sent(self, remote):
        coordinator = await started(remote)
        try:
            await settle(coordinator)
            coordinator.store.dispatch(SelectCells(cell_ids=["A1"]))
            coordinator.store.dispatch(ToggleArchivedRowsVisibility())
            coordinator.store.dispatch(UpdateCellExternal(cell_id="A1", value="9"))
            assert coordinator.pending_writes == 0
            coordinator.store.dispatch(UpdateCell(cell_id="A1", value="8"))
            assert coordinator.pending_writes == 1
        finally:
            await coordinator.dispose()


class TestTwoClients:
    @pytest.mark.asyncio
    async def test_cell_edit_propagates_without_history(self, remote):
        a, b = await two_clients(remote)
        try:
            a.store.dispatch(UpdateCell(cell_id="A1", value="42"))
            await settle(a, b)
            assert b.store.state.cells["A1"].value == "42"
            assert len(b.store.state.history) == 1

            await asyncio.sleep(WINDOW * 2)
            b.store.dispatch(UpdateCell(cell_id="D2", value="from b"))
            await settle(a, b)
            assert a.store.state.cells["D2"].value == "from b"
        finally:
            await a.dispose()
            await b.dispose()

    @pytest.mark.asyncio
    async def test_own_echo_is_suppressed(self, remote):
        a, b = await two_clients(remote)
        seen = []
        a.store.subscribe(lambda action, before, after: seen.append(action.type))
        try:
            a.store.dispatch(UpdateCell(cell_id="A1", value="42"))
            await settle(a, b)
            assert seen == ["UPDATE_CELL"]
        finally:
            await a.dispose()
            await b.dispose()

    @pytest.mark.asyncio
    async def test_column_changes_are_refetched(self, remote):
        a, b = await two_clients(remote)
        try:
            a.store.dispatch(AddColumn(column=Column(id="F", label="Extra")))
            await settle(a, b)
            assert [c.id for c in b.store.state.columns] == ["A", "B", "C", "D", "E", "F"]

            await asyncio.sleep(WINDOW * 2)
            a.store.dispatch(DeleteColumn(column_id="D"))
            await settle(a, b)
            assert [c.id for c in b.store.state.columns] == ["A", "B", "C", "E", "F"]
            assert not [c for c in b.store.state.cells.values() if c.column == "D"]
        finally:
            await a.dispose()
            await b.dispose()

    @pytest.mark.asyncio
    async def test_archived_rows_propagate(self, remote):
        a, b = await two_clients(remote)
        try:
            a.store.dispatch(ArchiveRows(rows=[2]))
            await settle(a, b)
            assert b.store.state.archived_rows == frozenset({2})
        finally:
            await a.dispose()
            await b.dispose()

    @pytest.mark.asyncio
    async def test_disposed_client_ignores_remote_changes(self, remote):
        a, b = await two_clients(remote)
        await b.dispose()
        try:
            a.store.dispatch(UpdateCell(cell_id="A1", value="42"))
            await settle(a)
            await asyncio.sleep(0)
            assert b.store.state.cells["A1"].value == "100"
            b.store.dispatch(UpdateCell(cell_id="A2", value="local only"))
            await asyncio.sleep(0)
            cells = {c.id: c.value for c in await remote.fetch_cells(SHEET)}
            assert cells["A2"] == "200"
        finally:
            await a.dispose()


class TestEchoSuppression:
    def test_stale_cell_event_is_dropped(self, remote):
        store = SpreadsheetStore()
        coordinator = SyncCoordinator(store, remote, sheet_id=SHEET, echo_window=WINDOW)
        coordinator._last_local_write["A1"] = 100.0
        record = {"id": "A1", "value": "old", "row_num": 1, "col_id": "A", "sheet_id": SHEET}

        coordinator._on_remote_event(ChangeEvent(
            entity=EntityKind.CELL, change=ChangeKind.UPDATE, record=record, commit_timestamp=100.0))
        assert store.state.cells["A1"].value == "100"

        coordinator._on_remote_event(ChangeEvent(
            entity=EntityKind.CELL, change=ChangeKind.UPDATE,
            record={**record, "value": "new"}, commit_timestamp=101.0))
        assert store.state.cells["A1"].value == "new"

    def test_remote_delete_removes_cell(self, remote):
        store = SpreadsheetStore()
        coordinator = SyncCoordinator(store, remote, sheet_id=SHEET)
        coordinator._on_remote_event(ChangeEvent(
            entity=EntityKind.CELL, change=ChangeKind.DELETE, previous_record={"id": "D1"}))
        assert "D1" not in store.state.cells

    @pytest.mark.asyncio
    async def test_events_during_write_window_are_dropped(self, remote):
        store = SpreadsheetStore(state=initial_state())
        coordinator = SyncCoordinator(store, remote, sheet_id=SHEET, echo_window=WINDOW,
                                      clock=lambda: 500.0)
        coordinator._begin_write("A1")
        assert coordinator.is_syncing
        assert coordinator._last_local_write["A1"] == 500.0

        event = ChangeEvent(
            entity=EntityKind.CELL, change=ChangeKind.UPDATE, commit_timestamp=900.0,
            record={"id": "B1", "value": "x", "row_num": 1, "col_id": "B", "sheet_id": SHEET})
        coordinator._on_remote_event(event)
        assert "B1" not in store.state.cells

        await asyncio.sleep(WINDOW * 2)
        assert not coordinator.is_syncing
        coordinator._on_remote_event(event)
        assert store.state.cells["B1"] == make_cell("B1", "x")
        await coordinator.dispose()
