import asyncio

import pytest

from gridsync.models import Cell, Column, ColumnType, Snapshot
from gridsync.reducer import initial_state
from gridsync.remote.sqlite_store import SQLiteRemoteStore
from gridsync.storage import DatabaseManager, LocalStateRepository


def make_cell(cell_id: str, value: str, **kwargs) -> Cell:
    column = cell_id.rstrip("0123456789")
    return Cell(id=cell_id, value=value, row=int(cell_id[len(column):]), column=column, **kwargs)


async def settle(*coordinators, rounds: int = 3):
    """Let queued writes, published events and refetches run to completion."""
    for _ in range(rounds):
        for coordinator in coordinators:
            await coordinator.flush()
        await asyncio.sleep(0)


@pytest.fixture
def state():
    """Seeded default state (five columns, nine sample cells)."""
    return initial_state()


@pytest.fixture
def empty_state():
    """Three plain columns and no cells."""
    return initial_state(Snapshot(columns=[
        Column(id="A", label="A", type=ColumnType.NUMBER),
        Column(id="B", label="B", type=ColumnType.NUMBER),
        Column(id="C", label="C"),
    ]))


@pytest.fixture
def local_repo(tmp_path):
    db = DatabaseManager(str(tmp_path / "local.db"))
    db.initialize_schema()
    return LocalStateRepository(db)


@pytest.fixture
def remote(tmp_path):
    return SQLiteRemoteStore(str(tmp_path / "remote.db"))
