"""Remote store backed by a shared SQLite file.

The sqlite3 calls run inline on the event loop, as the HTTP handlers do with
the local database; each is a short statement against a local file.

Several SpreadsheetStore/SyncCoordinator pairs sharing one instance act
like several clients of the same backend: every successful write is
published to every subscriber of the sheet, the writer included, on the
next turn of the event loop.
"""

import os
import json
import time
import asyncio
import sqlite3
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List

from gridsync.models import (
    ArchivedRowRecord, CellRecord, ChangeEvent, ChangeKind, ColumnRecord, EntityKind,
)
from gridsync.remote.base import ChangeCallback, RemoteStore, RemoteStoreError, Subscription
from gridsync.storage import DatabaseManager, StorageError

logger = logging.getLogger(__name__)

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "schema.sql")


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _row_to_cell(row) -> CellRecord:
    return CellRecord(**dict(row))


def _row_to_column(row) -> ColumnRecord:
    data = dict(row)
    options = data.get("dropdown_options")
    data["dropdown_options"] = json.loads(options) if options else None
    return ColumnRecord(**data)


class SQLiteRemoteStore(RemoteStore):
    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db = DatabaseManager(db_path)
        try:
            self.db.initialize_schema(SCHEMA_PATH)
        except StorageError as e:
            raise RemoteStoreError(str(e)) from e
        self._clock = clock
        self._subscribers: Dict[str, List[ChangeCallback]] = {}

    def _execute(self, fn):
        try:
            with self.db.get_connection() as conn:
                return fn(conn)
        except sqlite3.Error as e:
            raise RemoteStoreError(f"SQLite remote error: {e}") from e

    # ── Reads ────────────────────────────────────────────────────────

    async def fetch_cells(self, sheet_id: str) -> List[CellRecord]:
        rows = self._execute(lambda conn: conn.execute(
            "SELECT * FROM cells WHERE sheet_id = ? ORDER BY row_num, col_id", (sheet_id,)
        ).fetchall())
        return [_row_to_cell(r) for r in rows]

    async def fetch_columns(self, sheet_id: str) -> List[ColumnRecord]:
        rows = self._execute(lambda conn: conn.execute(
            "SELECT * FROM columns WHERE sheet_id = ? ORDER BY position ASC", (sheet_id,)
        ).fetchall())
        return [_row_to_column(r) for r in rows]

    async def fetch_archived_rows(self, sheet_id: str) -> List[int]:
        rows = self._execute(lambda conn: conn.execute(
            "SELECT row_number FROM archived_rows WHERE sheet_id = ? ORDER BY row_number",
            (sheet_id,),
        ).fetchall())
        return [r["row_number"] for r in rows]

    # ── Writes ───────────────────────────────────────────────────────

    async def upsert_cell(self, record: CellRecord):
        now = self._clock()
        stored = record.model_copy(update={"updated_at": _iso(now)})

        def _write(conn):
            prev = conn.execute("SELECT * FROM cells WHERE id = ? AND sheet_id = ?",
                                (stored.id, stored.sheet_id)).fetchone()
            conn.execute(
                "INSERT OR REPLACE INTO cells (id, sheet_id, value, formula, is_formula, row_num, col_id, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (stored.id, stored.sheet_id, stored.value, stored.formula, int(stored.is_formula),
                 stored.row_num, stored.col_id, stored.updated_at),
            )
            conn.commit()
            return prev

        prev = self._execute(_write)
        self._publish(stored.sheet_id, ChangeEvent(
            entity=EntityKind.CELL,
            change=ChangeKind.UPDATE if prev else ChangeKind.INSERT,
            record=stored.model_dump(),
            previous_record=_row_to_cell(prev).model_dump() if prev else None,
            commit_timestamp=now,
        ))

    async def upsert_column(self, record: ColumnRecord):
        now = self._clock()
        stored = record.model_copy(update={"updated_at": _iso(now)})
        options = json.dumps(stored.dropdown_options) if stored.dropdown_options is not None else None

        def _write(conn):
            prev = conn.execute("SELECT * FROM columns WHERE id = ? AND sheet_id = ?",
                                (stored.id, stored.sheet_id)).fetchone()
            conn.execute(
                "INSERT OR REPLACE INTO columns (id, sheet_id, label, type, formula, read_only, dropdown_options, position, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (stored.id, stored.sheet_id, stored.label, stored.type, stored.formula,
                 int(stored.read_only), options, stored.position, stored.updated_at),
            )
            conn.commit()
            return prev

        prev = self._execute(_write)
        self._publish(stored.sheet_id, ChangeEvent(
            entity=EntityKind.COLUMN,
            change=ChangeKind.UPDATE if prev else ChangeKind.INSERT,
            record=stored.model_dump(),
            previous_record=_row_to_column(prev).model_dump() if prev else None,
            commit_timestamp=now,
        ))

    async def delete_column(self, sheet_id: str, column_id: str):
        now = self._clock()

        def _write(conn):
            prev = conn.execute("SELECT * FROM columns WHERE id = ? AND sheet_id = ?",
                                (column_id, sheet_id)).fetchone()
            conn.execute("DELETE FROM columns WHERE id = ? AND sheet_id = ?", (column_id, sheet_id))
            conn.commit()
            return prev

        prev = self._execute(_write)
        if prev is None:
            return
        self._publish(sheet_id, ChangeEvent(
            entity=EntityKind.COLUMN,
            change=ChangeKind.DELETE,
            previous_record=_row_to_column(prev).model_dump(),
            commit_timestamp=now,
        ))

    async def delete_column_cells(self, sheet_id: str, column_id: str):
        now = self._clock()

        def _write(conn):
            rows = conn.execute("SELECT * FROM cells WHERE sheet_id = ? AND col_id = ?",
                                (sheet_id, column_id)).fetchall()
            conn.execute("DELETE FROM cells WHERE sheet_id = ? AND col_id = ?", (sheet_id, column_id))
            conn.commit()
            return rows

        for row in self._execute(_write):
            self._publish(sheet_id, ChangeEvent(
                entity=EntityKind.CELL,
                change=ChangeKind.DELETE,
                previous_record=_row_to_cell(row).model_dump(),
                commit_timestamp=now,
            ))

    async def replace_archived_rows(self, sheet_id: str, rows: Iterable[int]):
        now = self._clock()
        new_rows = sorted(set(rows))

        def _write(conn):
            old = [r["row_number"] for r in conn.execute(
                "SELECT row_number FROM archived_rows WHERE sheet_id = ?", (sheet_id,)).fetchall()]
            conn.execute("DELETE FROM archived_rows WHERE sheet_id = ?", (sheet_id,))
            conn.executemany("INSERT INTO archived_rows (sheet_id, row_number) VALUES (?, ?)",
                             [(sheet_id, r) for r in new_rows])
            conn.commit()
            return old

        old_rows = self._execute(_write)
        for r in old_rows:
            self._publish(sheet_id, ChangeEvent(
                entity=EntityKind.ARCHIVED_ROW, change=ChangeKind.DELETE,
                previous_record=ArchivedRowRecord(sheet_id=sheet_id, row_number=r).model_dump(),
                commit_timestamp=now,
            ))
        for r in new_rows:
            self._publish(sheet_id, ChangeEvent(
                entity=EntityKind.ARCHIVED_ROW, change=ChangeKind.INSERT,
                record=ArchivedRowRecord(sheet_id=sheet_id, row_number=r).model_dump(),
                commit_timestamp=now,
            ))

    # ── Change channel ───────────────────────────────────────────────

    async def subscribe(self, sheet_id: str, callback: ChangeCallback) -> Subscription:
        self._subscribers.setdefault(sheet_id, []).append(callback)
        logger.debug("Subscribed to sheet %s (%d listeners)", sheet_id, len(self._subscribers[sheet_id]))

        async def _remove():
            callbacks = self._subscribers.get(sheet_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return Subscription(on_unsubscribe=_remove)

    def _publish(self, sheet_id: str, event: ChangeEvent):
        callbacks = list(self._subscribers.get(sheet_id, ()))
        if not callbacks:
            return
        loop = asyncio.get_running_loop()
        for callback in callbacks:
            loop.call_soon(self._deliver, sheet_id, callback, event)

    def _deliver(self, sheet_id: str, callback: ChangeCallback, event: ChangeEvent):
        # Skip listeners that went away between publish and delivery
        if callback not in self._subscribers.get(sheet_id, ()):
            return
        try:
            callback(event)
        except Exception:
            logger.exception("Change listener failed for %s event", event.entity.value)
