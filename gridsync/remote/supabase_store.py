"""Remote store backed by Supabase (Postgres tables + realtime channel).

Expected tables, all in the public schema:

    cells          (id, sheet_id, value, formula, is_formula, row_num, col_id, updated_at)
    columns        (id, sheet_id, label, type, formula, read_only, dropdown_options, position, updated_at)
    archived_rows  (sheet_id, row_number)

Realtime must be enabled for the three tables.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from supabase import AsyncClient, acreate_client

from gridsync import config
from gridsync.models import CellRecord, ChangeEvent, ChangeKind, ColumnRecord, EntityKind
from gridsync.remote.base import ChangeCallback, RemoteStore, RemoteStoreError, Subscription

logger = logging.getLogger(__name__)

_TABLE_ENTITIES = {
    "cells": EntityKind.CELL,
    "columns": EntityKind.COLUMN,
    "archived_rows": EntityKind.ARCHIVED_ROW,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(value) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def parse_change_payload(table: str, payload: dict) -> Optional[ChangeEvent]:
    """Turn a postgres_changes payload into a ChangeEvent (None if unusable)."""
    data = payload.get("data", payload) if isinstance(payload, dict) else {}
    raw_type = str(data.get("type") or data.get("eventType") or "").lower()
    try:
        change = ChangeKind(raw_type)
    except ValueError:
        logger.debug("Ignoring realtime payload with type %r", raw_type)
        return None
    record = data.get("record") or data.get("new") or None
    previous = data.get("old_record") or data.get("old") or None
    return ChangeEvent(
        entity=_TABLE_ENTITIES[table],
        change=change,
        record=record,
        previous_record=previous,
        commit_timestamp=_parse_timestamp(data.get("commit_timestamp")),
    )


class SupabaseRemoteStore(RemoteStore):
    def __init__(self, url: str = config.SUPABASE_URL, key: str = config.SUPABASE_KEY):
        if not url or not key:
            raise RemoteStoreError("Supabase remote needs SUPABASE_URL and SUPABASE_KEY")
        self.url = url
        self.key = key
        self._client: Optional[AsyncClient] = None

    async def _get_client(self) -> AsyncClient:
        if self._client is None:
            try:
                self._client = await acreate_client(self.url, self.key)
            except Exception as e:
                raise RemoteStoreError(f"Cannot connect to Supabase: {e}") from e
            logger.info("Supabase client initialised for %s", self.url)
        return self._client

    async def _execute(self, what: str, build):
        client = await self._get_client()
        try:
            response = await build(client).execute()
        except Exception as e:
            raise RemoteStoreError(f"{what} failed: {e}") from e
        return response.data or []

    # ── Reads ────────────────────────────────────────────────────────

    async def fetch_cells(self, sheet_id: str) -> List[CellRecord]:
        rows = await self._execute("fetch cells", lambda c: c.table("cells").select("*").eq("sheet_id", sheet_id))
        return [CellRecord(**r) for r in rows]

    async def fetch_columns(self, sheet_id: str) -> List[ColumnRecord]:
        rows = await self._execute(
            "fetch columns",
            lambda c: c.table("columns").select("*").eq("sheet_id", sheet_id).order("position"),
        )
        return [ColumnRecord(**r) for r in rows]

    async def fetch_archived_rows(self, sheet_id: str) -> List[int]:
        rows = await self._execute(
            "fetch archived rows",
            lambda c: c.table("archived_rows").select("row_number").eq("sheet_id", sheet_id),
        )
        return [r["row_number"] for r in rows]

    # ── Writes ───────────────────────────────────────────────────────

    async def upsert_cell(self, record: CellRecord):
        data = record.model_dump()
        data["updated_at"] = _now_iso()
        await self._execute("upsert cell", lambda c: c.table("cells").upsert(data, on_conflict="id"))

    async def upsert_column(self, record: ColumnRecord):
        data = record.model_dump()
        data["updated_at"] = _now_iso()
        await self._execute("upsert column",
                            lambda c: c.table("columns").upsert(data, on_conflict="id,sheet_id"))

    async def delete_column(self, sheet_id: str, column_id: str):
        await self._execute(
            "delete column",
            lambda c: c.table("columns").delete().eq("id", column_id).eq("sheet_id", sheet_id),
        )

    async def delete_column_cells(self, sheet_id: str, column_id: str):
        await self._execute(
            "delete column cells",
            lambda c: c.table("cells").delete().eq("col_id", column_id).eq("sheet_id", sheet_id),
        )

    async def replace_archived_rows(self, sheet_id: str, rows: Iterable[int]):
        await self._execute("clear archived rows",
                            lambda c: c.table("archived_rows").delete().eq("sheet_id", sheet_id))
        payload = [{"sheet_id": sheet_id, "row_number": r} for r in sorted(set(rows))]
        if payload:
            await self._execute("insert archived rows",
                                lambda c: c.table("archived_rows").insert(payload))

    # ── Change channel ───────────────────────────────────────────────

    async def subscribe(self, sheet_id: str, callback: ChangeCallback) -> Subscription:
        client = await self._get_client()
        channel = client.channel(f"gridsync-{sheet_id}")

        def _handler_for(table: str):
            def _handler(payload):
                event = parse_change_payload(table, payload)
                if event is not None:
                    callback(event)
            return _handler

        try:
            for table in _TABLE_ENTITIES:
                channel.on_postgres_changes(
                    "*", schema="public", table=table,
                    filter=f"sheet_id=eq.{sheet_id}", callback=_handler_for(table),
                )
            await channel.subscribe()
        except Exception as e:
            raise RemoteStoreError(f"Realtime subscription failed: {e}") from e

        async def _remove():
            try:
                await client.remove_channel(channel)
            except Exception as e:
                raise RemoteStoreError(f"Realtime unsubscribe failed: {e}") from e

        return Subscription(on_unsubscribe=_remove)

    async def close(self):
        if self._client is not None:
            try:
                await self._client.remove_all_channels()
            except Exception as e:
                logger.warning("Closing Supabase channels failed: %s", e)
            self._client = None
