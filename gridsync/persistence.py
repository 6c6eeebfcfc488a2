"""Conversion between in-memory state, the local cache and remote records."""

import json
import logging
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from gridsync.models import (
    Cell, CellRecord, Column, ColumnRecord, ColumnType, Snapshot, SpreadsheetState,
)

logger = logging.getLogger(__name__)


# ── Local cache ──────────────────────────────────────────────────────

def dump_local_state(state: Snapshot) -> str:
    """Serialize the persisted part of `state`: cells, columns, archived rows, visibility.

    Selection, editing cursor and history are never written.
    """
    payload = {
        "cells": {
            cell_id: cell.model_dump(by_alias=True, exclude_none=True, mode="json")
            for cell_id, cell in state.cells.items()
        },
        "archivedRows": sorted(state.archived_rows),
        "columns": [
            c.model_dump(by_alias=True, exclude_none=True, mode="json") for c in state.columns
        ],
        "showArchivedRows": state.show_archived_rows,
    }
    return json.dumps(payload)


def load_local_state(raw: Optional[str]) -> Optional[Snapshot]:
    """Parse a cached payload. Returns None when absent or unreadable."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
        return Snapshot.model_validate(data)
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.warning("Discarding unreadable local state: %s", e)
        return None


def state_summary(state: SpreadsheetState) -> dict:
    """JSON-ready view of the full state with history reduced to counters."""
    data = json.loads(dump_local_state(state))
    data["selectedCells"] = sorted(state.selected_cells)
    data["editingCell"] = state.editing_cell
    data["historyIndex"] = state.history_index
    data["historyLength"] = len(state.history)
    return data


# ── Remote records ───────────────────────────────────────────────────

def cell_to_record(cell: Cell, sheet_id: str) -> CellRecord:
    return CellRecord(
        id=cell.id,
        value=cell.value,
        formula=cell.formula,
        is_formula=cell.is_formula,
        row_num=cell.row,
        col_id=cell.column,
        sheet_id=sheet_id,
    )


def record_to_cell(record: CellRecord) -> Cell:
    return Cell(
        id=record.id,
        value=record.value or "",
        formula=record.formula,
        is_formula=record.is_formula,
        row=record.row_num,
        column=record.col_id,
    )


def column_to_record(column: Column, sheet_id: str, position: int) -> ColumnRecord:
    return ColumnRecord(
        id=column.id,
        sheet_id=sheet_id,
        label=column.label,
        type=column.type.value,
        formula=column.formula,
        read_only=column.read_only,
        dropdown_options=column.dropdown_options,
        position=position,
    )


def record_to_column(record: ColumnRecord) -> Column:
    """Build a Column, repairing type metadata that another client left inconsistent."""
    try:
        col_type = ColumnType(record.type)
    except ValueError:
        col_type = ColumnType.TEXT

    options = record.dropdown_options
    formula = record.formula or None
    if col_type == ColumnType.DROPDOWN:
        options = options or []
    else:
        options = None
    if col_type == ColumnType.FORMULA and not formula:
        col_type = ColumnType.TEXT
    if col_type != ColumnType.FORMULA:
        formula = None

    return Column(
        id=record.id,
        label=record.label,
        type=col_type,
        read_only=record.read_only,
        dropdown_options=options,
        formula=formula,
    )


def records_to_cells(records: Iterable[CellRecord]) -> Dict[str, Cell]:
    cells = {}
    for record in records:
        try:
            cell = record_to_cell(record)
        except ValidationError as e:
            logger.warning("Skipping malformed cell record %s: %s", record.id, e)
            continue
        cells[cell.id] = cell
    return cells


def records_to_columns(records: Iterable[ColumnRecord]) -> List[Column]:
    columns = []
    for record in sorted(records, key=lambda r: r.position):
        try:
            columns.append(record_to_column(record))
        except ValidationError as e:
            logger.warning("Skipping malformed column record %s: %s", record.id, e)
    return columns
