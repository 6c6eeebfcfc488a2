"""Spreadsheet reducer: (state, action) -> state.

`reduce` is pure and total. It never mutates its input; unchanged cells
and columns are shared between the old state, the new state and every
history snapshot. Actions it cannot apply (unknown kind, malformed cell
id, missing column) return the input state object unchanged.

History: the state carries a list of post-mutation snapshots and an
index into it. `initial_state` seeds the list with the starting snapshot
so the first undo lands on the true initial state. User-intent actions
append one snapshot, truncating any redo tail and evicting the oldest
entries past the retention limit. Selection, editing cursor, visibility
toggle, external updates and bulk loads never touch history.
"""

import logging
from functools import cmp_to_key
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from gridsync import config
from gridsync.actions import HISTORY_ACTIONS
from gridsync.formula import evaluate, index_to_col, parse_cell_id, parse_number
from gridsync.models import Cell, Column, ColumnType, Snapshot, SpreadsheetState

logger = logging.getLogger(__name__)


# ── Seed data ────────────────────────────────────────────────────────

INITIAL_COLUMNS = [
    Column(id="A", label="Column A", type=ColumnType.NUMBER),
    Column(id="B", label="Column B", type=ColumnType.NUMBER),
    Column(id="C", label="Status", type=ColumnType.DROPDOWN,
           dropdown_options=["Active", "Inactive", "Pending"]),
    Column(id="D", label="Notes", type=ColumnType.TEXT),
    Column(id="E", label="Total", type=ColumnType.NUMBER),
]

_SAMPLE_VALUES = {
    "A1": "100", "A2": "200", "A3": "300",
    "C1": "Active", "C2": "Pending", "C3": "Inactive",
    "D1": "Test note 1", "D2": "Test note 2", "D3": "Test note 3",
}


def _sample_cells() -> Dict[str, Cell]:
    cells = {}
    for cell_id, value in _SAMPLE_VALUES.items():
        column, row = parse_cell_id(cell_id)
        cells[cell_id] = Cell(id=cell_id, value=value, row=row, column=column)
    return cells


# ── Helpers ──────────────────────────────────────────────────────────

def next_column_id(existing: Iterable[str]) -> str:
    """First free id in A..Z, then AA..ZZ."""
    taken = set(existing)
    for idx in range(26 + 26 * 26):
        candidate = index_to_col(idx)
        if candidate not in taken:
            return candidate
    raise ValueError("No free column id left (A..ZZ all in use)")


def find_column(columns: List[Column], column_id: str) -> Optional[Column]:
    for column in columns:
        if column.id == column_id:
            return column
    return None


def _replace_column(columns: List[Column], updated: Column) -> List[Column]:
    return [updated if c.id == updated.id else c for c in columns]


def snapshot_of(state: Snapshot) -> Snapshot:
    return Snapshot(
        cells=state.cells,
        columns=state.columns,
        archived_rows=state.archived_rows,
        show_archived_rows=state.show_archived_rows,
    )


def recalculate(cells: Mapping[str, Cell], columns: List[Column]) -> Dict[str, Cell]:
    """Re-derive every formula column for every row that holds any cell.

    Full recompute against the working map. A None result leaves the
    target cell as it was. Cells whose value does not change keep their
    identity, so recalculating twice yields an equal map.
    """
    result = dict(cells)
    formula_columns = [c for c in columns if c.type == ColumnType.FORMULA and c.formula]
    if not formula_columns:
        return result

    rows = sorted({cell.row for cell in cells.values()})
    for column in formula_columns:
        for row in rows:
            value = evaluate(column.formula, row, result)
            if value is None:
                continue
            target = f"{column.id}{row}"
            derived = Cell(id=target, value=value, formula=column.formula,
                           is_formula=True, row=row, column=column.id)
            if result.get(target) != derived:
                result[target] = derived
    return result


def push_history(state: SpreadsheetState,
                 limit: int = config.HISTORY_LIMIT) -> SpreadsheetState:
    """Append the snapshot of `state`, dropping the redo tail and old entries."""
    history = list(state.history[: state.history_index + 1])
    history.append(snapshot_of(state))
    history = history[-limit:]
    return state.model_copy(update={"history": history, "history_index": len(history) - 1})


def default_snapshot() -> Snapshot:
    return Snapshot(
        cells=recalculate(_sample_cells(), INITIAL_COLUMNS),
        columns=list(INITIAL_COLUMNS),
    )


def initial_state(snapshot: Optional[Snapshot] = None) -> SpreadsheetState:
    """Build the starting state with its own snapshot seeded as history[0]."""
    snap = snapshot or default_snapshot()
    state = SpreadsheetState(
        cells=snap.cells,
        columns=snap.columns,
        archived_rows=snap.archived_rows,
        show_archived_rows=snap.show_archived_rows,
    )
    return state.model_copy(update={"history": [snapshot_of(state)], "history_index": 0})


# ── Cell writes ──────────────────────────────────────────────────────

def _write_cell(state: SpreadsheetState, action, *, local: bool) -> SpreadsheetState:
    parsed = parse_cell_id(action.cell_id)
    if parsed is None:
        logger.debug("Ignoring %s with malformed cell id %r", action.type, action.cell_id)
        return state
    column_id, row = parsed

    column = find_column(state.columns, column_id)
    if local and column is not None and (column.read_only or column.type == ColumnType.FORMULA):
        logger.debug("Ignoring edit of %s: column %s is not editable", action.cell_id, column_id)
        return state

    value = action.value
    formula = action.formula if action.is_formula else None
    if not formula and value.startswith("="):
        formula = value[1:]

    if formula:
        result = evaluate(formula, row, state.cells)
        if result is None:
            previous = state.cells.get(action.cell_id)
            result = previous.value if previous is not None else ""
        value = result

    cells = dict(state.cells)
    cells[action.cell_id] = Cell(id=action.cell_id, value=value, formula=formula or None,
                                 is_formula=bool(formula), row=row, column=column_id)
    return state.model_copy(update={"cells": recalculate(cells, state.columns)})


def _update_cell(state, action, grid_rows):
    return _write_cell(state, action, local=True)


def _update_cell_external(state, action, grid_rows):
    return _write_cell(state, action, local=False)


def _delete_cell_external(state, action, grid_rows):
    if action.cell_id not in state.cells:
        return state
    cells = dict(state.cells)
    del cells[action.cell_id]
    return state.model_copy(update={"cells": recalculate(cells, state.columns)})


def _delete_selected_cells(state, action, grid_rows):
    cells = dict(state.cells)
    for cell_id in state.selected_cells:
        cell = cells.get(cell_id)
        if cell is not None and cell.value != "":
            cells[cell_id] = cell.model_copy(update={"value": ""})
    return state.model_copy(update={
        "cells": recalculate(cells, state.columns),
        "selected_cells": frozenset(),
    })


def _compare_values(a: str, b: str) -> int:
    a_num, b_num = parse_number(a), parse_number(b)
    if a_num is not None and b_num is not None:
        return (a_num > b_num) - (a_num < b_num)
    return (a > b) - (a < b)


def _sort_by_column(state, action, grid_rows):
    if find_column(state.columns, action.column) is None:
        return state

    groups: Dict[int, Dict[str, Cell]] = {}
    for cell in state.cells.values():
        groups.setdefault(cell.row, {})[cell.column] = cell
    ordered = [groups[row] for row in sorted(groups)]

    def _compare(a, b):
        a_cell, b_cell = a.get(action.column), b.get(action.column)
        c = _compare_values(a_cell.value if a_cell else "", b_cell.value if b_cell else "")
        return c if action.ascending else -c

    ordered.sort(key=cmp_to_key(_compare))

    cells: Dict[str, Cell] = {}
    for new_row, row_cells in enumerate(ordered, start=1):
        for cell in row_cells.values():
            if cell.row != new_row:
                cell = cell.model_copy(update={"id": f"{cell.column}{new_row}", "row": new_row})
            cells[cell.id] = cell
    return state.model_copy(update={"cells": recalculate(cells, state.columns)})


# ── Rows ─────────────────────────────────────────────────────────────

def _archive_rows(state, action, grid_rows):
    rows = {r for r in action.rows if r >= 1}
    return state.model_copy(update={"archived_rows": state.archived_rows | rows})


def _unarchive_rows(state, action, grid_rows):
    return state.model_copy(update={"archived_rows": state.archived_rows - set(action.rows)})


def _toggle_archived_visibility(state, action, grid_rows):
    return state.model_copy(update={"show_archived_rows": not state.show_archived_rows})


# ── Selection / editing ──────────────────────────────────────────────

def _select_cells(state, action, grid_rows):
    return state.model_copy(update={"selected_cells": frozenset(action.cell_ids)})


def _deselect_cells(state, action, grid_rows):
    return state.model_copy(update={"selected_cells": state.selected_cells - set(action.cell_ids)})


def _start_editing(state, action, grid_rows):
    if parse_cell_id(action.cell_id) is None:
        return state
    return state.model_copy(update={"editing_cell": action.cell_id})


def _stop_editing(state, action, grid_rows):
    return state.model_copy(update={"editing_cell": None})


# ── History ──────────────────────────────────────────────────────────

def _restore(state: SpreadsheetState, index: int) -> SpreadsheetState:
    snap = state.history[index]
    return state.model_copy(update={
        "cells": snap.cells,
        "columns": snap.columns,
        "archived_rows": snap.archived_rows,
        "show_archived_rows": snap.show_archived_rows,
        "history_index": index,
    })


def _undo(state, action, grid_rows):
    if state.history_index <= 0:
        return state
    return _restore(state, state.history_index - 1)


def _redo(state, action, grid_rows):
    if state.history_index >= len(state.history) - 1:
        return state
    return _restore(state, state.history_index + 1)


# ── Columns ──────────────────────────────────────────────────────────

def _add_column(state, action, grid_rows):
    if find_column(state.columns, action.column.id) is not None:
        logger.debug("Ignoring ADD_COLUMN: id %s already exists", action.column.id)
        return state
    columns = [*state.columns, action.column]
    return state.model_copy(update={"columns": columns, "cells": recalculate(state.cells, columns)})


def _delete_column(state, action, grid_rows):
    if find_column(state.columns, action.column_id) is None:
        return state
    columns = [c for c in state.columns if c.id != action.column_id]
    cells = {k: c for k, c in state.cells.items() if c.column != action.column_id}
    return state.model_copy(update={"columns": columns, "cells": cells})


def _rename_column(state, action, grid_rows):
    column = find_column(state.columns, action.column_id)
    if column is None:
        return state
    updated = column.model_copy(update={"label": action.new_label})
    return state.model_copy(update={"columns": _replace_column(state.columns, updated)})


def _toggle_column_lock(state, action, grid_rows):
    column = find_column(state.columns, action.column_id)
    if column is None:
        return state
    updated = column.model_copy(update={"read_only": not column.read_only})
    return state.model_copy(update={"columns": _replace_column(state.columns, updated)})


def _set_column_formula(state, action, grid_rows):
    column = find_column(state.columns, action.column_id)
    if column is None:
        return state

    formula = (action.formula or "").strip().lstrip("=") or None
    cells = dict(state.cells)

    if formula:
        updated = column.model_copy(update={
            "type": ColumnType.FORMULA, "formula": formula, "dropdown_options": None,
        })
        for row in range(1, grid_rows + 1):
            value = evaluate(formula, row, cells)
            if value is not None:
                target = f"{column.id}{row}"
                cells[target] = Cell(id=target, value=value, formula=formula,
                                     is_formula=True, row=row, column=column.id)
    else:
        updated = column.model_copy(update={
            "type": ColumnType.TEXT, "formula": None, "dropdown_options": None,
        })
        for cell_id, cell in state.cells.items():
            if cell.column == column.id and cell.is_formula:
                cells[cell_id] = Cell(id=cell_id, value=cell.value, row=cell.row, column=cell.column)

    columns = _replace_column(state.columns, updated)
    return state.model_copy(update={"columns": columns, "cells": recalculate(cells, columns)})


# ── Bulk loads ───────────────────────────────────────────────────────

def _load_data(state, action, grid_rows):
    return state.model_copy(update={"cells": dict(action.cells)})


def _load_columns(state, action, grid_rows):
    return state.model_copy(update={"columns": list(action.columns)})


def _load_archived_rows(state, action, grid_rows):
    return state.model_copy(update={"archived_rows": frozenset(action.rows)})


_HANDLERS: Dict[str, Callable] = {
    "UPDATE_CELL": _update_cell,
    "UPDATE_CELL_EXTERNAL": _update_cell_external,
    "DELETE_CELL_EXTERNAL": _delete_cell_external,
    "DELETE_SELECTED_CELLS": _delete_selected_cells,
    "SORT_BY_COLUMN": _sort_by_column,
    "ARCHIVE_ROWS": _archive_rows,
    "UNARCHIVE_ROWS": _unarchive_rows,
    "TOGGLE_ARCHIVED_ROWS_VISIBILITY": _toggle_archived_visibility,
    "SELECT_CELLS": _select_cells,
    "DESELECT_CELLS": _deselect_cells,
    "START_EDITING_CELL": _start_editing,
    "STOP_EDITING_CELL": _stop_editing,
    "UNDO": _undo,
    "REDO": _redo,
    "ADD_COLUMN": _add_column,
    "DELETE_COLUMN": _delete_column,
    "RENAME_COLUMN": _rename_column,
    "TOGGLE_COLUMN_LOCK": _toggle_column_lock,
    "SET_COLUMN_FORMULA": _set_column_formula,
    "LOAD_DATA": _load_data,
    "LOAD_COLUMNS": _load_columns,
    "LOAD_ARCHIVED_ROWS": _load_archived_rows,
}


def reduce(state: SpreadsheetState, action, *,
           history_limit: int = config.HISTORY_LIMIT,
           grid_rows: int = config.GRID_ROWS) -> SpreadsheetState:
    handler = _HANDLERS.get(getattr(action, "type", None))
    if handler is None:
        return state

    new_state = handler(state, action, grid_rows)
    if new_state is state:
        return state
    if action.type in HISTORY_ACTIONS:
        return push_history(new_state, history_limit)
    return new_state
