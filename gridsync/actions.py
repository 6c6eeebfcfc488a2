"""Reducer actions.

Every action is a small frozen model tagged by its `type` string, so a
JSON body such as ``{"type": "UPDATE_CELL", "cellId": "A1", "value": "5"}``
validates straight into the matching class through `ActionAdapter`.
"""

from typing import Annotated, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from gridsync.models import Cell, Column


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# ── Cells ────────────────────────────────────────────────────────────

class UpdateCell(_Action):
    type: Literal["UPDATE_CELL"] = "UPDATE_CELL"
    cell_id: str = Field(alias="cellId")
    value: str
    formula: Optional[str] = None
    is_formula: Optional[bool] = Field(default=None, alias="isFormula")


class UpdateCellExternal(_Action):
    type: Literal["UPDATE_CELL_EXTERNAL"] = "UPDATE_CELL_EXTERNAL"
    cell_id: str = Field(alias="cellId")
    value: str
    formula: Optional[str] = None
    is_formula: Optional[bool] = Field(default=None, alias="isFormula")


class DeleteCellExternal(_Action):
    type: Literal["DELETE_CELL_EXTERNAL"] = "DELETE_CELL_EXTERNAL"
    cell_id: str = Field(alias="cellId")


class DeleteSelectedCells(_Action):
    type: Literal["DELETE_SELECTED_CELLS"] = "DELETE_SELECTED_CELLS"


class SortByColumn(_Action):
    type: Literal["SORT_BY_COLUMN"] = "SORT_BY_COLUMN"
    column: str
    ascending: bool = True


# ── Rows ─────────────────────────────────────────────────────────────

class ArchiveRows(_Action):
    type: Literal["ARCHIVE_ROWS"] = "ARCHIVE_ROWS"
    rows: List[int]


class UnarchiveRows(_Action):
    type: Literal["UNARCHIVE_ROWS"] = "UNARCHIVE_ROWS"
    rows: List[int]


class ToggleArchivedRowsVisibility(_Action):
    type: Literal["TOGGLE_ARCHIVED_ROWS_VISIBILITY"] = "TOGGLE_ARCHIVED_ROWS_VISIBILITY"


# ── Selection / editing ──────────────────────────────────────────────

class SelectCells(_Action):
    type: Literal["SELECT_CELLS"] = "SELECT_CELLS"
    cell_ids: List[str] = Field(alias="cellIds")


class DeselectCells(_Action):
    type: Literal["DESELECT_CELLS"] = "DESELECT_CELLS"
    cell_ids: List[str] = Field(alias="cellIds")


class StartEditingCell(_Action):
    type: Literal["START_EDITING_CELL"] = "START_EDITING_CELL"
    cell_id: str = Field(alias="cellId")


class StopEditingCell(_Action):
    type: Literal["STOP_EDITING_CELL"] = "STOP_EDITING_CELL"


# ── History ──────────────────────────────────────────────────────────

class Undo(_Action):
    type: Literal["UNDO"] = "UNDO"


class Redo(_Action):
    type: Literal["REDO"] = "REDO"


# ── Columns ──────────────────────────────────────────────────────────

class AddColumn(_Action):
    type: Literal["ADD_COLUMN"] = "ADD_COLUMN"
    column: Column


class DeleteColumn(_Action):
    type: Literal["DELETE_COLUMN"] = "DELETE_COLUMN"
    column_id: str = Field(alias="columnId")


class RenameColumn(_Action):
    type: Literal["RENAME_COLUMN"] = "RENAME_COLUMN"
    column_id: str = Field(alias="columnId")
    new_label: str = Field(alias="newLabel")


class ToggleColumnLock(_Action):
    type: Literal["TOGGLE_COLUMN_LOCK"] = "TOGGLE_COLUMN_LOCK"
    column_id: str = Field(alias="columnId")


class SetColumnFormula(_Action):
    type: Literal["SET_COLUMN_FORMULA"] = "SET_COLUMN_FORMULA"
    column_id: str = Field(alias="columnId")
    formula: Optional[str] = None


# ── Bulk loads (hydration / remote catch-up) ─────────────────────────

class LoadData(_Action):
    type: Literal["LOAD_DATA"] = "LOAD_DATA"
    cells: Dict[str, Cell]


class LoadColumns(_Action):
    type: Literal["LOAD_COLUMNS"] = "LOAD_COLUMNS"
    columns: List[Column]


class LoadArchivedRows(_Action):
    type: Literal["LOAD_ARCHIVED_ROWS"] = "LOAD_ARCHIVED_ROWS"
    rows: List[int]


Action = Annotated[
    Union[
        UpdateCell, UpdateCellExternal, DeleteCellExternal, DeleteSelectedCells,
        SortByColumn, ArchiveRows, UnarchiveRows, ToggleArchivedRowsVisibility,
        SelectCells, DeselectCells, StartEditingCell, StopEditingCell,
        Undo, Redo, AddColumn, DeleteColumn, RenameColumn, ToggleColumnLock,
        SetColumnFormula, LoadData, LoadColumns, LoadArchivedRows,
    ],
    Field(discriminator="type"),
]

ActionAdapter = TypeAdapter(Action)

# Actions that record a history snapshot. The sync coordinator mirrors
# exactly these (plus UNDO / REDO) to the remote store.
HISTORY_ACTIONS = frozenset({
    "UPDATE_CELL", "ARCHIVE_ROWS", "UNARCHIVE_ROWS", "SORT_BY_COLUMN",
    "DELETE_SELECTED_CELLS", "ADD_COLUMN", "DELETE_COLUMN", "RENAME_COLUMN",
    "TOGGLE_COLUMN_LOCK", "SET_COLUMN_FORMULA",
})

# Actions that only touch selection / cursor and are never persisted.
TRANSIENT_ACTIONS = frozenset({
    "SELECT_CELLS", "DESELECT_CELLS", "START_EDITING_CELL", "STOP_EDITING_CELL",
})
