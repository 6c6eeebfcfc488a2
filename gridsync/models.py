from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class ColumnType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DROPDOWN = "dropdown"
    FORMULA = "formula"


# ── Grid ─────────────────────────────────────────────────────────────
# Grid models are frozen: history snapshots share cell and column
# objects, so a change always means a new object.

class Cell(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    value: str = ""
    formula: Optional[str] = None
    is_formula: bool = Field(default=False, alias="isFormula")
    row: int = Field(ge=1)
    column: str

    @model_validator(mode="after")
    def _id_matches_address(self):
        if self.id != f"{self.column}{self.row}":
            raise ValueError(f"Cell id {self.id!r} does not match {self.column}{self.row}")
        return self


class Column(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(pattern=r"^[A-Z]{1,2}$")
    label: str
    type: ColumnType = ColumnType.TEXT
    read_only: bool = Field(default=False, alias="readOnly")
    dropdown_options: Optional[List[str]] = Field(default=None, alias="dropdownOptions")
    formula: Optional[str] = None

    @model_validator(mode="after")
    def _type_matches_metadata(self):
        if (self.type == ColumnType.DROPDOWN) != (self.dropdown_options is not None):
            raise ValueError("dropdownOptions must be set exactly for dropdown columns")
        if (self.type == ColumnType.FORMULA) != bool(self.formula):
            raise ValueError("formula must be set exactly for formula columns")
        return self


class Snapshot(BaseModel):
    """The versioned part of the spreadsheet, as stored in history."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    cells: Dict[str, Cell] = Field(default_factory=dict)
    columns: List[Column] = Field(default_factory=list)
    archived_rows: FrozenSet[int] = Field(default_factory=frozenset, alias="archivedRows")
    show_archived_rows: bool = Field(default=True, alias="showArchivedRows")


class SpreadsheetState(Snapshot):
    selected_cells: FrozenSet[str] = Field(default_factory=frozenset, alias="selectedCells")
    editing_cell: Optional[str] = Field(default=None, alias="editingCell")
    history: List[Snapshot] = Field(default_factory=list)
    history_index: int = Field(default=0, alias="historyIndex")


# ── Remote records ───────────────────────────────────────────────────

class CellRecord(BaseModel):
    id: str
    value: str = ""
    formula: Optional[str] = None
    is_formula: bool = False
    row_num: int
    col_id: str
    sheet_id: str
    updated_at: Optional[str] = None


class ColumnRecord(BaseModel):
    id: str
    sheet_id: str
    label: str
    type: str = "text"
    formula: Optional[str] = None
    read_only: bool = False
    dropdown_options: Optional[List[str]] = None
    position: int = 0
    updated_at: Optional[str] = None


class ArchivedRowRecord(BaseModel):
    sheet_id: str
    row_number: int


class EntityKind(str, Enum):
    CELL = "cell"
    COLUMN = "column"
    ARCHIVED_ROW = "archived_row"


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    entity: EntityKind
    change: ChangeKind
    record: Optional[dict] = None
    previous_record: Optional[dict] = None
    commit_timestamp: Optional[float] = None  # epoch seconds
