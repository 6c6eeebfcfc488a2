"""Remote store interface shared by every backend.

A remote store is the shared relational state (cells, columns, archived
rows scoped by sheet id) plus a change channel. Every method may fail
with RemoteStoreError; callers treat failures as non-fatal.
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Iterable, List, Optional

from gridsync.models import CellRecord, ChangeEvent, ColumnRecord

ChangeCallback = Callable[[ChangeEvent], None]


class RemoteStoreError(Exception):
    """A remote read, write or subscription failed."""


class Subscription:
    """Handle returned by `RemoteStore.subscribe`. Unsubscribing twice is a no-op."""

    def __init__(self, on_unsubscribe: Optional[Callable[[], Awaitable[None]]] = None):
        self._on_unsubscribe = on_unsubscribe
        self.active = True

    async def unsubscribe(self):
        if not self.active:
            return
        self.active = False
        if self._on_unsubscribe is not None:
            await self._on_unsubscribe()


class RemoteStore(ABC):

    @abstractmethod
    async def fetch_cells(self, sheet_id: str) -> List[CellRecord]: ...

    @abstractmethod
    async def fetch_columns(self, sheet_id: str) -> List[ColumnRecord]:
        """Columns of the sheet ordered by position."""

    @abstractmethod
    async def fetch_archived_rows(self, sheet_id: str) -> List[int]: ...

    @abstractmethod
    async def upsert_cell(self, record: CellRecord): ...

    @abstractmethod
    async def upsert_column(self, record: ColumnRecord): ...

    @abstractmethod
    async def delete_column(self, sheet_id: str, column_id: str): ...

    @abstractmethod
    async def delete_column_cells(self, sheet_id: str, column_id: str): ...

    @abstractmethod
    async def replace_archived_rows(self, sheet_id: str, rows: Iterable[int]):
        """Delete every archived row of the sheet, then insert `rows`."""

    @abstractmethod
    async def subscribe(self, sheet_id: str, callback: ChangeCallback) -> Subscription: ...

    async def close(self):
        pass
