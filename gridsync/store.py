import logging
from typing import Callable, List, Optional

from gridsync import config
from gridsync.actions import TRANSIENT_ACTIONS
from gridsync.models import SpreadsheetState
from gridsync.persistence import dump_local_state, load_local_state
from gridsync.reducer import initial_state, reduce
from gridsync.storage import LocalStateRepository, StorageError

logger = logging.getLogger(__name__)

# listener(action, state_before, state_after)
Listener = Callable[[object, SpreadsheetState, SpreadsheetState], None]


class SpreadsheetStore:
    """Owns the current state. All mutation goes through `dispatch`.

    After every state-changing, non-transient action the persisted part of
    the state is written to the local repository (when one is configured)
    and listeners are told about the transition.
    """

    def __init__(self, state: Optional[SpreadsheetState] = None,
                 repository: Optional[LocalStateRepository] = None,
                 history_limit: int = config.HISTORY_LIMIT,
                 grid_rows: int = config.GRID_ROWS):
        self.state = state or initial_state()
        self.repository = repository
        self.history_limit = history_limit
        self.grid_rows = grid_rows
        self._listeners: List[Listener] = []

    @classmethod
    def from_repository(cls, repository: LocalStateRepository, **kwargs) -> "SpreadsheetStore":
        """Hydrate from the local cache, falling back to seeded defaults."""
        try:
            snapshot = load_local_state(repository.load())
        except StorageError as e:
            logger.error("Local state unavailable, starting from defaults: %s", e)
            snapshot = None
        if snapshot is not None:
            logger.info("Loaded local state: %d cells, %d columns",
                        len(snapshot.cells), len(snapshot.columns))
        return cls(state=initial_state(snapshot), repository=repository, **kwargs)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _unsubscribe

    def dispatch(self, action) -> SpreadsheetState:
        before = self.state
        after = reduce(before, action, history_limit=self.history_limit, grid_rows=self.grid_rows)
        if after is before:
            return after
        self.state = after

        if self.repository is not None and action.type not in TRANSIENT_ACTIONS:
            self._save(after)

        for listener in list(self._listeners):
            try:
                listener(action, before, after)
            except Exception:
                logger.exception("Store listener failed on %s", action.type)
        return after

    def _save(self, state: SpreadsheetState):
        try:
            self.repository.save(dump_local_state(state))
        except StorageError as e:
            logger.error("Local save failed: %s", e)
