import sys
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, Set

from fastapi import APIRouter, Body, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from gridsync import config
from gridsync.actions import ActionAdapter
from gridsync.persistence import state_summary
from gridsync.reducer import next_column_id
from gridsync.remote.base import RemoteStore, RemoteStoreError
from gridsync.storage import DatabaseManager, LocalStateRepository
from gridsync.store import SpreadsheetStore
from gridsync.sync import SyncCoordinator

logger = logging.getLogger(__name__)


def build_remote_store(backend: str = config.REMOTE_BACKEND) -> RemoteStore:
    if backend == "supabase":
        from gridsync.remote.supabase_store import SupabaseRemoteStore
        return SupabaseRemoteStore(config.SUPABASE_URL, config.SUPABASE_KEY)
    if backend == "sqlite":
        from gridsync.remote.sqlite_store import SQLiteRemoteStore
        return SQLiteRemoteStore(config.REMOTE_DB_PATH)
    raise RemoteStoreError(f"Unknown remote backend: {backend!r}")


# ── SSE fan-out ──────────────────────────────────────────────────────

class StateBroadcaster:
    """Pushes a state summary to every open /events stream after each dispatch."""

    def __init__(self):
        self._queues: Set[asyncio.Queue] = set()

    @property
    def listeners(self) -> int:
        return len(self._queues)

    def publish(self, action, before, after):
        if not self._queues:
            return
        data = json.dumps({"action": action.type, "state": state_summary(after)})
        for queue in self._queues:
            queue.put_nowait(data)

    async def stream(self, initial: Optional[str] = None):
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        try:
            if initial is not None:
                yield {"event": "state", "data": initial}
            while True:
                yield {"event": "state", "data": await queue.get()}
        finally:
            self._queues.discard(queue)


# ── Routes ───────────────────────────────────────────────────────────

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    coordinator: Optional[SyncCoordinator] = request.app.state.coordinator
    return {
        "status": "ok",
        "sync": coordinator.lifecycle.value if coordinator else "offline",
        "sheet_id": coordinator.sheet_id if coordinator else None,
    }


@router.get("/state")
async def get_state(request: Request):
    return state_summary(request.app.state.store.state)


@router.post("/dispatch")
async def dispatch_action(request: Request, payload: dict = Body(...)):
    try:
        action = ActionAdapter.validate_python(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json()))
    state = request.app.state.store.dispatch(action)
    return state_summary(state)


@router.get("/events")
async def events(request: Request):
    broadcaster: StateBroadcaster = request.app.state.broadcaster
    initial = json.dumps({"action": None, "state": state_summary(request.app.state.store.state)})
    return EventSourceResponse(broadcaster.stream(initial))


@router.get("/columns/next-id")
async def get_next_column_id(request: Request):
    columns = request.app.state.store.state.columns
    try:
        return {"id": next_column_id(c.id for c in columns)}
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ── App factory ──────────────────────────────────────────────────────

def create_app(db_path: str = config.DB_PATH,
               remote: Optional[RemoteStore] = None,
               remote_backend: Optional[str] = config.REMOTE_BACKEND,
               sheet_id: str = config.SHEET_ID,
               echo_window: float = config.ECHO_WINDOW) -> FastAPI:
    """Build the app. `remote` wins over `remote_backend`; pass neither to run offline."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = DatabaseManager(db_path)
        db.initialize_schema()
        store = SpreadsheetStore.from_repository(LocalStateRepository(db))
        broadcaster = StateBroadcaster()
        store.subscribe(broadcaster.publish)

        remote_store, owns_remote = remote, False
        if remote_store is None and remote_backend:
            try:
                remote_store, owns_remote = build_remote_store(remote_backend), True
            except RemoteStoreError as e:
                logger.error("Remote store unavailable, running local only: %s", e)

        coordinator = None
        if remote_store is not None:
            coordinator = SyncCoordinator(store, remote_store, sheet_id=sheet_id, echo_window=echo_window)
            await coordinator.start()

        app.state.store = store
        app.state.broadcaster = broadcaster
        app.state.coordinator = coordinator
        yield
        if coordinator is not None:
            await coordinator.dispose()
        if owns_remote:
            await remote_store.close()

    app = FastAPI(title="gridsync", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="127.0.0.1", port=8000, timeout_keep_alive=5, loop="asyncio")
