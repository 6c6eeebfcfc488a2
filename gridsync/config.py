import os
import sys
from dotenv import load_dotenv


def get_app_data_dir() -> str:
    """Return a user-writable data directory for gridsync (created if absent)."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or os.path.expanduser("~")
    elif sys.platform == "darwin":
        base = os.path.expanduser("~/Library/Application Support")
    else:
        base = os.environ.get("XDG_DATA_HOME") or os.path.expanduser("~/.local/share")
    app_dir = os.path.join(base, "gridsync")
    os.makedirs(app_dir, exist_ok=True)
    return app_dir


# Load .env from app-data dir first, then fall back to CWD (dev)
load_dotenv(os.path.join(get_app_data_dir(), ".env"))
load_dotenv()

# ── Storage ──────────────────────────────────────────────────────────

DB_PATH = os.getenv("GRIDSYNC_DB_PATH") or os.path.join(get_app_data_dir(), "gridsync.db")
STORAGE_KEY = "gridsync-spreadsheet-data"

# ── Remote store ─────────────────────────────────────────────────────

REMOTE_BACKEND = os.getenv("GRIDSYNC_REMOTE", "sqlite")  # sqlite | supabase
REMOTE_DB_PATH = (
    os.getenv("GRIDSYNC_REMOTE_DB_PATH")
    or os.path.join(get_app_data_dir(), "gridsync-remote.db")
)
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_ANON_KEY") or ""
SHEET_ID = os.getenv("GRIDSYNC_SHEET_ID", "default")

# ── Engine limits ────────────────────────────────────────────────────

HISTORY_LIMIT = int(os.getenv("GRIDSYNC_HISTORY_LIMIT", "50"))
GRID_ROWS = int(os.getenv("GRIDSYNC_GRID_ROWS", "50"))

# How long inbound events are ignored after one of our own writes.
# Must exceed the realtime round-trip for our echo to arrive.
ECHO_WINDOW = float(os.getenv("GRIDSYNC_ECHO_WINDOW_MS", "150")) / 1000.0

LOG_LEVEL = os.getenv("GRIDSYNC_LOG_LEVEL", "INFO").upper()
