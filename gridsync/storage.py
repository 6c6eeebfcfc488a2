import os
import sqlite3
from typing import Optional

from gridsync import config


SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "schema.sql")


class StorageError(Exception):
    """Local persistence failed (unwritable path, corrupt database)."""


class DatabaseManager:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def initialize_schema(self, schema_path: str = SCHEMA_PATH):
        with open(schema_path, 'r') as f:
            schema_script = f.read()
        try:
            with self.get_connection() as conn:
                conn.executescript(schema_script)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot initialize {self.db_path}: {e}") from e


class LocalStateRepository:
    """Key/value store holding the serialized spreadsheet under one key."""

    def __init__(self, db: DatabaseManager, key: str = config.STORAGE_KEY):
        self.db = db
        self.key = key

    def save(self, payload: str):
        sql = "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)"
        try:
            with self.db.get_connection() as conn:
                conn.execute(sql, (self.key, payload))
                conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Saving {self.key} failed: {e}") from e

    def load(self) -> Optional[str]:
        sql = "SELECT value FROM settings WHERE key = ?"
        try:
            with self.db.get_connection() as conn:
                row = conn.execute(sql, (self.key,)).fetchone()
                return row['value'] if row else None
        except sqlite3.Error as e:
            raise StorageError(f"Loading {self.key} failed: {e}") from e

