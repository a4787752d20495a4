"""
LanceDB Connection Management

Shared by the LanceDB proposition and entity stores.

Thread safety:
    Uses thread-local storage for connections since LanceDB connections
    may not be thread-safe and asyncio.to_thread() may use different threads.
"""

import asyncio
import threading
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa


class LanceDBConnection:
    """Lazily connects per thread and creates tables on first use."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._local = threading.local()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create the database directory (connections are created per-thread)."""
        if self._initialized:
            return

        def _init() -> None:
            self.path.mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(_init)
        self._initialized = True

    async def close(self) -> None:
        self._initialized = False
        if hasattr(self._local, "db"):
            self._local.db = None

    def db(self) -> lancedb.DBConnection:
        """Get thread-local LanceDB connection, creating if needed."""
        if not self._initialized:
            raise RuntimeError("LanceDB not initialized. Call initialize() first.")

        db = getattr(self._local, "db", None)
        if db is None:
            db = lancedb.connect(str(self.path))
            self._local.db = db
        return db

    def has_table(self, table_name: str) -> bool:
        """
        Check table existence across LanceDB API variants.

        Recent LanceDB returns a response object from list_tables() with a
        `tables` attribute, while older versions return a plain list.
        """
        listed = self.db().list_tables()
        tables = getattr(listed, "tables", listed)
        return table_name in {str(name) for name in tables}

    def open_table(self, table_name: str) -> Any | None:
        if not self.has_table(table_name):
            return None
        return self.db().open_table(table_name)

    def open_or_create(self, table_name: str, schema: pa.Schema) -> Any:
        table = self.open_table(table_name)
        if table is None:
            table = self.db().create_table(table_name, schema=schema, exist_ok=True)
        return table

    def drop_table(self, table_name: str) -> None:
        if self.has_table(table_name):
            self.db().drop_table(table_name)
