# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Durable checkpointer implementations for StateGraph persistence.

Implementations:
    - SQLiteCheckpointer: SQLite database storage (default for CLI runs)
    - JSONFileCheckpointer: One JSON file per checkpoint, handy for debugging

Both satisfy ``CheckpointerProtocol`` (``put``/``get``/``list``). The
in-memory store lives in ``shipspec.framework.graph``.

Example:
    checkpointer = create_checkpointer("sqlite", ".ship-spec/checkpoints.db")
    app = graph.compile(checkpointer=checkpointer)
    result = await app.invoke(initial_state, thread_id="track-1")
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional

from shipspec.framework.graph import (
    CheckpointerProtocol,
    MemoryCheckpointer,
    WorkflowCheckpoint,
)

logger = logging.getLogger(__name__)

_SAFE_THREAD_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class SQLiteCheckpointer:
    """SQLite-based checkpointer for graph state persistence.

    Attributes:
        db_path: Path to SQLite database file
        table_name: Name of the checkpoints table
    """

    def __init__(
        self,
        db_path: str | Path = "~/.ship-spec/checkpoints.db",
        table_name: str = "checkpoints",
    ):
        """Initialize SQLite checkpointer.

        Args:
            db_path: Path to database file (created if missing)
            table_name: Name for checkpoints table
        """
        self.db_path = Path(os.path.expanduser(str(db_path)))
        self.table_name = table_name
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_schema(self._conn)
        return self._conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                checkpoint_id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                state TEXT NOT NULL,
                timestamp REAL NOT NULL,
                metadata TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{self.table_name}_thread_timestamp
            ON {self.table_name}(thread_id, timestamp DESC)
        """)
        conn.commit()
        logger.debug(f"Initialized checkpoint schema: {self.db_path}")

    @staticmethod
    def _from_row(row: sqlite3.Row) -> WorkflowCheckpoint:
        return WorkflowCheckpoint(
            checkpoint_id=row["checkpoint_id"],
            thread_id=row["thread_id"],
            node_id=row["node_id"],
            state=json.loads(row["state"]),
            timestamp=row["timestamp"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    async def put(self, thread_id: str, checkpoint: WorkflowCheckpoint) -> None:
        """Save a checkpoint to SQLite."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._put_sync, thread_id, checkpoint)

    def _put_sync(self, thread_id: str, checkpoint: WorkflowCheckpoint) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                f"""
                INSERT OR REPLACE INTO {self.table_name}
                (checkpoint_id, thread_id, node_id, state, timestamp, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    checkpoint.checkpoint_id,
                    thread_id,
                    checkpoint.node_id,
                    json.dumps(checkpoint.state, default=str),
                    checkpoint.timestamp,
                    json.dumps(checkpoint.metadata, default=str),
                ),
            )
            conn.commit()
        logger.debug(f"Saved checkpoint: {checkpoint.checkpoint_id} (thread: {thread_id})")

    async def get(self, thread_id: str) -> Optional[WorkflowCheckpoint]:
        """Load the latest checkpoint for a thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_sync, thread_id)

    def _get_sync(self, thread_id: str) -> Optional[WorkflowCheckpoint]:
        with self._lock:
            row = self._get_connection().execute(
                f"""
                SELECT * FROM {self.table_name}
                WHERE thread_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT 1
            """,
                (thread_id,),
            ).fetchone()
        return self._from_row(row) if row is not None else None

    async def list(self, thread_id: str) -> list[WorkflowCheckpoint]:
        """List all checkpoints for a thread, oldest first."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._list_sync, thread_id)

    def _list_sync(self, thread_id: str) -> list[WorkflowCheckpoint]:
        with self._lock:
            rows = self._get_connection().execute(
                f"""
                SELECT * FROM {self.table_name}
                WHERE thread_id = ?
                ORDER BY timestamp ASC, rowid ASC
            """,
                (thread_id,),
            ).fetchall()
        return [self._from_row(row) for row in rows]

    async def delete_thread(self, thread_id: str) -> int:
        """Delete all checkpoints for a thread.

        Returns:
            Number of checkpoints deleted
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._delete_thread_sync, thread_id)

    def _delete_thread_sync(self, thread_id: str) -> int:
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(
                f"DELETE FROM {self.table_name} WHERE thread_id = ?",
                (thread_id,),
            )
            conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


class JSONFileCheckpointer:
    """JSON file-based checkpointer.

    Stores each checkpoint as a separate JSON file under ``base_dir/<thread_id>``.
    """

    def __init__(self, base_dir: str | Path = "~/.ship-spec/checkpoints"):
        self.base_dir = Path(os.path.expanduser(str(base_dir)))
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._seq = 0

    def _get_thread_dir(self, thread_id: str, create: bool = False) -> Path:
        if not _SAFE_THREAD_ID.match(thread_id) or thread_id in (".", ".."):
            raise ValueError(f"Unsafe thread id for file checkpointer: {thread_id!r}")
        thread_dir = self.base_dir / thread_id
        if create:
            thread_dir.mkdir(parents=True, exist_ok=True)
        return thread_dir

    async def put(self, thread_id: str, checkpoint: WorkflowCheckpoint) -> None:
        """Save checkpoint to a JSON file."""
        thread_dir = self._get_thread_dir(thread_id, create=True)
        self._seq += 1
        filepath = thread_dir / f"{time.time_ns():020d}-{self._seq:06d}.json"
        tmp = filepath.with_suffix(".tmp")
        tmp.write_text(json.dumps(checkpoint.to_dict(), indent=2, default=str), encoding="utf-8")
        os.replace(tmp, filepath)
        logger.debug(f"Saved checkpoint to: {filepath}")

    def _files(self, thread_id: str) -> list[Path]:
        thread_dir = self._get_thread_dir(thread_id)
        if not thread_dir.is_dir():
            return []
        return sorted(thread_dir.glob("*.json"))

    @staticmethod
    def _read(path: Path) -> WorkflowCheckpoint:
        return WorkflowCheckpoint.from_dict(json.loads(path.read_text(encoding="utf-8")))

    async def get(self, thread_id: str) -> Optional[WorkflowCheckpoint]:
        """Load latest checkpoint for thread."""
        files = self._files(thread_id)
        return self._read(files[-1]) if files else None

    async def list(self, thread_id: str) -> list[WorkflowCheckpoint]:
        """List checkpoints for thread, oldest first."""
        return [self._read(path) for path in self._files(thread_id)]

    async def delete_thread(self, thread_id: str) -> int:
        files = self._files(thread_id)
        for path in files:
            path.unlink()
        return len(files)


def create_checkpointer(kind: str = "memory", path: Optional[str | Path] = None) -> CheckpointerProtocol:
    """Create a checkpointer by configured type.

    Args:
        kind: ``memory``, ``sqlite`` or ``json``
        path: Database file (sqlite) or directory (json)

    Raises:
        ValueError: On unknown kind or a durable kind without a path
    """
    if kind == "memory":
        return MemoryCheckpointer()
    if kind == "sqlite":
        if not path:
            raise ValueError("SQLite checkpointer requires a database path")
        return SQLiteCheckpointer(path)
    if kind == "json":
        if not path:
            raise ValueError("JSON checkpointer requires a directory path")
        return JSONFileCheckpointer(path)
    raise ValueError(f"Unknown checkpointer type: {kind}")


__all__ = ["JSONFileCheckpointer", "SQLiteCheckpointer", "create_checkpointer"]
