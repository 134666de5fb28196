"""SQLite-backed FIFO of scan work items."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sqlite3
import tempfile
import time

from ci_leak_scanner.errors import QueueError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100_000


class PersistentQueue:
    """Disk-backed FIFO with leases, backpressure and drain-on-close.

    Every ``put`` is committed before it returns. ``get`` leases the oldest row and
    ``ack`` deletes it; leased rows left behind by a crash are handed out again when
    the same directory is reopened.
    """

    def __init__(self, directory: str = "", capacity: int = DEFAULT_CAPACITY, keep: bool = False):
        self.capacity = capacity
        self.keep = keep
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
                self.directory = directory
                self._owns_directory = False
            else:
                self.directory = tempfile.mkdtemp(prefix="cileak-queue-")
                self._owns_directory = True
            self.db_path = os.path.join(self.directory, "queue.db")
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._create_tables()
        except (OSError, sqlite3.Error) as exc:
            raise QueueError(f"cannot create queue in {directory or tempfile.gettempdir()!r}: {exc}") from exc

        self._cond = asyncio.Condition()
        self._closed = False
        self._pending = self._count("leased=0")
        self._leased = 0
        if self._pending:
            logger.info("Resuming %d queued items from %s", self._pending, self.db_path)

    def _create_tables(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS queue (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                record BLOB NOT NULL,
                leased INTEGER NOT NULL DEFAULT 0,
                enqueued_at REAL NOT NULL
            )
        """)
        # Leases do not survive a restart.
        self._conn.execute("UPDATE queue SET leased=0 WHERE leased=1")
        self._conn.commit()

    def _count(self, where: str) -> int:
        row = self._conn.execute(f"SELECT COUNT(*) AS n FROM queue WHERE {where}").fetchone()
        return row["n"]

    @property
    def closed(self) -> bool:
        return self._closed

    def depth(self) -> int:
        """Items waiting to be dequeued."""
        return self._pending

    def in_flight(self) -> int:
        """Items dequeued but not yet acknowledged."""
        return self._leased

    async def put(self, record: bytes) -> None:
        """Append ``record``; blocks while ``capacity`` items are waiting."""
        async with self._cond:
            while self._pending >= self.capacity and not self._closed:
                await self._cond.wait()
            if self._closed:
                raise QueueError("queue is closed")
            try:
                self._conn.execute(
                    "INSERT INTO queue (record, leased, enqueued_at) VALUES (?, 0, ?)",
                    (record, time.time()),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                raise QueueError(f"cannot write queue item: {exc}") from exc
            self._pending += 1
            self._cond.notify_all()

    async def get(self) -> tuple[int, bytes] | None:
        """Lease the oldest waiting item, or return None once the queue is closed."""
        async with self._cond:
            while True:
                if self._closed:
                    return None
                row = self._conn.execute(
                    "SELECT id, record FROM queue WHERE leased=0 ORDER BY id LIMIT 1"
                ).fetchone()
                if row is not None:
                    self._conn.execute("UPDATE queue SET leased=1 WHERE id=?", (row["id"],))
                    self._conn.commit()
                    self._pending -= 1
                    self._leased += 1
                    self._cond.notify_all()
                    return row["id"], bytes(row["record"])
                await self._cond.wait()

    async def ack(self, item_id: int) -> None:
        """Remove a leased item after it reached a terminal outcome."""
        async with self._cond:
            if self._closed:
                return
            cursor = self._conn.execute("DELETE FROM queue WHERE id=? AND leased=1", (item_id,))
            self._conn.commit()
            if cursor.rowcount:
                self._leased -= 1
            self._cond.notify_all()

    async def close(self) -> None:
        """Wake every waiter, close the database and remove the files unless ``keep`` is set."""
        async with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        discarded = self._pending
        self._conn.close()
        if discarded:
            logger.debug("Closing queue with %d unprocessed items", discarded)
        if self.keep:
            logger.info("Keeping queue files in %s", self.directory)
            return
        if self._owns_directory:
            shutil.rmtree(self.directory, ignore_errors=True)
        else:
            for suffix in ("", "-journal", "-wal", "-shm"):
                path = self.db_path + suffix
                if os.path.exists(path):
                    os.remove(path)
