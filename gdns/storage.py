# geodnscache
# A geographically-aware caching DNS proxy
# Copyright (c) 2025 ninjamar

# MIT License

# Copyright (c) 2025 ninjamar

# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:

# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.

# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Stores for the upstream directory and the answer cache.

A store keeps two kinds of data: upstream servers, unique by address, and
cached answers, keyed by question and stamped with their creation time.
`prepare` must be called once before use; it is safe to call on every
startup.

MemoryStore keeps everything in the process, optionally pickling it to a file
on close. SQLiteStore keeps everything in a SQLite database.
"""

import logging
import pickle
import sqlite3
import threading
from contextlib import closing
from pathlib import Path

from .cache import CachedAnswer, QuestionKey
from .config import ConfigError
from .directory import UpstreamServer


class StoreError(Exception):
    """The store can't be opened or prepared."""

    pass


class BaseStore:
    """Base class for stores."""

    def prepare(self) -> None:
        raise NotImplementedError

    def upsert_server(self, server: UpstreamServer) -> None:
        raise NotImplementedError

    def all_servers(self) -> list[UpstreamServer]:
        raise NotImplementedError

    def insert_answers(
        self, key: QuestionKey, answers: list[bytes], created_at: float
    ) -> None:
        raise NotImplementedError

    def find_answers(self, key: QuestionKey, cutoff: float) -> list[bytes]:
        """Answers for a key created strictly after the cutoff."""
        raise NotImplementedError

    def delete_answers(self, cutoff: float) -> int:
        """Delete answers created at or before the cutoff."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(BaseStore):
    """A store that lives in memory."""

    def __init__(self, snapshot_path: str | Path | None = None) -> None:
        """
        Create a MemoryStore instance.

        Args:
            snapshot_path: If given, the store is loaded from this pickle file
                by prepare (when it exists) and written back by close.
        """
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None

        self.servers: dict[str, UpstreamServer] = {}
        self.answers: dict[QuestionKey, list[CachedAnswer]] = {}

        self.lock = threading.Lock()

    def prepare(self) -> None:
        if self.snapshot_path is None or not self.snapshot_path.exists():
            return

        try:
            with open(self.snapshot_path, "rb") as f:
                data = pickle.load(f)
        except (OSError, EOFError, pickle.UnpicklingError) as e:
            raise StoreError(f"Unable to load snapshot {self.snapshot_path}") from e

        with self.lock:
            self.servers = data["servers"]
            self.answers = data["answers"]
        logging.info("Loaded store snapshot from %s", self.snapshot_path)

    def upsert_server(self, server: UpstreamServer) -> None:
        with self.lock:
            self.servers[server.address] = server

    def all_servers(self) -> list[UpstreamServer]:
        with self.lock:
            return list(self.servers.values())

    def insert_answers(
        self, key: QuestionKey, answers: list[bytes], created_at: float
    ) -> None:
        with self.lock:
            self.answers.setdefault(key, []).extend(
                CachedAnswer(question=key, answer=answer, created_at=created_at)
                for answer in answers
            )

    def find_answers(self, key: QuestionKey, cutoff: float) -> list[bytes]:
        with self.lock:
            return [
                item.answer
                for item in self.answers.get(key, [])
                if item.created_at > cutoff
            ]

    def delete_answers(self, cutoff: float) -> int:
        count = 0
        with self.lock:
            for key in list(self.answers.keys()):
                kept = [x for x in self.answers[key] if x.created_at > cutoff]
                count += len(self.answers[key]) - len(kept)
                if kept:
                    self.answers[key] = kept
                else:
                    del self.answers[key]
        return count

    def close(self) -> None:
        if self.snapshot_path is None:
            return

        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock, open(self.snapshot_path, "wb") as f:
            pickle.dump({"servers": self.servers, "answers": self.answers}, f)
        logging.info("Wrote store snapshot to %s", self.snapshot_path)

    def __str__(self) -> str:
        return f"MemoryStore(<{len(self.servers)} servers>, <{len(self.answers)} questions>)"


class SQLiteStore(BaseStore):
    """A store backed by a SQLite database.

    One connection is shared by every thread, guarded by a lock.
    """

    SCHEMA = [
        "CREATE TABLE IF NOT EXISTS servers ("
        "address TEXT NOT NULL, "
        "port INTEGER NOT NULL, "
        "longitude REAL NOT NULL, "
        "latitude REAL NOT NULL, "
        "rank INTEGER NOT NULL)",
        "CREATE UNIQUE INDEX IF NOT EXISTS servers_address ON servers (address)",
        "CREATE TABLE IF NOT EXISTS answers ("
        "class INTEGER NOT NULL, "
        "type INTEGER NOT NULL, "
        "name TEXT NOT NULL, "
        "answer BLOB NOT NULL, "
        "created_at REAL NOT NULL)",
        "CREATE INDEX IF NOT EXISTS answers_question "
        "ON answers (class, type, name, created_at)",
        "CREATE INDEX IF NOT EXISTS answers_created_at ON answers (created_at)",
    ]

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self.db: sqlite3.Connection | None = None
        self.lock = threading.Lock()

    def prepare(self) -> None:
        try:
            if self.db is None:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                self.db = sqlite3.connect(self.path, check_same_thread=False)

            with self.lock, self.db, closing(self.db.cursor()) as cursor:
                for statement in self.SCHEMA:
                    cursor.execute(statement)
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Unable to prepare database {self.path}") from e
        logging.info("Database %s is ready", self.path)

    def _conn(self) -> sqlite3.Connection:
        if self.db is None:
            raise StoreError("Store used before prepare()")
        return self.db

    def upsert_server(self, server: UpstreamServer) -> None:
        db = self._conn()
        with self.lock, db, closing(db.cursor()) as cursor:
            cursor.execute(
                "INSERT INTO servers (address, port, longitude, latitude, rank) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT (address) DO UPDATE SET "
                "port = excluded.port, "
                "longitude = excluded.longitude, "
                "latitude = excluded.latitude, "
                "rank = excluded.rank",
                (
                    server.address,
                    server.port,
                    server.location[0],
                    server.location[1],
                    server.rank,
                ),
            )

    def all_servers(self) -> list[UpstreamServer]:
        db = self._conn()
        with self.lock, closing(db.cursor()) as cursor:
            cursor.execute(
                "SELECT address, port, longitude, latitude, rank FROM servers"
            )
            rows = cursor.fetchall()
        return [
            UpstreamServer(
                address=address,
                port=port,
                location=(longitude, latitude),
                rank=rank,
            )
            for address, port, longitude, latitude, rank in rows
        ]

    def insert_answers(
        self, key: QuestionKey, answers: list[bytes], created_at: float
    ) -> None:
        class_, type_, name = key
        db = self._conn()
        with self.lock, db, closing(db.cursor()) as cursor:
            cursor.executemany(
                "INSERT INTO answers (class, type, name, answer, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [(class_, type_, name, answer, created_at) for answer in answers],
            )

    def find_answers(self, key: QuestionKey, cutoff: float) -> list[bytes]:
        class_, type_, name = key
        db = self._conn()
        with self.lock, closing(db.cursor()) as cursor:
            cursor.execute(
                "SELECT answer FROM answers "
                "WHERE class = ? AND type = ? AND name = ? AND created_at > ? "
                "ORDER BY rowid",
                (class_, type_, name, cutoff),
            )
            return [bytes(row[0]) for row in cursor.fetchall()]

    def delete_answers(self, cutoff: float) -> int:
        db = self._conn()
        with self.lock, db, closing(db.cursor()) as cursor:
            cursor.execute("DELETE FROM answers WHERE created_at <= ?", (cutoff,))
            return cursor.rowcount

    def close(self) -> None:
        if self.db is not None:
            with self.lock:
                self.db.close()
                self.db = None

    def __str__(self) -> str:
        return f"SQLiteStore({self.path})"


def make_store(kwargs: dict) -> BaseStore:
    """Build the store described by a flattened configuration.

    Raises:
        ConfigError: Unknown backend, or sqlite without a path.
    """
    backend = kwargs["storage.backend"].lower()
    path = kwargs["storage.path"]

    if backend == "memory":
        return MemoryStore(snapshot_path=path)
    if backend == "sqlite":
        if not path:
            raise ConfigError("storage.path is required for the sqlite backend")
        return SQLiteStore(path)
    raise ConfigError(f"Unknown storage backend: {backend}")
