# cache_store.py -- Persistent storage for rewrite mappings
# Copyright (C) 2026 The histrewrite authors
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# histrewrite is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""SQLite storage for the commit, entry and ref mappings of past runs.

Each mapping lives in its own table of ``(source, target)`` blobs. Keys and
values are marshaled with the explicit functions below rather than pickled,
so the on-disk format only changes together with :data:`SCHEMA_VERSION`.

Entries are marshaled much like git tree records::

    <octal mode> SP <name> NUL <'-' | '+' directory> NUL <20-byte sha>

An entry result is a one-byte tag (``0`` empty, ``1`` single entry, ``n``
entry set) followed by zero or more such records.
"""

__all__ = [
    "DEFAULT_CACHE_FILENAME",
    "SCHEMA_VERSION",
    "CacheSchemaError",
    "SQLiteCacheStore",
    "marshal_commit_id",
    "marshal_entry",
    "marshal_entry_result",
    "marshal_ref_entry",
    "unmarshal_commit_id",
    "unmarshal_entry",
    "unmarshal_entry_result",
    "unmarshal_ref_entry",
]

import logging
import os
import sqlite3
import threading
from collections.abc import Callable, Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from dulwich.objects import hex_to_sha, sha_to_hex

from .entry import EMPTY, Entry, EntryResult, EntrySet
from .refentry import RefEntry

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DEFAULT_CACHE_FILENAME = "histrewrite-cache.db"

TABLES = ("commits", "entries", "refs")

K = TypeVar("K")
V = TypeVar("V")


class CacheSchemaError(Exception):
    """The cache file was written with an incompatible layout."""

    def __init__(self, path: str, found: object) -> None:
        self.path = path
        self.found = found
        super().__init__(
            f"{path}: cache schema version {found}, expected {SCHEMA_VERSION}"
        )


def marshal_commit_id(commit_id: bytes) -> bytes:
    return hex_to_sha(commit_id)


def unmarshal_commit_id(data: bytes) -> bytes:
    return sha_to_hex(data)


def _marshal_record(entry: Entry) -> bytes:
    if entry.directory is None:
        directory = b"-"
    else:
        directory = b"+" + entry.directory
    return b"%o %s\0%s\0%s" % (entry.mode, entry.name, directory, hex_to_sha(entry.id))


def _unmarshal_records(data: bytes, offset: int = 0) -> Iterator[Entry]:
    while offset < len(data):
        space = data.index(b" ", offset)
        mode = int(data[offset:space], 8)
        name_end = data.index(b"\0", space + 1)
        name = data[space + 1 : name_end]
        dir_end = data.index(b"\0", name_end + 1)
        flag = data[name_end + 1 : name_end + 2]
        directory = data[name_end + 2 : dir_end] if flag == b"+" else None
        sha = data[dir_end + 1 : dir_end + 21]
        if len(sha) != 20:
            raise ValueError("truncated entry record")
        yield Entry(mode, name, sha_to_hex(sha), directory)
        offset = dir_end + 21


def marshal_entry(entry: Entry) -> bytes:
    return _marshal_record(entry)


def unmarshal_entry(data: bytes) -> Entry:
    records = list(_unmarshal_records(data))
    if len(records) != 1:
        raise ValueError(f"expected one entry record, found {len(records)}")
    return records[0]


def marshal_entry_result(result: EntryResult) -> bytes:
    if isinstance(result, Entry):
        return b"1" + _marshal_record(result)
    if isinstance(result, EntrySet):
        return b"n" + b"".join(_marshal_record(e) for e in result.entries())
    return b"0"


def unmarshal_entry_result(data: bytes) -> EntryResult:
    tag = data[:1]
    if tag == b"0":
        return EMPTY
    if tag == b"1":
        return unmarshal_entry(data[1:])
    if tag == b"n":
        return EntrySet(_unmarshal_records(data, 1))
    raise ValueError(f"unknown entry result tag: {tag!r}")


def marshal_ref_entry(entry: RefEntry) -> bytes:
    if entry.is_empty:
        return b""
    assert entry.name is not None
    if entry.is_symbolic:
        assert entry.target is not None
        return entry.name + b"\0>" + entry.target
    assert entry.id is not None
    return entry.name + b"\0=" + entry.id


def unmarshal_ref_entry(data: bytes) -> RefEntry:
    if not data:
        return RefEntry.EMPTY
    name, _, rest = data.partition(b"\0")
    kind, value = rest[:1], rest[1:]
    if kind == b">":
        return RefEntry.symbolic(name, value)
    if kind == b"=":
        return RefEntry(name, value)
    raise ValueError(f"malformed ref record: {data!r}")


class _TableMapping(MutableMapping[K, V], Generic[K, V]):
    """Mapping view of one cache table."""

    def __init__(
        self,
        store: "SQLiteCacheStore",
        table: str,
        dump_key: Callable[[K], bytes],
        load_key: Callable[[bytes], K],
        dump_value: Callable[[V], bytes],
        load_value: Callable[[bytes], V],
    ) -> None:
        self._store = store
        self._table = table
        self._dump_key = dump_key
        self._load_key = load_key
        self._dump_value = dump_value
        self._load_value = load_value

    def __getitem__(self, key: K) -> V:
        row = self._store._fetchone(
            f"SELECT target FROM {self._table} WHERE source = ?",
            (self._dump_key(key),),
        )
        if row is None:
            raise KeyError(key)
        return self._load_value(row[0])

    def __setitem__(self, key: K, value: V) -> None:
        self._store._execute(
            f"INSERT OR REPLACE INTO {self._table} (source, target) VALUES (?, ?)",
            (self._dump_key(key), self._dump_value(value)),
        )

    def __delitem__(self, key: K) -> None:
        cursor = self._store._execute(
            f"DELETE FROM {self._table} WHERE source = ?", (self._dump_key(key),)
        )
        if cursor.rowcount == 0:
            raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        row = self._store._fetchone(
            f"SELECT 1 FROM {self._table} WHERE source = ?",
            (self._dump_key(key),),  # type: ignore[arg-type]
        )
        return row is not None

    def __iter__(self) -> Iterator[K]:
        rows = self._store._fetchall(f"SELECT source FROM {self._table}")
        return (self._load_key(row[0]) for row in rows)

    def items(self):  # type: ignore[override]
        rows = self._store._fetchall(f"SELECT source, target FROM {self._table}")
        return [(self._load_key(s), self._load_value(t)) for s, t in rows]

    def __len__(self) -> int:
        row = self._store._fetchone(f"SELECT COUNT(*) FROM {self._table}")
        assert row is not None
        return row[0]

    def clear(self) -> None:
        self._store._execute(f"DELETE FROM {self._table}")

    def __repr__(self) -> str:
        return f"<{self._table} of {self._store!r}>"


class SQLiteCacheStore:
    """Cache of commit, entry and ref mappings kept in one SQLite file."""

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = os.fspath(path)
        self.is_initial = self.path == ":memory:" or not os.path.exists(self.path)
        self._lock = threading.RLock()
        self._in_transaction = False
        # Transactions are explicit; see transaction().
        self.db = sqlite3.connect(
            self.path, isolation_level=None, check_same_thread=False
        )
        try:
            self._create_schema()
        except BaseException:
            self.db.close()
            raise
        logger.debug("Opened cache %s (initial: %s)", self.path, self.is_initial)

    @classmethod
    def for_repo(cls, repo: Any) -> "SQLiteCacheStore":
        """Open the default cache file next to the control data of ``repo``."""
        return cls(os.path.join(repo.controldir(), DEFAULT_CACHE_FILENAME))

    def _create_schema(self) -> None:
        script = "".join(
            f"CREATE TABLE IF NOT EXISTS {table} "
            "(source BLOB PRIMARY KEY, target BLOB NOT NULL);\n"
            for table in TABLES
        )
        self.db.executescript(
            "CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT);\n"
            + script
        )
        row = self.db.execute(
            "SELECT value FROM meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            self.db.execute(
                "INSERT INTO meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
        elif row[0] != str(SCHEMA_VERSION):
            raise CacheSchemaError(self.path, row[0])

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.path!r})"

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.db.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        with self._lock:
            return self.db.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._lock:
            return self.db.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self, commit: bool = True) -> Iterator["SQLiteCacheStore"]:
        """Run a block inside one transaction, rolled back if the block raises.

        Args:
          commit: Whether to commit when the block succeeds; with False the
            block sees its own writes but they are rolled back at the end
        """
        with self._lock:
            if self._in_transaction:
                raise RuntimeError("cache transaction already in progress")
            self.db.execute("BEGIN")
            self._in_transaction = True
        try:
            yield self
        except BaseException:
            with self._lock:
                self._in_transaction = False
                self.db.execute("ROLLBACK")
            logger.info("Rolled back cache transaction on %s", self.path)
            raise
        else:
            with self._lock:
                self._in_transaction = False
                self.db.execute("COMMIT" if commit else "ROLLBACK")
            if not commit:
                logger.debug("Discarded cache transaction on %s", self.path)

    def commit_mapping(self) -> MutableMapping[bytes, bytes]:
        return _TableMapping(
            self,
            "commits",
            marshal_commit_id,
            unmarshal_commit_id,
            marshal_commit_id,
            unmarshal_commit_id,
        )

    def entry_mapping(self) -> MutableMapping[Entry, EntryResult]:
        return _TableMapping(
            self,
            "entries",
            marshal_entry,
            unmarshal_entry,
            marshal_entry_result,
            unmarshal_entry_result,
        )

    def ref_mapping(self) -> MutableMapping[RefEntry, RefEntry]:
        return _TableMapping(
            self,
            "refs",
            marshal_ref_entry,
            unmarshal_ref_entry,
            marshal_ref_entry,
            unmarshal_ref_entry,
        )

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> "SQLiteCacheStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
