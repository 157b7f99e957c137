# entry.py -- Tree entries and the results of rewriting them
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

"""Tree entries and the results of rewriting them.

Two families of values live here.

Stored entries (:class:`Entry`, :class:`EntrySet` and :data:`EMPTY`) refer to
objects by id. They are the keys and values of the entry cache: rewriting an
entry yields exactly one entry, several entries, or none at all.

Blob-stage entries (:class:`SourceBlob`, :class:`NewBlob`, :class:`BlobSet`
and :data:`EMPTY_BLOBS`) carry blob content and are what blob translators
consume and produce. Folding a blob-stage value writes any new content to
the target store and turns it into a stored entry.
"""

__all__ = [
    "EMPTY",
    "EMPTY_BLOBS",
    "TREE_MODE",
    "AnyHotEntry",
    "BlobSet",
    "Empty",
    "EmptyBlobs",
    "Entry",
    "EntryKind",
    "EntryResult",
    "EntrySet",
    "HotEntry",
    "NewBlob",
    "SourceBlob",
]

import enum
import logging
import stat
from collections.abc import Iterable
from typing import TYPE_CHECKING, NamedTuple, Optional, Union

from dulwich.objects import Blob, S_ISGITLINK

if TYPE_CHECKING:
    from .access import RepositoryAccess
    from .context import Context

logger = logging.getLogger(__name__)

TREE_MODE = 0o040000


class EntryKind(enum.Enum):
    """Kinds of tree entries, as far as rewriting is concerned."""

    BLOB = "blob"
    TREE = "tree"
    LINK = "link"


def _kind_of(mode: int) -> EntryKind:
    if stat.S_ISDIR(mode):
        return EntryKind.TREE
    if S_ISGITLINK(mode):
        return EntryKind.LINK
    return EntryKind.BLOB


def _join_path(directory: bytes | None, name: bytes) -> bytes:
    return directory + b"/" + name if directory else name


class Entry(NamedTuple):
    """A single tree entry.

    ``directory`` is only set when rewriting is path sensitive; two entries
    differing only in their directory are then distinct cache keys.
    """

    mode: int
    name: bytes
    id: bytes
    directory: bytes | None = None

    @property
    def kind(self) -> EntryKind:
        return _kind_of(self.mode)

    @property
    def is_tree(self) -> bool:
        return stat.S_ISDIR(self.mode)

    @property
    def is_link(self) -> bool:
        return S_ISGITLINK(self.mode)

    @property
    def is_blob(self) -> bool:
        return not self.is_tree and not self.is_link

    @property
    def is_root(self) -> bool:
        return self.is_tree and self.name == b""

    @property
    def path(self) -> bytes:
        return _join_path(self.directory, self.name)

    @property
    def sort_key(self) -> bytes:
        """Key ordering entries the way git serializes trees."""
        return self.name + b"/" if self.is_tree else self.name

    def entries(self) -> tuple["Entry", ...]:
        return (self,)

    def __str__(self) -> str:
        return "<Entry:{:o} {} {}>".format(
            self.mode,
            self.path.decode("utf-8", "replace"),
            self.id.decode("ascii"),
        )


class EntrySet:
    """Zero or more entries replacing a single rewritten entry."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[Entry] = ()) -> None:
        self._entries = tuple(entries)

    def entries(self) -> tuple[Entry, ...]:
        return self._entries

    def pack(self) -> "EntryResult":
        """Return the smallest equivalent result."""
        if not self._entries:
            return EMPTY
        if len(self._entries) == 1:
            return self._entries[0]
        return self

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, EntrySet) and self._entries == other._entries

    def __hash__(self) -> int:
        return hash(self._entries)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self._entries)!r})"


class Empty:
    """The result of rewriting an entry away."""

    __slots__ = ()

    _instance: Optional["Empty"] = None

    def __new__(cls) -> "Empty":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def entries(self) -> tuple[Entry, ...]:
        return ()

    def pack(self) -> "Empty":
        return self

    def __len__(self) -> int:
        return 0

    def __repr__(self) -> str:
        return "EMPTY"

    def __reduce__(self) -> str:
        return "EMPTY"


EMPTY = Empty()

EntryResult = Union[Entry, EntrySet, Empty]


class HotEntry:
    """A blob entry whose content is at hand."""

    __slots__ = ()

    mode: int
    name: bytes
    directory: bytes | None

    @property
    def blob(self) -> bytes:
        raise NotImplementedError

    @property
    def blob_size(self) -> int:
        return len(self.blob)

    @property
    def path(self) -> bytes:
        return _join_path(self.directory, self.name)

    def entries(self) -> tuple["HotEntry", ...]:
        return (self,)

    def rename(self, name: bytes) -> "HotEntry":
        return NewBlob(self.mode, name, self.blob, self.directory)

    def update(self, data: bytes | str) -> "NewBlob":
        if isinstance(data, str):
            data = data.encode("utf-8")
        return NewBlob(self.mode, self.name, data, self.directory)

    def fold(self, target: "RepositoryAccess", ctx: "Context") -> EntryResult:
        """Write the content to ``target`` and return the stored entry."""
        blob_id = target.write_blob(self.blob, ctx)
        return Entry(self.mode, self.name, blob_id, self.directory)


class SourceBlob(HotEntry):
    """A blob entry read lazily from the source repository.

    Read failures are reported against ``ctx``, the context the entry was
    found in.
    """

    __slots__ = ("_blob", "_ctx", "_source", "entry", "mode", "name", "directory")

    def __init__(
        self,
        entry: Entry,
        source: "RepositoryAccess",
        ctx: Optional["Context"] = None,
    ) -> None:
        self.entry = entry
        self.mode = entry.mode
        self.name = entry.name
        self.directory = entry.directory
        self._source = source
        self._ctx = ctx
        self._blob: bytes | None = None

    @property
    def id(self) -> bytes:
        return self.entry.id

    @property
    def blob(self) -> bytes:
        if self._blob is None:
            self._blob = self._source.read_blob(self.entry.id, self._ctx)
        return self._blob

    @property
    def blob_size(self) -> int:
        if self._blob is not None:
            return len(self._blob)
        return self._source.get_blob_size(self.entry.id, self._ctx)

    def rename(self, name: bytes) -> "SourceBlob":
        renamed = SourceBlob(self.entry._replace(name=name), self._source, self._ctx)
        renamed._blob = self._blob
        return renamed

    def fold(self, target: "RepositoryAccess", ctx: "Context") -> EntryResult:
        if target.has_object(self.entry.id):
            return self.entry
        return super().fold(target, ctx)

    def __repr__(self) -> str:
        return "{} [source({}):{:o}]".format(
            self.path.decode("utf-8", "replace"),
            self.entry.id.decode("ascii"),
            self.mode,
        )


class NewBlob(HotEntry):
    """A blob entry with freshly produced content."""

    __slots__ = ("_data", "mode", "name", "directory")

    def __init__(
        self, mode: int, name: bytes, data: bytes, directory: bytes | None = None
    ) -> None:
        self.mode = mode
        self.name = name
        self.directory = directory
        self._data = data

    @property
    def blob(self) -> bytes:
        return self._data

    @property
    def id(self) -> bytes:
        logger.debug("Computing the id of new blob %r", self)
        return Blob.from_string(self._data).id

    def __repr__(self) -> str:
        return "{} [new({}):{:o}]".format(
            self.path.decode("utf-8", "replace"), len(self._data), self.mode
        )


class BlobSet:
    """Several blob entries produced from one."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Iterable[HotEntry] = ()) -> None:
        self._entries = list(entries)

    def add(self, entry: HotEntry) -> None:
        self._entries.append(entry)

    def entries(self) -> tuple[HotEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def fold(self, target: "RepositoryAccess", ctx: "Context") -> EntryResult:
        folded: list[Entry] = []
        for entry in self._entries:
            folded.extend(entry.fold(target, ctx).entries())
        return EntrySet(folded).pack()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._entries!r})"


class EmptyBlobs:
    """No blob entries at all; the source blob is dropped."""

    __slots__ = ()

    def entries(self) -> tuple[HotEntry, ...]:
        return ()

    def __len__(self) -> int:
        return 0

    def fold(self, target: "RepositoryAccess", ctx: "Context") -> Empty:
        return EMPTY

    def __repr__(self) -> str:
        return "EMPTY_BLOBS"


EMPTY_BLOBS = EmptyBlobs()

AnyHotEntry = Union[HotEntry, BlobSet, EmptyBlobs]
