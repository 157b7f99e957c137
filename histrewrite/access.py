# access.py -- Object store access for the rewriter
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

"""Reading and writing git objects, refs and notes.

:class:`RepositoryAccess` is the only place where the rewriter touches a
dulwich repository. Every write takes the active :class:`Context`; when the
context carries an :class:`ObjectInserter` bound to the same repository the
object is buffered there, otherwise it is added to the object store directly.
"""

__all__ = [
    "DEFAULT_NOTES_REF",
    "NoteMap",
    "ObjectInserter",
    "ObjectStoreError",
    "Person",
    "RepositoryAccess",
]

import logging
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from typing import TYPE_CHECKING, NamedTuple, Optional, TypeVar

from dulwich.notes import NotesTree
from dulwich.objects import (
    Blob,
    Commit,
    ShaFile,
    Tag,
    Tree,
    object_class,
    valid_hexsha,
)
from dulwich.repo import get_user_identity

from .entry import Entry
from .refentry import SYMREF, RefEntry

if TYPE_CHECKING:
    from dulwich.repo import BaseRepo

    from .context import Context

logger = logging.getLogger(__name__)

DEFAULT_NOTES_REF = b"refs/notes/commits"

NOTES_MESSAGE = b"Notes added by histrewrite\n"

FALLBACK_IDENTITY = b"histrewrite <histrewrite@localhost>"

T = TypeVar("T", bound=ShaFile)


class ObjectStoreError(Exception):
    """Reading or writing an object failed.

    The context active at the time of the failure is kept for diagnostics.
    """

    def __init__(self, message: str, context: Optional["Context"] = None) -> None:
        self.context = context
        if context is not None and str(context):
            message = f"{message} {context}"
        super().__init__(message)


class Person(NamedTuple):
    """An author, committer or tagger identity with its timestamp."""

    name: bytes
    email: bytes
    time: int
    timezone: int

    @classmethod
    def from_identity(cls, identity: bytes, time: int, timezone: int) -> "Person":
        """Parse a ``Name <email>`` identity as stored in git objects."""
        start = identity.rfind(b"<")
        end = identity.rfind(b">")
        if start == -1 or end < start:
            return cls(identity.strip(), b"", time, timezone)
        return cls(identity[:start].rstrip(), identity[start + 1 : end], time, timezone)

    @property
    def identity(self) -> bytes:
        if not self.name:
            return b"<" + self.email + b">"
        return self.name + b" <" + self.email + b">"


class NoteMap:
    """Notes of one notes ref, as a mapping from annotated id to blob id."""

    def __init__(self, base: bytes | None = None) -> None:
        self.base = base
        self.changed = False
        self._notes: dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    def get(self, anchor: bytes) -> bytes | None:
        return self._notes.get(anchor)

    def set(self, anchor: bytes, blob_id: bytes) -> None:
        with self._lock:
            self._notes[anchor] = blob_id
            self.changed = True

    def load(self, anchor: bytes, blob_id: bytes) -> None:
        """Record a note read from the repository."""
        self._notes[anchor] = blob_id

    def __contains__(self, anchor: object) -> bool:
        return anchor in self._notes

    def __len__(self) -> int:
        return len(self._notes)

    def __iter__(self) -> Iterator[tuple[bytes, bytes]]:
        return iter(sorted(self._notes.items()))


class ObjectInserter:
    """An insertion session buffering new objects for one repository.

    Objects are handed to the object store in batches with ``add_objects``.
    Each worker thread owns its own inserter; flushing is serialized by the
    owning :class:`RepositoryAccess`.
    """

    def __init__(self, access: "RepositoryAccess", flush_threshold: int = 5000) -> None:
        self.access = access
        self.flush_threshold = flush_threshold
        self._pending: dict[bytes, ShaFile] = {}
        self._closed = False

    def add(self, obj: ShaFile) -> bytes:
        if self._closed:
            raise ObjectStoreError("inserter already closed")
        self._pending.setdefault(obj.id, obj)
        if len(self._pending) >= self.flush_threshold:
            self.flush()
        return obj.id

    def flush(self) -> None:
        if not self._pending:
            return
        objects = list(self._pending.values())
        self._pending = {}
        self.access._add_objects(objects)

    def close(self) -> None:
        if not self._closed:
            self.flush()
            self._closed = True

    def discard(self) -> None:
        """Close without writing the pending objects."""
        self._pending = {}
        self._closed = True

    def __len__(self) -> int:
        return len(self._pending)

    def __enter__(self) -> "ObjectInserter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.close()
        else:
            # Nothing references the pending objects after a failure.
            self.discard()


class RepositoryAccess:
    """Object, ref and note operations on one dulwich repository."""

    def __init__(self, repo: "BaseRepo", *, dry_run: bool = False) -> None:
        self.repo = repo
        self.object_store = repo.object_store
        self.refs = repo.refs
        self.dry_run = dry_run
        self._identity: bytes | None = None
        self._read_lock = threading.RLock()
        self._write_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.repo!r})"

    def set_dry_run(self, dry_run: bool) -> None:
        self.dry_run = dry_run
        logger.debug("Set the dry running mode of %r to %s", self.repo, dry_run)

    # Reading objects

    def _get(
        self,
        object_id: bytes,
        ctx: Optional["Context"] = None,
        cls: type[T] | None = None,
    ) -> T:
        try:
            with self._read_lock:
                obj = self.object_store[object_id]
        except KeyError as e:
            raise ObjectStoreError(
                f"object {object_id.decode('ascii', 'replace')} not found", ctx
            ) from e
        except OSError as e:
            raise ObjectStoreError(
                f"unable to read object {object_id.decode('ascii', 'replace')}: {e}",
                ctx,
            ) from e
        if cls is not None and not isinstance(obj, cls):
            raise ObjectStoreError(
                f"{object_id.decode('ascii')} is not a {cls.type_name.decode('ascii')}",
                ctx,
            )
        return obj  # type: ignore[return-value]

    def has_object(self, object_id: bytes) -> bool:
        with self._read_lock:
            return object_id in self.object_store

    def get_object_type(self, object_id: bytes, ctx: Optional["Context"] = None) -> int:
        """Return the type number of an object (1 commit, 2 tree, 3 blob, 4 tag)."""
        return self._get(object_id, ctx).type_num

    def read_commit(self, commit_id: bytes, ctx: Optional["Context"] = None) -> Commit:
        return self._get(commit_id, ctx, Commit)

    def read_tag(self, tag_id: bytes, ctx: Optional["Context"] = None) -> Tag:
        return self._get(tag_id, ctx, Tag)

    def read_tree(
        self,
        tree_id: bytes,
        directory: bytes | None = None,
        ctx: Optional["Context"] = None,
    ) -> list[Entry]:
        """Read the entries of a tree, keeping raw modes.

        Args:
          tree_id: Id of the tree to read
          directory: Directory recorded on every entry, or None when
            rewriting is not path sensitive
          ctx: Active context, for diagnostics
        Returns: Entries in tree order
        """
        tree = self._get(tree_id, ctx, Tree)
        return [
            Entry(item.mode, item.path, item.sha, directory)
            for item in tree.iteritems()
        ]

    def read_blob(self, blob_id: bytes, ctx: Optional["Context"] = None) -> bytes:
        return self._get(blob_id, ctx, Blob).as_raw_string()

    def get_blob_size(self, blob_id: bytes, ctx: Optional["Context"] = None) -> int:
        return len(self._get(blob_id, ctx, Blob).as_raw_string())

    def peel(self, object_id: bytes, ctx: Optional["Context"] = None) -> bytes:
        """Follow tag objects until reaching a non-tag object."""
        obj = self._get(object_id, ctx)
        while isinstance(obj, Tag):
            object_id = obj.object[1]
            obj = self._get(object_id, ctx)
        return object_id

    # Writing objects

    def open_inserter(self) -> ObjectInserter:
        return ObjectInserter(self)

    def _add_objects(self, objects: Sequence[ShaFile]) -> None:
        try:
            with self._write_lock:
                self.object_store.add_objects([(obj, None) for obj in objects])
        except OSError as e:
            raise ObjectStoreError(f"unable to write objects: {e}") from e

    def insert(self, obj: ShaFile, ctx: Optional["Context"] = None) -> bytes:
        """Store an object and return its id.

        In dry-run mode only the id is computed.
        """
        if self.dry_run:
            return obj.id
        inserter = ctx.inserter if ctx is not None else None
        if inserter is not None and inserter.access is self:
            return inserter.add(obj)
        try:
            with self._write_lock:
                self.object_store.add_object(obj)
        except OSError as e:
            raise ObjectStoreError(f"unable to write object {obj.id!r}: {e}", ctx) from e
        return obj.id

    def write_blob(self, data: bytes, ctx: Optional["Context"] = None) -> bytes:
        return self.insert(Blob.from_string(data), ctx)

    def write_tree(
        self, entries: Iterable[Entry], ctx: Optional["Context"] = None
    ) -> bytes:
        """Write a tree object from entries in any order.

        Two entries with the same name cannot both be stored; the later one
        in tree order wins and a warning is logged.
        """
        tree = Tree()
        for entry in sorted(entries, key=lambda e: e.sort_key):
            if entry.name in tree:
                logger.warning("Duplicate tree entry, keeping the last one: %s %s", entry, ctx)
            tree.add(entry.name, entry.mode, entry.id)
        return self.insert(tree, ctx)

    def write_commit(
        self,
        parents: Sequence[bytes],
        tree_id: bytes,
        author: Person,
        committer: Person,
        message: bytes,
        ctx: Optional["Context"] = None,
        *,
        encoding: bytes | None = None,
        signature: bytes | None = None,
    ) -> bytes:
        commit = Commit()
        commit.parents = list(parents)
        commit.tree = tree_id
        commit.author = author.identity
        commit.author_time = author.time
        commit.author_timezone = author.timezone
        commit.committer = committer.identity
        commit.commit_time = committer.time
        commit.commit_timezone = committer.timezone
        commit.message = message
        if encoding is not None:
            commit.encoding = encoding
        if signature is not None:
            commit.gpgsig = signature
        return self.insert(commit, ctx)

    def write_tag(
        self,
        object_id: bytes,
        object_type: int,
        name: bytes,
        tagger: Person | None,
        message: bytes,
        ctx: Optional["Context"] = None,
    ) -> bytes:
        tag = Tag()
        tag.object = (object_class(object_type), object_id)
        tag.name = name
        if tagger is not None:
            tag.tagger = tagger.identity
            tag.tag_time = tagger.time
            tag.tag_timezone = tagger.timezone
        tag.message = message
        return self.insert(tag, ctx)

    # Refs

    def get_refs(self) -> list[RefEntry]:
        """Return every ref of the repository, HEAD included."""
        result = []
        for name in sorted(self.refs.allkeys()):
            value = self.refs.read_ref(name)
            if value is None:
                continue
            result.append(RefEntry.from_raw(name, value))
        return result

    def get_ref(self, name: bytes) -> RefEntry | None:
        value = self.refs.read_ref(name)
        return RefEntry.from_raw(name, value) if value is not None else None

    def resolve_ref(self, entry: RefEntry, ctx: Optional["Context"] = None) -> bytes:
        """Return the object id a ref ultimately points at."""
        if not entry.is_symbolic:
            assert entry.id is not None
            return entry.id
        assert entry.name is not None
        try:
            return self.refs[entry.name]
        except KeyError as e:
            raise ObjectStoreError(
                f"dangling symbolic ref {entry.name.decode('utf-8', 'replace')}", ctx
            ) from e

    def apply_ref_update(self, entry: RefEntry) -> None:
        if self.dry_run:
            return
        assert entry.name is not None
        if entry.is_symbolic:
            assert entry.target is not None
            self.refs.set_symbolic_ref(entry.name, entry.target)
            return
        current = self.refs.read_ref(entry.name)
        if current is not None and current.startswith(SYMREF):
            # setting a symbolic ref would move its target instead
            self.refs.remove_if_equals(entry.name, None)
        assert entry.id is not None
        self.refs.set_if_equals(entry.name, None, entry.id)

    def apply_ref_delete(self, entry: RefEntry) -> None:
        if self.dry_run:
            return
        assert entry.name is not None
        self.refs.remove_if_equals(entry.name, None)

    def apply_ref_rename(self, name: bytes, new_name: bytes) -> None:
        if self.dry_run:
            return
        value = self.refs.read_ref(name)
        if value is None:
            raise ObjectStoreError(f"no such ref: {name.decode('utf-8', 'replace')}")
        self.apply_ref_update(RefEntry.from_raw(new_name, value))
        self.refs.remove_if_equals(name, None)

    # Notes

    def read_notes(self, ref: bytes = DEFAULT_NOTES_REF) -> NoteMap:
        """Read the notes recorded under a notes ref, at any fan-out level."""
        try:
            commit_id = self.refs[ref]
        except KeyError:
            return NoteMap()
        notes = NoteMap(base=commit_id)
        tree = self._get(self.read_commit(commit_id).tree, None, Tree)
        with self._read_lock:
            for anchor, blob_id in NotesTree(tree, self.object_store).list_notes():
                if valid_hexsha(anchor):
                    notes.load(anchor, blob_id)
        return notes

    def read_note(
        self, notes: NoteMap, anchor: bytes, ctx: Optional["Context"] = None
    ) -> bytes | None:
        blob_id = notes.get(anchor)
        if blob_id is None:
            return None
        return self.read_blob(blob_id, ctx)

    def add_note(
        self,
        notes: NoteMap,
        anchor: bytes,
        content: bytes | None,
        ctx: Optional["Context"] = None,
    ) -> None:
        if content is not None:
            notes.set(anchor, self.write_blob(content, ctx))

    def write_notes(
        self,
        notes: NoteMap,
        ref: bytes = DEFAULT_NOTES_REF,
        ctx: Optional["Context"] = None,
    ) -> bytes | None:
        """Commit the notes on top of the current notes commit and move the ref.

        Returns: The new notes commit, or None when nothing was written
        """
        if self.dry_run or not notes.changed:
            return None
        tree_id = self.write_tree(
            [Entry(0o100644, anchor, blob_id) for anchor, blob_id in notes], ctx
        )
        ident = Person.from_identity(self.identity, *_now())
        parents = [notes.base] if notes.base is not None else []
        commit_id = self.write_commit(parents, tree_id, ident, ident, NOTES_MESSAGE, ctx)
        self.apply_ref_update(RefEntry(ref, commit_id))
        notes.base = commit_id
        notes.changed = False
        return commit_id

    @property
    def identity(self) -> bytes:
        """Identity used for objects the rewriter creates on its own."""
        if self._identity is None:
            try:
                self._identity = get_user_identity(self.repo.get_config_stack())
            except (KeyError, OSError, ValueError) as e:
                logger.debug("Unable to determine user identity: %s", e)
                self._identity = FALLBACK_IDENTITY
        return self._identity

    @identity.setter
    def identity(self, value: bytes) -> None:
        self._identity = value


def _now() -> tuple[int, int]:
    return int(time.time()), 0
