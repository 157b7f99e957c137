# rewriter.py -- Rewriting the history of a repository
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

"""Rewriting the history of a repository.

:class:`RepositoryRewriter` walks every commit reachable from the start refs
of a source repository, ancestors first, and writes a rewritten copy of each
commit, its trees and blobs, and the refs and tags pointing at them into a
target repository. The target may be the source itself.

Subclasses change what is rewritten by overriding the ``rewrite_*`` methods;
by default everything is copied unchanged, so commit and tree ids are
preserved. Tree entries are memoized: an entry (and, when path sensitive,
its directory) is rewritten at most once per run no matter how many commits
contain it.
"""

__all__ = [
    "RepositoryRewriter",
]

import logging
from collections.abc import MutableMapping, Sequence
from typing import TYPE_CHECKING, Optional

from dulwich.objects import ZERO_SHA, Commit, Tag
from dulwich.walk import ORDER_TOPO, Walker

from .access import NoteMap, ObjectStoreError, Person, RepositoryAccess
from .cache import LayeredCache, admit_all, admit_blobs, admit_trees
from .cache_store import SQLiteCacheStore
from .config import CacheLevel, RewriteConfig
from .context import Context, Key
from .entry import (
    EMPTY,
    TREE_MODE,
    Entry,
    EntryKind,
    EntryResult,
    EntrySet,
    SourceBlob,
)
from .refentry import RefEntry

if TYPE_CHECKING:
    from dulwich.repo import BaseRepo

    from .entry import AnyHotEntry

logger = logging.getLogger(__name__)

HEAD = b"HEAD"
LOCAL_BRANCH_PREFIX = b"refs/heads/"
LOCAL_TAG_PREFIX = b"refs/tags/"

OBJ_COMMIT = Commit.type_num
OBJ_TREE = 2
OBJ_BLOB = 3
OBJ_TAG = Tag.type_num


def _join_path(parent: bytes | None, name: bytes) -> bytes:
    return parent + b"/" + name if parent else name


class RepositoryRewriter:
    """Copies the history of a repository through overridable rewrite steps."""

    def __init__(self, config: RewriteConfig | None = None) -> None:
        self.config = config if config is not None else RewriteConfig()
        # Entry -> rewritten entries
        self.entry_map: MutableMapping[Entry, EntryResult] = LayeredCache()
        # old commit id -> new commit id
        self.commit_map: MutableMapping[bytes, bytes] = LayeredCache()
        # old tag id -> new tag id
        self.tag_map: dict[bytes, bytes] = {}
        self.ref_map: MutableMapping[RefEntry, RefEntry] = LayeredCache()
        self.source: RepositoryAccess | None = None
        self.target: RepositoryAccess | None = None
        self.is_overwriting = False
        self.cache_store: SQLiteCacheStore | None = None
        self._source_notes: NoteMap | None = None
        self._target_notes: NoteMap | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    @property
    def is_path_sensitive(self) -> bool:
        return self.config.path_sensitive

    def initialize(
        self, source_repo: "BaseRepo", target_repo: Optional["BaseRepo"] = None
    ) -> None:
        """Bind the rewriter to its repositories and set up the caches.

        Args:
          source_repo: Repository whose history is read
          target_repo: Repository receiving the rewritten history; the
            source itself when omitted
        """
        if target_repo is None:
            target_repo = source_repo
        self.is_overwriting = target_repo is source_repo
        self.source = RepositoryAccess(source_repo, dry_run=self.config.dry_run)
        if self.is_overwriting:
            self.target = self.source
        else:
            self.target = RepositoryAccess(target_repo, dry_run=self.config.dry_run)

        levels = self.config.cache_levels
        if not levels:
            return
        if self.config.cache_path is not None:
            self.cache_store = SQLiteCacheStore(self.config.cache_path)
        else:
            self.cache_store = SQLiteCacheStore.for_repo(target_repo)
        if CacheLevel.COMMIT in levels:
            logger.info("Stored mapping (commit-mapping) is available")
            self.commit_map = LayeredCache({}, self.cache_store.commit_mapping())
            self.ref_map = LayeredCache({}, self.cache_store.ref_mapping())
        if CacheLevel.BLOB in levels or CacheLevel.TREE in levels:
            logger.info("Stored mapping (entry-mapping) is available")
            if CacheLevel.TREE not in levels:
                logger.info("Stored mapping (entry-mapping): blob-only filtering")
                admit = admit_blobs
            elif CacheLevel.BLOB not in levels:
                logger.info("Stored mapping (entry-mapping): tree-only filtering")
                admit = admit_trees
            else:
                admit = admit_all
            self.entry_map = LayeredCache({}, self.cache_store.entry_mapping(), admit)

    def close(self) -> None:
        if self.cache_store is not None:
            self.cache_store.close()
            self.cache_store = None

    def __enter__(self) -> "RepositoryRewriter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def rewrite(self, ctx: Context | None = None) -> dict[bytes, bytes]:
        """Rewrite every commit, then the refs.

        Exceptions raised by rewrite steps propagate; with a cache store the
        cache is then left as it was before the run.

        Returns: Mapping from old to new commit ids
        """
        if self.source is None or self.target is None:
            raise RuntimeError("initialize() must be called before rewrite()")
        if ctx is None:
            ctx = Context.init()
        logger.info("Rewriting %r with %r", self.source.repo, self)
        self.set_up(ctx)
        if self.cache_store is not None:
            # A dry run stores no objects, so its mappings must not outlive it.
            with self.cache_store.transaction(commit=not self.config.dry_run):
                self.rewrite_commits(ctx)
                self.update_refs(ctx)
        else:
            self.rewrite_commits(ctx)
            self.update_refs(ctx)
        if self._target_notes is not None:
            self.target.write_notes(self._target_notes, ctx=ctx)
        self.clean_up(ctx)
        result = self.export_commit_mapping()
        logger.info("Rewrote %d commits", len(result))
        return result

    def set_up(self, ctx: Context) -> None:
        """Hook run before any commit is rewritten."""

    def clean_up(self, ctx: Context) -> None:
        """Hook run after refs and notes are written."""

    # Notes

    @property
    def source_notes(self) -> NoteMap:
        assert self.source is not None
        if self._source_notes is None:
            self._source_notes = self.source.read_notes()
        return self._source_notes

    @property
    def target_notes(self) -> NoteMap:
        assert self.target is not None
        if self._target_notes is None:
            self._target_notes = self.target.read_notes()
        return self._target_notes

    def get_note(self, old_commit_id: bytes, ctx: Context) -> bytes:
        """Return the note recorded for a rewritten commit.

        A note attached to the original commit is carried over; otherwise
        the note is the original commit id.
        """
        assert self.source is not None
        note = self.source.read_note(self.source_notes, old_commit_id, ctx)
        if note is not None:
            return note
        return old_commit_id

    # Commits

    def rewrite_commits(self, ctx: Context) -> None:
        assert self.target is not None
        commits = self.prepare_revision_walk(ctx)
        self.rewrite_root_trees(commits, ctx)
        with self.target.open_inserter() as inserter:
            uc = ctx.with_(Key.INSERTER, inserter)
            for commit in commits:
                self.rewrite_commit(commit, uc)

    def rewrite_root_trees(self, commits: Sequence[Commit], ctx: Context) -> None:
        """Rewrite the root trees of all commits in parallel.

        Does nothing unless more than one thread is configured; the
        sequential pass then rewrites each tree as it goes.
        """
        if not self.config.is_parallel:
            return
        from .parallel import rewrite_root_trees

        rewrite_root_trees(self, commits, ctx)

    def prepare_revision_walk(self, ctx: Context) -> list[Commit]:
        """Return the commits to rewrite, parents before children."""
        assert self.source is not None
        exclude = self.collect_uninterestings(ctx)
        include = self.collect_starts(ctx)
        if not include:
            return []
        walker = Walker(
            self.source.object_store,
            include,
            exclude=exclude,
            order=ORDER_TOPO,
            reverse=True,
        )
        try:
            commits = [walk_entry.commit for walk_entry in walker]
        except KeyError as e:
            raise ObjectStoreError(f"unable to walk history: missing {e}", ctx) from e
        logger.info("Revision walk: %d commits", len(commits))
        return commits

    def collect_starts(self, ctx: Context) -> list[bytes]:
        """Collect the commits the revision walk starts from."""
        assert self.source is not None
        result = []
        for ref in self.source.get_refs():
            if not self.confirm_start_ref(ref, ctx):
                continue
            assert ref.name is not None
            try:
                object_id = self.source.peel(self.source.resolve_ref(ref, ctx), ctx)
            except ObjectStoreError as e:
                logger.debug("Ref %s: unresolvable; skipped (%s)", ref.name, e)
                continue
            if self.source.get_object_type(object_id, ctx) == OBJ_COMMIT:
                logger.debug(
                    "Ref %s: added as a start point (commit: %s)", ref.name, object_id
                )
                result.append(object_id)
            else:
                logger.debug("Ref %s: non-commit; skipped (%s)", ref.name, object_id)
        return result

    def confirm_start_ref(self, ref: RefEntry, ctx: Context) -> bool:
        """Decide whether the walk starts from a ref."""
        name = ref.name
        assert name is not None
        return (
            name == HEAD
            or name.startswith(LOCAL_BRANCH_PREFIX)
            or name.startswith(LOCAL_TAG_PREFIX)
        )

    def collect_uninterestings(self, ctx: Context) -> list[bytes]:
        """Collect the commits rewritten by a previous run.

        These are the ref values recorded in the ref mapping. The mapping is
        cleared afterwards since the refs may have moved since.
        """
        assert self.source is not None
        result = []
        for ref in list(self.ref_map):
            if ref.id is None:
                continue
            if not self.source.has_object(ref.id):
                logger.debug("Previous ref %s: object %s is gone", ref.name, ref.id)
                continue
            commit_id = self.source.peel(ref.id, ctx)
            if self.source.get_object_type(commit_id, ctx) != OBJ_COMMIT:
                continue
            logger.debug(
                "Previous ref %s: added as an uninteresting point (commit: %s)",
                ref.name,
                commit_id,
            )
            result.append(commit_id)
        self.ref_map.clear()
        return result

    def rewrite_commit(self, commit: Commit, ctx: Context) -> bytes:
        """Rewrite a commit and record the new id.

        Returns: Id of the rewritten commit
        """
        assert self.target is not None
        uc = ctx.with_(Key.COMMIT, commit)
        parent_ids = self.rewrite_parents(commit.parents, uc)
        tree_id = self.rewrite_root_tree(commit.tree, uc)
        author = self.rewrite_author(
            Person.from_identity(
                commit.author, commit.author_time, commit.author_timezone
            ),
            uc,
        )
        committer = self.rewrite_committer(
            Person.from_identity(
                commit.committer, commit.commit_time, commit.commit_timezone
            ),
            uc,
        )
        message = self.rewrite_commit_message(commit.message, uc)
        if self.config.rewrite_extra_attributes:
            encoding = self.rewrite_encoding(commit.encoding, uc)
            signature = self.rewrite_signature(commit.gpgsig, uc)
            new_id = self.target.write_commit(
                parent_ids,
                tree_id,
                author,
                committer,
                message,
                uc,
                encoding=encoding,
                signature=signature,
            )
        else:
            new_id = self.target.write_commit(
                parent_ids, tree_id, author, committer, message, uc
            )

        self.commit_map[commit.id] = new_id
        logger.debug("Rewrite commit: %s -> %s %s", commit.id, new_id, ctx)

        if self.config.add_notes:
            self.target.add_note(
                self.target_notes, new_id, self.get_note(commit.id, uc), uc
            )
        return new_id

    def rewrite_parents(self, parents: Sequence[bytes], ctx: Context) -> list[bytes]:
        result = []
        for parent in parents:
            new_parent = self.commit_map.get(parent)
            if new_parent is None:
                logger.warning("Parent commit has not rewritten yet: %s %s", parent, ctx)
                result.append(parent)
            else:
                result.append(new_parent)
        return result

    def rewrite_root_tree(self, tree_id: bytes, ctx: Context) -> bytes:
        """Rewrite the root tree of a commit.

        The root tree is handled as a tree entry with an empty name, so it
        shares the entry cache with every other tree. A root tree rewritten
        away becomes the empty tree.
        """
        assert self.target is not None
        root = Entry(TREE_MODE, b"", tree_id, b"" if self.is_path_sensitive else None)
        entries = self.get_entry(root, ctx).entries()
        if not entries:
            new_id = self.target.write_tree([], ctx)
        elif len(entries) == 1 and entries[0].is_tree:
            new_id = entries[0].id
        else:
            raise ValueError(f"root tree {tree_id!r} rewritten to {entries!r}")
        logger.debug("Rewrite root tree: %s -> %s %s", tree_id, new_id, ctx)
        return new_id

    # Entries

    def get_entry(self, entry: Entry, ctx: Context) -> EntryResult:
        """Return the rewritten form of an entry, rewriting it on first use."""
        # Not setdefault-style: rewriting recurses into this method.
        cached = self.entry_map.get(entry)
        if cached is not None:
            return cached
        result = self.rewrite_entry(entry, ctx)
        self.entry_map[entry] = result
        return result

    def rewrite_entry(self, entry: Entry, ctx: Context) -> EntryResult:
        assert self.source is not None and self.target is not None
        uc = ctx.with_(Key.ENTRY, entry)
        kind = entry.kind
        if kind is EntryKind.BLOB:
            hot = self.rewrite_blob_entry(SourceBlob(entry, self.source, uc), uc)
            return self._rename(hot.fold(self.target, uc), uc)
        elif kind is EntryKind.TREE:
            return self.rewrite_tree_entry(entry, uc)
        else:
            return self.rewrite_link_entry(entry, uc)

    def _rename(self, result: EntryResult, ctx: Context) -> EntryResult:
        renamed = []
        for e in result.entries():
            name = self.rewrite_name(e.name, ctx)
            renamed.append(e if name == e.name else e._replace(name=name))
        if isinstance(result, Entry):
            return renamed[0]
        return EntrySet(renamed).pack()

    def rewrite_blob_entry(self, entry: SourceBlob, ctx: Context) -> "AnyHotEntry":
        """Rewrite the content of a blob.

        Returns: The entry itself, replacement entries, or
          :data:`~histrewrite.entry.EMPTY_BLOBS` to drop it
        """
        return entry

    def rewrite_tree_entry(self, entry: Entry, ctx: Context) -> EntryResult:
        new_id = self.rewrite_tree(entry.id, ctx)
        if new_id == ZERO_SHA:
            return EMPTY
        name = entry.name if entry.is_root else self.rewrite_name(entry.name, ctx)
        return Entry(entry.mode, name, new_id, entry.directory)

    def rewrite_link_entry(self, entry: Entry, ctx: Context) -> EntryResult:
        new_id = self.rewrite_link(entry.id, ctx)
        if new_id == ZERO_SHA:
            return EMPTY
        return Entry(entry.mode, self.rewrite_name(entry.name, ctx), new_id, entry.directory)

    def rewrite_tree(self, tree_id: bytes, ctx: Context) -> bytes:
        """Rewrite a tree object.

        Returns: The new tree id, or ``ZERO_SHA`` when no entry is left
        """
        assert self.source is not None and self.target is not None
        entry = ctx.entry
        assert entry is not None
        path = b"" if entry.is_root else _join_path(ctx.path, entry.name)
        uc = ctx.with_(Key.PATH, path)
        directory = path if self.is_path_sensitive else None

        entries: list[Entry] = []
        for child in self.source.read_tree(tree_id, directory, uc):
            entries.extend(self.get_entry(child, uc).entries())
        new_id = self.target.write_tree(entries, uc) if entries else ZERO_SHA
        if new_id != tree_id:
            logger.debug("Rewrite tree: %s -> %s %s", tree_id, new_id, ctx)
        return new_id

    def rewrite_link(self, commit_id: bytes, ctx: Context) -> bytes:
        """Rewrite the commit a submodule entry points at."""
        return commit_id

    def rewrite_name(self, name: bytes, ctx: Context) -> bytes:
        """Rewrite the name of a tree entry."""
        return name

    # Commit metadata

    def rewrite_author(self, author: Person, ctx: Context) -> Person:
        return self.rewrite_person(author, ctx)

    def rewrite_committer(self, committer: Person, ctx: Context) -> Person:
        return self.rewrite_person(committer, ctx)

    def rewrite_person(self, person: Person, ctx: Context) -> Person:
        return person

    def rewrite_commit_message(self, message: bytes, ctx: Context) -> bytes:
        return self.rewrite_message(message, ctx)

    def rewrite_message(self, message: bytes, ctx: Context) -> bytes:
        return message

    def rewrite_encoding(self, encoding: bytes | None, ctx: Context) -> bytes | None:
        return encoding

    def rewrite_signature(self, signature: bytes | None, ctx: Context) -> bytes | None:
        """Carry over a commit signature.

        Continuation lines of an embedded signature come back with a leading
        space; it is stripped so the signature is stored as signed.
        """
        if signature is None:
            return None
        return signature.replace(b"\n ", b"\n")

    # Refs

    def update_refs(self, ctx: Context) -> None:
        assert self.source is not None
        for ref in self.source.get_refs():
            if self.confirm_update_ref(ref, ctx):
                self.update_ref(ref, ctx)

    def confirm_update_ref(self, ref: RefEntry, ctx: Context) -> bool:
        return self.confirm_start_ref(ref, ctx)

    def get_ref_entry(self, entry: RefEntry, ctx: Context) -> RefEntry:
        cached = self.ref_map.get(entry)
        if cached is not None:
            return cached
        result = self.rewrite_ref_entry(entry, ctx)
        self.ref_map[entry] = result
        return result

    def update_ref(self, ref: RefEntry, ctx: Context) -> None:
        assert self.target is not None
        uc = ctx.with_(Key.REF, ref)
        new = self.get_ref_entry(ref, uc)
        if new.is_empty:
            if self.is_overwriting:
                logger.debug("Delete ref: %r %s", ref, ctx)
                self.target.apply_ref_delete(ref)
            return

        if ref.name != new.name and self.is_overwriting:
            logger.debug("Rename ref: %s -> %s %s", ref.name, new.name, ctx)
            assert ref.name is not None and new.name is not None
            self.target.apply_ref_rename(ref.name, new.name)

        if not self.is_overwriting or ref.target != new.target or ref.id != new.id:
            logger.debug("Update ref: %r -> %r %s", ref, new, ctx)
            self.target.apply_ref_update(new)

    def rewrite_ref_entry(self, entry: RefEntry, ctx: Context) -> RefEntry:
        assert self.source is not None and entry.name is not None
        new_name = self.rewrite_ref_name(entry.name, ctx)
        if entry.is_symbolic:
            assert entry.target is not None
            target_ref = self.source.get_ref(entry.target)
            if target_ref is None:
                # e.g. HEAD of a branch without commits
                return RefEntry.symbolic(new_name, entry.target)
            new_target = self.get_ref_entry(target_ref, ctx.with_(Key.REF, target_ref))
            if new_target.is_empty:
                return RefEntry.EMPTY
            assert new_target.name is not None
            return RefEntry.symbolic(new_name, new_target.name)

        assert entry.id is not None
        object_type = self.source.get_object_type(entry.id, ctx)
        new_id = self.rewrite_ref_object(entry.id, object_type, ctx)
        if new_id == ZERO_SHA:
            return RefEntry.EMPTY
        return RefEntry(new_name, new_id)

    def rewrite_ref_object(self, object_id: bytes, object_type: int, ctx: Context) -> bytes:
        """Rewrite the object a ref or a tag points at."""
        assert self.source is not None and self.target is not None
        if object_type == OBJ_COMMIT:
            new_commit_id = self.commit_map.get(object_id)
            if new_commit_id is None:
                logger.warning("Rewritten commit not found: %s %s", object_id, ctx)
                return object_id
            return new_commit_id
        elif object_type == OBJ_BLOB:
            new_blob_id = self.target.write_blob(self.source.read_blob(object_id, ctx), ctx)
            logger.warning("Blob %s as a ref object not rewritten, just copied", object_id)
            return new_blob_id
        elif object_type == OBJ_TAG:
            new_tag_id = self.tag_map.get(object_id)
            if new_tag_id is not None:
                return new_tag_id
            return self.rewrite_tag(self.source.read_tag(object_id, ctx), ctx)
        else:
            logger.warning(
                "Ignore unknown type: %s, type = %d %s", object_id, object_type, ctx
            )
            return object_id

    def rewrite_tag(self, tag: Tag, ctx: Context) -> bytes:
        """Rewrite an annotated tag.

        Returns: The new tag id, or ``ZERO_SHA`` if the tagged object was
          rewritten away
        """
        assert self.source is not None and self.target is not None
        uc = ctx.with_(Key.TAG, tag)
        _, old_object_id = tag.object
        object_type = self.source.get_object_type(old_object_id, uc)
        new_object_id = self.rewrite_ref_object(old_object_id, object_type, uc)
        if new_object_id == ZERO_SHA:
            logger.warning("Delete tag %s due to its object to be deleted %s", tag.id, ctx)
            return ZERO_SHA
        logger.debug("Rewrite tag object: %s -> %s %s", old_object_id, new_object_id, ctx)

        tagger = None
        if tag.tagger is not None:
            tagger = self.rewrite_tagger(
                Person.from_identity(tag.tagger, tag.tag_time, tag.tag_timezone), tag, uc
            )
        message = self.rewrite_tag_message(tag.message, uc)
        new_id = self.target.write_tag(
            new_object_id, object_type, tag.name, tagger, message, uc
        )
        logger.debug("Rewrite tag: %s -> %s %s", tag.id, new_id, ctx)
        self.tag_map[tag.id] = new_id
        return new_id

    def rewrite_tagger(self, tagger: Person, tag: Tag, ctx: Context) -> Person:
        return self.rewrite_person(tagger, ctx)

    def rewrite_tag_message(self, message: bytes, ctx: Context) -> bytes:
        return self.rewrite_message(message, ctx)

    def rewrite_ref_name(self, name: bytes, ctx: Context) -> bytes:
        if name.startswith(LOCAL_BRANCH_PREFIX):
            branch = name[len(LOCAL_BRANCH_PREFIX) :]
            return LOCAL_BRANCH_PREFIX + self.rewrite_branch_name(branch, ctx)
        elif name.startswith(LOCAL_TAG_PREFIX):
            tag = name[len(LOCAL_TAG_PREFIX) :]
            return LOCAL_TAG_PREFIX + self.rewrite_tag_name(tag, ctx)
        return name

    def rewrite_branch_name(self, name: bytes, ctx: Context) -> bytes:
        return name

    def rewrite_tag_name(self, name: bytes, ctx: Context) -> bytes:
        return name

    def export_commit_mapping(self) -> dict[bytes, bytes]:
        return dict(self.commit_map.items())
