# test_rewriter.py -- Tests for the history rewriter
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

"""Tests for histrewrite.rewriter."""

import os
import shutil
import tempfile
from collections import Counter

from dulwich.objects import ZERO_SHA, Blob, Tree
from dulwich.tests.utils import make_commit

from histrewrite.access import (
    DEFAULT_NOTES_REF,
    ObjectStoreError,
    Person,
    RepositoryAccess,
)
from histrewrite.cache_store import SQLiteCacheStore
from histrewrite.config import CacheLevel, RewriteConfig
from histrewrite.entry import EMPTY_BLOBS, BlobSet
from histrewrite.plugins import NoteCommit
from histrewrite.refentry import RefEntry
from histrewrite.rewriter import RepositoryRewriter

from . import TestCase
from .utils import (
    GITLINK,
    commit_chain,
    commit_files,
    make_annotated_tag,
    make_repo,
    read_files,
)

EMPTY_TREE_ID = Tree().id


class CountingRewriter(RepositoryRewriter):
    """Identity rewriter recording which hooks ran."""

    def __init__(self, config=None) -> None:
        super().__init__(config)
        self.blobs: Counter = Counter()
        self.trees: Counter = Counter()
        self.commits: list[bytes] = []

    def rewrite_blob_entry(self, entry, ctx):
        self.blobs[entry.id] += 1
        return super().rewrite_blob_entry(entry, ctx)

    def rewrite_tree(self, tree_id, ctx):
        self.trees[tree_id] += 1
        return super().rewrite_tree(tree_id, ctx)

    def rewrite_commit(self, commit, ctx):
        self.commits.append(commit.id)
        return super().rewrite_commit(commit, ctx)


class DropSecrets(RepositoryRewriter):
    def rewrite_blob_entry(self, entry, ctx):
        if entry.name == b"secret.txt":
            return EMPTY_BLOBS
        return entry


class UpperMessages(RepositoryRewriter):
    def rewrite_message(self, message, ctx):
        return message.upper()


class RewriterTestCase(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.repo = make_repo()

    def rewrite(self, rewriter, target=None) -> dict[bytes, bytes]:
        rewriter.initialize(self.repo, target)
        self.addCleanup(rewriter.close)
        return rewriter.rewrite()


class IdentityTests(RewriterTestCase):
    def test_preserves_ids(self) -> None:
        c1, c2 = commit_chain(
            self.repo,
            [{b"a.txt": b"a\n"}, {b"a.txt": b"a\n", b"src/b.txt": b"b\n"}],
        )
        mapping = self.rewrite(RepositoryRewriter())
        self.assertEqual({c1: c1, c2: c2}, mapping)
        self.assertEqual(c2, self.repo.refs[b"refs/heads/master"])

    def test_rewriting_twice_changes_nothing(self) -> None:
        commit_chain(self.repo, [{b"a": b"1"}, {b"a": b"2"}, {b"a": b"3"}])
        refs_before = self.repo.get_refs()
        self.rewrite(UpperMessages())
        first = self.repo.get_refs()
        self.assertNotEqual(refs_before, first)
        self.rewrite(RepositoryRewriter())
        self.assertEqual(first, self.repo.get_refs())

    def test_copy_to_other_repository(self) -> None:
        c1 = commit_files(self.repo, {b"a": b"1"})
        c2 = commit_files(self.repo, {b"a": b"2"}, [c1])
        self.repo.refs[b"refs/heads/feature"] = c1
        tag_id = make_annotated_tag(self.repo, b"v1", c1)
        self.repo.refs[b"refs/remotes/origin/master"] = c1

        target = make_repo()
        mapping = self.rewrite(RepositoryRewriter(), target)
        self.assertEqual({c1: c1, c2: c2}, mapping)
        self.assertEqual(c2, target.refs[b"refs/heads/master"])
        self.assertEqual(c1, target.refs[b"refs/heads/feature"])
        self.assertEqual(tag_id, target.refs[b"refs/tags/v1"])
        self.assertEqual(b"ref: refs/heads/master", target.refs.read_ref(b"HEAD"))
        # only HEAD, local branches and tags are rewritten
        self.assertNotIn(b"refs/remotes/origin/master", target.refs)
        self.assertEqual({b"a": b"2"}, read_files(target.object_store, target[c2].tree))

    def test_merge_keeps_parent_order(self) -> None:
        base = commit_files(self.repo, {b"a": b"0"})
        left = commit_files(self.repo, {b"a": b"1"}, [base], ref=b"refs/heads/left")
        right = commit_files(self.repo, {b"a": b"2"}, [base], ref=b"refs/heads/right")
        merge = commit_files(self.repo, {b"a": b"3"}, [right, left])
        mapping = self.rewrite(UpperMessages())
        new_merge = self.repo[mapping[merge]]
        self.assertEqual([mapping[right], mapping[left]], new_merge.parents)
        self.assertEqual(b"COMMIT\n", new_merge.message)

    def test_submodule_entries(self) -> None:
        sub = b"5" * 40
        c1 = commit_files(self.repo, {b"lib/sub": (GITLINK, sub), b"a": b"1"})
        self.assertEqual({c1: c1}, self.rewrite(RepositoryRewriter()))

    def test_rewrite_requires_initialize(self) -> None:
        self.assertRaises(RuntimeError, RepositoryRewriter().rewrite)

    def test_empty_repository(self) -> None:
        self.assertEqual({}, self.rewrite(RepositoryRewriter()))


class EntryRewritingTests(RewriterTestCase):
    def test_blob_rewritten_once(self) -> None:
        commit_chain(
            self.repo,
            [
                {b"a.txt": b"same\n", b"n": b"1"},
                {b"a.txt": b"same\n", b"n": b"2", b"copy/a.txt": b"same\n"},
            ],
        )
        rewriter = CountingRewriter()
        self.rewrite(rewriter)
        self.assertEqual(1, rewriter.blobs[Blob.from_string(b"same\n").id])
        self.assertEqual([1], list(set(rewriter.trees.values())))

    def test_path_sensitive(self) -> None:
        commit_files(self.repo, {b"a.txt": b"same\n", b"copy/a.txt": b"same\n"})
        rewriter = CountingRewriter(RewriteConfig(path_sensitive=True))
        self.rewrite(rewriter)
        self.assertEqual(2, rewriter.blobs[Blob.from_string(b"same\n").id])

    def test_path_in_context(self) -> None:
        paths = []

        class RecordPaths(RepositoryRewriter):
            def rewrite_blob_entry(self, entry, ctx):
                paths.append((ctx.path, entry.name))
                return entry

        commit_files(self.repo, {b"a": b"1", b"x/y/b": b"2"})
        self.rewrite(RecordPaths())
        self.assertEqual([(b"", b"a"), (b"x/y", b"b")], sorted(paths))

    def test_empty_trees_are_dropped(self) -> None:
        c1 = commit_files(
            self.repo,
            {b"keep.txt": b"k", b"private/secret.txt": b"s", b"docs/secret.txt": b"s"},
        )
        c2 = commit_files(self.repo, {b"private/secret.txt": b"s"}, [c1])
        mapping = self.rewrite(DropSecrets())
        self.assertEqual(
            {b"keep.txt": b"k"},
            read_files(self.repo.object_store, self.repo[mapping[c1]].tree),
        )
        self.assertEqual(EMPTY_TREE_ID, self.repo[mapping[c2]].tree)
        self.assertIn(EMPTY_TREE_ID, self.repo.object_store)
        self.assertEqual([mapping[c1]], self.repo[mapping[c2]].parents)

    def test_rename(self) -> None:
        class Rename(RepositoryRewriter):
            def rewrite_name(self, name, ctx):
                return name.replace(b".txt", b".md")

        c1 = commit_files(self.repo, {b"a.txt": b"a", b"dir.txt/b.txt": b"b"})
        mapping = self.rewrite(Rename())
        self.assertEqual(
            {b"a.md": b"a", b"dir.md/b.md": b"b"},
            read_files(self.repo.object_store, self.repo[mapping[c1]].tree),
        )

    def test_fan_out(self) -> None:
        class Split(RepositoryRewriter):
            def rewrite_blob_entry(self, entry, ctx):
                return BlobSet([entry, entry.rename(entry.name + b".bak")])

        c1 = commit_files(self.repo, {b"dir/a": b"a"})
        mapping = self.rewrite(Split())
        self.assertEqual(
            {b"dir/a": b"a", b"dir/a.bak": b"a"},
            read_files(self.repo.object_store, self.repo[mapping[c1]].tree),
        )

    def test_drop_submodule(self) -> None:
        class DropLinks(RepositoryRewriter):
            def rewrite_link(self, commit_id, ctx):
                return ZERO_SHA

        c1 = commit_files(self.repo, {b"sub": (GITLINK, b"5" * 40), b"a": b"1"})
        mapping = self.rewrite(DropLinks())
        self.assertEqual(
            {b"a": b"1"}, read_files(self.repo.object_store, self.repo[mapping[c1]].tree)
        )

    def test_missing_blob_reports_context(self) -> None:
        missing_id = b"c" * 40
        docs = Tree()
        docs.add(b"gone.txt", 0o100644, missing_id)
        root = Tree()
        root.add(b"docs", 0o040000, docs.id)
        self.repo.object_store.add_objects([(docs, None), (root, None)])
        commit = make_commit(tree=root.id, message=b"Broken\n")
        self.repo.object_store.add_object(commit)
        self.repo.refs[b"refs/heads/master"] = commit.id

        with self.assertRaises(ObjectStoreError) as cm:
            self.rewrite(RepositoryRewriter(), make_repo())
        message = str(cm.exception)
        self.assertIn(missing_id.decode("ascii"), message)
        self.assertIn(commit.id.decode("ascii"), message)
        self.assertIn('path: "docs"', message)
        self.assertEqual(commit, cm.exception.context.commit)


class CommitRewritingTests(RewriterTestCase):
    def test_person(self) -> None:
        class Anonymize(RepositoryRewriter):
            def rewrite_person(self, person, ctx):
                return person._replace(name=b"Anonymous", email=b"anon@example.com")

        c1 = commit_files(self.repo, {b"a": b"1"})
        commit = self.repo[self.rewrite(Anonymize())[c1]]
        self.assertEqual(b"Anonymous <anon@example.com>", commit.author)
        self.assertEqual(b"Anonymous <anon@example.com>", commit.committer)
        self.assertEqual(self.repo[c1].author_time, commit.author_time)

    def test_context_carries_commit(self) -> None:
        seen = []

        class Record(RepositoryRewriter):
            def rewrite_commit_message(self, message, ctx):
                seen.append(ctx.commit.id)
                return message

        c1, c2 = commit_chain(self.repo, [{b"a": b"1"}, {b"a": b"2"}])
        self.rewrite(Record())
        self.assertEqual([c1, c2], seen)

    def test_signature_fixup(self) -> None:
        rewriter = RepositoryRewriter()
        signature = (
            b"-----BEGIN PGP SIGNATURE-----\n \n iQEzBAAB\n -----END PGP SIGNATURE-----"
        )
        self.assertEqual(
            b"-----BEGIN PGP SIGNATURE-----\n\niQEzBAAB\n-----END PGP SIGNATURE-----",
            rewriter.rewrite_signature(signature, None),
        )
        self.assertIsNone(rewriter.rewrite_signature(None, None))

    def test_extra_attributes(self) -> None:
        signature = b"-----BEGIN PGP SIGNATURE-----\n\niQEzBAAB\n-----END PGP SIGNATURE-----"
        c1 = commit_files(
            self.repo, {b"a": b"1"}, encoding=b"ISO-8859-1", gpgsig=signature
        )
        config = RewriteConfig(rewrite_extra_attributes=True)
        self.assertEqual({c1: c1}, self.rewrite(RepositoryRewriter(config), make_repo()))

        target = make_repo()
        new_id = self.rewrite(RepositoryRewriter(), target)[c1]
        self.assertNotEqual(c1, new_id)
        self.assertIsNone(target[new_id].gpgsig)
        self.assertIsNone(target[new_id].encoding)

    def test_notes(self) -> None:
        c1, c2 = commit_chain(self.repo, [{b"a": b"1"}, {b"a": b"2"}])
        target = make_repo()
        mapping = self.rewrite(UpperMessages(RewriteConfig(add_notes=True)), target)
        access = RepositoryAccess(target)
        notes = access.read_notes()
        self.assertEqual(2, len(notes))
        self.assertEqual(c1, access.read_note(notes, mapping[c1]))
        self.assertEqual(c2, access.read_note(notes, mapping[c2]))

    def test_notes_carry_over(self) -> None:
        c1 = commit_files(self.repo, {b"a": b"1"})
        source = RepositoryAccess(self.repo)
        source.identity = b"Test <test@example.com>"
        notes = source.read_notes()
        source.add_note(notes, c1, b"original note")
        source.write_notes(notes)

        target = make_repo()
        mapping = self.rewrite(UpperMessages(RewriteConfig(add_notes=True)), target)
        access = RepositoryAccess(target)
        self.assertEqual(
            b"original note", access.read_note(access.read_notes(), mapping[c1])
        )
        # the notes ref itself is not copied
        self.assertEqual(1, len(access.read_notes()))

    def test_hook_errors_propagate(self) -> None:
        class Broken(RepositoryRewriter):
            def rewrite_message(self, message, ctx):
                raise RuntimeError("hook failed")

        commit_files(self.repo, {b"a": b"1"})
        target = make_repo()
        with self.assertRaises(RuntimeError):
            self.rewrite(Broken(), target)
        self.assertNotIn(b"refs/heads/master", target.refs)

    def test_dry_run(self) -> None:
        c1 = commit_files(self.repo, {b"a": b"1"})
        target = make_repo()
        mapping = self.rewrite(UpperMessages(RewriteConfig(dry_run=True)), target)
        self.assertIn(c1, mapping)
        self.assertNotIn(mapping[c1], target.object_store)
        self.assertEqual([], list(target.object_store))
        self.assertNotIn(b"refs/heads/master", target.refs)


class RefRewritingTests(RewriterTestCase):
    def test_annotated_tag(self) -> None:
        c1 = commit_files(self.repo, {b"a": b"1"})
        tag_id = make_annotated_tag(self.repo, b"v1", c1)
        rewriter = UpperMessages()
        mapping = self.rewrite(rewriter)
        new_tag_id = self.repo.refs[b"refs/tags/v1"]
        self.assertNotEqual(tag_id, new_tag_id)
        self.assertEqual({tag_id: new_tag_id}, rewriter.tag_map)
        new_tag = self.repo[new_tag_id]
        self.assertEqual(mapping[c1], new_tag.object[1])
        self.assertEqual(b"TAG V1\n", new_tag.message)
        self.assertEqual(b"Test Tagger <tagger@nodomain.com>", new_tag.tagger)

    def test_tag_of_tag(self) -> None:
        c1 = commit_files(self.repo, {b"a": b"1"})
        inner = make_annotated_tag(self.repo, b"inner", c1)
        make_annotated_tag(self.repo, b"outer", inner)
        mapping = self.rewrite(UpperMessages())
        outer = self.repo[self.repo.refs[b"refs/tags/outer"]]
        self.assertEqual(self.repo.refs[b"refs/tags/inner"], outer.object[1])
        self.assertEqual(mapping[c1], self.repo[outer.object[1]].object[1])

    def test_tag_of_blob(self) -> None:
        commit_files(self.repo, {b"a": b"1"})
        blob = Blob.from_string(b"loose")
        self.repo.object_store.add_object(blob)
        self.repo.refs[b"refs/tags/blob"] = blob.id
        target = make_repo()
        with self.assertLogs("histrewrite.rewriter", level="WARNING") as cm:
            self.rewrite(RepositoryRewriter(), target)
        self.assertTrue(any("just copied" in line for line in cm.output))
        self.assertEqual(blob.id, target.refs[b"refs/tags/blob"])
        self.assertIn(blob.id, target.object_store)

    def test_ref_to_tree(self) -> None:
        c1 = commit_files(self.repo, {b"a": b"1"})
        tree_id = self.repo[c1].tree
        self.repo.refs[b"refs/tags/tree"] = tree_id
        with self.assertLogs("histrewrite.rewriter", level="WARNING") as cm:
            mapping = self.rewrite(RepositoryRewriter())
        self.assertEqual({c1: c1}, mapping)
        self.assertTrue(any("Ignore unknown type" in line for line in cm.output))
        self.assertEqual(tree_id, self.repo.refs[b"refs/tags/tree"])

    def test_rename_branch(self) -> None:
        class Rename(RepositoryRewriter):
            def rewrite_branch_name(self, name, ctx):
                return b"main" if name == b"master" else name

        c1 = commit_files(self.repo, {b"a": b"1"})
        self.rewrite(Rename())
        self.assertEqual(c1, self.repo.refs[b"refs/heads/main"])
        self.assertNotIn(b"refs/heads/master", self.repo.refs)
        self.assertEqual(b"ref: refs/heads/main", self.repo.refs.read_ref(b"HEAD"))

    def test_rename_tag_into_other_repository(self) -> None:
        class Rename(RepositoryRewriter):
            def rewrite_tag_name(self, name, ctx):
                return b"release-" + name

        c1 = commit_files(self.repo, {b"a": b"1"})
        self.repo.refs[b"refs/tags/v1"] = c1
        target = make_repo()
        self.rewrite(Rename(), target)
        self.assertEqual(c1, target.refs[b"refs/tags/release-v1"])
        self.assertNotIn(b"refs/tags/v1", target.refs)

    def test_unborn_head(self) -> None:
        self.repo.refs.set_symbolic_ref(b"HEAD", b"refs/heads/unborn")
        commit_files(self.repo, {b"a": b"1"})
        target = make_repo()
        self.rewrite(RepositoryRewriter(), target)
        self.assertEqual(b"ref: refs/heads/unborn", target.refs.read_ref(b"HEAD"))

    def test_ref_entry_memoized(self) -> None:
        c1 = commit_files(self.repo, {b"a": b"1"})
        rewriter = RepositoryRewriter()
        self.rewrite(rewriter)
        self.assertEqual(
            RefEntry(b"refs/heads/master", c1),
            rewriter.ref_map[RefEntry(b"refs/heads/master", c1)],
        )


class CacheTests(RewriterTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.tempdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tempdir)
        self.cache_path = os.path.join(self.tempdir, "cache.db")

    def config(self, *levels) -> RewriteConfig:
        return RewriteConfig(cache_levels=frozenset(levels), cache_path=self.cache_path)

    def test_entry_cache_admits_blobs(self) -> None:
        commit_files(self.repo, {b"a": b"1", b"dir/b": b"2"})
        self.rewrite(RepositoryRewriter(self.config(CacheLevel.BLOB)), make_repo())
        with SQLiteCacheStore(self.cache_path) as store:
            keys = list(store.entry_mapping())
            self.assertEqual(2, len(keys))
            self.assertFalse(any(key.is_tree for key in keys))
            self.assertEqual(0, len(store.commit_mapping()))

    def test_failed_run_leaves_cache_untouched(self) -> None:
        class FailLate(RepositoryRewriter):
            def rewrite_message(self, message, ctx):
                if ctx.commit.parents:
                    raise RuntimeError("interrupted")
                return message

        commit_chain(self.repo, [{b"a": b"1"}, {b"a": b"2"}])
        rewriter = FailLate(self.config(CacheLevel.COMMIT, CacheLevel.TREE))
        with self.assertRaises(RuntimeError):
            self.rewrite(rewriter, make_repo())
        rewriter.close()
        with SQLiteCacheStore(self.cache_path) as store:
            self.assertEqual(0, len(store.commit_mapping()))
            self.assertEqual(0, len(store.entry_mapping()))

    def test_dry_run_leaves_cache_untouched(self) -> None:
        commit_chain(self.repo, [{b"a": b"1"}, {b"a": b"2"}])
        target = make_repo()
        config = self.config(CacheLevel.COMMIT, CacheLevel.TREE)
        config.dry_run = True
        dry = UpperMessages(config)
        self.rewrite(dry, target)
        dry.close()
        with SQLiteCacheStore(self.cache_path) as store:
            self.assertEqual(0, len(store.commit_mapping()))
            self.assertEqual(0, len(store.entry_mapping()))
            self.assertEqual(0, len(store.ref_mapping()))

        mapping = self.rewrite(
            UpperMessages(self.config(CacheLevel.COMMIT, CacheLevel.TREE)), target
        )
        self.assertEqual(2, len(mapping))
        for new_id in mapping.values():
            self.assertIn(new_id, target.object_store)
        tip = target.refs[b"refs/heads/master"]
        self.assertIn(tip, target.object_store)
        self.assertEqual(b"COMMIT\n", target[tip].message)


class ScenarioTests(RewriterTestCase):
    def test_annotated_copy(self) -> None:
        """Two commits on two branches, rewritten with annotated messages."""
        c1, c2 = commit_chain(self.repo, [{b"a.txt": b"a"}, {b"a.txt": b"b"}])
        self.repo.refs[b"refs/heads/feature"] = c1
        mapping = self.rewrite(NoteCommit())
        self.assertEqual({c1, c2}, set(mapping))
        for old, new in mapping.items():
            self.assertNotEqual(old, new)
            self.assertEqual(self.repo[old].tree, self.repo[new].tree)
            self.assertTrue(self.repo[new].message.startswith(old[:20] + b" "))
        self.assertEqual(mapping[c2], self.repo.refs[b"refs/heads/master"])
        self.assertEqual(mapping[c1], self.repo.refs[b"refs/heads/feature"])

    def test_unchanged_blob_rewritten_once(self) -> None:
        """A blob present in ten commits reaches the content hook once."""
        commit_chain(
            self.repo,
            [{b"a.txt": b"unchanged\n", b"n": b"%d" % i} for i in range(10)],
        )
        rewriter = CountingRewriter()
        self.rewrite(rewriter)
        self.assertEqual(1, rewriter.blobs[Blob.from_string(b"unchanged\n").id])
        # every commit has a root tree of its own
        self.assertEqual(10, len(rewriter.trees))

    def test_interrupted_run_resumes(self) -> None:
        """A second run only visits the commits added since the first."""
        tempdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tempdir)
        config = RewriteConfig(
            cache_levels=frozenset([CacheLevel.COMMIT]),
            cache_path=os.path.join(tempdir, "cache.db"),
        )
        ids = commit_chain(self.repo, [{b"a": b"%d" % i} for i in range(3)])
        target = make_repo()
        first = CountingRewriter(config)
        self.rewrite(first, target)
        first.close()
        self.assertEqual(ids, first.commits)

        ids.append(commit_files(self.repo, {b"a": b"3"}, ids[-1:]))
        ids.append(commit_files(self.repo, {b"a": b"4"}, ids[-1:]))
        second = CountingRewriter(config)
        mapping = self.rewrite(second, target)
        self.assertEqual(ids[3:], second.commits)
        self.assertEqual(set(ids), set(mapping))
        self.assertEqual({i: i for i in ids}, mapping)
        self.assertEqual(ids[-1], target.refs[b"refs/heads/master"])
        self.assertEqual([ids[2]], target[ids[3]].parents)


class DefaultHookTests(TestCase):
    def test_tagger_default(self) -> None:
        person = Person(b"T", b"t@example.com", 1, 0)
        self.assertEqual(person, RepositoryRewriter().rewrite_tagger(person, None, None))

    def test_default_ref_name(self) -> None:
        rewriter = RepositoryRewriter()
        for name in (b"HEAD", b"refs/heads/a/b", b"refs/tags/v1", b"refs/notes/commits"):
            self.assertEqual(name, rewriter.rewrite_ref_name(name, None))

    def test_notes_ref_untouched(self) -> None:
        self.assertFalse(
            RepositoryRewriter().confirm_start_ref(RefEntry(DEFAULT_NOTES_REF, b"1" * 40), None)
        )
