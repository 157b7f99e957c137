# utils.py -- Test utilities for histrewrite
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

"""Utility functions common to histrewrite tests."""

import itertools
import stat

from dulwich.objects import Blob, Tag, Tree
from dulwich.repo import MemoryRepo
from dulwich.tests.utils import make_commit

F = 0o100644
X = 0o100755
L = 0o120000
GITLINK = 0o160000
D = 0o040000

# 2010-01-01, spaced so that walk order follows creation order
_clock = itertools.count(1262304000, 100)


def make_repo() -> MemoryRepo:
    """Create an empty in-memory repository with HEAD on master."""
    repo = MemoryRepo()
    repo.refs.set_symbolic_ref(b"HEAD", b"refs/heads/master")
    return repo


def make_tree(store, files) -> bytes:
    """Store a tree built from a mapping of paths to contents.

    Args:
      store: Object store receiving the blobs and trees
      files: Mapping of slash-separated paths to blob contents, or to
        ``(mode, content)`` tuples; for gitlinks the content is the
        commit id
    Returns: Id of the root tree
    """
    tree = Tree()
    subdirs: dict[bytes, dict] = {}
    for path, value in files.items():
        head, sep, rest = path.partition(b"/")
        if sep:
            subdirs.setdefault(head, {})[rest] = value
            continue
        if isinstance(value, tuple):
            mode, content = value
        else:
            mode, content = F, value
        if mode == GITLINK:
            tree.add(head, mode, content)
        else:
            blob = Blob.from_string(content)
            store.add_object(blob)
            tree.add(head, mode, blob.id)
    for name, subfiles in subdirs.items():
        tree.add(name, D, make_tree(store, subfiles))
    store.add_object(tree)
    return tree.id


def commit_files(
    repo, files, parents=(), ref: bytes | None = b"refs/heads/master", **attrs
) -> bytes:
    """Create a commit of ``files`` and point ``ref`` at it.

    Returns: Id of the new commit
    """
    when = next(_clock)
    commit_attrs = {
        "tree": make_tree(repo.object_store, files),
        "parents": list(parents),
        "author_time": when,
        "commit_time": when,
        "message": b"Commit\n",
    }
    commit_attrs.update(attrs)
    commit = make_commit(**commit_attrs)
    repo.object_store.add_object(commit)
    if ref is not None:
        repo.refs[ref] = commit.id
    return commit.id


def commit_chain(repo, contents, ref: bytes = b"refs/heads/master") -> list[bytes]:
    """Create a line of commits, one per mapping of files."""
    ids: list[bytes] = []
    for files in contents:
        ids.append(commit_files(repo, files, ids[-1:], ref=ref))
    return ids


def make_annotated_tag(repo, name: bytes, object_id: bytes, object_type=None) -> bytes:
    """Create an annotated tag and its ref under refs/tags/."""
    tag = Tag()
    obj = repo.object_store[object_id]
    tag.object = (object_type or type(obj), object_id)
    tag.name = name
    tag.tagger = b"Test Tagger <tagger@nodomain.com>"
    tag.tag_time = next(_clock)
    tag.tag_timezone = 0
    tag.message = b"Tag " + name + b"\n"
    repo.object_store.add_object(tag)
    repo.refs[b"refs/tags/" + name] = tag.id
    return tag.id


def read_files(store, tree_id: bytes, prefix: bytes = b"") -> dict[bytes, bytes]:
    """Read a tree back into a mapping of paths to blob contents."""
    result: dict[bytes, bytes] = {}
    for item in store[tree_id].iteritems():
        path = prefix + item.path
        if stat.S_ISDIR(item.mode):
            result.update(read_files(store, item.sha, path + b"/"))
        elif item.mode == GITLINK:
            result[path] = item.sha
        else:
            result[path] = store[item.sha].as_raw_string()
    return result


def head_commit(repo, ref: bytes = b"refs/heads/master"):
    return repo.object_store[repo.refs[ref]]
