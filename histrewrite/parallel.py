# parallel.py -- Parallel rewriting of root trees
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

"""Warming the entry cache from a pool of worker threads.

Trees are content addressed, so the root trees of all commits can be
rewritten in any order before the commits themselves are rewritten in walk
order. Each worker thread writes through an object inserter of its own.
"""

__all__ = ["rewrite_root_trees"]

import logging
import threading
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from typing import TYPE_CHECKING

from .context import Context, Key

if TYPE_CHECKING:
    from dulwich.objects import Commit

    from .access import ObjectInserter
    from .rewriter import RepositoryRewriter

logger = logging.getLogger(__name__)


def rewrite_root_trees(
    rewriter: "RepositoryRewriter", commits: Sequence["Commit"], ctx: Context
) -> None:
    """Rewrite the root tree of every commit on ``config.nthreads`` threads.

    Once all tasks are done, the inserter of each thread is flushed and
    closed on the calling thread. If any task failed, its exception is
    raised after that.

    Args:
      rewriter: Initialized rewriter whose entry cache is warmed
      commits: Commits of the revision walk
      ctx: Context the tasks extend
    """
    target = rewriter.target
    assert target is not None
    nthreads = rewriter.config.nthreads
    contexts: dict[int, Context] = {}
    inserters: list["ObjectInserter"] = []
    lock = threading.Lock()

    def thread_context() -> Context:
        ident = threading.get_ident()
        with lock:
            uc = contexts.get(ident)
            if uc is None:
                inserter = target.open_inserter()
                inserters.append(inserter)
                uc = contexts[ident] = ctx.with_(Key.INSERTER, inserter)
            return uc

    def task(commit: "Commit") -> bytes:
        uc = thread_context().with_(Key.COMMIT, commit)
        return rewriter.rewrite_root_tree(commit.tree, uc)

    logger.info(
        "Rewriting %d root trees with %d threads", len(commits), nthreads
    )
    with ThreadPoolExecutor(
        max_workers=nthreads, thread_name_prefix="histrewrite"
    ) as pool:
        futures = [pool.submit(task, commit) for commit in commits]
        wait(futures)

    failure = None
    for future in futures:
        exc = future.exception()
        if exc is not None:
            failure = exc
            break

    if failure is not None:
        for inserter in inserters:
            inserter.discard()
        raise failure
    for inserter in inserters:
        inserter.close()
    logger.debug("Closed %d inserters", len(inserters))
