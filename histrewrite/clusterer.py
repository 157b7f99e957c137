# clusterer.py -- Collapsing clusters of commits
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

"""Rewriting history along an edited commit graph.

A recipe is a JSON object with up to four lists, applied in this order::

    {
      "removeEdges": [["<child>", "<parent>"], ...],
      "addEdges": [["<child>", "<parent>"], ...],
      "clusters": [["<base>", "<member>", ...], ...],
      "forcedClusters": [["<base>", "<member>", ...], ...]
    }

Members of a cluster are merged into its first commit. Merges listed under
``clusters`` are skipped when one commit is an ancestor of the other;
``forcedClusters`` merges regardless.
"""

__all__ = [
    "RECIPE_KEYS",
    "Clusterer",
    "RecipeError",
    "load_recipe",
    "validate_recipe",
]

import json
import logging
import os
from collections.abc import Mapping, Sequence

from dulwich.objects import valid_hexsha

from .config import RewriteConfig
from .context import Context, Key
from .graph import CommitGraph, Vertex
from .rewriter import RepositoryRewriter

logger = logging.getLogger(__name__)

RECIPE_KEYS = ("removeEdges", "addEdges", "clusters", "forcedClusters")

Recipe = Mapping[str, Sequence[Sequence[str]]]


class RecipeError(Exception):
    """A clustering recipe is malformed or names unknown commits."""


def validate_recipe(recipe: object) -> dict[str, list[list[str]]]:
    """Check the shape of a recipe and return a normalized copy."""
    if not isinstance(recipe, Mapping):
        raise RecipeError("recipe must be a JSON object")
    unknown = set(recipe) - set(RECIPE_KEYS)
    if unknown:
        raise RecipeError(f"unknown recipe keys: {', '.join(sorted(unknown))}")
    result: dict[str, list[list[str]]] = {}
    for key, groups in recipe.items():
        if not isinstance(groups, list):
            raise RecipeError(f"{key}: expected a list")
        normalized = []
        for group in groups:
            if not isinstance(group, list) or not all(
                isinstance(i, str) and valid_hexsha(i) for i in group
            ):
                raise RecipeError(f"{key}: expected lists of commit ids, got {group!r}")
            if key in ("removeEdges", "addEdges") and len(group) != 2:
                raise RecipeError(f"{key}: an edge is [child, parent], got {group!r}")
            if not group:
                raise RecipeError(f"{key}: empty cluster")
            normalized.append([i.lower() for i in group])
        result[key] = normalized
    return result


def load_recipe(path: str | os.PathLike) -> dict[str, list[list[str]]]:
    try:
        with open(path, encoding="utf-8") as f:
            recipe = json.load(f)
    except json.JSONDecodeError as e:
        raise RecipeError(f"{os.fspath(path)}: {e}") from e
    return validate_recipe(recipe)


def _vertex(commit_id: str) -> Vertex:
    return Vertex(commit_id.encode("ascii"))


class Clusterer(RepositoryRewriter):
    """Rewriter that merges, links and unlinks commits per a recipe."""

    def __init__(
        self,
        recipe: Recipe,
        config: RewriteConfig | None = None,
        graph_path: str | os.PathLike | None = None,
    ) -> None:
        super().__init__(config)
        self.recipe = validate_recipe(recipe)
        self.graph_path = graph_path
        self.graph = CommitGraph()
        # merged commit id -> id of the commit it was merged into
        self.alternate_map: dict[bytes, bytes] = {}

    def rewrite_commits(self, ctx: Context) -> None:
        assert self.target is not None
        commits = self.prepare_revision_walk(ctx)
        self.graph.build(commits)
        self.rewrite_graph()
        if self.graph_path is not None:
            self.graph.dump(self.graph_path)

        self.rewrite_root_trees(commits, ctx)
        by_id = {commit.id: commit for commit in commits}
        with self.target.open_inserter() as inserter:
            uc = ctx.with_(Key.INSERTER, inserter)
            for vertex in self.graph:
                commit = by_id.get(vertex.id)
                if commit is None:
                    # a parent outside the walk, rewritten by a previous run
                    continue
                self.rewrite_commit(commit, uc)

        for merged in self.alternate_map:
            base = self._resolve_base(merged)
            rewritten = self.commit_map.get(base)
            if rewritten is None:
                logger.warning(
                    "Base commit has not rewritten yet: base: %s, merged: %s %s",
                    base,
                    merged,
                    ctx,
                )
            else:
                logger.debug(
                    "Add commit mapping: %s (merged into %s) -> %s %s",
                    merged,
                    base,
                    rewritten,
                    ctx,
                )
                self.commit_map[merged] = rewritten

    def _resolve_base(self, commit_id: bytes) -> bytes:
        seen = {commit_id}
        while commit_id in self.alternate_map:
            commit_id = self.alternate_map[commit_id]
            if commit_id in seen:
                break
            seen.add(commit_id)
        return commit_id

    def rewrite_graph(self) -> None:
        """Apply the recipe to the commit graph."""
        try:
            for child, parent in self.recipe.get("removeEdges", []):
                if self.graph.remove_edge(_vertex(child), _vertex(parent)):
                    logger.debug("Remove edge: %s -> %s", child, parent)
                else:
                    logger.warning("No edge to remove: %s -> %s", child, parent)
            for child, parent in self.recipe.get("addEdges", []):
                self.graph.add_edge(_vertex(child), _vertex(parent))
                logger.debug("Add edge: %s -> %s", child, parent)
            for cluster in self.recipe.get("clusters", []):
                self.merge_cluster([_vertex(i) for i in cluster], safe=True)
            for cluster in self.recipe.get("forcedClusters", []):
                self.merge_cluster([_vertex(i) for i in cluster], safe=False)
        except (KeyError, ValueError) as e:
            raise RecipeError(str(e)) from e

    def merge_cluster(self, cluster: Sequence[Vertex], safe: bool) -> list[Vertex]:
        """Merge the members of a cluster into its first commit.

        Returns: The commits left, the base first; a single vertex when
          every member was merged
        """
        base = cluster[0]
        result = [base]
        for vertex in cluster[1:]:
            if safe:
                merged = self.graph.merge_vertices_safely(base, vertex)
            else:
                merged = self.graph.merge_vertices(base, vertex)
            if merged:
                self.alternate_map[vertex.id] = base.id
            else:
                result.append(vertex)
        logger.debug(
            "Merge cluster: %s -> %s (size: %d -> %d)",
            [str(v) for v in cluster],
            [str(v) for v in result],
            len(cluster),
            len(result),
        )
        return result

    def rewrite_parents(self, parents: Sequence[bytes], ctx: Context) -> list[bytes]:
        commit = ctx.commit
        assert commit is not None
        new_parents = self.graph.get_parent_ids(commit.id)
        logger.debug("Substitute parents: %s -> %s %s", parents, new_parents, ctx)
        return super().rewrite_parents(new_parents, ctx)
