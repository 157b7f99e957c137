# graph.py -- Commit graph with vertex merging
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

"""A directed graph of commits that supports collapsing commits together.

Edges point from a commit to each of its parents. Every edge carries an
:class:`Edge` with an index taken from a counter that only increases, so the
order of a commit's parents survives any sequence of edge removals and
vertex merges.
"""

__all__ = [
    "CommitGraph",
    "CommitGraphCycleError",
    "Edge",
    "Vertex",
]

import json
import logging
import os
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, NamedTuple

import rustworkx as rx

if TYPE_CHECKING:
    from dulwich.objects import Commit

logger = logging.getLogger(__name__)


class CommitGraphCycleError(Exception):
    """Graph edits introduced a cycle, so there is no topological order."""


class Vertex(NamedTuple):
    """A commit in the graph."""

    id: bytes

    def __str__(self) -> str:
        return self.id.decode("ascii")


class Edge(NamedTuple):
    """A parent relation; ``index`` orders the parents of a commit."""

    index: int


class CommitGraph:
    """Commit graph backed by a :class:`rustworkx.PyDiGraph`."""

    def __init__(self) -> None:
        self._graph = rx.PyDiGraph(multigraph=False, check_cycle=False)
        self._nodes: dict[Vertex, int] = {}
        self._next_index = 0

    def _node(self, vertex: Vertex) -> int:
        try:
            return self._nodes[vertex]
        except KeyError:
            raise KeyError(f"no such vertex: {vertex}") from None

    def _new_edge(self) -> Edge:
        edge = Edge(self._next_index)
        self._next_index += 1
        return edge

    def build(self, commits: Iterable["Commit"]) -> "CommitGraph":
        """Add a vertex for each commit and an edge to each of its parents."""
        for commit in commits:
            vertex = Vertex(commit.id)
            self.add_vertex(vertex)
            for parent_id in commit.parents:
                parent = Vertex(parent_id)
                self.add_vertex(parent)
                self.add_edge(vertex, parent)
        logger.debug(
            "Built commit graph: %d vertices, %d edges",
            self.vertex_count,
            self.edge_count,
        )
        return self

    def add_vertex(self, vertex: Vertex) -> bool:
        if vertex in self._nodes:
            return False
        self._nodes[vertex] = self._graph.add_node(vertex)
        return True

    def has_vertex(self, vertex: Vertex) -> bool:
        return vertex in self._nodes

    def remove_vertex(self, vertex: Vertex) -> None:
        self._graph.remove_node(self._nodes.pop(vertex))

    def add_edge(self, child: Vertex, parent: Vertex, edge: Edge | None = None) -> bool:
        """Add a parent relation.

        Args:
          child: The commit
          parent: One of its parents
          edge: Edge payload to reuse; a new one is allocated when omitted
        Returns: False if the relation already exists
        """
        if child == parent:
            raise ValueError(f"self-loop on {child}")
        src, dst = self._node(child), self._node(parent)
        if self._graph.has_edge(src, dst):
            return False
        self._graph.add_edge(src, dst, edge if edge is not None else self._new_edge())
        return True

    def has_edge(self, child: Vertex, parent: Vertex) -> bool:
        if child not in self._nodes or parent not in self._nodes:
            return False
        return self._graph.has_edge(self._nodes[child], self._nodes[parent])

    def remove_edge(self, child: Vertex, parent: Vertex) -> bool:
        if not self.has_edge(child, parent):
            return False
        self._graph.remove_edge(self._nodes[child], self._nodes[parent])
        return True

    @property
    def vertex_count(self) -> int:
        return self._graph.num_nodes()

    @property
    def edge_count(self) -> int:
        return self._graph.num_edges()

    def vertices(self) -> list[Vertex]:
        return list(self._nodes)

    def __contains__(self, vertex: object) -> bool:
        return vertex in self._nodes

    def __len__(self) -> int:
        return self.vertex_count

    def __iter__(self) -> Iterator[Vertex]:
        """Iterate over vertices, ancestors before descendants."""
        try:
            order = rx.topological_sort(self._graph)
        except rx.DAGHasCycle as e:
            raise CommitGraphCycleError(str(e)) from e
        for index in reversed(order):
            yield self._graph[index]

    def _ancestors_of(self, vertex: Vertex) -> set[int]:
        # Edges point at parents, so graph descendants are commit ancestors.
        node = self._node(vertex)
        return set(rx.descendants(self._graph, node)) | {node}

    def lowest_common_ancestors(self, a: Vertex, b: Vertex) -> set[Vertex]:
        """Return the common ancestors of a and b that no other common
        ancestor descends from. A vertex counts as its own ancestor.
        """
        common = self._ancestors_of(a) & self._ancestors_of(b)
        below: set[int] = set()
        for node in common:
            below.update(rx.descendants(self._graph, node))
        return {self._graph[node] for node in common - below}

    def is_ancestor_descendant(self, a: Vertex, b: Vertex) -> bool:
        """Check whether either vertex is an ancestor of the other."""
        lca = self.lowest_common_ancestors(a, b)
        return a in lca or b in lca

    def merge_vertices(self, base: Vertex, target: Vertex) -> bool:
        """Splice ``target`` into ``base``.

        The parents of ``target`` become parents of ``base`` (after the
        existing ones) and the children of ``target`` take ``base`` in its
        place, keeping their parent order. ``target`` is then removed.

        Returns: False when base and target are the same vertex
        """
        if base == target:
            return False
        base_node, target_node = self._node(base), self._node(target)

        outgoing = sorted(self._graph.out_edges(target_node), key=lambda e: e[2])
        for _, parent_node, _ in outgoing:
            self._graph.remove_edge(target_node, parent_node)
            if parent_node != base_node and not self._graph.has_edge(
                base_node, parent_node
            ):
                self._graph.add_edge(base_node, parent_node, self._new_edge())

        for child_node, _, edge in list(self._graph.in_edges(target_node)):
            self._graph.remove_edge(child_node, target_node)
            if child_node != base_node and not self._graph.has_edge(
                child_node, base_node
            ):
                self._graph.add_edge(child_node, base_node, edge)

        self.remove_vertex(target)
        logger.debug("Merged %s into %s", target, base)
        return True

    def merge_vertices_safely(self, base: Vertex, target: Vertex) -> bool:
        """Merge only when neither vertex is an ancestor of the other.

        Returns: True if the vertices were merged
        """
        if self.is_ancestor_descendant(base, target):
            return False
        return self.merge_vertices(base, target)

    def get_parents(self, vertex: Vertex) -> list[Vertex]:
        """Return the parents of a vertex in parent order."""
        edges = sorted(self._graph.out_edges(self._node(vertex)), key=lambda e: e[2])
        return [self._graph[parent] for _, parent, _ in edges]

    def get_parent_ids(self, commit_id: bytes) -> list[bytes]:
        return [v.id for v in self.get_parents(Vertex(commit_id))]

    def dump(self, path: str | os.PathLike) -> None:
        """Write the graph as node-link JSON."""
        payload = rx.node_link_json(
            self._graph,
            node_attrs=lambda v: {"id": v.id.decode("ascii")},
            edge_attrs=lambda e: {"index": str(e.index)},
        )
        with open(path, "w", encoding="utf-8") as f:
            f.write(payload or json.dumps({}))
