# cache.py -- Two-tier rewrite caches
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

"""Two-tier mappings used to memoize rewriting.

A :class:`LayeredCache` puts a run-scoped front store in front of an optional
back store, usually one of the tables of a
:class:`~histrewrite.cache_store.SQLiteCacheStore`. An admission predicate
decides which keys reach the back store at all.
"""

__all__ = [
    "LayeredCache",
    "admit_all",
    "admit_blobs",
    "admit_trees",
]

import threading
from collections.abc import Callable, Iterator, MutableMapping
from typing import Generic, TypeVar

from .entry import Entry

K = TypeVar("K")
V = TypeVar("V")


def admit_all(key: object) -> bool:
    return True


def admit_blobs(key: Entry) -> bool:
    """Admit every entry except trees."""
    return not key.is_tree


def admit_trees(key: Entry) -> bool:
    return key.is_tree


class LayeredCache(MutableMapping[K, V], Generic[K, V]):
    """A front store backed by an optional, filtered back store.

    Lookups consult the front store first. On a miss, keys accepted by
    ``admit`` are looked up in the back store and hits are promoted into the
    front store. Writes always go to the front store, and to the back store
    when ``admit`` accepts the key.

    The cache is safe to share between threads. The lock is never held while
    a caller computes a value, so two threads may both compute the value of
    one key; the later write wins.
    """

    def __init__(
        self,
        front: MutableMapping[K, V] | None = None,
        back: MutableMapping[K, V] | None = None,
        admit: Callable[[K], bool] | None = None,
    ) -> None:
        self.front: MutableMapping[K, V] = front if front is not None else {}
        self.back = back
        self.admit = admit if admit is not None else admit_all
        self._lock = threading.RLock()

    def _admits(self, key: K) -> bool:
        return self.back is not None and self.admit(key)

    def __getitem__(self, key: K) -> V:
        with self._lock:
            try:
                return self.front[key]
            except KeyError:
                if not self._admits(key):
                    raise
            assert self.back is not None
            value = self.back[key]
            self.front[key] = value
            return value

    def __setitem__(self, key: K, value: V) -> None:
        with self._lock:
            self.front[key] = value
            if self._admits(key):
                assert self.back is not None
                self.back[key] = value

    def __delitem__(self, key: K) -> None:
        with self._lock:
            found = False
            if key in self.front:
                del self.front[key]
                found = True
            if self._admits(key) and key in self.back:  # type: ignore[operator]
                del self.back[key]  # type: ignore[union-attr]
                found = True
            if not found:
                raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            if key in self.front:
                return True
            return self._admits(key) and key in self.back  # type: ignore[arg-type,operator]

    def _merged(self) -> dict[K, V]:
        merged: dict[K, V] = {}
        if self.back is not None:
            for key, value in self.back.items():
                if self.admit(key):
                    merged[key] = value
        merged.update(self.front)
        return merged

    def __iter__(self) -> Iterator[K]:
        with self._lock:
            return iter(list(self._merged()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._merged())

    def items(self):  # type: ignore[override]
        """Entries of both tiers; the front store wins on conflicts."""
        with self._lock:
            return self._merged().items()

    def clear(self) -> None:
        with self._lock:
            self.front.clear()
            if self.back is not None:
                self.back.clear()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(front={len(self.front)}, back={self.back!r})"
