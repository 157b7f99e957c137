# context.py -- Ambient values threaded through a rewrite
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

"""Immutable rewriting context.

A :class:`Context` is a parent-linked chain of bindings. Binding a value
returns a new head and leaves the old chain untouched, so a recursive call
and every worker thread can carry its own view of the current commit, entry,
path and object inserter without any global state.
"""

__all__ = [
    "Context",
    "Key",
]

import enum
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from dulwich.objects import Commit, Tag

    from .access import ObjectInserter
    from .entry import Entry
    from .refentry import RefEntry


class Key(enum.Enum):
    """Keys that may be bound in a context."""

    COMMIT = "commit"
    TAG = "tag"
    REF = "ref"
    ENTRY = "entry"
    PATH = "path"
    INSERTER = "inserter"


_UNBOUND = object()


class Context:
    """A link in an immutable chain of key/value bindings."""

    __slots__ = ("_bindings", "_parent", "_str")

    def __init__(
        self, bindings: dict[Key, Any], parent: Optional["Context"] = None
    ) -> None:
        self._bindings = bindings
        self._parent = parent
        self._str: str | None = None

    @classmethod
    def init(cls) -> "Context":
        """Return an empty context."""
        return cls({})

    def with_(self, *pairs: Any) -> "Context":
        """Return a new context binding the given key/value pairs.

        Args:
          pairs: Alternating keys and values, e.g.
            ``ctx.with_(Key.COMMIT, commit, Key.PATH, b"")``
        Returns: A new head of the chain, linked to this context
        """
        if not pairs or len(pairs) % 2:
            raise TypeError("with_() takes key/value pairs")
        bindings = {}
        for key, value in zip(pairs[::2], pairs[1::2]):
            if not isinstance(key, Key):
                raise TypeError(f"not a context key: {key!r}")
            bindings[key] = value
        return Context(bindings, self)

    def get(self, key: Key, default: Any = None) -> Any:
        """Look up the value bound nearest to this link."""
        link: Context | None = self
        while link is not None:
            value = link._bindings.get(key, _UNBOUND)
            if value is not _UNBOUND:
                return value
            link = link._parent
        return default

    def __contains__(self, key: object) -> bool:
        return isinstance(key, Key) and self.get(key, _UNBOUND) is not _UNBOUND

    def keys(self) -> Iterator[Key]:
        """Iterate over the keys bound anywhere in the chain."""
        for key in Key:
            if key in self:
                yield key

    @property
    def commit(self) -> Optional["Commit"]:
        return self.get(Key.COMMIT)

    @property
    def tag(self) -> Optional["Tag"]:
        return self.get(Key.TAG)

    @property
    def ref(self) -> Optional["RefEntry"]:
        return self.get(Key.REF)

    @property
    def entry(self) -> Optional["Entry"]:
        return self.get(Key.ENTRY)

    @property
    def path(self) -> bytes | None:
        return self.get(Key.PATH)

    @property
    def inserter(self) -> Optional["ObjectInserter"]:
        return self.get(Key.INSERTER)

    def __str__(self) -> str:
        if self._str is None:
            self._str = self._describe()
        return self._str

    def _describe(self) -> str:
        parts = []
        for key in (Key.COMMIT, Key.TAG, Key.REF, Key.PATH, Key.ENTRY):
            value = self.get(key)
            if value is None:
                continue
            if key in (Key.COMMIT, Key.TAG):
                text = value.id.decode("ascii")
            elif key == Key.REF:
                text = value.name.decode("utf-8", "replace")
            elif key == Key.PATH:
                text = value.decode("utf-8", "replace")
            else:
                text = str(value)
            parts.append(f'{key.value}: "{text}"')
        return f"({', '.join(parts)})" if parts else ""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self}>"
