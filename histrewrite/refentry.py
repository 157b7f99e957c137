# refentry.py -- Value objects for refs
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

"""Value objects for refs."""

__all__ = ["RefEntry"]

from typing import ClassVar, Optional

SYMREF = b"ref: "


class RefEntry:
    """A ref, either direct (pointing at an object id) or symbolic.

    Exactly one of ``id`` and ``target`` is set, except for
    :attr:`RefEntry.EMPTY`, which marks a ref to be deleted.
    """

    __slots__ = ("id", "name", "target")

    EMPTY: ClassVar["RefEntry"]

    def __init__(
        self,
        name: bytes | None,
        id: bytes | None = None,
        target: bytes | None = None,
    ) -> None:
        if name is not None and (id is None) == (target is None):
            raise ValueError("a ref has either an object id or a target")
        self.name = name
        self.id = id
        self.target = target

    @classmethod
    def symbolic(cls, name: bytes, target: bytes) -> "RefEntry":
        return cls(name, target=target)

    @classmethod
    def from_raw(cls, name: bytes, value: bytes) -> "RefEntry":
        """Build an entry from a raw ref value as stored by dulwich."""
        if value.startswith(SYMREF):
            return cls(name, target=value[len(SYMREF) :].strip())
        return cls(name, id=value)

    @property
    def is_symbolic(self) -> bool:
        return self.target is not None

    @property
    def is_empty(self) -> bool:
        return self.name is None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RefEntry):
            return NotImplemented
        return (self.name, self.id, self.target) == (other.name, other.id, other.target)

    def __hash__(self) -> int:
        return hash((self.name, self.id, self.target))

    def __repr__(self) -> str:
        if self.is_empty:
            return "<Ref:EMPTY>"
        assert self.name is not None
        value: Optional[bytes] = self.target if self.is_symbolic else self.id
        assert value is not None
        return f"<Ref:{self.name.decode('utf-8', 'replace')} {value.decode('utf-8', 'replace')}>"


RefEntry.EMPTY = RefEntry(None)
