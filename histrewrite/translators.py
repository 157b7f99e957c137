# translators.py -- Blob translators and rewriters driving them
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

"""Blob translators.

A blob translator only rewrites blob content. It receives one blob entry at
a time and returns the entry itself, a new entry, several entries (a
:class:`~histrewrite.entry.BlobSet`) or none at all
(:data:`~histrewrite.entry.EMPTY_BLOBS`). Several translators can be chained
with :class:`CompositeTranslatorRewriter`; each consumes everything the
previous one produced.
"""

__all__ = [
    "BlobTranslator",
    "CompositeTranslatorRewriter",
    "SingleTranslatorRewriter",
    "TranslatorRewriter",
]

from collections.abc import Sequence
from typing import Protocol

from .config import RewriteConfig
from .context import Context
from .entry import EMPTY_BLOBS, AnyHotEntry, BlobSet, HotEntry, SourceBlob
from .rewriter import RepositoryRewriter


class BlobTranslator(Protocol):
    """Protocol for blob content rewriting."""

    def set_up(self, ctx: Context) -> None:
        """Prepare for a run."""
        ...

    def rewrite_blob_entry(self, entry: HotEntry, ctx: Context) -> AnyHotEntry:
        """Rewrite one blob entry."""
        ...


class TranslatorRewriter(RepositoryRewriter):
    """Base class for rewriters delegating blob content to translators."""

    translators: Sequence[BlobTranslator]

    def set_up(self, ctx: Context) -> None:
        super().set_up(ctx)
        for translator in self.translators:
            translator.set_up(ctx)

    def __repr__(self) -> str:
        names = ", ".join(type(t).__name__ for t in self.translators)
        return f"{type(self).__name__}({names})"


class SingleTranslatorRewriter(TranslatorRewriter):
    """Rewriter applying one blob translator."""

    def __init__(
        self, translator: BlobTranslator, config: RewriteConfig | None = None
    ) -> None:
        super().__init__(config)
        self.translator = translator
        self.translators = (translator,)

    def rewrite_blob_entry(self, entry: SourceBlob, ctx: Context) -> AnyHotEntry:
        return self.translator.rewrite_blob_entry(entry, ctx)


class CompositeTranslatorRewriter(TranslatorRewriter):
    """Rewriter applying a chain of blob translators in order."""

    def __init__(
        self,
        translators: Sequence[BlobTranslator],
        config: RewriteConfig | None = None,
    ) -> None:
        super().__init__(config)
        self.translators = tuple(translators)

    def rewrite_blob_entry(self, entry: SourceBlob, ctx: Context) -> AnyHotEntry:
        current: list[HotEntry] = [entry]
        for translator in self.translators:
            produced: list[HotEntry] = []
            for e in current:
                produced.extend(translator.rewrite_blob_entry(e, ctx).entries())
            current = produced
            if not current:
                return EMPTY_BLOBS
        if len(current) == 1:
            return current[0]
        return BlobSet(current)
