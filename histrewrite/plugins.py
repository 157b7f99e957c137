# plugins.py -- Ready-made rewriters and blob translators
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

"""Ready-made rewriters and blob translators."""

__all__ = [
    "ConversionError",
    "ConvertCommand",
    "ConvertHttp",
    "FilterBlob",
    "Identity",
    "NameFilter",
    "NoteCommit",
    "parse_size",
]

import fnmatch
import logging
import os
import subprocess
import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING

from dulwich.objects import valid_hexsha

from .config import RewriteConfig
from .context import Context
from .entry import EMPTY_BLOBS, AnyHotEntry, HotEntry
from .rewriter import RepositoryRewriter

if TYPE_CHECKING:
    import urllib3

logger = logging.getLogger(__name__)


class ConversionError(Exception):
    """An external converter failed on a blob."""

    def __init__(self, message: str, context: Context | None = None) -> None:
        self.context = context
        if context is not None and str(context):
            message = f"{message} {context}"
        super().__init__(message)


def parse_size(value: str) -> int:
    """Parse a size such as ``512``, ``100B``, ``1.5K``, ``10M`` or ``2G``.

    Units are powers of 1024.
    """
    if not value:
        raise ValueError("empty size")
    units = {"B": 1, "K": 1024, "M": 1024**2, "G": 1024**3}
    unit = value[-1].upper()
    if unit in units:
        number, base = value[:-1], units[unit]
    else:
        number, base = value, 1
    try:
        if "." in number:
            return int(float(number) * base)
        return int(number) * base
    except ValueError:
        raise ValueError(f"invalid size: {value!r}") from None


class Identity(RepositoryRewriter):
    """Copies history without changes."""


class NoteCommit(RepositoryRewriter):
    """Prefixes each commit message with the id of the original commit.

    When the original commit carries a note holding a commit id (as left
    by a previous run with notes enabled), that id is used instead.
    """

    def __init__(self, length: int = 20, config: RewriteConfig | None = None) -> None:
        super().__init__(config)
        if not 1 <= length <= 40:
            raise ValueError(f"length out of range: {length}")
        self.length = length

    def rewrite_commit_message(self, message: bytes, ctx: Context) -> bytes:
        assert self.source is not None
        commit = ctx.commit
        assert commit is not None
        commit_id = commit.id
        note = self.source.read_note(self.source_notes, commit.id, ctx)
        if note is not None and valid_hexsha(note.strip()):
            commit_id = note.strip()
        return commit_id[: self.length] + b" " + message


class NameFilter:
    """Selects blobs by file name patterns.

    Without patterns every name is selected.
    """

    def __init__(
        self,
        patterns: Sequence[str | bytes] | None = None,
        ignore_case: bool = False,
        invert_match: bool = False,
    ) -> None:
        self.ignore_case = ignore_case
        self.invert_match = invert_match
        self.patterns = [
            os.fsencode(p).lower() if ignore_case else os.fsencode(p)
            for p in (patterns or [])
        ]

    @property
    def is_default(self) -> bool:
        return not self.patterns

    def accept(self, name: bytes) -> bool:
        if self.is_default:
            return True
        if self.ignore_case:
            name = name.lower()
        matched = any(fnmatch.fnmatchcase(name, p) for p in self.patterns)
        return matched != self.invert_match


class FilterBlob:
    """Keeps only blobs whose names match and whose size is within a limit.

    With ``invert_match`` both tests are inverted: matching names and blobs
    not above the limit are dropped.
    """

    def __init__(self, name_filter: NameFilter | None = None, max_size: int = -1) -> None:
        self.name_filter = name_filter if name_filter is not None else NameFilter()
        self.max_size = max_size

    def set_up(self, ctx: Context) -> None:
        pass

    def rewrite_blob_entry(self, entry: HotEntry, ctx: Context) -> AnyHotEntry:
        if not self.name_filter.accept(entry.name):
            logger.debug("remove %r: filename unaccepted %s", entry, ctx)
            return EMPTY_BLOBS
        if self.max_size >= 0:
            size = entry.blob_size
            invert = self.name_filter.invert_match
            if (size > self.max_size) != invert:
                logger.debug(
                    "remove %r: size (%dB) %s limit %s",
                    entry,
                    size,
                    "below" if invert else "exceeded",
                    ctx,
                )
                return EMPTY_BLOBS
        return entry


class ConvertCommand:
    """Pipes the content of selected blobs through a shell command."""

    def __init__(
        self,
        command: str,
        name_filter: NameFilter | None = None,
        cwd: str | None = None,
    ) -> None:
        self.command = command
        self.name_filter = name_filter if name_filter is not None else NameFilter()
        self.cwd = cwd

    def set_up(self, ctx: Context) -> None:
        pass

    def rewrite_blob_entry(self, entry: HotEntry, ctx: Context) -> AnyHotEntry:
        if not self.name_filter.accept(entry.name):
            return entry
        return entry.update(self.convert(entry.blob, ctx))

    def convert(self, content: bytes, ctx: Context) -> bytes:
        try:
            result = subprocess.run(
                self.command,
                shell=True,
                input=content,
                capture_output=True,
                check=True,
                cwd=self.cwd,
            )
        except subprocess.CalledProcessError as e:
            for line in (e.stderr or b"").splitlines():
                logger.warning("stderr: %s %s", line.decode("utf-8", "replace"), ctx)
            raise ConversionError(
                f"command {self.command!r} exited with status {e.returncode}", ctx
            ) from e
        except OSError as e:
            raise ConversionError(f"unable to run {self.command!r}: {e}", ctx) from e
        for line in result.stderr.splitlines():
            logger.warning("stderr: %s %s", line.decode("utf-8", "replace"), ctx)
        return result.stdout


class ConvertHttp:
    """Posts the content of selected blobs to an HTTP endpoint.

    The response body replaces the blob. The file name is sent in the
    ``X-Filename`` header.
    """

    def __init__(
        self,
        endpoint: str,
        name_filter: NameFilter | None = None,
        timeout: float | None = None,
        pool_manager: "urllib3.PoolManager | None" = None,
    ) -> None:
        self.endpoint = endpoint
        self.name_filter = name_filter if name_filter is not None else NameFilter()
        self.timeout = timeout
        self._pool_manager = pool_manager
        self._lock = threading.Lock()

    def set_up(self, ctx: Context) -> None:
        logger.info("Converting blobs via %s", self.endpoint)

    @property
    def pool_manager(self) -> "urllib3.PoolManager":
        with self._lock:
            if self._pool_manager is None:
                import urllib3

                self._pool_manager = urllib3.PoolManager(timeout=self.timeout)
            return self._pool_manager

    def rewrite_blob_entry(self, entry: HotEntry, ctx: Context) -> AnyHotEntry:
        if not self.name_filter.accept(entry.name):
            return entry
        return entry.update(self.convert(entry.name, entry.blob, ctx))

    def convert(self, filename: bytes, content: bytes, ctx: Context) -> bytes:
        import urllib3

        headers = {
            "Content-Type": "text/plain",
            "Accept": "text/plain",
            "X-Filename": filename.decode("utf-8", "replace"),
        }
        try:
            response = self.pool_manager.request(
                "POST", self.endpoint, body=content, headers=headers
            )
        except urllib3.exceptions.HTTPError as e:
            raise ConversionError(f"HTTP error posting to {self.endpoint}: {e}", ctx) from e
        if not 200 <= response.status < 300:
            raise ConversionError(
                f"HTTP error {response.status} from {self.endpoint}", ctx
            )
        return response.data
