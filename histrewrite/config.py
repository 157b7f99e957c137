# config.py -- Rewrite settings
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

"""Settings of a rewrite run.

Defaults may be kept in git configuration::

    [histrewrite]
        threads = 4
        cache = commit,blob
        notes = true
"""

__all__ = [
    "CACHE_LEVELS",
    "CONFIG_SECTION",
    "CacheLevel",
    "RewriteConfig",
    "parse_cache_levels",
]

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dulwich.config import Config

CONFIG_SECTION = (b"histrewrite",)


class CacheLevel(enum.Enum):
    """Mappings that may be persisted across runs."""

    BLOB = "blob"
    TREE = "tree"
    COMMIT = "commit"


CACHE_LEVELS = [level.value for level in CacheLevel]


def parse_cache_levels(value: str) -> frozenset[CacheLevel]:
    """Parse a comma or space separated list of cache levels."""
    levels = set()
    for item in value.replace(",", " ").split():
        try:
            levels.add(CacheLevel(item.strip().lower()))
        except ValueError:
            raise ValueError(
                f"unknown cache level {item!r}; expected one of {', '.join(CACHE_LEVELS)}"
            ) from None
    return frozenset(levels)


@dataclass
class RewriteConfig:
    """Options controlling a :class:`~histrewrite.rewriter.RepositoryRewriter`.

    Attributes:
      nthreads: Worker threads for the root tree pre-pass; 1 disables it
      dry_run: Compute ids without writing objects or refs
      cache_levels: Mappings persisted in the cache file
      add_notes: Record the original commit id as a note on each new commit
      rewrite_extra_attributes: Carry over encoding and signatures
      path_sensitive: Key the entry cache on the directory of each entry
      cache_path: Cache file location; defaults to the target's control dir
    """

    nthreads: int = 1
    dry_run: bool = False
    cache_levels: frozenset[CacheLevel] = field(default_factory=frozenset)
    add_notes: bool = False
    rewrite_extra_attributes: bool = False
    path_sensitive: bool = False
    cache_path: str | None = None

    def __post_init__(self) -> None:
        if self.nthreads < 1:
            raise ValueError(f"thread count must be positive: {self.nthreads}")

    @classmethod
    def from_git_config(cls, config: "Config", **overrides) -> "RewriteConfig":
        """Read defaults from the ``[histrewrite]`` section of a git config.

        Args:
          config: A dulwich configuration, e.g. ``repo.get_config_stack()``
          overrides: Values that take precedence, e.g. from the command line
        """
        kwargs: dict = {}
        try:
            kwargs["nthreads"] = int(config.get(CONFIG_SECTION, b"threads"))
        except KeyError:
            pass
        try:
            kwargs["cache_levels"] = parse_cache_levels(
                config.get(CONFIG_SECTION, b"cache").decode("utf-8")
            )
        except KeyError:
            pass
        for name, attr in (
            (b"dryRun", "dry_run"),
            (b"notes", "add_notes"),
            (b"extraAttributes", "rewrite_extra_attributes"),
            (b"pathSensitive", "path_sensitive"),
        ):
            value = config.get_boolean(CONFIG_SECTION, name)
            if value is not None:
                kwargs[attr] = value
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)

    @property
    def is_parallel(self) -> bool:
        return self.nthreads > 1
