# log_utils.py -- Logging utilities for histrewrite
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


"""Logging setup for histrewrite.

histrewrite is mostly used as a library, so the package logger carries a
null handler until a front end calls :func:`default_logging_config`.

Rewriting a large history logs a line per rewritten object at DEBUG level.
Those lines can be captured without raising the console level by setting
HISTREWRITE_TRACE:

- "1" or "true": trace to stderr
- an absolute path: append to that file, or to ``trace.<pid>`` inside it
  when the path is a directory
"""

__all__ = [
    "TRACE_ENVIRONMENT_VARIABLE",
    "default_logging_config",
    "remove_null_handler",
    "trace_handler",
]

import logging
import os
import sys

TRACE_ENVIRONMENT_VARIABLE = "HISTREWRITE_TRACE"

DEFAULT_FORMAT = "%(asctime)s %(levelname)s: %(message)s"
TRACE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"

logger = logging.getLogger(__name__)

_NULL_HANDLER = logging.NullHandler()
_HISTREWRITE_LOGGER = logging.getLogger("histrewrite")
_HISTREWRITE_LOGGER.addHandler(_NULL_HANDLER)


def trace_handler(value: str | None = None) -> logging.Handler | None:
    """Create the handler a HISTREWRITE_TRACE setting asks for.

    Args:
      value: Setting to interpret; read from the environment when None
    Returns: A handler accepting DEBUG records, or None when tracing is off
    Raises:
      OSError: if the trace file cannot be opened
    """
    if value is None:
        value = os.environ.get(TRACE_ENVIRONMENT_VARIABLE, "")
    handler: logging.Handler
    if value.lower() in ("1", "true"):
        handler = logging.StreamHandler(sys.stderr)
    elif os.path.isabs(value):
        if os.path.isdir(value):
            value = os.path.join(value, f"trace.{os.getpid()}")
        handler = logging.FileHandler(value, mode="a", encoding="utf-8")
    else:
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(TRACE_FORMAT))
    return handler


def default_logging_config(level: int = logging.INFO) -> None:
    """Send histrewrite records at ``level`` and above to stderr.

    When HISTREWRITE_TRACE is set, DEBUG records additionally go to the
    trace handler; the console keeps ``level``.

    Args:
      level: Level of the records shown on stderr
    """
    remove_null_handler()
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    logging.basicConfig(level=level, handlers=[console])
    _HISTREWRITE_LOGGER.setLevel(level)

    try:
        trace = trace_handler()
    except OSError as e:
        logger.warning("Not tracing to %s: %s", e.filename, e.strerror)
        trace = None
    if trace is not None:
        _HISTREWRITE_LOGGER.addHandler(trace)
        _HISTREWRITE_LOGGER.setLevel(logging.DEBUG)
    if _HISTREWRITE_LOGGER.level <= logging.DEBUG:
        # dulwich is chatty at DEBUG and rarely relevant to a rewrite
        logging.getLogger("dulwich").setLevel(logging.INFO)


def remove_null_handler() -> None:
    """Remove the null handler from the histrewrite logger.

    Callers configuring logging without :func:`default_logging_config`
    can call this first to skip the null handler.
    """
    _HISTREWRITE_LOGGER.removeHandler(_NULL_HANDLER)
