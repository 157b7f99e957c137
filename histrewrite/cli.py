# cli.py -- Command line interface for histrewrite
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

"""Command line interface for histrewrite.

Usage::

    histrewrite [options] <repo> <command> [command options] [<command> ...]

Blob commands (``filter``, ``convert-cmd``, ``convert-http``) may be chained;
each consumes the blobs produced by the previous one. The other commands
rewrite whole commits and must be given alone.
"""

__all__ = [
    "Command",
    "commands",
    "main",
]

import argparse
import json
import logging
import os
import shutil
import sys
import time
from collections.abc import Sequence
from typing import ClassVar

from dulwich.errors import NotGitRepository
from dulwich.repo import Repo

from . import __version__
from .access import ObjectStoreError
from .cache_store import CacheSchemaError
from .clusterer import Clusterer, RecipeError, load_recipe
from .config import CACHE_LEVELS, CacheLevel, RewriteConfig
from .graph import CommitGraphCycleError
from .log_utils import default_logging_config
from .plugins import (
    ConversionError,
    ConvertCommand,
    ConvertHttp,
    FilterBlob,
    Identity,
    NameFilter,
    NoteCommit,
    parse_size,
)
from .rewriter import RepositoryRewriter
from .translators import (
    BlobTranslator,
    CompositeTranslatorRewriter,
    SingleTranslatorRewriter,
)

logger = logging.getLogger(__name__)

FATAL_ERRORS = (
    ObjectStoreError,
    CacheSchemaError,
    CommitGraphCycleError,
    ConversionError,
    RecipeError,
    NotGitRepository,
    OSError,
)


class CommandError(Exception):
    """The command line cannot be turned into a rewriter."""


def _add_name_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--pattern",
        action="append",
        default=[],
        metavar="GLOB[;GLOB...]",
        help="File name patterns of the blobs to process",
    )
    parser.add_argument(
        "-i", "--ignore-case", action="store_true", help="Match patterns case-insensitively"
    )
    parser.add_argument(
        "-V", "--invert-match", action="store_true", help="Process non-matching blobs"
    )


def _name_filter(args: argparse.Namespace) -> NameFilter:
    patterns = [p for value in args.pattern for p in value.split(";") if p]
    return NameFilter(patterns, args.ignore_case, args.invert_match)


class Command:
    """A histrewrite command."""

    #: Whether the command is a blob translator that can be chained.
    chainable: ClassVar[bool] = False

    def parser(self) -> argparse.ArgumentParser:
        return argparse.ArgumentParser(prog=f"histrewrite {self.name}")

    @property
    def name(self) -> str:
        return type(self).__name__[len("cmd_") :].replace("_", "-")

    def parse(self, args: Sequence[str]) -> argparse.Namespace:
        return self.parser().parse_args(args)


class RewriterCommand(Command):
    """A command providing a whole rewriter."""

    def create(self, args: argparse.Namespace, config: RewriteConfig) -> RepositoryRewriter:
        raise NotImplementedError(self.create)


class TranslatorCommand(Command):
    """A command providing a blob translator."""

    chainable = True

    def create(self, args: argparse.Namespace) -> BlobTranslator:
        raise NotImplementedError(self.create)


class cmd_identity(RewriterCommand):
    """Copy history without changes."""

    def create(self, args: argparse.Namespace, config: RewriteConfig) -> RepositoryRewriter:
        return Identity(config)


class cmd_note_commit(RewriterCommand):
    """Prefix commit messages with the original commit id."""

    def parser(self) -> argparse.ArgumentParser:
        parser = super().parser()
        parser.add_argument(
            "--length", type=int, default=20, help="Length of the commit id prefix"
        )
        return parser

    def create(self, args: argparse.Namespace, config: RewriteConfig) -> RepositoryRewriter:
        return NoteCommit(args.length, config)


class cmd_cluster(RewriterCommand):
    """Merge and relink commits as described by a recipe."""

    def parser(self) -> argparse.ArgumentParser:
        parser = super().parser()
        parser.add_argument("--recipe", required=True, help="Recipe JSON file")
        parser.add_argument(
            "--dump-graph", metavar="FILE", help="Write the edited commit graph as JSON"
        )
        return parser

    def create(self, args: argparse.Namespace, config: RewriteConfig) -> RepositoryRewriter:
        return Clusterer(load_recipe(args.recipe), config, graph_path=args.dump_graph)


class cmd_filter(TranslatorCommand):
    """Drop blobs by name or size."""

    def parser(self) -> argparse.ArgumentParser:
        parser = super().parser()
        _add_name_filter_arguments(parser)
        parser.add_argument(
            "--size",
            type=parse_size,
            default=-1,
            metavar="NUM[B|K|M|G]",
            help="Drop blobs larger than this",
        )
        return parser

    def create(self, args: argparse.Namespace) -> BlobTranslator:
        return FilterBlob(_name_filter(args), args.size)


class cmd_convert_cmd(TranslatorCommand):
    """Convert blobs with a shell command."""

    def parser(self) -> argparse.ArgumentParser:
        parser = super().parser()
        parser.add_argument("--cmd", required=True, help="Command reading stdin")
        _add_name_filter_arguments(parser)
        return parser

    def create(self, args: argparse.Namespace) -> BlobTranslator:
        return ConvertCommand(args.cmd, _name_filter(args))


class cmd_convert_http(TranslatorCommand):
    """Convert blobs with an HTTP endpoint."""

    def parser(self) -> argparse.ArgumentParser:
        parser = super().parser()
        parser.add_argument("--endpoint", required=True, help="URL to POST blobs to")
        parser.add_argument("--timeout", type=float, help="Request timeout in seconds")
        _add_name_filter_arguments(parser)
        return parser

    def create(self, args: argparse.Namespace) -> BlobTranslator:
        return ConvertHttp(args.endpoint, _name_filter(args), timeout=args.timeout)


commands: dict[str, type[Command]] = {
    "cluster": cmd_cluster,
    "convert-cmd": cmd_convert_cmd,
    "convert-http": cmd_convert_http,
    "filter": cmd_filter,
    "identity": cmd_identity,
    "note-commit": cmd_note_commit,
}


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="histrewrite",
        description="Rewrite the history of a git repository",
        epilog=f"Commands: {', '.join(sorted(commands))}",
    )
    parser.add_argument("repo", help="Repository to rewrite")
    parser.add_argument(
        "-o", "--output", help="Write to this repository instead of overwriting"
    )
    parser.add_argument(
        "--bare", action="store_true", help="Treat the repositories as bare"
    )
    parser.add_argument(
        "--clean", action="store_true", help="Delete the output beforehand if it exists"
    )
    parser.add_argument(
        "--commit-mapping", metavar="FILE", help="Dump the commit mapping as JSON"
    )
    parser.add_argument(
        "--cache",
        action="append",
        choices=CACHE_LEVELS,
        help="Persist this mapping across runs (repeatable)",
    )
    parser.add_argument("-j", "--threads", type=int, help="Worker threads")
    parser.add_argument(
        "-n", "--dry-run", action="store_true", default=None, help="Do not write anything"
    )
    parser.add_argument(
        "--notes", action="store_true", default=None, help="Note original commit ids"
    )
    parser.add_argument(
        "--extra-attributes",
        action="store_true",
        default=None,
        help="Carry over encodings and signatures",
    )
    parser.add_argument(
        "--path-sensitive",
        action="store_true",
        default=None,
        help="Rewrite equal content at different paths separately",
    )
    parser.add_argument(
        "--log",
        choices=["debug", "info", "warning", "error"],
        help="Log level",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Same as --log=error")
    parser.add_argument("-v", "--verbose", action="store_true", help="Same as --log=debug")
    parser.add_argument(
        "--version", action="version", version="%(prog)s " + ".".join(map(str, __version__))
    )
    return parser


def _value_options(parser: argparse.ArgumentParser) -> frozenset[str]:
    """Option strings of ``parser`` that consume the following argument."""
    return frozenset(
        option
        for action in parser._actions
        if action.nargs != 0
        for option in action.option_strings
    )


def split_command_line(argv: Sequence[str]) -> tuple[list[str], list[list[str]]]:
    """Split arguments into global options and one chunk per command.

    A command name only starts a new chunk where it is not the value of the
    option before it, so ``--cmd filter`` stays within its chunk.
    """
    global_args: list[str] = []
    chunks: list[list[str]] = []
    current = global_args
    value_options = _value_options(make_parser())
    takes_value = False
    for arg in argv:
        if not takes_value and arg in commands:
            current = [arg]
            chunks.append(current)
            value_options = _value_options(commands[arg]().parser())
            continue
        current.append(arg)
        takes_value = not takes_value and arg in value_options
    return global_args, chunks


def build_rewriter(chunks: Sequence[Sequence[str]], config: RewriteConfig) -> RepositoryRewriter:
    """Create the rewriter for the commands on the command line."""
    instances = [(commands[chunk[0]](), chunk[1:]) for chunk in chunks]
    if len(instances) == 1 and isinstance(instances[0][0], RewriterCommand):
        cmd, args = instances[0]
        return cmd.create(cmd.parse(args), config)
    translators = []
    for cmd, args in instances:
        if not isinstance(cmd, TranslatorCommand):
            raise CommandError(f"{cmd.name} cannot be combined with other commands")
        translators.append(cmd.create(cmd.parse(args)))
    if len(translators) == 1:
        return SingleTranslatorRewriter(translators[0], config)
    return CompositeTranslatorRewriter(translators, config)


def _log_level(args: argparse.Namespace) -> int:
    if args.log:
        return getattr(logging, args.log.upper())
    if args.verbose:
        return logging.DEBUG
    if args.quiet:
        return logging.ERROR
    return logging.INFO


def open_source(args: argparse.Namespace) -> Repo:
    return Repo(args.repo, bare=True if args.bare else None)


def open_target(args: argparse.Namespace) -> Repo | None:
    """Open or create the output repository; None means overwriting."""
    if args.output is None:
        return None
    path = args.output
    if args.clean and os.path.exists(path):
        logger.info("Deleting %s", path)
        shutil.rmtree(path)
    if args.bare:
        if os.path.exists(os.path.join(path, "objects")):
            return Repo(path, bare=True)
        return Repo.init_bare(path, mkdir=not os.path.exists(path))
    if os.path.exists(os.path.join(path, ".git")):
        return Repo(path)
    return Repo.init(path, mkdir=not os.path.exists(path))


def export_commit_mapping(mapping: dict[bytes, bytes], filename: str) -> None:
    with open(filename, "w", encoding="utf-8") as f:
        json.dump(
            {k.decode("ascii"): v.decode("ascii") for k, v in sorted(mapping.items())},
            f,
            indent=2,
        )


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the histrewrite CLI.

    Args:
      argv: Command line arguments (defaults to sys.argv[1:])
    Returns: Exit code
    """
    if argv is None:
        argv = sys.argv[1:]
    global_argv, chunks = split_command_line(argv)
    parser = make_parser()
    args = parser.parse_args(global_argv)
    if not chunks:
        parser.print_usage(sys.stderr)
        sys.stderr.write(f"histrewrite: a command is required ({', '.join(sorted(commands))})\n")
        return 1

    default_logging_config(_log_level(args))

    source = target = None
    try:
        source = open_source(args)
        target = open_target(args)
        config = RewriteConfig.from_git_config(
            source.get_config_stack(),
            nthreads=args.threads,
            dry_run=args.dry_run,
            cache_levels=frozenset(CacheLevel(c) for c in args.cache) if args.cache else None,
            add_notes=args.notes,
            rewrite_extra_attributes=args.extra_attributes,
            path_sensitive=args.path_sensitive,
        )
        rewriter = build_rewriter(chunks, config)
        start = time.monotonic()
        logger.info("Starting rewriting...")
        with rewriter:
            rewriter.initialize(source, target)
            mapping = rewriter.rewrite()
        logger.info(
            "Finished rewriting. Runtime: %d ms", (time.monotonic() - start) * 1000
        )
        if args.commit_mapping:
            export_commit_mapping(mapping, args.commit_mapping)
    except (CommandError, ValueError) as e:
        logger.error("%s", e)
        return 1
    except FATAL_ERRORS as e:
        logger.error("%s", e)
        return 1
    finally:
        for repo in (target, source):
            if repo is not None:
                repo.close()
    return 0


def _main() -> None:
    sys.exit(main())


if __name__ == "__main__":
    _main()
