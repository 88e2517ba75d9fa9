"""CLI entry point, output writing, and logging setup.

Wires the per-file pipeline to the command line: ``analyze`` reports what
would change, ``migrate`` also writes (or diffs) the rewritten build files.
"""

import argparse
import difflib
import logging
import sys
from pathlib import Path
from typing import Optional

from .errors import RuleTableError
from .pipeline import FileResult, run_batch
from .report import EXIT_PARSE_ERROR, build_report, render_json, render_text
from .rule_table import load_rules

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)-5s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _configure_logging(verbosity: int):
    """Send package log records to stderr.

    ``-v`` enables INFO, ``-vv`` DEBUG; the default is WARNING.
    """
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    package_logger = logging.getLogger(__package__)
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        if getattr(handler, "_ksp_migrate", False):
            package_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    handler._ksp_migrate = True
    package_logger.addHandler(handler)


def output_path(result: FileResult, output_dir: Optional[Path]) -> Path:
    """Where the rewritten file goes.

    Without ``output_dir`` the input is overwritten in place. Otherwise the
    file's path relative to the directory it was found under is mirrored
    into ``output_dir``.
    """
    if output_dir is None:
        return result.path
    try:
        relative = result.path.relative_to(result.root)
    except ValueError:
        relative = Path(result.path.name)
    return output_dir / relative


def unified_diff(result: FileResult) -> str:
    """Unified diff between the input and the rewritten text ('' if unchanged)."""
    if result.output_text is None:
        return ""
    display = str(result.path)
    return "".join(difflib.unified_diff(
        result.descriptor.text.splitlines(keepends=True),
        result.output_text.splitlines(keepends=True),
        fromfile=f"a/{display}",
        tofile=f"b/{display}",
    ))


def _write(path: Path, content: str):
    """Write content without newline translation, creating parent directories.

    Args:
        path: Filesystem path to write to.
        content: File content; its line endings are written as-is.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(content)


def write_outputs(results: list[FileResult], output_dir: Optional[Path] = None, dry_run: bool = False,
                  stream=None) -> list[Path]:
    """Write (or, with ``dry_run``, diff) every rewritten build file.

    Files that are unchanged, blocked by conflicts, or failed to parse are
    never written.

    Args:
        results: Pipeline results in report order.
        output_dir: Mirror outputs under this directory instead of
            overwriting the inputs.
        dry_run: Print unified diffs instead of writing.
        stream: Where progress lines and diffs go (default stdout).

    Returns:
        Paths written, or that would have been written on a dry run.
    """
    stream = stream or sys.stdout
    written = []
    for result in results:
        if result.output_text is None:
            continue
        target = output_path(result, output_dir)
        if dry_run:
            print(unified_diff(result), end="", file=stream)
        else:
            _write(target, result.output_text)
            print(f"  ✓ {target}", file=stream)
            logger.info("Wrote %s", target)
        written.append(target)
    return written


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ksp-migrate",
        description="Migrate Gradle build files from kapt to KSP annotation processing",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("paths", nargs="+", type=Path,
                        help="Build files or directories to search for build.gradle(.kts)")
    common.add_argument("--rules", "-r", type=Path, default=None,
                        help="Rule table YAML (default: the built-in kapt-to-ksp table)")
    common.add_argument("--format", "-f", choices=["text", "json"], default="text",
                        help="Report format (default: text)")
    common.add_argument("--jobs", "-j", type=int, default=1,
                        help="Number of files processed in parallel (default: 1)")
    common.add_argument("--no-source-scan", dest="source_scan", action="store_false",
                        help="Do not scan Kotlin sources of Room modules")
    common.add_argument("--verbose", "-v", action="count", default=0,
                        help="Log progress to stderr (-vv for debug output)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("analyze", parents=[common],
                          help="Report what would change without writing anything")
    migrate = subparsers.add_parser("migrate", parents=[common],
                                    help="Rewrite build files and report the result")
    migrate.add_argument("--output", "-o", type=Path, default=None,
                         help="Output directory (default: rewrite files in place)")
    migrate.add_argument("--dry-run", "-n", action="store_true",
                         help="Print unified diffs without writing files")
    return parser


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    """CLI entry point.

    Returns:
        Process exit status: 0 when every file migrated or was already
        clean, 1 when any file is blocked by a conflict, 2 on a parse or
        read failure or an unusable rule table.
    """
    args = parse_args(argv)
    _configure_logging(args.verbose)

    try:
        rules = load_rules(args.rules)
    except RuleTableError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_PARSE_ERROR

    results = run_batch(args.paths, rules, jobs=max(1, args.jobs), source_scan=args.source_scan)
    report = build_report([r.report for r in results])

    # JSON goes to stdout on its own; progress lines and diffs move to stderr.
    progress = sys.stderr if args.format == "json" else sys.stdout
    if args.command == "migrate":
        write_outputs(results, args.output, args.dry_run, stream=progress)
        if not args.dry_run and any(r.output_text is not None for r in results):
            print(file=progress)

    if args.format == "json":
        print(render_json(report))
    else:
        print(render_text(report), end="")
    return report.exit_status
