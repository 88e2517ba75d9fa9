"""Per-file migration pipeline and batch orchestration.

Each build file goes through parse -> classify -> rewrite -> report on its
own. Files share nothing but the read-only rule table, so a batch can run
on a thread pool; errors stay attached to the file that raised them.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .classifier import Action, classify, collect_issues, migrations
from .descriptor_models import OTHER, SOURCE, TARGET, Descriptor, MigrationIssue
from .descriptor_parser import DESCRIPTOR_NAMES, parse_descriptor, parse_file
from .errors import ConflictError, MigrationError, ParseError
from .report import FileReport, report_file
from .rewriter import RewriteResult, rewrite
from .rule_table import RuleTable
from .source_scanner import SKIP_DIRS, scan_sources

logger = logging.getLogger(__name__)


@dataclass
class FileResult:
    """Everything one pipeline run produced for one build file.

    Attributes:
        path: The build file.
        root: Directory the file was discovered under; ``--output`` mirrors
            paths relative to it.
        descriptor: Parsed input, ``None`` if reading or parsing failed.
        actions: Classifier output.
        rewrite: Rewriter output, ``None`` when blocked by a conflict.
        rewritten: Re-parsed rewrite output, ``None`` when nothing changed.
        issues: All issues for this file, source-scan findings included.
        error: The file-level error that stopped the pipeline, if any.
        report: The file's report section.
    """
    path: Path
    root: Path
    descriptor: Optional[Descriptor] = None
    actions: list[Action] = field(default_factory=list)
    rewrite: Optional[RewriteResult] = None
    rewritten: Optional[Descriptor] = None
    issues: list[MigrationIssue] = field(default_factory=list)
    error: Optional[MigrationError] = None
    report: Optional[FileReport] = None

    @property
    def output_text(self) -> Optional[str]:
        """New file content, or ``None`` if the file must not be written."""
        if self.rewrite is None or not self.rewrite.changed:
            return None
        return self.rewrite.text


def _plugin_toolchain(rules: RuleTable):
    def toolchain(identifier: str) -> str:
        if rules.is_target_plugin(identifier):
            return TARGET
        if rules.is_source_plugin(identifier):
            return SOURCE
        return OTHER
    return toolchain


def needs_source_review(descriptor: Descriptor, rules: RuleTable) -> bool:
    """Check whether the descriptor declares a processor whose sources need checking.

    Catalog references match when they spell the trigger's artifact with
    dots (``libs.androidx.room.compiler`` for ``androidx.room:room-compiler``).
    """
    for dep in descriptor.dependencies:
        if dep.toolchain == OTHER:
            continue
        if rules.triggers_source_review(dep.library_key):
            return True
        if not dep.is_literal:
            for trigger in rules.source_review_triggers:
                artifact = trigger.split(":")[-1].replace("-", ".")
                if artifact in dep.coordinate:
                    return True
    return False


def process_file(path: Path, rules: RuleTable, root: Optional[Path] = None,
                 source_scan: bool = True) -> FileResult:
    """Run the full pipeline for one build file.

    Never raises for file-level problems: parse and read errors are stored
    on the result so that the rest of a batch keeps going.

    Args:
        path: Build file to process.
        rules: Rule table shared by the whole run.
        root: Directory the file was discovered under (defaults to its parent).
        source_scan: Scan the module's Kotlin sources when the descriptor uses
            a processor listed under ``source_review``.

    Returns:
        The populated ``FileResult``.
    """
    path = Path(path)
    result = FileResult(path=path, root=root or path.parent)
    display = str(path)
    toolchain = _plugin_toolchain(rules)

    try:
        descriptor = parse_file(path, plugin_toolchain=toolchain)
    except ParseError as exc:
        logger.warning("%s", exc)
        result.error = exc
    except OSError as exc:
        result.error = MigrationError(f"cannot read {display}: {exc.strerror or exc}")
        logger.warning("%s", result.error)
    if result.error is not None:
        result.report = report_file(display, None, None, [], [], error=result.error)
        return result

    result.descriptor = descriptor
    result.actions = classify(descriptor, rules)
    result.issues = collect_issues(result.actions)
    logger.info("%s: %d tracked declaration(s), %d to migrate",
                display, len(result.actions), len(migrations(result.actions)))

    try:
        result.rewrite = rewrite(descriptor, result.actions)
    except ConflictError as exc:
        logger.info("%s", exc)
    else:
        if result.rewrite.changed:
            result.rewritten = parse_descriptor(result.rewrite.text, display, plugin_toolchain=toolchain)
            leftover = migrations(classify(result.rewritten, rules))
            if leftover:
                logger.warning("%s: rewrite left %d migratable declaration(s)", display, len(leftover))

    if source_scan and needs_source_review(descriptor, rules):
        result.issues.extend(scan_sources(path.parent))

    changes = result.rewrite.changes if result.rewrite is not None else []
    result.report = report_file(display, descriptor, result.rewritten, changes, result.issues)
    return result


def discover(paths: list[Path]) -> list[tuple[Path, Path]]:
    """Expand input paths into ``(build_file, root)`` pairs.

    Directories are searched recursively for ``build.gradle.kts`` and
    ``build.gradle``, skipping build output and VCS directories. Files are
    taken as given, whatever their name. Order is input order, then path
    order within each directory.
    """
    found = []
    seen = set()
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            matches = [
                p for p in sorted(path.rglob("*"))
                if p.name in DESCRIPTOR_NAMES and p.is_file()
                and not SKIP_DIRS.intersection(p.relative_to(path).parts[:-1])
            ]
            if not matches:
                logger.warning("No build files found under %s", path)
            for match in matches:
                if match.resolve() not in seen:
                    seen.add(match.resolve())
                    found.append((match, path))
        else:
            # Missing files are kept so they are reported as read errors.
            if path.resolve() not in seen:
                seen.add(path.resolve())
                found.append((path, path.parent))
    return found


def run_batch(paths: list[Path], rules: RuleTable, jobs: int = 1, source_scan: bool = True) -> list[FileResult]:
    """Process every build file under ``paths``.

    Args:
        paths: Files and/or directories.
        rules: Rule table shared by all files.
        jobs: Number of worker threads; 1 processes files sequentially.
        source_scan: Passed to ``process_file``.

    Returns:
        One ``FileResult`` per discovered file, in discovery order.
    """
    targets = discover(paths)
    logger.info("Processing %d build file(s) with %d job(s)", len(targets), max(1, jobs))

    def work(target):
        build_file, root = target
        return process_file(build_file, rules, root=root, source_scan=source_scan)

    if jobs > 1 and len(targets) > 1:
        with ThreadPoolExecutor(max_workers=jobs) as pool:
            return list(pool.map(work, targets))
    return [work(t) for t in targets]
