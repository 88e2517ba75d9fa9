"""Migration report generation.

Turns per-file pipeline results into an ordered, deterministic report and
renders it as plain text or JSON. The report also decides the process exit
status.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Optional

from .descriptor_models import CONFLICT, INFO, MANUAL_REVIEW, Descriptor, MigrationIssue
from .errors import ParseError
from .rewriter import Change

# Entry kinds, in display order for entries on the same line.
ERROR = "error"
MIGRATE = "migrate"
KIND_ORDER = {ERROR: 0, CONFLICT: 1, MIGRATE: 2, MANUAL_REVIEW: 3, INFO: 4}

# File statuses.
STATUS_MIGRATED = "migrated"
STATUS_UNCHANGED = "unchanged"
STATUS_CONFLICT = "conflict"
STATUS_PARSE_ERROR = "parse-error"

EXIT_OK = 0
EXIT_CONFLICT = 1
EXIT_PARSE_ERROR = 2


@dataclass
class ReportEntry:
    """One line item of a file report.

    Attributes:
        kind: ``migrate``, ``manual-review``, ``conflict``, ``info`` or ``error``.
        message: What happened or what has to be done.
        line: 1-based line in ``path`` (``None`` if unknown).
        column: 1-based column, when known.
        path: File the entry points at. Source-scan entries point at Kotlin
            files rather than the build file.
        code: Stable short identifier of the rule or check.
        before: Declaration text before the rewrite (``migrate`` only).
        after: Declaration text after the rewrite (``migrate`` only).
        related: Further ``path:line:column`` locations (the other side of a conflict).
    """
    kind: str
    message: str
    line: Optional[int] = None
    column: Optional[int] = None
    path: Optional[str] = None
    code: str = ""
    before: Optional[str] = None
    after: Optional[str] = None
    related: list[str] = field(default_factory=list)


@dataclass
class FileReport:
    path: str
    status: str
    entries: list[ReportEntry] = field(default_factory=list)

    def count(self, kind: str) -> int:
        return sum(1 for e in self.entries if e.kind == kind)


@dataclass
class Report:
    """Report for a whole run, one ``FileReport`` per input in input order."""
    files: list[FileReport] = field(default_factory=list)

    def count(self, kind: str) -> int:
        return sum(f.count(kind) for f in self.files)

    def files_with(self, status: str) -> int:
        return sum(1 for f in self.files if f.status == status)

    @property
    def exit_status(self) -> int:
        """2 if any input failed to parse, else 1 if any conflict, else 0.

        ``manual-review`` entries never affect the exit status.
        """
        if self.files_with(STATUS_PARSE_ERROR):
            return EXIT_PARSE_ERROR
        if self.files_with(STATUS_CONFLICT):
            return EXIT_CONFLICT
        return EXIT_OK

    def summary(self) -> dict[str, int]:
        return {
            "files": len(self.files),
            "migrated": self.files_with(STATUS_MIGRATED),
            "unchanged": self.files_with(STATUS_UNCHANGED),
            "blocked_by_conflicts": self.files_with(STATUS_CONFLICT),
            "parse_errors": self.files_with(STATUS_PARSE_ERROR),
            "migrations": self.count(MIGRATE),
            "manual_reviews": self.count(MANUAL_REVIEW),
            "conflicts": self.count(CONFLICT),
            "exit_status": self.exit_status,
        }


def _issue_entry(issue) -> ReportEntry:
    loc = issue.location
    return ReportEntry(
        kind=issue.severity,
        message=issue.message,
        line=loc.line if loc else None,
        column=loc.column if loc else None,
        path=loc.path if loc else None,
        code=issue.code,
        related=[str(r) for r in issue.related],
    )


def report_file(
    path: str,
    original: Optional[Descriptor],
    rewritten: Optional[Descriptor],
    changes: list[Change],
    issues: list[MigrationIssue],
    error: Optional[Exception] = None,
) -> FileReport:
    """Build the report for one input file.

    Args:
        path: Input path as given by the user.
        original: Parsed input, or ``None`` if parsing failed.
        rewritten: Parsed rewrite output, or ``None`` when nothing was rewritten.
        changes: ``Change`` records from the rewriter.
        issues: All ``MigrationIssue`` objects raised for this file, including
            source-scan findings.
        error: The ``ParseError`` (or read failure) that stopped this file, if any.

    Returns:
        A ``FileReport`` whose entries are ordered by path, line, then kind.
    """
    if error is not None:
        loc = getattr(error, "location", None)
        return FileReport(path=path, status=STATUS_PARSE_ERROR, entries=[ReportEntry(
            kind=ERROR,
            message=str(error),
            line=loc.line if loc else None,
            column=loc.column if loc else None,
            path=path,
            code="parse-error" if isinstance(error, ParseError) else "read-error",
        )])

    entries = [
        ReportEntry(
            kind=MIGRATE,
            message=f"{change.kind} migrated to KSP" if change.after else f"{change.kind} removed",
            line=change.location.line,
            column=change.location.column,
            path=path,
            code=change.kind,
            before=change.before,
            after=change.after,
        )
        for change in changes
    ]
    entries.extend(_issue_entry(issue) for issue in issues)
    for entry in entries:
        entry.path = entry.path or path
    entries.sort(key=lambda e: (e.path != path, e.path, e.line or 0, KIND_ORDER.get(e.kind, 9)))

    if any(e.kind == CONFLICT for e in entries):
        status = STATUS_CONFLICT
    elif rewritten is not None and original is not None and rewritten.text != original.text:
        status = STATUS_MIGRATED
    else:
        status = STATUS_UNCHANGED
    return FileReport(path=path, status=status, entries=entries)


def build_report(file_reports: list[FileReport]) -> Report:
    return Report(files=list(file_reports))


# ── Rendering ─────────────────────────────────────────────────────────────────

def _render_entry(entry: ReportEntry, file_path: str) -> list[str]:
    where = f"{entry.line}" if entry.line is not None else "-"
    if entry.path and entry.path != file_path:
        where = f"{entry.path}:{where}"
    head = f"  {where:>5}  {entry.kind:<13}"
    if entry.kind == MIGRATE:
        before = entry.before or ""
        after = entry.after or "(removed)"
        if "\n" not in before and "\n" not in after:
            return [f"{head}{before}  ->  {after}"]
        lines = [f"{head}{entry.code}"]
        lines.extend(f"{'':>22}- {line}" for line in before.splitlines())
        lines.extend(f"{'':>22}+ {line}" for line in after.splitlines())
        return lines
    code = f"[{entry.code}] " if entry.code else ""
    line = f"{head}{code}{entry.message}"
    if entry.related:
        line += f" (also at {', '.join(entry.related)})"
    return [line]


def render_text(report: Report) -> str:
    """Render a human-readable report."""
    lines = []
    for file_report in report.files:
        lines.append(f"{file_report.path}: {file_report.status}")
        for entry in file_report.entries:
            lines.extend(_render_entry(entry, file_report.path))
        lines.append("")
    s = report.summary()
    lines.append(
        f"{s['files']} file(s): {s['migrated']} migrated, {s['unchanged']} unchanged, "
        f"{s['blocked_by_conflicts']} blocked by conflicts, {s['parse_errors']} parse error(s)"
    )
    lines.append(
        f"{s['migrations']} migration(s), {s['manual_reviews']} manual review(s), "
        f"{s['conflicts']} conflict(s)"
    )
    lines.append("")
    return "\n".join(lines)


def render_json(report: Report) -> str:
    """Render the report as a JSON document for downstream tooling."""
    document = {
        "summary": report.summary(),
        "files": [asdict(f) for f in report.files],
    }
    return json.dumps(document, indent=2)
