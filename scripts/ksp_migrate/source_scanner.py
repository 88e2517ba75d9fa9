"""Kotlin source checks for Room DAOs.

KSP reads Kotlin declarations directly instead of Java stubs, so Room
becomes stricter about nullability and accessor shape. This module scans a
module's Kotlin sources for the DAO patterns that compile under kapt but
fail (or behave differently) under KSP. It only reports; source files are
never modified.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from .descriptor_models import MANUAL_REVIEW, Location, MigrationIssue

logger = logging.getLogger(__name__)

# Directories never scanned.
SKIP_DIRS = {"build", ".gradle", ".git", ".idea", "node_modules"}

# Return types that are never "a single entity row".
SCALAR_TYPES = {
    "Int", "Long", "Short", "Byte", "Boolean", "Float", "Double", "String",
    "Unit", "Cursor", "Any", "Number",
}

COLLECTION_TYPES = r"(?:List|MutableList|Set|MutableSet|Collection|Array|Map|MutableMap)"
STREAM_TYPES = r"(?:Flow|StateFlow|LiveData|Observable|Flowable|PagingSource)"

_STRING = r'(?P<query>"""[\s\S]*?"""|"(?:[^"\\\n]|\\.)*")'

_QUERY_FUN_RE = re.compile(
    r'@Query\s*\(\s*' + _STRING + r'\s*\)'
    r'(?:\s*@[\w.:]+(?:\([^)]*\))?)*\s*'
    r'(?:(?:public|internal|protected|abstract|open|override|suspend)\s+)*'
    r'fun\s+(?:<[^>]*>\s*)?(?P<name>\w+)\s*\((?P<params>[^)]*)\)'
    r'(?:\s*:\s*(?P<ret>[^\n{=]+))?'
)
_QUERY_PROPERTY_RE = re.compile(
    r'@get:Query\s*\(\s*' + _STRING + r'\s*\)\s*'
    r'(?:(?:public|internal|abstract|open|override)\s+)*'
    r'va[lr]\s+(?P<name>\w+)\s*:\s*(?P<ret>[^\n=]+)'
)
_NULLABLE_COLLECTION_RE = re.compile(COLLECTION_TYPES + r"<.*>\s*\?")
_NULLABLE_STREAM_COLLECTION_RE = re.compile(STREAM_TYPES + r"<\s*" + COLLECTION_TYPES + r"<.*>\s*\?\s*>")
_SINGLE_ENTITY_RE = re.compile(r"[A-Z]\w*")


def _clean_type(ret: str) -> str:
    return ret.split("//")[0].strip()


def _selects_optional_row(query: str) -> bool:
    sql = query.strip('"').strip().upper()
    return sql.startswith("SELECT") and " WHERE " in f" {' '.join(sql.split())} " and "COUNT(" not in sql


def scan_kotlin_source(text: str, path: Optional[str] = None) -> list[MigrationIssue]:
    """Check one Kotlin file for DAO declarations KSP rejects.

    Only files containing a ``@Dao`` annotation are inspected.

    Args:
        text: Kotlin source text.
        path: File path recorded in issue locations.

    Returns:
        ``manual-review`` issues in file order.
    """
    if "@Dao" not in text:
        return []
    issues = []

    for m in _QUERY_PROPERTY_RE.finditer(text):
        name = m.group("name")
        issues.append(MigrationIssue(
            severity=MANUAL_REVIEW,
            code="query-property",
            message=(
                f"DAO query '{name}' is an abstract property; KSP needs a function: "
                f"replace '@get:Query val {name}' with "
                f"'@Query fun get{name[0].upper()}{name[1:]}(): {_clean_type(m.group('ret'))}'"
            ),
            location=Location.at(text, m.start(), path),
        ))

    for m in _QUERY_FUN_RE.finditer(text):
        ret = m.group("ret")
        if not ret:
            continue
        ret = _clean_type(ret)
        name = m.group("name")
        location = Location.at(text, m.start("name"), path)
        if _NULLABLE_STREAM_COLLECTION_RE.fullmatch(ret):
            fixed = re.sub(r"\s*\?(\s*>)$", r"\1", ret)
            issues.append(MigrationIssue(
                MANUAL_REVIEW, "nullable-flow-collection",
                f"'{name}' emits a nullable collection ({ret}); Room emits an empty "
                f"collection instead, declare {fixed}",
                location,
            ))
        elif _NULLABLE_COLLECTION_RE.fullmatch(ret):
            issues.append(MigrationIssue(
                MANUAL_REVIEW, "nullable-collection",
                f"'{name}' returns a nullable collection ({ret}); Room returns an empty "
                f"collection instead, declare {ret.rstrip('?').rstrip()}",
                location,
            ))
        elif (_SINGLE_ENTITY_RE.fullmatch(ret) and ret not in SCALAR_TYPES
              and _selects_optional_row(m.group("query"))):
            issues.append(MigrationIssue(
                MANUAL_REVIEW, "non-null-single-row",
                f"'{name}' returns non-null {ret} for a query that may match no row; "
                f"declare {ret}?",
                location,
            ))

    issues.sort(key=lambda i: i.location.offset)
    return issues


def _kotlin_files(root: Path):
    for path in sorted(root.rglob("*.kt")):
        if SKIP_DIRS.intersection(path.relative_to(root).parts):
            continue
        yield path


def scan_sources(module_dir: Path) -> list[MigrationIssue]:
    """Scan the ``src`` tree of a Gradle module for DAO patterns KSP rejects.

    Args:
        module_dir: Directory containing the module's build file.

    Returns:
        ``manual-review`` issues across all Kotlin files, ordered by path
        and position. Empty when the module has no ``src`` directory.
    """
    src = Path(module_dir) / "src"
    if not src.is_dir():
        return []
    issues = []
    for path in _kotlin_files(src):
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Skipping unreadable source %s: %s", path, exc)
            continue
        found = scan_kotlin_source(text, str(path))
        if found:
            logger.info("%s: %d DAO issue(s)", path, len(found))
        issues.extend(found)
    return issues
