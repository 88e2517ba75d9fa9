"""Exception types raised by the migration pipeline.

Every error except ``RuleTableError`` is scoped to a single input file: the
batch runner records it against that file and moves on to the next one.
"""

from typing import Optional

from .descriptor_models import Location, MigrationIssue


class MigrationError(Exception):
    """Base class for all migration errors."""

    def __init__(self, message: str, location: Optional[Location] = None):
        super().__init__(message)
        self.message = message
        self.location = location

    def __str__(self) -> str:
        if self.location is not None:
            return f"{self.location}: {self.message}"
        return self.message


class ParseError(MigrationError):
    """The descriptor's block structure could not be matched.

    Attributes:
        offset: 0-based character offset of the failure.
        byte_offset: The same position as a UTF-8 byte offset.
        token: Text found near the failure point.
    """

    def __init__(self, message: str, location: Location, byte_offset: int, token: str = ""):
        super().__init__(message, location)
        self.offset = location.offset
        self.byte_offset = byte_offset
        self.token = token

    def __str__(self) -> str:
        near = f" near {self.token!r}" if self.token else ""
        return f"{self.location}: {self.message} at byte offset {self.byte_offset}{near}"


class ConflictError(MigrationError):
    """Mutually exclusive kapt and KSP declarations were found; the file is not rewritten."""

    def __init__(self, issues: list[MigrationIssue], path: Optional[str] = None):
        count = len(issues)
        noun = "conflict" if count == 1 else "conflicts"
        super().__init__(f"{count} {noun} block rewriting {path or 'descriptor'}",
                         issues[0].location if issues else None)
        self.issues = issues


class RuleLookupError(MigrationError):
    """A kapt token has no corresponding KSP rule."""

    def __init__(self, kind: str, token: str, location: Optional[Location] = None):
        super().__init__(f"no {kind} rule for kapt token '{token}'", location)
        self.kind = kind
        self.token = token


class RuleTableError(MigrationError):
    """The rule table file is missing, unreadable, or malformed."""
