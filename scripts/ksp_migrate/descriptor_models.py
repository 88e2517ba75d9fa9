"""Build descriptor data model classes.

Pure data structures representing a parsed Gradle build file and the
issues raised while migrating it. Declarations keep the spans they were
parsed from so that rewrites can be applied against the original text.
"""

from dataclasses import dataclass, field
from typing import Optional

# Toolchain tags for declarations.
SOURCE = "source"   # kapt
TARGET = "target"   # KSP
OTHER = "other"

# Issue severities, least to most severe.
INFO = "info"
MANUAL_REVIEW = "manual-review"
CONFLICT = "conflict"


@dataclass(frozen=True)
class Span:
    """Half-open ``[start, end)`` character range into the descriptor text."""
    start: int
    end: int

    def text(self, source: str) -> str:
        return source[self.start:self.end]


@dataclass(frozen=True)
class Location:
    """A position inside an input file.

    Attributes:
        path: File path as given on the command line (``None`` for in-memory text).
        line: 1-based line number.
        column: 1-based column number.
        offset: 0-based character offset.
    """
    path: Optional[str]
    line: int
    column: int
    offset: int

    @classmethod
    def at(cls, text: str, offset: int, path: Optional[str] = None) -> "Location":
        """Translate a character offset into ``text`` into a line/column location."""
        line = text.count("\n", 0, offset) + 1
        line_start = text.rfind("\n", 0, offset) + 1
        return cls(path, line, offset - line_start + 1, offset)

    def __str__(self) -> str:
        prefix = f"{self.path}:" if self.path else ""
        return f"{prefix}{self.line}:{self.column}"


@dataclass
class PluginDeclaration:
    """A plugin applied in ``plugins { }`` or with a top-level ``apply`` statement.

    Attributes:
        identifier: Normalised plugin id. ``kotlin("kapt")`` is stored as
            ``org.jetbrains.kotlin.kapt``; catalog aliases keep their reference
            text (``libs.plugins.kotlin.kapt``).
        version: Version string from a trailing ``version "x"``, if present.
        apply: ``False`` for ``apply false``, ``True`` for ``apply true``,
            ``None`` when not stated.
        form: Declaration syntax, one of ``id``, ``kotlin``, ``alias``, ``accessor``
            (a backtick-quoted accessor) or ``apply``.
        span: Span of the whole statement.
        id_span: Span of the identifier text inside its string literal (or of the
            whole ``kotlin("x")`` call for the ``kotlin`` form).
        version_span: Span of the version string contents, if present.
        quote: Quote character of the identifier literal (``"`` or ``'``).
    """
    identifier: str
    span: Span
    id_span: Span
    form: str = "id"
    version: Optional[str] = None
    version_span: Optional[Span] = None
    apply: Optional[bool] = None
    quote: str = '"'
    toolchain: str = OTHER


@dataclass
class DependencyDeclaration:
    """An annotation-processing dependency inside a ``dependencies { }`` block.

    Attributes:
        keyword: Configuration name (``kapt``, ``kspAndroidTest``, ``annotationProcessor``).
        coordinate: Contents of the string literal (``g:a:v``), or the raw argument
            text for non-literal notations such as ``libs.room.compiler``.
        span: Span of the whole statement, including any trailing closure.
        keyword_span: Span of the configuration name token.
        coordinate_span: Span of the string literal contents, or ``None`` when the
            coordinate is not a plain literal.
        toolchain: ``source`` for kapt keywords, ``target`` for KSP keywords,
            ``other`` for Java ``annotationProcessor`` keywords.
    """
    keyword: str
    coordinate: str
    span: Span
    keyword_span: Span
    coordinate_span: Optional[Span] = None
    toolchain: str = OTHER

    @property
    def is_literal(self) -> bool:
        return self.coordinate_span is not None

    @property
    def library_key(self) -> str:
        """Identity of the processor, ignoring its version.

        ``"g:a:1.0"`` and ``"g:a:2.0"`` share the key ``g:a``. Non-literal
        notations are keyed by their text with whitespace removed.
        """
        if self.is_literal:
            parts = self.coordinate.split(":")
            if len(parts) >= 2:
                return f"{parts[0]}:{parts[1]}"
            return self.coordinate
        return "".join(self.coordinate.split())


@dataclass
class ConfigurationBlock:
    """A processor argument block.

    ``kapt { arguments { arg("k", "v") } }`` and ``ksp { arg("k", "v") }`` carry
    the same information in different syntax; ``arguments`` holds the ordered
    key/value pairs in both cases.

    Attributes:
        name: Block name (``kapt``, ``ksp`` or ``annotationProcessorOptions``).
        span: Span from the block name through its closing brace.
        body_span: Span between the braces.
        arguments: Ordered ``(key, value)`` pairs from ``arg`` statements.
        options: Ordered ``(name, span)`` pairs for other settings in the block,
            such as ``correctErrorTypes = true`` or ``javacOptions { }``. The span
            covers the full line(s) of the setting.
        argument_blocks: Spans of nested ``arguments { }`` blocks (kapt only),
            each ``(block_span, body_span)``.
    """
    name: str
    span: Span
    body_span: Span
    arguments: list[tuple[str, Optional[str]]] = field(default_factory=list)
    options: list[tuple[str, Span]] = field(default_factory=list)
    argument_blocks: list[tuple[Span, Span]] = field(default_factory=list)
    toolchain: str = OTHER


@dataclass
class UntrackedReference:
    """A kapt configuration name used outside every tracked declaration.

    Covers ``kapt(...)`` calls the parser cannot attribute to a
    ``dependencies { }`` statement (an ``else`` branch, a ``forEach`` lambda)
    and property access such as ``kapt.correctErrorTypes = true``. These are
    never rewritten; while any remain the kapt plugin stays applied.
    """
    name: str
    span: Span
    toolchain: str = SOURCE


@dataclass
class Descriptor:
    """Central parse result for one build file.

    Only the three tracked declaration kinds are modelled, plus the kapt
    names found outside them (``references``). Every other byte of ``text``
    is residue that the rewriter reproduces verbatim.
    """
    text: str
    path: Optional[str] = None
    dsl: str = "kotlin"
    plugins: list[PluginDeclaration] = field(default_factory=list)
    dependencies: list[DependencyDeclaration] = field(default_factory=list)
    blocks: list[ConfigurationBlock] = field(default_factory=list)
    references: list[UntrackedReference] = field(default_factory=list)

    def location(self, offset: int) -> Location:
        return Location.at(self.text, offset, self.path)


@dataclass
class MigrationIssue:
    """A finding reported to the user.

    Attributes:
        severity: ``info``, ``manual-review`` or ``conflict``.
        code: Short stable identifier (``unknown-keyword``, ``processor-conflict``).
        message: Human-readable description with the required action.
        location: Primary location of the finding.
        related: Further locations involved (the other side of a conflict).
    """
    severity: str
    code: str
    message: str
    location: Optional[Location] = None
    related: list[Location] = field(default_factory=list)
