"""Descriptor rewriting.

Turns ``Migrate`` actions into ``(span, replacement)`` edits and applies
them to the original text. Nothing outside an edited span is re-serialised,
so comments, formatting and unrelated blocks come out byte-identical.
"""

import logging
from dataclasses import dataclass, field

from .classifier import Action, Conflict, Migrate, collect_issues
from .descriptor_models import (
    ConfigurationBlock, DependencyDeclaration, Descriptor, Location,
    MigrationIssue, PluginDeclaration, Span,
)
from .errors import ConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edit:
    """Replace ``span`` of the original text with ``replacement``."""
    span: Span
    replacement: str


@dataclass
class Change:
    """One rewritten declaration, as reported to the user.

    Attributes:
        kind: ``plugin``, ``dependency`` or ``block``.
        before: Declaration text in the input.
        after: Declaration text in the output (empty when removed).
        location: Where the declaration starts in the input.
    """
    kind: str
    before: str
    after: str
    location: Location


@dataclass
class RewriteResult:
    """Output of one rewrite: new text, the changes made, and info notes."""
    text: str
    changes: list[Change] = field(default_factory=list)
    edits: list[Edit] = field(default_factory=list)
    notes: list[MigrationIssue] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.edits)


# ── Text helpers ──────────────────────────────────────────────────────────────

def apply_edits(text: str, edits: list[Edit]) -> str:
    """Apply non-overlapping edits to ``text``.

    Raises:
        ValueError: If two edits overlap.
    """
    ordered = sorted(edits, key=lambda e: (e.span.start, e.span.end))
    pieces = []
    cursor = 0
    for edit in ordered:
        if edit.span.start < cursor:
            raise ValueError(f"overlapping edits at offset {edit.span.start}")
        pieces.append(text[cursor:edit.span.start])
        pieces.append(edit.replacement)
        cursor = edit.span.end
    pieces.append(text[cursor:])
    return "".join(pieces)


def _line_extent(text: str, span: Span) -> Span:
    """Widen ``span`` to whole lines if nothing else shares those lines.

    The widened span includes the trailing line break so that deleting it
    removes the line entirely.
    """
    start = text.rfind("\n", 0, span.start) + 1
    end = text.find("\n", span.end)
    end = len(text) if end == -1 else end + 1
    if text[start:span.start].strip() or text[span.end:end].strip():
        return span
    return Span(start, end)


def _indent_of(text: str, offset: int) -> str:
    line_start = text.rfind("\n", 0, offset) + 1
    prefix = text[line_start:offset]
    return prefix if not prefix.strip() else prefix[: len(prefix) - len(prefix.lstrip())]


def _local(text: str, span: Span, edits: list[Edit]) -> str:
    """Render ``span`` of ``text`` with the edits that fall inside it applied."""
    shifted = [Edit(Span(e.span.start - span.start, e.span.end - span.start), e.replacement)
               for e in edits if span.start <= e.span.start and e.span.end <= span.end]
    return apply_edits(span.text(text), shifted)


def _unwrap(text: str, block_span: Span, body_span: Span) -> Edit:
    """Replace a nested ``arguments { ... }`` block with its dedented body."""
    extent = _line_extent(text, block_span)
    body = body_span.text(text)
    if extent == block_span or "\n" not in body:
        content = body.strip()
        if extent != block_span:
            newline = "\r\n" if text[extent.start:extent.end].endswith("\r\n") else "\n"
            content = _indent_of(text, block_span.start) + content + newline if content else ""
        return Edit(extent, content)

    lines = body.splitlines(keepends=True)
    if lines and not lines[0].strip():
        lines = lines[1:]
    if lines and not lines[-1].strip():
        lines = lines[:-1]
    outer = _indent_of(text, block_span.start)
    indents = [len(line) - len(line.lstrip(" \t")) for line in lines if line.strip()]
    shift = max(0, min(indents) - len(outer)) if indents else 0
    out = []
    for line in lines:
        lead = len(line) - len(line.lstrip(" \t"))
        out.append(line[min(shift, lead):] if line.strip() else line.lstrip(" \t"))
    return Edit(extent, "".join(out))


# ── Per-declaration edits ─────────────────────────────────────────────────────

def _render_plugin(plugin: PluginDeclaration, target: str, version, dsl: str) -> str:
    """Render a plugin request for ``target`` in the style of ``plugin``."""
    if plugin.form == "apply":
        if dsl == "groovy":
            return f"apply plugin: {plugin.quote}{target}{plugin.quote}"
        return f'apply(plugin = "{target}")'
    if dsl == "groovy":
        rendered = f"id {plugin.quote}{target}{plugin.quote}"
        if version is not None:
            rendered += f" version {plugin.quote}{version}{plugin.quote}"
    else:
        rendered = f'id("{target}")'
        if version is not None:
            rendered += f' version "{version}"'
    if plugin.apply is not None:
        rendered += f" apply {str(plugin.apply).lower()}"
    return rendered


def _insert_after(text: str, span: Span, line: str) -> Edit:
    """Insert the statement ``line`` right after the statement at ``span``.

    It goes on a new line with the same indent, unless the rest of the line is
    not blank (``plugins { id("x") }``); then it is chained with ``;`` so that
    it stays inside the enclosing block.
    """
    indent = _indent_of(text, span.start)
    end = text.find("\n", span.end)
    rest = text[span.end:len(text) if end == -1 else end]
    if rest.strip():
        return Edit(Span(span.end, span.end), f"; {line}")
    if end == -1:
        return Edit(Span(len(text), len(text)), f"\n{indent}{line}")
    newline = "\r\n" if text[end - 1:end] == "\r" else "\n"
    return Edit(Span(end + 1, end + 1), f"{indent}{line}{newline}")


def _plugin_edits(text: str, plugin: PluginDeclaration, action: Migrate, dsl: str) -> list[Edit]:
    if action.remove:
        return [Edit(_line_extent(text, plugin.span), "")]
    if action.keep:
        return [_insert_after(text, plugin.span, _render_plugin(plugin, action.target, action.version, dsl))]
    if plugin.form in ("kotlin", "accessor"):
        edits = [Edit(plugin.id_span, f'id("{action.target}")')]
    else:
        edits = [Edit(plugin.id_span, action.target)]
    if action.version is not None and plugin.version_span is not None:
        edits.append(Edit(plugin.version_span, action.version))
    return edits


def _dependency_edits(dep: DependencyDeclaration, action: Migrate) -> list[Edit]:
    edits = [Edit(dep.keyword_span, action.target)]
    if action.coordinate is not None and dep.coordinate_span is not None:
        edits.append(Edit(dep.coordinate_span, action.coordinate))
    return edits


def _block_edits(text: str, block: ConfigurationBlock, action: Migrate) -> list[Edit]:
    """Flatten ``kapt { arguments { arg(..) } }`` into ``ksp { arg(..) }``."""
    name_span = Span(block.span.start, block.span.start + len(block.name))
    edits = [Edit(name_span, action.target)]
    for nested_span, nested_body in block.argument_blocks:
        edits.append(_unwrap(text, nested_span, nested_body))
    dropped = set(action.dropped)
    for name, span in block.options:
        if name in dropped:
            edits.append(Edit(_line_extent(text, span), ""))
    return edits


def _edits_for(text: str, action: Migrate, dsl: str) -> tuple[str, list[Edit]]:
    declaration = action.declaration
    if isinstance(declaration, PluginDeclaration):
        return "plugin", _plugin_edits(text, declaration, action, dsl)
    if isinstance(declaration, DependencyDeclaration):
        return "dependency", _dependency_edits(declaration, action)
    if isinstance(declaration, ConfigurationBlock):
        return "block", _block_edits(text, declaration, action)
    raise TypeError(f"cannot rewrite {type(declaration).__name__}")


def rewrite(descriptor: Descriptor, actions: list[Action]) -> RewriteResult:
    """Apply every ``Migrate`` action to the descriptor text.

    ``ManualReview`` and ``LeaveAsIs`` declarations are not touched.

    Args:
        descriptor: The parsed input.
        actions: Output of ``classify(descriptor, rules)``.

    Returns:
        A ``RewriteResult`` with the new text and one ``Change`` per
        rewritten declaration, in declaration order.

    Raises:
        ConflictError: If any action is a ``Conflict``; the descriptor must
            not be rewritten at all in that case.
    """
    conflicts = [a for a in actions if isinstance(a, Conflict)]
    if conflicts:
        raise ConflictError(collect_issues(conflicts), descriptor.path)

    text = descriptor.text
    result = RewriteResult(text=text)
    for action in actions:
        if not isinstance(action, Migrate):
            continue
        kind, edits = _edits_for(text, action, descriptor.dsl)
        declaration = action.declaration
        extent = declaration.span
        for edit in edits:
            extent = Span(min(extent.start, edit.span.start), max(extent.end, edit.span.end))
        result.edits.extend(edits)
        result.changes.append(Change(
            kind=kind,
            before=declaration.span.text(text),
            after=_local(text, extent, edits).strip(),
            location=descriptor.location(declaration.span.start),
        ))
        result.notes.extend(action.notes)

    result.text = apply_edits(text, result.edits)
    logger.debug("Rewrote %s: %d edit(s)", descriptor.path or "<text>", len(result.edits))
    return result
