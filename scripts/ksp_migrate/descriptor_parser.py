"""Gradle build descriptor parsing.

Handles all interaction with ``build.gradle.kts`` and ``build.gradle`` text:
lexing away strings and comments, matching brace/parenthesis structure,
and extracting the plugin, dependency, and argument-block declarations the
migration cares about.

Parsing works on a *masked* copy of the text that has the same length as
the original: comment characters become spaces and string-literal contents
become ``\\x01``. Brace matching and the statement regexes run on the mask,
so braces or quotes inside strings and comments never confuse them, while
every offset still points into the original text.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .descriptor_models import (
    OTHER, SOURCE, TARGET,
    ConfigurationBlock, DependencyDeclaration, Descriptor, Location,
    PluginDeclaration, Span, UntrackedReference,
)
from .errors import ParseError
from .rule_table import (
    SOURCE_KEYWORD_PREFIX, TARGET_KEYWORD_PREFIX,
    is_java_processor_keyword, is_source_keyword, is_target_keyword,
)

# Filler for string-literal contents in the masked text. Not matched by \w or \s.
MASK = "\x01"

OPENERS = {"{": "}", "(": ")", "[": "]"}
CLOSERS = {v: k for k, v in OPENERS.items()}

# Blocks tracked as ConfigurationBlock unless the caller narrows the set.
DEFAULT_BLOCK_NAMES = (SOURCE_KEYWORD_PREFIX, TARGET_KEYWORD_PREFIX, "annotationProcessorOptions")

# File names recognised as build descriptors.
DESCRIPTOR_NAMES = ("build.gradle.kts", "build.gradle")

_PLUGIN_RE = re.compile(r"""
    (?:
        id\s*\(\s*(?P<id_q>["'])(?P<id>[^"'\n]*)(?P=id_q)\s*\)          # id("x")
      | id\s+(?P<gid_q>["'])(?P<gid>[^"'\n]*)(?P=gid_q)                  # id 'x'
      | kotlin\s*\(\s*"(?P<kt>[^"\n]*)"\s*\)                              # kotlin("x")
      | alias\s*\(\s*(?P<alias>[\w.]+)\s*\)                              # alias(libs.plugins.x)
      | `(?P<acc>[\w.\-]+)`                                               # `kotlin-kapt`
    )
    (?:\s+version\s*(?:
        \(?\s*(?P<v_q>["'])(?P<version>[^"'\n]*)(?P=v_q)\s*\)?
      | [\w.()]+
    ))?
    (?:\s+apply\s*\(?\s*(?P<apply>true|false)\s*\)?)?
    \s*
""", re.VERBOSE)

_APPLY_RE = re.compile(r"""
    apply\s*(?:
        \(\s*plugin\s*=\s*(?P<kq>["'])(?P<kid>[^"'\n]*)(?P=kq)\s*\)       # apply(plugin = "x")
      | plugin\s*:\s*(?P<gq>["'])(?P<gid>[^"'\n]*)(?P=gq)                 # apply plugin: 'x'
    )\s*
""", re.VERBOSE)

_KEYWORD_RE = re.compile(r"[A-Za-z_]\w*")
# Bare identifiers only, never member access or accessor names.
_REFERENCE_RE = re.compile(r"(?<![\w.\-`$])kapt\w*")
_BLOCK_HEAD_RE = re.compile(r"(?P<name>[A-Za-z_][\w.]*)\s*(?:\(.*\))?\s*", re.S)
_LITERAL_RE = re.compile(r"""(["'])\x01*\1""")
_ARG_RE = re.compile(r"""
    (?P<fn>arg|argument)\s*\(?\s*
    (?P<kq>["'])(?P<key>\x01*)(?P=kq)\s*,\s*
    (?P<vq>["'])(?P<value>\x01*)(?P=vq)\s*\)?\s*
""", re.VERBOSE)


@dataclass
class _Node:
    """One statement of the block tree, with its body when it opens a block."""
    name: str
    span: Span
    body: Optional[Span] = None
    children: list["_Node"] = field(default_factory=list)


# ── Lexing ────────────────────────────────────────────────────────────────────

def _nearby_token(text: str, offset: int) -> str:
    """Return the source line around ``offset``, trimmed, for error messages."""
    line_start = text.rfind("\n", 0, offset) + 1
    line_end = text.find("\n", offset)
    if line_end == -1:
        line_end = len(text)
    token = text[line_start:line_end].strip()
    if len(token) > 40:
        token = token[:37] + "..."
    return token


def _error(text: str, offset: int, path: Optional[str], message: str) -> ParseError:
    offset = min(offset, len(text))
    return ParseError(
        message,
        Location.at(text, offset, path),
        byte_offset=len(text[:offset].encode("utf-8")),
        token=_nearby_token(text, offset),
    )


def _skip_string(text: str, start: int, path: Optional[str]) -> int:
    """Return the index just past the string literal that opens at ``start``."""
    quote = text[start]
    n = len(text)
    if text.startswith(quote * 3, start):
        end = text.find(quote * 3, start + 3)
        if end == -1:
            raise _error(text, start, path, "unterminated multi-line string")
        end += 3
        # Kotlin raw strings may end with extra quotes: """a"""" is a + '"'
        while end < n and text[end] == quote:
            end += 1
        return end
    i = start + 1
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        if ch == "\n":
            break
        if ch == "$" and quote == '"' and i + 1 < n and text[i + 1] == "{":
            i = _skip_template(text, i + 2, path)
            continue
        i += 1
    raise _error(text, start, path, "unterminated string literal")


def _skip_template(text: str, start: int, path: Optional[str]) -> int:
    """Return the index just past the ``}`` closing a ``${...}`` template."""
    depth = 1
    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if ch in "\"'":
            i = _skip_string(text, i, path)
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    raise _error(text, start - 2, path, "unterminated string template")


def _comment_end(text: str, start: int, nested: bool) -> int:
    """Return the index just past the comment opened at ``start``, or -1."""
    if not nested:
        end = text.find("*/", start + 2)
        return -1 if end == -1 else end + 2
    depth = 0
    i = start
    while i < len(text) - 1:
        pair = text[i:i + 2]
        if pair == "/*":
            depth += 1
            i += 2
        elif pair == "*/":
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return -1


def mask_text(text: str, path: Optional[str] = None, nested_comments: bool = False) -> str:
    """Blank out comments and string contents, keeping every offset aligned.

    Args:
        text: Descriptor source text.
        path: File path used in error locations.
        nested_comments: Let block comments nest, as Kotlin does.

    Returns:
        A string of the same length as ``text``.

    Raises:
        ParseError: On an unterminated string, template, or block comment.
    """
    out = list(text)
    n = len(text)
    i = 0
    while i < n:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < n else ""
        if ch == "/" and nxt == "/":
            end = text.find("\n", i)
            if end == -1:
                end = n
            for k in range(i, end):
                out[k] = " "
            i = end
        elif ch == "/" and nxt == "*":
            end = _comment_end(text, i, nested_comments)
            if end == -1:
                raise _error(text, i, path, "unterminated block comment")
            for k in range(i, end):
                if text[k] != "\n":
                    out[k] = " "
            i = end
        elif ch in "\"'":
            end = _skip_string(text, i, path)
            width = 3 if text.startswith(ch * 3, i) else 1
            for k in range(i + width, end - width):
                out[k] = MASK
            i = end
        else:
            i += 1
    return "".join(out)


def match_brackets(text: str, masked: str, path: Optional[str] = None) -> dict[int, int]:
    """Pair every opening bracket with its closing bracket.

    Args:
        text: Original descriptor text (for error messages).
        masked: Output of ``mask_text(text)``.
        path: File path used in error locations.

    Returns:
        Dict mapping the offset of every bracket to the offset of its partner,
        in both directions.

    Raises:
        ParseError: On a stray closer, a mismatched pair, or an unclosed opener.
    """
    pairs = {}
    stack = []
    for i, ch in enumerate(masked):
        if ch in OPENERS:
            stack.append(i)
        elif ch in CLOSERS:
            if not stack:
                raise _error(text, i, path, f"unexpected '{ch}' with no matching '{CLOSERS[ch]}'")
            opener = stack.pop()
            if masked[opener] != CLOSERS[ch]:
                where = Location.at(text, opener, path)
                raise _error(
                    text, i, path,
                    f"'{ch}' does not close '{masked[opener]}' opened at line {where.line}",
                )
            pairs[opener] = i
            pairs[i] = opener
    if stack:
        opener = stack[-1]
        raise _error(text, opener, path, f"unclosed '{masked[opener]}'")
    return pairs


# ── Statement structure ───────────────────────────────────────────────────────

def _is_blank(ch: str) -> bool:
    return ch.isspace() or ch == "\ufeff"


def _split_statements(masked: str, pairs: dict[int, int], start: int, end: int) -> list[Span]:
    """Split ``masked[start:end]`` into statement spans.

    Statements end at a newline or ``;`` that is not nested inside a bracket
    group. Each span is trimmed of surrounding whitespace.
    """
    spans = []
    stmt_start = None
    last = None
    i = start
    while i < end:
        ch = masked[i]
        if ch in OPENERS:
            if stmt_start is None:
                stmt_start = i
            i = pairs[i]
            last = i
            i += 1
            continue
        if ch == "\n" or ch == ";":
            if stmt_start is not None:
                spans.append(Span(stmt_start, last + 1))
                stmt_start = None
        elif not _is_blank(ch):
            if stmt_start is None:
                stmt_start = i
            last = i
        i += 1
    if stmt_start is not None:
        spans.append(Span(stmt_start, last + 1))
    return spans


def _build_tree(masked: str, pairs: dict[int, int], start: int, end: int) -> list[_Node]:
    """Build the statement tree for ``masked[start:end]``.

    A statement whose last bracket group is a brace block becomes a node with
    a body; its name is the leading identifier (``dependencies``,
    ``kapt``, ``create``). Children are built recursively.
    """
    nodes = []
    for span in _split_statements(masked, pairs, start, end):
        stmt = masked[span.start:span.end]
        head = _KEYWORD_RE.match(stmt)
        name = head.group(0) if head else ""
        node = _Node(name=name, span=span)
        if stmt.endswith("}"):
            brace = pairs[span.end - 1]
            head_text = masked[span.start:brace]
            if _BLOCK_HEAD_RE.fullmatch(head_text):
                node.name = _BLOCK_HEAD_RE.fullmatch(head_text).group("name")
                node.body = Span(brace + 1, span.end - 1)
                node.children = _build_tree(masked, pairs, brace + 1, span.end - 1)
        nodes.append(node)
    return nodes


def _walk(nodes: list[_Node], ancestors: tuple[str, ...] = ()):
    """Yield ``(node, ancestor_names)`` for every node, depth-first."""
    for node in nodes:
        yield node, ancestors
        if node.body is not None:
            yield from _walk(node.children, ancestors + (node.name,))


# ── Declarations ──────────────────────────────────────────────────────────────

def _literal_content(span: Span) -> Span:
    return Span(span.start + 1, span.end - 1)


def _parse_plugin(text: str, masked: str, node: _Node, rules_toolchain) -> Optional[PluginDeclaration]:
    m = _PLUGIN_RE.fullmatch(masked, node.span.start, node.span.end)
    if m is None:
        return None
    version = version_span = None
    if m.group("version") is not None:
        version_span = Span(*m.span("version"))
        version = version_span.text(text)
    apply = None if m.group("apply") is None else m.group("apply") == "true"

    if m.group("id") is not None:
        form, id_span, quote = "id", Span(*m.span("id")), m.group("id_q")
    elif m.group("gid") is not None:
        form, id_span, quote = "id", Span(*m.span("gid")), m.group("gid_q")
    elif m.group("kt") is not None:
        form, quote = "kotlin", '"'
        id_span = Span(m.start(), m.end("kt") + 1)
        rest = masked[id_span.end:m.end()]
        id_span = Span(id_span.start, id_span.end + rest.index(")") + 1)
    elif m.group("alias") is not None:
        form, id_span, quote = "alias", Span(*m.span("alias")), '"'
    else:
        form, id_span, quote = "accessor", Span(m.start("acc") - 1, m.end("acc") + 1), '"'

    if form == "kotlin":
        identifier = f"org.jetbrains.kotlin.{text[m.start('kt'):m.end('kt')]}"
    elif form == "accessor":
        identifier = text[m.start("acc"):m.end("acc")]
    else:
        identifier = id_span.text(text)

    return PluginDeclaration(
        identifier=identifier,
        span=node.span,
        id_span=id_span,
        form=form,
        version=version,
        version_span=version_span,
        apply=apply,
        quote=quote,
        toolchain=rules_toolchain(identifier),
    )


def _parse_apply(text: str, masked: str, node: _Node, rules_toolchain) -> Optional[PluginDeclaration]:
    m = _APPLY_RE.fullmatch(masked, node.span.start, node.span.end)
    if m is None:
        return None
    group = "kid" if m.group("kid") is not None else "gid"
    id_span = Span(*m.span(group))
    identifier = id_span.text(text)
    return PluginDeclaration(
        identifier=identifier,
        span=node.span,
        id_span=id_span,
        form="apply",
        quote=m.group("kq") or m.group("gq"),
        toolchain=rules_toolchain(identifier),
    )


def _keyword_toolchain(keyword: str) -> Optional[str]:
    if is_source_keyword(keyword):
        return SOURCE
    if is_target_keyword(keyword):
        return TARGET
    if is_java_processor_keyword(keyword):
        return OTHER
    return None


def _parse_dependency(text: str, masked: str, pairs: dict[int, int],
                      node: _Node) -> Optional[DependencyDeclaration]:
    """Parse ``kapt("g:a:v")``, ``kapt 'g:a:v'`` or ``kapt libs.x { ... }``."""
    head = _KEYWORD_RE.match(masked, node.span.start, node.span.end)
    if head is None:
        return None
    keyword = head.group(0)
    toolchain = _keyword_toolchain(keyword)
    if toolchain is None:
        return None

    i = head.end()
    end = node.span.end
    while i < end and masked[i] in " \t":
        i += 1
    if i >= end:
        return None
    if masked[i] == "(":
        close = pairs[i]
        args = Span(i + 1, close)
    elif i > head.end() and masked[i] not in "=.{[":
        # Groovy command syntax: arguments run to the trailing closure, if any.
        args_end = end
        if masked[end - 1] == "}":
            opener = pairs[end - 1]
            if opener > i:
                args_end = opener
        args = Span(i, args_end)
    else:
        return None

    raw = args.text(masked)
    lead = len(raw) - len(raw.lstrip())
    args = Span(args.start + lead, args.start + len(raw.rstrip()))
    if args.start >= args.end:
        return None

    coordinate_span = None
    if _LITERAL_RE.fullmatch(masked, args.start, args.end):
        coordinate_span = _literal_content(args)
        coordinate = coordinate_span.text(text)
    else:
        coordinate = args.text(text)

    return DependencyDeclaration(
        keyword=keyword,
        coordinate=coordinate,
        span=node.span,
        keyword_span=Span(*head.span()),
        coordinate_span=coordinate_span,
        toolchain=toolchain,
    )


def _parse_argument(text: str, masked: str, node: _Node) -> Optional[tuple[str, Optional[str]]]:
    m = _ARG_RE.fullmatch(masked, node.span.start, node.span.end)
    if m is not None:
        return (text[m.start("key"):m.end("key")], text[m.start("value"):m.end("value")])
    head = _KEYWORD_RE.match(masked, node.span.start, node.span.end)
    if head and head.group(0) in ("arg", "argument") and node.body is None:
        # Non-literal form such as arg(RoomSchemaArgProvider(...)).
        return (node.span.text(text), None)
    return None


def _parse_block(text: str, masked: str, node: _Node, nested: str) -> ConfigurationBlock:
    """Collect arguments and other settings of a processor argument block."""
    name = node.name
    if name == SOURCE_KEYWORD_PREFIX:
        toolchain = SOURCE
    elif name == TARGET_KEYWORD_PREFIX:
        toolchain = TARGET
    else:
        toolchain = OTHER
    block = ConfigurationBlock(name=name, span=node.span, body_span=node.body, toolchain=toolchain)
    for child in node.children:
        if child.body is not None and child.name == nested:
            block.argument_blocks.append((child.span, child.body))
            for grandchild in child.children:
                argument = _parse_argument(text, masked, grandchild)
                if argument is not None:
                    block.arguments.append(argument)
                else:
                    block.options.append((f"{nested}.{grandchild.name}", grandchild.span))
            continue
        argument = _parse_argument(text, masked, child)
        if argument is not None:
            block.arguments.append(argument)
        else:
            block.options.append((child.name, child.span))
    return block


def detect_dsl(path: Optional[str], text: str) -> str:
    """Return ``kotlin`` or ``groovy`` for a descriptor."""
    if path:
        if path.endswith(".kts"):
            return "kotlin"
        if path.endswith(".gradle"):
            return "groovy"
    if re.search(r"^\s*apply\s+plugin\s*:", text, re.M) or re.search(r"^\s*id\s+'", text, re.M):
        return "groovy"
    return "kotlin"


def parse_descriptor(
    text: str,
    path: Optional[str] = None,
    block_names: tuple[str, ...] = DEFAULT_BLOCK_NAMES,
    plugin_toolchain=None,
    nested_block: str = "arguments",
) -> Descriptor:
    """Parse descriptor text into a ``Descriptor``.

    Args:
        text: Full build file contents.
        path: File path recorded in locations and used to pick the DSL.
        block_names: Names of argument blocks to track.
        plugin_toolchain: Callable mapping a plugin id to ``source``, ``target``
            or ``other``. Defaults to a check for ``kapt``/``ksp`` in the id.
        nested_block: Name of the block that nests ``arg`` calls in the source
            syntax.

    Returns:
        A ``Descriptor`` whose declarations are in source order.

    Raises:
        ParseError: If strings, comments, or brackets are unbalanced.
    """
    dsl = detect_dsl(path, text)
    masked = mask_text(text, path, nested_comments=dsl == "kotlin")
    pairs = match_brackets(text, masked, path)
    tree = _build_tree(masked, pairs, 0, len(masked))
    toolchain_of = plugin_toolchain or _default_plugin_toolchain

    descriptor = Descriptor(text=text, path=path, dsl=dsl)
    for node, ancestors in _walk(tree):
        if not ancestors and node.body is None:
            plugin = _parse_apply(text, masked, node, toolchain_of)
            if plugin is not None:
                descriptor.plugins.append(plugin)
        parent = ancestors[-1] if ancestors else None
        if parent == "plugins" and len(ancestors) == 1 and node.body is None:
            plugin = _parse_plugin(text, masked, node, toolchain_of)
            if plugin is not None:
                descriptor.plugins.append(plugin)
        elif "dependencies" in ancestors and "buildscript" not in ancestors:
            dependency = _parse_dependency(text, masked, pairs, node)
            if dependency is not None:
                descriptor.dependencies.append(dependency)
        if node.body is not None and node.name in block_names:
            is_top_level_block = not ancestors or node.name == "annotationProcessorOptions"
            if is_top_level_block:
                descriptor.blocks.append(_parse_block(text, masked, node, nested_block))

    descriptor.plugins.sort(key=lambda p: p.span.start)
    descriptor.references = _untracked_references(masked, descriptor)
    return descriptor


def _untracked_references(masked: str, descriptor: Descriptor) -> list[UntrackedReference]:
    """Find kapt configuration names outside every tracked declaration."""
    covered = [d.span for d in descriptor.plugins + descriptor.dependencies + descriptor.blocks]
    references = []
    for m in _REFERENCE_RE.finditer(masked):
        if not is_source_keyword(m.group(0)):
            continue
        if any(span.start <= m.start() < span.end for span in covered):
            continue
        references.append(UntrackedReference(name=m.group(0), span=Span(*m.span())))
    return references


def _default_plugin_toolchain(identifier: str) -> str:
    last = identifier.split(".")[-1]
    if "kapt" in last:
        return SOURCE
    if last == "ksp":
        return TARGET
    return OTHER


def parse_file(path: Path, **kwargs) -> Descriptor:
    """Read a build file and parse it.

    The file is decoded as UTF-8 without newline translation so that
    ``\\r\\n`` line endings survive a rewrite unchanged.

    Raises:
        ParseError: If the file is not valid UTF-8 or its structure is unbalanced.
    """
    raw = Path(path).read_bytes()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        prefix = raw[:exc.start].decode("utf-8", errors="replace")
        raise ParseError(
            "file is not valid UTF-8",
            Location.at(prefix, len(prefix), str(path)),
            byte_offset=exc.start,
        ) from exc
    return parse_descriptor(text, str(path), **kwargs)
