"""Declaration classification.

Walks a parsed ``Descriptor`` and decides, per tracked declaration, whether
it can be migrated structurally, needs a human, clashes with another
declaration, or is left alone. The result is a closed set of action types;
consumers dispatch on them with ``isinstance``.
"""

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Optional, Union

from .descriptor_models import (
    CONFLICT, INFO, MANUAL_REVIEW, OTHER, SOURCE, TARGET,
    ConfigurationBlock, DependencyDeclaration, Descriptor, MigrationIssue,
    PluginDeclaration, UntrackedReference,
)
from .errors import RuleLookupError
from .rule_table import RuleTable


@dataclass(frozen=True)
class Migrate:
    """A direct rewrite exists.

    Attributes:
        declaration: The declaration to rewrite.
        target: Target token (plugin id, configuration name, or block name).
            Empty when ``remove`` is set.
        remove: Delete the declaration instead of rewriting it (a kapt plugin
            in a file that already applies KSP).
        keep: Apply the target plugin next to the source plugin instead of
            replacing it (kapt is still needed by other declarations).
        version: New plugin version, when the declaration carries one.
        coordinate: New coordinate for processors published under a different
            artifact for KSP.
        dropped: Names of argument-block options removed by the rewrite.
        notes: ``info`` issues to report alongside the change.
    """
    declaration: object
    target: str = ""
    remove: bool = False
    keep: bool = False
    version: Optional[str] = None
    coordinate: Optional[str] = None
    dropped: tuple[str, ...] = ()
    notes: tuple[MigrationIssue, ...] = ()


@dataclass(frozen=True)
class ManualReview:
    """A rewrite exists in principle but cannot be applied structurally."""
    declaration: object
    issue: MigrationIssue


@dataclass(frozen=True)
class Conflict:
    """The declaration clashes with another one. Blocks rewriting the file.

    All declarations of one conflict group share the same ``issue`` object.
    """
    declaration: object
    issue: MigrationIssue


@dataclass(frozen=True)
class LeaveAsIs:
    """Already on KSP, or unrelated to annotation processing."""
    declaration: object


Action = Union[Migrate, ManualReview, Conflict, LeaveAsIs]


@dataclass
class _Context:
    descriptor: Descriptor
    rules: RuleTable
    conflicts: dict[int, MigrationIssue] = field(default_factory=dict)   # id(declaration) -> issue

    def issue(self, severity: str, code: str, message: str, declaration, related=()) -> MigrationIssue:
        return MigrationIssue(
            severity=severity,
            code=code,
            message=message,
            location=self.descriptor.location(declaration.span.start),
            related=[self.descriptor.location(d.span.start) for d in related],
        )


# ── Conflict detection ────────────────────────────────────────────────────────

def _library_keys(dep: DependencyDeclaration, rules: RuleTable) -> set[str]:
    """All keys under which a processor may appear, including its KSP artifact."""
    keys = {dep.library_key}
    for replacement in rules.replacement_for(dep.library_key) or ():
        keys.add(replacement)
    return keys


def _find_dependency_conflicts(ctx: _Context):
    """Group kapt and KSP declarations of the same processor in one compilation unit.

    The compilation unit is identified by the KSP configuration name: a
    ``kaptAndroidTest`` processor clashes with a ``kspAndroidTest`` one, not
    with a plain ``ksp`` one. Each group yields exactly one issue.
    """
    rules = ctx.rules
    targets = OrderedDict()   # (keyword, library_key) -> [target deps]
    for dep in ctx.descriptor.dependencies:
        if dep.toolchain == TARGET:
            targets.setdefault((dep.keyword, dep.library_key), []).append(dep)

    groups = OrderedDict()    # (keyword, library_key) -> [source deps]
    for dep in ctx.descriptor.dependencies:
        if dep.toolchain != SOURCE:
            continue
        for keyword in rules.keywords.get(dep.keyword, ()):
            for key in sorted(_library_keys(dep, rules)):
                if (keyword, key) in targets:
                    groups.setdefault((keyword, key), []).append(dep)

    for (keyword, key), sources in groups.items():
        members = [d for d in sources + targets[(keyword, key)] if id(d) not in ctx.conflicts]
        if len(members) < 2:
            continue
        members.sort(key=lambda d: d.span.start)
        keywords = sorted({d.keyword for d in members})
        issue = ctx.issue(
            CONFLICT, "processor-conflict",
            f"processor '{key}' is declared under both {' and '.join(keywords)}; "
            f"kapt and KSP must not process the same library in one compilation unit. "
            f"Remove one of the declarations",
            members[0], related=members[1:],
        )
        for dep in members:
            ctx.conflicts[id(dep)] = issue


def _find_block_conflicts(ctx: _Context):
    blocks = ctx.descriptor.blocks
    sources = [b for b in blocks if b.toolchain == SOURCE and b.name in ctx.rules.argument_blocks]
    targets = [b for b in blocks if b.toolchain == TARGET]
    if not sources or not targets:
        return
    members = sorted(sources + targets, key=lambda b: b.span.start)
    issue = ctx.issue(
        CONFLICT, "argument-block-conflict",
        "both kapt and ksp argument blocks are present; merge the arguments into "
        "the ksp block and delete the kapt block",
        members[0], related=members[1:],
    )
    for block in members:
        ctx.conflicts[id(block)] = issue


def _ambiguous(ctx: _Context, declaration, token: str, targets: tuple) -> Conflict:
    issue = ctx.issue(
        CONFLICT, "ambiguous-rule",
        f"rule table {ctx.rules.name} maps '{token}' to more than one target "
        f"({', '.join(targets)}); narrow the rule to a single target",
        declaration,
    )
    return Conflict(declaration, issue)


# ── Per-declaration classification ────────────────────────────────────────────

def _classify_dependency(ctx: _Context, dep: DependencyDeclaration) -> Action:
    if id(dep) in ctx.conflicts:
        return Conflict(dep, ctx.conflicts[id(dep)])
    if dep.toolchain != SOURCE:
        return LeaveAsIs(dep)

    rules = ctx.rules
    try:
        targets = rules.keyword_targets(dep.keyword)
    except RuleLookupError as exc:
        return ManualReview(dep, ctx.issue(
            MANUAL_REVIEW, "unknown-keyword",
            f"{exc.message}; declare '{dep.coordinate}' under the matching ksp "
            f"configuration by hand or add a keyword rule",
            dep,
        ))
    if len(targets) > 1:
        return _ambiguous(ctx, dep, dep.keyword, targets)

    reason = rules.unsupported_reason(dep.library_key)
    if reason:
        return ManualReview(dep, ctx.issue(MANUAL_REVIEW, "unsupported-processor",
                                           f"'{dep.library_key}': {reason}", dep))

    coordinate = None
    replacement = rules.replacement_for(dep.library_key)
    if replacement:
        if len(replacement) > 1:
            return _ambiguous(ctx, dep, dep.library_key, replacement)
        if not dep.is_literal:
            return ManualReview(dep, ctx.issue(
                MANUAL_REVIEW, "replacement-in-catalog",
                f"'{dep.coordinate}' must point at {replacement[0]} for KSP; "
                f"update the version catalog entry and the declaration",
                dep,
            ))
        version = dep.coordinate.split(":")[2:]
        coordinate = ":".join([replacement[0]] + version)

    return Migrate(dep, target=targets[0], coordinate=coordinate)


def _classify_block(ctx: _Context, block: ConfigurationBlock, uses_kapt: bool) -> Action:
    if id(block) in ctx.conflicts:
        return Conflict(block, ctx.conflicts[id(block)])

    if block.toolchain == OTHER:
        if not uses_kapt:
            return LeaveAsIs(block)
        keys = ", ".join(k for k, v in block.arguments if v is not None) or "its arguments"
        return ManualReview(block, ctx.issue(
            MANUAL_REVIEW, "javac-processor-options",
            f"kapt reads javac annotationProcessorOptions but KSP ignores them; "
            f"move {keys} into ksp {{ arg(...) }}",
            block,
        ))
    if block.toolchain == TARGET:
        return LeaveAsIs(block)

    try:
        rule = ctx.rules.block_rule(block.name)
    except RuleLookupError as exc:
        return ManualReview(block, ctx.issue(MANUAL_REVIEW, "unknown-block", exc.message, block))
    if len(rule.targets) > 1:
        return _ambiguous(ctx, block, block.name, rule.targets)

    dropped = [name for name, _ in block.options if name in rule.drop_options]
    unsupported = [name for name, _ in block.options if name not in rule.drop_options]
    if unsupported:
        return ManualReview(block, ctx.issue(
            MANUAL_REVIEW, "unsupported-option",
            f"{block.name} setting(s) {', '.join(unsupported)} have no KSP equivalent; "
            f"rewrite the block as {rule.targets[0]} {{ arg(...) }} by hand",
            block,
        ))
    notes = tuple(
        ctx.issue(INFO, "dropped-option", f"{block.name} option '{name}' has no KSP meaning and was removed", block)
        for name in dropped
    )
    return Migrate(block, target=rule.targets[0], dropped=tuple(dropped), notes=notes)


def _classify_reference(ctx: _Context, ref: UntrackedReference) -> Action:
    return ManualReview(ref, ctx.issue(
        MANUAL_REVIEW, "untracked-kapt-usage",
        f"'{ref.name}' is used outside any declaration that can be rewritten; "
        "move it to KSP by hand",
        ref,
    ))


def _note_missing_plugin(ctx: _Context, dep_actions: list[Action]) -> list[Action]:
    """Flag the first migrated dependency when the file applies neither kapt nor KSP.

    The plugin then comes from a convention plugin or a parent build, which
    has to apply KSP as well.
    """
    rules = ctx.rules
    if any(rules.is_source_plugin(p.identifier) or rules.is_target_plugin(p.identifier)
           for p in ctx.descriptor.plugins):
        return dep_actions
    for i, action in enumerate(dep_actions):
        if isinstance(action, Migrate):
            note = ctx.issue(
                MANUAL_REVIEW, "ksp-plugin-not-applied",
                f"this file applies no kapt or KSP plugin; apply {rules.target_plugin} "
                "wherever kapt is applied for this module",
                action.declaration,
            )
            dep_actions[i] = replace(action, notes=action.notes + (note,))
            break
    return dep_actions


def _classify_plugin(ctx: _Context, plugin: PluginDeclaration, unresolved: int, ksp_applied: bool,
                     needed: bool) -> Action:
    rules = ctx.rules
    if rules.is_target_plugin(plugin.identifier) or not rules.is_source_plugin(plugin.identifier):
        return LeaveAsIs(plugin)

    try:
        targets = rules.plugin_targets(plugin.identifier)
    except RuleLookupError as exc:
        hint = ("point the alias at the KSP plugin in the version catalog"
                if plugin.form == "alias" else "apply com.google.devtools.ksp by hand")
        return ManualReview(plugin, ctx.issue(MANUAL_REVIEW, "unknown-plugin", f"{exc.message}; {hint}", plugin))
    if len(targets) > 1:
        return _ambiguous(ctx, plugin, plugin.identifier, targets)

    if unresolved and (ksp_applied or not needed):
        return ManualReview(plugin, _still_required(ctx, plugin, unresolved))
    if ksp_applied:
        return Migrate(plugin, remove=True)

    version = None
    if plugin.version is not None:
        version = rules.ksp_version(plugin.version)
        if version is None:
            return ManualReview(plugin, ctx.issue(
                MANUAL_REVIEW, "unknown-kotlin-version",
                f"no KSP release is known for Kotlin {plugin.version}; pick the "
                f"{plugin.version}-1.0.x release of {targets[0]} that matches",
                plugin,
            ))
    if unresolved:
        # Migrated processors need the KSP plugin; kapt stays for the rest.
        return Migrate(plugin, target=targets[0], version=version, keep=True,
                       notes=(_still_required(ctx, plugin, unresolved),))
    return Migrate(plugin, target=targets[0], version=version)


def _still_required(ctx: _Context, plugin: PluginDeclaration, unresolved: int) -> MigrationIssue:
    return ctx.issue(
        MANUAL_REVIEW, "kapt-still-required",
        f"kapt is still needed by {unresolved} declaration(s) that cannot be migrated; "
        f"remove {plugin.identifier} once they are resolved",
        plugin,
    )


def classify(descriptor: Descriptor, rules: RuleTable) -> list[Action]:
    """Classify every tracked declaration of a descriptor.

    Args:
        descriptor: Parsed build file.
        rules: Rule table to match against.

    Returns:
        Actions in declaration order: plugins, then dependencies, then
        argument blocks, then kapt names used outside all of those. The
        result depends only on the descriptor text and the rule table.
    """
    ctx = _Context(descriptor, rules)
    _find_dependency_conflicts(ctx)
    _find_block_conflicts(ctx)

    uses_kapt = (
        any(rules.is_source_plugin(p.identifier) for p in descriptor.plugins)
        or any(d.toolchain == SOURCE for d in descriptor.dependencies)
        or bool(descriptor.references)
    )
    dep_actions = _note_missing_plugin(ctx, [_classify_dependency(ctx, d) for d in descriptor.dependencies])
    block_actions = [_classify_block(ctx, b, uses_kapt) for b in descriptor.blocks]
    ref_actions = [_classify_reference(ctx, r) for r in descriptor.references]

    unresolved = sum(
        1 for a in dep_actions + block_actions + ref_actions
        if isinstance(a, ManualReview) and a.declaration.toolchain == SOURCE
    )
    needed = any(isinstance(a, Migrate) for a in dep_actions + block_actions)
    ksp_applied = any(rules.is_target_plugin(p.identifier) for p in descriptor.plugins)
    plugin_actions = []
    for plugin in descriptor.plugins:
        action = _classify_plugin(ctx, plugin, unresolved, ksp_applied, needed)
        if isinstance(action, Migrate) and not action.remove:
            # Later kapt plugins in the same file are removed, not duplicated.
            ksp_applied = True
        plugin_actions.append(action)

    return plugin_actions + dep_actions + block_actions + ref_actions


def collect_issues(actions: list[Action]) -> list[MigrationIssue]:
    """Return the distinct issues carried by ``actions``, ordered by location.

    Conflict groups contribute one issue however many declarations they span.
    """
    seen = set()
    issues = []
    for action in actions:
        if isinstance(action, (ManualReview, Conflict)):
            candidates = (action.issue,)
        elif isinstance(action, Migrate):
            candidates = action.notes
        else:
            continue
        for issue in candidates:
            if id(issue) not in seen:
                seen.add(id(issue))
                issues.append(issue)
    issues.sort(key=lambda i: (i.location.offset if i.location else -1))
    return issues


def has_conflicts(actions: list[Action]) -> bool:
    return any(isinstance(a, Conflict) for a in actions)


def migrations(actions: list[Action]) -> list[Migrate]:
    return [a for a in actions if isinstance(a, Migrate)]
