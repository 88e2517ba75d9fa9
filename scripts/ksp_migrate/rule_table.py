"""kapt-to-KSP translation tables.

The rules themselves live in YAML (``rules/kapt-to-ksp.yaml``) so new
processor support can be added without touching the engine. This module
loads that data into an immutable ``RuleTable`` and answers lookup
questions about it. No descriptor parsing and no file writes.
"""

import logging
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

import yaml

from .errors import RuleLookupError, RuleTableError

logger = logging.getLogger(__name__)

DEFAULT_RULES = "kapt-to-ksp.yaml"

# Keyword prefixes. ``kapt`` alone or followed by an upper-case variant name
# (``kaptAndroidTest``) is a kapt configuration; likewise for ``ksp``.
SOURCE_KEYWORD_PREFIX = "kapt"
TARGET_KEYWORD_PREFIX = "ksp"
JAVA_PROCESSOR_PREFIX = "annotationProcessor"

SUPPORTED_SCHEMA_VERSIONS = range(1, 4)


def _has_prefix(keyword: str, prefix: str) -> bool:
    if keyword == prefix:
        return True
    return keyword.startswith(prefix) and keyword[len(prefix)].isupper()


def is_source_keyword(keyword: str) -> bool:
    """Check whether a dependency configuration name belongs to kapt."""
    return _has_prefix(keyword, SOURCE_KEYWORD_PREFIX)


def is_target_keyword(keyword: str) -> bool:
    """Check whether a dependency configuration name belongs to KSP."""
    return _has_prefix(keyword, TARGET_KEYWORD_PREFIX)


def is_java_processor_keyword(keyword: str) -> bool:
    return _has_prefix(keyword, JAVA_PROCESSOR_PREFIX)


@dataclass(frozen=True)
class ArgumentBlockRule:
    """How one source argument block translates to its target block.

    Attributes:
        source: Source block name (``kapt``).
        targets: Candidate target block names; more than one is ambiguous.
        nested: Name of the nested block holding ``arg`` calls in the source
            syntax (``arguments``), or ``None`` if the source is already flat.
        drop_options: Settings that have no target equivalent and are removed.
    """
    source: str
    targets: tuple
    nested: Optional[str] = None
    drop_options: frozenset = frozenset()


@dataclass(frozen=True)
class RuleTable:
    """Immutable, versioned kapt-to-KSP rule set.

    Instances are safe to share between threads. Build one with
    ``RuleTable.from_dict()`` or ``load_rules()``.
    """
    version: int
    name: str
    target_plugin: str
    plugins: Mapping[str, tuple] = field(default_factory=lambda: MappingProxyType({}))
    plugin_versions: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    keywords: Mapping[str, tuple] = field(default_factory=lambda: MappingProxyType({}))
    argument_blocks: Mapping[str, ArgumentBlockRule] = field(default_factory=lambda: MappingProxyType({}))
    unsupported_processors: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    processor_replacements: Mapping[str, tuple] = field(default_factory=lambda: MappingProxyType({}))
    source_review_triggers: tuple = ()

    # ── Construction ──────────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict, origin: str = "<rules>") -> "RuleTable":
        """Build a rule table from the parsed YAML document.

        Args:
            data: Mapping as produced by ``yaml.safe_load``.
            origin: Name of the source used in error messages.

        Returns:
            A frozen ``RuleTable``.

        Raises:
            RuleTableError: If required keys are missing or have the wrong shape.
        """
        if not isinstance(data, dict):
            raise RuleTableError(f"{origin}: rule table must be a mapping")
        version = data.get("version")
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            raise RuleTableError(f"{origin}: unsupported rule table version {version!r}")
        target_plugin = data.get("target_plugin")
        if not isinstance(target_plugin, str) or not target_plugin:
            raise RuleTableError(f"{origin}: 'target_plugin' must be a plugin id")

        blocks = {}
        for source, spec in _mapping(data, "argument_blocks", origin).items():
            if not isinstance(spec, dict) or "target" not in spec:
                raise RuleTableError(f"{origin}: argument block '{source}' needs a 'target'")
            blocks[source] = ArgumentBlockRule(
                source=source,
                targets=_targets(spec["target"], f"argument_blocks.{source}", origin),
                nested=spec.get("nested"),
                drop_options=frozenset(spec.get("drop_options") or ()),
            )

        processors = _mapping(data, "processors", origin)
        unsupported = processors.get("unsupported") or {}
        replacements = processors.get("replacements") or {}
        if not isinstance(unsupported, dict) or not isinstance(replacements, dict):
            raise RuleTableError(f"{origin}: 'processors' entries must be mappings")

        review = _mapping(data, "source_review", origin)

        return cls(
            version=version,
            name=str(data.get("name") or Path(origin).stem),
            target_plugin=target_plugin,
            plugins=_frozen_targets(_mapping(data, "plugins", origin), "plugins", origin),
            plugin_versions=MappingProxyType(
                {str(k): str(v) for k, v in _mapping(data, "plugin_versions", origin).items()}
            ),
            keywords=_frozen_targets(_mapping(data, "keywords", origin), "keywords", origin),
            argument_blocks=MappingProxyType(blocks),
            unsupported_processors=MappingProxyType({str(k): str(v) for k, v in unsupported.items()}),
            processor_replacements=_frozen_targets(replacements, "processors.replacements", origin),
            source_review_triggers=tuple(review.get("triggers") or ()),
        )

    # ── Lookups ───────────────────────────────────────────────────────────────

    def is_source_plugin(self, identifier: str) -> bool:
        """A plugin counts as kapt if it has a rule or its id mentions kapt."""
        return identifier in self.plugins or "kapt" in identifier.split(".")[-1]

    def is_target_plugin(self, identifier: str) -> bool:
        return identifier == self.target_plugin or identifier.split(".")[-1] == "ksp"

    def plugin_targets(self, identifier: str) -> tuple:
        """Return the candidate KSP plugin ids for a kapt plugin.

        Raises:
            RuleLookupError: If the plugin has no rule.
        """
        try:
            return self.plugins[identifier]
        except KeyError:
            raise RuleLookupError("plugin", identifier) from None

    def keyword_targets(self, keyword: str) -> tuple:
        """Return the candidate KSP configuration names for a kapt keyword.

        Raises:
            RuleLookupError: If the keyword has no rule.
        """
        try:
            return self.keywords[keyword]
        except KeyError:
            raise RuleLookupError("keyword", keyword) from None

    def block_rule(self, name: str) -> ArgumentBlockRule:
        try:
            return self.argument_blocks[name]
        except KeyError:
            raise RuleLookupError("argument block", name) from None

    def ksp_version(self, kotlin_version: str) -> Optional[str]:
        """Map a Kotlin plugin version to the matching KSP release, if known."""
        return self.plugin_versions.get(kotlin_version)

    def unsupported_reason(self, library_key: str) -> Optional[str]:
        return self.unsupported_processors.get(library_key)

    def replacement_for(self, library_key: str) -> Optional[tuple]:
        return self.processor_replacements.get(library_key)

    def triggers_source_review(self, library_key: str) -> bool:
        return library_key in self.source_review_triggers

    @property
    def target_blocks(self) -> frozenset:
        """Names of all target argument blocks (``ksp``)."""
        names = set()
        for rule in self.argument_blocks.values():
            names.update(rule.targets)
        return frozenset(names)


def _mapping(data: dict, key: str, origin: str) -> dict:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise RuleTableError(f"{origin}: '{key}' must be a mapping")
    return value


def _targets(value, key: str, origin: str) -> tuple:
    """Normalise a rule target to a tuple of strings; lists express ambiguity."""
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and value and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise RuleTableError(f"{origin}: '{key}' target must be a string or a list of strings")


def _frozen_targets(mapping: dict, section: str, origin: str) -> Mapping[str, tuple]:
    return MappingProxyType({
        str(source): _targets(target, f"{section}.{source}", origin)
        for source, target in mapping.items()
    })


def load_rules(path: Optional[Path] = None) -> RuleTable:
    """Load a rule table from YAML.

    Args:
        path: Rule table file. ``None`` loads the table shipped with the package.

    Returns:
        The parsed ``RuleTable``.

    Raises:
        RuleTableError: If the file cannot be read or does not describe a
            valid rule table.
    """
    if path is None:
        origin = DEFAULT_RULES
        text = resources.files(__package__).joinpath("rules").joinpath(DEFAULT_RULES).read_text(encoding="utf-8")
    else:
        origin = str(path)
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise RuleTableError(f"cannot read rule table {origin}: {exc.strerror or exc}") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise RuleTableError(f"{origin}: invalid YAML: {exc}") from exc

    table = RuleTable.from_dict(data, origin)
    logger.debug("Loaded rule table %s v%s from %s", table.name, table.version, origin)
    return table
