"""Tests for rule_table.py — rule loading, validation and lookups."""

import dataclasses
import textwrap

import pytest

from ksp_migrate.errors import RuleLookupError, RuleTableError
from ksp_migrate.rule_table import (
    RuleTable, is_java_processor_keyword, is_source_keyword, is_target_keyword, load_rules,
)


MINIMAL = {"version": 3, "target_plugin": "com.google.devtools.ksp"}


class TestKeywordPrefixes:
    def test_plain_kapt(self):
        assert is_source_keyword("kapt")

    def test_variant_kapt(self):
        assert is_source_keyword("kaptAndroidTest")
        assert is_source_keyword("kaptDebug")

    def test_lowercase_continuation_is_not_kapt(self):
        assert not is_source_keyword("kaptain")

    def test_ksp_keywords(self):
        assert is_target_keyword("ksp")
        assert is_target_keyword("kspTest")
        assert not is_target_keyword("kspecial")

    def test_java_processor(self):
        assert is_java_processor_keyword("annotationProcessor")
        assert is_java_processor_keyword("annotationProcessorTest")
        assert not is_java_processor_keyword("implementation")


class TestDefaultRules:
    def test_metadata(self, rules):
        assert rules.name == "kapt-to-ksp"
        assert rules.version == 3
        assert rules.target_plugin == "com.google.devtools.ksp"

    def test_keyword_targets(self, rules):
        assert rules.keyword_targets("kapt") == ("ksp",)
        assert rules.keyword_targets("kaptAndroidTest") == ("kspAndroidTest",)

    def test_plugin_targets(self, rules):
        assert rules.plugin_targets("kotlin-kapt") == ("com.google.devtools.ksp",)
        assert rules.plugin_targets("org.jetbrains.kotlin.kapt") == ("com.google.devtools.ksp",)

    def test_block_rule(self, rules):
        rule = rules.block_rule("kapt")
        assert rule.targets == ("ksp",)
        assert rule.nested == "arguments"
        assert "correctErrorTypes" in rule.drop_options

    def test_target_blocks(self, rules):
        assert rules.target_blocks == frozenset({"ksp"})

    def test_ksp_version(self, rules):
        assert rules.ksp_version("1.9.22") == "1.9.22-1.0.17"
        assert rules.ksp_version("1.4.0") is None

    def test_unsupported_processor(self, rules):
        assert "Data Binding" in rules.unsupported_reason("androidx.databinding:databinding-compiler")
        assert rules.unsupported_reason("androidx.room:room-compiler") is None

    def test_replacement(self, rules):
        assert rules.replacement_for("com.github.bumptech.glide:compiler") == ("com.github.bumptech.glide:ksp",)
        assert rules.replacement_for("androidx.room:room-compiler") is None

    def test_source_review_trigger(self, rules):
        assert rules.triggers_source_review("androidx.room:room-compiler")
        assert not rules.triggers_source_review("com.google.dagger:hilt-compiler")

    def test_plugin_classification(self, rules):
        assert rules.is_source_plugin("kotlin-kapt")
        assert rules.is_source_plugin("libs.plugins.kotlin.kapt")
        assert not rules.is_source_plugin("org.jetbrains.kotlin.android")
        assert rules.is_target_plugin("com.google.devtools.ksp")
        assert rules.is_target_plugin("libs.plugins.ksp")


class TestLookupErrors:
    def test_unknown_keyword(self, rules):
        with pytest.raises(RuleLookupError) as exc_info:
            rules.keyword_targets("kaptCustom")
        assert exc_info.value.kind == "keyword"
        assert exc_info.value.token == "kaptCustom"
        assert "kaptCustom" in str(exc_info.value)

    def test_unknown_plugin(self, rules):
        with pytest.raises(RuleLookupError):
            rules.plugin_targets("libs.plugins.kotlin.kapt")

    def test_unknown_block(self, rules):
        with pytest.raises(RuleLookupError):
            rules.block_rule("kaptOptions")


class TestImmutability:
    def test_frozen_dataclass(self, rules):
        with pytest.raises(dataclasses.FrozenInstanceError):
            rules.name = "other"

    def test_read_only_mappings(self, rules):
        with pytest.raises(TypeError):
            rules.keywords["kaptFoo"] = ("kspFoo",)


class TestFromDict:
    def test_minimal(self):
        table = RuleTable.from_dict(dict(MINIMAL), "custom.yaml")
        assert table.name == "custom"
        assert dict(table.keywords) == {}

    def test_list_target_is_kept_as_candidates(self):
        table = RuleTable.from_dict({**MINIMAL, "keywords": {"kapt": ["ksp", "kspCommonMainMetadata"]}})
        assert table.keyword_targets("kapt") == ("ksp", "kspCommonMainMetadata")

    def test_not_a_mapping(self):
        with pytest.raises(RuleTableError):
            RuleTable.from_dict(["kapt", "ksp"])

    def test_unsupported_version(self):
        with pytest.raises(RuleTableError, match="version"):
            RuleTable.from_dict({**MINIMAL, "version": 99})

    def test_missing_target_plugin(self):
        with pytest.raises(RuleTableError, match="target_plugin"):
            RuleTable.from_dict({"version": 3})

    def test_bad_target_type(self):
        with pytest.raises(RuleTableError):
            RuleTable.from_dict({**MINIMAL, "keywords": {"kapt": 42}})

    def test_block_without_target(self):
        with pytest.raises(RuleTableError, match="argument block"):
            RuleTable.from_dict({**MINIMAL, "argument_blocks": {"kapt": {"nested": "arguments"}}})


class TestLoadRules:
    def test_override_file(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(textwrap.dedent("""\
            version: 3
            name: narrow
            target_plugin: com.google.devtools.ksp
            keywords:
              kapt: ksp
        """), encoding="utf-8")
        table = load_rules(path)
        assert table.name == "narrow"
        assert table.keyword_targets("kapt") == ("ksp",)
        with pytest.raises(RuleLookupError):
            table.keyword_targets("kaptTest")

    def test_missing_file(self, tmp_path):
        with pytest.raises(RuleTableError, match="cannot read"):
            load_rules(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("keywords: [unclosed\n", encoding="utf-8")
        with pytest.raises(RuleTableError, match="invalid YAML"):
            load_rules(path)
