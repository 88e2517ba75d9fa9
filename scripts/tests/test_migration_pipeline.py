"""Tests for pipeline.py and cli.py — end-to-end migration of build files."""

import json

from ksp_migrate.cli import main, output_path, parse_args, unified_diff, write_outputs
from ksp_migrate.pipeline import discover, needs_source_review, process_file, run_batch
from ksp_migrate.descriptor_parser import parse_descriptor

from conftest import (
    HILT_ONLY, HILT_ONLY_MIGRATED, HILT_ROOM_CONFLICT, ROOM_ONLY, ROOM_ONLY_MIGRATED,
)


def write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


class TestProcessFile:
    def test_room_module_with_sources(self, room_module, rules):
        result = process_file(room_module / "build.gradle.kts", rules)
        assert result.output_text == ROOM_ONLY_MIGRATED
        assert result.report.status == "migrated"
        dao_entries = [e for e in result.report.entries if e.path.endswith("UserDao.kt")]
        assert len(dao_entries) == 4
        assert all(e.kind == "manual-review" for e in dao_entries)

    def test_source_scan_disabled(self, room_module, rules):
        result = process_file(room_module / "build.gradle.kts", rules, source_scan=False)
        assert not any(e.path.endswith(".kt") for e in result.report.entries)

    def test_hilt_only(self, tmp_build, rules):
        path = tmp_build(HILT_ONLY, "app/build.gradle")
        result = process_file(path, rules)
        assert result.output_text == HILT_ONLY_MIGRATED
        assert result.rewritten is not None
        assert result.rewritten.dsl == "groovy"

    def test_conflict_not_rewritten(self, tmp_build, rules):
        path = tmp_build(HILT_ROOM_CONFLICT)
        result = process_file(path, rules)
        assert result.rewrite is None
        assert result.output_text is None
        assert result.report.status == "conflict"

    def test_parse_error_recorded(self, tmp_build, rules):
        path = tmp_build("dependencies {\n    kapt(\"a:b:1\")\n")
        result = process_file(path, rules)
        assert result.error is not None
        assert result.report.status == "parse-error"
        assert result.report.entries[0].line == 1

    def test_missing_file(self, tmp_path, rules):
        result = process_file(tmp_path / "nope" / "build.gradle.kts", rules)
        assert result.report.status == "parse-error"
        assert result.report.entries[0].code == "read-error"

    def test_already_migrated(self, tmp_build, rules):
        path = tmp_build(ROOM_ONLY_MIGRATED)
        result = process_file(path, rules, source_scan=False)
        assert result.output_text is None
        assert result.report.status == "unchanged"


class TestNeedsSourceReview:
    def test_literal_room_compiler(self, rules):
        assert needs_source_review(parse_descriptor(ROOM_ONLY), rules)

    def test_catalog_room_compiler(self, rules):
        d = parse_descriptor("dependencies {\n    kapt(libs.androidx.room.compiler)\n}\n")
        assert needs_source_review(d, rules)

    def test_hilt_only(self, rules):
        assert not needs_source_review(parse_descriptor(HILT_ONLY, "build.gradle"), rules)


class TestDiscover:
    def test_finds_build_files_and_skips_output_dirs(self, tmp_path):
        write(tmp_path / "build.gradle.kts", "")
        write(tmp_path / "app" / "build.gradle.kts", "")
        write(tmp_path / "legacy" / "build.gradle", "")
        write(tmp_path / "build" / "tmp" / "build.gradle.kts", "")
        write(tmp_path / ".gradle" / "cache" / "build.gradle", "")
        write(tmp_path / "app" / "settings.gradle.kts", "")
        found = [p.relative_to(tmp_path).as_posix() for p, _ in discover([tmp_path])]
        assert found == ["app/build.gradle.kts", "build.gradle.kts", "legacy/build.gradle"]

    def test_explicit_file_kept_once(self, tmp_path):
        path = write(tmp_path / "build.gradle.kts", "")
        assert discover([path, tmp_path]) == [(path, tmp_path)]

    def test_missing_path_kept(self, tmp_path):
        missing = tmp_path / "missing.gradle"
        assert discover([missing]) == [(missing, tmp_path)]


class TestRunBatch:
    def _project(self, tmp_path):
        write(tmp_path / "a" / "build.gradle.kts", ROOM_ONLY)
        write(tmp_path / "b" / "build.gradle", HILT_ONLY)
        write(tmp_path / "c" / "build.gradle.kts", HILT_ROOM_CONFLICT)
        write(tmp_path / "d" / "build.gradle.kts", "plugins {\n")
        return tmp_path

    def test_errors_do_not_stop_the_batch(self, tmp_path, rules):
        results = run_batch([self._project(tmp_path)], rules)
        assert [r.report.status for r in results] == ["migrated", "migrated", "conflict", "parse-error"]

    def test_parallel_matches_sequential(self, tmp_path, rules):
        project = self._project(tmp_path)
        sequential = run_batch([project], rules)
        parallel = run_batch([project], rules, jobs=4)
        assert [r.path for r in parallel] == [r.path for r in sequential]
        assert [r.output_text for r in parallel] == [r.output_text for r in sequential]


class TestOutputs:
    def test_output_path_in_place(self, room_module, rules):
        result = process_file(room_module / "build.gradle.kts", rules)
        assert output_path(result, None) == room_module / "build.gradle.kts"

    def test_output_path_mirrors_relative_path(self, tmp_path, rules):
        path = write(tmp_path / "project" / "app" / "build.gradle.kts", ROOM_ONLY)
        result = process_file(path, rules, root=tmp_path / "project")
        out = tmp_path / "out"
        assert output_path(result, out) == out / "app" / "build.gradle.kts"

    def test_write_preserves_crlf(self, tmp_path, rules):
        path = tmp_path / "build.gradle.kts"
        path.write_bytes(ROOM_ONLY.replace("\n", "\r\n").encode("utf-8"))
        result = process_file(path, rules)
        write_outputs([result])
        assert path.read_bytes() == ROOM_ONLY_MIGRATED.replace("\n", "\r\n").encode("utf-8")

    def test_unified_diff(self, tmp_build, rules):
        result = process_file(tmp_build(ROOM_ONLY), rules)
        diff = unified_diff(result)
        assert diff.startswith("--- a/")
        assert '-    kapt("androidx.room:room-compiler:2.6.1")\n' in diff
        assert '+    ksp("androidx.room:room-compiler:2.6.1")\n' in diff


class TestParseArgs:
    def test_analyze_defaults(self, tmp_path):
        args = parse_args(["analyze", str(tmp_path)])
        assert args.command == "analyze"
        assert args.format == "text"
        assert args.jobs == 1
        assert args.source_scan is True
        assert args.rules is None

    def test_migrate_flags(self, tmp_path):
        args = parse_args(["migrate", "-n", "-o", str(tmp_path / "out"), "-j", "3", "--no-source-scan",
                           "-vv", "--format", "json", str(tmp_path)])
        assert args.dry_run
        assert args.output == tmp_path / "out"
        assert args.jobs == 3
        assert args.source_scan is False
        assert args.verbose == 2
        assert args.format == "json"


class TestMain:
    def test_analyze_never_writes(self, tmp_build, capsys):
        path = tmp_build(ROOM_ONLY)
        assert main(["analyze", str(path)]) == 0
        assert path.read_text(encoding="utf-8") == ROOM_ONLY
        out = capsys.readouterr().out
        assert "migrated" in out
        assert "->" in out

    def test_migrate_in_place(self, tmp_build, capsys):
        path = tmp_build(HILT_ONLY, "build.gradle")
        assert main(["migrate", str(path)]) == 0
        assert path.read_text(encoding="utf-8") == HILT_ONLY_MIGRATED
        assert f"  ✓ {path}" in capsys.readouterr().out

    def test_single_processor_with_kapt_plugin(self, tmp_build, capsys):
        path = tmp_build('plugins {\n    kotlin("kapt")\n}\ndependencies {\n    kapt("g:a:1.0")\n}\n')
        assert main(["migrate", "--format", "json", str(path)]) == 0
        document = json.loads(capsys.readouterr().out)
        entries = document["files"][0]["entries"]
        assert [(e["kind"], e["code"]) for e in entries] == [("migrate", "plugin"), ("migrate", "dependency")]
        summary = document["summary"]
        assert (summary["migrations"], summary["manual_reviews"], summary["conflicts"]) == (2, 0, 0)
        assert path.read_text(encoding="utf-8") == (
            'plugins {\n    id("com.google.devtools.ksp")\n}\ndependencies {\n    ksp("g:a:1.0")\n}\n'
        )

    def test_kapt_left_in_one_line_plugins_block(self, tmp_build, capsys):
        path = tmp_build(
            'plugins { id("kotlin-kapt") }\n'
            "dependencies {\n"
            '    kapt("androidx.databinding:databinding-compiler:8.2.0")\n'
            '    kapt("g:a:1.0")\n'
            "}\n"
        )
        assert main(["migrate", "--no-source-scan", str(path)]) == 0
        migrated = parse_descriptor(path.read_text(encoding="utf-8"), str(path))
        assert [p.identifier for p in migrated.plugins] == ["kotlin-kapt", "com.google.devtools.ksp"]
        assert "[kapt-still-required]" in capsys.readouterr().out

    def test_migrate_dry_run(self, tmp_build, capsys):
        path = tmp_build(ROOM_ONLY)
        assert main(["migrate", "--dry-run", str(path)]) == 0
        assert path.read_text(encoding="utf-8") == ROOM_ONLY
        out = capsys.readouterr().out
        assert "+++ b/" in out
        assert "+ksp {" in out

    def test_migrate_to_output_dir(self, tmp_path, capsys):
        project = tmp_path / "project"
        write(project / "app" / "build.gradle.kts", ROOM_ONLY)
        out = tmp_path / "out"
        assert main(["migrate", "--output", str(out), "--no-source-scan", str(project)]) == 0
        assert (out / "app" / "build.gradle.kts").read_text(encoding="utf-8") == ROOM_ONLY_MIGRATED
        assert (project / "app" / "build.gradle.kts").read_text(encoding="utf-8") == ROOM_ONLY

    def test_conflict_exit_status(self, tmp_build, capsys):
        path = tmp_build(HILT_ROOM_CONFLICT)
        assert main(["migrate", str(path)]) == 1
        assert path.read_text(encoding="utf-8") == HILT_ROOM_CONFLICT
        assert "[processor-conflict]" in capsys.readouterr().out

    def test_parse_error_exit_status(self, tmp_build, capsys):
        path = tmp_build("plugins {\n")
        assert main(["analyze", str(path)]) == 2
        assert "parse-error" in capsys.readouterr().out

    def test_json_output(self, tmp_build, capsys):
        path = tmp_build(ROOM_ONLY)
        assert main(["migrate", "--format", "json", str(path)]) == 0
        captured = capsys.readouterr()
        document = json.loads(captured.out)
        assert document["summary"]["migrated"] == 1
        assert document["files"][0]["path"] == str(path)
        assert "✓" in captured.err

    def test_bad_rules_file(self, tmp_build, tmp_path, capsys):
        path = tmp_build(ROOM_ONLY)
        assert main(["analyze", "--rules", str(tmp_path / "missing.yaml"), str(path)]) == 2
        assert "ERROR:" in capsys.readouterr().err

    def test_custom_rules(self, tmp_build, tmp_path, capsys):
        rules = write(tmp_path / "rules.yaml", "version: 3\ntarget_plugin: com.google.devtools.ksp\n"
                                               "keywords:\n  kapt: ksp\n")
        path = tmp_build('dependencies {\n    kaptTest("a:b:1")\n    kapt("a:b:1")\n}\n')
        assert main(["migrate", "--rules", str(rules), str(path)]) == 0
        assert path.read_text(encoding="utf-8") == 'dependencies {\n    kaptTest("a:b:1")\n    ksp("a:b:1")\n}\n'
        assert "[unknown-keyword]" in capsys.readouterr().out
