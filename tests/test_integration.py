#!/usr/bin/env python3
"""
Integration tests for the subsplit agent.

These tests run whole events through SubsplitAgent with a recording command
runner, so every decision from payload validation to the final push can be
checked without git or the history tools installed.
"""

import json
import os

import pytest
from unittest.mock import patch

from error_handling import ErrorHandler
from subsplit_agent import (
    FolderSplit,
    PrefixSplit,
    ProjectConfig,
    SplitStrategyKind,
    SubsplitAgent,
    compile_reference_pattern,
    main,
)


SPLIT_SHA = "0123456789abcdef0123456789abcdef01234567"
OTHER_SHA = "fedcba9876543210fedcba9876543210fedcba98"


def payload(url="https://example/repo.git", ref="refs/heads/main"):
    data = {"repository": {"url": url}}
    if ref is not None:
        data["ref"] = ref
    return json.dumps(data)


class TestEndToEnd:
    """Complete events against the three split strategies."""

    def test_prefix_split_is_pushed(self, runner, make_configuration, demo_project, tmp_path):
        """A configured prefix present at the pushed branch ends up on its remote."""
        runner.on('splitsh-lite', output=[SPLIT_SHA])
        configuration = make_configuration(demo_project)
        mirror_path = str(tmp_path / "work" / "Demo")

        with SubsplitAgent(configuration, runner=runner) as agent:
            exit_code = agent.handle(payload())

        assert exit_code == 0
        assert [c for c, _ in runner.commands] == [
            ['git', 'clone', '--bare', 'https://example/repo.git', mirror_path],
            ['git', 'cat-file', '-e', 'refs/heads/main:pkg/a'],
            ['splitsh-lite', '--prefix=pkg/a', '--origin=refs/heads/main', f'--path={mirror_path}'],
            ['git', 'update-ref', 'refs/splits/pkg-a-branch-main-a9ee443e', SPLIT_SHA],
            ['git', 'push', 'git@remote:a.git', 'refs/splits/pkg-a-branch-main-a9ee443e:refs/heads/main'],
        ]

    def test_absent_prefix_is_skipped(self, runner, make_configuration, demo_project, caplog):
        """A prefix missing at the pushed branch is logged and never pushed."""
        runner.on('git', 'cat-file', exit_status=128)
        configuration = make_configuration(demo_project)

        with caplog.at_level("INFO"):
            exit_code = SubsplitAgent(configuration, runner=runner).handle(payload())

        assert exit_code == 0
        assert runner.invoked('splitsh-lite') == []
        assert runner.invoked('git', 'push') == []
        assert "Skipping split pkg/a (not present at refs/heads/main)" in caplog.text

    def test_folder_split_is_rewritten_and_pushed(self, runner, make_configuration, rewrite_project, tmp_path):
        """A tag push rewrites a scratch copy and pushes everything from it."""
        scratch = str(tmp_path / "work" / "Demo.split-core-94a0426e")
        runner.on('git', 'clone', '--mirror', side_effect=lambda command, cwd: os.makedirs(command[-1]))
        configuration = make_configuration(rewrite_project)

        exit_code = SubsplitAgent(configuration, runner=runner).handle(payload(ref="refs/tags/3.1.0"))

        assert exit_code == 0
        mirror_path = str(tmp_path / "work" / "Demo")
        assert runner.commands[2:] == [
            (['git', 'clone', '--mirror', mirror_path, scratch], None),
            (['git-filter-repo', '--force', '--path', 'packages/core/',
              '--path-rename', 'packages/core/:'], scratch),
            (['git', 'push', '--all', 'git@remote:core.git'], scratch),
            (['git', 'push', '--tags', 'git@remote:core.git'], scratch),
        ]
        assert runner.commands[1][0] == ['git', 'cat-file', '-e', 'refs/tags/3.1.0:packages/core']
        assert not os.path.exists(scratch)
        assert os.path.isdir(mirror_path)

    def test_direct_publish(self, runner, make_configuration, publish_project, tmp_path):
        """Direct-publish prefixes are handed to one git-subsplit run."""
        configuration = make_configuration(publish_project)

        exit_code = SubsplitAgent(configuration, runner=runner).handle(
            payload(url="https://example/framework.git", ref="refs/tags/5.2.0")
        )

        assert exit_code == 0
        assert runner.invoked('git-subsplit', 'publish') == [[
            'git-subsplit', 'publish', '--update',
            'src/Http:git@remote:http.git src/Cache:git@remote:cache.git',
            '--no-heads', '--tags=5.2.0',
        ]]
        assert runner.invoked('git', 'push') == []

    def test_mixed_strategies_in_one_project(self, runner, make_configuration):
        project = ProjectConfig(
            name="Mixed",
            source_url="https://example/mixed.git",
            splits=(
                PrefixSplit("pkg/a", "git@remote:a.git"),
                FolderSplit("core", ("packages/core",), remote_url="git@remote:core.git"),
                FolderSplit("docs", ("docs",)),
            )
        )
        runner.on('splitsh-lite', output=[SPLIT_SHA])

        exit_code = SubsplitAgent(make_configuration(project), runner=runner).handle(
            payload(url="https://example/mixed.git")
        )

        assert exit_code == 0
        assert runner.invoked('splitsh-lite')
        assert runner.invoked('git-filter-repo')
        assert runner.invoked('git', 'push', '--all') == [['git', 'push', '--all', 'git@remote:core.git']]


class TestSkippedRequests:
    """Events that end the run early without side effects."""

    def test_unconfigured_repository(self, runner, make_configuration, demo_project, tmp_path):
        configuration = make_configuration(demo_project)

        exit_code = SubsplitAgent(configuration, runner=runner).handle(payload(url="https://example/other.git"))

        assert exit_code == 0
        assert runner.commands == []
        assert not os.path.exists(tmp_path / "work")

    def test_denied_reference(self, runner, make_configuration, tmp_path, caplog):
        project = ProjectConfig(
            name="Demo",
            source_url="https://example/repo.git",
            allowed_reference_pattern=compile_reference_pattern("/^refs\\/(heads\\/main|tags\\/.+)$/"),
            splits=(PrefixSplit("pkg/a", "git@remote:a.git"),)
        )

        with caplog.at_level("INFO"):
            exit_code = SubsplitAgent(make_configuration(project), runner=runner).handle(
                payload(ref="refs/heads/feature")
            )

        assert exit_code == 0
        assert runner.commands == []
        assert "denied reference" in caplog.text
        assert os.path.isdir(tmp_path / "work" / "Demo")

    @pytest.mark.parametrize("ref", ["refs/pull/12/head", "main", "refs/notes/commits"])
    def test_unexpected_reference(self, runner, make_configuration, demo_project, ref):
        exit_code = SubsplitAgent(make_configuration(demo_project), runner=runner).handle(payload(ref=ref))

        assert exit_code == 0
        assert runner.commands == []

    @pytest.mark.parametrize("raw", ["{not json", "[]", '{"ref": "refs/heads/main"}', payload(ref=None)])
    def test_invalid_payload(self, runner, make_configuration, demo_project, raw):
        exit_code = SubsplitAgent(make_configuration(demo_project), runner=runner).handle(raw)

        assert exit_code == 0
        assert runner.commands == []

    def test_invalid_payload_strict(self, runner, make_configuration, demo_project):
        configuration = make_configuration(demo_project, strict_validation=True)

        assert SubsplitAgent(configuration, runner=runner).handle("{not json") == 1


class TestFailures:
    """Exit codes and partial progress when commands fail."""

    def test_extraction_failure_does_not_stop_other_splits(self, runner, make_configuration):
        project = ProjectConfig(
            name="Demo",
            source_url="https://example/repo.git",
            splits=(
                PrefixSplit("pkg/a", "git@remote:a.git"),
                PrefixSplit("pkg/b", "git@remote:b.git"),
            )
        )
        runner.on('splitsh-lite', output=[OTHER_SHA])
        runner.on('splitsh-lite', '--prefix=pkg/a', exit_status=3)
        error_handler = ErrorHandler()

        exit_code = SubsplitAgent(make_configuration(project), runner=runner,
                                  error_handler=error_handler).handle(payload())

        assert exit_code == 3
        assert runner.invoked('git', 'push') == [
            ['git', 'push', 'git@remote:b.git', 'refs/splits/pkg-b-branch-main-92b2053a:refs/heads/main']
        ]

    def test_low_disk_space_fails_only_that_split(self, runner, make_configuration, caplog):
        """A rewrite that cannot get its scratch copy does not block later splits."""
        project = ProjectConfig(
            name="Demo",
            source_url="https://example/repo.git",
            splits=(
                FolderSplit("core", ("packages/core",), remote_url="git@remote:core.git"),
                PrefixSplit("pkg/a", "git@remote:a.git"),
            )
        )
        runner.on('splitsh-lite', output=[SPLIT_SHA])
        configuration = make_configuration(project, min_free_disk_gb=1e9)

        with caplog.at_level("INFO"):
            exit_code = SubsplitAgent(configuration, runner=runner).handle(payload())

        assert exit_code == 1
        assert runner.invoked('git', 'clone', '--mirror') == []
        assert runner.invoked('git', 'push') == [
            ['git', 'push', 'git@remote:a.git', 'refs/splits/pkg-a-branch-main-a9ee443e:refs/heads/main']
        ]
        assert "Split core failed, continuing with remaining splits" in caplog.text

    def test_filesystem_errors_go_through_error_handler(self, runner, make_configuration, demo_project, caplog):
        def unreadable(command, cwd):
            raise PermissionError(13, "Permission denied", cwd)

        runner.on('git', 'cat-file', side_effect=unreadable)
        error_handler = ErrorHandler()

        with caplog.at_level("INFO"):
            with SubsplitAgent(make_configuration(demo_project), runner=runner,
                               error_handler=error_handler) as agent:
                exit_code = agent.handle(payload())

        assert exit_code == 1
        stats = error_handler.get_error_stats()
        assert stats["by_operation"]["filesystem"]["by_category"] == {"filesystem": 1}
        assert "[FILESYSTEM][HIGH]" in caplog.text
        assert "Errors this run: 1 in filesystem" in caplog.text

    def test_push_failure_is_fatal(self, runner, make_configuration):
        project = ProjectConfig(
            name="Demo",
            source_url="https://example/repo.git",
            splits=(
                PrefixSplit("pkg/a", "git@remote:a.git"),
                PrefixSplit("pkg/b", "git@remote:b.git"),
            )
        )
        runner.on('splitsh-lite', output=[SPLIT_SHA])
        runner.on('git', 'push', exit_status=1)

        exit_code = SubsplitAgent(make_configuration(project), runner=runner).handle(payload())

        assert exit_code == 1
        assert len(runner.invoked('splitsh-lite')) == 1

    def test_sync_failure_exit_code(self, runner, make_configuration, demo_project):
        runner.on('git', 'clone', exit_status=128, errors=["fatal: repository not found"])

        exit_code = SubsplitAgent(make_configuration(demo_project), runner=runner).handle(payload())

        assert exit_code == 128
        assert runner.invoked('git', 'cat-file') == []

    def test_failures_reach_monitoring(self, runner, make_configuration, demo_project):
        runner.on('splitsh-lite', exit_status=2)

        with SubsplitAgent(make_configuration(demo_project), runner=runner) as agent:
            agent.handle(payload())
            summary = agent.monitor.get_metrics_summary()

        assert summary["failed_operations"] == 1
        assert summary["successful_operations"] == 1  # sync


class TestRunModes:
    """Current-state, reset and dry-run modes."""

    def test_current_state_publishes_all_heads(self, runner, make_configuration, publish_project, tmp_path):
        mirror_path = tmp_path / "work" / "Framework"
        (mirror_path / "refs").mkdir(parents=True)
        (mirror_path / "HEAD").write_text("ref: refs/heads/main\n")

        exit_code = SubsplitAgent(make_configuration(publish_project), runner=runner,
                                  current_state=True).handle(payload(url="https://example/framework.git", ref=None))

        assert exit_code == 0
        assert runner.commands[0][0][-1] == '+refs/heads/*:refs/heads/*'
        assert runner.invoked('git', 'cat-file')[0][-1] == 'HEAD:src/Http'
        assert runner.invoked('git-subsplit', 'publish')[0][-1] == \
            'src/Http:git@remote:http.git src/Cache:git@remote:cache.git'

    def test_current_state_skips_single_pass(self, runner, make_configuration, demo_project):
        exit_code = SubsplitAgent(make_configuration(demo_project), runner=runner,
                                  current_state=True).handle(payload())

        assert exit_code == 0
        assert runner.invoked('splitsh-lite') == []
        assert runner.invoked('git', 'cat-file') == []

    def test_reset_clones_again(self, runner, make_configuration, demo_project, mirror):
        with open(os.path.join(mirror.path, "stale"), "w") as f:
            f.write("left over from an earlier run")
        runner.on('splitsh-lite', output=[SPLIT_SHA])

        SubsplitAgent(make_configuration(demo_project), runner=runner, reset=True).handle(payload())

        assert runner.commands[0][0][:3] == ['git', 'clone', '--bare']
        assert not os.path.exists(os.path.join(mirror.path, "stale"))

    def test_existing_mirror_is_fetched(self, runner, make_configuration, demo_project, mirror):
        runner.on('splitsh-lite', output=[SPLIT_SHA])

        SubsplitAgent(make_configuration(demo_project), runner=runner).handle(payload())

        assert runner.commands[0] == (
            ['git', 'fetch', '--force', '--prune', '--tags', 'https://example/repo.git',
             '+refs/heads/main:refs/heads/main'],
            mirror.path
        )

    def test_dry_run(self, runner, make_configuration, demo_project):
        runner.on('splitsh-lite', output=[SPLIT_SHA])

        exit_code = SubsplitAgent(make_configuration(demo_project, dry_run=True), runner=runner).handle(payload())

        assert exit_code == 0
        assert runner.invoked('splitsh-lite')
        assert runner.invoked('git', 'push') == []


class TestMain:
    """Exit codes of the command line entry point."""

    @pytest.fixture(autouse=True)
    def quiet_logging(self, monkeypatch):
        monkeypatch.setenv("SUBSPLIT_LOG_FILE", "")
        monkeypatch.delenv("SUBSPLIT_CONFIG", raising=False)
        monkeypatch.delenv("SUBSPLIT_WORKING_DIRECTORY", raising=False)

    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "working-directory": str(tmp_path / "work"),
            "projects": {
                "Demo": {"url": "https://example/repo.git", "splits": {"pkg/a": "git@remote:a.git"}}
            }
        }))
        return str(path)

    def test_missing_payload(self, config_file):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", config_file])
        assert exc_info.value.code == 1

    def test_unknown_option(self, config_file):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", config_file, "--bogus", payload()])
        assert exc_info.value.code == 1

    def test_missing_configuration(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "missing.json"), payload()])
        assert exc_info.value.code == 1

    def test_unconfigured_repository(self, config_file, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", config_file, payload(url="https://example/other.git")])
        assert exc_info.value.code == 0
        assert not os.path.exists(tmp_path / "work")

    def test_malformed_payload(self, config_file):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", config_file, "{not json"])
        assert exc_info.value.code == 0

    def test_malformed_payload_strict(self, config_file):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", config_file, "--strict", "{not json"])
        assert exc_info.value.code == 1

    def test_preflight(self, config_file, capsys):
        with patch('monitoring.shutil.which', return_value="/usr/bin/tool"):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", config_file, "--preflight"])

        assert exc_info.value.code == 0
        health = json.loads(capsys.readouterr().out)
        assert health["checks"]["splitsh-lite"]["status"] == "ok"

    def test_preflight_missing_tool(self, config_file):
        with patch('monitoring.shutil.which', side_effect=lambda name: None if name == "git-filter-repo" else name):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", config_file, "--preflight"])
        assert exc_info.value.code == 1

    def test_unexpected_error(self, config_file, caplog):
        with patch('subsplit_agent.SubsplitAgent.handle', side_effect=RuntimeError("boom")):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", config_file, payload()])

        assert exc_info.value.code == 1
        assert "[UNKNOWN][HIGH] unknown | boom" in caplog.text


def test_strategy_kinds_are_stable():
    assert [k.value for k in SplitStrategyKind] == ["direct-publish", "single-pass", "full-rewrite"]
