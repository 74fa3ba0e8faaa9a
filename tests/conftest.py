import pytest

from error_handling import CommandFailed
from subsplit_agent import (
    Configuration,
    ExecutionResult,
    FolderSplit,
    PrefixSplit,
    ProjectConfig,
    SplitStrategyKind,
    Workspace,
)


class RecordingRunner:
    """Stands in for CommandRunner: records commands, answers from rules.

    Rules match on a command prefix; the most recently added matching rule
    wins. Unmatched commands succeed with no output.
    """

    def __init__(self):
        self.commands = []
        self.rules = []

    def on(self, *prefix, exit_status=0, output=None, errors=None, side_effect=None):
        self.rules.append((list(prefix), exit_status, output or [], errors or [], side_effect))
        return self

    def run(self, command, cwd=None, check=True, error=CommandFailed):
        self.commands.append((list(command), cwd))
        result = ExecutionResult(list(command), 0)
        for prefix, exit_status, output, errors, side_effect in reversed(self.rules):
            if list(command[:len(prefix)]) == prefix:
                if side_effect:
                    side_effect(command, cwd)
                result = ExecutionResult(list(command), exit_status, list(output), list(errors))
                break
        if check and not result.ok:
            raise error(f"Command {' '.join(command)} had a problem, exit code {result.exit_status}", result)
        return result

    def invoked(self, *prefix):
        """Commands starting with ``prefix``, in call order."""
        return [c for c, _ in self.commands if c[:len(prefix)] == list(prefix)]


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def demo_project():
    return ProjectConfig(
        name="Demo",
        source_url="https://example/repo.git",
        splits=(PrefixSplit("pkg/a", "git@remote:a.git"),)
    )


@pytest.fixture
def rewrite_project():
    return ProjectConfig(
        name="Demo",
        source_url="https://example/repo.git",
        splits=(FolderSplit("core", ("packages/core",), remote_url="git@remote:core.git"),)
    )


@pytest.fixture
def publish_project():
    return ProjectConfig(
        name="Framework",
        source_url="https://example/framework.git",
        strategy=SplitStrategyKind.DIRECT_PUBLISH,
        splits=(
            PrefixSplit("src/Http", "git@remote:http.git"),
            PrefixSplit("src/Cache", "git@remote:cache.git"),
        )
    )


@pytest.fixture
def make_configuration(tmp_path):
    def _make(*projects, **kwargs):
        return Configuration(
            working_directory=str(tmp_path / "work"),
            projects={p.name: p for p in projects},
            **kwargs
        )
    return _make


@pytest.fixture
def mirror(tmp_path):
    """A workspace that already looks like a bare mirror."""
    workspace = Workspace(str(tmp_path / "work"), "Demo")
    (tmp_path / "work" / "Demo" / "refs").mkdir(parents=True)
    (tmp_path / "work" / "Demo" / "HEAD").write_text("ref: refs/heads/main\n")
    return workspace
