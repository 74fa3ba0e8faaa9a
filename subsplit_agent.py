#!/usr/bin/env python3
"""
Webhook-triggered Monorepo Subtree Splitter

Handles one push/tag notification for a monorepo per invocation and keeps the
configured sub-paths ("splits") of that monorepo published to their own
remotes:

1. Validates the event payload and matches it against configured projects
2. Classifies the pushed reference as a branch or a tag (or rejects it)
3. Keeps a bare mirror of the monorepo up to date in a per-project directory
4. Skips splits whose path does not exist at the pushed reference
5. Extracts each remaining split with the configured history tool and
   pushes the result under the pushed branch or tag name

Usage:
    python subsplit_agent.py [--config PATH] [--strict] [--dry-run]
                             [--current-state] [--reset] PAYLOAD
    python subsplit_agent.py --preflight

Requirements:
    - git available in PATH
    - git-subsplit, splitsh-lite and/or git-filter-repo, depending on the
      strategies used by the configured projects
    - Python 3.9+
"""

import os
import sys
import json
import logging
import argparse
import subprocess
import shutil
import re
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Optional, Union, Pattern, Tuple

from dotenv import load_dotenv
from tqdm import tqdm

from error_handling import (
    CommandFailed,
    ConfigurationError,
    ErrorHandler,
    ExtractionError,
    InsufficientDiskSpace,
    MalformedPayload,
    MissingField,
    PushError,
    SubsplitError,
    SynchronizationError,
    UnconfiguredRepository,
    UnexpectedShape,
    best_effort,
    get_error_handler,
)
from monitoring import MonitoringAgent, MonitoringConfig, load_monitoring_config


TAG_REFERENCE = re.compile(r'^refs/tags/(.+)$')
BRANCH_REFERENCE = re.compile(r'^refs/heads/(.+)$')
# Trailing ".<digits>" and pre-release token, e.g. "8.1.2-beta3" -> "8.1"
VERSION_SUFFIX = re.compile(r'(\.\d+)?(-(alpha|beta|rc)\d+)?$', re.IGNORECASE)
COMMIT_IDENTIFIER = re.compile(r'^[0-9a-f]{40}$')
PCRE_DELIMITED = re.compile(r'^([^\w\s\\])(.*)\1([imsxu]*)$', re.DOTALL)
PCRE_FLAGS = {'i': re.IGNORECASE, 'm': re.MULTILINE, 's': re.DOTALL, 'x': re.VERBOSE, 'u': 0}

SPLIT_NAMESPACE = 'refs/splits'
DEFAULT_CONFIG_FILE = 'config.json'
DEFAULT_LOG_FILE = 'subsplit.log'


class SplitStrategyKind(Enum):
    """History extraction strategies."""
    DIRECT_PUBLISH = "direct-publish"
    SINGLE_PASS = "single-pass"
    FULL_REWRITE = "full-rewrite"


class ReferenceKind(Enum):
    BRANCH = "branch"
    TAG = "tag"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PrefixSplit:
    """A path prefix published to its own remote."""
    key: str
    remote_url: str

    @property
    def paths(self) -> Tuple[str, ...]:
        return (self.key,)


@dataclass(frozen=True)
class FolderSplit:
    """A set of folders rewritten into the root of a new repository.

    ``additional_history_folders`` stay where they are; they are only kept so
    that commits touching them survive the rewrite.
    """
    key: str
    folders: Tuple[str, ...]
    additional_history_folders: Tuple[str, ...] = ()
    remote_url: Optional[str] = None

    @property
    def paths(self) -> Tuple[str, ...]:
        return self.folders


SplitTarget = Union[PrefixSplit, FolderSplit]


@dataclass(frozen=True)
class ToolPaths:
    """Locations of the external binaries."""
    git: str = "git"
    git_subsplit: str = "git-subsplit"
    splitsh_lite: str = "splitsh-lite"
    git_filter_repo: str = "git-filter-repo"

    def as_dict(self) -> Dict[str, str]:
        return {
            "git": self.git,
            "git-subsplit": self.git_subsplit,
            "splitsh-lite": self.splitsh_lite,
            "git-filter-repo": self.git_filter_repo,
        }


@dataclass(frozen=True)
class ProjectConfig:
    """A monorepo and the splits published from it."""
    name: str
    source_url: str
    mirror_url: Optional[str] = None
    allowed_reference_pattern: Optional[Pattern] = None
    strategy: SplitStrategyKind = SplitStrategyKind.SINGLE_PASS
    splits: Tuple[SplitTarget, ...] = ()

    @property
    def repository_url(self) -> str:
        """URL the mirror is cloned and fetched from."""
        return self.mirror_url or self.source_url


@dataclass(frozen=True)
class Configuration:
    """Process-wide configuration, loaded once per run."""
    working_directory: str
    projects: Dict[str, ProjectConfig] = field(default_factory=dict)
    tools: ToolPaths = field(default_factory=ToolPaths)
    strict_validation: bool = False
    dry_run: bool = False
    min_free_disk_gb: float = 0.0


@dataclass(frozen=True)
class IncomingEvent:
    repository_url: str
    reference: Optional[str] = None


@dataclass(frozen=True)
class ClassifiedReference:
    """A reference parsed into branch/tag form, or a rejection."""
    kind: ReferenceKind
    full_name: str
    name: Optional[str] = None
    derived_branch: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_tag(self) -> bool:
        return self.kind is ReferenceKind.TAG

    @property
    def is_branch(self) -> bool:
        return self.kind is ReferenceKind.BRANCH

    @property
    def rejected(self) -> bool:
        return self.kind is ReferenceKind.REJECTED


@dataclass
class ExecutionResult:
    """Exit status and captured output of one external command."""
    command: List[str]
    exit_status: int
    output_lines: List[str] = field(default_factory=list)
    error_lines: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass(frozen=True)
class Workspace:
    """Handle on a project's working directory.

    The directory holds a bare mirror of the monorepo. Scratch copies used by
    full rewrites live beside it so they never touch the mirror itself.
    """
    root: str
    project_name: str

    @property
    def path(self) -> str:
        return os.path.join(self.root, self.project_name)

    @property
    def subtree_cache_path(self) -> str:
        return os.path.join(self.path, '.subsplit', '.git', 'subtree-cache')

    def has_ref_store(self) -> bool:
        return (os.path.isfile(os.path.join(self.path, 'HEAD')) and
                os.path.isdir(os.path.join(self.path, 'refs')))

    def scratch_path(self, split_key: str) -> str:
        return os.path.join(
            self.root,
            f"{self.project_name}.split-{normalize_ref_component(split_key)}-{short_digest(split_key)}"
        )


@dataclass(frozen=True)
class SplitArtifact:
    """What an extraction produced, ready for publishing."""
    split_key: str
    identifier: Optional[str] = None
    path: Optional[str] = None
    publish_spec: Optional[str] = None


@dataclass
class SplitOutcome:
    split_key: str
    status: str  # 'pushed', 'published', 'skipped', 'failed'
    detail: str = ""
    exit_status: int = 0


@dataclass
class RunReport:
    """Per-split outcomes of one run."""
    project: Optional[str] = None
    reference: Optional[str] = None
    outcomes: List[SplitOutcome] = field(default_factory=list)

    def record(self, split_key: str, status: str, detail: str = "", exit_status: int = 0) -> SplitOutcome:
        outcome = SplitOutcome(split_key, status, detail, exit_status)
        self.outcomes.append(outcome)
        return outcome

    def by_status(self, status: str) -> List[str]:
        return [o.split_key for o in self.outcomes if o.status == status]

    @property
    def exit_status(self) -> int:
        """Status of the first failed split, or 0."""
        for outcome in self.outcomes:
            if outcome.exit_status:
                return outcome.exit_status
        return 0


def normalize_ref_component(raw_name: str) -> str:
    """Collapse anything but letters and digits into single dashes."""
    name = re.sub(r"[^A-Za-z0-9]+", "-", raw_name.strip())
    return name.strip("-") or "split"


def short_digest(*parts: str) -> str:
    """First 8 hex digits of the SHA-1 of ``parts`` joined by newlines.

    Appended to normalized names so that ``pkg/a`` and ``pkg-a`` stay apart.
    """
    return hashlib.sha1("\n".join(parts).encode("utf-8")).hexdigest()[:8]


# ----------------------
# Command execution
# ----------------------
class CommandRunner:
    """Runs external commands and captures their output.

    This is the only place the engine touches processes; everything above it
    can be exercised with a recording substitute.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def run(self, command: List[str], cwd: Optional[str] = None, check: bool = True,
            error: type = CommandFailed) -> ExecutionResult:
        """Run ``command`` to completion.

        With ``check`` a nonzero exit status raises ``error``; otherwise the
        result is returned for the caller to inspect.
        """
        self.logger.debug(f"Running: {' '.join(command)}" + (f" (in {cwd})" if cwd else ""))
        try:
            completed = subprocess.run(
                command,
                cwd=cwd,
                capture_output=True,
                text=True,
                check=False
            )
            result = ExecutionResult(
                command=list(command),
                exit_status=completed.returncode,
                output_lines=completed.stdout.splitlines(),
                error_lines=completed.stderr.splitlines()
            )
        except FileNotFoundError as e:
            result = ExecutionResult(command=list(command), exit_status=127, error_lines=[str(e)])

        if check and not result.ok:
            raise error(
                f"Command {' '.join(command)} had a problem, exit code {result.exit_status}",
                result
            )
        return result


# ----------------------
# Configuration
# ----------------------
def compile_reference_pattern(pattern: str) -> Pattern:
    """Compile an allowed-reference pattern.

    Patterns may be written with PCRE delimiters and trailing flags, such as
    ``/^refs\\/heads\\/(main|\\d+\\.\\d+)$/i``.
    """
    flags = 0
    match = PCRE_DELIMITED.match(pattern)
    if match:
        pattern = match.group(2)
        for flag in match.group(3):
            flags |= PCRE_FLAGS[flag]
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise ConfigurationError(f"Invalid allowedRefsPattern {pattern!r}: {e}", cause=e)


def _parse_path_list(value, what: str, project_name: str) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(p, str) and p.strip() for p in value):
        raise ConfigurationError(f"Project {project_name}: {what} must be a list of paths")
    return tuple(p.strip().rstrip('/') for p in value)


def parse_split(key: str, value, project_name: str) -> SplitTarget:
    """Build a split target from one entry of a project's ``splits`` mapping."""
    if isinstance(value, str):
        return PrefixSplit(key=key.rstrip('/'), remote_url=value)

    if not isinstance(value, dict):
        raise ConfigurationError(f"Project {project_name}: split {key} must be a remote URL or an object")

    if 'folders' in value:
        folders = _parse_path_list(value['folders'], f"split {key} folders", project_name)
        if not folders:
            raise ConfigurationError(f"Project {project_name}: split {key} needs at least one folder")
        extra = _parse_path_list(value.get('additionalHistoryFolders', []),
                                 f"split {key} additionalHistoryFolders", project_name)
        remote = value.get('repository')
        if remote is not None and not isinstance(remote, str):
            raise ConfigurationError(f"Project {project_name}: split {key} repository must be a string")
        return FolderSplit(key=key, folders=folders, additional_history_folders=extra, remote_url=remote or None)

    if isinstance(value.get('remote'), str):
        return PrefixSplit(key=key.rstrip('/'), remote_url=value['remote'])

    raise ConfigurationError(f"Project {project_name}: split {key} needs either 'remote' or 'folders'")


def parse_project(name: str, data) -> ProjectConfig:
    """Build a project configuration from its JSON object."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"Project {name} must be an object")
    url = data.get('url')
    if not isinstance(url, str) or not url:
        raise ConfigurationError(f"Project {name} has no url")

    splits = data.get('splits')
    if not isinstance(splits, dict):
        raise ConfigurationError(f"Project {name} has no splits mapping")

    raw_strategy = data.get('strategy', SplitStrategyKind.SINGLE_PASS.value)
    try:
        strategy = SplitStrategyKind(raw_strategy)
    except ValueError:
        raise ConfigurationError(f"Project {name}: unknown strategy {raw_strategy!r}")
    if strategy is SplitStrategyKind.FULL_REWRITE:
        raise ConfigurationError(
            f"Project {name}: full rewrites are selected per split with 'folders', not as project strategy"
        )

    pattern = data.get('allowedRefsPattern')
    return ProjectConfig(
        name=name,
        source_url=url,
        mirror_url=data.get('repository-url') or None,
        allowed_reference_pattern=compile_reference_pattern(pattern) if pattern else None,
        strategy=strategy,
        splits=tuple(parse_split(key, value, name) for key, value in splits.items())
    )


def parse_configuration(data, strict: Optional[bool] = None, dry_run: bool = False) -> Configuration:
    """Build the run configuration from decoded JSON plus environment overrides."""
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a JSON object")

    working_directory = os.getenv('SUBSPLIT_WORKING_DIRECTORY') or data.get('working-directory')
    if not isinstance(working_directory, str) or not working_directory:
        raise ConfigurationError("working-directory is required")

    projects = data.get('projects')
    if not isinstance(projects, dict):
        raise ConfigurationError("projects must be a mapping of project name to project configuration")

    tools = data.get('tools') or {}
    if not isinstance(tools, dict):
        raise ConfigurationError("tools must be a mapping of tool name to binary path")
    defaults = ToolPaths()
    tool_paths = ToolPaths(
        git=os.getenv('GIT_BINARY') or tools.get('git', defaults.git),
        git_subsplit=os.getenv('GIT_SUBSPLIT_BINARY') or tools.get('git-subsplit', defaults.git_subsplit),
        splitsh_lite=os.getenv('SPLITSH_LITE_BINARY') or tools.get('splitsh-lite', defaults.splitsh_lite),
        git_filter_repo=os.getenv('GIT_FILTER_REPO_BINARY') or tools.get('git-filter-repo', defaults.git_filter_repo),
    )

    try:
        min_free_disk_gb = float(data.get('min-free-disk-gb', 0))
    except (TypeError, ValueError):
        raise ConfigurationError("min-free-disk-gb must be a number")

    return Configuration(
        working_directory=working_directory,
        projects={name: parse_project(name, project) for name, project in projects.items()},
        tools=tool_paths,
        strict_validation=bool(data.get('strict-validation', False)) if strict is None else strict,
        dry_run=dry_run,
        min_free_disk_gb=min_free_disk_gb
    )


def load_configuration(path: Optional[str] = None, strict: Optional[bool] = None,
                       dry_run: bool = False) -> Configuration:
    """Load the JSON configuration file.

    The path defaults to ``SUBSPLIT_CONFIG`` (``.env`` is honoured) and then
    to ``config.json`` in the current directory.
    """
    load_dotenv()
    path = path or os.getenv('SUBSPLIT_CONFIG', DEFAULT_CONFIG_FILE)

    if not os.path.exists(path):
        raise ConfigurationError(f"{path} does not exist")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"could not read {path}: {e}", cause=e)

    return parse_configuration(data, strict=strict, dry_run=dry_run)


# ----------------------
# Event handling
# ----------------------
def validate_payload(raw: Union[str, bytes], require_reference: bool = True,
                     strict: bool = False) -> IncomingEvent:
    """Decode and shape-check the webhook payload."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedPayload(f"Could not decode payload: {e}", cause=e, strict=strict)

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedPayload(f"Could not decode payload: {raw}", cause=e, strict=strict)

    if not isinstance(data, dict):
        raise UnexpectedShape(f"Payload is not a JSON object: {raw}", strict=strict)

    repository = data.get('repository')
    url = repository.get('url') if isinstance(repository, dict) else None
    if not isinstance(url, str) or not url:
        raise MissingField('repository.url', strict=strict)

    if not require_reference:
        return IncomingEvent(repository_url=url)

    reference = data.get('ref')
    if not isinstance(reference, str) or not reference:
        raise MissingField('ref', strict=strict)
    return IncomingEvent(repository_url=url, reference=reference)


def resolve_project(event: IncomingEvent, configuration: Configuration) -> ProjectConfig:
    """Return the first project whose url equals the event's repository url."""
    for project in configuration.projects.values():
        if project.source_url == event.repository_url:
            return project
    raise UnconfiguredRepository(event.repository_url)


def ensure_working_directory(configuration: Configuration, project: ProjectConfig,
                             logger: Optional[logging.Logger] = None) -> Workspace:
    """Create the project's working directory on first use."""
    logger = logger or logging.getLogger(__name__)
    workspace = Workspace(configuration.working_directory, project.name)
    if not os.path.exists(workspace.path):
        logger.info(f"Creating working directory ({workspace.path})")
        os.makedirs(workspace.path, mode=0o750, exist_ok=True)
    return workspace


def derive_branch(tag_name: str) -> str:
    """Map a release tag back onto its maintenance branch (``8.1.2-beta3`` -> ``8.1``)."""
    return VERSION_SUFFIX.sub('', tag_name, count=1)


def classify_reference(reference: str, allowed_pattern: Optional[Pattern] = None) -> ClassifiedReference:
    """Parse a pushed reference into a branch, a tag or a rejection."""
    if allowed_pattern is not None and not allowed_pattern.search(reference):
        return ClassifiedReference(ReferenceKind.REJECTED, reference, reason="denied")

    match = TAG_REFERENCE.match(reference)
    if match:
        name = match.group(1)
        return ClassifiedReference(ReferenceKind.TAG, reference, name=name, derived_branch=derive_branch(name))

    match = BRANCH_REFERENCE.match(reference)
    if match:
        return ClassifiedReference(ReferenceKind.BRANCH, reference, name=match.group(1))

    return ClassifiedReference(ReferenceKind.REJECTED, reference, reason="unexpected reference")


# ----------------------
# Mirror synchronization
# ----------------------
class RepositorySynchronizer:
    """Keeps the bare mirror in a project's working directory current."""

    def __init__(self, runner: CommandRunner, tools: ToolPaths, logger: Optional[logging.Logger] = None):
        self.runner = runner
        self.tools = tools
        self.logger = logger or logging.getLogger(__name__)

    def sync(self, project: ProjectConfig, workspace: Workspace, reference: Optional[str] = None) -> None:
        """Clone the mirror if there is none yet, otherwise fetch into it.

        Without a reference every branch is fetched (current-state mode).
        """
        url = project.repository_url
        if not workspace.has_ref_store():
            self.logger.info(f"📥 Cloning {url} into {workspace.path}")
            self.runner.run(
                [self.tools.git, 'clone', '--bare', url, workspace.path],
                error=SynchronizationError
            )
            return

        refspec = f'+{reference}:{reference}' if reference else '+refs/heads/*:refs/heads/*'
        self.logger.info(f"🔄 Fetching {refspec} and tags from {url}")
        self.runner.run(
            [self.tools.git, 'fetch', '--force', '--prune', '--tags', url, refspec],
            cwd=workspace.path,
            error=SynchronizationError
        )

    def reset(self, workspace: Workspace) -> None:
        """Remove and recreate the working directory so the next sync clones afresh."""
        self.logger.warning(f"Resetting working directory ({workspace.path})")
        if os.path.exists(workspace.path):
            shutil.rmtree(workspace.path)
        os.makedirs(workspace.path, mode=0o750, exist_ok=True)


# ----------------------
# Split strategies
# ----------------------
def select_strategy(project: ProjectConfig, split: SplitTarget) -> SplitStrategyKind:
    """Folder splits are always rewrites; prefix splits follow the project setting."""
    if isinstance(split, FolderSplit):
        return SplitStrategyKind.FULL_REWRITE
    return project.strategy


def probe_path(runner: CommandRunner, git: str, workspace: Workspace, revision: str, path: str) -> bool:
    """Return whether ``path`` exists in the tree of ``revision``."""
    result = runner.run(
        [git, 'cat-file', '-e', f'{revision}:{path.rstrip("/")}'],
        cwd=workspace.path,
        check=False
    )
    return result.ok


@best_effort()
def remove_scratch_directory(path: str) -> None:
    if os.path.exists(path):
        shutil.rmtree(path)


class _MirrorStrategy:
    """Shared presence probe against the mirror."""

    requires_reference = False

    def __init__(self, runner: CommandRunner, tools: ToolPaths, workspace: Workspace,
                 project: ProjectConfig, logger: Optional[logging.Logger] = None):
        self.runner = runner
        self.tools = tools
        self.workspace = workspace
        self.project = project
        self.logger = logger or logging.getLogger(__name__)

    def check_presence(self, split: SplitTarget, reference: Optional[ClassifiedReference]) -> bool:
        revision = reference.full_name if reference else 'HEAD'
        return any(
            probe_path(self.runner, self.tools.git, self.workspace, revision, path)
            for path in split.paths
        )


class DirectPublishStrategy(_MirrorStrategy):
    """Publishes prefixes with git-subsplit, which pushes by itself.

    ``extract`` only queues a ``prefix:remote`` spec; ``publish`` then runs a
    single git-subsplit command for every queued prefix.
    """

    kind = SplitStrategyKind.DIRECT_PUBLISH

    def extract(self, split: PrefixSplit, reference: Optional[ClassifiedReference]) -> SplitArtifact:
        return SplitArtifact(split.key, publish_spec=f"{split.key}:{split.remote_url}")

    def build_publish_command(self, specs: List[str], reference: Optional[ClassifiedReference]) -> List[str]:
        command = [self.tools.git_subsplit, 'publish', '--update', ' '.join(specs)]
        if reference is not None and reference.is_tag:
            command += ['--no-heads', f'--tags={reference.name}']
        elif reference is not None and reference.is_branch:
            command += ['--no-tags', f'--heads={reference.name}']
        return command

    def publish(self, artifacts: List[SplitArtifact], reference: Optional[ClassifiedReference],
                dry_run: bool = False) -> None:
        cache_path = self.workspace.subtree_cache_path
        if os.path.exists(cache_path):
            self.logger.info(f"Removing subtree-cache ({cache_path})")
            shutil.rmtree(cache_path)

        # init fails harmlessly when .subsplit already exists
        self.runner.run(
            [self.tools.git_subsplit, 'init', self.workspace.path],
            cwd=self.workspace.path,
            check=False
        )

        command = self.build_publish_command([a.publish_spec for a in artifacts], reference)
        if dry_run:
            self.logger.info(f"[dry-run] Would run: {' '.join(command)}")
            return
        self.logger.info(f"🚀 Publishing {len(artifacts)} prefix(es) with git-subsplit")
        self.runner.run(command, cwd=self.workspace.path, error=PushError)


class SinglePassStrategy(_MirrorStrategy):
    """Splits one prefix at one reference with splitsh-lite.

    The produced commit only depends on the prefix and the reference, so
    re-running yields the same identifier.
    """

    kind = SplitStrategyKind.SINGLE_PASS
    requires_reference = True

    def extract(self, split: PrefixSplit, reference: ClassifiedReference) -> SplitArtifact:
        result = self.runner.run(
            [self.tools.splitsh_lite, f'--prefix={split.key}', f'--origin={reference.full_name}',
             f'--path={self.workspace.path}'],
            cwd=self.workspace.path,
            error=ExtractionError
        )
        lines = [line.strip() for line in result.output_lines if line.strip()]
        if len(lines) != 1 or not COMMIT_IDENTIFIER.match(lines[0]):
            raise ExtractionError(
                f"splitsh-lite returned no commit identifier for {split.key}: {lines!r}",
                result
            )
        self.logger.info(f"Split {split.key} at {reference.full_name} is {lines[0]}")
        return SplitArtifact(split.key, identifier=lines[0])


class FullRewriteStrategy(_MirrorStrategy):
    """Rewrites a disposable copy of the mirror with git-filter-repo."""

    kind = SplitStrategyKind.FULL_REWRITE

    def __init__(self, runner: CommandRunner, tools: ToolPaths, workspace: Workspace,
                 project: ProjectConfig, logger: Optional[logging.Logger] = None,
                 error_handler: Optional[ErrorHandler] = None, min_free_disk_gb: float = 0.0):
        super().__init__(runner, tools, workspace, project, logger)
        self.error_handler = error_handler or ErrorHandler(self.logger)
        self.min_free_disk_gb = min_free_disk_gb

    def build_filter_command(self, split: FolderSplit) -> List[str]:
        command = [self.tools.git_filter_repo, '--force']
        for folder in split.folders + split.additional_history_folders:
            command += ['--path', f'{folder}/']
        for folder in split.folders:
            command += ['--path-rename', f'{folder}/:']
        return command

    def extract(self, split: FolderSplit, reference: Optional[ClassifiedReference]) -> SplitArtifact:
        scratch = self.workspace.scratch_path(split.key)
        if os.path.exists(scratch):
            self.logger.info(f"Removing stale split directory ({scratch})")
            shutil.rmtree(scratch)

        try:
            self.error_handler.disk_space_guard(self.workspace.root, self.min_free_disk_gb)
        except InsufficientDiskSpace as e:
            raise ExtractionError(f"Cannot copy mirror for {split.key}: {e}", cause=e)

        try:
            self.logger.info(f"📦 Copying mirror to {scratch}")
            self.runner.run(
                [self.tools.git, 'clone', '--mirror', self.workspace.path, scratch],
                error=ExtractionError
            )

            self.logger.info(f"✂️  Rewriting history of {split.key} onto {', '.join(split.folders)}")
            self.runner.run(self.build_filter_command(split), cwd=scratch, error=ExtractionError)
        except ExtractionError:
            remove_scratch_directory(scratch)
            raise
        return SplitArtifact(split.key, path=scratch)


# ----------------------
# Publishing
# ----------------------
class PushReconciler:
    """Pushes extraction results to each split's remote."""

    def __init__(self, runner: CommandRunner, tools: ToolPaths, workspace: Workspace,
                 logger: Optional[logging.Logger] = None, dry_run: bool = False):
        self.runner = runner
        self.tools = tools
        self.workspace = workspace
        self.logger = logger or logging.getLogger(__name__)
        self.dry_run = dry_run

    @staticmethod
    def split_ref_name(split_key: str, reference: ClassifiedReference) -> str:
        """Namespaced ref staging a split result, e.g. ``refs/splits/pkg-a-branch-main-a9ee443e``."""
        component = normalize_ref_component(f"{split_key}-{reference.kind.value}-{reference.name}")
        digest = short_digest(split_key, reference.kind.value, reference.name)
        return f"{SPLIT_NAMESPACE}/{component}-{digest}"

    @staticmethod
    def target_ref_name(reference: ClassifiedReference) -> str:
        prefix = 'refs/tags' if reference.is_tag else 'refs/heads'
        return f"{prefix}/{reference.name}"

    def push(self, artifact: SplitArtifact, split: SplitTarget, reference: Optional[ClassifiedReference]) -> None:
        if artifact.identifier:
            self._push_identifier(artifact, split, reference)
        elif artifact.path:
            self._push_rewrite(artifact, split)
        else:
            raise PushError(f"Nothing to push for split {split.key}")

    def _push_identifier(self, artifact: SplitArtifact, split: PrefixSplit, reference: ClassifiedReference) -> None:
        split_ref = self.split_ref_name(split.key, reference)
        target = self.target_ref_name(reference)

        self.logger.info(f"Recording {artifact.identifier} as {split_ref}")
        self.runner.run(
            [self.tools.git, 'update-ref', split_ref, artifact.identifier],
            cwd=self.workspace.path,
            error=PushError
        )

        command = [self.tools.git, 'push', split.remote_url, f'{split_ref}:{target}']
        if self.dry_run:
            self.logger.info(f"[dry-run] Would run: {' '.join(command)}")
            return
        self.logger.info(f"⬆️  Pushing {split.key} to {split.remote_url} as {target}")
        self.runner.run(command, cwd=self.workspace.path, error=PushError)

    def _push_rewrite(self, artifact: SplitArtifact, split: FolderSplit) -> None:
        commands = [
            [self.tools.git, 'push', '--all', split.remote_url],
            [self.tools.git, 'push', '--tags', split.remote_url],
        ]
        if self.dry_run:
            for command in commands:
                self.logger.info(f"[dry-run] Would run: {' '.join(command)}")
        else:
            self.logger.info(f"⬆️  Pushing all branches and tags of {split.key} to {split.remote_url}")
            for command in commands:
                self.runner.run(command, cwd=artifact.path, error=PushError)

        self.logger.info(f"Removing split directory ({artifact.path})")
        remove_scratch_directory(artifact.path)


# ----------------------
# Orchestration
# ----------------------
class SubsplitAgent:
    """Runs one webhook event through validation, sync, splitting and push."""

    def __init__(self, configuration: Configuration,
                 runner: Optional[CommandRunner] = None,
                 monitor: Optional[MonitoringAgent] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 current_state: bool = False,
                 reset: bool = False):
        self.configuration = configuration
        self.logger = logging.getLogger(__name__)
        self.runner = runner or CommandRunner(self.logger)
        self.monitor = monitor or MonitoringAgent(MonitoringConfig(), self.logger)
        self.error_handler = error_handler or ErrorHandler(self.logger)
        self.current_state = current_state
        self.reset = reset

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        summary = self.monitor.get_metrics_summary()
        if self.monitor.metrics_history:
            self.logger.debug(f"Run metrics: {summary}")
        error_stats = self.error_handler.get_error_stats()
        if error_stats["total_errors"]:
            self.logger.info(
                f"Errors this run: {error_stats['total_errors']} "
                f"in {', '.join(error_stats['by_operation'])}"
            )

    def handle(self, raw_payload: Union[str, bytes]) -> int:
        """Process one event and return the process exit code."""
        try:
            report = self.process(raw_payload)
        except SubsplitError as e:
            if e.exit_code == 0:
                self.logger.info(f"Skipping request ({e})")
                return 0
            return self.error_handler.handle(e)
        except OSError as e:
            return self.error_handler.handle(e)
        return report.exit_status

    def process(self, raw_payload: Union[str, bytes]) -> RunReport:
        configuration = self.configuration
        event = validate_payload(
            raw_payload,
            require_reference=not self.current_state,
            strict=configuration.strict_validation
        )
        self.logger.info(
            f"Received event for {event.repository_url} ({event.reference or 'current state'})"
        )

        project = resolve_project(event, configuration)
        self.logger.info(f"Matched project {project.name}")
        workspace = ensure_working_directory(configuration, project, self.logger)

        reference = None
        if not self.current_state:
            reference = classify_reference(event.reference, project.allowed_reference_pattern)
            if reference.rejected:
                if reference.reason == "denied":
                    self.logger.info(f"Skipping request (denied reference: {event.reference})")
                else:
                    self.logger.info(f"Skipping request (unexpected reference detected: {event.reference})")
                return RunReport(project=project.name, reference=event.reference)
            if reference.is_tag:
                self.logger.info(f"Tag {reference.name} (branch {reference.derived_branch})")
            else:
                self.logger.info(f"Branch {reference.name}")

        synchronizer = RepositorySynchronizer(self.runner, configuration.tools, self.logger)
        if self.reset:
            synchronizer.reset(workspace)

        metrics = self.monitor.start_operation_monitoring(
            'sync', project=project.name, reference=event.reference
        )
        try:
            synchronizer.sync(project, workspace, reference.full_name if reference else None)
        except SynchronizationError as e:
            self.monitor.end_operation_monitoring(metrics, success=False, error_message=str(e))
            raise
        self.monitor.end_operation_monitoring(metrics)

        report = self.run_splits(project, workspace, reference)
        self._log_summary(report)
        return report

    def _build_strategy(self, kind: SplitStrategyKind, project: ProjectConfig, workspace: Workspace):
        args = (self.runner, self.configuration.tools, workspace, project, self.logger)
        if kind is SplitStrategyKind.DIRECT_PUBLISH:
            return DirectPublishStrategy(*args)
        if kind is SplitStrategyKind.SINGLE_PASS:
            return SinglePassStrategy(*args)
        return FullRewriteStrategy(*args, error_handler=self.error_handler,
                                   min_free_disk_gb=self.configuration.min_free_disk_gb)

    def run_splits(self, project: ProjectConfig, workspace: Workspace,
                   reference: Optional[ClassifiedReference]) -> RunReport:
        """Process every split of ``project`` in configuration order."""
        report = RunReport(project=project.name, reference=reference.full_name if reference else None)
        revision = reference.full_name if reference else 'HEAD'
        strategies = {}
        pusher = PushReconciler(self.runner, self.configuration.tools, workspace,
                                self.logger, dry_run=self.configuration.dry_run)
        queued: List[SplitArtifact] = []

        with tqdm(total=len(project.splits), desc=f"🔀 Splitting {project.name}", unit="split") as pbar:
            for split in project.splits:
                kind = select_strategy(project, split)
                if kind not in strategies:
                    strategies[kind] = self._build_strategy(kind, project, workspace)
                strategy = strategies[kind]

                artifact = self._process_split(strategy, split, reference, revision, report, pusher)
                if artifact is not None and artifact.publish_spec:
                    queued.append(artifact)
                pbar.update(1)

        if queued:
            publisher = strategies[SplitStrategyKind.DIRECT_PUBLISH]
            metrics = self.monitor.start_operation_monitoring(
                'publish', project=project.name, reference=report.reference
            )
            try:
                publisher.publish(queued, reference, dry_run=self.configuration.dry_run)
            except PushError as e:
                self.monitor.end_operation_monitoring(metrics, success=False, error_message=str(e))
                raise
            self.monitor.end_operation_monitoring(metrics)
            for artifact in queued:
                report.record(artifact.split_key, 'published')

        return report

    def _process_split(self, strategy, split: SplitTarget, reference: Optional[ClassifiedReference],
                       revision: str, report: RunReport, pusher: PushReconciler) -> Optional[SplitArtifact]:
        if reference is None and strategy.requires_reference:
            self.logger.info(f"Skipping split {split.key} ({strategy.kind.value} needs a reference)")
            report.record(split.key, 'skipped', 'needs a reference')
            return None

        if isinstance(split, FolderSplit) and not split.remote_url:
            self.logger.info(f"Skipping split {split.key} (no repository configured)")
            report.record(split.key, 'skipped', 'no repository configured')
            return None

        self.logger.info(f"Checking whether {split.key} exists at {revision}")
        if not strategy.check_presence(split, reference):
            self.logger.info(f"Skipping split {split.key} (not present at {revision})")
            report.record(split.key, 'skipped', f'not present at {revision}')
            return None

        metrics = self.monitor.start_operation_monitoring(
            f'split:{split.key}', project=strategy.project.name, reference=report.reference
        )
        try:
            artifact = strategy.extract(split, reference)
        except ExtractionError as e:
            self.error_handler.log_error(e)
            self.logger.error(f"Split {split.key} failed, continuing with remaining splits")
            self.monitor.end_operation_monitoring(metrics, success=False, error_message=str(e))
            report.record(split.key, 'failed', str(e), exit_status=e.exit_code)
            return None

        if artifact.publish_spec:
            self.monitor.end_operation_monitoring(metrics)
            return artifact

        try:
            pusher.push(artifact, split, reference)
        except PushError as e:
            self.monitor.end_operation_monitoring(metrics, success=False, error_message=str(e))
            raise
        self.monitor.end_operation_monitoring(metrics)
        report.record(split.key, 'pushed')
        return artifact

    def _log_summary(self, report: RunReport) -> None:
        self.logger.info("=" * 60)
        self.logger.info(f"🎉 SPLITTING COMPLETED FOR {report.project} ({report.reference or 'current state'})")
        self.logger.info("=" * 60)
        for status in ('pushed', 'published', 'skipped', 'failed'):
            keys = report.by_status(status)
            if keys:
                self.logger.info(f"{status.title()}: {', '.join(keys)}")
        if self.configuration.dry_run:
            self.logger.info("This was a dry run - nothing was pushed")


class _ArgumentParser(argparse.ArgumentParser):
    """Argument errors are configuration errors: exit 1, not argparse's 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def setup_logging(log_file: Optional[str] = None) -> None:
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = _ArgumentParser(description="Webhook-triggered monorepo subtree splitter")
    parser.add_argument('payload', nargs='?', help='Webhook payload as JSON')
    parser.add_argument('--config', help=f'Configuration file (default: $SUBSPLIT_CONFIG or {DEFAULT_CONFIG_FILE})')
    parser.add_argument('--strict', action='store_true', default=None,
                        help='Exit 1 instead of 0 on malformed payloads')
    parser.add_argument('--dry-run', action='store_true', help='Extract splits but do not push anything')
    parser.add_argument('--current-state', action='store_true',
                        help='Ignore the payload reference and publish the current state of all branches')
    parser.add_argument('--reset', action='store_true', help='Recreate the working directory before syncing')
    parser.add_argument('--preflight', action='store_true', help='Check that the required tools are installed and exit')
    args = parser.parse_args(argv)

    load_dotenv()
    setup_logging(os.getenv('SUBSPLIT_LOG_FILE', DEFAULT_LOG_FILE))
    logger = logging.getLogger(__name__)

    if args.payload is None and not args.preflight:
        parser.print_usage(sys.stderr)
        sys.exit(1)

    try:
        configuration = load_configuration(args.config, strict=args.strict, dry_run=args.dry_run)
    except ConfigurationError as e:
        logger.error(f"Skipping request ({e})")
        sys.exit(1)

    monitor = MonitoringAgent(load_monitoring_config(), logger)

    if args.preflight:
        health = monitor.health_check(configuration.tools.as_dict())
        print(json.dumps(health, indent=2))
        sys.exit(0 if health["status"] != "unhealthy" else 1)

    try:
        with SubsplitAgent(configuration, monitor=monitor,
                           current_state=args.current_state, reset=args.reset) as agent:
            exit_code = agent.handle(args.payload)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(1)
    except Exception as e:
        sys.exit(get_error_handler(logger).handle(e))

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
