"""Upstream pullers.

A puller fetches a chart from wherever it lives and materializes it at a
path inside a package directory:

- GithubRepository: git clone at a branch and/or commit
- Archive: download and extract a .tgz
- LocalDirectory: copy a directory that already lives in this repository

Use get_puller() to pick the right one from UpstreamOptions; URLs that
match none of the shapes are rejected rather than guessed at.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from chartfork.config import PACKAGES_DIR
from chartfork.errors import ConfigurationError, SourceFetchError
from chartfork.filesystem import (
    download_archive,
    extract_tgz,
    get_abs_path,
    make_subdirectory_root,
    prune_empty_dirs,
    remove_all,
)
from chartfork.options import UpstreamOptions

logger = logging.getLogger(__name__)

# Fixed temporary name for downloaded archives (relative to the package dir)
CHART_ARCHIVE_FILEPATH = "chart.tgz"

HTTPS_URL_FMT = "https://github.com/{owner}/{name}.git"
SSH_URL_FMT = "git@github.com:{owner}/{name}.git"

ARCHIVE_SUFFIXES = (".tgz", ".tar.gz")


class Puller(ABC):
    """Something that can pull a chart into a package directory."""

    @abstractmethod
    def pull(self, root_fs: Path, fs: Path, path: str) -> None:
        """Materialize the upstream at ``fs / path``."""

    @abstractmethod
    def get_options(self) -> UpstreamOptions:
        """Return normalized options that reconstruct this puller."""

    @abstractmethod
    def is_within_package(self) -> bool:
        """True if the upstream already lives inside the repository."""


def _run_git(args: list[str], cwd: Path | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )


def get_github_repository(
    upstream_options: UpstreamOptions, branch: str | None = None
) -> "GithubRepository":
    """Build a GithubRepository from options.

    Raises:
        ConfigurationError: If the URL does not end in .git or lacks owner/name
    """
    url = upstream_options.url
    if not url.endswith(".git"):
        raise ConfigurationError(f"URL does not seem to point to a Git repository: {url}")
    split_url = [p for p in url[: -len(".git")].replace(":", "/").split("/") if p]
    if len(split_url) < 2:
        raise ConfigurationError(f"URL does not seem to be valid for a Git repository: {url}")
    return GithubRepository(
        owner=split_url[-2],
        name=split_url[-1],
        subdirectory=upstream_options.subdirectory,
        commit=upstream_options.commit,
        branch=branch if branch is not None else upstream_options.branch,
    )


class GithubRepository(Puller):
    """A repository hosted on GitHub."""

    def __init__(
        self,
        owner: str,
        name: str,
        subdirectory: str | None = None,
        commit: str | None = None,
        branch: str | None = None,
    ):
        self.owner = owner
        self.name = name
        self.subdirectory = subdirectory
        self.commit = commit
        self.branch = branch

    def get_https_url(self) -> str:
        """HTTPS clone URL."""
        return HTTPS_URL_FMT.format(owner=self.owner, name=self.name)

    def get_ssh_url(self) -> str:
        """SSH clone URL."""
        return SSH_URL_FMT.format(owner=self.owner, name=self.name)

    def pull(self, root_fs: Path, fs: Path, path: str) -> None:
        logger.info(f"Pulling {self} from upstream into {path}")
        if self.commit is None and self.branch is None:
            raise SourceFetchError(
                "If you are pulling from a Git repository, a commit is required in the package.yaml"
            )

        dest = get_abs_path(fs, path)
        clone_args = ["clone"]
        if self.branch is not None:
            clone_args.extend(["--single-branch", "--branch", self.branch])
        clone_args.extend([self.get_https_url(), str(dest)])

        try:
            _run_git(clone_args)
            if self.commit is not None:
                _run_git(["checkout", "--quiet", self.commit], cwd=dest)
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip()
            raise SourceFetchError(
                f"Failed to pull {self} into {path}: {detail or e}"
            ) from e
        except FileNotFoundError as e:
            raise SourceFetchError(f"git executable not found while pulling {self}") from e

        try:
            remove_all(fs, Path(path) / ".git")
        except OSError as e:
            raise SourceFetchError(f"Failed to remove .git from {path}: {e}") from e
        if self.subdirectory:
            try:
                make_subdirectory_root(fs, path, self.subdirectory)
            except OSError as e:
                raise SourceFetchError(
                    f"Failed to use {self.subdirectory} as the root of {path}: {e}"
                ) from e

    def get_options(self) -> UpstreamOptions:
        return UpstreamOptions(
            url=self.get_https_url(),
            subdirectory=self.subdirectory,
            commit=self.commit,
            branch=self.branch,
        )

    def is_within_package(self) -> bool:
        return False

    def __str__(self) -> str:
        repo_str = f"{self.owner}/{self.name}"
        if self.commit is not None:
            repo_str = f"{repo_str}@{self.commit}"
        if self.subdirectory is not None:
            repo_str = f"{repo_str}[path={self.subdirectory}]"
        return repo_str


class Archive(Puller):
    """A URL pointing to a .tgz file."""

    def __init__(self, url: str, subdirectory: str | None = None):
        self.url = url
        self.subdirectory = subdirectory

    def pull(self, root_fs: Path, fs: Path, path: str) -> None:
        logger.info(f"Pulling {self} from upstream into {path}")
        download_archive(fs, self.url, CHART_ARCHIVE_FILEPATH)
        try:
            get_abs_path(fs, path).mkdir(parents=True, exist_ok=True)
            try:
                matched = extract_tgz(
                    fs, CHART_ARCHIVE_FILEPATH, self.subdirectory or "", path, True
                )
                if self.subdirectory and not matched:
                    raise SourceFetchError(
                        f"Subdirectory {self.subdirectory} not found in {self.url}"
                    )
            finally:
                prune_empty_dirs(fs, path)
        finally:
            remove_all(fs, CHART_ARCHIVE_FILEPATH)

    def get_options(self) -> UpstreamOptions:
        return UpstreamOptions(url=self.url, subdirectory=self.subdirectory)

    def is_within_package(self) -> bool:
        return False

    def __str__(self) -> str:
        repo_str = self.url
        if self.subdirectory is not None:
            repo_str = f"{repo_str}[path={self.subdirectory}]"
        return repo_str


class LocalDirectory(Puller):
    """A chart that already lives under packages/ in this repository."""

    def __init__(self, path: str, subdirectory: str | None = None):
        self.path = path
        self.subdirectory = subdirectory

    def pull(self, root_fs: Path, fs: Path, path: str) -> None:
        logger.info(f"Pulling {self} from local repository into {path}")
        src = get_abs_path(root_fs, self.path)
        if self.subdirectory:
            src = src / self.subdirectory
        if not src.is_dir():
            raise SourceFetchError(f"Local upstream {src} does not exist")
        try:
            shutil.copytree(src, get_abs_path(fs, path), dirs_exist_ok=True)
        except OSError as e:
            raise SourceFetchError(f"Failed to copy {src} into {path}: {e}") from e

    def get_options(self) -> UpstreamOptions:
        return UpstreamOptions(url=self.path, subdirectory=self.subdirectory)

    def is_within_package(self) -> bool:
        return True

    def __str__(self) -> str:
        repo_str = self.path
        if self.subdirectory is not None:
            repo_str = f"{repo_str}[path={self.subdirectory}]"
        return repo_str


def get_puller(upstream_options: UpstreamOptions) -> Puller:
    """Pick the puller matching the shape of the upstream URL.

    Raises:
        ConfigurationError: If the URL matches no known upstream kind
    """
    url = upstream_options.url
    if url.endswith(".git"):
        return get_github_repository(upstream_options)
    if url.endswith(ARCHIVE_SUFFIXES):
        if not url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Archive URL must be http(s): {url}")
        return Archive(url=url, subdirectory=upstream_options.subdirectory)
    if url.startswith(f"{PACKAGES_DIR}/"):
        return LocalDirectory(path=url, subdirectory=upstream_options.subdirectory)
    raise ConfigurationError(
        f"URL does not point to a Git repository (.git), an archive (.tgz) "
        f"or a local {PACKAGES_DIR}/ directory: {url}"
    )
