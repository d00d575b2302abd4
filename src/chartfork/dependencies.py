"""Prepare a chart's subcharts from their own upstreams.

Each dependency is declared by a dependency.yaml holding UpstreamOptions:

    <changes_root>/dependencies/<name>/dependency.yaml

Preparing pulls every declared dependency into <chart>/charts/<name>,
recurses into <changes_root>/dependencies/<name> for nested dependencies,
and points the matching Chart.yaml (or requirements.yaml) entry at the
local copy with ``repository: file://./charts/<name>``.
"""

from __future__ import annotations

import logging
from pathlib import Path

from chartfork.config import (
    CHART_DEPENDENCIES_DIR,
    DEPENDENCY_OPTIONS_FILE,
    GENERATED_CHANGES_DEPENDENCIES_DIR,
)
from chartfork.errors import ConfigurationError, SourceFetchError
from chartfork.filesystem import get_abs_path, path_exists, remove_all
from chartfork.options import load_upstream_options, load_yaml_file, save_yaml_file
from chartfork.puller import get_puller

logger = logging.getLogger(__name__)

DEPENDENCY_MANIFESTS = ("Chart.yaml", "requirements.yaml")


def list_dependencies(fs: Path, changes_root: str | Path) -> list[str]:
    """Names of the dependencies declared under a changes root, sorted."""
    deps_dir = get_abs_path(fs, Path(changes_root) / GENERATED_CHANGES_DEPENDENCIES_DIR)
    if not deps_dir.is_dir():
        return []
    return sorted(
        d.name for d in deps_dir.iterdir() if (d / DEPENDENCY_OPTIONS_FILE).is_file()
    )


def update_chart_dependency(fs: Path, chart_dir: str | Path, name: str) -> bool:
    """Point a declared dependency at its local copy under charts/.

    Returns:
        True if a matching dependency entry was found and rewritten
    """
    for manifest in DEPENDENCY_MANIFESTS:
        manifest_path = Path(chart_dir) / manifest
        if not path_exists(fs, manifest_path):
            continue
        data = load_yaml_file(fs, manifest_path)
        updated = False
        for dep in data.get("dependencies") or []:
            if isinstance(dep, dict) and dep.get("name") == name:
                dep["repository"] = f"file://./{CHART_DEPENDENCIES_DIR}/{name}"
                updated = True
        if updated:
            save_yaml_file(fs, manifest_path, data)
            return True
    return False


def prepare_dependencies(
    root_fs: Path, fs: Path, chart_dir: str | Path, changes_root: str | Path
) -> None:
    """Pull every dependency declared under ``changes_root`` into ``chart_dir``.

    Raises:
        ConfigurationError: If a dependency.yaml is invalid
        SourceFetchError: If a dependency cannot be pulled
    """
    for name in list_dependencies(fs, changes_root):
        dep_root = Path(changes_root) / GENERATED_CHANGES_DEPENDENCIES_DIR / name
        try:
            upstream = get_puller(
                load_upstream_options(fs, dep_root / DEPENDENCY_OPTIONS_FILE)
            )
        except ConfigurationError as e:
            raise ConfigurationError(
                f"Invalid dependency {name} declared in {dep_root}: {e}"
            ) from e

        dep_dir = Path(chart_dir) / CHART_DEPENDENCIES_DIR / name
        logger.info(f"Preparing dependency {name} in {dep_dir}")
        try:
            remove_all(fs, dep_dir)
        except OSError as e:
            raise SourceFetchError(
                f"Failed to clean up {dep_dir} before pulling dependency {name}: {e}"
            ) from e
        try:
            upstream.pull(root_fs, fs, str(dep_dir))
        except SourceFetchError as e:
            raise SourceFetchError(f"Failed to pull dependency {name} into {dep_dir}: {e}") from e

        prepare_dependencies(root_fs, fs, dep_dir, dep_root)

        if not update_chart_dependency(fs, chart_dir, name):
            logger.warning(
                f"Dependency {name} is not listed in {chart_dir}/Chart.yaml; "
                f"it was pulled into {dep_dir} but no reference was updated"
            )
