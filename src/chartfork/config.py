"""Configuration settings for chartfork."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# Repository layout
PACKAGES_DIR = "packages"
ASSETS_DIR = "assets"
CHARTS_DIR = "charts"

# Package layout (relative to packages/<name>)
PACKAGE_OPTIONS_FILE = "package.yaml"
PACKAGE_TEMPLATES_DIR = "templates"
GENERATED_CHANGES_DIR = "generated-changes"
GENERATED_CHANGES_ADDITIONAL_CHART_DIR = "additional-charts"
GENERATED_CHANGES_DEPENDENCIES_DIR = "dependencies"
GENERATED_CHANGES_OVERLAY_DIR = "overlay"
GENERATED_CHANGES_EXCLUDE_DIR = "exclude"
GENERATED_CHANGES_PATCH_DIR = "patch"
DEPENDENCY_OPTIONS_FILE = "dependency.yaml"

# Chart layout (relative to a chart's working directory)
CHART_CRD_DIR = "crds"
CHART_DEPENDENCIES_DIR = "charts"
CHART_VALIDATE_INSTALL_CRD_FILE = "templates/validate-install-crd.yaml"

# Working directory used when package.yaml does not name one
DEFAULT_WORKING_DIR = "charts"

# Suffix appended to a working directory for the transient upstream copy
ORIGINAL_DIR_SUFFIX = "-original"


@dataclass
class Settings:
    """Application settings."""

    repo_root: Path = field(default_factory=Path.cwd)
    assets_dir: str = ASSETS_DIR
    charts_dir: str = CHARTS_DIR

    @classmethod
    def load(cls, repo_root: Path | str | None = None) -> "Settings":
        """Resolve settings from arguments and environment.

        Search order for the repository root:
        1. explicit ``repo_root`` argument
        2. CHARTFORK_REPO_ROOT env var
        3. current working directory
        """
        if repo_root:
            root = Path(repo_root)
        elif os.environ.get("CHARTFORK_REPO_ROOT"):
            root = Path(os.environ["CHARTFORK_REPO_ROOT"])
        else:
            root = Path.cwd()

        return cls(
            repo_root=root.resolve(),
            assets_dir=os.environ.get("CHARTFORK_ASSETS_DIR", ASSETS_DIR),
            charts_dir=os.environ.get("CHARTFORK_CHARTS_DIR", CHARTS_DIR),
        )

    @property
    def packages_path(self) -> Path:
        """Directory holding one subdirectory per package."""
        return self.repo_root / PACKAGES_DIR
