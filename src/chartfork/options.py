"""Package options loading and serialization.

package.yaml lives at packages/<name>/package.yaml. The main chart's
upstream is written inline at the top level; additional charts are
listed under ``additionalCharts``:

    url: https://github.com/acme/widget.git
    subdirectory: charts/widget
    commit: 0123abcd
    workingDir: charts
    version: 1.2.0
    additionalCharts:
      - workingDir: charts-crd
        crdOptions:
          templateDirectory: crd-template
          crdDirectory: templates
          addCRDValidationToMainChart: true

Unknown keys are ignored so that newer files stay loadable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from chartfork.config import DEFAULT_WORKING_DIR
from chartfork.errors import ConfigurationError


@dataclass(frozen=True)
class UpstreamOptions:
    """Where a chart's content comes from.

    Fields:
        url: Git URL (ending in .git), archive URL, or packages/ path
        subdirectory: Directory within the upstream to treat as the root
        commit: Commit hash to check out
        branch: Branch to clone
    """

    url: str
    subdirectory: str | None = None
    commit: str | None = None
    branch: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "UpstreamOptions":
        """Create from a package.yaml mapping."""
        url = data.get("url") or ""
        if not url:
            raise ConfigurationError("Missing required field: url")
        return cls(
            url=url,
            subdirectory=data.get("subdirectory") or None,
            commit=_optional_str(data.get("commit")),
            branch=data.get("branch") or None,
        )

    def to_dict(self) -> dict:
        """Serialize to dict (omit empty fields)."""
        result = {"url": self.url}
        if self.subdirectory:
            result["subdirectory"] = self.subdirectory
        if self.commit:
            result["commit"] = self.commit
        if self.branch:
            result["branch"] = self.branch
        return result


@dataclass(frozen=True)
class CRDChartOptions:
    """Options for an additional chart generated from the main chart's CRDs."""

    template_directory: str
    crd_directory: str = "templates"
    add_crd_validation_to_main_chart: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "CRDChartOptions":
        """Create from a package.yaml mapping."""
        template_directory = data.get("templateDirectory") or ""
        if not template_directory:
            raise ConfigurationError("crdOptions requires templateDirectory")
        return cls(
            template_directory=template_directory,
            crd_directory=data.get("crdDirectory") or "templates",
            add_crd_validation_to_main_chart=bool(
                data.get("addCRDValidationToMainChart", False)
            ),
        )

    def to_dict(self) -> dict:
        """Serialize to dict."""
        return {
            "templateDirectory": self.template_directory,
            "crdDirectory": self.crd_directory,
            "addCRDValidationToMainChart": self.add_crd_validation_to_main_chart,
        }


@dataclass(frozen=True)
class AdditionalChartOptions:
    """An additional chart packaged alongside the main chart."""

    working_dir: str = DEFAULT_WORKING_DIR
    upstream_options: UpstreamOptions | None = None
    crd_options: CRDChartOptions | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "AdditionalChartOptions":
        """Create from a package.yaml mapping."""
        upstream = data.get("upstreamOptions")
        crd = data.get("crdOptions")
        return cls(
            working_dir=data.get("workingDir") or DEFAULT_WORKING_DIR,
            upstream_options=UpstreamOptions.from_dict(upstream) if upstream else None,
            crd_options=CRDChartOptions.from_dict(crd) if crd else None,
        )

    def to_dict(self) -> dict:
        """Serialize to dict."""
        result: dict = {"workingDir": self.working_dir}
        if self.upstream_options:
            result["upstreamOptions"] = self.upstream_options.to_dict()
        if self.crd_options:
            result["crdOptions"] = self.crd_options.to_dict()
        return result


@dataclass(frozen=True)
class MainChartOptions:
    """The package's main chart: its working directory and upstream."""

    working_dir: str = DEFAULT_WORKING_DIR
    upstream_options: UpstreamOptions | None = None


@dataclass(frozen=True)
class PackageOptions:
    """Contents of a package.yaml file."""

    main_chart: MainChartOptions = field(default_factory=MainChartOptions)
    version: str = ""
    package_version: int | None = None
    additional_charts: list[AdditionalChartOptions] = field(default_factory=list)
    do_not_release: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "PackageOptions":
        """Create from the parsed package.yaml document."""
        upstream = UpstreamOptions.from_dict(data) if data.get("url") else None
        package_version = data.get("packageVersion")
        return cls(
            main_chart=MainChartOptions(
                working_dir=data.get("workingDir") or DEFAULT_WORKING_DIR,
                upstream_options=upstream,
            ),
            version=_optional_str(data.get("version")) or "",
            package_version=int(package_version) if package_version is not None else None,
            additional_charts=[
                AdditionalChartOptions.from_dict(c)
                for c in data.get("additionalCharts") or []
            ],
            do_not_release=bool(data.get("doNotRelease", False)),
        )

    def to_dict(self) -> dict:
        """Serialize back to the package.yaml shape."""
        result: dict = {}
        if self.main_chart.upstream_options:
            result.update(self.main_chart.upstream_options.to_dict())
        result["workingDir"] = self.main_chart.working_dir
        if self.version:
            result["version"] = self.version
        if self.package_version is not None:
            result["packageVersion"] = self.package_version
        if self.additional_charts:
            result["additionalCharts"] = [c.to_dict() for c in self.additional_charts]
        if self.do_not_release:
            result["doNotRelease"] = True
        return result


def _optional_str(value) -> str | None:
    """YAML reads bare hashes and versions as numbers; keep them as strings."""
    if value is None or value == "":
        return None
    return str(value)


def load_yaml_file(fs: Path, path: str | Path) -> dict:
    """Load a YAML mapping relative to a base directory."""
    file_path = Path(fs) / path
    if not file_path.exists():
        raise ConfigurationError(f"Unable to find {file_path}")
    try:
        with file_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Unable to parse {file_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a mapping in {file_path}")
    return data


def load_package_options(fs: Path, path: str | Path) -> PackageOptions:
    """Load package.yaml relative to a package directory."""
    return PackageOptions.from_dict(load_yaml_file(fs, path))


def load_upstream_options(fs: Path, path: str | Path) -> UpstreamOptions:
    """Load a dependency.yaml (a bare UpstreamOptions mapping)."""
    return UpstreamOptions.from_dict(load_yaml_file(fs, path))


def save_yaml_file(fs: Path, path: str | Path, data: dict) -> None:
    """Write a mapping as YAML, preserving key order."""
    file_path = Path(fs) / path
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
