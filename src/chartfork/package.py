"""A package: packages/<name>/package.yaml plus its charts.

Sequences the main chart and additional charts so that CRD charts always
see the main chart in the state they expect:

- prepare: main, then additional charts, then move CRDs out of main
- generate_patch: move CRDs back into main, patch everything, move them out again
- generate_charts: export every chart under the package version
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from chartfork.charts import AdditionalChart, Chart, get_original_dir
from chartfork.config import PACKAGE_OPTIONS_FILE, PACKAGES_DIR
from chartfork.errors import ChartforkError, ConfigurationError
from chartfork.filesystem import remove_all
from chartfork.options import PackageOptions, load_package_options

logger = logging.getLogger(__name__)


@dataclass
class Package:
    """A package and the charts it produces."""

    name: str
    root_fs: Path
    pkg_fs: Path
    options: PackageOptions
    chart: Chart
    additional_charts: list[AdditionalChart] = field(default_factory=list)

    @classmethod
    def load(cls, root_fs: Path | str, name: str) -> "Package":
        """Load packages/<name>/package.yaml.

        Raises:
            ConfigurationError: If the package or its options are invalid
        """
        root_fs = Path(root_fs)
        pkg_fs = root_fs / PACKAGES_DIR / name
        if not pkg_fs.is_dir():
            raise ConfigurationError(f"Package {name} does not exist at {pkg_fs}")
        try:
            options = load_package_options(pkg_fs, PACKAGE_OPTIONS_FILE)
        except ConfigurationError as e:
            raise ConfigurationError(f"Unable to read package.yaml for {name}: {e}") from e

        chart = Chart.from_options(options.main_chart)
        additional_charts = [AdditionalChart.from_options(o) for o in options.additional_charts]

        working_dirs = [chart.working_dir] + [c.working_dir for c in additional_charts]
        if len(set(working_dirs)) != len(working_dirs):
            raise ConfigurationError(
                f"Package {name} reuses a working directory: {working_dirs}"
            )

        return cls(
            name=name,
            root_fs=root_fs,
            pkg_fs=pkg_fs,
            options=options,
            chart=chart,
            additional_charts=additional_charts,
        )

    @property
    def version(self) -> str:
        return self.options.version

    def prepare(self) -> None:
        """Prepare the main chart and every additional chart."""
        logger.info(f"Preparing package {self.name}")
        self.chart.prepare(self.root_fs, self.pkg_fs)
        for additional in self.additional_charts:
            additional.prepare(self.root_fs, self.pkg_fs)
        for additional in self.additional_charts:
            additional.apply_main_changes(self.pkg_fs)

    def generate_patch(self) -> None:
        """Record local edits of every chart as changesets."""
        logger.info(f"Generating patch for package {self.name}")
        for additional in reversed(self.additional_charts):
            additional.revert_main_changes(self.pkg_fs)
        self.chart.generate_patch(self.root_fs, self.pkg_fs)
        for additional in self.additional_charts:
            additional.generate_patch(self.root_fs, self.pkg_fs)
        for additional in self.additional_charts:
            additional.apply_main_changes(self.pkg_fs)

    def generate_charts(self, assets_dir: str, charts_dir: str) -> list[Path]:
        """Export every chart of the package.

        Returns:
            Paths to the written archives (empty when doNotRelease is set)
        """
        if self.options.do_not_release:
            logger.info(f"Skipping package {self.name}: marked doNotRelease")
            return []
        archives = [
            self.chart.generate_chart(
                self.root_fs, self.pkg_fs, self.version, assets_dir, charts_dir
            )
        ]
        for additional in self.additional_charts:
            archives.append(
                additional.generate_chart(
                    self.root_fs, self.pkg_fs, self.version, assets_dir, charts_dir
                )
            )
        return archives

    def clean(self) -> None:
        """Remove every working directory and any leftover original directory."""
        charts: list[Chart | AdditionalChart] = [self.chart, *self.additional_charts]
        working_dirs = [
            c.working_dir
            for c in charts
            if c.upstream is None or not c.upstream.is_within_package()
        ]
        for working_dir in working_dirs:
            for path in (working_dir, get_original_dir(working_dir)):
                try:
                    remove_all(self.pkg_fs, path)
                except OSError as e:
                    raise ChartforkError(
                        f"Encountered error while trying to clean up {path} in {self.name}: {e}"
                    ) from e
        logger.info(f"Cleaned package {self.name}")


def list_packages(root_fs: Path | str) -> list[str]:
    """Names of every package under packages/ that has a package.yaml."""
    packages_dir = Path(root_fs) / PACKAGES_DIR
    if not packages_dir.is_dir():
        return []
    return sorted(
        p.parent.relative_to(packages_dir).as_posix()
        for p in packages_dir.rglob(PACKAGE_OPTIONS_FILE)
        if p.is_file()
    )
