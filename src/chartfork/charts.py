"""Chart lifecycle: prepare, generate patch, apply/revert main changes, export.

A package has one main chart and any number of additional charts. Each
chart has a working directory inside the package (the live copy, possibly
edited by hand) and a generated-changes root holding the changeset that
turns a fresh upstream pull into that working copy.

    prepare        pull upstream -> prepare dependencies -> apply changes
    generate_patch pull upstream into <working_dir>-original -> prepare
                   dependencies -> diff against <working_dir> -> remove
                   <working_dir>-original

Additional charts may instead be CRD charts, generated from a template in
the package plus the CRDs of the main chart. CRD charts are never patched;
apply_main_changes / revert_main_changes move the CRDs out of the main chart
and back again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from chartfork.change import apply_changes, generate_changes
from chartfork.config import (
    CHART_CRD_DIR,
    DEFAULT_WORKING_DIR,
    GENERATED_CHANGES_ADDITIONAL_CHART_DIR,
    GENERATED_CHANGES_DIR,
    ORIGINAL_DIR_SUFFIX,
    PACKAGE_OPTIONS_FILE,
    PACKAGE_TEMPLATES_DIR,
)
from chartfork.dependencies import prepare_dependencies
from chartfork.errors import (
    ChartforkError,
    ConfigurationError,
    MissingCRDsError,
    NotPreparedError,
    wrap_error,
)
from chartfork.filesystem import get_abs_path, path_exists, remove_all, walk_files
from chartfork.helm import (
    add_crd_validation_to_chart,
    copy_crds_from_chart,
    delete_crds_from_chart,
    export_helm_chart,
    generate_crd_chart_from_template,
    is_crd_file,
    remove_crd_validation_from_chart,
)
from chartfork.options import (
    AdditionalChartOptions,
    CRDChartOptions,
    MainChartOptions,
    load_package_options,
)
from chartfork.puller import Puller, get_puller

logger = logging.getLogger(__name__)


def get_original_dir(working_dir: str) -> str:
    """Directory where the pristine upstream is pulled while generating a patch."""
    return f"{working_dir}{ORIGINAL_DIR_SUFFIX}"


def ensure_prepared(pkg_fs: Path, working_dir: str) -> None:
    """Raise NotPreparedError unless the working directory exists."""
    if not path_exists(pkg_fs, working_dir):
        raise NotPreparedError(f"Working directory {working_dir} has not been prepared yet")


def _remove_working_dir(pkg_fs: Path, working_dir: str) -> None:
    try:
        remove_all(pkg_fs, working_dir)
    except OSError as e:
        raise ChartforkError(
            f"Encountered error while trying to clean up {working_dir} before preparing: {e}"
        ) from e


def _remove_original_dir(pkg_fs: Path, original_dir: str) -> None:
    try:
        remove_all(pkg_fs, original_dir)
    except OSError as e:
        raise ChartforkError(
            f"Encountered error while trying to remove {original_dir}: {e}"
        ) from e


def _pull_with_dependencies(
    upstream: Puller, root_fs: Path, pkg_fs: Path, target_dir: str, changes_root: str
) -> None:
    """Pull the upstream into ``target_dir`` and prepare its dependencies."""
    try:
        upstream.pull(root_fs, pkg_fs, target_dir)
    except ChartforkError as e:
        raise wrap_error(
            e, f"Encountered error while trying to pull upstream into {target_dir}"
        ) from e
    try:
        prepare_dependencies(root_fs, pkg_fs, target_dir, changes_root)
    except ChartforkError as e:
        raise wrap_error(
            e, f"Encountered error while trying to prepare dependencies in {target_dir}"
        ) from e


def _generate_patch_from_upstream(
    upstream: Puller, root_fs: Path, pkg_fs: Path, working_dir: str, changes_root: str
) -> None:
    """Diff a fresh upstream pull against the working directory.

    The original directory is removed on every exit path.
    """
    original_dir = get_original_dir(working_dir)
    _remove_original_dir(pkg_fs, original_dir)
    try:
        _pull_with_dependencies(upstream, root_fs, pkg_fs, original_dir, changes_root)
        try:
            generate_changes(pkg_fs, original_dir, working_dir, changes_root)
        except ChartforkError as e:
            raise wrap_error(
                e,
                f"Encountered error while generating changes from {original_dir} to "
                f"{working_dir} and placing it in {changes_root}",
            ) from e
    finally:
        _remove_original_dir(pkg_fs, original_dir)


def _apply_changes(pkg_fs: Path, working_dir: str, changes_root: str) -> None:
    try:
        apply_changes(pkg_fs, working_dir, changes_root)
    except ChartforkError as e:
        raise wrap_error(
            e, f"Encountered error while trying to apply changes to {working_dir}"
        ) from e


def _export(
    root_fs: Path,
    pkg_fs: Path,
    working_dir: str,
    package_version: str,
    assets_dir: str,
    charts_dir: str,
) -> Path:
    try:
        return export_helm_chart(
            root_fs, pkg_fs, working_dir, package_version, assets_dir, charts_dir
        )
    except ChartforkError as e:
        raise wrap_error(
            e, f"Encountered error while trying to export Helm chart for {working_dir}"
        ) from e


@dataclass
class Chart:
    """The main chart of a package."""

    working_dir: str = DEFAULT_WORKING_DIR
    upstream: Puller | None = None

    @classmethod
    def from_options(cls, options: MainChartOptions) -> "Chart":
        """Build from the main chart section of package.yaml."""
        upstream = None
        if options.upstream_options is not None:
            upstream = get_puller(options.upstream_options)
        return cls(working_dir=options.working_dir, upstream=upstream)

    def _require_upstream(self) -> Puller:
        if self.upstream is None:
            raise ConfigurationError("No upstream provided to prepare the main chart")
        return self.upstream

    def prepare(self, root_fs: Path, pkg_fs: Path) -> None:
        """Pull the upstream into the working directory and replay local changes."""
        upstream = self._require_upstream()
        if upstream.is_within_package():
            logger.info("Local chart does not need to be prepared")
            return

        _remove_working_dir(pkg_fs, self.working_dir)
        _pull_with_dependencies(
            upstream, root_fs, pkg_fs, self.working_dir, self.generated_changes_root_dir()
        )
        _apply_changes(pkg_fs, self.working_dir, self.generated_changes_root_dir())

    def generate_patch(self, root_fs: Path, pkg_fs: Path) -> None:
        """Record the working directory's local edits as a changeset."""
        upstream = self._require_upstream()
        if upstream.is_within_package():
            logger.info("Local chart does not need to be patched")
            return
        ensure_prepared(pkg_fs, self.working_dir)
        _generate_patch_from_upstream(
            upstream, root_fs, pkg_fs, self.working_dir, self.generated_changes_root_dir()
        )

    def generate_chart(
        self,
        root_fs: Path,
        pkg_fs: Path,
        package_version: str,
        assets_dir: str,
        charts_dir: str,
    ) -> Path:
        """Export the working directory as a versioned chart."""
        ensure_prepared(pkg_fs, self.working_dir)
        return _export(
            root_fs, pkg_fs, self.working_dir, package_version, assets_dir, charts_dir
        )

    def original_dir(self) -> str:
        return get_original_dir(self.working_dir)

    def generated_changes_root_dir(self) -> str:
        """The main chart's changes live directly under generated-changes/."""
        return GENERATED_CHANGES_DIR


@dataclass
class AdditionalChart:
    """Any additional chart packaged along with the main chart.

    Exactly one of ``upstream`` or ``crd_chart_options`` is expected. When
    CRD chart options are set they decide the lifecycle.
    """

    working_dir: str = DEFAULT_WORKING_DIR
    upstream: Puller | None = None
    crd_chart_options: CRDChartOptions | None = None

    @classmethod
    def from_options(cls, options: AdditionalChartOptions) -> "AdditionalChart":
        """Build from an additionalCharts entry of package.yaml."""
        upstream = None
        if options.upstream_options is not None:
            upstream = get_puller(options.upstream_options)
        return cls(
            working_dir=options.working_dir,
            upstream=upstream,
            crd_chart_options=options.crd_options,
        )

    @property
    def is_crd_chart(self) -> bool:
        return self.crd_chart_options is not None

    def _check_options(self) -> None:
        if self.crd_chart_options is None and self.upstream is None:
            raise ConfigurationError("No options provided to prepare additional chart")

    def _is_local_upstream(self) -> bool:
        return (
            not self.is_crd_chart
            and self.upstream is not None
            and self.upstream.is_within_package()
        )

    def _crd_template_dir(self) -> str:
        return str(PurePosixPath(PACKAGE_TEMPLATES_DIR, self.crd_chart_options.template_directory))

    def get_main_chart_working_dir(self, pkg_fs: Path) -> str:
        """Working directory of the main chart, from package.yaml."""
        try:
            package_opts = load_package_options(pkg_fs, PACKAGE_OPTIONS_FILE)
        except ConfigurationError as e:
            raise ConfigurationError(
                f"Encountered error while trying to get the main chart's working directory: {e}"
            ) from e
        return package_opts.main_chart.working_dir or DEFAULT_WORKING_DIR

    def apply_main_changes(self, pkg_fs: Path) -> None:
        """Move the main chart's CRDs into this CRD chart.

        No-op for charts that are not CRD charts.
        """
        ensure_prepared(pkg_fs, self.working_dir)
        if self.crd_chart_options is None:
            return
        opts = self.crd_chart_options
        main_dir = self.get_main_chart_working_dir(pkg_fs)

        try:
            moved = copy_crds_from_chart(
                pkg_fs,
                main_dir,
                CHART_CRD_DIR,
                self.working_dir,
                opts.crd_directory,
                only_crds=True,
            )
        except ChartforkError as e:
            raise wrap_error(
                e,
                f"Encountered error while trying to copy CRDs from {main_dir} "
                f"to {self.working_dir}",
            ) from e
        try:
            delete_crds_from_chart(pkg_fs, main_dir, moved)
        except ChartforkError as e:
            raise wrap_error(
                e, "Encountered error while trying to delete CRDs from main chart"
            ) from e
        if opts.add_crd_validation_to_main_chart:
            try:
                add_crd_validation_to_chart(
                    pkg_fs, main_dir, self.working_dir, opts.crd_directory
                )
            except ChartforkError as e:
                raise wrap_error(
                    e,
                    f"Encountered error while trying to add CRD validation to {main_dir} "
                    f"based on CRDs in {self.working_dir}",
                ) from e

    def revert_main_changes(self, pkg_fs: Path) -> None:
        """Move CRDs back into the main chart and drop CRD validation.

        No-op for charts that are not CRD charts.
        """
        ensure_prepared(pkg_fs, self.working_dir)
        if self.crd_chart_options is None:
            return
        opts = self.crd_chart_options
        main_dir = self.get_main_chart_working_dir(pkg_fs)

        try:
            copy_crds_from_chart(
                pkg_fs,
                self.working_dir,
                opts.crd_directory,
                main_dir,
                CHART_CRD_DIR,
                only_crds=True,
            )
        except ChartforkError as e:
            raise wrap_error(
                e,
                f"Encountered error while trying to copy CRDs from {self.working_dir} "
                f"to {main_dir}",
            ) from e
        if opts.add_crd_validation_to_main_chart:
            try:
                remove_crd_validation_from_chart(pkg_fs, main_dir)
            except ChartforkError as e:
                raise wrap_error(
                    e, "Encountered error while trying to remove CRD validation from chart"
                ) from e

    def _check_main_crds(self, pkg_fs: Path) -> None:
        main_dir = self.get_main_chart_working_dir(pkg_fs)
        crd_path = str(PurePosixPath(main_dir, CHART_CRD_DIR))
        if not any(
            is_crd_file(get_abs_path(pkg_fs, PurePosixPath(crd_path, rel)))
            for rel in walk_files(pkg_fs, crd_path)
        ):
            raise MissingCRDsError(
                f"Unable to prepare a CRD chart since there are no CRDs at {crd_path}"
            )

    def _prepare_crd_chart(self, pkg_fs: Path) -> None:
        opts = self.crd_chart_options
        main_dir = self.get_main_chart_working_dir(pkg_fs)
        try:
            generate_crd_chart_from_template(
                pkg_fs, self.working_dir, self._crd_template_dir(), opts.crd_directory
            )
            copy_crds_from_chart(
                pkg_fs,
                main_dir,
                CHART_CRD_DIR,
                self.working_dir,
                opts.crd_directory,
                only_crds=True,
            )
        except ChartforkError as e:
            raise wrap_error(
                e,
                f"Encountered error while trying to generate CRD chart from template at "
                f"{opts.template_directory}",
            ) from e

    def prepare(self, root_fs: Path, pkg_fs: Path) -> None:
        """Pull (or generate) this chart into its working directory."""
        self._check_options()
        if self._is_local_upstream():
            logger.info("Local chart does not need to be prepared")
            return

        if self.is_crd_chart:
            # Must run before the working dir is removed
            self._check_main_crds(pkg_fs)
        _remove_working_dir(pkg_fs, self.working_dir)
        if self.is_crd_chart:
            self._prepare_crd_chart(pkg_fs)
            try:
                prepare_dependencies(
                    root_fs, pkg_fs, self.working_dir, self.generated_changes_root_dir()
                )
            except ChartforkError as e:
                raise wrap_error(
                    e,
                    f"Encountered error while trying to prepare dependencies in {self.working_dir}",
                ) from e
            return

        _pull_with_dependencies(
            self.upstream, root_fs, pkg_fs, self.working_dir, self.generated_changes_root_dir()
        )
        # Only upstream charts support patches
        _apply_changes(pkg_fs, self.working_dir, self.generated_changes_root_dir())

    def generate_patch(self, root_fs: Path, pkg_fs: Path) -> None:
        """Record the working directory's local edits as a changeset."""
        self._check_options()
        if self._is_local_upstream():
            logger.info("Local chart does not need to be patched")
            return
        ensure_prepared(pkg_fs, self.working_dir)

        if self.is_crd_chart:
            logger.warning(
                "Patches are not supported for additional charts using CRD chart options. "
                "Any local changes will be overridden; please make the changes directly at "
                f"{self._crd_template_dir()}"
            )
            return

        _generate_patch_from_upstream(
            self.upstream,
            root_fs,
            pkg_fs,
            self.working_dir,
            self.generated_changes_root_dir(),
        )

    def generate_chart(
        self,
        root_fs: Path,
        pkg_fs: Path,
        package_version: str,
        assets_dir: str,
        charts_dir: str,
    ) -> Path:
        """Export the working directory as a versioned chart."""
        ensure_prepared(pkg_fs, self.working_dir)
        return _export(
            root_fs, pkg_fs, self.working_dir, package_version, assets_dir, charts_dir
        )

    def original_dir(self) -> str:
        return get_original_dir(self.working_dir)

    def generated_changes_root_dir(self) -> str:
        """generated-changes/additional-charts/<working_dir>/generated-changes"""
        return str(
            PurePosixPath(
                GENERATED_CHANGES_DIR,
                GENERATED_CHANGES_ADDITIONAL_CHART_DIR,
                self.working_dir,
                GENERATED_CHANGES_DIR,
            )
        )
