"""Tests for package loading and whole-package operations."""

from __future__ import annotations

import pytest
import yaml

from chartfork import package as package_module
from chartfork.charts import AdditionalChart, Chart
from chartfork.errors import ChartforkError, ConfigurationError
from chartfork.package import Package, list_packages
from chartfork.puller import GithubRepository

from conftest import FakePuller, read_tree, write_files

PACKAGE_OPTIONS = {
    "url": "https://github.com/acme/widget.git",
    "commit": "0123abcd",
    "workingDir": "charts",
    "version": "1.2.0",
    "additionalCharts": [
        {
            "workingDir": "charts-crd",
            "crdOptions": {
                "templateDirectory": "crd-template",
                "crdDirectory": "templates",
                "addCRDValidationToMainChart": True,
            },
        }
    ],
}


def _write_options(pkg_fs, options: dict) -> None:
    (pkg_fs / "package.yaml").write_text(yaml.safe_dump(options, sort_keys=False))


@pytest.fixture
def package(repo_root, pkg_fs, upstream_dir) -> Package:
    """The widget package with a CRD chart, served from a local upstream copy."""
    _write_options(pkg_fs, PACKAGE_OPTIONS)
    package = Package.load(repo_root, "widget")
    package.chart.upstream = FakePuller(upstream_dir)
    return package


class TestLoad:
    """Tests for Package.load."""

    def test_load(self, repo_root, pkg_fs):
        _write_options(pkg_fs, PACKAGE_OPTIONS)
        package = Package.load(repo_root, "widget")

        assert package.name == "widget"
        assert package.version == "1.2.0"
        assert isinstance(package.chart, Chart)
        assert isinstance(package.chart.upstream, GithubRepository)
        assert str(package.chart.upstream) == "acme/widget@0123abcd"
        [crd] = package.additional_charts
        assert isinstance(crd, AdditionalChart)
        assert crd.is_crd_chart

    def test_missing_package(self, repo_root):
        with pytest.raises(ConfigurationError, match="does not exist"):
            Package.load(repo_root, "nope")

    def test_invalid_options(self, repo_root, pkg_fs):
        _write_options(pkg_fs, {"url": "https://example.com/widget", "version": "1.0.0"})
        with pytest.raises(ConfigurationError, match="does not point to"):
            Package.load(repo_root, "widget")

    def test_unreadable_options(self, repo_root, pkg_fs):
        (pkg_fs / "package.yaml").write_text("url: [oops\n")
        with pytest.raises(ConfigurationError, match="Unable to read package.yaml for widget"):
            Package.load(repo_root, "widget")

    def test_duplicate_working_dirs(self, repo_root, pkg_fs):
        options = dict(PACKAGE_OPTIONS)
        options["additionalCharts"] = [
            {"workingDir": "charts", "crdOptions": {"templateDirectory": "crd-template"}}
        ]
        _write_options(pkg_fs, options)
        with pytest.raises(ConfigurationError, match="reuses a working directory"):
            Package.load(repo_root, "widget")


class TestLifecycle:
    """Tests for preparing, patching and exporting a whole package."""

    def test_prepare_moves_crds(self, package):
        package.prepare()

        pkg = package.pkg_fs
        assert not (pkg / "charts/crds").exists()
        assert (pkg / "charts/templates/validate-install-crd.yaml").is_file()
        assert (pkg / "charts-crd/templates/widgets.yaml").is_file()
        assert (pkg / "charts-crd/templates/gadgets.yaml").is_file()

    def test_generate_patch_ignores_moved_crds(self, package):
        package.prepare()
        pkg = package.pkg_fs
        (pkg / "charts/values.yaml").write_text("replicas: 2\nimage: acme/widget\n")

        package.generate_patch()

        changes = pkg / "generated-changes"
        assert (changes / "patch/values.yaml.patch").is_file()
        assert not (changes / "exclude").exists()
        assert not (changes / "overlay").exists()
        # CRDs moved out again once patching is done
        assert not (pkg / "charts/crds").exists()
        assert (pkg / "charts/templates/validate-install-crd.yaml").is_file()

    def test_non_crd_file_in_crds_is_not_a_change(self, package, upstream_dir):
        write_files(upstream_dir / "crds", {"README.md": "install these first\n"})
        package.prepare()
        pkg = package.pkg_fs
        assert (pkg / "charts/crds/README.md").is_file()
        assert not (pkg / "charts-crd/templates/README.md").exists()

        package.generate_patch()

        changes = pkg / "generated-changes"
        for kind in ("patch", "overlay", "exclude"):
            assert not (changes / kind).exists()
        assert read_tree(pkg / "charts/crds") == {"README.md": b"install these first\n"}

    def test_prepare_replays_patch(self, package):
        package.prepare()
        pkg = package.pkg_fs
        (pkg / "charts/values.yaml").write_text("replicas: 2\nimage: acme/widget\n")
        package.generate_patch()
        expected_main = read_tree(pkg / "charts")
        expected_crd = read_tree(pkg / "charts-crd")

        package.clean()
        package.prepare()

        assert read_tree(pkg / "charts") == expected_main
        assert read_tree(pkg / "charts-crd") == expected_crd

    def test_generate_charts(self, package, repo_root):
        package.prepare()

        archives = package.generate_charts("assets", "charts")

        assert archives == [
            repo_root / "assets/widget-1.2.0.tgz",
            repo_root / "assets/widget-crd-1.2.0.tgz",
        ]
        assert (repo_root / "charts/widget/1.2.0/Chart.yaml").is_file()
        assert (repo_root / "charts/widget-crd/1.2.0/templates/widgets.yaml").is_file()

    def test_do_not_release(self, repo_root, pkg_fs):
        options = dict(PACKAGE_OPTIONS, doNotRelease=True)
        _write_options(pkg_fs, options)
        package = Package.load(repo_root, "widget")
        assert package.generate_charts("assets", "charts") == []
        assert not (repo_root / "assets").exists()

    def test_clean(self, package):
        package.prepare()
        pkg = package.pkg_fs
        write_files(pkg / "charts-original", {"stale.yaml": "x\n"})

        package.clean()

        assert not (pkg / "charts").exists()
        assert not (pkg / "charts-crd").exists()
        assert not (pkg / "charts-original").exists()
        assert (pkg / "package.yaml").is_file()
        assert (pkg / "templates/crd-template/Chart.yaml").is_file()

    def test_clean_failure(self, package, monkeypatch):
        package.prepare()

        def locked(fs, path):
            raise PermissionError(f"[Errno 13] Permission denied: '{path}'")

        monkeypatch.setattr(package_module, "remove_all", locked)
        with pytest.raises(ChartforkError, match="clean up charts in widget"):
            package.clean()


class TestListPackages:
    """Tests for package discovery."""

    def test_lists_nested_packages(self, repo_root):
        write_files(
            repo_root / "packages",
            {
                "widget/package.yaml": "url: packages/widget/charts\n",
                "acme/gadget/package.yaml": "url: packages/acme/gadget/charts\n",
                "notes/README.md": "not a package\n",
            },
        )
        assert list_packages(repo_root) == ["acme/gadget", "widget"]

    def test_no_packages_dir(self, tmp_path):
        assert list_packages(tmp_path) == []
