"""Shared fixtures for chartfork tests.

No test touches the network or runs git: upstreams are served by
FakePuller, which copies a directory prepared on disk.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest
import yaml

from chartfork.errors import SourceFetchError
from chartfork.options import UpstreamOptions
from chartfork.puller import Puller

WIDGET_CRD = """\
apiVersion: apiextensions.k8s.io/v1
kind: CustomResourceDefinition
metadata:
  name: widgets.acme.io
spec:
  group: acme.io
  names:
    kind: Widget
    plural: widgets
  scope: Namespaced
  versions:
    - name: v1
      served: true
      storage: true
    - name: v1alpha1
      served: true
      storage: false
"""

GADGET_CRD = """\
apiVersion: apiextensions.k8s.io/v1beta1
kind: CustomResourceDefinition
metadata:
  name: gadgets.acme.io
spec:
  group: acme.io
  version: v1beta1
  names:
    kind: Gadget
    plural: gadgets
"""

DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: widget
spec:
  replicas: {{ .Values.replicas }}
"""


class FakePuller(Puller):
    """Copies a local directory; optionally fails after a partial pull."""

    def __init__(self, source: Path, fail: bool = False):
        self.source = source
        self.fail = fail
        self.pulls: list[str] = []

    def pull(self, root_fs: Path, fs: Path, path: str) -> None:
        self.pulls.append(path)
        dest = Path(fs) / path
        if self.fail:
            dest.mkdir(parents=True, exist_ok=True)
            (dest / "partial.txt").write_text("half a chart\n")
            raise SourceFetchError("connection reset by peer")
        shutil.copytree(self.source, dest, dirs_exist_ok=True)

    def get_options(self) -> UpstreamOptions:
        return UpstreamOptions(url=str(self.source))

    def is_within_package(self) -> bool:
        return False


def write_files(root: Path, files: dict[str, str | bytes]) -> None:
    """Write a mapping of relative path -> content under root."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")


def read_tree(root: Path) -> dict[str, bytes]:
    """Read every file under root into a relative path -> bytes mapping."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def upstream_dir(tmp_path: Path) -> Path:
    """A small upstream chart with two CRD files in crds/."""
    root = tmp_path / "upstream"
    write_files(
        root,
        {
            "Chart.yaml": "apiVersion: v2\nname: widget\nversion: 0.3.0\n",
            "values.yaml": "replicas: 1\nimage: acme/widget\n",
            "templates/deployment.yaml": DEPLOYMENT,
            "crds/widgets.yaml": WIDGET_CRD,
            "crds/gadgets.yaml": GADGET_CRD,
        },
    )
    return root


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    """An empty repository with a packages/ directory."""
    root = tmp_path / "repo"
    (root / "packages").mkdir(parents=True)
    return root


@pytest.fixture
def pkg_fs(repo_root: Path) -> Path:
    """packages/widget with a package.yaml naming the main chart's working dir."""
    pkg = repo_root / "packages" / "widget"
    write_files(
        pkg,
        {
            "package.yaml": yaml.safe_dump(
                {
                    "url": "https://github.com/acme/widget.git",
                    "commit": "0123abcd",
                    "workingDir": "charts",
                    "version": "1.2.0",
                }
            ),
            "templates/crd-template/Chart.yaml": (
                "apiVersion: v2\nname: widget-crd\nversion: 0.3.0\n"
            ),
            "templates/crd-template/README.md": "CRDs for widget\n",
        },
    )
    return pkg
