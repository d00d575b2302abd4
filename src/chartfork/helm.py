"""Helm chart operations: moving CRDs between charts and exporting charts.

CRD charts:
- copy_crds_from_chart / delete_crds_from_chart move CRD files out of the
  main chart's crds/ directory into the CRD chart (and back on revert)
- add_crd_validation_to_chart writes a template into the main chart that
  refuses to install unless the CRD chart's resources are already served
- generate_crd_chart_from_template lays down packages/<pkg>/templates/<dir>

Export writes a gzipped chart archive plus an unpacked copy. Archives are
built with sorted entries and zeroed timestamps so the same chart content
always produces the same bytes.
"""

from __future__ import annotations

import gzip
import io
import logging
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

import yaml

from chartfork.config import CHART_CRD_DIR, CHART_VALIDATE_INSTALL_CRD_FILE
from chartfork.errors import TransformError
from chartfork.filesystem import (
    get_abs_path,
    path_exists,
    prune_empty_dirs,
    remove_all,
    walk_files,
)
from chartfork.options import load_yaml_file, save_yaml_file

logger = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"
CRD_KIND = "CustomResourceDefinition"
CRD_FILE_SUFFIXES = (".yaml", ".yml", ".json")
DOCUMENT_SEPARATOR = re.compile(r"^---[ \t]*(?:#.*)?$", re.MULTILINE)

VALIDATE_INSTALL_CRD_HEADER = """\
#{{- if gt (len (lookup "rbac.authorization.k8s.io/v1" "ClusterRole" "" "")) 0 -}}
# {{- $found := dict -}}
"""

VALIDATE_INSTALL_CRD_FOOTER = """\
# {{- range .Capabilities.APIVersions -}}
# {{- if hasKey $found (toString .) -}}
# 	{{- set $found (toString .) true -}}
# {{- end -}}
# {{- end -}}
# {{- range $_, $exists := $found -}}
# {{- if (eq $exists false) -}}
# 	{{- required "Required CRDs are missing. Please install the corresponding CRD chart before installing this chart." "" -}}
# {{- end -}}
# {{- end -}}
#{{- end -}}
"""


@dataclass(frozen=True)
class CRDResource:
    """An API resource served by a CRD: group/version/Kind."""

    group: str
    version: str
    kind: str

    def __str__(self) -> str:
        return f"{self.group}/{self.version}/{self.kind}"


def _load_documents(path: Path) -> list:
    """Parse each document of a manifest on its own.

    Templated documents are not valid YAML; they are skipped without
    hiding the plain documents around them.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return []

    documents = []
    for chunk in DOCUMENT_SEPARATOR.split(text):
        try:
            doc = yaml.safe_load(chunk)
        except yaml.YAMLError:
            continue
        if doc is not None:
            documents.append(doc)
    return documents


def get_crd_resources(path: Path) -> list[CRDResource]:
    """Read every group/version/Kind defined by CRDs in a file.

    Handles both apiextensions.k8s.io/v1 (spec.versions) and v1beta1
    (spec.version) shapes. Non-CRD documents are ignored.
    """
    resources = []
    for doc in _load_documents(path):
        if not isinstance(doc, dict) or doc.get("kind") != CRD_KIND:
            continue
        spec = doc.get("spec") or {}
        group = spec.get("group", "")
        kind = (spec.get("names") or {}).get("kind", "")
        versions = [v.get("name") for v in spec.get("versions") or [] if v.get("name")]
        if not versions and spec.get("version"):
            versions = [spec["version"]]
        for version in versions:
            resources.append(CRDResource(group=group, version=version, kind=kind))
    return resources


def is_crd_file(path: Path) -> bool:
    """True if the file holds at least one CustomResourceDefinition."""
    if not path.name.endswith(CRD_FILE_SUFFIXES):
        return False
    return any(
        isinstance(doc, dict) and doc.get("kind") == CRD_KIND
        for doc in _load_documents(path)
    )


def copy_crds_from_chart(
    fs: Path,
    src_chart_dir: str | Path,
    src_crd_dir: str,
    dst_chart_dir: str | Path,
    dst_crd_dir: str,
    only_crds: bool = False,
) -> list[str]:
    """Copy files from one chart's CRD directory to another's.

    Args:
        only_crds: Copy only files that define a CustomResourceDefinition
            (used when the source directory also holds other templates)

    Returns:
        Relative paths of the files copied

    Raises:
        TransformError: If the source directory does not exist or a copy fails
    """
    src = Path(src_chart_dir) / src_crd_dir
    dst = get_abs_path(fs, Path(dst_chart_dir) / dst_crd_dir)
    if not path_exists(fs, src):
        raise TransformError(f"Unable to copy CRDs: {src} does not exist")

    copied = []
    try:
        for rel in walk_files(fs, src):
            src_file = get_abs_path(fs, src / rel)
            if only_crds and not is_crd_file(src_file):
                continue
            (dst / rel).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src_file, dst / rel)
            copied.append(rel)
    except OSError as e:
        raise TransformError(f"Failed to copy CRDs from {src} to {dst}: {e}") from e

    logger.info(
        f"Copied {len(copied)} CRD file(s) from {src} to {Path(dst_chart_dir) / dst_crd_dir}"
    )
    return copied


def delete_crds_from_chart(
    fs: Path, chart_dir: str | Path, files: list[str] | None = None
) -> None:
    """Remove a chart's crds/ directory, or only ``files`` within it.

    Directories left empty by removing ``files`` are pruned.
    """
    crd_dir = Path(chart_dir) / CHART_CRD_DIR
    try:
        if files is None:
            remove_all(fs, crd_dir)
        else:
            for rel in files:
                remove_all(fs, crd_dir / rel)
            prune_empty_dirs(fs, crd_dir)
    except OSError as e:
        raise TransformError(f"Failed to delete CRDs from {chart_dir}: {e}") from e


def render_crd_validation(resources: list[CRDResource]) -> str:
    """Render the validate-install-crd template for a set of resources."""
    lines = [VALIDATE_INSTALL_CRD_HEADER]
    for resource in sorted(set(resources), key=str):
        lines.append(f'# {{{{- set $found "{resource}" false -}}}}\n')
    lines.append(VALIDATE_INSTALL_CRD_FOOTER)
    return "".join(lines)


def add_crd_validation_to_chart(
    fs: Path, chart_dir: str | Path, crd_chart_dir: str | Path, crd_dir: str
) -> None:
    """Add a template to ``chart_dir`` that checks the CRD chart's CRDs are installed.

    Raises:
        TransformError: If no CRDs are found in the CRD chart
    """
    crd_path = Path(crd_chart_dir) / crd_dir
    resources: list[CRDResource] = []
    for rel in walk_files(fs, crd_path):
        resources.extend(get_crd_resources(get_abs_path(fs, crd_path / rel)))
    if not resources:
        raise TransformError(f"Unable to add CRD validation: no CRDs found in {crd_path}")

    target = get_abs_path(fs, Path(chart_dir) / CHART_VALIDATE_INSTALL_CRD_FILE)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(render_crd_validation(resources), encoding="utf-8")
    except OSError as e:
        raise TransformError(f"Failed to write {target}: {e}") from e
    logger.info(f"Added CRD validation for {len(set(resources))} resource(s) to {chart_dir}")


def remove_crd_validation_from_chart(fs: Path, chart_dir: str | Path) -> None:
    """Remove the template written by add_crd_validation_to_chart."""
    try:
        remove_all(fs, Path(chart_dir) / CHART_VALIDATE_INSTALL_CRD_FILE)
    except OSError as e:
        raise TransformError(f"Failed to remove CRD validation from {chart_dir}: {e}") from e


def generate_crd_chart_from_template(
    fs: Path, dst_chart_dir: str | Path, template_dir: str | Path, crd_dir: str
) -> None:
    """Lay down a CRD chart from a template directory inside the package.

    Raises:
        TransformError: If the template directory does not exist
    """
    src = get_abs_path(fs, template_dir)
    if not src.is_dir():
        raise TransformError(f"CRD chart template {template_dir} does not exist")
    dst = get_abs_path(fs, dst_chart_dir)
    try:
        shutil.copytree(src, dst, dirs_exist_ok=True)
        (dst / crd_dir).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise TransformError(
            f"Failed to generate CRD chart {dst_chart_dir} from {template_dir}: {e}"
        ) from e


def _write_chart_archive(src_dir: Path, chart_name: str, out_path: Path) -> None:
    """Write ``src_dir`` as <chart_name>/... into a reproducible .tgz."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tf:
        files = sorted(
            p.relative_to(src_dir).as_posix() for p in src_dir.rglob("*") if p.is_file()
        )
        for rel in files:
            data = (src_dir / rel).read_bytes()
            info = tarfile.TarInfo(name=f"{chart_name}/{rel}")
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tf.addfile(info, io.BytesIO(data))

    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
            gz.write(buffer.getvalue())


def export_helm_chart(
    root_fs: Path,
    fs: Path,
    chart_dir: str | Path,
    version: str,
    assets_dir: str | Path,
    charts_dir: str | Path,
) -> Path:
    """Export a prepared chart to ``assets_dir`` and ``charts_dir``.

    Writes:
        <root>/<assets_dir>/<name>-<version>.tgz
        <root>/<charts_dir>/<name>/<version>/...

    Args:
        version: Version to stamp into Chart.yaml; empty keeps the chart's own

    Returns:
        Path to the written archive

    Raises:
        TransformError: If Chart.yaml is missing or has no name/version
    """
    chart_file = Path(chart_dir) / CHART_FILE
    if not path_exists(fs, chart_file):
        raise TransformError(f"Unable to export {chart_dir}: {CHART_FILE} not found")
    chart = load_yaml_file(fs, chart_file)
    name = chart.get("name")
    version = version or str(chart.get("version") or "")
    if not name or not version:
        raise TransformError(f"Unable to export {chart_dir}: chart name and version are required")

    archive_path = get_abs_path(root_fs, Path(assets_dir) / f"{name}-{version}.tgz")
    unpacked_path = get_abs_path(root_fs, Path(charts_dir) / name / version)

    with tempfile.TemporaryDirectory() as tmpdir:
        staging = Path(tmpdir) / name
        try:
            shutil.copytree(get_abs_path(fs, chart_dir), staging)
            chart["version"] = version
            save_yaml_file(staging, CHART_FILE, chart)

            _write_chart_archive(staging, name, archive_path)
            if unpacked_path.exists():
                shutil.rmtree(unpacked_path)
            shutil.copytree(staging, unpacked_path)
        except OSError as e:
            raise TransformError(f"Failed to export {chart_dir}: {e}") from e

    logger.info(f"Exported {name} {version} to {archive_path}")
    return archive_path
