"""Generate and apply changesets between two chart directories.

A changeset lives under a changes root (e.g. packages/foo/generated-changes):

- overlay/<path>: files added in the modified tree (or binary files that changed)
- exclude/<path>: files removed from the modified tree (a copy of the original)
- patch/<path>.patch: unified diffs for modified text files

Applying a changeset onto a fresh copy of the original tree reproduces the
modified tree byte for byte. Other content under the changes root (such as
dependencies/) is left alone by both operations.
"""

from __future__ import annotations

import difflib
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from chartfork.config import (
    GENERATED_CHANGES_EXCLUDE_DIR,
    GENERATED_CHANGES_OVERLAY_DIR,
    GENERATED_CHANGES_PATCH_DIR,
)
from chartfork.errors import ChangesetError
from chartfork.filesystem import get_abs_path, path_exists, remove_all, walk_files

logger = logging.getLogger(__name__)

PATCH_SUFFIX = ".patch"
PATCH_CONTEXT_LINES = 3
NO_NEWLINE_MARKER = "\\ No newline at end of file\n"

HUNK_HEADER_PATTERN = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


@dataclass
class ChangeSummary:
    """What generate_changes found between two trees."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    patched: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.patched)


@dataclass
class Hunk:
    """A single @@ block of a unified diff."""

    old_start: int
    old_length: int
    old_lines: list[str] = field(default_factory=list)
    new_lines: list[str] = field(default_factory=list)

    @property
    def position(self) -> int:
        """Zero-based index of the first old line this hunk replaces."""
        if self.old_length == 0:
            return self.old_start
        return self.old_start - 1


def _split_lines(text: str) -> list[str]:
    """Split on \\n only, keeping line endings (str.splitlines also splits on \\f etc.)."""
    lines = text.split("\n")
    result = [line + "\n" for line in lines[:-1]]
    if lines[-1]:
        result.append(lines[-1])
    return result


def _decode(data: bytes) -> str | None:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


def make_patch(rel_path: str, original: str, modified: str) -> str:
    """Render a unified diff between two versions of a text file."""
    diff = difflib.unified_diff(
        _split_lines(original),
        _split_lines(modified),
        fromfile=f"a/{rel_path}",
        tofile=f"b/{rel_path}",
        n=PATCH_CONTEXT_LINES,
    )
    out = []
    for line in diff:
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n")
            out.append(NO_NEWLINE_MARKER)
    return "".join(out)


def parse_patch(patch_text: str) -> list[Hunk]:
    """Parse the hunks of a single-file unified diff.

    Raises:
        ChangesetError: If a hunk header or body line is malformed
    """
    hunks: list[Hunk] = []
    current: Hunk | None = None
    old_remaining = new_remaining = 0
    last_tag = ""

    for line in _split_lines(patch_text):
        if line.startswith("\\"):
            if current is None or not last_tag:
                raise ChangesetError("Unexpected no-newline marker outside of a hunk")
        elif old_remaining == 0 and new_remaining == 0:
            # Outside a hunk: file headers or the next hunk header
            if not line.startswith("@@"):
                continue
            match = HUNK_HEADER_PATTERN.match(line)
            if not match:
                raise ChangesetError(f"Malformed hunk header: {line.rstrip()}")
            old_length, new_length = match.group(2), match.group(4)
            current = Hunk(
                old_start=int(match.group(1)),
                old_length=int(old_length) if old_length is not None else 1,
            )
            old_remaining = current.old_length
            new_remaining = int(new_length) if new_length is not None else 1
            hunks.append(current)
            last_tag = ""
            continue

        if line.startswith("\\"):
            if last_tag in (" ", "-"):
                current.old_lines[-1] = current.old_lines[-1].rstrip("\n")
            if last_tag in (" ", "+"):
                current.new_lines[-1] = current.new_lines[-1].rstrip("\n")
            continue

        tag, body = line[:1], line[1:]
        if tag == " ":
            current.old_lines.append(body)
            current.new_lines.append(body)
            old_remaining -= 1
            new_remaining -= 1
        elif tag == "-":
            current.old_lines.append(body)
            old_remaining -= 1
        elif tag == "+":
            current.new_lines.append(body)
            new_remaining -= 1
        else:
            raise ChangesetError(f"Malformed patch line: {line.rstrip()}")
        if old_remaining < 0 or new_remaining < 0:
            raise ChangesetError(f"Hunk at line {current.old_start} is longer than its header")
        last_tag = tag

    if old_remaining or new_remaining:
        raise ChangesetError("Patch ends in the middle of a hunk")
    return hunks


def apply_patch(original: str, patch_text: str) -> str:
    """Apply a unified diff to text. Context must match exactly.

    Raises:
        ChangesetError: If any hunk does not match the original text
    """
    source = _split_lines(original)
    out: list[str] = []
    cursor = 0

    for hunk in parse_patch(patch_text):
        pos = hunk.position
        end = pos + len(hunk.old_lines)
        if pos < cursor or source[pos:end] != hunk.old_lines:
            raise ChangesetError(
                f"Hunk at line {hunk.old_start} does not match the original content"
            )
        out.extend(source[cursor:pos])
        out.extend(hunk.new_lines)
        cursor = end

    out.extend(source[cursor:])
    return "".join(out)


def _copy_file(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)


def generate_changes(
    fs: Path, from_dir: str | Path, to_dir: str | Path, changes_root: str | Path
) -> ChangeSummary:
    """Record the difference between ``from_dir`` and ``to_dir`` under ``changes_root``.

    Any previously generated overlay/exclude/patch content is replaced.

    Raises:
        ChangesetError: If either directory is missing or files cannot be written
    """
    for d in (from_dir, to_dir):
        if not get_abs_path(fs, d).is_dir():
            raise ChangesetError(f"Cannot generate changes: {d} is not a directory")

    root = get_abs_path(fs, changes_root)
    overlay = root / GENERATED_CHANGES_OVERLAY_DIR
    exclude = root / GENERATED_CHANGES_EXCLUDE_DIR
    patch = root / GENERATED_CHANGES_PATCH_DIR
    src_root = get_abs_path(fs, from_dir)
    dst_root = get_abs_path(fs, to_dir)

    summary = ChangeSummary()
    try:
        for d in (overlay, exclude, patch):
            remove_all(fs, d)

        from_files = set(walk_files(fs, from_dir))
        to_files = set(walk_files(fs, to_dir))

        for rel in sorted(to_files - from_files):
            _copy_file(dst_root / rel, overlay / rel)
            summary.added.append(rel)

        for rel in sorted(from_files - to_files):
            _copy_file(src_root / rel, exclude / rel)
            summary.removed.append(rel)

        for rel in sorted(from_files & to_files):
            original_bytes = (src_root / rel).read_bytes()
            modified_bytes = (dst_root / rel).read_bytes()
            if original_bytes == modified_bytes:
                continue
            original = _decode(original_bytes)
            modified = _decode(modified_bytes)
            if original is None or modified is None:
                _copy_file(dst_root / rel, overlay / rel)
                summary.added.append(rel)
                continue
            patch_file = patch / f"{rel}{PATCH_SUFFIX}"
            patch_file.parent.mkdir(parents=True, exist_ok=True)
            patch_file.write_bytes(make_patch(rel, original, modified).encode("utf-8"))
            summary.patched.append(rel)
    except OSError as e:
        raise ChangesetError(
            f"Failed to generate changes from {from_dir} to {to_dir} in {changes_root}: {e}"
        ) from e

    if root.is_dir() and not any(root.iterdir()):
        root.rmdir()

    logger.info(
        f"Generated changes in {changes_root}: {len(summary.added)} added, "
        f"{len(summary.removed)} removed, {len(summary.patched)} patched"
    )
    return summary


def apply_changes(fs: Path, to_dir: str | Path, changes_root: str | Path) -> None:
    """Replay the changeset under ``changes_root`` onto ``to_dir``.

    Order: exclude, overlay, patch. A missing changes root is a no-op.

    Raises:
        ChangesetError: If an excluded or patched file is missing or a patch
            does not apply cleanly
    """
    if not path_exists(fs, changes_root):
        logger.debug(f"No changes found at {changes_root}")
        return

    root = get_abs_path(fs, changes_root)
    target = get_abs_path(fs, to_dir)
    exclude_dir = Path(changes_root) / GENERATED_CHANGES_EXCLUDE_DIR
    overlay_dir = Path(changes_root) / GENERATED_CHANGES_OVERLAY_DIR
    patch_dir = Path(changes_root) / GENERATED_CHANGES_PATCH_DIR

    try:
        for rel in walk_files(fs, exclude_dir):
            if not (target / rel).exists():
                raise ChangesetError(
                    f"Cannot exclude {rel}: it does not exist in {to_dir}"
                )
            (target / rel).unlink()

        for rel in walk_files(fs, overlay_dir):
            _copy_file(root / GENERATED_CHANGES_OVERLAY_DIR / rel, target / rel)

        for rel_patch in walk_files(fs, patch_dir):
            if not rel_patch.endswith(PATCH_SUFFIX):
                continue
            rel = rel_patch[: -len(PATCH_SUFFIX)]
            target_file = target / rel
            if not target_file.exists():
                raise ChangesetError(f"Cannot patch {rel}: it does not exist in {to_dir}")
            original = _decode(target_file.read_bytes())
            if original is None:
                raise ChangesetError(f"Cannot patch binary file {rel} in {to_dir}")
            patch_text = (root / GENERATED_CHANGES_PATCH_DIR / rel_patch).read_bytes()
            try:
                patched = apply_patch(original, patch_text.decode("utf-8"))
            except ChangesetError as e:
                raise ChangesetError(f"Failed to apply patch to {rel}: {e}") from e
            target_file.write_bytes(patched.encode("utf-8"))
    except OSError as e:
        raise ChangesetError(
            f"Failed to apply changes from {changes_root} to {to_dir}: {e}"
        ) from e

    logger.info(f"Applied changes from {changes_root} to {to_dir}")
