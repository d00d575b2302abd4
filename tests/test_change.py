"""Tests for changeset generation and application."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from chartfork.change import (
    NO_NEWLINE_MARKER,
    apply_changes,
    apply_patch,
    generate_changes,
    make_patch,
    parse_patch,
)
from chartfork.errors import ChangesetError

from conftest import read_tree, write_files

ORIGINAL_VALUES = "".join(f"key{i}: {i}\n" for i in range(20))


def _roundtrip(fs: Path, original: dict, modified: dict) -> None:
    """Generate changes between two trees and replay them onto a fresh copy."""
    write_files(fs / "original", original)
    write_files(fs / "modified", modified)
    (fs / "original").mkdir(exist_ok=True)
    (fs / "modified").mkdir(exist_ok=True)

    generate_changes(fs, "original", "modified", "generated-changes")
    shutil.copytree(fs / "original", fs / "replayed")
    apply_changes(fs, "replayed", "generated-changes")

    assert read_tree(fs / "replayed") == read_tree(fs / "modified")


class TestMakePatch:
    """Tests for unified diff rendering."""

    def test_headers_name_file(self):
        patch = make_patch("values.yaml", "a: 1\n", "a: 2\n")
        assert patch.startswith("--- a/values.yaml\n+++ b/values.yaml\n")
        assert "-a: 1\n" in patch
        assert "+a: 2\n" in patch

    def test_marks_missing_trailing_newline(self):
        patch = make_patch("values.yaml", "a: 1\n", "a: 1\nb: 2")
        assert NO_NEWLINE_MARKER in patch

    def test_parse_counts_hunks(self):
        modified = ORIGINAL_VALUES.replace("key2: 2", "key2: two").replace(
            "key17: 17", "key17: seventeen"
        )
        hunks = parse_patch(make_patch("values.yaml", ORIGINAL_VALUES, modified))
        assert len(hunks) == 2
        assert hunks[0].old_start == 1

    def test_removed_lines_that_look_like_headers(self):
        """Lines starting with -- inside a hunk are content, not file headers."""
        original = "a\n-- b\nc\n"
        modified = "a\nc\n"
        patch = make_patch("notes.txt", original, modified)
        assert apply_patch(original, patch) == modified


class TestApplyPatch:
    """Tests for strict hunk application."""

    def test_applies_edit(self):
        modified = ORIGINAL_VALUES.replace("key10: 10", "key10: ten")
        patch = make_patch("values.yaml", ORIGINAL_VALUES, modified)
        assert apply_patch(ORIGINAL_VALUES, patch) == modified

    def test_applies_to_empty_file(self):
        patch = make_patch("empty.txt", "", "hello\n")
        assert apply_patch("", patch) == "hello\n"

    def test_truncates_to_empty(self):
        patch = make_patch("gone.txt", "hello\nworld\n", "")
        assert apply_patch("hello\nworld\n", patch) == ""

    def test_mismatch_raises(self):
        modified = ORIGINAL_VALUES.replace("key10: 10", "key10: ten")
        patch = make_patch("values.yaml", ORIGINAL_VALUES, modified)
        drifted = ORIGINAL_VALUES.replace("key10: 10", "key10: 1000")
        with pytest.raises(ChangesetError, match="does not match"):
            apply_patch(drifted, patch)

    def test_malformed_header_raises(self):
        with pytest.raises(ChangesetError, match="Malformed hunk header"):
            parse_patch("--- a/x\n+++ b/x\n@@ nonsense @@\n")

    def test_truncated_hunk_raises(self):
        with pytest.raises(ChangesetError, match="middle of a hunk"):
            parse_patch("--- a/x\n+++ b/x\n@@ -1,3 +1,3 @@\n a\n-b\n")


class TestGenerateChanges:
    """Tests for changeset layout on disk."""

    def test_layout(self, tmp_path):
        write_files(
            tmp_path / "original",
            {"keep.yaml": "a: 1\n", "edit.yaml": "a: 1\n", "drop.yaml": "a: 1\n"},
        )
        write_files(
            tmp_path / "modified",
            {"keep.yaml": "a: 1\n", "edit.yaml": "a: 2\n", "new.yaml": "b: 1\n"},
        )

        summary = generate_changes(tmp_path, "original", "modified", "changes")

        assert summary.added == ["new.yaml"]
        assert summary.removed == ["drop.yaml"]
        assert summary.patched == ["edit.yaml"]
        assert (tmp_path / "changes/overlay/new.yaml").read_text() == "b: 1\n"
        assert (tmp_path / "changes/exclude/drop.yaml").read_text() == "a: 1\n"
        assert (tmp_path / "changes/patch/edit.yaml.patch").is_file()
        assert not (tmp_path / "changes/patch/keep.yaml.patch").exists()

    def test_identical_trees_leave_no_changes_root(self, tmp_path):
        write_files(tmp_path / "original", {"a.yaml": "a: 1\n"})
        write_files(tmp_path / "modified", {"a.yaml": "a: 1\n"})

        summary = generate_changes(tmp_path, "original", "modified", "changes")

        assert summary.is_empty
        assert not (tmp_path / "changes").exists()

    def test_replaces_stale_changes_but_keeps_dependencies(self, tmp_path):
        write_files(tmp_path / "original", {"a.yaml": "a: 1\n"})
        write_files(tmp_path / "modified", {"a.yaml": "a: 1\n"})
        write_files(
            tmp_path / "changes",
            {
                "overlay/stale.yaml": "old\n",
                "patch/a.yaml.patch": "stale\n",
                "dependencies/sub/dependency.yaml": "url: packages/sub\n",
            },
        )

        generate_changes(tmp_path, "original", "modified", "changes")

        assert not (tmp_path / "changes/overlay").exists()
        assert not (tmp_path / "changes/patch").exists()
        assert (tmp_path / "changes/dependencies/sub/dependency.yaml").is_file()

    def test_missing_directory_raises(self, tmp_path):
        (tmp_path / "modified").mkdir()
        with pytest.raises(ChangesetError, match="not a directory"):
            generate_changes(tmp_path, "original", "modified", "changes")


class TestRoundTrip:
    """Applying generated changes reproduces the modified tree exactly."""

    def test_edits_additions_and_removals(self, tmp_path):
        _roundtrip(
            tmp_path,
            {
                "values.yaml": ORIGINAL_VALUES,
                "templates/a.yaml": "kind: A\n",
                "templates/b.yaml": "kind: B\n",
            },
            {
                "values.yaml": ORIGINAL_VALUES.replace("key3: 3", "key3: three"),
                "templates/a.yaml": "kind: A\n",
                "templates/c.yaml": "kind: C\n",
            },
        )

    def test_trailing_newline_changes(self, tmp_path):
        _roundtrip(
            tmp_path,
            {"a.txt": "one\ntwo", "b.txt": "one\ntwo\n"},
            {"a.txt": "one\ntwo\n", "b.txt": "one\ntwo"},
        )

    def test_binary_files(self, tmp_path):
        _roundtrip(
            tmp_path,
            {"logo.png": b"\x89PNG\r\n\x1a\n\xff\x00\x01"},
            {"logo.png": b"\x89PNG\r\n\x1a\n\xff\x00\x02\x03"},
        )

    def test_crlf_and_form_feed_content(self, tmp_path):
        _roundtrip(
            tmp_path,
            {"notes.txt": "a\r\nb\x0cc\nd\n"},
            {"notes.txt": "a\r\nb\x0cC\nd\ne\n"},
        )

    def test_empty_directories_only(self, tmp_path):
        _roundtrip(tmp_path, {}, {})


class TestApplyChanges:
    """Tests for replaying a changeset."""

    def test_missing_changes_root_is_noop(self, tmp_path):
        write_files(tmp_path / "chart", {"a.yaml": "a: 1\n"})
        apply_changes(tmp_path, "chart", "generated-changes")
        assert read_tree(tmp_path / "chart") == {"a.yaml": b"a: 1\n"}

    def test_exclude_of_missing_file_raises(self, tmp_path):
        write_files(tmp_path / "chart", {"a.yaml": "a: 1\n"})
        write_files(tmp_path / "changes", {"exclude/b.yaml": "b: 1\n"})
        with pytest.raises(ChangesetError, match="Cannot exclude b.yaml"):
            apply_changes(tmp_path, "chart", "changes")

    def test_patch_of_missing_file_raises(self, tmp_path):
        (tmp_path / "chart").mkdir()
        patch = make_patch("a.yaml", "a: 1\n", "a: 2\n")
        write_files(tmp_path / "changes", {"patch/a.yaml.patch": patch})
        with pytest.raises(ChangesetError, match="Cannot patch a.yaml"):
            apply_changes(tmp_path, "chart", "changes")

    def test_drifted_upstream_raises(self, tmp_path):
        write_files(tmp_path / "chart", {"a.yaml": "a: 100\n"})
        patch = make_patch("a.yaml", "a: 1\n", "a: 2\n")
        write_files(tmp_path / "changes", {"patch/a.yaml.patch": patch})
        with pytest.raises(ChangesetError, match="Failed to apply patch to a.yaml"):
            apply_changes(tmp_path, "chart", "changes")
