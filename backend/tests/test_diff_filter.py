"""Tests for coordination/diff_filter.py -- path-exact diff filtering."""

import pytest

from coordination.diff_filter import (
    NO_DIFF_CONTENT,
    NO_MATCHING_DIFF,
    destination_path,
    filter_diff_for_files,
)
from tests.conftest import SAMPLE_DIFF


class TestDestinationPath:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("diff --git a/src/app.py b/src/app.py", "src/app.py"),
            ("diff --git a/old/name.py b/new/name.py", "new/name.py"),
            ("diff --git a/dir b/x.py b/dir b/x.py", "dir b/x.py"),
            ('diff --git "a/with space.py" "b/with space.py"', "with space.py"),
            ('diff --git "a/caf\\303\\251.txt" "b/caf\\303\\251.txt"', "café.txt"),
            ('diff --git "a/tab\\there.txt" "b/tab\\there.txt"', "tab\there.txt"),
        ],
    )
    def test_parses_header(self, header: str, expected: str) -> None:
        assert destination_path(header) == expected

    def test_non_header_returns_none(self) -> None:
        assert destination_path("--- a/src/app.py") is None


class TestFilterDiffForFiles:
    def test_keeps_only_assigned_files(self) -> None:
        result = filter_diff_for_files(SAMPLE_DIFF, ["src/util.py"])
        assert result.startswith("diff --git a/src/util.py b/src/util.py")
        assert "+VALUE = 2" in result
        assert "src/app.py" not in result
        assert "docs/readme.md" not in result

    def test_preserves_original_order(self) -> None:
        result = filter_diff_for_files(SAMPLE_DIFF, ["docs/readme.md", "src/app.py"])
        assert result.index("src/app.py") < result.index("docs/readme.md")
        assert "src/util.py" not in result

    def test_path_match_is_exact(self) -> None:
        diff = (
            "diff --git a/src/foo.tsx b/src/foo.tsx\n"
            "--- a/src/foo.tsx\n"
            "+++ b/src/foo.tsx\n"
            "@@ -1 +1 @@\n"
            "-a\n"
            "+b\n"
        )
        assert filter_diff_for_files(diff, ["src/foo.ts"]) == NO_MATCHING_DIFF

    def test_leading_dot_slash_is_ignored(self) -> None:
        result = filter_diff_for_files(SAMPLE_DIFF, ["./src/app.py"])
        assert "+import sys" in result

    def test_rename_matches_destination(self) -> None:
        diff = (
            "diff --git a/old.py b/new.py\n"
            "similarity index 100%\n"
            "rename from old.py\n"
            "rename to new.py\n"
        )
        assert "rename to new.py" in filter_diff_for_files(diff, ["new.py"])
        assert filter_diff_for_files(diff, ["old.py"]) == NO_MATCHING_DIFF

    def test_no_trailing_blank_lines(self) -> None:
        result = filter_diff_for_files(SAMPLE_DIFF, ["docs/readme.md"])
        assert result.endswith("+New")

    @pytest.mark.parametrize("diff", ["", "   \n"])
    def test_empty_diff(self, diff: str) -> None:
        assert filter_diff_for_files(diff, ["src/app.py"]) == NO_DIFF_CONTENT

    def test_no_matching_files(self) -> None:
        assert filter_diff_for_files(SAMPLE_DIFF, ["missing.py"]) == NO_MATCHING_DIFF
