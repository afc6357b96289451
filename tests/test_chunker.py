"""Tests for the content chunker."""

import pytest

from wtf_cli.chunker import ChunkError, InvalidBudget, TextChunk, chunk_diff, chunk_text
from wtf_cli.repository import DiffRecord, FileDelta, FileStatus


def _file_patch(name, hunks):
    header = f"diff --git a/{name} b/{name}\n--- a/{name}\n+++ b/{name}\n"
    return header + "".join(hunks)


def _hunk(start, n_lines):
    body = "".join(f"+line {start + i}\n" for i in range(n_lines))
    return f"@@ -{start},0 +{start},{n_lines} @@\n" + body


@pytest.fixture
def two_file_diff():
    return _file_patch("a.py", [_hunk(1, 3), _hunk(40, 3)]) + _file_patch("b.py", [_hunk(1, 2)])


def _joined(chunks):
    return "".join(c.content for c in sorted(chunks, key=lambda c: c.sequence_index))


class TestChunkText:
    """Test chunk_text boundaries and invariants."""

    def test_fits_in_one_chunk(self, two_file_diff):
        chunks = chunk_text(two_file_diff, "abc123", 10_000)
        assert len(chunks) == 1
        assert chunks[0] == TextChunk(0, two_file_diff, "abc123", False)

    def test_empty_text(self):
        assert chunk_text("", "ref", 100) == []

    @pytest.mark.parametrize("budget", [0, -1])
    def test_invalid_budget(self, budget):
        with pytest.raises(InvalidBudget):
            chunk_text("some text", "ref", budget)

    def test_invalid_budget_is_chunk_error(self):
        with pytest.raises(ChunkError):
            chunk_text("x", "ref", 0)

    def test_splits_on_file_boundary(self, two_file_diff):
        first_file_len = two_file_diff.index("diff --git a/b.py")
        chunks = chunk_text(two_file_diff, "ref", first_file_len)
        assert len(chunks) == 2
        assert chunks[0].content.startswith("diff --git a/a.py")
        assert chunks[1].content.startswith("diff --git a/b.py")
        assert _joined(chunks) == two_file_diff

    def test_splits_on_hunk_boundary(self, two_file_diff):
        budget = two_file_diff.index("@@ -40")
        chunks = chunk_text(two_file_diff, "ref", budget)
        assert any(c.content.startswith("@@ -40") for c in chunks)
        assert all(len(c.content) <= budget for c in chunks)
        assert _joined(chunks) == two_file_diff

    def test_splits_on_line_boundary(self):
        text = "".join(f"line number {i}\n" for i in range(50))
        chunks = chunk_text(text, "ref", 40)
        assert len(chunks) > 1
        assert all(c.content.endswith("\n") for c in chunks)
        assert all(len(c.content) <= 40 for c in chunks)
        assert not any(c.truncated for c in chunks)
        assert _joined(chunks) == text

    def test_hard_cut_long_line(self):
        text = "short\n" + "x" * 25 + "\nafter\n"
        chunks = chunk_text(text, "ref", 10)
        assert all(len(c.content) <= 10 for c in chunks)
        assert any(c.truncated for c in chunks)
        assert not chunks[0].truncated
        assert _joined(chunks) == text

    def test_form_feed_is_not_a_line_break(self):
        text = "ab\x0ccd\n"
        chunks = chunk_text(text, "ref", 3)
        # one 6-char line, so both pieces come from a hard cut
        assert [c.content for c in chunks] == ["ab\x0c", "cd\n"]
        assert all(c.truncated for c in chunks)

    def test_sequence_indexes_and_ref(self, two_file_diff):
        chunks = chunk_text(two_file_diff, "deadbeef", 30)
        assert [c.sequence_index for c in chunks] == list(range(len(chunks)))
        assert {c.source_ref for c in chunks} == {"deadbeef"}

    @pytest.mark.parametrize("budget", [1, 7, 16, 33, 64, 500])
    def test_reproduces_input(self, two_file_diff, budget):
        text = two_file_diff + "no trailing newline"
        chunks = chunk_text(text, "ref", budget)
        assert all(len(c.content) <= budget for c in chunks)
        assert _joined(chunks) == text

    def test_deterministic(self, two_file_diff):
        assert chunk_text(two_file_diff, "r", 25) == chunk_text(two_file_diff, "r", 25)


class TestChunkDiff:
    """Test chunking a DiffRecord."""

    def test_binary_files_reported_separately(self):
        text_patch = _file_patch("a.py", [_hunk(1, 2)])
        diff = DiffRecord(
            commit_id="c0ffee",
            files=(
                FileDelta("a.py", FileStatus.MODIFIED, 2, 0, text_patch),
                FileDelta("logo.png", FileStatus.ADDED, binary=True),
            ),
        )
        chunks, binary = chunk_diff(diff, 1000)
        assert binary == ["logo.png"]
        assert len(chunks) == 1
        assert chunks[0].source_ref == "c0ffee"
        assert chunks[0].content == text_patch

    def test_binary_only_diff(self):
        diff = DiffRecord("c0ffee", (FileDelta("a.bin", FileStatus.ADDED, binary=True),))
        chunks, binary = chunk_diff(diff, 1000)
        assert chunks == []
        assert binary == ["a.bin"]
