"""
Tests for the loop record codec and store.
"""

import pytest

from pdca_loop.persisted.record import (
    CorruptRecordError,
    LoopRecord,
    RecordStore,
    parse_record,
    render_record,
)


SAMPLE = """---
iteration: 1
max_iterations: 50
completion_promise: "DONE"
---

Fix the failing tests
"""


class TestParseRecord:
    """Tests for parse_record."""

    def test_parse(self):
        record = parse_record(SAMPLE)

        assert record.iteration == 1
        assert record.max_iterations == 50
        assert record.completion_promise == "DONE"
        assert record.prompt == "Fix the failing tests"

    def test_prompt_with_delimiter_kept_verbatim(self):
        body = "Step one\n---\niteration: 99\n---\nStep two"
        text = SAMPLE.replace("Fix the failing tests", body)

        record = parse_record(text)

        assert record.iteration == 1
        assert record.prompt == body

    def test_missing_max_means_unbounded(self):
        record = parse_record("---\niteration: 4\n---\n\nprompt\n")
        assert record.max_iterations == 0
        assert record.completion_promise is None

    def test_null_promise(self):
        record = parse_record("---\niteration: 1\ncompletion_promise: null\n---\n\nx\n")
        assert record.completion_promise is None

    def test_quoted_promise_with_escapes(self):
        record = parse_record('---\niteration: 1\ncompletion_promise: "ALL \\"GOOD\\""\n---\n\nx\n')
        assert record.completion_promise == 'ALL "GOOD"'

    @pytest.mark.parametrize("text", [
        "---\niteration: abc\nmax_iterations: 5\n---\n\nx\n",
        "---\niteration: 1\nmax_iterations: five\n---\n\nx\n",
        "---\nmax_iterations: 5\n---\n\nx\n",
        "no header at all\n",
        "---\niteration: 1\n",
    ])
    def test_corrupt(self, text):
        with pytest.raises(CorruptRecordError):
            parse_record(text)


class TestRenderRecord:
    """Tests for render_record."""

    def test_render_new(self):
        record = LoopRecord(iteration=1, max_iterations=50, completion_promise="DONE", prompt="Fix the failing tests")
        assert render_record(record) == SAMPLE

    def test_iteration_rewrite_keeps_other_lines(self):
        text = "---\niteration: 2\nmax_iterations:  7\ncompletion_promise: 'X'\nstarted_at: 2024-01-01\n---\n\nbody\n"
        record = parse_record(text)
        record.iteration = 3

        rendered = render_record(record)

        assert rendered == text.replace("iteration: 2", "iteration: 3")

    def test_prompt_trailing_newlines_survive(self):
        record = LoopRecord(iteration=1, max_iterations=0, completion_promise="D", prompt="line\n\n")
        assert parse_record(render_record(record)).prompt == "line\n\n"


class TestRecordStore:
    """Tests for RecordStore."""

    def test_missing(self, temp_dir):
        store = RecordStore(temp_dir / "loop.md")
        assert store.exists() is False
        assert store.load() is None

    def test_create_then_load(self, temp_dir):
        store = RecordStore(temp_dir / "nested" / "loop.md")
        record = LoopRecord(iteration=1, max_iterations=5, completion_promise="DONE", prompt="go")

        assert store.create(record) is True
        assert store.exists()
        loaded = store.load()
        assert loaded.iteration == 1
        assert loaded.prompt == "go"

    def test_create_does_not_replace(self, temp_dir):
        store = RecordStore(temp_dir / "loop.md")
        store.create(LoopRecord(iteration=1, max_iterations=5, completion_promise="A", prompt="first"))

        created = store.create(LoopRecord(iteration=1, max_iterations=9, completion_promise="B", prompt="second"))

        assert created is False
        assert store.load().prompt == "first"

    def test_save_leaves_no_temp_files(self, temp_dir):
        store = RecordStore(temp_dir / "loop.md")
        record = LoopRecord(iteration=1, max_iterations=5, completion_promise="A", prompt="p")
        store.create(record)
        record.iteration = 2
        store.save(record)

        assert store.load().iteration == 2
        leftovers = [p.name for p in temp_dir.iterdir() if p.name.startswith(".record_")]
        assert leftovers == []

    def test_delete_idempotent(self, temp_dir):
        store = RecordStore(temp_dir / "loop.md")
        store.create(LoopRecord(iteration=1, max_iterations=5, completion_promise="A", prompt="p"))

        assert store.delete() is True
        assert store.delete() is False
        assert store.exists() is False
