"""Tests for retry_tracker module."""

from pathlib import Path

import pytest
from helpers import build_prd_text

from retry_tracker import (
    ConsecutiveFailureCounter,
    ItemRetryTracker,
    block_item,
    update_status_in_content,
)
from task_document import DocumentError, ItemStatus, load_document


class TestConsecutiveFailureCounter:
    def test_aborts_at_threshold(self) -> None:
        counter = ConsecutiveFailureCounter()
        assert counter.record_failure() == 1
        assert counter.record_failure() == 2
        assert not counter.should_abort()
        assert counter.record_failure() == 3
        assert counter.should_abort()

    def test_success_resets(self) -> None:
        counter = ConsecutiveFailureCounter()
        counter.record_failure()
        counter.record_failure()
        counter.record_success()
        assert counter.count == 0
        counter.record_failure()
        counter.record_failure()
        assert not counter.should_abort()

    def test_custom_threshold(self) -> None:
        counter = ConsecutiveFailureCounter(threshold=1)
        counter.record_failure()
        assert counter.should_abort()


class TestItemRetryTracker:
    def test_counts_per_item(self) -> None:
        tracker = ItemRetryTracker(3)
        tracker.record_failure("a")
        tracker.record_failure("a")
        tracker.record_failure("b")
        assert tracker.get_count("a") == 2
        assert tracker.get_count("b") == 1
        assert tracker.get_count("c") == 0

    def test_should_block_at_threshold(self) -> None:
        tracker = ItemRetryTracker(2)
        tracker.record_failure("a")
        assert not tracker.should_block("a")
        tracker.record_failure("a")
        assert tracker.should_block("a")

    def test_zero_disables(self) -> None:
        tracker = ItemRetryTracker(0)
        assert not tracker.is_enabled()
        for _ in range(10):
            tracker.record_failure("a")
        assert not tracker.should_block("a")

    def test_reset(self) -> None:
        tracker = ItemRetryTracker(2)
        tracker.record_failure("a")
        tracker.record_failure("a")
        tracker.reset("a")
        assert tracker.get_count("a") == 0
        assert not tracker.should_block("a")
        tracker.reset("never-seen")


class TestUpdateStatusInContent:
    def test_blocks_target_only(self) -> None:
        content = build_prd_text([("a", "in-progress"), ("b", "in-progress")])
        updated = update_status_in_content(content, "b")
        doc_lines = updated.splitlines()
        assert doc_lines.count('      "status": "blocked"') == 1
        assert doc_lines.count('      "status": "in-progress"') == 1
        assert updated.index('"id": "a"') < updated.index('"in-progress"') < updated.index('"id": "b"')

    def test_pending_item_blocked(self) -> None:
        content = build_prd_text([("a", "pending")])
        assert '"status": "blocked"' in update_status_in_content(content, "a")

    def test_minified_status(self) -> None:
        content = '{\n  "id": "a",\n  "status":"in-progress"\n}\n'
        assert update_status_in_content(content, "a") == '{\n  "id": "a",\n  "status": "blocked"\n}\n'

    def test_complete_item_untouched(self) -> None:
        content = build_prd_text([("a", "complete"), ("b", "pending")])
        # Only the first status line after the id is considered
        assert update_status_in_content(content, "a") == content

    def test_status_on_id_line(self) -> None:
        content = '  {"id": "a", "status": "pending"},\n  {"id": "b", "status": "pending"}\n'
        updated = update_status_in_content(content, "b")
        assert updated == '  {"id": "a", "status": "pending"},\n  {"id": "b", "status": "blocked"}\n'

    def test_preserves_comments_and_line_endings(self) -> None:
        content = build_prd_text([("a", "in-progress")]).replace("\n", "\r\n")
        updated = update_status_in_content(content, "a")
        assert "// Test PRD\r\n" in updated
        assert '"status": "blocked"\r\n' in updated
        assert updated.count("\r\n") == content.count("\r\n")

    def test_missing_id_unchanged(self) -> None:
        content = build_prd_text([("a", "in-progress")])
        assert update_status_in_content(content, "zzz") == content


class TestBlockItem:
    def test_blocks_on_disk(self, prd_path: Path) -> None:
        block_item(prd_path, "feat-1")
        doc = load_document(prd_path)
        assert doc.features[0].status is ItemStatus.BLOCKED
        assert doc.features[1].status is ItemStatus.PENDING

    def test_only_status_line_changes(self, prd_path: Path) -> None:
        before = prd_path.read_text(encoding="utf-8").splitlines()
        block_item(prd_path, "feat-1")
        after = prd_path.read_text(encoding="utf-8").splitlines()
        changed = [(b, a) for b, a in zip(before, after) if b != a]
        assert changed == [('      "status": "in-progress"', '      "status": "blocked"')]

    def test_crlf_file_keeps_crlf(self, tmp_path: Path) -> None:
        path = tmp_path / "prd.jsonc"
        path.write_bytes(build_prd_text([("a", "in-progress")]).replace("\n", "\r\n").encode())
        block_item(path, "a")
        data = path.read_bytes()
        assert b'"status": "blocked"\r\n' in data
        assert b"\n" not in data.replace(b"\r\n", b"")

    def test_unknown_feature(self, prd_path: Path) -> None:
        before = prd_path.read_bytes()
        with pytest.raises(DocumentError, match="Feature ghost not found in PRD"):
            block_item(prd_path, "ghost")
        assert prd_path.read_bytes() == before

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(DocumentError, match="Failed to read PRD file"):
            block_item(tmp_path / "missing.jsonc", "a")
