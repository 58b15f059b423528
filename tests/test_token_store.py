"""
Unit tests for the token record repository.

Tests incremental sync, the upsert rule, and failure handling.
"""

import json
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from ai_usage_guard.core.log_parser import parse_file
from ai_usage_guard.storage.models import TokenUsageRecord
from ai_usage_guard.storage.token_store import TokenRecordRepository


def make_line(request_id: str, output_tokens: int, minute: int = 0, model: str = "claude-sonnet-4-5") -> str:
    return json.dumps({
        "type": "assistant",
        "requestId": request_id,
        "timestamp": f"2026-02-21T10:{minute:02d}:00.000Z",
        "message": {
            "model": model,
            "usage": {"input_tokens": 10, "output_tokens": output_tokens},
        },
    })


def make_record(request_id: str, output_tokens: int, hour: int = 10, model: str = "claude-sonnet-4-5"):
    return TokenUsageRecord(
        request_id=request_id,
        timestamp=datetime(2026, 2, 21, hour, tzinfo=timezone.utc),
        model=model,
        input_tokens=10,
        output_tokens=output_tokens,
    )


class TestTokenSync:
    """Test syncing JSONL files into the store."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.logs_dir = os.path.join(self.temp_dir, "projects")
        os.makedirs(self.logs_dir)
        self.db_path = os.path.join(self.temp_dir, "data", "tokens.db")
        self.repository = TokenRecordRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_log(self, relative_path: str, lines) -> str:
        path = os.path.join(self.logs_dir, relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write("\n".join(lines) + "\n")
        return path

    def test_sync_ingests_records(self):
        """Verify records from nested log files are stored."""
        self.write_log("project-a/session1.jsonl", [make_line("req_1", 5), make_line("req_2", 7, minute=5)])
        self.write_log("project-b/session2.jsonl", [make_line("req_3", 9, minute=10)])

        result = self.repository.sync([self.logs_dir])

        assert result.ok
        assert result.files_scanned == 2
        assert result.files_processed == 2
        assert result.records_upserted == 3
        records = self.repository.load_all()
        assert [r.request_id for r in records] == ["req_1", "req_2", "req_3"]
        assert records[0].timestamp == datetime(2026, 2, 21, 10, 0, tzinfo=timezone.utc)

    def test_sync_is_idempotent(self):
        """Verify a second sync over unchanged files changes nothing."""
        self.write_log("session.jsonl", [make_line("req_1", 5), make_line("req_2", 7)])
        self.repository.sync([self.logs_dir])
        before = self.repository.load_all()

        result = self.repository.sync([self.logs_dir])

        assert result.files_scanned == 1
        assert result.files_processed == 0
        assert self.repository.load_all() == before

    def test_unchanged_mod_time_skips_file(self):
        """Verify a file is not re-read while its modification time is unchanged."""
        path = self.write_log("session.jsonl", [make_line("req_1", 5)])
        self.repository.sync([self.logs_dir])
        stat = os.stat(path)

        self.write_log("session.jsonl", [make_line("req_1", 5), make_line("req_2", 7)])
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns))
        self.repository.sync([self.logs_dir])
        assert self.repository.count() == 1

        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
        result = self.repository.sync([self.logs_dir])
        assert result.files_processed == 1
        assert self.repository.count() == 2

    def test_file_cursor_recorded(self):
        """Verify the cursor stores the mod time and record count."""
        path = self.write_log("session.jsonl", [make_line("req_1", 5), make_line("req_1", 8)])
        self.repository.sync([self.logs_dir])

        cursor = self.repository.known_files()[path]
        assert cursor.mod_time == os.stat(path).st_mtime
        assert cursor.record_count == 2

    def test_later_file_with_more_output_wins(self):
        """Verify a duplicate request with more output replaces the stored row."""
        self.write_log("a.jsonl", [make_line("req_1", 10, model="claude-haiku-4-5")])
        self.write_log("b.jsonl", [make_line("req_1", 500, model="claude-opus-4-6")])

        self.repository.sync([self.logs_dir])

        records = self.repository.load_all()
        assert len(records) == 1
        assert records[0].output_tokens == 500
        assert records[0].model == "claude-opus-4-6"

    def test_hidden_and_other_files_ignored(self):
        """Verify only visible .jsonl files are scanned."""
        self.write_log("session.jsonl", [make_line("req_1", 5)])
        self.write_log("notes.txt", [make_line("req_2", 5)])
        self.write_log(".hidden.jsonl", [make_line("req_3", 5)])
        self.write_log(".cache/session.jsonl", [make_line("req_4", 5)])

        result = self.repository.sync([self.logs_dir])

        assert result.files_scanned == 1
        assert [r.request_id for r in self.repository.load_all()] == ["req_1"]

    def test_non_directory_paths_skipped(self):
        """Verify missing directories and plain files are ignored."""
        path = self.write_log("session.jsonl", [make_line("req_1", 5)])

        result = self.repository.sync([path, os.path.join(self.temp_dir, "missing")])

        assert result.ok
        assert result.files_scanned == 0
        assert self.repository.count() == 0

    def test_unwritable_store_reports_error(self):
        """Verify an unwritable destination is a no-op reported in the result."""
        self.write_log("session.jsonl", [make_line("req_1", 5)])
        blocker = os.path.join(self.temp_dir, "blocker")
        with open(blocker, 'w') as f:
            f.write("not a directory")
        repository = TokenRecordRepository(os.path.join(blocker, "tokens.db"))

        result = repository.sync([self.logs_dir])

        assert not result.ok
        assert result.records_upserted == 0
        assert repository.load_all() == []

    def test_unstorable_line_does_not_block_file(self):
        """Verify a line with an unencodable request id is dropped and the rest synced."""
        self.write_log("session.jsonl", [make_line("req_1", 5), make_line("req_\ud800", 5)])

        result = self.repository.sync([self.logs_dir])

        assert result.ok
        assert result.files_processed == 1
        assert [r.request_id for r in self.repository.load_all()] == ["req_1"]

    def test_unbindable_file_skipped_without_raising(self):
        """Verify a file whose rows cannot be written is skipped and retried later."""
        self.write_log("a.jsonl", [make_line("req_1", 5)])
        self.write_log("b.jsonl", [make_line("req_2", 5)])
        oversized = make_record("req_big", 2 ** 64)

        def fake_parse(path):
            if path.endswith("a.jsonl"):
                return [oversized]
            return parse_file(path)

        with patch("ai_usage_guard.storage.token_store.parse_file", side_effect=fake_parse):
            result = self.repository.sync([self.logs_dir])

        assert result.ok
        assert result.files_scanned == 2
        assert result.files_processed == 1
        assert [r.request_id for r in self.repository.load_all()] == ["req_2"]
        assert list(self.repository.known_files()) == [os.path.join(self.logs_dir, "b.jsonl")]

        retry = self.repository.sync([self.logs_dir])
        assert retry.files_processed == 1
        assert self.repository.count() == 2

    def test_undecodable_file_name_skipped(self):
        """Verify a file name that is not valid UTF-8 does not break the sync."""
        self.write_log("good.jsonl", [make_line("req_1", 5)])
        try:
            fd = os.open(os.path.join(os.fsencode(self.logs_dir), b"bad\xff.jsonl"), os.O_CREAT | os.O_WRONLY)
        except OSError:
            pytest.skip("file system rejects non UTF-8 names")
        os.write(fd, make_line("req_2", 5).encode("utf-8") + b"\n")
        os.close(fd)

        result = self.repository.sync([self.logs_dir])

        assert result.ok
        assert result.files_scanned == 2
        assert result.files_processed == 1
        assert [r.request_id for r in self.repository.load_all()] == ["req_1"]

    def test_sub_second_change_rereads_file(self):
        """Verify any change of modification time re-reads the file."""
        path = self.write_log("session.jsonl", [make_line("req_1", 5)])
        self.repository.sync([self.logs_dir])
        stat = os.stat(path)

        self.write_log("session.jsonl", [make_line("req_1", 5), make_line("req_2", 7)])
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 250_000_000))
        result = self.repository.sync([self.logs_dir])

        assert result.files_processed == 1
        assert self.repository.count() == 2

    def test_rebuild_after_clear(self):
        """Verify clear() forces every file to be re-read."""
        self.write_log("session.jsonl", [make_line("req_1", 5)])
        self.repository.sync([self.logs_dir])

        self.repository.clear()
        assert self.repository.count() == 0
        assert self.repository.known_files() == {}

        result = self.repository.sync([self.logs_dir])
        assert result.files_processed == 1
        assert self.repository.count() == 1


class TestTokenUpsert:
    """Test the upsert rule and reads."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "tokens.db")
        self.repository = TokenRecordRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_smaller_output_does_not_replace(self):
        """Verify an observation with fewer output tokens is ignored."""
        self.repository.upsert_records([make_record("req_1", 100, model="first")])
        self.repository.upsert_records([make_record("req_1", 50, model="second")])

        records = self.repository.load_all()
        assert records[0].output_tokens == 100
        assert records[0].model == "first"

    def test_equal_output_replaces(self):
        """Verify a tie favours the newer observation."""
        self.repository.upsert_records([make_record("req_1", 100, model="first")])
        self.repository.upsert_records([make_record("req_1", 100, hour=11, model="second")])

        records = self.repository.load_all()
        assert len(records) == 1
        assert records[0].model == "second"
        assert records[0].timestamp == datetime(2026, 2, 21, 11, tzinfo=timezone.utc)

    def test_load_records_since_is_inclusive(self):
        """Verify load_records includes a record exactly at the cutoff."""
        self.repository.upsert_records([
            make_record("req_1", 1, hour=8),
            make_record("req_2", 1, hour=9),
            make_record("req_3", 1, hour=10),
        ])
        since = datetime(2026, 2, 21, 9, tzinfo=timezone.utc)

        records = self.repository.load_records(since)

        assert [r.request_id for r in records] == ["req_2", "req_3"]
        assert self.repository.load_records(since + timedelta(hours=5)) == []

    def test_load_all_sorted(self):
        """Verify records come back oldest first."""
        self.repository.upsert_records([make_record("late", 1, hour=12), make_record("early", 1, hour=6)])
        assert [r.request_id for r in self.repository.load_all()] == ["early", "late"]

    def test_empty_upsert(self):
        """Verify upserting nothing writes nothing."""
        assert self.repository.upsert_records([]) == 0
        assert not os.path.exists(self.db_path)


class TestTokenStoreReads:
    """Test reads from missing or damaged stores."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_store_reads_empty(self):
        """Verify a missing database yields empty results without being created."""
        db_path = os.path.join(self.temp_dir, "missing.db")
        repository = TokenRecordRepository(db_path)

        assert repository.load_all() == []
        assert repository.count() == 0
        assert repository.known_files() == {}
        assert not os.path.exists(db_path)

    def test_corrupt_store_reads_empty(self):
        """Verify a corrupt database yields empty results."""
        db_path = os.path.join(self.temp_dir, "corrupt.db")
        with open(db_path, 'wb') as f:
            f.write(b"this is not a sqlite database" * 100)
        repository = TokenRecordRepository(db_path)

        assert repository.load_all() == []
        assert repository.load_records(datetime(2026, 1, 1, tzinfo=timezone.utc)) == []
        assert repository.count() == 0

    def test_corrupt_store_sync_reports_error(self):
        """Verify syncing into a corrupt database fails without raising."""
        db_path = os.path.join(self.temp_dir, "corrupt.db")
        with open(db_path, 'wb') as f:
            f.write(b"this is not a sqlite database" * 100)

        result = TokenRecordRepository(db_path).sync([self.temp_dir])

        assert not result.ok
