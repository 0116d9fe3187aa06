"""
Tests for the injection audit database
"""
import os

import pytest

from email_relay.database import DatabaseManager


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'nested' / 'relay.db'}")
    yield manager
    manager.close()


class TestInjectionLog:
    def test_log_injection(self, db):
        entry_id = db.log_injection(
            token="XYZ789",
            command="run the build",
            strategy="tmux",
            target="claude-taskping"
        )
        assert entry_id == 1

        entries = db.get_recent_injections()
        assert entries[0]["target"] == "claude-taskping"
        assert entries[0]["pid"] == os.getpid()
        assert entries[0]["created_at"] is not None

    def test_recent_injections_newest_first(self, db):
        db.log_injection("XYZ789", "first", "tmux")
        db.log_injection("XYZ789", "second", "clipboard")

        commands = [entry["command"] for entry in db.get_recent_injections(limit=10)]
        assert commands == ["second", "first"]

    def test_filter_by_token(self, db):
        db.log_injection("XYZ789", "first", "tmux")
        db.log_injection("ABC123", "other", "tmux")

        entries = db.get_recent_injections(token="abc123")
        assert [entry["command"] for entry in entries] == ["other"]

    def test_limit(self, db):
        for i in range(5):
            db.log_injection("XYZ789", f"command {i}", "tmux")
        assert len(db.get_recent_injections(limit=2)) == 2

    def test_count_by_outcome(self, db):
        db.log_injection("XYZ789", "ok", "tmux")
        db.log_injection("XYZ789", "bad", "clipboard", success=False, error="automation_unavailable")

        assert db.count_injections() == 2
        assert db.count_injections(success=False) == 1
