"""
Tests for tmux injection and confirmation handling
"""
import asyncio
import time

import pytest

from email_relay.errors import AutomationUnavailableError, InjectionFailedError, LaunchFailedError
from email_relay.models import SessionRecord
from email_relay.prompts import PromptKind


@pytest.fixture
def record():
    now = int(time.time())
    return SessionRecord(
        token="XYZ789",
        tmux_session="claude-taskping",
        working_dir="/tmp/project",
        created_at=now,
        expires_at=now + 3600
    )


class TestSendCommand:
    """Test the clear / text / submit sequence"""

    def test_three_step_send(self, injector, tmux, record):
        result = asyncio.run(injector.inject(record, "run the build"))

        assert result.success is True
        assert result.strategy == "tmux"
        assert result.target == "claude-taskping"
        assert tmux.sent()[:3] == [
            ("send_keys", "claude-taskping", "C-u"),
            ("send_literal", "claude-taskping", "run the build"),
            ("send_keys", "claude-taskping", "C-m"),
        ]

    def test_multi_line_command_flattened(self, injector, tmux):
        asyncio.run(injector.send_command("claude-taskping", "first step\n\nsecond step"))
        assert ("send_literal", "claude-taskping", "first step second step") in tmux.sent()

    def test_send_failure_restarts_session_once(self, injector, tmux, record):
        tmux.send_failures = 1
        result = asyncio.run(injector.inject(record, "run the build"))

        assert result.success is True
        assert ("kill_session", "claude-taskping") in tmux.calls
        assert ("send_literal", "claude-taskping", "run the build") in tmux.sent()

    def test_repeated_send_failure_raises(self, injector, tmux, record):
        tmux.send_failures = 2
        with pytest.raises(InjectionFailedError):
            asyncio.run(injector.inject(record, "run the build"))


class TestSessionLifecycle:
    """Test session discovery and creation"""

    def test_tmux_missing(self, injector, tmux, record):
        tmux.available = False
        with pytest.raises(AutomationUnavailableError):
            asyncio.run(injector.inject(record, "run the build"))

    def test_creates_missing_session(self, injector, tmux, record):
        tmux.sessions.clear()
        result = asyncio.run(injector.inject(record, "run the build"))

        assert result.success is True
        assert ("new_session", "claude-taskping", "claude", "/tmp/project") in tmux.calls

    def test_fallback_launch_command(self, injector, tmux, record):
        tmux.sessions.clear()
        tmux.dead_commands.add("claude")
        asyncio.run(injector.create_session(record))

        launches = [call for call in tmux.calls if call[0] == "new_session"]
        assert [call[2] for call in launches] == ["claude", "/usr/local/bin/claude"]
        assert "claude-taskping" in tmux.sessions

    def test_launch_failure(self, injector, tmux, record):
        tmux.sessions.clear()
        tmux.dead_commands.update({"claude", "/usr/local/bin/claude"})
        with pytest.raises(LaunchFailedError):
            asyncio.run(injector.inject(record, "run the build"))


class TestConfirmations:
    """Test the confirmation state machine"""

    def test_scripted_prompt_sequence(self, injector, tmux, record):
        tmux.screens = ["proceed? 1.Yes 2.Yes-dont-ask", "in progress…", "> "]
        result = asyncio.run(injector.inject(record, "run the build"))

        # After the three send steps: one answer, then nothing
        assert tmux.sent()[3:] == [
            ("send_keys", "claude-taskping", "2"),
            ("send_keys", "claude-taskping", "Enter"),
        ]
        assert result.prompts_seen == ["proceed_multi_option", "in_progress", "settled"]

    def test_single_option_answered_with_one(self, injector, tmux):
        tmux.screens = ["Do you want to proceed?\n❯ 1. Yes\n  2. No", "> "]
        seen = asyncio.run(injector.handle_confirmations("claude-taskping"))

        assert seen == [PromptKind.PROCEED_SINGLE_OPTION, PromptKind.SETTLED]
        assert tmux.sent() == [
            ("send_keys", "claude-taskping", "1"),
            ("send_keys", "claude-taskping", "Enter"),
        ]

    def test_yes_no_answered(self, injector, tmux):
        tmux.screens = ["Continue? (y/n)", "> "]
        asyncio.run(injector.handle_confirmations("claude-taskping"))
        assert tmux.sent()[0] == ("send_keys", "claude-taskping", "y")

    def test_error_stops_loop(self, injector, tmux):
        tmux.screens = ["Error: something broke", "> "]
        seen = asyncio.run(injector.handle_confirmations("claude-taskping"))
        assert seen == [PromptKind.ERROR_SEEN]

    def test_budget_exhaustion_is_not_failure(self, injector, tmux, record):
        tmux.screens = ["still thinking about it"]
        result = asyncio.run(injector.inject(record, "run the build"))

        assert result.success is True
        assert result.prompts_seen == ["unrecognized"] * injector.max_attempts
