"""
Shared fakes and fixtures
"""
import time
from datetime import datetime
from typing import Dict, List, Optional, Union

import pytest

from email_relay.config import RelaySettings
from email_relay.errors import EmailParseError, TransportError
from email_relay.injector import InjectionEngine, TmuxStrategy
from email_relay.models import ParsedEmail, RelayEvent, SessionRecord
from email_relay.notifier_client import EventDispatcher
from email_relay.session_registry import SessionRegistry
from email_relay.state_manager import ProcessedMessageStore
from email_relay.tmux_client import TmuxCommandError
from email_relay.tmux_injector import TmuxInjector

OPERATOR = "operator@example.com"


class FakeTmuxClient:
    """In-memory stand-in for TmuxClient that records every call"""

    def __init__(self, screens: Optional[List[str]] = None, sessions=("claude-taskping",), available: bool = True):
        self.available = available
        self.sessions = set(sessions)
        self.screens = list(screens or ["> "])
        self.calls: List[tuple] = []
        self.dead_commands = set()  # launch commands whose session exits immediately
        self.send_failures = 0

    def is_available(self) -> bool:
        return self.available

    async def has_session(self, name: str) -> bool:
        self.calls.append(("has_session", name))
        return name in self.sessions

    async def new_session(self, name: str, command: str, cwd: Optional[str] = None) -> None:
        self.calls.append(("new_session", name, command, cwd))
        if command not in self.dead_commands:
            self.sessions.add(name)

    async def kill_session(self, name: str) -> None:
        self.calls.append(("kill_session", name))
        self.sessions.discard(name)

    async def send_literal(self, name: str, text: str) -> None:
        if self.send_failures:
            self.send_failures -= 1
            raise TmuxCommandError(["send-keys", "-t", name, "-l", text], 1, "can't find pane")
        self.calls.append(("send_literal", name, text))

    async def send_keys(self, name: str, *keys: str) -> None:
        self.calls.append(("send_keys", name) + keys)

    async def capture_pane(self, name: str) -> str:
        self.calls.append(("capture_pane", name))
        if len(self.screens) > 1:
            return self.screens.pop(0)
        return self.screens[0]

    def sent(self) -> List[tuple]:
        """Calls that changed the pane, in order"""
        return [call for call in self.calls if call[0] in ("send_keys", "send_literal")]


class FakeMailbox:
    """Synchronous stand-in for IMAPClient backed by a dict of messages"""

    def __init__(self, messages: Optional[Dict[int, Union[ParsedEmail, Exception]]] = None):
        self.messages = dict(messages or {})
        self.seen = set()
        self.connected = False
        self.connect_failures = 0
        self.connect_attempts = 0
        self.searches: List[Optional[object]] = []
        self.uid_validity = 7

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> None:
        self.connect_attempts += 1
        if self.connect_failures:
            self.connect_failures -= 1
            raise TransportError("connection refused")
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def select_mailbox(self, mailbox: str = "INBOX") -> int:
        return len(self.messages)

    def supports_idle(self) -> bool:
        return False

    def search_unseen(self, since=None) -> List[int]:
        self.searches.append(since)
        return [uid for uid in sorted(self.messages) if uid not in self.seen]

    def fetch_message(self, uid: int) -> ParsedEmail:
        message = self.messages[uid]
        if isinstance(message, Exception):
            raise message
        return message

    def mark_seen(self, uid: int) -> bool:
        self.seen.add(uid)
        return True

    def wait_for_activity(self, timeout: float) -> bool:
        return False

    def interrupt(self) -> None:
        pass


class RecordingSink:
    def __init__(self):
        self.events: List[RelayEvent] = []

    async def emit(self, event: RelayEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.event_type for event in self.events]


def make_email(
    uid: Optional[int] = 1,
    subject: str = "Re: [TaskPing #XYZ789] Task completed",
    body_text: Optional[str] = "run the build\n\n> quoted original",
    from_address: str = OPERATOR,
    body_html: Optional[str] = None,
    message_id: str = "<reply-1@example.com>",
    uid_validity: Optional[int] = 7
) -> ParsedEmail:
    return ParsedEmail(
        uid=uid,
        uid_validity=uid_validity,
        message_id=message_id,
        subject=subject,
        from_address=from_address,
        body_text=body_text,
        body_html=body_html,
        received_at=datetime(2026, 10, 19, 9, 30)
    )


def parse_error(uid: int) -> EmailParseError:
    return EmailParseError(f"Could not parse message {uid}")


@pytest.fixture
def settings(tmp_path):
    """Relay settings pointing every file into a temp directory"""
    return RelaySettings(
        email_address="relay@example.com",
        email_password="secret",
        allowed_senders=[OPERATOR],
        session_map_path=tmp_path / "session-map.json",
        processed_state_path=tmp_path / "processed-messages.json",
        lock_file=tmp_path / "relay.lock",
        database_url=f"sqlite:///{tmp_path / 'relay.db'}",
        poll_interval=0.01,
        reconnect_delay=0.01,
        session_warmup=0,
        step_delay=0,
        confirm_interval=0,
        confirm_settle_delay=0,
    )


@pytest.fixture
def registry(settings):
    registry = SessionRegistry(str(settings.session_map_path))
    now = int(time.time())
    registry.add(SessionRecord(
        token="XYZ789",
        target_kind="pty",
        tmux_session="claude-taskping",
        working_dir="/tmp",
        created_at=now,
        expires_at=now + 24 * 3600,
    ))
    return registry


@pytest.fixture
def store(settings):
    return ProcessedMessageStore(str(settings.processed_state_path))


@pytest.fixture
def tmux():
    return FakeTmuxClient()


@pytest.fixture
def injector(tmux):
    return TmuxInjector(
        tmux,
        launch_command="claude",
        fallback_launch_command="/usr/local/bin/claude",
        warmup=0,
        step_delay=0,
        max_attempts=3,
        interval=0,
        settle_delay=0
    )


@pytest.fixture
def engine(injector):
    return InjectionEngine([TmuxStrategy(injector)])


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def events(sink):
    return EventDispatcher([sink])


@pytest.fixture
def mailbox():
    return FakeMailbox()
