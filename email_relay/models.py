"""
Data models for the Email Command Relay
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ParsedEmail(BaseModel):
    """Represents a parsed reply email"""
    uid: Optional[int] = None
    uid_validity: Optional[int] = None
    message_id: str = ""
    subject: str = ""
    from_address: str
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    received_at: datetime

    @field_validator("from_address")
    @classmethod
    def require_address(cls, value: str) -> str:
        # Only the shape is checked; internal domains such as .local are valid senders
        local, at, domain = value.strip().rpartition("@")
        if not at or not local or not domain:
            raise ValueError(f"not an email address: {value!r}")
        return value.strip()


class SenderFilter(BaseModel):
    """Allow-list of senders permitted to drive sessions"""
    allowed_senders: List[str] = Field(default_factory=list, description="Addresses or address fragments allowed to send commands")

    def is_allowed(self, from_address: Optional[str]) -> bool:
        """
        Case-insensitive substring match against the allow-list.

        An empty allow-list accepts nobody.
        """
        if not from_address:
            return False

        addr = from_address.lower()
        for allowed in self.allowed_senders:
            allowed = allowed.strip().lower()
            if allowed and allowed in addr:
                return True
        return False


class SessionRecord(BaseModel):
    """Registry entry describing where to deliver commands for a token"""
    model_config = ConfigDict(populate_by_name=True)

    token: str
    target_kind: str = Field(default="pty", alias="type")
    tmux_session: str = Field(default="claude-taskping", alias="tmuxSession")
    working_dir: Optional[str] = Field(default=None, alias="cwd")
    created_at: int = Field(alias="createdAt")
    expires_at: int = Field(alias="expiresAt")
    command_count: int = Field(default=0, alias="commandCount")
    command_limit: int = Field(default=10, alias="maxCommands")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    description: Optional[str] = None
    last_command_at: Optional[str] = Field(default=None, alias="lastCommand")

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def is_exhausted(self) -> bool:
        return self.command_count >= self.command_limit

    def is_usable(self, now: int) -> bool:
        return not self.is_expired(now) and not self.is_exhausted()


class ProcessedMarker(BaseModel):
    """Tracks an email that has been acted upon"""
    key: str
    processed_at: datetime
    status: str  # 'injected', 'rejected_unsafe', 'failed'
    token: Optional[str] = None
    error_message: Optional[str] = None


class RejectionReason(str, Enum):
    NO_TOKEN = "no_token"
    NO_COMMAND = "no_command"
    UNSAFE_COMMAND = "unsafe_command"


class ParsedCommand(BaseModel):
    """Command extracted from a reply email"""
    token: Optional[str] = None
    command: Optional[str] = None
    rejection: Optional[RejectionReason] = None
    raw_subject: str = ""

    @property
    def accepted(self) -> bool:
        return self.rejection is None


class InjectionResult(BaseModel):
    """Result of one injection attempt"""
    success: bool
    strategy: str
    target: Optional[str] = None
    error: Optional[str] = None  # 'session_not_found', 'automation_unavailable', 'launch_failed', 'injection_failed'
    message: Optional[str] = None
    attempts: List[str] = Field(default_factory=list)  # strategy trail, e.g. "tmux:launch_failed"
    prompts_seen: List[str] = Field(default_factory=list)


class Disposition(str, Enum):
    """What the watcher does with a message once it has been handled"""
    INJECTED = "injected"
    DUPLICATE = "duplicate"
    UNSAFE = "unsafe"
    NO_COMMAND = "no_command"
    NOT_ALLOWED = "not_allowed"
    NO_TOKEN = "no_token"
    SESSION_UNAVAILABLE = "session_unavailable"
    INJECTION_FAILED = "injection_failed"
    ABANDONED = "abandoned"

    @property
    def marks_processed(self) -> bool:
        return self in (Disposition.INJECTED, Disposition.UNSAFE, Disposition.ABANDONED)

    @property
    def marks_seen(self) -> bool:
        return self in (
            Disposition.INJECTED,
            Disposition.DUPLICATE,
            Disposition.UNSAFE,
            Disposition.NO_COMMAND,
            Disposition.SESSION_UNAVAILABLE,
            Disposition.ABANDONED,
        )


class MessageOutcome(BaseModel):
    """Outcome of handling one email"""
    disposition: Disposition
    dedup_key: str
    uid: Optional[int] = None
    token: Optional[str] = None
    command: Optional[str] = None
    detail: Optional[str] = None


class RelayEvent(BaseModel):
    """Outcome event emitted to notification channels"""
    event_type: str  # 'command_injected', 'injection_failed', 'injection_abandoned', 'command_rejected'
    token: Optional[str] = None
    target: Optional[str] = None
    strategy: Optional[str] = None
    command_preview: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
