"""
Relay configuration loaded from environment variables
"""
import os
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

_CLAUDE_BIN_CANDIDATES = (
    "/opt/homebrew/bin/claude",
    "/usr/local/bin/claude",
    "/usr/bin/claude",
)


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _env(*names: str, default: Optional[str] = None) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def resolve_fallback_launch_command() -> Optional[str]:
    """Fully-qualified launch command used when the primary one fails"""
    discovered = shutil.which("claude")
    if discovered:
        return discovered

    for candidate in _CLAUDE_BIN_CANDIDATES:
        path = Path(candidate)
        if path.exists() and os.access(candidate, os.X_OK):
            return candidate
    return None


class RelaySettings(BaseModel):
    """Runtime settings for the relay"""

    # Mailbox
    imap_server: str = "imap.gmail.com"
    imap_port: int = 993
    email_address: Optional[str] = None
    email_password: Optional[str] = None
    imap_timeout: float = 30.0
    allowed_senders: List[str] = Field(default_factory=list)
    product_names: Tuple[str, ...] = ("TaskPing", "Claude-Code-Remote")
    poll_interval: float = 120.0
    reconnect_delay: float = 10.0
    search_lookback_days: int = 1

    # Storage
    session_map_path: Path = Path("data/session-map.json")
    processed_state_path: Path = Path("data/processed-messages.json")
    processed_retention_days: int = 7
    default_command_limit: int = 10
    database_url: str = "sqlite:///data/relay.db"
    lock_file: Path = Path("data/relay.lock")

    # Injection
    tmux_bin: Optional[str] = None
    launch_command: str = "claude"
    fallback_launch_command: Optional[str] = None
    session_warmup: float = 3.0
    step_delay: float = 0.2
    confirm_max_attempts: int = 8
    confirm_interval: float = 1.5
    confirm_settle_delay: float = 2.0
    clipboard_is_delivery: bool = True
    max_injection_attempts: int = 3

    # Events
    notify_webhook_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RelaySettings":
        """Build settings from the process environment"""
        return cls(
            imap_server=_env("IMAP_SERVER", "IMAP_HOST", default="imap.gmail.com"),
            imap_port=int(os.getenv("IMAP_PORT", "993")),
            email_address=_env("EMAIL_ADDRESS", "IMAP_USER"),
            email_password=_env("EMAIL_PASSWORD", "IMAP_PASS"),
            imap_timeout=float(os.getenv("IMAP_TIMEOUT", "30")),
            allowed_senders=_split_list(os.getenv("ALLOWED_SENDERS")),
            product_names=tuple(_split_list(os.getenv("PRODUCT_NAMES"))) or ("TaskPing", "Claude-Code-Remote"),
            poll_interval=float(os.getenv("POLL_INTERVAL", "120")),
            reconnect_delay=float(os.getenv("RECONNECT_DELAY", "10")),
            search_lookback_days=int(os.getenv("SEARCH_LOOKBACK_DAYS", "1")),
            session_map_path=Path(os.getenv("SESSION_MAP_PATH", "data/session-map.json")),
            processed_state_path=Path(os.getenv("PROCESSED_STATE_PATH", "data/processed-messages.json")),
            processed_retention_days=int(os.getenv("PROCESSED_RETENTION_DAYS", "7")),
            default_command_limit=int(os.getenv("DEFAULT_COMMAND_LIMIT", "10")),
            database_url=os.getenv("DATABASE_URL", "sqlite:///data/relay.db"),
            lock_file=Path(os.getenv("LOCK_FILE", "data/relay.lock")),
            tmux_bin=os.getenv("TMUX_BIN"),
            launch_command=os.getenv("TMUX_LAUNCH_COMMAND", "claude"),
            fallback_launch_command=os.getenv("TMUX_FALLBACK_LAUNCH_COMMAND") or resolve_fallback_launch_command(),
            session_warmup=float(os.getenv("SESSION_WARMUP", "3")),
            confirm_max_attempts=int(os.getenv("CONFIRM_MAX_ATTEMPTS", "8")),
            confirm_interval=float(os.getenv("CONFIRM_INTERVAL", "1.5")),
            clipboard_is_delivery=_env_bool("CLIPBOARD_IS_DELIVERY", True),
            max_injection_attempts=int(os.getenv("MAX_INJECTION_ATTEMPTS", "3")),
            notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
        )

    def validate_credentials(self) -> None:
        """Fail fast when the mailbox cannot be reached"""
        if not self.email_address or not self.email_password:
            raise RuntimeError("EMAIL_ADDRESS and EMAIL_PASSWORD must be set")
        if not self.allowed_senders:
            raise RuntimeError("ALLOWED_SENDERS must list at least one sender")
