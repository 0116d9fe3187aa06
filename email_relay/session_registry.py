"""
Session registry backed by the notifier's session map document
"""
import json
import logging
import time
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .models import SessionRecord

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Maps tokens to execution targets.

    The document is written by the external notifier whenever it sends a
    task-completion email, so it is re-read on every resolve.
    """

    def __init__(self, session_file: str = "session-map.json", default_command_limit: int = 10):
        self.session_file = Path(session_file)
        self.default_command_limit = default_command_limit
        self.lock = Lock()
        self._document: Dict[str, Dict[str, Any]] = {}

    def reload(self) -> Dict[str, Dict[str, Any]]:
        """Re-read the session map from disk"""
        if not self.session_file.exists():
            self._document = {}
            return self._document

        try:
            with open(self.session_file, 'r') as f:
                data = json.load(f)
            self._document = data if isinstance(data, dict) else {}
        except Exception as e:
            logger.error(f"Error loading session map {self.session_file}: {e}")
            self._document = {}

        return self._document

    def _save(self) -> None:
        self.session_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.session_file.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            json.dump(self._document, f, indent=2)
        temp_file.replace(self.session_file)

    def _find_key(self, token: str) -> Optional[str]:
        wanted = token.strip().upper()
        for key in self._document:
            if key.upper() == wanted:
                return key
        return None

    def _to_record(self, key: str) -> Optional[SessionRecord]:
        raw = self._document.get(key)
        if not isinstance(raw, dict):
            return None

        data = dict(raw)
        data.pop("token", None)
        data.setdefault("maxCommands", self.default_command_limit)
        try:
            return SessionRecord(token=key.upper(), **data)
        except (ValidationError, TypeError) as e:
            logger.warning(f"Malformed session record for token {key}: {e}")
            return None

    def get(self, token: str) -> Optional[SessionRecord]:
        """Return the record for a token without enforcing usability"""
        with self.lock:
            self.reload()
            key = self._find_key(token)
            return self._to_record(key) if key else None

    def resolve(self, token: str, now: Optional[int] = None) -> Optional[SessionRecord]:
        """
        Resolve a token to a usable session.

        Returns None when the token is unknown, expired, or has used up its
        command limit. Expired records are removed from the document.
        """
        now = int(time.time()) if now is None else now

        with self.lock:
            self.reload()
            key = self._find_key(token)
            if key is None:
                logger.warning(f"Session not found for token {token}")
                return None

            record = self._to_record(key)
            if record is None:
                return None

            if record.is_expired(now):
                logger.warning(f"Session {record.token} expired at {record.expires_at}")
                del self._document[key]
                try:
                    self._save()
                except OSError as e:
                    logger.error(f"Failed to drop expired session {record.token}: {e}")
                return None

            if record.is_exhausted():
                logger.warning(
                    f"Session {record.token} reached its command limit "
                    f"({record.command_count}/{record.command_limit})"
                )
                return None

            return record

    def record_command(self, token: str) -> Optional[SessionRecord]:
        """Increment the command count after a successful injection"""
        with self.lock:
            self.reload()
            key = self._find_key(token)
            if key is None:
                logger.warning(f"Cannot record command for unknown token {token}")
                return None

            entry = self._document[key]
            entry["commandCount"] = int(entry.get("commandCount", 0)) + 1
            entry["lastCommand"] = datetime.now().isoformat()
            self._save()
            logger.debug(f"Updated command count for session {key}: {entry['commandCount']}")
            return self._to_record(key)

    def add(self, record: SessionRecord) -> None:
        """Write a record into the document (used by tooling and tests)"""
        with self.lock:
            self.reload()
            self._document[record.token] = record.model_dump(
                by_alias=True, exclude={"token"}, exclude_none=True
            )
            self._save()
