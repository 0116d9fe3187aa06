"""
State management for tracking processed emails
"""
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from .models import ProcessedMarker

logger = logging.getLogger(__name__)


class ProcessedMessageStore:
    """Durable set of handled messages, used to skip re-deliveries"""

    def __init__(self, state_file: str = "processed-messages.json", retention_days: int = 7):
        self.state_file = Path(state_file)
        self.retention_days = retention_days
        self.markers: Dict[str, ProcessedMarker] = {}
        self.failures: Dict[str, int] = {}  # in memory; a restart grants fresh attempts
        self.lock = Lock()
        self._dirty = False
        self._load_state()

    def _load_state(self) -> None:
        """Load state from disk, dropping markers past the retention window"""
        if not self.state_file.exists():
            logger.info("No existing processed-message file found, starting fresh")
            return

        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)

            for key, marker_data in data.items():
                marker_data['processed_at'] = datetime.fromisoformat(marker_data['processed_at'])
                self.markers[key] = ProcessedMarker(key=key, **{k: v for k, v in marker_data.items() if k != 'key'})

            logger.info(f"Loaded {len(self.markers)} processed messages from state file")
        except Exception as e:
            logger.error(f"Error loading processed-message file: {e}")
            # Start fresh if state file is corrupted
            self.markers = {}
            return

        if self.cleanup_old_entries(self.retention_days):
            self.flush()

    def _save_state(self) -> None:
        """Save state to disk"""
        try:
            data = {}
            for key, marker in self.markers.items():
                marker_dict = marker.model_dump(exclude={'key'})
                marker_dict['processed_at'] = marker_dict['processed_at'].isoformat()
                data[key] = marker_dict

            self.state_file.parent.mkdir(parents=True, exist_ok=True)

            # Write atomically by writing to temp file then renaming
            temp_file = self.state_file.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump(data, f, indent=2)

            temp_file.replace(self.state_file)
            self._dirty = False
            logger.debug(f"Saved state for {len(self.markers)} messages")
        except Exception as e:
            logger.error(f"Error saving processed-message file: {e}")

    def is_processed(self, key: str) -> bool:
        """Check if a message has already been handled"""
        with self.lock:
            return key in self.markers

    def mark_processed(
        self,
        key: str,
        status: str = "injected",
        token: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> None:
        """Record a message as handled and persist the store"""
        with self.lock:
            self.markers[key] = ProcessedMarker(
                key=key,
                processed_at=datetime.now(),
                status=status,
                token=token,
                error_message=error_message
            )
            self.failures.pop(key, None)
            self._dirty = True
            self._save_state()
            logger.debug(f"Marked message {key} as {status}")

    def record_failure(self, key: str) -> int:
        """Count a failed injection for a message; returns the attempts so far"""
        with self.lock:
            self.failures[key] = self.failures.get(key, 0) + 1
            return self.failures[key]

    def get_marker(self, key: str) -> Optional[ProcessedMarker]:
        with self.lock:
            return self.markers.get(key)

    def get_all_markers(self) -> Dict[str, ProcessedMarker]:
        with self.lock:
            return dict(self.markers)

    def flush(self) -> None:
        """Persist any pending changes"""
        with self.lock:
            if self._dirty:
                self._save_state()

    def cleanup_old_entries(self, days: Optional[int] = None) -> int:
        """
        Remove markers older than specified days

        Args:
            days: Number of days to keep (defaults to the retention window)

        Returns:
            Number of markers removed
        """
        days = self.retention_days if days is None else days
        with self.lock:
            cutoff = datetime.now() - timedelta(days=days)
            old_keys = [
                key
                for key, marker in self.markers.items()
                if marker.processed_at < cutoff
            ]

            for key in old_keys:
                del self.markers[key]

            if old_keys:
                self._dirty = True
                logger.info(f"Cleaned up {len(old_keys)} old processed markers")

            return len(old_keys)

    def __len__(self) -> int:
        with self.lock:
            return len(self.markers)
