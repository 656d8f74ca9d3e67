import base64
import json
import time
import uuid
from pathlib import Path
from typing import Dict, Any, List
from datetime import datetime, timedelta, timezone
from enum import Enum


class DLQMessage(Enum):
    TRANSLATION_FAILURE = "TRANSLATION_FAILURE"
    SINK_FAILURE = "SINK_FAILURE"
    PROCESSING_FAILURE = "PROCESSING_FAILURE"


class DeadLetterQueue:
    """
    Bounded on-disk store for messages the forwarder dropped
    Entries are kept for inspection only; nothing is retried automatically
    """

    def __init__(
        self,
        storage_dir: str = "data/dlq",
        max_messages: int = 10000,
        retention_days: int = 7,
        logger=None
    ):
        """Initialize DLQ"""
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.max_messages = max_messages
        self.retention_days = retention_days
        self.logger = logger

    def add_message(
        self,
        topic: str,
        message_type: DLQMessage,
        payload: bytes,
        error: str,
        system_failure: str = None
    ) -> Path:
        """Add dropped message to DLQ, evicting the oldest entries beyond max_messages"""
        entry_id = uuid.uuid4().hex
        dlq_entry = {
            'entry_id': entry_id,
            'topic': topic,
            'message_type': message_type.value,
            'system_failure': system_failure,
            'payload_b64': base64.b64encode(payload).decode('ascii'),
            'error': error,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

        # time_ns prefix keeps file names in arrival order
        entry_file = self.storage_dir / f"{time.time_ns()}_{entry_id}.json"
        entry_file.write_text(json.dumps(dlq_entry, indent=2))

        if self.logger:
            self.logger.warning(
                f"Message added to DLQ: {topic}",
                topic=topic,
                message_type=message_type.value,
                error=error
            )

        self._evict_overflow()
        return entry_file

    def _entry_files(self) -> List[Path]:
        return sorted(self.storage_dir.glob("*.json"))

    def _evict_overflow(self):
        files = self._entry_files()
        overflow = len(files) - self.max_messages
        for dlq_file in files[:max(overflow, 0)]:
            dlq_file.unlink(missing_ok=True)

    def get_messages(self) -> List[Dict[str, Any]]:
        """Get stored entries, oldest first"""
        messages = []
        for dlq_file in self._entry_files():
            try:
                messages.append(json.loads(dlq_file.read_text()))
            except (OSError, json.JSONDecodeError) as e:
                if self.logger:
                    self.logger.warning(f"Error reading DLQ file {dlq_file.name}: {e}")
        return messages

    @staticmethod
    def decode_payload(entry: Dict[str, Any]) -> bytes:
        return base64.b64decode(entry['payload_b64'])

    def cleanup_old_messages(self) -> int:
        """Remove entries older than the retention period"""
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        removed = 0

        for dlq_file in self._entry_files():
            try:
                message = json.loads(dlq_file.read_text())
                timestamp = datetime.fromisoformat(message['timestamp'])
            except (OSError, KeyError, ValueError) as e:
                if self.logger:
                    self.logger.warning(f"Error cleaning DLQ: {e}")
                continue

            if timestamp < cutoff_date:
                dlq_file.unlink(missing_ok=True)
                removed += 1

        return removed

    def __len__(self) -> int:
        return len(self._entry_files())
