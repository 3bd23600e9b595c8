"""Per-conversation message history.

Two layers per ConversationKey (``chat`` or ``chat:thread``):

* an in-memory window, the hot-path read cache used to build context;
* an append-only JSON-lines log file, the durability and audit layer.

The window is empty after a restart. ``ensure_replay`` rehydrates it from
the tail of the log on the first message seen for a key, once per process.
A failed replay is not recorded, so the next message tries again.

Log appends are synchronous on purpose: entries for one key land in the
file in receipt order.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger("telegate.history")

SYNTHETIC_ID_PREFIX = "bot:"


class ReplayError(Exception):
    """A log file could not be read back."""


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: str
    message_id: Optional[str]
    sender_id: str
    sender_name: str
    text: str
    thread_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> "HistoryEntry":
        mid = record.get("message_id")
        tid = record.get("thread_id")
        return cls(
            timestamp=str(record.get("timestamp") or ""),
            message_id=str(mid) if mid is not None else None,
            sender_id=str(record.get("user_id") or record.get("sender_id") or ""),
            sender_name=str(record.get("user_name") or record.get("sender_name") or ""),
            text=str(record.get("text") or ""),
            thread_id=str(tid) if tid is not None else None,
        )

    def to_record(self) -> dict:
        return asdict(self)


def history_key(chat_id, thread_id=None) -> str:
    """Build the ConversationKey. Thread IDs are only unique within a chat."""
    return f"{chat_id}:{thread_id}" if thread_id else str(chat_id)


def history_key_to_log_file(key: str) -> str:
    return key.replace(":", "_t_") + ".log"


def synthetic_message_id() -> str:
    return SYNTHETIC_ID_PREFIX + uuid.uuid4().hex


def is_real_message_id(message_id: Optional[str]) -> bool:
    return bool(message_id) and not message_id.startswith(SYNTHETIC_ID_PREFIX)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _entry_identity(entry: "HistoryEntry"):
    # Log lines carry the message ID, synthetic ones included
    return entry.message_id if entry.message_id else entry


def read_last_lines(path: Path, n: int) -> list[str]:
    """Return the last ``n`` non-empty lines of a file.

    Reads backwards in blocks so a long log costs only its tail.
    Raises OSError on read failure.
    """
    if n <= 0 or not path.exists():
        return []
    with path.open("rb") as f:
        f.seek(0, 2)
        size = f.tell()
        block = 8192
        data = b""
        while size > 0 and data.count(b"\n") <= n:
            step = min(block, size)
            f.seek(size - step)
            data = f.read(step) + data
            size -= step
    lines = [ln for ln in data.splitlines() if ln.strip()]
    return [ln.decode("utf-8") for ln in lines[-n:]]


class HistoryStore:
    """Bounded in-memory windows backed by per-key log files."""

    def __init__(self, logs_dir: Path, default_limit: int = 5):
        self.logs_dir = Path(logs_dir)
        self.default_limit = default_limit
        self._windows: dict[str, list[HistoryEntry]] = {}
        self._replayed: set[str] = set()

    def log_path(self, key: str) -> Path:
        return self.logs_dir / history_key_to_log_file(key)

    # ── Hot path ─────────────────────────────────────────────

    def record_entry(self, key: str, entry: HistoryEntry, limit: Optional[int] = None) -> bool:
        """Add an entry to the in-memory window.

        Returns False if an entry with the same real message ID is already
        in the window (duplicate delivery). The window is trimmed back to
        ``limit`` once it grows past twice that.
        """
        limit = limit or self.default_limit
        window = self._windows.setdefault(key, [])
        if is_real_message_id(entry.message_id):
            if any(e.message_id == entry.message_id for e in window):
                logger.debug(f"Dropping duplicate message {entry.message_id} for {key}")
                return False
        window.append(entry)
        if len(window) > limit * 2:
            del window[:-limit]
        return True

    def append_log(self, key: str, entry: HistoryEntry) -> None:
        """Append one JSON line to the key's log file."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        with open(self.log_path(key), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_record(), ensure_ascii=False) + "\n")

    def record(self, key: str, entry: HistoryEntry, limit: Optional[int] = None) -> bool:
        """Record an entry in memory and in the log. Duplicates are skipped."""
        if not self.record_entry(key, entry, limit):
            return False
        try:
            self.append_log(key, entry)
        except OSError as e:
            logger.error(f"Failed to append history log for {key}: {e}")
        return True

    def get_recent_history(
        self, key: str, exclude_message_id: Optional[str] = None, limit: Optional[int] = None
    ) -> list[HistoryEntry]:
        """Up to ``limit`` most recent entries, oldest first, minus the trigger message."""
        limit = limit or self.default_limit
        window = self._windows.get(key, [])
        if exclude_message_id is not None:
            window = [e for e in window if e.message_id != exclude_message_id]
        return window[-limit:]

    # ── Cold start ───────────────────────────────────────────

    def is_replayed(self, key: str) -> bool:
        return key in self._replayed

    def ensure_replay(self, key: str, limit: Optional[int] = None) -> int:
        """Rehydrate the window from the log tail, once per key.

        Returns the number of entries replayed (0 when already done or
        nothing on disk). On a read or parse failure the key stays
        un-replayed so the next message retries. Entries recorded since
        a failed attempt are already in the log tail; they are matched by
        message ID and kept after the older entries read back.
        """
        if key in self._replayed:
            return 0

        limit = limit or self.default_limit
        path = self.log_path(key)
        try:
            entries = self._read_tail(path, limit)
        except (OSError, ReplayError) as e:
            logger.error(f"History replay failed for {key}, will retry on next message: {e}")
            return 0

        live = self._windows.get(key, [])
        seen = {_entry_identity(e) for e in live}
        older = [e for e in entries if _entry_identity(e) not in seen]
        window = older + live
        if len(window) > limit * 2:
            window = window[-limit:]
        self._windows[key] = window
        self._replayed.add(key)
        if older:
            logger.info(f"Replayed {len(older)} history entries for {key}")
        return len(older)

    @staticmethod
    def _read_tail(path: Path, limit: int) -> list[HistoryEntry]:
        entries = []
        try:
            lines = read_last_lines(path, limit)
        except UnicodeDecodeError as e:
            raise ReplayError(f"{path.name}: {e}") from e
        for line in lines:
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise ReplayError(f"{path.name}: corrupt line: {e}") from e
            if not isinstance(record, dict):
                raise ReplayError(f"{path.name}: line is not an object")
            entries.append(HistoryEntry.from_record(record))
        return entries
