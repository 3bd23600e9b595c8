"""Typing indicator lifecycle and reply correlation.

A session is opened when a message is forwarded to the agent and keyed by
its correlation ID (``chatId:messageId``). While open it sends a "typing"
chat action right away and then every 5 seconds.

A session closes when:
- a completion marker ``<correlationId>.done`` appears in the marker
  directory (written by the reply path after a successful send), or
- the sweep finds it older than 120 seconds.

Markers reach ``complete`` from two producers: a ``watchfiles`` watch and a
30-second directory poll that catches anything the watch missed. Both
consume the marker file and call the same idempotent ``complete``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from watchfiles import Change, awatch

logger = logging.getLogger("telegate.typing")

MARKER_SUFFIX = ".done"
TYPING_INTERVAL = 5.0
SESSION_TIMEOUT = 120.0
SWEEP_INTERVAL = 30.0
POLL_INTERVAL = 30.0

SendTyping = Callable[[str, Optional[str]], Awaitable[object]]


@dataclass
class TypingSession:
    correlation_id: str
    chat_id: str
    thread_id: Optional[str]
    started_at: float
    task: asyncio.Task


def marker_path(typing_dir: Path, correlation_id: str) -> Path:
    return Path(typing_dir) / f"{correlation_id}{MARKER_SUFFIX}"


def write_marker(typing_dir: Path, correlation_id: str) -> Path:
    """Signal that the reply for ``correlation_id`` was delivered."""
    path = marker_path(typing_dir, correlation_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(int(time.time() * 1000)), encoding="utf-8")
    return path


class TypingTracker:
    """Owns every active typing session of the process."""

    def __init__(
        self,
        send_typing: SendTyping,
        typing_dir: Path,
        interval: float = TYPING_INTERVAL,
        timeout: float = SESSION_TIMEOUT,
        sweep_interval: float = SWEEP_INTERVAL,
        poll_interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._send_typing = send_typing
        self.typing_dir = Path(typing_dir)
        self.interval = interval
        self.timeout = timeout
        self.sweep_interval = sweep_interval
        self.poll_interval = poll_interval
        self._clock = clock
        self._sessions: dict[str, TypingSession] = {}
        self._background: list[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    # ── Sessions ─────────────────────────────────────────────

    def is_active(self, correlation_id: str) -> bool:
        return correlation_id in self._sessions

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def start(self, correlation_id: str, chat_id: str, thread_id: Optional[str] = None) -> TypingSession:
        """Open a session. An existing session for the same ID is stopped first."""
        if correlation_id in self._sessions:
            logger.debug(f"Superseding typing session {correlation_id}")
            self._stop(correlation_id)
        task = asyncio.create_task(self._keep_typing(chat_id, thread_id), name=f"typing:{correlation_id}")
        session = TypingSession(correlation_id, str(chat_id), thread_id, self._clock(), task)
        self._sessions[correlation_id] = session
        return session

    def complete(self, correlation_id: str) -> bool:
        """Close a session. Safe to call for unknown or already-closed IDs."""
        if correlation_id not in self._sessions:
            return False
        self._stop(correlation_id)
        logger.debug(f"Typing session {correlation_id} completed")
        return True

    def _stop(self, correlation_id: str) -> None:
        session = self._sessions.pop(correlation_id, None)
        if session is not None:
            session.task.cancel()

    async def _keep_typing(self, chat_id: str, thread_id: Optional[str]) -> None:
        while True:
            try:
                await self._send_typing(chat_id, thread_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Typing is cosmetic; a failed action never ends the session
                logger.debug(f"Typing action failed for chat {chat_id}: {e}")
            await asyncio.sleep(self.interval)

    def sweep(self) -> list[str]:
        """Force-stop sessions older than the timeout."""
        now = self._clock()
        expired = [cid for cid, s in self._sessions.items() if now - s.started_at > self.timeout]
        for cid in expired:
            self._stop(cid)
            logger.warning(f"Typing session {cid} timed out after {self.timeout:.0f}s without a reply")
        return expired

    # ── Completion markers ───────────────────────────────────

    def handle_marker(self, path: Path) -> bool:
        """Consume one marker file and complete its session."""
        path = Path(path)
        if not path.name.endswith(MARKER_SUFFIX):
            return False
        correlation_id = path.name[: -len(MARKER_SUFFIX)]
        try:
            path.unlink()
        except FileNotFoundError:
            # The other producer got here first
            pass
        except OSError as e:
            logger.warning(f"Failed to remove typing marker {path.name}: {e}")
        return self.complete(correlation_id)

    def scan_markers(self) -> int:
        """Poll the marker directory once. Returns sessions completed."""
        if not self.typing_dir.is_dir():
            return 0
        completed = 0
        for path in self.typing_dir.glob(f"*{MARKER_SUFFIX}"):
            if self.handle_marker(path):
                completed += 1
        return completed

    def clear_stale_markers(self) -> int:
        """Delete markers left by a previous run; no session can match them."""
        self.typing_dir.mkdir(parents=True, exist_ok=True)
        removed = 0
        for path in self.typing_dir.glob(f"*{MARKER_SUFFIX}"):
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to remove stale marker {path.name}: {e}")
        if removed:
            logger.info(f"Removed {removed} stale typing markers")
        return removed

    # ── Background loops ─────────────────────────────────────

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(self.typing_dir, stop_event=self._stop_event):
                for change, raw_path in changes:
                    if change in (Change.added, Change.modified):
                        self.handle_marker(Path(raw_path))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Typing marker watch stopped, relying on polling: {e}", exc_info=True)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            completed = self.scan_markers()
            if completed:
                logger.info(f"Marker poll completed {completed} typing sessions missed by the watch")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    async def run(self) -> None:
        """Clear stale markers and start watch, poll and sweep loops."""
        self.clear_stale_markers()
        self._stop_event = asyncio.Event()
        self._background = [
            asyncio.create_task(self._watch_loop(), name="typing:watch"),
            asyncio.create_task(self._poll_loop(), name="typing:poll"),
            asyncio.create_task(self._sweep_loop(), name="typing:sweep"),
        ]
        logger.info(f"Typing tracker watching {self.typing_dir}")

    async def stop(self) -> None:
        """Stop background loops and every open session."""
        if self._stop_event is not None:
            self._stop_event.set()
        for task in self._background:
            task.cancel()
        for task in self._background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background = []
        for cid in list(self._sessions):
            self._stop(cid)
