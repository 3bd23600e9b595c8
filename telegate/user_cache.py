"""Sender ID → display name cache.

In memory with a 10-minute TTL, persisted to a JSON file every 5 minutes
and at shutdown so replayed history can still show names after restart.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger("telegate.user_cache")

USER_CACHE_TTL = 10 * 60
PERSIST_INTERVAL = 5 * 60


class UserNameCache:

    def __init__(self, path: Path, ttl: float = USER_CACHE_TTL, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._dirty = False

    def __len__(self) -> int:
        return len(self._entries)

    def load(self) -> int:
        """Load persisted names. Returns the number loaded."""
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return 0
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load user cache: {e}")
            return 0

        expire_at = self._clock() + self.ttl
        for user_id, name in data.items():
            if isinstance(name, str):
                self._entries[str(user_id)] = (name, expire_at)
        logger.info(f"Loaded {len(self._entries)} cached user names")
        return len(self._entries)

    def persist(self) -> bool:
        """Write the cache if it changed since the last write."""
        if not self._dirty:
            return False
        data = {user_id: name for user_id, (name, _) in self._entries.items()}
        tmp = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=self.path.name + ".", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
            tmp = None
            self._dirty = False
            return True
        except OSError as e:
            logger.warning(f"Failed to persist user cache: {e}")
            return False
        finally:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)

    def resolve(self, sender_id, username: Optional[str] = None, first_name: Optional[str] = None) -> str:
        """Resolve a sender to a display name, refreshing the cache entry.

        Fresh data from the transport wins; the cached name is used only
        when the event carries no name at all.
        """
        user_id = str(sender_id)
        now = self._clock()
        fresh = username or first_name
        cached = self._entries.get(user_id)

        if fresh:
            name = fresh
        elif cached and cached[1] > now:
            name = cached[0]
        else:
            name = user_id

        if not cached or cached[0] != name:
            self._dirty = True
        self._entries[user_id] = (name, now + self.ttl)
        return name

    def get_cached_name(self, sender_id) -> str:
        """Cached name for an ID (ignoring TTL), or the ID itself."""
        cached = self._entries.get(str(sender_id))
        return cached[0] if cached else str(sender_id)

    async def run_persist_loop(self, interval: float = PERSIST_INTERVAL):
        """Persist periodically until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.persist()
