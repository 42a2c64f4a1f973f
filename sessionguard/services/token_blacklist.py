"""
Revoked token hashes kept until the token's own expiry
"""

import asyncio
from datetime import datetime
from typing import Dict

import structlog

from sessionguard.utils.date_utils import Clock, ensure_aware, utc_now

logger = structlog.get_logger(__name__)


class InMemoryTokenBlacklist:
    """Hash -> expiry map; entries past their expiry no longer count"""

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._entries: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def add(self, token_hash: str, expires_at: datetime) -> None:
        async with self._lock:
            self._entries[token_hash] = ensure_aware(expires_at)

    async def is_blacklisted(self, token_hash: str) -> bool:
        async with self._lock:
            expires_at = self._entries.get(token_hash)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[token_hash]
                return False
            return True

    async def prune(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [h for h, exp in self._entries.items() if exp <= now]
            for token_hash in expired:
                del self._entries[token_hash]
        if expired:
            logger.debug("token_blacklist.pruned", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)
