# services/leaderboard_service.py
"""
Leaderboard index.

Kept sorted by (total XP desc, time the total was reached asc, user id) and
updated incrementally after each committed award, so reads never scan the
ledger. Reads may lag a concurrent commit; rebuild() restores it from the store.
"""

from __future__ import annotations

import bisect
import math
from typing import Dict, List, Optional, Tuple

from app.config import settings
from app.core.logging import get_logger
from app.models.xp_ledger import LeaderboardEntry, UserProgress
from services.xp_store import XPStore

logger = get_logger()

SortKey = Tuple[int, float, str]


def _sort_key(progress: UserProgress) -> SortKey:
    reached = progress.total_reached_at.timestamp() if progress.total_reached_at else math.inf
    return (-progress.total_xp, reached, progress.user_id)


class LeaderboardIndex:
    def __init__(self, level_size: Optional[int] = None) -> None:
        self.level_size = level_size or settings.XP_LEVEL_SIZE
        self._keys: List[SortKey] = []
        self._by_user: Dict[str, SortKey] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def update(self, progress: UserProgress) -> None:
        old = self._by_user.get(progress.user_id)
        if old is not None:
            idx = bisect.bisect_left(self._keys, old)
            if idx < len(self._keys) and self._keys[idx] == old:
                del self._keys[idx]
        key = _sort_key(progress)
        bisect.insort(self._keys, key)
        self._by_user[progress.user_id] = key

    def top(self, limit: int) -> List[LeaderboardEntry]:
        if limit <= 0:
            return []
        return [
            LeaderboardEntry(rank=i + 1, user_id=user_id, total_xp=-neg_total, level=-neg_total // self.level_size)
            for i, (neg_total, _, user_id) in enumerate(self._keys[:limit])
        ]

    def rank_of(self, user_id: str) -> Optional[int]:
        key = self._by_user.get(user_id)
        if key is None:
            return None
        return bisect.bisect_left(self._keys, key) + 1

    async def rebuild(self, store: XPStore) -> None:
        progress = await store.list_progress()
        self._keys = sorted(_sort_key(p) for p in progress)
        self._by_user = {key[2]: key for key in self._keys}
        logger.info("leaderboard_rebuilt", users=len(self._keys))
