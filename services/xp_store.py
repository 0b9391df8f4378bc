# services/xp_store.py
"""
Keyed store behind the XP ledger.

The ledger serializes each user's submissions with `user_lock` and commits an
award with `commit_award`, which writes the record, the user's streaks and the
user's progress in one step. The progress write is a compare-and-set on
`UserProgress.version`, so a writer that lost the lock (or never took it) cannot
overwrite a newer total.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from app.models.xp_ledger import StreakData, UserProgress, XPRecord
from app.models.xp_transparency import TransparencyReport


class XPAwardRejected(Exception):
    """Base for submissions the ledger refuses to award."""

    reason = "rejected"

    def __init__(self, msg: str, *, user_id: Optional[str] = None, activity_id: Optional[str] = None):
        super().__init__(msg)
        self.user_id = user_id
        self.activity_id = activity_id


class DuplicateActivityError(XPAwardRejected):
    reason = "duplicate_activity"


class StaleWriteError(Exception):
    """Compare-and-set on UserProgress.version failed."""

    def __init__(self, user_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Stale progress write for {user_id}: expected version {expected_version}, found {actual_version}"
        )
        self.user_id = user_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class UserLocks:
    """Per-user asyncio locks; an entry lives only while someone holds or waits for it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._claims: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._claims[user_id] = self._claims.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._claims[user_id] -= 1
            if not self._claims[user_id]:
                del self._claims[user_id]
                del self._locks[user_id]


class XPStore(ABC):
    @abstractmethod
    def user_lock(self, user_id: str) -> Any:
        """Async context manager serializing one user's award path."""

    # ---- Records -------------------------------------------------------------

    @abstractmethod
    async def get_record(self, record_id: str) -> Optional[XPRecord]: ...

    @abstractmethod
    async def get_record_by_activity(self, user_id: str, activity_id: str) -> Optional[XPRecord]: ...

    @abstractmethod
    async def list_user_records(self, user_id: str, limit: Optional[int] = None, offset: int = 0) -> List[XPRecord]:
        """Newest first."""

    @abstractmethod
    async def count_user_records(self, user_id: str) -> int: ...

    @abstractmethod
    async def list_records_by_activity_type(self, activity_type: str) -> List[XPRecord]: ...

    @abstractmethod
    async def list_all_records(self) -> List[XPRecord]: ...

    @abstractmethod
    async def count_awards_since(self, user_id: str, since: datetime) -> int: ...

    # ---- Aggregates ------------------------------------------------------------

    @abstractmethod
    async def get_streaks(self, user_id: str) -> Dict[str, StreakData]: ...

    @abstractmethod
    async def get_progress(self, user_id: str) -> UserProgress:
        """Never None: unknown users get a zero progress at version 0."""

    @abstractmethod
    async def list_progress(self) -> List[UserProgress]: ...

    @abstractmethod
    async def commit_award(
        self,
        record: XPRecord,
        streaks: Mapping[str, StreakData],
        progress: UserProgress,
        expected_version: int,
    ) -> None:
        """
        Atomically persist record + streaks + progress.
        Raises DuplicateActivityError or StaleWriteError and writes nothing in that case.
        """

    # ---- Reports and configuration documents ------------------------------------

    @abstractmethod
    async def put_report(self, report: TransparencyReport) -> None: ...

    @abstractmethod
    async def get_report(self, report_id: str) -> Optional[TransparencyReport]: ...

    @abstractmethod
    async def get_config_document(self, name: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def put_config_document(self, name: str, document: Mapping[str, Any]) -> None: ...


class InMemoryXPStore(XPStore):
    """Process-local store; commit_award never awaits, so it is atomic on the event loop."""

    def __init__(self) -> None:
        self._locks = UserLocks()
        self._records: Dict[str, XPRecord] = {}
        self._by_activity: Dict[tuple, str] = {}
        self._by_user: Dict[str, List[str]] = defaultdict(list)
        self._streaks: Dict[str, Dict[str, StreakData]] = {}
        self._progress: Dict[str, UserProgress] = {}
        self._reports: Dict[str, TransparencyReport] = {}
        self._documents: Dict[str, Dict[str, Any]] = {}

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        async with self._locks.hold(user_id):
            yield

    async def get_record(self, record_id: str) -> Optional[XPRecord]:
        return self._records.get(record_id)

    async def get_record_by_activity(self, user_id: str, activity_id: str) -> Optional[XPRecord]:
        record_id = self._by_activity.get((user_id, activity_id))
        return self._records.get(record_id) if record_id else None

    async def list_user_records(self, user_id: str, limit: Optional[int] = None, offset: int = 0) -> List[XPRecord]:
        ids = list(reversed(self._by_user.get(user_id, [])))
        page = ids[offset:] if limit is None else ids[offset : offset + limit]
        return [self._records[i] for i in page]

    async def count_user_records(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, []))

    async def list_records_by_activity_type(self, activity_type: str) -> List[XPRecord]:
        return [r for r in self._records.values() if r.activity_type == activity_type]

    async def list_all_records(self) -> List[XPRecord]:
        return list(self._records.values())

    async def count_awards_since(self, user_id: str, since: datetime) -> int:
        return sum(1 for i in self._by_user.get(user_id, []) if self._records[i].timestamp >= since)

    async def get_streaks(self, user_id: str) -> Dict[str, StreakData]:
        return dict(self._streaks.get(user_id, {}))

    async def get_progress(self, user_id: str) -> UserProgress:
        return self._progress.get(user_id) or UserProgress(user_id=user_id)

    async def list_progress(self) -> List[UserProgress]:
        return list(self._progress.values())

    async def commit_award(
        self,
        record: XPRecord,
        streaks: Mapping[str, StreakData],
        progress: UserProgress,
        expected_version: int,
    ) -> None:
        key = (record.user_id, record.activity_id)
        if key in self._by_activity:
            raise DuplicateActivityError(
                f"Activity {record.activity_id} already awarded",
                user_id=record.user_id,
                activity_id=record.activity_id,
            )
        current = self._progress.get(record.user_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise StaleWriteError(record.user_id, expected_version, current_version)

        self._records[record.id] = record
        self._by_activity[key] = record.id
        self._by_user[record.user_id].append(record.id)
        self._streaks[record.user_id] = dict(streaks)
        self._progress[record.user_id] = progress

    async def put_report(self, report: TransparencyReport) -> None:
        self._reports[report.id] = report

    async def get_report(self, report_id: str) -> Optional[TransparencyReport]:
        return self._reports.get(report_id)

    async def get_config_document(self, name: str) -> Optional[Dict[str, Any]]:
        doc = self._documents.get(name)
        return dict(doc) if doc is not None else None

    async def put_config_document(self, name: str, document: Mapping[str, Any]) -> None:
        self._documents[name] = dict(document)
