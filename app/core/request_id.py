# app/core/request_id.py
"""Context-local correlation ids picked up by the log processors."""
from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class AwardScope:
    """Correlation data for one XP submission while it moves through the ledger."""

    scope_id: str
    user_id: str
    activity_id: str


_run_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("run_id", default=None)
_award_ctx: contextvars.ContextVar[Optional[AwardScope]] = contextvars.ContextVar("award_scope", default=None)


# -------- Run ID (scripts / batch replays) -----------------------------------

def get_run_id() -> Optional[str]:
    return _run_id_ctx.get()


@contextmanager
def with_run_id(run_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag every event logged inside the block with one run id:
        with with_run_id():
            await store.ensure_schema()
    """
    token = _run_id_ctx.set(run_id or uuid.uuid4().hex)
    try:
        yield _run_id_ctx.get()
    finally:
        _run_id_ctx.reset(token)


# -------- Award scope (ledger) -----------------------------------------------

def get_award_scope() -> Optional[AwardScope]:
    return _award_ctx.get()


@contextmanager
def award_scope(user_id: str, activity_id: str) -> Iterator[AwardScope]:
    scope = AwardScope(scope_id=uuid.uuid4().hex, user_id=user_id, activity_id=activity_id)
    token = _award_ctx.set(scope)
    try:
        yield scope
    finally:
        _award_ctx.reset(token)
