# tests/conftest.py
from __future__ import annotations

import pytest

from services.rules_config_service import RulesConfigService
from services.xp_service import XPLedgerService
from services.xp_store import InMemoryXPStore
from tests.fixtures import FakeClock, load_rules


@pytest.fixture
def rules() -> RulesConfigService:
    return load_rules()


@pytest.fixture
def store() -> InMemoryXPStore:
    return InMemoryXPStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(store: InMemoryXPStore, rules: RulesConfigService, clock: FakeClock) -> XPLedgerService:
    """Ledger with the default anti-gaming limit (5 awards / 60 s)."""
    return XPLedgerService(store, rules=rules, clock=clock, gaming_max_awards=5, gaming_window_seconds=60)


@pytest.fixture
def relaxed_ledger(store: InMemoryXPStore, rules: RulesConfigService, clock: FakeClock) -> XPLedgerService:
    """Ledger whose gaming limit never triggers, for multi-award flows."""
    return XPLedgerService(store, rules=rules, clock=clock, gaming_max_awards=1000, gaming_window_seconds=60)
