#!/usr/bin/env python3
"""
init_xp_schema.py
Create the XP ledger tables in the DATABASE_URL database and optionally seed the
stored rules document from configs/xp_rules.yml.

Usage:
  python -m scripts.init_xp_schema
  python -m scripts.init_xp_schema --seed-rules
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Path setup
THIS_FILE = Path(__file__).resolve()
SCRIPTS_DIR = THIS_FILE.parent
PROJECT_DIR = SCRIPTS_DIR.parent

if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id
from services.db_service import close_pool
from services.rules_config_service import RulesConfigService
from services.xp_service import XPLedgerService
from services.xp_store_pg import PostgresXPStore

configure_logging(service_name="script")
logger = get_logger()


async def run(seed_rules: bool) -> None:
    store = PostgresXPStore()
    try:
        await store.ensure_schema()
        if seed_rules:
            ledger = XPLedgerService(store, rules=RulesConfigService.from_file())
            await ledger.save_rules_to_store()
    finally:
        await close_pool()


def main() -> int:
    ap = argparse.ArgumentParser(description="Create XP ledger tables.")
    ap.add_argument("--seed-rules", action="store_true", help="Store configs/xp_rules.yml as the active rules document.")
    args = ap.parse_args()

    with with_run_id():
        asyncio.run(run(args.seed_rules))
        logger.info("xp_schema_init_done", seeded_rules=args.seed_rules)
    return 0


if __name__ == "__main__":
    sys.exit(main())
