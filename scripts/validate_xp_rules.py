#!/usr/bin/env python3
"""
validate_xp_rules.py
Quick check for configs/xp_rules.yml, using the same loader as the ledger.

Usage:
  python -m scripts.validate_xp_rules --file configs/xp_rules.yml
  python -m scripts.validate_xp_rules --file configs/xp_rules.yml --strict
"""
import argparse
import sys
from pathlib import Path

# Path setup
THIS_FILE = Path(__file__).resolve()
SCRIPTS_DIR = THIS_FILE.parent
PROJECT_DIR = SCRIPTS_DIR.parent

if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

from app.config import settings
from app.core.logging import configure_logging, get_logger
from app.core.xp_config import ConfigurationError
from services.rules_config_service import build_snapshot, load_rules_document

configure_logging(service_name="script")
logger = get_logger()


def main() -> int:
    ap = argparse.ArgumentParser(description="Validate an XP rules YAML file.")
    ap.add_argument("--file", default=str(settings.XP_RULES_PATH))
    ap.add_argument(
        "--strict",
        action="store_true",
        help="Fail when any bonus rule is dropped (the ledger itself only warns).",
    )
    args = ap.parse_args()

    try:
        snap = build_snapshot(load_rules_document(Path(args.file)))
    except ConfigurationError as e:
        print(f"invalid: {e}", file=sys.stderr)
        return 1

    print(
        f"weight configurations: {len(snap.weight_configurations)}, "
        f"bonus rules: {len(snap.bonus_rules)}, special events: {len(snap.special_events)}"
    )
    if snap.dropped_rule_ids:
        print(f"dropped bonus rules: {', '.join(snap.dropped_rule_ids)}", file=sys.stderr)
        if args.strict:
            return 1
    print(f"{args.file} valid")
    return 0


if __name__ == "__main__":
    sys.exit(main())
