"""
Seed the feature catalog.

Inserts every (name, version) of the built-in catalog that is not yet
persisted. Safe to run on several instances at once.

Usage:
    python -m entitlements.scripts.seed_features [--database-url URL] [--check]
"""
from __future__ import annotations

import argparse
import sys

from entitlements.core.config import settings
from entitlements.core.database import create_all_tables, get_db_session, init_engine
from entitlements.core.errors import ConfigValidationError
from entitlements.core.logging import configure_logging
from entitlements.features.registry.service import load_registry
from entitlements.features.store.service import FeatureStore


def seed(database_url: str | None = None) -> int:
    registry = load_registry()
    init_engine(database_url)
    create_all_tables()
    return FeatureStore(registry).ensure_seeded()


def missing_versions(database_url: str | None = None) -> list[str]:
    """Catalog entries not present in the database."""
    registry = load_registry()
    init_engine(database_url)
    with get_db_session() as session:
        persisted = FeatureStore(registry).persisted_versions(session)
    return [
        f"{definition.name} v{definition.version}"
        for definition in registry.list_definitions()
        if definition.version not in persisted.get(definition.name, [])
    ]


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed feature/quota definitions.")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL.")
    parser.add_argument("--check", action="store_true", help="Only report missing versions, exit 1 if any.")
    args = parser.parse_args()

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    try:
        if args.check:
            missing = missing_versions(args.database_url)
            for entry in missing:
                print(f"missing: {entry}")
            return 1 if missing else 0
        inserted = seed(args.database_url)
    except ConfigValidationError as exc:
        print(f"catalog invalid: {exc.message}", file=sys.stderr)
        return 2

    print({"inserted": inserted})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
