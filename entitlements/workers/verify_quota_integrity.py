"""
Verify the one-active-quota invariant across all accounts.

Dry-run by default. Use --live to repair:
- several active quotas: keep the newest record, deactivate the rest
- no quota in effect (none left, or only expired ones): grant DEFAULT_QUOTA
"""
from __future__ import annotations

import argparse
import logging
import os
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import func, select, update

from entitlements.core.config import settings
from entitlements.core.database import account_features, accounts, features, get_db_session, lock_account, run_transaction
from entitlements.core.logging import configure_logging, log_event
from entitlements.features.ledger.service import EntitlementLedger, effective_records
from entitlements.features.registry.service import load_registry
from entitlements.features.store.service import FeatureStore
from entitlements.models.activation import utc_now
from entitlements.models.feature import FeatureKind

logger = logging.getLogger(__name__)

REPAIR_REASON = "integrity repair"


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _active_quota_counts(session, now) -> Dict[str, int]:
    quota_ids = select(features.c.id).where(features.c.kind == int(FeatureKind.QUOTA))
    active = (
        select(account_features.c.account_id, func.count().label("active"))
        .where(effective_records(now))
        .where(account_features.c.feature_id.in_(quota_ids))
        .group_by(account_features.c.account_id)
        .subquery()
    )
    rows = session.execute(
        select(accounts.c.id, func.coalesce(active.c.active, 0))
        .select_from(accounts.outerjoin(active, active.c.account_id == accounts.c.id))
        .order_by(accounts.c.id)
    ).all()
    return {account_id: int(count) for account_id, count in rows}


def _keep_newest_quota(session, account_id: str, now) -> int:
    lock_account(session, account_id)
    quota_ids = select(features.c.id).where(features.c.kind == int(FeatureKind.QUOTA))
    newest = session.execute(
        select(func.max(account_features.c.id))
        .where(account_features.c.account_id == account_id)
        .where(effective_records(now))
        .where(account_features.c.feature_id.in_(quota_ids))
    ).scalar_one()
    return session.execute(
        update(account_features)
        .where(account_features.c.account_id == account_id)
        .where(account_features.c.activated.is_(True))
        .where(account_features.c.feature_id.in_(quota_ids))
        .where(account_features.c.id != newest)
        .values(activated=False)
    ).rowcount


def verify_quotas(
    *,
    dry_run: bool,
    ledger: Optional[EntitlementLedger] = None,
    settings_obj=None,
    now: Optional[datetime] = None,
) -> Dict:
    """Accounts must hold exactly one quota in effect; expired records do not count."""
    cfg = settings_obj or settings
    now = now or utc_now()
    report = {
        "accounts": 0,
        "ok": 0,
        "missing_quota": 0,
        "multiple_quotas": 0,
        "repaired": 0,
        "dry_run": dry_run,
    }

    with get_db_session() as session:
        counts = _active_quota_counts(session, now)

    for account_id, active in counts.items():
        report["accounts"] += 1
        if active == 1:
            report["ok"] += 1
            continue

        if active == 0:
            report["missing_quota"] += 1
        else:
            report["multiple_quotas"] += 1
        log_event(
            "warning",
            f"account holds {active} active quotas",
            account_id=account_id,
            error_code="quota_integrity",
            extra={"dry_run": dry_run},
            logger=logger,
        )
        if dry_run:
            continue

        if active == 0:
            if ledger is None:
                ledger = EntitlementLedger(FeatureStore(load_registry()))
            run_transaction(
                lambda session: ledger.grant_quota(
                    session, account_id, cfg.DEFAULT_QUOTA, reason=REPAIR_REASON, now=now
                )
            )
        else:
            run_transaction(lambda session: _keep_newest_quota(session, account_id, now))
        report["repaired"] += 1

    return report


def main() -> int:
    parser = argparse.ArgumentParser(description="Verify one active quota per account.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Repair violations.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Report only.")
    parser.set_defaults(dry_run=_parse_bool(os.getenv("ENTITLEMENTS_INTEGRITY_DRY_RUN", "1"), True))
    args = parser.parse_args()

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    report = verify_quotas(dry_run=args.dry_run)
    print(report)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
