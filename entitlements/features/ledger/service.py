"""
entitlements/features/ledger/service.py

Entitlement ledger: per-account activation records.

Every method takes the caller's open session and does all of its reads and
writes inside it; callers wrap one or more calls in run_transaction().
Mutations first lock the owning account row, so the "already active?"
precondition and the deactivate-then-insert step can never interleave with
another mutation for the same account.

Invariants:
- At most one effective Quota-kind record per account.
- No two effective records for the same (account, feature name).
- Rows are deactivated, never deleted.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Union

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.orm import Session

from entitlements.core.database import account_features, features, lock_account
from entitlements.core.errors import DefinitionNotFound, NoActiveQuota, ValidationError
from entitlements.features.store.service import FeatureStore
from entitlements.models.activation import ActivationRecord, ResolvedActivation, as_utc, utc_now
from entitlements.models.feature import FeatureKind, FeatureType, feature_name

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_REASON = "switch quota"
DEFAULT_FEATURE_REASON = "grant feature"


def effective_records(now: datetime):
    """Activated and not past expiry. Expiry is a derived deactivation, never stored."""
    return and_(
        account_features.c.activated.is_(True),
        or_(account_features.c.expired_at.is_(None), account_features.c.expired_at > as_utc(now)),
    )


class EntitlementLedger:
    def __init__(self, store: FeatureStore):
        self.store = store

    # ---- query helpers ----

    @staticmethod
    def _definition_ids(name: Optional[str], kind: FeatureKind):
        query = select(features.c.id).where(features.c.kind == int(kind))
        if name is not None:
            query = query.where(features.c.name == name)
        return query

    @staticmethod
    def _joined():
        return select(
            account_features,
            features.c.name,
            features.c.kind,
            features.c.version,
            features.c.configs,
        ).select_from(
            account_features.outerjoin(features, features.c.id == account_features.c.feature_id)
        )

    def _to_resolved(self, row, kind: Optional[FeatureKind] = None) -> ResolvedActivation:
        m = row._mapping
        record = ActivationRecord(
            id=m["id"],
            account_id=m["account_id"],
            definition_id=m["feature_id"],
            activated=m["activated"],
            reason=m["reason"],
            created_at=as_utc(m["created_at"]),
            expired_at=as_utc(m["expired_at"]),
        )
        definition = self.store.build(
            {
                "id": m["feature_id"],
                "name": m["name"],
                "kind": m["kind"],
                "version": m["version"],
                "configs": m["configs"],
            },
            kind,
        )
        return ResolvedActivation(record=record, definition=definition)

    def has_active(
        self,
        session: Session,
        account_id: str,
        name: Union[str, FeatureType],
        kind: FeatureKind,
        now: Optional[datetime] = None,
    ) -> bool:
        count = session.execute(
            select(func.count())
            .select_from(account_features)
            .where(account_features.c.account_id == account_id)
            .where(account_features.c.feature_id.in_(self._definition_ids(feature_name(name), kind)))
            .where(effective_records(now or utc_now()))
        ).scalar_one()
        return count > 0

    # ---- quota ----

    def grant_quota(
        self,
        session: Session,
        account_id: str,
        quota: Union[str, FeatureType],
        reason: Optional[str] = None,
        expired_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Make `quota` the account's single active quota.

        No-op when a record for the same quota name is already in effect.
        Otherwise every active quota record is deactivated and one new record
        pointing at the latest version is inserted.

        Returns:
            True if a new record was inserted

        Raises:
            AccountNotFound: unknown account
            DefinitionNotFound: quota has not been seeded
        """
        name = feature_name(quota)
        now = as_utc(now) or utc_now()
        if expired_at is not None and as_utc(expired_at) <= now:
            raise ValidationError(f"expired_at for quota {name} must be in the future")

        lock_account(session, account_id)

        if self.has_active(session, account_id, name, FeatureKind.QUOTA, now):
            logger.debug(
                "quota %s already active, nothing to switch",
                name,
                extra={"account_id": account_id, "quota": name},
            )
            return False

        feature_id = self.store.latest_version_id(session, name, FeatureKind.QUOTA)

        deactivated = session.execute(
            update(account_features)
            .where(account_features.c.account_id == account_id)
            .where(account_features.c.activated.is_(True))
            .where(account_features.c.feature_id.in_(self._definition_ids(None, FeatureKind.QUOTA)))
            .values(activated=False)
        ).rowcount

        session.execute(
            insert(account_features).values(
                account_id=account_id,
                feature_id=feature_id,
                reason=reason or DEFAULT_QUOTA_REASON,
                activated=True,
                created_at=now,
                expired_at=as_utc(expired_at),
            )
        )
        logger.info(
            "quota switched to %s (%s previous deactivated)",
            name,
            deactivated,
            extra={"account_id": account_id, "quota": name, "reason": reason or DEFAULT_QUOTA_REASON},
        )
        return True

    def find_current_quota(
        self, session: Session, account_id: str, now: Optional[datetime] = None
    ) -> Optional[ResolvedActivation]:
        row = session.execute(
            self._joined()
            .where(account_features.c.account_id == account_id)
            .where(features.c.kind == int(FeatureKind.QUOTA))
            .where(effective_records(now or utc_now()))
            .order_by(account_features.c.id.desc())
            .limit(1)
        ).first()
        if row is None:
            return None
        return self._to_resolved(row, FeatureKind.QUOTA)

    def current_quota(
        self, session: Session, account_id: str, now: Optional[datetime] = None
    ) -> ResolvedActivation:
        """
        The account's single effective quota plus its definition.

        Raises:
            NoActiveQuota: the account breaks the one-active-quota invariant
        """
        current = self.find_current_quota(session, account_id, now)
        if current is None:
            logger.error(
                "account has no active quota",
                extra={"account_id": account_id, "error_code": NoActiveQuota.code},
            )
            raise NoActiveQuota(f"Account {account_id} has no quota")
        return current

    def has_lapsed_quota(self, session: Session, account_id: str, now: Optional[datetime] = None) -> bool:
        """True when an activated quota exists but its expiry has passed."""
        count = session.execute(
            select(func.count())
            .select_from(account_features)
            .where(account_features.c.account_id == account_id)
            .where(account_features.c.feature_id.in_(self._definition_ids(None, FeatureKind.QUOTA)))
            .where(account_features.c.activated.is_(True))
            .where(account_features.c.expired_at <= (now or utc_now()))
        ).scalar_one()
        return count > 0

    def all_quota_history(self, session: Session, account_id: str) -> List[ResolvedActivation]:
        """
        Every quota record of the account in insertion order.

        Records whose definition no longer resolves are left out rather than
        failing the whole query.
        """
        rows = session.execute(
            self._joined()
            .where(account_features.c.account_id == account_id)
            .where(features.c.kind == int(FeatureKind.QUOTA))
            .order_by(account_features.c.id.asc())
        ).all()
        history = []
        for row in rows:
            try:
                history.append(self._to_resolved(row, FeatureKind.QUOTA))
            except DefinitionNotFound as exc:
                logger.warning(
                    "skipping unresolvable quota record %s: %s",
                    row.id,
                    exc.message,
                    extra={"account_id": account_id},
                )
        return history

    # ---- features ----

    def grant_features(
        self,
        session: Session,
        account_id: str,
        names: Iterable[Union[str, FeatureType]],
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Grant each feature that is not already in effect.

        Already granted names are skipped one by one; they never fail the batch.

        Returns:
            Names that received a new record

        Raises:
            AccountNotFound: unknown account
            DefinitionNotFound: a name has no seeded Feature definition
        """
        now = now or utc_now()
        lock_account(session, account_id)

        granted = []
        for raw in names:
            name = feature_name(raw)
            if self.has_active(session, account_id, name, FeatureKind.FEATURE, now):
                logger.debug(
                    "feature %s already granted",
                    name,
                    extra={"account_id": account_id, "feature": name},
                )
                continue

            feature_id = self.store.latest_version_id(session, name, FeatureKind.FEATURE)
            session.execute(
                insert(account_features).values(
                    account_id=account_id,
                    feature_id=feature_id,
                    reason=reason or DEFAULT_FEATURE_REASON,
                    activated=True,
                    created_at=now,
                )
            )
            granted.append(name)

        if granted:
            logger.info(
                "features granted: %s",
                ", ".join(granted),
                extra={"account_id": account_id, "reason": reason or DEFAULT_FEATURE_REASON},
            )
        return granted

    def revoke_feature(self, session: Session, account_id: str, name: Union[str, FeatureType]) -> int:
        """
        Deactivate every active record of a Feature-kind name.

        Returns:
            Number of records deactivated (0 when nothing was granted)
        """
        key = feature_name(name)
        lock_account(session, account_id)
        revoked = session.execute(
            update(account_features)
            .where(account_features.c.account_id == account_id)
            .where(account_features.c.activated.is_(True))
            .where(account_features.c.feature_id.in_(self._definition_ids(key, FeatureKind.FEATURE)))
            .values(activated=False)
        ).rowcount
        if revoked:
            logger.info(
                "feature %s revoked",
                key,
                extra={"account_id": account_id, "feature": key},
            )
        return revoked

    def list_active(
        self,
        session: Session,
        account_id: str,
        kind: Optional[FeatureKind] = None,
        now: Optional[datetime] = None,
    ) -> List[ResolvedActivation]:
        query = (
            self._joined()
            .where(account_features.c.account_id == account_id)
            .where(effective_records(now or utc_now()))
            .order_by(account_features.c.id.asc())
        )
        if kind is not None:
            query = query.where(features.c.kind == int(kind))
        active = []
        for row in session.execute(query).all():
            try:
                active.append(self._to_resolved(row, kind))
            except DefinitionNotFound as exc:
                logger.warning(
                    "skipping unresolvable record %s: %s",
                    row.id,
                    exc.message,
                    extra={"account_id": account_id},
                )
        return active

    def feature_history(
        self, session: Session, account_id: str, name: Union[str, FeatureType]
    ) -> List[ActivationRecord]:
        rows = session.execute(
            self._joined()
            .where(account_features.c.account_id == account_id)
            .where(features.c.name == feature_name(name))
            .order_by(account_features.c.id.asc())
        ).all()
        return [self._to_resolved(row).record for row in rows]
