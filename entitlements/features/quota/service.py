"""
entitlements/features/quota/service.py

Quota orchestration over the entitlement ledger.

Handles:
- Current / historical quota reads (with fallback when a quota expired)
- Quota switching (idempotent, one transaction per call)
- Subscription lifecycle events (plan -> quota / plan -> features)
"""

import logging
from datetime import datetime
from typing import List, Optional, Union

from entitlements.core.config import settings
from entitlements.core.database import run_transaction
from entitlements.features.ledger.service import EntitlementLedger
from entitlements.models.activation import ResolvedActivation, utc_now
from entitlements.models.events import EntitlementEvents, SubscriptionActivated, SubscriptionCanceled
from entitlements.models.feature import FeatureKind, FeatureType

logger = logging.getLogger(__name__)

EXPIRED_REASON = "quota expired"
SUBSCRIPTION_ACTIVATED_REASON = "subscription activated"
SUBSCRIPTION_CANCELED_REASON = "subscription canceled"


class QuotaService:
    def __init__(self, ledger: EntitlementLedger, settings_obj=None):
        self.ledger = ledger
        self.settings = settings_obj or settings

    # ---- reads ----

    def get_user_quota(self, account_id: str, now: Optional[datetime] = None) -> ResolvedActivation:
        """
        The quota currently in effect for an account.

        When the only activated quota has passed its expiry, the account is
        moved back to the default quota first, so every account keeps one
        quota in effect.

        Raises:
            NoActiveQuota: the account holds no quota at all
        """
        now = now or utc_now()

        def _work(session):
            current = self.ledger.find_current_quota(session, account_id, now)
            if current is not None:
                return current
            if self.ledger.has_lapsed_quota(session, account_id, now):
                logger.info(
                    "quota expired, falling back to %s",
                    self.settings.DEFAULT_QUOTA,
                    extra={"account_id": account_id, "quota": self.settings.DEFAULT_QUOTA, "reason": EXPIRED_REASON},
                )
                self.ledger.grant_quota(
                    session, account_id, self.settings.DEFAULT_QUOTA, reason=EXPIRED_REASON, now=now
                )
            return self.ledger.current_quota(session, account_id, now)

        return run_transaction(_work)

    def get_user_quotas(self, account_id: str) -> List[ResolvedActivation]:
        return run_transaction(lambda session: self.ledger.all_quota_history(session, account_id))

    def has_quota(self, account_id: str, quota: Union[str, FeatureType], now: Optional[datetime] = None) -> bool:
        return run_transaction(
            lambda session: self.ledger.has_active(session, account_id, quota, FeatureKind.QUOTA, now)
        )

    # ---- writes ----

    def switch_user_quota(
        self,
        account_id: str,
        quota: Union[str, FeatureType],
        reason: Optional[str] = None,
        expired_at: Optional[datetime] = None,
    ) -> bool:
        """
        Switch the account to `quota`. No-op if that quota is already in effect.

        Returns:
            True if the switch happened, False if it was already active

        Raises:
            AccountNotFound, DefinitionNotFound, TransientStorageError
        """
        return run_transaction(
            lambda session: self.ledger.grant_quota(
                session, account_id, quota, reason=reason, expired_at=expired_at
            )
        )

    # ---- subscription events ----

    def on_subscription_activated(self, event: SubscriptionActivated) -> None:
        """
        Apply what the activated plan grants.

        Feature grants and the quota switch share one transaction, so a
        redelivered event converges to the same state. Features granted by
        `previous_plan` that the new plan does not carry are revoked.
        """
        plan = event.plan
        plan_features = self.settings.PLAN_FEATURES.get(plan, [])
        plan_quota = self.settings.PLAN_QUOTAS.get(plan)
        dropped = self._dropped_features(event.previous_plan, plan)

        if not plan_features and plan_quota is None and not dropped:
            logger.info(
                "plan %s carries no entitlements, ignoring activation",
                plan,
                extra={"account_id": event.account_id, "event_type": EntitlementEvents.SUBSCRIPTION_ACTIVATED},
            )
            return

        def _work(session):
            for name in dropped:
                self.ledger.revoke_feature(session, event.account_id, name)
            if plan_features:
                self.ledger.grant_features(
                    session, event.account_id, plan_features, reason=SUBSCRIPTION_ACTIVATED_REASON
                )
            if plan_quota is not None:
                self.ledger.grant_quota(
                    session, event.account_id, plan_quota, reason=SUBSCRIPTION_ACTIVATED_REASON
                )

        run_transaction(_work)

    def on_subscription_canceled(self, event: SubscriptionCanceled) -> None:
        """
        Withdraw what the canceled plan granted.

        A quota is only downgraded on a genuine cancellation. When another
        plan replaced the canceled one, the replacement's quota applies, or
        the current quota is retained if the replacement maps to none.
        Features the replacement also grants are kept.
        """
        plan = event.plan
        revoked = self._dropped_features(plan, event.replaced_by)
        plan_quota = self.settings.PLAN_QUOTAS.get(plan)

        target_quota = None
        if plan_quota is not None:
            if event.is_genuine:
                target_quota = self.settings.DEFAULT_QUOTA
            else:
                target_quota = self.settings.PLAN_QUOTAS.get(event.replaced_by)
                if target_quota is None:
                    logger.info(
                        "plan %s replaced by %s, retaining current quota",
                        plan,
                        event.replaced_by,
                        extra={"account_id": event.account_id, "event_type": EntitlementEvents.SUBSCRIPTION_CANCELED},
                    )

        if not revoked and target_quota is None:
            return

        def _work(session):
            for name in revoked:
                self.ledger.revoke_feature(session, event.account_id, name)
            if target_quota is not None:
                self.ledger.grant_quota(
                    session, event.account_id, target_quota, reason=SUBSCRIPTION_CANCELED_REASON
                )

        run_transaction(_work)

    def _dropped_features(self, plan: Optional[str], successor: Optional[str]) -> List[str]:
        """Features `plan` grants that `successor` does not."""
        if plan is None:
            return []
        kept = set(self.settings.PLAN_FEATURES.get(successor, [])) if successor else set()
        return [name for name in self.settings.PLAN_FEATURES.get(plan, []) if name not in kept]

    def register(self, bridge) -> None:
        bridge.subscribe(EntitlementEvents.SUBSCRIPTION_ACTIVATED, self.on_subscription_activated)
        bridge.subscribe(EntitlementEvents.SUBSCRIPTION_CANCELED, self.on_subscription_canceled)
        logger.debug("quota service subscribed to subscription events")
