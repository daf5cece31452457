"""
entitlements/features/management/service.py

Additive (Feature-kind) entitlements: administrator, early access, copilot.
"""

import logging
from typing import Iterable, List, Optional, Union

from entitlements.core.database import run_transaction
from entitlements.core.errors import DefinitionNotFound
from entitlements.features.ledger.service import EntitlementLedger
from entitlements.models.activation import ResolvedActivation
from entitlements.models.feature import FeatureKind, FeatureType, feature_name

logger = logging.getLogger(__name__)


class FeatureManagementService:
    def __init__(self, ledger: EntitlementLedger):
        self.ledger = ledger

    # ---- generic ----

    def grant_feature(
        self, account_id: str, feature: Union[str, FeatureType], reason: Optional[str] = None
    ) -> bool:
        """
        Grant one feature. Already granted is a no-op.

        Returns:
            True if a new record was inserted

        Raises:
            DefinitionNotFound: unknown feature, or the name is a quota
        """
        return bool(self.grant_features(account_id, [feature], reason))

    def grant_features(
        self, account_id: str, names: Iterable[Union[str, FeatureType]], reason: Optional[str] = None
    ) -> List[str]:
        pending = [feature_name(name) for name in names]
        return run_transaction(
            lambda session: self.ledger.grant_features(session, account_id, pending, reason=reason)
        )

    def revoke_feature(self, account_id: str, feature: Union[str, FeatureType]) -> int:
        return run_transaction(lambda session: self.ledger.revoke_feature(session, account_id, feature))

    def has_feature(self, account_id: str, feature: Union[str, FeatureType]) -> bool:
        return run_transaction(
            lambda session: self.ledger.has_active(session, account_id, feature, FeatureKind.FEATURE)
        )

    def list_features(self, account_id: str) -> List[ResolvedActivation]:
        return run_transaction(
            lambda session: self.ledger.list_active(session, account_id, FeatureKind.FEATURE)
        )

    def list_feature_names(self, account_id: str) -> List[str]:
        return [activation.name for activation in self.list_features(account_id)]

    # ---- copilot ----

    def add_copilot(self, account_id: str, reason: str = "unlimited copilot") -> bool:
        return self.grant_feature(account_id, FeatureType.UNLIMITED_COPILOT, reason)

    def remove_copilot(self, account_id: str) -> int:
        return self.revoke_feature(account_id, FeatureType.UNLIMITED_COPILOT)

    def has_copilot(self, account_id: str) -> bool:
        return self.has_feature(account_id, FeatureType.UNLIMITED_COPILOT)

    # ---- admin ----

    def add_admin(self, account_id: str) -> bool:
        return self.grant_feature(account_id, FeatureType.ADMIN, "admin user")

    def is_admin(self, account_id: str) -> bool:
        return self.has_feature(account_id, FeatureType.ADMIN)

    # ---- early access ----

    def add_early_access(self, account_id: str, ai: bool = False) -> bool:
        feature = FeatureType.AI_EARLY_ACCESS if ai else FeatureType.EARLY_ACCESS
        return self.grant_feature(account_id, feature, "early access user")

    def remove_early_access(self, account_id: str, ai: bool = False) -> int:
        feature = FeatureType.AI_EARLY_ACCESS if ai else FeatureType.EARLY_ACCESS
        return self.revoke_feature(account_id, feature)

    def is_early_access_user(self, account_id: str, email: str) -> bool:
        """
        Granted early access, or whitelisted by the latest early_access
        definition (a '@domain' entry matches every address in the domain).
        """
        if self.has_feature(account_id, FeatureType.EARLY_ACCESS):
            return True

        def _latest_config(session):
            return self.ledger.store.latest_definition(
                session, FeatureType.EARLY_ACCESS, FeatureKind.FEATURE
            ).configs

        try:
            config = run_transaction(_latest_config)
        except DefinitionNotFound:
            logger.warning("early_access definition missing, whitelist ignored")
            return False
        return config.allows(email)
