"""
entitlements/features/gateway/service.py

Query surface consumed by transports (resolvers, admin tools).

Returns plain dicts in the shape transports serialise; errors keep their
AppError type so the transport can map `status_code` / `to_payload()`.
"""

from datetime import datetime
from typing import Dict, List, Optional, Union

from entitlements.features.management.service import FeatureManagementService
from entitlements.features.quota.service import QuotaService
from entitlements.models.activation import ResolvedActivation
from entitlements.models.feature import FeatureType


def _quota_view(activation: ResolvedActivation) -> Dict:
    return {
        "feature": activation.name,
        "version": activation.version,
        "activated": activation.activated,
        "reason": activation.reason,
        "created_at": activation.created_at,
        "expired_at": activation.expired_at,
        "configs": activation.configs.model_dump(),
        "human_readable": activation.configs.human_readable(),
    }


class EntitlementGateway:
    def __init__(self, quotas: QuotaService, features: FeatureManagementService):
        self.quotas = quotas
        self.features = features

    def get_active_quota(self, account_id: str) -> Dict:
        return _quota_view(self.quotas.get_user_quota(account_id))

    def get_quota_history(self, account_id: str) -> List[Dict]:
        return [_quota_view(activation) for activation in self.quotas.get_user_quotas(account_id)]

    def switch_quota(
        self,
        account_id: str,
        quota: Union[str, FeatureType],
        reason: Optional[str] = None,
        expired_at: Optional[datetime] = None,
    ) -> Dict:
        switched = self.quotas.switch_user_quota(account_id, quota, reason=reason, expired_at=expired_at)
        view = self.get_active_quota(account_id)
        view["switched"] = switched
        return view

    def grant_feature(
        self, account_id: str, feature: Union[str, FeatureType], reason: Optional[str] = None
    ) -> bool:
        return self.features.grant_feature(account_id, feature, reason)

    def revoke_feature(self, account_id: str, feature: Union[str, FeatureType]) -> bool:
        return self.features.revoke_feature(account_id, feature) > 0

    def has_feature(self, account_id: str, feature: Union[str, FeatureType]) -> bool:
        return self.features.has_feature(account_id, feature)

    def list_features(self, account_id: str) -> List[str]:
        return self.features.list_feature_names(account_id)
