"""
entitlements/models/activation.py

Entitlement ledger rows.

An ActivationRecord pins one account to one immutable definition version.
Exactly the records with activated=True and no past expired_at are in
effect; deactivated rows stay for audit.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict

from entitlements.models.feature import FeatureDefinition, FeatureKind


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ActivationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    account_id: str
    definition_id: int
    activated: bool
    reason: str
    created_at: datetime
    expired_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expired_at is None:
            return False
        return as_utc(self.expired_at) <= as_utc(now or utc_now())

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        """Activated and not past its expiry."""
        return self.activated and not self.is_expired(now)


class ResolvedActivation(BaseModel):
    """A ledger row joined with the definition version it references."""
    model_config = ConfigDict(frozen=True)

    record: ActivationRecord
    definition: FeatureDefinition

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def kind(self) -> FeatureKind:
        return self.definition.kind

    @property
    def version(self) -> int:
        return self.definition.version

    @property
    def configs(self):
        return self.definition.configs

    @property
    def activated(self) -> bool:
        return self.record.activated

    @property
    def reason(self) -> str:
        return self.record.reason

    @property
    def created_at(self) -> datetime:
        return self.record.created_at

    @property
    def expired_at(self) -> Optional[datetime]:
        return self.record.expired_at
