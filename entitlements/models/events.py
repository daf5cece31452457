"""
entitlements/models/events.py

Inbound lifecycle event payloads.

Events arrive at-least-once, possibly duplicated and out of order.
Subscription events carry the plan transition explicitly so handlers never
have to infer intent from a cancellation alone.
"""

from typing import Dict, Optional, Type

from pydantic import BaseModel, ConfigDict


class EntitlementEvents:
    """Event type constants."""

    SUBSCRIPTION_ACTIVATED = "user.subscription.activated"
    SUBSCRIPTION_CANCELED = "user.subscription.canceled"

    ACCOUNT_CREATED = "account.created"
    ACCOUNT_UPDATED = "account.updated"
    ACCOUNT_DELETED = "account.deleted"


class SubscriptionActivated(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    plan: str
    recurring: bool = True
    # plan the account held before this one, if any
    previous_plan: Optional[str] = None


class SubscriptionCanceled(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    plan: str
    # plan that replaced the canceled one (e.g. recurring pro -> lifetime)
    replaced_by: Optional[str] = None

    @property
    def is_genuine(self) -> bool:
        """True when nothing replaced the canceled plan."""
        return self.replaced_by is None


class AccountCreated(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    email: str
    group: str


class AccountUpdated(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    email: str


class AccountDeleted(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    email: str


EVENT_PAYLOADS: Dict[str, Type[BaseModel]] = {
    EntitlementEvents.SUBSCRIPTION_ACTIVATED: SubscriptionActivated,
    EntitlementEvents.SUBSCRIPTION_CANCELED: SubscriptionCanceled,
    EntitlementEvents.ACCOUNT_CREATED: AccountCreated,
    EntitlementEvents.ACCOUNT_UPDATED: AccountUpdated,
    EntitlementEvents.ACCOUNT_DELETED: AccountDeleted,
}
