"""
entitlements/features/accounts/service.py

Account bootstrap: the thin account glue that gives every new account its
initial quota and group features.

Handles:
- Sign-up (account row + quota + features in one transaction)
- Fulfilment from an upstream directory (create or update, regroup)
- Profile updates (e-mail, name), lookup and deletion
"""

import logging
import re
import uuid
from datetime import datetime
from typing import Dict, Optional, Union

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlements.core.config import settings
from entitlements.core.database import accounts, run_transaction
from entitlements.core.errors import AccountNotFound, EmailAlreadyUsed, ValidationError
from entitlements.features.events.bridge import EventBridge
from entitlements.features.ledger.service import EntitlementLedger
from entitlements.models.account import Account, AccountGroup
from entitlements.models.activation import as_utc, utc_now
from entitlements.models.events import AccountCreated, AccountDeleted, AccountUpdated, EntitlementEvents
from entitlements.models.feature import FeatureType

logger = logging.getLogger(__name__)

SIGN_UP_REASON = "sign up"
FULFILL_REASON = "fulfill account"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# group -> (quota, features); None quota means settings.DEFAULT_QUOTA
GROUP_ENTITLEMENTS: Dict[AccountGroup, tuple] = {
    AccountGroup.ADMIN: (FeatureType.UNLIMITED_WORKSPACE.value, [FeatureType.ADMIN.value]),
    AccountGroup.TEAM_LEAD: (FeatureType.TEAM_WORKSPACE.value, []),
    AccountGroup.USER: (None, []),
}

# features only ever held because of group membership
GROUP_MANAGED_FEATURES = sorted({name for _, names in GROUP_ENTITLEMENTS.values() for name in names})


def normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValidationError(f"Invalid email address: {email!r}")
    return value


def _to_account(row) -> Account:
    m = row._mapping
    return Account(
        id=m["id"],
        email=m["email"],
        name=m["name"],
        registered=m["registered"],
        email_verified_at=as_utc(m["email_verified_at"]),
        created_at=as_utc(m["created_at"]),
    )


class AccountService:
    def __init__(self, ledger: EntitlementLedger, bridge: Optional[EventBridge] = None, settings_obj=None):
        self.ledger = ledger
        self.bridge = bridge
        self.settings = settings_obj or settings

    def group_entitlements(self, group: Union[str, AccountGroup]):
        """(quota, features) an account of `group` is entitled to."""
        try:
            key = AccountGroup(group)
        except ValueError as exc:
            raise ValidationError(f"Unknown account group: {group!r}") from exc
        quota, names = GROUP_ENTITLEMENTS[key]
        return quota or self.settings.DEFAULT_QUOTA, list(names)

    # ---- lookups ----

    def get_account(self, account_id: str) -> Account:
        def _work(session):
            row = session.execute(select(accounts).where(accounts.c.id == account_id)).first()
            if row is None:
                raise AccountNotFound(f"Account {account_id} not found")
            return _to_account(row)

        return run_transaction(_work)

    @staticmethod
    def _find(session: Session, email: str):
        return session.execute(select(accounts).where(accounts.c.email == email)).first()

    def find_account_by_email(self, email: str) -> Optional[Account]:
        key = normalize_email(email)
        row = run_transaction(lambda session: self._find(session, key))
        return _to_account(row) if row is not None else None

    # ---- sign up ----

    def _insert_account(
        self,
        session: Session,
        email: str,
        group: Union[str, AccountGroup],
        name: Optional[str] = None,
        registered: bool = True,
        email_verified_at: Optional[datetime] = None,
        reason: str = SIGN_UP_REASON,
    ) -> Account:
        quota, names = self.group_entitlements(group)
        if self._find(session, email) is not None:
            raise EmailAlreadyUsed()

        account_id = str(uuid.uuid4())
        session.execute(
            insert(accounts).values(
                id=account_id,
                email=email,
                name=name or Account.default_name(email),
                registered=registered,
                email_verified_at=email_verified_at,
                created_at=utc_now(),
            )
        )
        self.ledger.grant_quota(session, account_id, quota, reason=reason)
        if names:
            self.ledger.grant_features(session, account_id, names, reason=reason)

        row = session.execute(select(accounts).where(accounts.c.id == account_id)).first()
        return _to_account(row)

    def create_account(
        self,
        email: str,
        name: Optional[str] = None,
        group: Union[str, AccountGroup] = AccountGroup.USER,
        registered: bool = True,
        email_verified_at: Optional[datetime] = None,
    ) -> Account:
        """
        Create an account with its group's quota and features.

        Raises:
            ValidationError: malformed e-mail or unknown group
            EmailAlreadyUsed: an account already uses this e-mail
        """
        key = normalize_email(email)
        try:
            account = run_transaction(
                lambda session: self._insert_account(
                    session, key, group, name, registered=registered, email_verified_at=email_verified_at
                )
            )
        except IntegrityError as exc:
            # lost a race on the email unique constraint
            raise EmailAlreadyUsed() from exc

        logger.info(
            "account created in group %s",
            AccountGroup(group).value,
            extra={"account_id": account.id},
        )
        self._publish(
            EntitlementEvents.ACCOUNT_CREATED,
            AccountCreated(account_id=account.id, email=account.email, group=AccountGroup(group).value),
        )
        return account

    def fulfill_account(
        self,
        email: str,
        group: Union[str, AccountGroup] = AccountGroup.USER,
        name: Optional[str] = None,
        registered: Optional[bool] = None,
        email_verified_at: Optional[datetime] = None,
    ) -> Account:
        """
        Create the account if missing, otherwise bring it in line with `group`.

        An existing account is never un-registered or un-verified. Its quota
        is switched to the group's quota (no-op if already active), group
        features it no longer qualifies for are revoked and the group's own
        features are granted.
        """
        key = normalize_email(email)
        quota, names = self.group_entitlements(group)

        def _work(session):
            row = self._find(session, key)
            if row is None:
                return self._insert_account(
                    session,
                    key,
                    group,
                    name,
                    registered=True if registered is None else registered,
                    email_verified_at=email_verified_at,
                    reason=FULFILL_REASON,
                ), True

            account = _to_account(row)
            values = {}
            if name:
                values["name"] = name
            if registered and not account.registered:
                values["registered"] = True
            if email_verified_at is not None and account.email_verified_at is None:
                values["email_verified_at"] = email_verified_at
            if values:
                session.execute(update(accounts).where(accounts.c.id == account.id).values(**values))

            self.ledger.grant_quota(session, account.id, quota, reason=FULFILL_REASON)
            for stale in GROUP_MANAGED_FEATURES:
                if stale not in names:
                    self.ledger.revoke_feature(session, account.id, stale)
            if names:
                self.ledger.grant_features(session, account.id, names, reason=FULFILL_REASON)

            row = session.execute(select(accounts).where(accounts.c.id == account.id)).first()
            return _to_account(row), False

        try:
            account, created = run_transaction(_work)
        except IntegrityError as exc:
            raise EmailAlreadyUsed() from exc

        if created:
            self._publish(
                EntitlementEvents.ACCOUNT_CREATED,
                AccountCreated(account_id=account.id, email=account.email, group=AccountGroup(group).value),
            )
        else:
            logger.info("account fulfilled", extra={"account_id": account.id})
            self._publish(
                EntitlementEvents.ACCOUNT_UPDATED,
                AccountUpdated(account_id=account.id, email=account.email),
            )
        return account

    def update_account(self, account_id: str, email: Optional[str] = None, name: Optional[str] = None) -> Account:
        """
        Change an account's e-mail and/or display name. Entitlements are untouched.

        Raises:
            AccountNotFound: unknown account
            ValidationError: malformed e-mail
            EmailAlreadyUsed: another account already uses the new e-mail
        """
        key = normalize_email(email) if email is not None else None

        def _work(session):
            row = session.execute(select(accounts).where(accounts.c.id == account_id)).first()
            if row is None:
                raise AccountNotFound(f"Account {account_id} not found")

            values = {}
            if key is not None and key != row._mapping["email"]:
                taken = self._find(session, key)
                if taken is not None:
                    raise EmailAlreadyUsed()
                values["email"] = key
            if name:
                values["name"] = name
            if values:
                session.execute(update(accounts).where(accounts.c.id == account_id).values(**values))

            row = session.execute(select(accounts).where(accounts.c.id == account_id)).first()
            return _to_account(row)

        try:
            account = run_transaction(_work)
        except IntegrityError as exc:
            raise EmailAlreadyUsed() from exc

        logger.info("account updated", extra={"account_id": account.id})
        self._publish(
            EntitlementEvents.ACCOUNT_UPDATED,
            AccountUpdated(account_id=account.id, email=account.email),
        )
        return account

    # ---- deletion ----

    def delete_account(self, account_id: str) -> Account:
        """Delete the account; its activation records cascade."""

        def _work(session):
            row = session.execute(select(accounts).where(accounts.c.id == account_id)).first()
            if row is None:
                raise AccountNotFound(f"Account {account_id} not found")
            session.execute(delete(accounts).where(accounts.c.id == account_id))
            return _to_account(row)

        account = run_transaction(_work)
        logger.info("account deleted", extra={"account_id": account_id})
        self._publish(
            EntitlementEvents.ACCOUNT_DELETED,
            AccountDeleted(account_id=account.id, email=account.email),
        )
        return account

    def _publish(self, event_type: str, payload) -> None:
        if self.bridge is not None:
            self.bridge.publish(event_type, payload)
