"""
entitlements/models/account.py

Account model and the sign-up groups that decide initial entitlements.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class AccountGroup(str, Enum):
    ADMIN = "admin"
    TEAM_LEAD = "team_lead"
    USER = "user"


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    registered: bool = True
    email_verified_at: Optional[datetime] = None
    created_at: datetime

    @staticmethod
    def default_name(email: str) -> str:
        return email.split("@")[0]
