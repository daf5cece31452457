"""
entitlements/models/feature.py

Feature and quota definitions.

A definition is an immutable (name, version) catalog entry. The shape of
its `configs` is decided by `name`, and every name is bound to exactly one
kind:
- Feature: additive capability flag (administrator, early_access, ...)
- Quota: mutually exclusive resource limits (personal_workspace, ...)
"""

from enum import Enum
from typing import Annotated, ClassVar, Dict, Literal, Optional, Tuple, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

ONE_KB = 1024
ONE_MB = 1024 * ONE_KB
ONE_GB = 1024 * ONE_MB
ONE_DAY = 24 * 60 * 60  # seconds


class FeatureKind(int, Enum):
    FEATURE = 0
    QUOTA = 1


class FeatureType(str, Enum):
    # account features
    ADMIN = "administrator"
    EARLY_ACCESS = "early_access"
    AI_EARLY_ACCESS = "ai_early_access"
    UNLIMITED_COPILOT = "unlimited_copilot"
    # quotas
    UNLIMITED_WORKSPACE = "unlimited_workspace"
    PERSONAL_WORKSPACE = "personal_workspace"
    TEAM_WORKSPACE = "team_workspace"
    # workspace feature
    COPILOT = "copilot"


def feature_name(name: Union[str, FeatureType]) -> str:
    """Plain string form of a feature name."""
    if isinstance(name, FeatureType):
        return name.value
    return str(name)


def format_bytes(size: int) -> str:
    units = ("B", "KB", "MB", "GB", "TB")
    value = float(size)
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[idx]}"


def format_period(seconds: int) -> str:
    if seconds % ONE_DAY == 0:
        days = seconds // ONE_DAY
        return f"{days} day" if days == 1 else f"{days} days"
    hours = seconds / 3600
    return f"{hours:g} hours"


# ======== configs ========

class EmptyConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class EarlyAccessConfig(BaseModel):
    """Whitelist entries starting with '@' match a domain, others an exact address."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    whitelist: Tuple[str, ...] = ()

    def allows(self, email: str) -> bool:
        address = email.strip().lower()
        for entry in self.whitelist:
            entry = entry.strip().lower()
            if entry.startswith("@"):
                if address.endswith(entry):
                    return True
            elif address == entry:
                return True
        return False


class QuotaConfig(BaseModel):
    """
    Resource limits carried by a quota definition.

    Sizes are bytes, history_period is seconds. A missing
    copilot_action_limit means unlimited.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    blob_limit: int = Field(gt=0)
    storage_quota: int = Field(gt=0)
    history_period: int = Field(gt=0)
    member_limit: int = Field(gt=0)
    copilot_action_limit: Optional[int] = Field(default=None, gt=0)

    def human_readable(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "blob_limit": format_bytes(self.blob_limit),
            "storage_quota": format_bytes(self.storage_quota),
            "history_period": format_period(self.history_period),
            "member_limit": str(self.member_limit),
            "copilot_action_limit": (
                "unlimited" if self.copilot_action_limit is None else str(self.copilot_action_limit)
            ),
        }


# ======== definitions ========

class BaseDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    KIND: ClassVar[FeatureKind]

    # Surrogate id, set once the definition has been persisted
    id: Optional[int] = None
    kind: FeatureKind
    version: int = Field(gt=0, strict=True)

    @model_validator(mode="after")
    def check_kind(self):
        if self.kind != self.KIND:
            raise ValueError(
                f"{self.name} must be of kind {self.KIND.name}, got {self.kind.name}"
            )
        return self


class _Feature(BaseDefinition):
    KIND: ClassVar[FeatureKind] = FeatureKind.FEATURE


class _Quota(BaseDefinition):
    KIND: ClassVar[FeatureKind] = FeatureKind.QUOTA

    configs: QuotaConfig


class CopilotFeature(_Feature):
    name: Literal["copilot"]
    configs: EmptyConfig = EmptyConfig()


class EarlyAccessFeature(_Feature):
    name: Literal["early_access"]
    configs: EarlyAccessConfig = EarlyAccessConfig()


class AIEarlyAccessFeature(_Feature):
    name: Literal["ai_early_access"]
    configs: EmptyConfig = EmptyConfig()


class UnlimitedCopilotFeature(_Feature):
    name: Literal["unlimited_copilot"]
    configs: EmptyConfig = EmptyConfig()


class AdministratorFeature(_Feature):
    name: Literal["administrator"]
    configs: EmptyConfig = EmptyConfig()


class UnlimitedWorkspaceQuota(_Quota):
    name: Literal["unlimited_workspace"]


class PersonalWorkspaceQuota(_Quota):
    name: Literal["personal_workspace"]


class TeamWorkspaceQuota(_Quota):
    name: Literal["team_workspace"]


DEFINITION_VARIANTS = (
    CopilotFeature,
    EarlyAccessFeature,
    AIEarlyAccessFeature,
    UnlimitedCopilotFeature,
    AdministratorFeature,
    UnlimitedWorkspaceQuota,
    PersonalWorkspaceQuota,
    TeamWorkspaceQuota,
)

FeatureDefinition = Annotated[
    Union[
        CopilotFeature,
        EarlyAccessFeature,
        AIEarlyAccessFeature,
        UnlimitedCopilotFeature,
        AdministratorFeature,
        UnlimitedWorkspaceQuota,
        PersonalWorkspaceQuota,
        TeamWorkspaceQuota,
    ],
    Field(discriminator="name"),
]

feature_definition_adapter: TypeAdapter = TypeAdapter(FeatureDefinition)

# name -> kind, derived from the variants above
KIND_BY_NAME: Dict[str, FeatureKind] = {
    get_args(cls.model_fields["name"].annotation)[0]: cls.KIND for cls in DEFINITION_VARIANTS
}
