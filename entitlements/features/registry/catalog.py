"""
entitlements/features/registry/catalog.py

Built-in feature/quota catalog.

Append new versions; never edit or remove an existing (name, version) entry.
Ledger rows reference old versions by id and must stay interpretable.
"""

from entitlements.models.feature import ONE_DAY, ONE_GB, ONE_MB, FeatureKind, FeatureType


FEATURES = [
    {
        "name": FeatureType.COPILOT.value,
        "kind": FeatureKind.FEATURE,
        "version": 1,
        "configs": {},
    },
    {
        "name": FeatureType.EARLY_ACCESS.value,
        "kind": FeatureKind.FEATURE,
        "version": 1,
        "configs": {
            "whitelist": ["@example.com"],
        },
    },
    {
        "name": FeatureType.EARLY_ACCESS.value,
        "kind": FeatureKind.FEATURE,
        "version": 2,
        "configs": {
            "whitelist": [],
        },
    },
    {
        "name": FeatureType.UNLIMITED_WORKSPACE.value,
        "kind": FeatureKind.QUOTA,
        "version": 1,
        "configs": {
            "name": "Unlimited",
            "blob_limit": ONE_GB,
            "storage_quota": 500 * ONE_GB,
            "history_period": 365 * ONE_DAY,
            "member_limit": 10000,
        },
    },
    {
        "name": FeatureType.UNLIMITED_COPILOT.value,
        "kind": FeatureKind.FEATURE,
        "version": 1,
        "configs": {},
    },
    {
        "name": FeatureType.AI_EARLY_ACCESS.value,
        "kind": FeatureKind.FEATURE,
        "version": 1,
        "configs": {},
    },
    {
        "name": FeatureType.ADMIN.value,
        "kind": FeatureKind.FEATURE,
        "version": 1,
        "configs": {},
    },
    {
        "name": FeatureType.PERSONAL_WORKSPACE.value,
        "kind": FeatureKind.QUOTA,
        "version": 1,
        "configs": {
            "name": "Personal",
            "blob_limit": 10 * ONE_MB,
            "storage_quota": 5 * ONE_GB,
            "history_period": 7 * ONE_DAY,
            "member_limit": 1,
        },
    },
    {
        "name": FeatureType.TEAM_WORKSPACE.value,
        "kind": FeatureKind.QUOTA,
        "version": 1,
        "configs": {
            "name": "Team",
            "blob_limit": 30 * ONE_MB,
            "storage_quota": 100 * ONE_GB,
            "history_period": 28 * ONE_DAY,
            "member_limit": 100,
        },
    },
]
