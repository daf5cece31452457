"""
Tests for catalog seeding and definition lookups.
"""
import threading

import pytest
from sqlalchemy import func, insert, select

from entitlements.core.database import features, get_db_session
from entitlements.core.errors import DefinitionNotFound
from entitlements.features.registry.service import parse_definition
from entitlements.features.store.service import FeatureStore
from entitlements.models.feature import FeatureKind, FeatureType, TeamWorkspaceQuota


def _row_count():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(features)).scalar_one()


def test_seed_inserts_whole_catalog(registry):
    store = FeatureStore(registry)
    assert store.ensure_seeded() == len(registry)
    assert _row_count() == len(registry)


def test_seed_idempotent(registry):
    """Seeding twice inserts nothing the second time and never fails."""
    store = FeatureStore(registry)
    store.ensure_seeded()
    assert store.ensure_seeded() == 0
    assert _row_count() == len(registry)


def test_seed_concurrently(registry):
    """Several instances seeding at once leave exactly one row per (name, version)."""
    errors = []

    def _seed():
        try:
            FeatureStore(registry).ensure_seeded()
        except Exception as exc:  # collected and asserted below
            errors.append(exc)

    threads = [threading.Thread(target=_seed) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert _row_count() == len(registry)


def test_seed_never_modifies_existing_rows(store):
    """Existing (name, version) rows keep their persisted configs."""
    changed = parse_definition(
        {
            "name": "team_workspace",
            "kind": FeatureKind.QUOTA,
            "version": 1,
            "configs": {
                "name": "Team (edited)",
                "blob_limit": 1,
                "storage_quota": 1,
                "history_period": 1,
                "member_limit": 1,
            },
        }
    )
    assert store.ensure_seeded([changed]) == 0

    with get_db_session() as session:
        definition = store.latest_definition(session, "team_workspace", FeatureKind.QUOTA)
    assert definition.configs.name == "Team"
    assert definition.configs.member_limit == 100


def test_latest_version_id_prefers_highest_version(store):
    with get_db_session() as session:
        latest_id = store.latest_version_id(session, FeatureType.EARLY_ACCESS, FeatureKind.FEATURE)
        definition = store.resolve(session, latest_id)
    assert definition.version == 2
    assert definition.id == latest_id


def test_latest_version_id_missing(store):
    with get_db_session() as session:
        with pytest.raises(DefinitionNotFound) as exc:
            store.latest_version_id(session, "free_plan_plus", FeatureKind.QUOTA)
    assert "Quota free_plan_plus not found" in str(exc.value)


def test_latest_version_id_respects_kind(store):
    """A Feature name is not found when asked for as a Quota."""
    with get_db_session() as session:
        with pytest.raises(DefinitionNotFound):
            store.latest_version_id(session, FeatureType.ADMIN, FeatureKind.QUOTA)


def test_resolve_missing_id(store):
    with get_db_session() as session:
        with pytest.raises(DefinitionNotFound):
            store.resolve(session, 987654)


def test_resolve_kind_mismatch(store):
    with get_db_session() as session:
        admin_id = store.latest_version_id(session, FeatureType.ADMIN, FeatureKind.FEATURE)
        with pytest.raises(DefinitionNotFound):
            store.resolve(session, admin_id, FeatureKind.QUOTA)


def test_resolve_rejects_row_that_no_longer_matches_schema(store):
    with get_db_session() as session:
        bad_id = session.execute(
            insert(features).values(name="team_workspace", kind=1, version=50, configs={"bogus": True})
        ).inserted_primary_key[0]
        with pytest.raises(DefinitionNotFound):
            store.resolve(session, bad_id)


def test_new_version_becomes_latest(store):
    team_v2 = parse_definition(
        {
            "name": "team_workspace",
            "kind": FeatureKind.QUOTA,
            "version": 2,
            "configs": {
                "name": "Team",
                "blob_limit": 100,
                "storage_quota": 200,
                "history_period": 300,
                "member_limit": 250,
            },
        }
    )
    assert store.ensure_seeded([team_v2]) == 1

    with get_db_session() as session:
        definition = store.latest_definition(session, "team_workspace", FeatureKind.QUOTA)
        versions = store.persisted_versions(session)
    assert isinstance(definition, TeamWorkspaceQuota)
    assert definition.version == 2
    assert definition.configs.member_limit == 250
    assert versions["team_workspace"] == [1, 2]
