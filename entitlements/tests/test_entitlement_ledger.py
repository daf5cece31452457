"""
Tests for the entitlement ledger (activation records).
"""
from datetime import timedelta

import pytest
from sqlalchemy import insert, select

from entitlements.core.database import account_features, features, get_db_session, run_transaction
from entitlements.core.errors import AccountNotFound, DefinitionNotFound, NoActiveQuota, ValidationError
from entitlements.features.registry.service import parse_definition
from entitlements.models.activation import utc_now
from entitlements.models.feature import FeatureKind, FeatureType


def _active_quota_rows(account_id):
    quota_ids = select(features.c.id).where(features.c.kind == int(FeatureKind.QUOTA))
    with get_db_session() as session:
        return session.execute(
            select(account_features)
            .where(account_features.c.account_id == account_id)
            .where(account_features.c.activated.is_(True))
            .where(account_features.c.feature_id.in_(quota_ids))
        ).all()


def test_first_grant_activates_quota(ledger, bare_account):
    assert run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace", reason="sign up"))

    with get_db_session() as session:
        current = ledger.current_quota(session, bare_account)
    assert current.name == "personal_workspace"
    assert current.reason == "sign up"
    assert current.activated is True
    assert current.configs.member_limit == 1


def test_grant_quota_twice_inserts_once(ledger, bare_account):
    """Granting the active quota again is a no-op."""
    assert run_transaction(lambda s: ledger.grant_quota(s, bare_account, FeatureType.TEAM_WORKSPACE))
    assert not run_transaction(lambda s: ledger.grant_quota(s, bare_account, FeatureType.TEAM_WORKSPACE))

    with get_db_session() as session:
        history = ledger.all_quota_history(session, bare_account)
    assert len(history) == 1


def test_switch_deactivates_previous_quota(ledger, bare_account):
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "team_workspace", reason="upgrade"))

    with get_db_session() as session:
        history = ledger.all_quota_history(session, bare_account)
        current = ledger.current_quota(session, bare_account)

    assert [h.name for h in history] == ["personal_workspace", "team_workspace"]
    assert [h.activated for h in history] == [False, True]
    assert current.name == "team_workspace"
    assert current.reason == "upgrade"
    assert len(_active_quota_rows(bare_account)) == 1


def test_grant_unknown_quota_leaves_state_unchanged(ledger, bare_account):
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))

    with pytest.raises(DefinitionNotFound):
        run_transaction(lambda s: ledger.grant_quota(s, bare_account, "platinum_workspace"))

    with get_db_session() as session:
        assert ledger.current_quota(session, bare_account).name == "personal_workspace"


def test_feature_name_is_not_a_quota(ledger, bare_account):
    with pytest.raises(DefinitionNotFound):
        run_transaction(lambda s: ledger.grant_quota(s, bare_account, FeatureType.ADMIN))


def test_grant_quota_unknown_account(ledger):
    with pytest.raises(AccountNotFound):
        run_transaction(lambda s: ledger.grant_quota(s, "no-such-account", "personal_workspace"))


def test_grant_quota_rejects_past_expiry(ledger, bare_account):
    with pytest.raises(ValidationError):
        run_transaction(
            lambda s: ledger.grant_quota(
                s, bare_account, "team_workspace", expired_at=utc_now() - timedelta(minutes=1)
            )
        )


def test_failed_transaction_rolls_back_deactivation(ledger, bare_account):
    """A failure after the switch leaves the previous quota active."""
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))

    def _work(session):
        ledger.grant_quota(session, bare_account, "team_workspace")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        run_transaction(_work)

    with get_db_session() as session:
        assert ledger.current_quota(session, bare_account).name == "personal_workspace"
        assert len(ledger.all_quota_history(session, bare_account)) == 1


def test_current_quota_missing_raises(ledger, bare_account, caplog):
    caplog.set_level("ERROR", logger="entitlements")
    with get_db_session() as session:
        with pytest.raises(NoActiveQuota):
            ledger.current_quota(session, bare_account)
    assert any("no active quota" in r.getMessage() for r in caplog.records)


def test_expired_record_is_not_effective(ledger, bare_account):
    now = utc_now()
    run_transaction(
        lambda s: ledger.grant_quota(
            s, bare_account, "team_workspace", expired_at=now + timedelta(hours=1), now=now
        )
    )
    later = now + timedelta(hours=2)
    with get_db_session() as session:
        assert ledger.find_current_quota(session, bare_account, now) is not None
        assert ledger.find_current_quota(session, bare_account, later) is None
        assert ledger.has_lapsed_quota(session, bare_account, later)
        assert not ledger.has_active(session, bare_account, "team_workspace", FeatureKind.QUOTA, later)


def test_grant_features_skips_already_granted(ledger, bare_account):
    first = run_transaction(lambda s: ledger.grant_features(s, bare_account, ["early_access"], "beta"))
    second = run_transaction(
        lambda s: ledger.grant_features(s, bare_account, ["early_access", "ai_early_access"], "beta")
    )
    assert first == ["early_access"]
    assert second == ["ai_early_access"]

    with get_db_session() as session:
        assert len(ledger.feature_history(session, bare_account, "early_access")) == 1


def test_grant_features_duplicate_names_in_batch(ledger, bare_account):
    granted = run_transaction(
        lambda s: ledger.grant_features(s, bare_account, ["copilot", FeatureType.COPILOT])
    )
    assert granted == ["copilot"]


def test_grant_features_rejects_quota_names(ledger, bare_account):
    with pytest.raises(DefinitionNotFound):
        run_transaction(lambda s: ledger.grant_features(s, bare_account, ["team_workspace"]))


def test_revoke_feature(ledger, bare_account):
    run_transaction(lambda s: ledger.grant_features(s, bare_account, ["administrator"]))
    assert run_transaction(lambda s: ledger.revoke_feature(s, bare_account, "administrator")) == 1
    assert run_transaction(lambda s: ledger.revoke_feature(s, bare_account, "administrator")) == 0

    with get_db_session() as session:
        assert not ledger.has_active(session, bare_account, "administrator", FeatureKind.FEATURE)
        history = ledger.feature_history(session, bare_account, "administrator")
    assert [r.activated for r in history] == [False]


def test_revoke_never_touches_quota(ledger, bare_account):
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))
    assert run_transaction(lambda s: ledger.revoke_feature(s, bare_account, "personal_workspace")) == 0
    assert len(_active_quota_rows(bare_account)) == 1


def test_history_pins_definition_version(ledger, store, bare_account):
    """Records keep pointing at the version they were granted with."""
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "team_workspace"))

    team_v2 = parse_definition(
        {
            "name": "team_workspace",
            "kind": FeatureKind.QUOTA,
            "version": 2,
            "configs": {
                "name": "Team",
                "blob_limit": 1,
                "storage_quota": 2,
                "history_period": 3,
                "member_limit": 500,
            },
        }
    )
    store.ensure_seeded([team_v2])

    with get_db_session() as session:
        current = ledger.current_quota(session, bare_account)
        pinned = store.resolve(session, current.record.definition_id)
    assert current.version == 1
    assert pinned.version == 1
    assert pinned.configs.member_limit == 100

    # a fresh switch picks up the new version
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "team_workspace"))
    with get_db_session() as session:
        assert ledger.current_quota(session, bare_account).configs.member_limit == 500


def test_history_omits_unresolvable_records(ledger, bare_account):
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))

    with get_db_session() as session:
        bad_id = session.execute(
            insert(features).values(name="team_workspace", kind=1, version=90, configs={"bogus": 1})
        ).inserted_primary_key[0]
        session.execute(
            insert(account_features).values(
                account_id=bare_account,
                feature_id=bad_id,
                reason="legacy",
                activated=False,
                created_at=utc_now(),
            )
        )

    with get_db_session() as session:
        history = ledger.all_quota_history(session, bare_account)
    assert [h.name for h in history] == ["personal_workspace"]


def test_list_active_by_kind(ledger, bare_account):
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))
    run_transaction(lambda s: ledger.grant_features(s, bare_account, ["copilot", "early_access"]))

    with get_db_session() as session:
        active_features = ledger.list_active(session, bare_account, FeatureKind.FEATURE)
        everything = ledger.list_active(session, bare_account)
    assert [a.name for a in active_features] == ["copilot", "early_access"]
    assert len(everything) == 3


def test_deactivated_rows_are_kept(ledger, bare_account):
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "team_workspace"))
    run_transaction(lambda s: ledger.grant_quota(s, bare_account, "personal_workspace"))

    with get_db_session() as session:
        rows = session.execute(
            select(account_features).where(account_features.c.account_id == bare_account)
        ).all()
    assert len(rows) == 3
    assert sum(1 for r in rows if r.activated) == 1
