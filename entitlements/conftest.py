# entitlements/conftest.py
import os
import uuid

import pytest

os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="session")
def db_url(tmp_path_factory):
    """
    Provide a file-backed SQLite database for the test session.

    TEST_DATABASE_URL from the environment wins (e.g. a Postgres instance).
    """
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        path = tmp_path_factory.mktemp("db") / "entitlements.sqlite3"
        url = f"sqlite:///{path}"
        os.environ["TEST_DATABASE_URL"] = url
    return url


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Create all tables once per session."""
    from entitlements.core.database import create_all_tables, init_engine

    init_engine(db_url)
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """Delete every row before each test, children first."""
    from entitlements.core.database import get_engine, metadata

    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def registry():
    from entitlements.features.registry.service import load_registry

    return load_registry()


@pytest.fixture
def store(registry):
    """Feature store with the built-in catalog seeded."""
    from entitlements.features.store.service import FeatureStore

    feature_store = FeatureStore(registry)
    feature_store.ensure_seeded()
    return feature_store


@pytest.fixture
def ledger(store):
    from entitlements.features.ledger.service import EntitlementLedger

    return EntitlementLedger(store)


@pytest.fixture
def services(registry, store):
    from entitlements.main import build_services

    return build_services(registry)


@pytest.fixture
def quotas(services):
    return services.quotas


@pytest.fixture
def feature_service(services):
    return services.features


@pytest.fixture
def accounts(services):
    return services.accounts


@pytest.fixture
def bridge(services):
    return services.bridge


@pytest.fixture
def gateway(services):
    return services.gateway


@pytest.fixture
def make_account(accounts):
    """Create accounts with unique e-mails."""

    def _make(email=None, group="user", **kwargs):
        return accounts.create_account(email or f"user-{uuid.uuid4().hex[:12]}@example.com", group=group, **kwargs)

    return _make


@pytest.fixture
def bare_account():
    """An account row with no ledger records at all."""
    from sqlalchemy import insert

    from entitlements.core.database import accounts as accounts_table
    from entitlements.core.database import get_db_session
    from entitlements.models.activation import utc_now

    account_id = str(uuid.uuid4())
    with get_db_session() as session:
        session.execute(
            insert(accounts_table).values(
                id=account_id,
                email=f"bare-{account_id[:8]}@example.com",
                name="bare",
                registered=True,
                created_at=utc_now(),
            )
        )
    return account_id
