"""
entitlements/main.py

Process start-up: validate configuration, load the catalog, connect to the
database, seed definitions and wire the services together.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from entitlements.core.config import settings
from entitlements.core.database import create_all_tables, init_engine
from entitlements.core.logging import LOGGER_NAME, configure_logging
from entitlements.core.validation import validate_env, validate_plan_mappings
from entitlements.features.accounts.service import AccountService
from entitlements.features.events.bridge import EventBridge
from entitlements.features.gateway.service import EntitlementGateway
from entitlements.features.ledger.service import EntitlementLedger
from entitlements.features.management.service import FeatureManagementService
from entitlements.features.quota.service import QuotaService
from entitlements.features.registry.service import FeatureRegistry, load_registry
from entitlements.features.store.service import FeatureStore

logger = logging.getLogger(LOGGER_NAME)


@dataclass
class Services:
    registry: FeatureRegistry
    store: FeatureStore
    ledger: EntitlementLedger
    quotas: QuotaService
    features: FeatureManagementService
    accounts: AccountService
    bridge: EventBridge
    gateway: EntitlementGateway


def build_services(registry: FeatureRegistry, settings_obj=None) -> Services:
    """Wire the services around one registry. No I/O."""
    cfg = settings_obj or settings
    store = FeatureStore(registry)
    ledger = EntitlementLedger(store)
    bridge = EventBridge()
    quotas = QuotaService(ledger, settings_obj=cfg)
    features = FeatureManagementService(ledger)
    quotas.register(bridge)
    return Services(
        registry=registry,
        store=store,
        ledger=ledger,
        quotas=quotas,
        features=features,
        accounts=AccountService(ledger, bridge, settings_obj=cfg),
        bridge=bridge,
        gateway=EntitlementGateway(quotas, features),
    )


def bootstrap(database_url: Optional[str] = None, *, seed: bool = True, settings_obj=None) -> Services:
    """
    Start the entitlement core.

    Fails fast on a bad environment, a malformed catalog or a plan mapping
    that points at an unknown definition.
    """
    cfg = settings_obj or settings
    configure_logging(cfg.ENV, cfg.LOG_LEVEL)
    validate_env(settings_obj=cfg)

    registry = load_registry()
    validate_plan_mappings(registry, settings_obj=cfg)

    init_engine(database_url)
    create_all_tables()

    services = build_services(registry, settings_obj=cfg)
    if seed:
        services.store.ensure_seeded()

    logger.info("entitlements started (env=%s)", cfg.ENV)
    return services
