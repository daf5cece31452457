"""
entitlements/features/store/service.py

Persistence side of the feature catalog.

Handles:
- Idempotent, race-safe seeding of (name, version) rows
- Latest-version lookup by name and kind
- Resolving persisted definitions back into validated models
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlements.core.database import features, run_transaction
from entitlements.core.errors import ConfigValidationError, DefinitionNotFound
from entitlements.features.registry.service import FeatureRegistry
from entitlements.models.activation import utc_now
from entitlements.models.feature import FeatureDefinition, FeatureKind, FeatureType, feature_name

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _kind_label(kind: FeatureKind) -> str:
    return "Quota" if kind == FeatureKind.QUOTA else "Feature"


class FeatureStore:
    def __init__(self, registry: FeatureRegistry):
        self.registry = registry

    # ---- seeding ----

    def ensure_seeded(self, definitions: Optional[Iterable[FeatureDefinition]] = None) -> int:
        """
        Insert every (name, version) not yet persisted. Existing rows are never touched.

        Safe to run concurrently from several instances: conflicts on the
        (name, version) unique constraint count as success.

        Returns:
            Number of rows inserted by this call
        """
        pending = list(self.registry.list_definitions() if definitions is None else definitions)
        inserted = run_transaction(lambda session: self._insert_missing(session, pending))
        logger.info("feature catalog seeded: %s new of %s", inserted, len(pending))
        return inserted

    def _insert_missing(self, session: Session, definitions: List[FeatureDefinition]) -> int:
        dialect = session.get_bind().dialect.name
        upsert_insert = _UPSERT_INSERTS.get(dialect)
        inserted = 0
        for definition in definitions:
            values = {
                "name": definition.name,
                "kind": int(definition.kind),
                "version": definition.version,
                "configs": definition.configs.model_dump(mode="json", exclude_none=True),
                "created_at": utc_now(),
            }
            if upsert_insert is not None:
                result = session.execute(
                    upsert_insert(features)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=["name", "version"])
                )
                inserted += result.rowcount or 0
                continue

            try:
                with session.begin_nested():
                    session.execute(insert(features).values(**values))
                inserted += 1
            except IntegrityError:
                # Another instance seeded this version first
                logger.debug("feature %s v%s already seeded", definition.name, definition.version)
        return inserted

    # ---- lookups ----

    def latest_version_id(self, session: Session, name: Union[str, FeatureType], kind: FeatureKind) -> int:
        """
        Id of the highest-version row for name/kind.

        Raises:
            DefinitionNotFound: if nothing matching has been seeded
        """
        key = feature_name(name)
        row = session.execute(
            select(features.c.id)
            .where(features.c.name == key)
            .where(features.c.kind == int(kind))
            .order_by(features.c.version.desc())
            .limit(1)
        ).first()
        if row is None:
            raise DefinitionNotFound(f"{_kind_label(kind)} {key} not found")
        return row.id

    def resolve(self, session: Session, definition_id: int, kind: Optional[FeatureKind] = None) -> FeatureDefinition:
        """
        Fetch a persisted definition by id.

        Raises:
            DefinitionNotFound: if the row is absent, of another kind than
                expected, or no longer matches its schema
        """
        row = session.execute(
            select(features).where(features.c.id == definition_id)
        ).first()
        if row is None:
            raise DefinitionNotFound(f"Feature definition {definition_id} not found")
        return self.build(row._mapping, kind)

    def latest_definition(self, session: Session, name: Union[str, FeatureType], kind: FeatureKind) -> FeatureDefinition:
        return self.resolve(session, self.latest_version_id(session, name, kind), kind)

    def build(self, row: Mapping[str, Any], kind: Optional[FeatureKind] = None) -> FeatureDefinition:
        """Turn a features row (id, name, kind, version, configs) into a definition."""
        if row.get("name") is None:
            raise DefinitionNotFound(f"Feature definition {row.get('id')} not found")
        if kind is not None and row["kind"] != int(kind):
            raise DefinitionNotFound(
                f"Feature definition {row['id']} ({row['name']}) is not a {_kind_label(kind)}"
            )
        try:
            return self.registry.parse(
                {
                    "id": row["id"],
                    "name": row["name"],
                    "kind": row["kind"],
                    "version": row["version"],
                    "configs": row["configs"] or {},
                }
            )
        except ConfigValidationError as exc:
            raise DefinitionNotFound(
                f"Feature definition {row['id']} ({row['name']}) does not match its schema"
            ) from exc

    def persisted_versions(self, session: Session) -> Dict[str, List[int]]:
        rows = session.execute(
            select(features.c.name, features.c.version).order_by(features.c.name, features.c.version)
        ).all()
        versions: Dict[str, List[int]] = {}
        for row in rows:
            versions.setdefault(row.name, []).append(row.version)
        return versions
