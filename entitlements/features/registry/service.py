"""
entitlements/features/registry/service.py

Feature registry: the validated, immutable view of the built-in catalog.

Handles:
- Schema validation of every catalog entry at load time (fail fast)
- (name, version) uniqueness
- Latest-version and per-kind lookups
- Re-validation of persisted rows against the same schema
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from entitlements.core.errors import ConfigValidationError
from entitlements.features.registry.catalog import FEATURES
from entitlements.models.feature import (
    FeatureDefinition,
    FeatureKind,
    FeatureType,
    feature_definition_adapter,
    feature_name,
)

logger = logging.getLogger(__name__)


def parse_definition(entry: Mapping[str, Any]) -> FeatureDefinition:
    """Validate one raw entry against the schema selected by its name.

    Raises:
        ConfigValidationError: if the entry does not match its schema
    """
    try:
        return feature_definition_adapter.validate_python(dict(entry))
    except PydanticValidationError as exc:
        label = f"{entry.get('name')!r} v{entry.get('version')!r}"
        raise ConfigValidationError(f"Invalid feature definition {label}: {exc}") from exc


class FeatureRegistry:
    """
    Process-wide, read-only catalog of definitions.

    Built once at start-up by load_registry() and passed to the services
    that need it.
    """

    __slots__ = ("_definitions", "_by_name")

    def __init__(self, definitions: Iterable[FeatureDefinition]):
        ordered = tuple(definitions)
        by_name: Dict[str, List[FeatureDefinition]] = {}
        for definition in ordered:
            versions = by_name.setdefault(definition.name, [])
            if any(existing.version == definition.version for existing in versions):
                raise ConfigValidationError(
                    f"Duplicate feature definition {definition.name!r} v{definition.version}"
                )
            versions.append(definition)
        object.__setattr__(self, "_definitions", ordered)
        object.__setattr__(
            self,
            "_by_name",
            {name: tuple(sorted(items, key=lambda d: d.version)) for name, items in by_name.items()},
        )

    def __setattr__(self, key, value):
        raise AttributeError("FeatureRegistry is immutable")

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        if isinstance(name, FeatureType):
            name = name.value
        return name in self._by_name

    def list_definitions(self) -> Tuple[FeatureDefinition, ...]:
        return self._definitions

    def versions(self, name: Union[str, FeatureType]) -> Tuple[FeatureDefinition, ...]:
        return self._by_name.get(feature_name(name), ())

    def latest(self, name: Union[str, FeatureType]) -> Optional[FeatureDefinition]:
        versions = self.versions(name)
        return versions[-1] if versions else None

    def names(self, kind: Optional[FeatureKind] = None) -> List[str]:
        return [
            name
            for name, versions in self._by_name.items()
            if kind is None or versions[0].kind == kind
        ]

    def parse(self, row: Mapping[str, Any]) -> FeatureDefinition:
        """Validate a persisted row (id, name, kind, version, configs)."""
        return parse_definition(row)


def load_registry(entries: Optional[Iterable[Mapping[str, Any]]] = None) -> FeatureRegistry:
    """
    Validate the catalog and build the registry.

    Args:
        entries: Raw catalog entries (defaults to the built-in FEATURES)

    Raises:
        ConfigValidationError: on the first malformed or duplicated entry
    """
    raw = list(FEATURES if entries is None else entries)
    definitions = [parse_definition(entry) for entry in raw]
    registry = FeatureRegistry(definitions)
    logger.info("feature registry loaded: %s definitions", len(registry))
    return registry
