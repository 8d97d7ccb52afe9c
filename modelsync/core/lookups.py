"""
Utilities for matching entities against upsert lookups.

get_or_create / update_or_create operations carry a Django-style lookup dict
(e.g. {"name": "B"} or {"status__in": ["active", "pending"]}). The stores use
these helpers to find the entity an upsert would hit on the server.
Supports equality, __exact and __in lookups, including nested fields on
embedded related entities.
"""
from typing import Any, Dict, Iterable, Optional, Tuple

from cytoolz import pluck

from modelsync.core.types import Entity, PrimaryKey

_MISSING = object()


def get_nested_value(entity: Entity, path: str) -> Any:
    """
    Resolve a "__" separated path against an entity.

    Examples:
        get_nested_value({"room": {"id": 5}}, "room__id") -> 5
        get_nested_value({"status": "active"}, "status") -> "active"

    Returns a sentinel (not None) when any segment is missing, so that a
    lookup on None never matches an absent field.
    """
    current: Any = entity
    for part in path.split("__"):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _split_lookup(key: str) -> Tuple[str, str]:
    if key.endswith("__in"):
        return key[:-4], "in"
    if key.endswith("__exact"):
        return key[:-7], "exact"
    return key, "exact"


def entity_matches_lookup(entity: Entity, lookup: Dict[str, Any]) -> bool:
    """
    Check if an entity satisfies every condition in a lookup.

    Examples:
        >>> entity_matches_lookup({"id": 1, "name": "A"}, {"name": "A"})
        True
        >>> entity_matches_lookup({"id": 1, "name": "A"}, {"name__in": ["B", "C"]})
        False
    """
    if not isinstance(entity, dict):
        return False

    for key, expected_value in lookup.items():
        field_path, operator = _split_lookup(key)
        actual_value = get_nested_value(entity, field_path)

        # Related entities may be embedded as {"type": ..., <pk>: ...}; compare
        # a scalar expectation against the embedded primary key.
        if isinstance(actual_value, dict) and not isinstance(expected_value, dict):
            actual_value = actual_value.get("id", actual_value.get("pk", _MISSING))

        if actual_value is _MISSING:
            return False

        if operator == "in":
            if actual_value not in expected_value:
                return False
        elif actual_value != expected_value:
            return False

    return True


def find_matching_entity(
    entities: Dict[PrimaryKey, Entity], lookup: Dict[str, Any]
) -> Optional[Tuple[PrimaryKey, Entity]]:
    """Return the first (pk, entity) pair matching the lookup, in map order."""
    for pk, entity in entities.items():
        if entity_matches_lookup(entity, lookup):
            return pk, entity
    return None


def pks_of(entities: Iterable[Entity], pk_field: str) -> list:
    """Primary keys of the entities that carry the pk field, in order."""
    return list(pluck(pk_field, (e for e in entities if isinstance(e, dict) and pk_field in e)))
