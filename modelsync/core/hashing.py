"""
Stable identity for query ASTs.

Two ASTs that select the same rows must map to the same store, no matter how
they ask the backend to order or serialize those rows. Only the structural
subset of the AST that affects result identity is hashed: filter, search and
aggregations. Ordering, serializer options, select/prefetch related and
pagination never take part.

Queryset and metric stores hash the same subset; metric keys add the metric
type and field on top.
"""
import hashlib
import json
from typing import Any, Dict, Iterable, Optional

from cytoolz import keyfilter
from fastapi.encoders import jsonable_encoder

IDENTITY_FIELDS = frozenset({"filter", "search", "aggregations"})


def canonical_json(value: Any) -> str:
    """Deterministic JSON text: dict keys sorted, non-JSON types encoded."""
    return json.dumps(
        jsonable_encoder(value), sort_keys=True, separators=(",", ":"), default=str
    )


def _normalize(ast: Optional[Dict[str, Any]], fields: Iterable[str]) -> Dict[str, Any]:
    if not ast:
        return {}
    fields = frozenset(fields)
    # Absent and null parts are equivalent
    relevant = keyfilter(lambda key: key in fields, ast)
    return {key: value for key, value in relevant.items() if value is not None}


def hash_ast(ast: Optional[Dict[str, Any]], fields: Iterable[str]) -> str:
    digest = hashlib.sha256(canonical_json(_normalize(ast, fields)).encode())
    return digest.hexdigest()


def queryset_ast_hash(ast: Optional[Dict[str, Any]]) -> str:
    """Hash identifying the membership of a queryset."""
    return hash_ast(ast, IDENTITY_FIELDS)


def metric_ast_hash(ast: Optional[Dict[str, Any]]) -> str:
    """Hash identifying the rows an aggregate is computed over."""
    return hash_ast(ast, IDENTITY_FIELDS)
