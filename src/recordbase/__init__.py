"""recordbase kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, jsonable
from .schema_hash import schema_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "jsonable",
    "schema_hash",
]
