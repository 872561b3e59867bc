"""Entity definition hashing."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def schema_hash(definition: Any) -> str:
    """Return the canonical SHA-256 hash for an entity definition.

    Accepts either a plain dict or anything exposing ``to_dict()``.
    """
    if hasattr(definition, "to_dict"):
        definition = definition.to_dict()
    data = canonical_dumps(definition).encode("utf-8")
    digest = hashlib.sha256(data).hexdigest()
    return f"sha256:{digest}"
