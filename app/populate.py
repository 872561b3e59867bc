"""Read-time enrichment of lookup and file fields."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from recordbase.schema import EntityDefinition, flat_record


logger = logging.getLogger("recordbase.populate")


class Populator:
    """Replaces stored identifiers with display objects.

    Lookups become ``{"id", "display_label"}`` and files/images become
    ``{"id", "original_name", "url"}``. Anything that cannot be resolved keeps
    its raw identifier.
    """

    def __init__(self, record_store: Any, file_store: Any) -> None:
        self._records = record_store
        self._files = file_store

    def populate(self, tenant_id: str, entity: EntityDefinition, records: List[dict]) -> List[dict]:
        out = [dict(record) for record in records]
        for field in entity.fields:
            if field.type == "lookup" and field.lookup is not None:
                self._populate_lookup(tenant_id, field, out)
            elif field.type in {"file", "image"}:
                self._populate_files(tenant_id, field, out)
        return out

    def _populate_lookup(self, tenant_id: str, field: Any, records: List[dict]) -> None:
        ids = sorted({r[field.name] for r in records if isinstance(r.get(field.name), str)})
        if not ids:
            return
        try:
            refs = self._records.find(
                field.lookup.entity,
                {"tenant_id": tenant_id, "deleted": {"$ne": True}, "id": {"$in": ids}},
                limit=len(ids),
            )
        except Exception:
            logger.warning(
                "populate_lookup_failed entity=%s field=%s", field.lookup.entity, field.name, exc_info=True
            )
            return
        labels: Dict[str, Any] = {}
        for ref in refs:
            flat = flat_record(ref)
            labels[ref["id"]] = flat.get(field.lookup.label_field)
        for record in records:
            ref_id = record.get(field.name)
            if isinstance(ref_id, str) and ref_id in labels:
                record[field.name] = {"id": ref_id, "display_label": labels[ref_id]}

    def _populate_files(self, tenant_id: str, field: Any, records: List[dict]) -> None:
        cache: Dict[str, dict | None] = {}
        for record in records:
            file_id = record.get(field.name)
            if not isinstance(file_id, str):
                continue
            if file_id not in cache:
                try:
                    cache[file_id] = self._files.get(tenant_id, file_id)
                except Exception:
                    logger.warning("populate_file_failed field=%s file_id=%s", field.name, file_id, exc_info=True)
                    cache[file_id] = None
            item = cache[file_id]
            if item:
                record[field.name] = {
                    "id": file_id,
                    "original_name": item.get("original_name"),
                    "url": item.get("url"),
                }
