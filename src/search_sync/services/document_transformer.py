"""Map change records to idempotent search-index instructions.

Every entity kind has a mapping that knows its index, its document id, the
document shape and its publishability gate. The gated state machine is shared:

- INSERT of a publishable row indexes it; otherwise nothing happens.
- UPDATE compares the gate on the old and new row images:
  published -> published patches the document, unpublished -> published
  indexes it, published -> unpublished deletes it, and anything else is a no-op.
- DELETE always removes the document; deleting a missing document succeeds.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from search_sync.config import Settings
from search_sync.core.constants import (
    K_CATEGORY,
    K_CATEGORY_ID,
    K_CATEGORY_PATH,
    K_NEW,
    K_OLD,
    K_STATUS,
    LISTING_ACTIVE_STATUS,
    SUGGESTION_DOC_PREFIX,
)
from search_sync.core.exceptions import MalformedPayload, UnknownEntityKind
from search_sync.core.logging import get_logger
from search_sync.core.models import IndexAction, IndexInstruction, TransformResult
from search_sync.schemas.changes import ChangeOperation, ChangeRecord, EntityKind

logger = get_logger(__name__)

Row = Mapping[str, Any]


class EntityMapping:
    """Base document mapping; publishable unless a subclass says otherwise."""

    kind: EntityKind

    def __init__(self, index_name: str):
        self.index_name = index_name

    def document_id(self, entity_id: str) -> str:
        return entity_id

    def is_publishable(self, row: Row) -> bool:
        return True

    def to_document(self, entity_id: str, row: Row) -> dict[str, Any]:
        return {"id": row.get("id", entity_id), **row}

    def affects_category_counts(
        self,
        operation: ChangeOperation,
        old: Row | None,
        new: Row | None,
    ) -> bool:
        return False


class ListingMapping(EntityMapping):
    kind = EntityKind.LISTING

    def is_publishable(self, row: Row) -> bool:
        return row.get(K_STATUS) == LISTING_ACTIVE_STATUS

    def to_document(self, entity_id: str, row: Row) -> dict[str, Any]:
        return {
            "id": row.get("id", entity_id),
            "title": row.get("title"),
            "description": row.get("description"),
            "category": row.get(K_CATEGORY),
            "category_id": row.get(K_CATEGORY_ID),
            "category_path": row.get(K_CATEGORY_PATH),
            "budget": row.get("budget"),
            "location": row.get("location"),
            "urgency": row.get("urgency"),
            "attributes": row.get("attributes") or {},
            "user_id": row.get("user_id"),
            "status": row.get(K_STATUS),
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
            "popularity_score": row.get("popularity_score") or 0,
            "is_premium": bool(row.get("is_premium")),
            "tags": row.get("tags") or [],
        }

    def affects_category_counts(
        self,
        operation: ChangeOperation,
        old: Row | None,
        new: Row | None,
    ) -> bool:
        if operation is ChangeOperation.DELETE:
            return True
        if operation is ChangeOperation.INSERT:
            return new is not None and self.is_publishable(new)
        if old is None or new is None:
            return False
        return any(
            old.get(key) != new.get(key)
            for key in (K_STATUS, K_CATEGORY, K_CATEGORY_ID, K_CATEGORY_PATH)
        )


class ProfileMapping(EntityMapping):
    kind = EntityKind.PROFILE

    def to_document(self, entity_id: str, row: Row) -> dict[str, Any]:
        # Contact details stay out of the public index.
        return {
            "id": row.get("id", entity_id),
            "username": row.get("username"),
            "name": row.get("name") or row.get("full_name"),
            "avatar_url": row.get("avatar_url"),
            "bio": row.get("bio"),
            "province": row.get("province"),
            "district": row.get("district"),
            "trust_score": row.get("trust_score") or 0,
            "is_premium": bool(row.get("is_premium")),
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
        }


class CategoryMapping(EntityMapping):
    kind = EntityKind.CATEGORY

    def is_publishable(self, row: Row) -> bool:
        return row.get("is_active") is not False

    def to_document(self, entity_id: str, row: Row) -> dict[str, Any]:
        return {
            "id": row.get("id", entity_id),
            "name": row.get("name"),
            "slug": row.get("slug"),
            "parent_id": row.get("parent_id"),
            "level": row.get("level"),
            "path": row.get("path"),
            "sort_order": row.get("sort_order"),
            "icon": row.get("icon"),
            "attributes": row.get("attributes") or [],
            "is_active": row.get("is_active", True),
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
        }


class CategorySuggestionMapping(EntityMapping):
    kind = EntityKind.CATEGORY_SUGGESTION

    def document_id(self, entity_id: str) -> str:
        return f"{SUGGESTION_DOC_PREFIX}{entity_id}"

    def is_publishable(self, row: Row) -> bool:
        return bool(row.get("is_approved"))

    def to_document(self, entity_id: str, row: Row) -> dict[str, Any]:
        suggestion_data = dict(row.get("suggestion_data") or {})
        if "suggestions" in suggestion_data:
            suggestion_data["keywords"] = suggestion_data.pop("suggestions")

        return {
            "id": row.get("id", entity_id),
            "category_id": row.get("category_id"),
            "category_name": row.get("category_name"),
            "category_path": row.get("category_path"),
            "suggestion_type": row.get("suggestion_type"),
            "suggestion_data": suggestion_data,
            "confidence_score": row.get("confidence_score"),
            "is_approved": bool(row.get("is_approved")),
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
            "search_boost": row.get("search_boost") or 1.0,
            "usage_count": row.get("usage_count") or 0,
            "last_used_at": row.get("last_used_at"),
        }


class InventoryItemMapping(EntityMapping):
    kind = EntityKind.INVENTORY_ITEM

    def to_document(self, entity_id: str, row: Row) -> dict[str, Any]:
        return {
            "id": row.get("id", entity_id),
            "user_id": row.get("user_id"),
            "name": row.get("name"),
            "category": row.get(K_CATEGORY),
            "description": row.get("description"),
            "condition": row.get("condition"),
            "main_image_url": row.get("main_image_url"),
            "additional_image_urls": row.get("additional_image_urls") or [],
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
        }


class DocumentTransformer:
    """Pure mapping from change records to search-index instructions."""

    def __init__(self, index_names: Mapping[EntityKind, str]):
        mappings: list[EntityMapping] = [
            ListingMapping(index_names[EntityKind.LISTING]),
            ProfileMapping(index_names[EntityKind.PROFILE]),
            CategoryMapping(index_names[EntityKind.CATEGORY]),
            CategorySuggestionMapping(index_names[EntityKind.CATEGORY_SUGGESTION]),
            InventoryItemMapping(index_names[EntityKind.INVENTORY_ITEM]),
        ]
        self._mappings: dict[EntityKind, EntityMapping] = {m.kind: m for m in mappings}

        missing = set(EntityKind) - set(self._mappings)
        if missing:
            raise RuntimeError(f"No document mapping for: {sorted(k.value for k in missing)}")

    @classmethod
    def from_settings(cls, settings: Settings) -> DocumentTransformer:
        return cls(
            {
                EntityKind.LISTING: settings.listings_index,
                EntityKind.PROFILE: settings.profiles_index,
                EntityKind.CATEGORY: settings.categories_index,
                EntityKind.CATEGORY_SUGGESTION: settings.category_suggestions_index,
                EntityKind.INVENTORY_ITEM: settings.inventory_index,
            }
        )

    @property
    def index_names(self) -> dict[EntityKind, str]:
        return {kind: mapping.index_name for kind, mapping in self._mappings.items()}

    def mapping_for(self, entity_kind: str | EntityKind) -> EntityMapping:
        """Resolve a raw table name to its mapping.

        Raises:
            UnknownEntityKind: If no mapping exists for the kind.
        """
        try:
            kind = EntityKind(entity_kind)
        except ValueError:
            raise UnknownEntityKind(str(entity_kind)) from None
        return self._mappings[kind]

    def transform(self, record: ChangeRecord) -> TransformResult:
        """Compute the index instructions for one change record.

        Args:
            record: The change record to transform.

        Returns:
            TransformResult: Zero or more instructions and derived side effects.

        Raises:
            UnknownEntityKind: The record's entity kind has no mapping.
            MalformedPayload: The payload shape does not fit the operation.
        """
        mapping = self.mapping_for(record.entity_kind)
        entity_id = record.entity_id
        payload = record.payload
        doc_id = mapping.document_id(entity_id)

        if record.operation is ChangeOperation.DELETE:
            old = payload if payload else None
            return TransformResult(
                instructions=(IndexInstruction(IndexAction.DELETE, mapping.index_name, doc_id),),
                invalidate_category_counts=mapping.affects_category_counts(
                    record.operation, old, None
                ),
            )

        if record.operation is ChangeOperation.INSERT:
            if not payload:
                raise MalformedPayload(f"INSERT payload for {record.entity_kind}:{entity_id} is empty")
            new = payload
            instructions: tuple[IndexInstruction, ...] = ()
            if mapping.is_publishable(new):
                instructions = (
                    IndexInstruction(
                        IndexAction.INDEX,
                        mapping.index_name,
                        doc_id,
                        mapping.to_document(entity_id, new),
                    ),
                )
            return TransformResult(
                instructions=instructions,
                invalidate_category_counts=mapping.affects_category_counts(
                    record.operation, None, new
                ),
            )

        old, new = _split_update(payload, record)
        was_published = mapping.is_publishable(old)
        is_published = mapping.is_publishable(new)

        if was_published and is_published:
            action: IndexAction | None = IndexAction.UPDATE
        elif is_published:
            action = IndexAction.INDEX
        elif was_published:
            action = IndexAction.DELETE
        else:
            action = None

        if action is None:
            instructions = ()
        elif action is IndexAction.DELETE:
            instructions = (IndexInstruction(action, mapping.index_name, doc_id),)
        else:
            instructions = (
                IndexInstruction(
                    action, mapping.index_name, doc_id, mapping.to_document(entity_id, new)
                ),
            )

        logger.debug(
            "Transformed %s %s:%s -> %s",
            record.operation.value,
            record.entity_kind,
            entity_id,
            action.value if action else "no-op",
        )
        return TransformResult(
            instructions=instructions,
            invalidate_category_counts=mapping.affects_category_counts(record.operation, old, new),
        )

    def snapshot(self, entity_kind: str | EntityKind, row: Row) -> IndexInstruction | None:
        """Build an INDEX instruction for a full-resync row, or None if unpublishable."""
        mapping = self.mapping_for(entity_kind)
        if "id" not in row:
            raise MalformedPayload(f"{mapping.kind.value} row has no id")
        if not mapping.is_publishable(row):
            return None
        entity_id = str(row["id"])
        return IndexInstruction(
            IndexAction.INDEX,
            mapping.index_name,
            mapping.document_id(entity_id),
            mapping.to_document(entity_id, row),
        )


def _split_update(payload: Row, record: ChangeRecord) -> tuple[Row, Row]:
    old = payload.get(K_OLD)
    new = payload.get(K_NEW)
    if not isinstance(old, Mapping) or not isinstance(new, Mapping):
        raise MalformedPayload(
            f"UPDATE payload for {record.entity_kind}:{record.entity_id} "
            f"must carry '{K_OLD}' and '{K_NEW}' row images"
        )
    return old, new
