"""Qdrant-backed search index client.

Each index is a Qdrant collection holding payload-only points. Point ids are
derived from ``(index, document_id)`` so writes are idempotent, and the stable
document id is kept in the payload under ``document_id``.

All document and index operations return ``bool`` and log failures instead of
raising, so callers decide whether a failed write is retried.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Final

from qdrant_client import AsyncQdrantClient
from qdrant_client import models as q

from search_sync.config import Settings
from search_sync.core.constants import K_CATEGORY, K_CATEGORY_ID, K_DOCUMENT_ID, K_STATUS
from search_sync.core.logging import get_logger
from search_sync.core.models import IndexAction, IndexInstruction
from search_sync.schemas.changes import EntityKind
from search_sync.services.point_ids import document_point_id

logger = get_logger(__name__)

# Payload index schema per entity kind ("mapping" in search-engine terms).
INDEX_MAPPINGS: Final[dict[EntityKind, dict[str, str]]] = {
    EntityKind.LISTING: {
        K_DOCUMENT_ID: "keyword",
        K_STATUS: "keyword",
        K_CATEGORY: "keyword",
        K_CATEGORY_ID: "keyword",
        "user_id": "keyword",
        "popularity_score": "float",
        "is_premium": "bool",
    },
    EntityKind.PROFILE: {K_DOCUMENT_ID: "keyword", "username": "keyword"},
    EntityKind.CATEGORY: {K_DOCUMENT_ID: "keyword", "slug": "keyword", "level": "integer"},
    EntityKind.CATEGORY_SUGGESTION: {
        K_DOCUMENT_ID: "keyword",
        K_CATEGORY_ID: "keyword",
        "suggestion_type": "keyword",
        "is_approved": "bool",
    },
    EntityKind.INVENTORY_ITEM: {K_DOCUMENT_ID: "keyword", "user_id": "keyword"},
}


class SearchIndexClient:
    """Index, patch and delete documents in Qdrant collections."""

    def __init__(
        self,
        settings: Settings,
        aclient: AsyncQdrantClient | None = None,
        default_index: str | None = None,
    ):
        self.settings = settings
        self.default_index = default_index or settings.listings_index

        if aclient is not None:
            self.aclient = aclient
        elif settings.qdrant_local_mode:
            self.aclient = AsyncQdrantClient(location=":memory:")
        else:
            self.aclient = AsyncQdrantClient(
                url=settings.qdrant_url,
                api_key=settings.qdrant_api_key,
                prefer_grpc=settings.qdrant_prefer_grpc,
                timeout=settings.qdrant_timeout,
            )

        logger.info("SearchIndexClient initialized (default index '%s')", self.default_index)

    async def aclose(self) -> None:
        """Close the client."""
        await self.aclient.close()

    async def ping(self) -> bool:
        """Return True if the search engine answers."""
        try:
            await self.aclient.get_collections()
            return True
        except Exception as exc:
            logger.warning("Search index ping failed: %s", exc)
            return False

    async def index_exists(self, index_name: str) -> bool:
        return await self.aclient.collection_exists(index_name)

    async def create_index(
        self,
        index_name: str,
        mapping: Mapping[str, str] | None = None,
    ) -> bool:
        """Create a payload-only collection and its payload indexes.

        Args:
            index_name: Collection to create.
            mapping: Field name to payload schema type (``keyword``, ``integer``,
                ``float``, ``bool``, ``datetime``, ``text``).

        Returns:
            bool: True if the index exists afterwards.
        """
        try:
            if await self.aclient.collection_exists(index_name):
                logger.info("Index '%s' already exists", index_name)
            else:
                await self.aclient.create_collection(
                    collection_name=index_name,
                    vectors_config={},
                    on_disk_payload=True,
                )
                logger.info("Created index '%s'", index_name)
        except Exception as exc:
            logger.error("Failed to create index '%s': %s", index_name, exc, exc_info=True)
            return False

        for field_name, schema in (mapping or {}).items():
            await self._create_payload_index(index_name, field_name, schema)
        return True

    async def _create_payload_index(self, index_name: str, field_name: str, schema: str) -> None:
        try:
            await self.aclient.create_payload_index(
                collection_name=index_name,
                field_name=field_name,
                field_schema=q.PayloadSchemaType(schema),
            )
        except Exception as exc:  # pragma: no cover
            msg = str(exc).lower()
            if "exists" in msg:
                logger.debug("Payload index '%s.%s' already exists", index_name, field_name)
            else:
                logger.warning(
                    "Failed to create payload index '%s.%s': %s", index_name, field_name, exc
                )

    async def delete_index(self, index_name: str) -> bool:
        try:
            await self.aclient.delete_collection(index_name)
            logger.info("Deleted index '%s'", index_name)
            return True
        except Exception as exc:
            logger.error("Failed to delete index '%s': %s", index_name, exc)
            return False

    async def recreate_index(
        self,
        index_name: str,
        mapping: Mapping[str, str] | None = None,
    ) -> bool:
        """Drop the index if present and create it empty."""
        try:
            exists = await self.aclient.collection_exists(index_name)
        except Exception as exc:
            logger.error("Failed to inspect index '%s': %s", index_name, exc)
            return False

        if exists and not await self.delete_index(index_name):
            return False
        return await self.create_index(index_name, mapping)

    async def ensure_indexes(self, mappings: Mapping[str, Mapping[str, str]]) -> bool:
        """Create every missing index; existing ones are left untouched."""
        results = [await self.create_index(name, mapping) for name, mapping in mappings.items()]
        return all(results)

    async def index_document(
        self,
        document_id: str,
        document: Mapping[str, Any],
        index_name: str | None = None,
    ) -> bool:
        """Insert or fully replace a document."""
        index = index_name or self.default_index
        try:
            await self.aclient.upsert(
                collection_name=index,
                points=[self._to_point(index, document_id, document)],
                wait=True,
            )
            logger.debug("Indexed document '%s' into '%s'", document_id, index)
            return True
        except Exception as exc:
            logger.error("Failed to index document '%s' into '%s': %s", document_id, index, exc)
            return False

    async def update_document(
        self,
        document_id: str,
        partial_document: Mapping[str, Any],
        index_name: str | None = None,
    ) -> bool:
        """Patch an indexed document, indexing it when it is not present yet."""
        index = index_name or self.default_index
        point_id = document_point_id(index, document_id)
        try:
            existing = await self.aclient.retrieve(
                collection_name=index,
                ids=[point_id],
                with_payload=False,
                with_vectors=False,
            )
            if not existing:
                logger.info("Document '%s' missing in '%s'; indexing instead", document_id, index)
                return await self.index_document(document_id, partial_document, index)

            await self.aclient.set_payload(
                collection_name=index,
                payload={**partial_document, K_DOCUMENT_ID: document_id},
                points=[point_id],
                wait=True,
            )
            logger.debug("Updated document '%s' in '%s'", document_id, index)
            return True
        except Exception as exc:
            logger.error("Failed to update document '%s' in '%s': %s", document_id, index, exc)
            return False

    async def delete_document(self, document_id: str, index_name: str | None = None) -> bool:
        """Delete a document; deleting an absent document succeeds."""
        index = index_name or self.default_index
        try:
            await self.aclient.delete(
                collection_name=index,
                points_selector=q.PointIdsList(points=[document_point_id(index, document_id)]),
                wait=True,
            )
            logger.debug("Deleted document '%s' from '%s'", document_id, index)
            return True
        except Exception as exc:
            logger.error("Failed to delete document '%s' from '%s': %s", document_id, index, exc)
            return False

    async def bulk_index(
        self,
        documents: Sequence[tuple[str, Mapping[str, Any]]],
        index_name: str | None = None,
    ) -> bool:
        """Upsert ``(document_id, document)`` pairs in one request."""
        if not documents:
            return True

        index = index_name or self.default_index
        try:
            await self.aclient.upsert(
                collection_name=index,
                points=[self._to_point(index, doc_id, doc) for doc_id, doc in documents],
                wait=True,
            )
            logger.info("Bulk indexed %d documents into '%s'", len(documents), index)
            return True
        except Exception as exc:
            logger.error("Bulk index of %d documents into '%s' failed: %s", len(documents), index, exc)
            return False

    async def get_document(
        self,
        document_id: str,
        index_name: str | None = None,
    ) -> dict[str, Any] | None:
        """Fetch a document payload, or None if it is not indexed."""
        index = index_name or self.default_index
        records = await self.aclient.retrieve(
            collection_name=index,
            ids=[document_point_id(index, document_id)],
            with_payload=True,
            with_vectors=False,
        )
        if not records:
            return None
        return dict(records[0].payload or {})

    async def count(self, index_name: str | None = None) -> int:
        result = await self.aclient.count(collection_name=index_name or self.default_index, exact=True)
        return result.count

    async def apply(self, instruction: IndexInstruction) -> bool:
        """Execute one transformer instruction."""
        if instruction.action is IndexAction.DELETE:
            return await self.delete_document(instruction.document_id, instruction.index_name)
        if instruction.action is IndexAction.UPDATE:
            return await self.update_document(
                instruction.document_id, instruction.document or {}, instruction.index_name
            )
        return await self.index_document(
            instruction.document_id, instruction.document or {}, instruction.index_name
        )

    @staticmethod
    def _to_point(index: str, document_id: str, document: Mapping[str, Any]) -> q.PointStruct:
        return q.PointStruct(
            id=document_point_id(index, document_id),
            payload={**document, K_DOCUMENT_ID: document_id},
            vector={},
        )


__all__ = ["INDEX_MAPPINGS", "SearchIndexClient"]
