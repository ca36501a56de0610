"""Paginated reads of the system-of-record tables for full resync."""

from collections.abc import AsyncIterator, Mapping
from typing import Any, Final, Protocol

from supabase import AsyncClient

from search_sync.config import Settings
from search_sync.core.constants import K_STATUS, LISTING_ACTIVE_STATUS
from search_sync.core.logging import get_logger
from search_sync.schemas.changes import EntityKind

logger = get_logger(__name__)

# Server-side pre-filter; the document transformer still applies its own gate.
PUBLISHABLE_FILTERS: Final[dict[EntityKind, dict[str, Any]]] = {
    EntityKind.LISTING: {K_STATUS: LISTING_ACTIVE_STATUS},
    EntityKind.CATEGORY_SUGGESTION: {"is_approved": True},
}


class CorpusSource(Protocol):
    """Source of full entity rows used to rebuild an index."""

    def iter_pages(self, kind: EntityKind, page_size: int) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield rows of ``kind`` in pages of at most ``page_size``."""
        ...


class SupabaseCorpusSource:
    """Reads entity tables page by page via ``range()``."""

    def __init__(self, async_client: AsyncClient, table_names: Mapping[EntityKind, str]):
        self.client = async_client
        self.table_names = dict(table_names)

    @classmethod
    def from_settings(cls, async_client: AsyncClient, settings: Settings) -> "SupabaseCorpusSource":
        tables = {kind: kind.value for kind in EntityKind}
        tables[EntityKind.LISTING] = settings.listings_table
        tables[EntityKind.CATEGORY_SUGGESTION] = settings.category_suggestions_table
        return cls(async_client, tables)

    async def iter_pages(
        self, kind: EntityKind, page_size: int
    ) -> AsyncIterator[list[dict[str, Any]]]:
        table = self.table_names[kind]
        start = 0
        fetched = 0

        while True:
            query = self.client.table(table).select("*")
            for column, value in PUBLISHABLE_FILTERS.get(kind, {}).items():
                query = query.eq(column, value)
            response = await query.order("id").range(start, start + page_size - 1).execute()

            if not response.data:
                break

            fetched += len(response.data)
            logger.info(f"Fetched {fetched:,} rows from '{table}' so far...")
            yield list(response.data)

            # Short page means this was the last one
            if len(response.data) < page_size:
                break

            start += page_size
