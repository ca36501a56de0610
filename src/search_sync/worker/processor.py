"""Apply one change record to the search index."""

import asyncio

from search_sync.core.exceptions import SearchIndexError
from search_sync.core.logging import get_logger
from search_sync.core.models import TransformResult
from search_sync.schemas.changes import ChangeRecord
from search_sync.services.cache_invalidation import CacheServiceClient
from search_sync.services.document_transformer import DocumentTransformer
from search_sync.services.search_index import SearchIndexClient

logger = get_logger(__name__)


class ChangeProcessor:
    """Transforms a record and executes its index instructions in order."""

    def __init__(
        self,
        transformer: DocumentTransformer,
        search_index: SearchIndexClient,
        cache_client: CacheServiceClient | None = None,
        cache_timeout: float = 2.0,
    ):
        """Initialize the processor.

        Args:
            transformer: Maps records to index instructions.
            search_index: Target search index.
            cache_client: Optional client used to invalidate category counts.
            cache_timeout: Upper bound on the best-effort invalidation call.
        """
        self.transformer = transformer
        self.search_index = search_index
        self.cache_client = cache_client
        self.cache_timeout = cache_timeout

    async def apply(self, record: ChangeRecord) -> TransformResult:
        """Transform and apply a record.

        Args:
            record: Claimed change record.

        Returns:
            TransformResult: What was applied.

        Raises:
            PermanentChangeError: The record can never be applied.
            SearchIndexError: The search index rejected an instruction.
        """
        result = self.transformer.transform(record)

        if not result.instructions:
            logger.info(
                f"Record {record.id} ({record.operation.value} "
                f"{record.entity_kind}:{record.entity_id}) needs no index change"
            )

        for instruction in result.instructions:
            applied = await self.search_index.apply(instruction)
            if not applied:
                raise SearchIndexError(
                    f"{instruction.action.value} of '{instruction.document_id}' "
                    f"in '{instruction.index_name}' failed"
                )
            logger.info(
                f"Record {record.id}: {instruction.action.value} "
                f"'{instruction.document_id}' in '{instruction.index_name}'"
            )

        if result.invalidate_category_counts:
            await self._invalidate_category_counts(record)

        return result

    async def _invalidate_category_counts(self, record: ChangeRecord) -> None:
        if self.cache_client is None:
            return
        try:
            await asyncio.wait_for(
                self.cache_client.invalidate_category_counts(), timeout=self.cache_timeout
            )
        except Exception as e:
            logger.warning(f"Category counts invalidation after record {record.id} failed: {e}")
