"""Pipeline wiring and process-wide singletons."""

from dataclasses import dataclass

from qdrant_client import AsyncQdrantClient
from supabase import AsyncClient, acreate_client

from search_sync.adapters.queue_service_client import QueueServiceClient
from search_sync.config import Settings, get_settings
from search_sync.core.logging import get_logger
from search_sync.repositories.change_record_store import SupabaseChangeRecordStore
from search_sync.repositories.corpus_source import SupabaseCorpusSource
from search_sync.services.admin import QueueAdministration
from search_sync.services.cache_invalidation import CacheServiceClient
from search_sync.services.document_transformer import DocumentTransformer
from search_sync.services.hybrid_router import HybridRouter
from search_sync.services.search_index import SearchIndexClient
from search_sync.services.sync_orchestrator import SyncOrchestrator
from search_sync.worker.processor import ChangeProcessor
from search_sync.worker.queue_worker import QueueWorker

logger = get_logger(__name__)


@dataclass
class Pipeline:
    """Every long-lived component of the sync pipeline."""

    settings: Settings
    store: SupabaseChangeRecordStore
    search_index: SearchIndexClient
    transformer: DocumentTransformer
    cache_client: CacheServiceClient
    queue_service: QueueServiceClient
    worker: QueueWorker
    router: HybridRouter
    orchestrator: SyncOrchestrator
    admin: QueueAdministration

    async def aclose(self) -> None:
        """Close every HTTP and database client."""
        await self.queue_service.aclose()
        await self.cache_client.aclose()
        await self.search_index.aclose()


async def build_pipeline(
    settings: Settings | None = None,
    supabase: AsyncClient | None = None,
    qdrant: AsyncQdrantClient | None = None,
) -> Pipeline:
    """Create and wire all pipeline components.

    Args:
        settings: Application settings; defaults to the cached settings.
        supabase: Optional pre-built Supabase client.
        qdrant: Optional pre-built Qdrant client.

    Returns:
        Pipeline: Wired components; the worker and scheduler are not started.
    """
    settings = settings or get_settings()

    if supabase is None:
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("Supabase URL and key must be set")
        supabase = await acreate_client(settings.supabase_url, settings.supabase_key)

    store = SupabaseChangeRecordStore(supabase, settings.change_queue_table)
    corpus = SupabaseCorpusSource.from_settings(supabase, settings)
    search_index = SearchIndexClient(settings, aclient=qdrant)
    transformer = DocumentTransformer.from_settings(settings)
    cache_client = CacheServiceClient.from_settings(settings)
    queue_service = QueueServiceClient.from_settings(settings)

    processor = ChangeProcessor(
        transformer,
        search_index,
        cache_client,
        cache_timeout=settings.cache_service_timeout,
    )
    worker = QueueWorker.from_settings(settings, store, processor)
    router = HybridRouter.from_settings(settings, worker, queue_service)
    orchestrator = SyncOrchestrator.from_settings(
        settings, store, search_index, transformer, corpus, worker
    )
    admin = QueueAdministration(worker, router, orchestrator)

    logger.info(f"Pipeline wired for environment '{settings.environment}'")
    return Pipeline(
        settings=settings,
        store=store,
        search_index=search_index,
        transformer=transformer,
        cache_client=cache_client,
        queue_service=queue_service,
        worker=worker,
        router=router,
        orchestrator=orchestrator,
        admin=admin,
    )


# Module-level cache for the Pipeline singleton
_pipeline_cache: Pipeline | None = None


async def get_pipeline() -> Pipeline:
    """Get or create the cached Pipeline instance."""
    global _pipeline_cache

    if _pipeline_cache is None:
        _pipeline_cache = await build_pipeline()

    return _pipeline_cache


async def close_pipeline() -> None:
    """Close and forget the cached Pipeline instance."""
    global _pipeline_cache

    if _pipeline_cache is not None:
        await _pipeline_cache.aclose()
        _pipeline_cache = None
