"""Central constants shared across the change-sync pipeline."""

from typing import Final

# Publishable listing status; listings are only searchable while in this state.
LISTING_ACTIVE_STATUS: Final[str] = "active"

# Listing fields whose change shifts the per-category counts.
K_STATUS: Final[str] = "status"
K_CATEGORY: Final[str] = "category"
K_CATEGORY_ID: Final[str] = "category_id"
K_CATEGORY_PATH: Final[str] = "category_path"

# Update payload halves.
K_OLD: Final[str] = "old"
K_NEW: Final[str] = "new"

# Payload key holding the stable entity id on every indexed point.
K_DOCUMENT_ID: Final[str] = "document_id"

# Prefix used for category-suggestion document ids.
SUGGESTION_DOC_PREFIX: Final[str] = "ai_suggestions_"

# Derived-statistics cache key invalidated by listing changes.
CATEGORY_COUNTS_CACHE_KEY: Final[str] = "category_counts"

# Job type understood by the external queue service.
JOB_TYPE_SEARCH_SYNC: Final[str] = "ELASTICSEARCH_SYNC"

# Backend labels reported by the hybrid router.
BACKEND_LEGACY: Final[str] = "legacy"
BACKEND_EXTERNAL: Final[str] = "external"
