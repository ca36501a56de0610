"""Deterministic Qdrant point ids for search documents.

Qdrant only accepts unsigned integers or UUIDs as point ids, so stable
document ids (``"42"``, ``"ai_suggestions_7"``) are hashed into UUIDv5 values
scoped by index name. Re-applying a change always targets the same point.
"""

import uuid

# Fixed namespace; changing it orphans every indexed point.
NAMESPACE_UUID = uuid.UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")


def document_point_id(index_name: str, document_id: str) -> str:
    """Return the point id for a document in an index.

    Args:
        index_name: Search index (Qdrant collection) name.
        document_id: Stable document id produced by the document transformer.

    Returns:
        A UUID string accepted by Qdrant.
    """
    return str(uuid.uuid5(NAMESPACE_UUID, f"{index_name}:{document_id}"))
