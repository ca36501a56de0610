"""Domain models describing what a change does to the search index."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class IndexAction(str, Enum):
    """Search index operation emitted by the document transformer."""

    INDEX = "index"  # full upsert (insert-equivalent)
    UPDATE = "update"  # field patch of an already indexed document
    DELETE = "delete"


@dataclass(frozen=True)
class IndexInstruction:
    """A single idempotent search-index operation keyed by a stable document id."""

    action: IndexAction
    index_name: str
    document_id: str
    document: dict[str, Any] | None = None


@dataclass(frozen=True)
class TransformResult:
    """Instructions produced for one change record, plus derived side effects."""

    instructions: tuple[IndexInstruction, ...] = field(default_factory=tuple)
    invalidate_category_counts: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.instructions and not self.invalidate_category_counts
