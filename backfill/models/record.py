"""Record models for data moving through one page iteration."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime


@dataclass(frozen=True)
class FactRow:
    """One source row as read by the extractor."""
    id: int
    data: Dict[str, Any]

    def get(self, name: str, default: Any = None) -> Any:
        """Get a column value, treating a missing column like NULL."""
        value = self.data.get(name)
        return default if value is None else value

    def __getitem__(self, name: str) -> Any:
        return self.data[name]


@dataclass(frozen=True)
class DestinationRecord:
    """A transformed record ready for the sink."""
    id: Any
    data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        """Row payload as sent to the destination."""
        return dict(self.data)


@dataclass
class ErrorDetail:
    """One recorded failure: where it happened and why."""
    context: str
    message: str
    record_id: Optional[Any] = None
    error_type: str = "error"
    occurred_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "context": self.context,
            "message": self.message,
            "record_id": self.record_id,
            "error_type": self.error_type,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class WriteOutcome:
    """Result of handing one page's records to the chunked writer."""
    collection: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    chunks: int = 0
    fallback_chunks: int = 0
    errors: List[ErrorDetail] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "collection": self.collection,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "chunks": self.chunks,
            "fallback_chunks": self.fallback_chunks,
            "errors": [e.to_dict() for e in self.errors],
        }
