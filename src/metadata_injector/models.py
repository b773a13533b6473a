"""Data types shared across the intake queue, the requester and the batch runner."""

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict


class GeneratedMetadata(BaseModel):
    """Schema for structured generation results."""

    model_config = ConfigDict(extra="ignore")

    title: str
    description: str
    keywords: list[str]


class ItemStatus(StrEnum):
    """Lifecycle of a queued image: pending -> processing -> completed | error."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def label(self) -> str:
        """Human readable label shown next to each item."""
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    ItemStatus.PENDING: "Pending",
    ItemStatus.PROCESSING: "Processing...",
    ItemStatus.COMPLETED: "Completed",
    ItemStatus.ERROR: "Error",
}


class BatchStatus(StrEnum):
    """State of the batch as a whole, independent from per-item status."""

    IDLE = "idle"
    PROCESSING = "processing"
    DONE = "done"


@dataclass(eq=False)
class QueueItem:
    """
    One uploaded image and its processing state.

    Status changes go through the ``mark_*`` methods so that ``metadata`` is only set on
    completed items, ``error_message`` only on failed ones, and neither while pending or
    processing.
    """

    id: int
    path: Path
    media_type: str
    status: ItemStatus = ItemStatus.PENDING
    metadata: GeneratedMetadata | None = None
    error_message: str | None = None

    @property
    def name(self) -> str:
        return self.path.name

    def mark_processing(self) -> None:
        self.status = ItemStatus.PROCESSING
        self.metadata = None
        self.error_message = None

    def mark_completed(self, metadata: GeneratedMetadata) -> None:
        self.status = ItemStatus.COMPLETED
        self.metadata = metadata
        self.error_message = None

    def mark_error(self, message: str) -> None:
        self.status = ItemStatus.ERROR
        self.metadata = None
        self.error_message = message

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize the item for JSON output.

        Examples:
            >>> QueueItem(1, Path("a.jpg"), "image/jpeg").to_dict()["status"]
            'pending'

        """
        return {
            "id": self.id,
            "file": self.name,
            "status": self.status.value,
            "metadata": self.metadata.model_dump() if self.metadata else None,
            "error": self.error_message,
        }


@dataclass
class BatchSummary:
    total: int
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    seconds: float = 0.0
    failed_files: list[str] = field(default_factory=list)
