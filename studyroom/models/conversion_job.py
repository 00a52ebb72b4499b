"""
Conversion jobs — one tracked conversion of a document, retries included.

`active_key` holds the document id while the job is queued/processing and is
NULL once the job is terminal. Its UNIQUE constraint is what keeps two
workers from converting the same document at once. Retries go back to
queued without releasing it; completed and failed are final.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, Text, Integer, DateTime, ForeignKey
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.errors import InvalidTransitionError
from .base import RecordBase, utcnow

if TYPE_CHECKING:
    from .document import Document


class ConversionStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (ConversionStatus.QUEUED, ConversionStatus.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


class ConversionStage(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    RENDERING = "rendering"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ConversionStatus, set[ConversionStatus]] = {
    ConversionStatus.QUEUED: {ConversionStatus.PROCESSING, ConversionStatus.FAILED},
    # processing -> queued is a retry after a failed attempt; the job keeps the document
    ConversionStatus.PROCESSING: {ConversionStatus.COMPLETED, ConversionStatus.FAILED, ConversionStatus.QUEUED},
    ConversionStatus.FAILED: set(),
    ConversionStatus.COMPLETED: set(),
}

STAGE_MESSAGES = {
    ConversionStage.QUEUED: "Waiting to start",
    ConversionStage.DOWNLOADING: "Downloading document",
    ConversionStage.RENDERING: "Rendering pages",
    ConversionStage.UPLOADING: "Saving pages",
    ConversionStage.FINALIZING: "Finishing up",
    ConversionStage.COMPLETED: "Ready",
    ConversionStage.FAILED: "Conversion failed",
}


def _enum_column(enum_cls):
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda e: [m.value for m in e],
    )


class ConversionJob(RecordBase):
    __tablename__ = "conversion_jobs"

    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[ConversionStatus] = mapped_column(
        _enum_column(ConversionStatus), nullable=False, default=ConversionStatus.QUEUED
    )
    stage: Mapped[ConversionStage] = mapped_column(
        _enum_column(ConversionStage), nullable=False, default=ConversionStage.QUEUED
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    active_key: Mapped[Optional[str]] = mapped_column(String, nullable=True, unique=True)

    document: Mapped["Document"] = relationship(back_populates="jobs")

    def transition(self, to: ConversionStatus) -> None:
        """Move to a new status, rejecting anything outside the state machine."""
        current = ConversionStatus(self.status)
        if to not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Job {self.id}: {current.value} -> {to.value} is not allowed"
            )
        self.status = to
        now = utcnow()
        if to is ConversionStatus.QUEUED:
            self.stage = ConversionStage.QUEUED
            self.active_key = self.document_id
            self.completed_at = None
            self.error_message = None
            self.progress = 0
            self.processed_pages = 0
        elif to is ConversionStatus.PROCESSING:
            self.started_at = now
            self.active_key = self.document_id
        elif to is ConversionStatus.COMPLETED:
            self.stage = ConversionStage.COMPLETED
            self.completed_at = now
            self.progress = 100
            self.processed_pages = self.total_pages
            self.active_key = None
        elif to is ConversionStatus.FAILED:
            self.stage = ConversionStage.FAILED
            self.completed_at = now
            self.active_key = None

    @property
    def message(self) -> str:
        return STAGE_MESSAGES[ConversionStage(self.stage)]
