"""
Documents — one uploaded source file. Pages and conversion jobs hang off it.
"""

from typing import TYPE_CHECKING, Optional

from sqlalchemy import String, Text, BigInteger, Integer, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import RecordBase

if TYPE_CHECKING:
    from .conversion_job import ConversionJob
    from .document_page import DocumentPage


class Document(RecordBase):
    __tablename__ = "documents"

    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=True)
    filename: Mapped[str] = mapped_column(String, nullable=False)
    content_type: Mapped[str] = mapped_column(String, nullable=False, default="application/pdf")
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    pages: Mapped[list["DocumentPage"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentPage.page_number",
    )
    jobs: Mapped[list["ConversionJob"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_pdf(self) -> bool:
        return "pdf" in (self.content_type or "").lower()
