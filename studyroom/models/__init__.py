"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import RecordBase
from .document import Document
from .conversion_job import ConversionJob, ConversionStatus, ConversionStage
from .document_page import DocumentPage

__all__ = [
    "RecordBase",
    "Document",
    "ConversionJob", "ConversionStatus", "ConversionStage",
    "DocumentPage",
]
