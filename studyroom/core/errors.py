"""
Error taxonomy for the page pipeline.

Every error maps to one of three user-facing states. The HTTP layer only ever
shows `public_message`; the detailed message goes to the logs.
"""

from enum import Enum
from typing import Optional


class UserState(str, Enum):
    PROCESSING = "processing"
    RETRY = "unavailable_retry"
    CONTACT_SUPPORT = "unavailable_contact_support"


class PageServiceError(Exception):
    code = "internal_error"
    status_code = 500
    user_state = UserState.CONTACT_SUPPORT
    public_message = "Something went wrong. Please contact support."

    def __init__(self, message: str = ""):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class NotFoundError(PageServiceError):
    code = "not_found"
    status_code = 404
    public_message = "The requested document or page does not exist."


class InvalidFormatError(PageServiceError):
    code = "invalid_format"
    status_code = 422
    public_message = "This file is not a readable PDF."


class ConversionFailedError(PageServiceError):
    code = "conversion_failed"
    status_code = 502
    user_state = UserState.RETRY
    public_message = "The document could not be prepared for viewing. Please try again."

    def __init__(self, last_error: str, attempts: int = 1):
        super().__init__(f"Conversion failed after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class BlankPageDetectedError(PageServiceError):
    """Non-fatal. Raised internally so suspicious pages get one more render."""

    code = "blank_page"
    status_code = 502
    user_state = UserState.RETRY
    public_message = "Some pages did not render correctly. Please try again."

    def __init__(self, page_numbers: list[int], threshold: int):
        super().__init__(
            f"Pages {page_numbers} rendered below {threshold} bytes (likely blank)"
        )
        self.page_numbers = page_numbers
        self.threshold = threshold


class URLResolutionError(PageServiceError):
    """Page data exists but its URL is not currently servable."""

    code = "url_unavailable"
    status_code = 502
    user_state = UserState.RETRY
    public_message = "The page link is temporarily unavailable. Please try again."

    EXPIRED = "expired"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    UNREACHABLE = "unreachable"

    def __init__(self, reason: str, url: str = "", detail: str = ""):
        super().__init__(f"URL {reason}: {detail or url}")
        self.reason = reason
        self.url = url


class ConversionTimeoutError(PageServiceError, TimeoutError):
    code = "conversion_timeout"
    status_code = 504
    user_state = UserState.RETRY
    public_message = "Preparing this document took too long. Please try again."


class ConversionInProgressError(PageServiceError):
    code = "processing"
    status_code = 202
    user_state = UserState.PROCESSING
    public_message = "This document is still being prepared."

    def __init__(self, document_id: str, progress: int = 0, job_id: Optional[str] = None):
        super().__init__(f"Document {document_id} is being converted ({progress}%)")
        self.document_id = document_id
        self.progress = progress
        self.job_id = job_id


class DocumentUnavailableError(PageServiceError):
    code = "document_unavailable"
    status_code = 502
    user_state = UserState.RETRY
    public_message = "This document is unavailable right now. Please try again later."


class InvalidTransitionError(PageServiceError):
    code = "invalid_transition"


class StorageError(PageServiceError):
    code = "storage_error"
    status_code = 502
    user_state = UserState.RETRY
    public_message = "File storage is temporarily unavailable. Please try again."


class BlobNotFoundError(StorageError):
    code = "blob_not_found"
    status_code = 404
    user_state = UserState.CONTACT_SUPPORT
