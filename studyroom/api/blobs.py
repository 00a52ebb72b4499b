"""
Local blob serving — the other half of LocalStorage's signed links.

GET /v1/blobs/{bucket}/{path}?expires=...&signature=...

Only active when FF_USE_S3 is off. 403 for a bad or expired signature,
404 when the file is gone.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from ..core.dependencies import get_storage_dep
from ..core.errors import BlobNotFoundError, StorageError, URLResolutionError
from ..core.storage import BlobStore, LocalStorage, guess_content_type

logger = logging.getLogger(__name__)

blobs_router = APIRouter(prefix="/blobs", tags=["blobs"])


@blobs_router.get("/{bucket}/{path:path}")
async def serve_blob(
    bucket: str,
    path: str,
    expires: Optional[str] = None,
    signature: Optional[str] = None,
    storage: BlobStore = Depends(get_storage_dep),
):
    if not isinstance(storage, LocalStorage):
        raise HTTPException(status_code=404, detail="Direct file serving only in local mode")

    try:
        storage.check_signature(bucket, path, expires, signature)
    except URLResolutionError as e:
        logger.info("Rejected blob link %s/%s: %s", bucket, path, e.reason)
        raise HTTPException(status_code=403, detail=f"Link {e.reason}")

    try:
        file_path = storage.open_path(bucket, path)
    except BlobNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except StorageError:
        raise HTTPException(status_code=403, detail="Invalid path")

    return FileResponse(
        file_path,
        media_type=guess_content_type(file_path.name),
        headers={"Cache-Control": "private, max-age=3600"},
    )
