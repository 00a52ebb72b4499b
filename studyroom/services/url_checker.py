"""
Page URL checks before a link is handed to a viewer.

Local signed links are verified in-process (signature, expiry, file exists).
Anything else gets an HTTP HEAD. Failures are mapped to URLResolutionError
reasons so the resolver can decide whether a fresh signature will help.
"""

import logging
from typing import Optional

import httpx

from ..core.errors import URLResolutionError
from ..core.storage import BlobStore

logger = logging.getLogger(__name__)

# Query parameters that mark a URL as signed (S3 presigned or local HMAC)
_SIGNATURE_PARAMS = ("x-amz-signature", "signature=", "x-amz-expires", "expires=")


def _looks_signed(url: str) -> bool:
    lowered = url.lower()
    return any(p in lowered for p in _SIGNATURE_PARAMS)


class UrlChecker:
    def __init__(
        self,
        storage: BlobStore,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def check(self, url: str) -> None:
        """Raise URLResolutionError unless the URL currently serves content."""
        if self.storage.owns_url(url):
            await self.storage.verify_url(url)
            return

        if not url.startswith(("http://", "https://")):
            raise URLResolutionError(URLResolutionError.NOT_FOUND, url=url, detail="not an absolute URL")

        try:
            response = await self._get_client().head(url)
        except httpx.HTTPError as e:
            logger.warning("HEAD %s failed: %s", url.split("?")[0], e)
            raise URLResolutionError(URLResolutionError.UNREACHABLE, url=url, detail=str(e)) from e

        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            # S3 answers 403 for an expired presigned link
            reason = URLResolutionError.EXPIRED if _looks_signed(url) else URLResolutionError.FORBIDDEN
            raise URLResolutionError(reason, url=url, detail=f"HTTP {status}")
        if status == 404:
            raise URLResolutionError(URLResolutionError.NOT_FOUND, url=url, detail="HTTP 404")
        if status == 410:
            raise URLResolutionError(URLResolutionError.EXPIRED, url=url, detail="HTTP 410")
        raise URLResolutionError(URLResolutionError.UNREACHABLE, url=url, detail=f"HTTP {status}")
