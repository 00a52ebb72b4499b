"""
Blob storage abstraction. S3 OR local filesystem. Controlled by FF_USE_S3 flag.

Paths are bucket-relative ("{user_id}/{document_id}/page-3.jpg").
Local storage issues HMAC-signed links served by /v1/blobs so that
signed-URL expiry behaves the same in dev as on S3.
"""

import asyncio
import hashlib
import hmac
import logging
import mimetypes
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, quote, unquote, urlsplit

from .config import Settings
from .errors import BlobNotFoundError, StorageError, URLResolutionError
from .flags import FeatureFlags

logger = logging.getLogger(__name__)


@dataclass
class BlobInfo:
    name: str
    size: int


class BlobStore(ABC):
    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: str, bucket: str) -> str:
        """Upload bytes. Returns the public URL/path of the stored object."""
        ...

    @abstractmethod
    async def download(self, path: str, bucket: str) -> bytes:
        """Download an object. Raises BlobNotFoundError if missing."""
        ...

    @abstractmethod
    async def get_signed_url(self, path: str, ttl_seconds: int, bucket: str) -> str:
        """Issue a time-limited URL granting read access."""
        ...

    @abstractmethod
    async def get_public_url(self, path: str, bucket: str) -> str:
        ...

    @abstractmethod
    async def list(self, prefix: str, bucket: str) -> list[BlobInfo]:
        """List objects under a prefix. Listing may lag behind uploads."""
        ...

    @abstractmethod
    async def delete_prefix(self, prefix: str, bucket: str) -> int:
        """Delete every object under a prefix. Returns how many were removed."""
        ...

    def owns_url(self, url: str) -> bool:
        """True if this backend can verify the URL without an HTTP round-trip."""
        return False

    async def verify_url(self, url: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class S3Storage(BlobStore):
    def __init__(self, settings: Settings):
        self.settings = settings
        self._client = None

    def _get_client(self):
        if self._client is None:
            import boto3

            kwargs = {"region_name": self.settings.aws_region}
            if self.settings.aws_access_key_id:
                kwargs["aws_access_key_id"] = self.settings.aws_access_key_id
                kwargs["aws_secret_access_key"] = self.settings.aws_secret_access_key
            if self.settings.s3_endpoint_url:
                kwargs["endpoint_url"] = self.settings.s3_endpoint_url
            self._client = boto3.client("s3", **kwargs)
        return self._client

    async def upload(self, path: str, data: bytes, content_type: str, bucket: str) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        client = self._get_client()
        try:
            await asyncio.to_thread(
                client.put_object,
                Bucket=bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl="max-age=604800",
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload failed for {bucket}/{path}: {e}") from e

        logger.info("Uploaded to S3: %s/%s (%d bytes)", bucket, path, len(data))
        return await self.get_public_url(path, bucket)

    async def download(self, path: str, bucket: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError

        client = self._get_client()
        try:
            resp = await asyncio.to_thread(client.get_object, Bucket=bucket, Key=path)
            return await asyncio.to_thread(resp["Body"].read)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise BlobNotFoundError(f"S3 object not found: {bucket}/{path}") from e
            raise StorageError(f"S3 download failed for {bucket}/{path}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed for {bucket}/{path}: {e}") from e

    async def get_signed_url(self, path: str, ttl_seconds: int, bucket: str) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        client = self._get_client()
        try:
            return await asyncio.to_thread(
                client.generate_presigned_url,
                "get_object",
                Params={"Bucket": bucket, "Key": path},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Could not sign {bucket}/{path}: {e}") from e

    async def get_public_url(self, path: str, bucket: str) -> str:
        if self.settings.s3_endpoint_url:
            return f"{self.settings.s3_endpoint_url.rstrip('/')}/{bucket}/{path}"
        return f"https://{bucket}.s3.{self.settings.aws_region}.amazonaws.com/{path}"

    async def list(self, prefix: str, bucket: str) -> list[BlobInfo]:
        from botocore.exceptions import BotoCoreError, ClientError

        def _list() -> list[BlobInfo]:
            paginator = self._get_client().get_paginator("list_objects_v2")
            items = []
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    items.append(BlobInfo(name=obj["Key"][len(prefix):].lstrip("/"), size=obj["Size"]))
            return items

        try:
            return await asyncio.to_thread(_list)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 list failed for {bucket}/{prefix}: {e}") from e

    async def delete_prefix(self, prefix: str, bucket: str) -> int:
        from botocore.exceptions import BotoCoreError, ClientError

        items = await self.list(prefix, bucket)
        if not items:
            return 0
        keys = [{"Key": f"{prefix.rstrip('/')}/{item.name}"} for item in items]
        client = self._get_client()
        try:
            # delete_objects accepts at most 1000 keys per call
            for i in range(0, len(keys), 1000):
                await asyncio.to_thread(
                    client.delete_objects,
                    Bucket=bucket,
                    Delete={"Objects": keys[i:i + 1000], "Quiet": True},
                )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 delete failed for {bucket}/{prefix}: {e}") from e
        logger.info("Deleted %d objects from S3: %s/%s", len(keys), bucket, prefix)
        return len(keys)


class LocalStorage(BlobStore):
    URL_PREFIX = "/v1/blobs"

    def __init__(self, settings: Settings, base_path: Optional[str] = None):
        self.base_path = Path(base_path or settings.local_storage_path)
        self.secret = settings.url_signing_secret.encode("utf-8")
        self.public_base_url = settings.public_base_url.rstrip("/")

    def _resolve(self, path: str, bucket: str) -> Path:
        root = (self.base_path / bucket).resolve()
        target = (root / path).resolve()
        if root != target and root not in target.parents:
            raise StorageError(f"Path escapes bucket: {path}")
        return target

    async def upload(self, path: str, data: bytes, content_type: str, bucket: str) -> str:
        file_path = self._resolve(path, bucket)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(file_path.write_bytes, data)
        logger.info("Saved locally: %s (%d bytes)", file_path, len(data))
        return await self.get_public_url(path, bucket)

    async def download(self, path: str, bucket: str) -> bytes:
        file_path = self._resolve(path, bucket)
        if not file_path.is_file():
            raise BlobNotFoundError(f"Local blob not found: {bucket}/{path}")
        return await asyncio.to_thread(file_path.read_bytes)

    def _sign(self, bucket: str, path: str, expires: int) -> str:
        message = f"{bucket}/{path}:{expires}".encode("utf-8")
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    async def get_signed_url(self, path: str, ttl_seconds: int, bucket: str) -> str:
        expires = int(time.time()) + ttl_seconds
        signature = self._sign(bucket, path, expires)
        return (
            f"{self.public_base_url}{self.URL_PREFIX}/{bucket}/{quote(path)}"
            f"?expires={expires}&signature={signature}"
        )

    async def get_public_url(self, path: str, bucket: str) -> str:
        return f"{self.public_base_url}{self.URL_PREFIX}/{bucket}/{quote(path)}"

    async def list(self, prefix: str, bucket: str) -> list[BlobInfo]:
        dir_path = self._resolve(prefix, bucket)
        if not dir_path.is_dir():
            return []
        return [
            BlobInfo(name=str(p.relative_to(dir_path)), size=p.stat().st_size)
            for p in sorted(dir_path.rglob("*"))
            if p.is_file()
        ]

    async def delete_prefix(self, prefix: str, bucket: str) -> int:
        dir_path = self._resolve(prefix, bucket)
        if not dir_path.is_dir():
            return 0
        count = sum(1 for p in dir_path.rglob("*") if p.is_file())
        await asyncio.to_thread(shutil.rmtree, dir_path)
        logger.info("Deleted %d local blobs under %s", count, dir_path)
        return count

    # ── Signed link verification ─────────────────────────────────────

    def owns_url(self, url: str) -> bool:
        path = urlsplit(url).path
        if url.startswith(("http://", "https://")):
            if not self.public_base_url or not url.startswith(self.public_base_url):
                return False
        return path.startswith(self.URL_PREFIX + "/")

    def check_signature(
        self, bucket: str, path: str, expires: Optional[str], signature: Optional[str]
    ) -> None:
        """Raise URLResolutionError if a signed link is tampered with or expired."""
        if not expires or not signature:
            raise URLResolutionError(URLResolutionError.FORBIDDEN, detail="missing signature")
        try:
            expires_at = int(expires)
        except ValueError:
            raise URLResolutionError(URLResolutionError.FORBIDDEN, detail="malformed expiry")
        expected = self._sign(bucket, path, expires_at)
        if not hmac.compare_digest(expected, signature):
            raise URLResolutionError(URLResolutionError.FORBIDDEN, detail="bad signature")
        if expires_at < int(time.time()):
            raise URLResolutionError(URLResolutionError.EXPIRED, detail=f"{bucket}/{path}")

    def parse_url(self, url: str) -> tuple[str, str, dict[str, str]]:
        """Split a local blob URL into (bucket, path, query)."""
        parts = urlsplit(url)
        rest = unquote(parts.path[len(self.URL_PREFIX) + 1:])
        bucket, _, path = rest.partition("/")
        query = {k: v[0] for k, v in parse_qs(parts.query).items()}
        return bucket, path, query

    async def verify_url(self, url: str) -> None:
        bucket, path, query = self.parse_url(url)
        self.check_signature(bucket, path, query.get("expires"), query.get("signature"))
        try:
            file_path = self._resolve(path, bucket)
        except StorageError:
            raise URLResolutionError(URLResolutionError.FORBIDDEN, url=url)
        if not file_path.is_file():
            raise URLResolutionError(URLResolutionError.NOT_FOUND, url=url)

    def open_path(self, bucket: str, path: str) -> Path:
        """Filesystem path of a stored blob, for direct serving."""
        file_path = self._resolve(path, bucket)
        if not file_path.is_file():
            raise BlobNotFoundError(f"Local blob not found: {bucket}/{path}")
        return file_path


def create_storage(settings: Settings, flags: FeatureFlags) -> BlobStore:
    """Return the active storage backend based on feature flags."""
    if flags.use_s3:
        return S3Storage(settings)
    return LocalStorage(settings)


def guess_content_type(filename: str) -> str:
    ct, _ = mimetypes.guess_type(filename)
    return ct or "application/octet-stream"
