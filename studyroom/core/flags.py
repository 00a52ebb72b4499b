"""
Feature flags for the page service: external backends and serving behaviour.

Read from FF_* environment variables or the .env file.
S3 and Redis fall back to local disk and a no-op publisher when their flag is OFF.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureFlags(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ── Storage ──────────────────────────────────────────────────────
    use_s3: bool = Field(default=True, alias="FF_USE_S3")
    # ON  → PDFs and page images go to S3. Needs AWS creds + bucket names.
    # OFF → Files saved under LOCAL_STORAGE_PATH, served by /v1/blobs with signed links.

    # ── Realtime ─────────────────────────────────────────────────────
    use_redis: bool = Field(default=True, alias="FF_USE_REDIS")
    # ON  → Conversion progress published over Redis pub/sub. Needs REDIS_URL.
    # OFF → Events silently skipped.

    # ── Serving ──────────────────────────────────────────────────────
    validate_page_urls: bool = Field(default=True, alias="FF_VALIDATE_PAGE_URLS")
    # ON  → Page URLs are checked (HEAD / signature) before being handed out,
    #       expired links are re-signed once.
    # OFF → Stored URLs are returned as-is.

    convert_on_view: bool = Field(default=True, alias="FF_CONVERT_ON_VIEW")
    # ON  → First view of an unconverted document triggers conversion.
    # OFF → Viewer gets "document unavailable" until converted manually.

    convert_on_upload: bool = Field(default=False, alias="FF_CONVERT_ON_UPLOAD")
    # ON  → Upload endpoint converts immediately (slow uploads, instant views).
    # OFF → Conversion happens on first view or manual trigger.


@lru_cache
def get_flags() -> FeatureFlags:
    return FeatureFlags()
