"""Content store adapter for raw file blobs.

Talks to a Supabase-Storage compatible REST API. Blobs are keyed
``{project_id}/{sha}/{filename}``, so identical content maps to the same key
and uploads are idempotent.
"""

import logging
import posixpath

import httpx

from docsync.config import get_settings
from docsync.core.retry import is_retryable_http_error, with_backoff

logger = logging.getLogger(__name__)
settings = get_settings()


def storage_path(project_id: str, sha: str, file_path: str) -> str:
    """Build the object key for a file version."""
    filename = posixpath.basename(file_path) or file_path
    return f"{project_id}/{sha}/{filename}"


class ContentStore:
    """Put/get/delete blobs in a single bucket."""

    def __init__(
        self,
        base_url: str | None = None,
        service_key: str | None = None,
        bucket: str | None = None,
        client: httpx.AsyncClient | None = None,
        attempts: int | None = None,
        base_delay: float | None = None,
    ):
        self.base_url = (base_url or settings.storage_url).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.storage_service_key
        self.bucket = bucket or settings.storage_bucket
        self.attempts = attempts or settings.retry_attempts
        self.base_delay = settings.retry_base_delay if base_delay is None else base_delay
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {"apikey": self.service_key}
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"
        headers.update(extra)
        return headers

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        async def send() -> httpx.Response:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
            response.raise_for_status()
            return response

        return await with_backoff(
            send,
            attempts=self.attempts,
            base_delay=self.base_delay,
            retry_if=is_retryable_http_error,
            description=f"storage {method} {path}",
        )

    async def ensure_bucket(self) -> bool:
        """Create the bucket if missing. Returns False when storage is unusable."""
        try:
            response = await self._send("GET", "/storage/v1/bucket", headers=self._headers())
            names = {bucket.get("name") for bucket in response.json()}
            if self.bucket in names:
                return True

            await self._send(
                "POST",
                "/storage/v1/bucket",
                headers=self._headers(),
                json={
                    "id": self.bucket,
                    "name": self.bucket,
                    "public": False,
                    "file_size_limit": settings.storage_max_file_bytes,
                    "allowed_mime_types": ["text/markdown", "text/plain"],
                },
            )
            logger.info(f"Created storage bucket: {self.bucket}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Storage bucket check failed for {self.bucket}: {e}")
            return False

    async def put(self, project_id: str, sha: str, file_path: str, content: str) -> str | None:
        """Upload a file version and return its key, or None if the upload failed.

        Upload failures do not fail the file sync; the version is recorded
        without a blob location.
        """
        key = storage_path(project_id, sha, file_path)
        try:
            await self._send(
                "POST",
                f"/storage/v1/object/{self.bucket}/{key}",
                headers=self._headers(**{"Content-Type": "text/markdown", "x-upsert": "true"}),
                content=content.encode("utf-8"),
            )
        except httpx.HTTPError as e:
            logger.error(f"Upload failed for {key}: {e}")
            return None
        return key

    async def get(self, key: str) -> str | None:
        try:
            response = await self._send(
                "GET", f"/storage/v1/object/{self.bucket}/{key}", headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error(f"Download failed for {key}: {e}")
            return None
        return response.text

    async def delete(self, key: str) -> bool:
        """Remove a blob. Best-effort: failures are logged and reported as False."""
        try:
            await self._send(
                "DELETE",
                f"/storage/v1/object/{self.bucket}",
                headers=self._headers(),
                json={"prefixes": [key]},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Delete failed for {key}: {e}")
            return False
        return True
