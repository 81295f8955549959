"""Product image storage in a Cloud Storage bucket."""
import httpx
import logging
import re
import time
from typing import Dict, Optional
from urllib.parse import quote, unquote

from errors import StorageError
from monitoring import storage_failures_counter

logger = logging.getLogger(__name__)


def sanitize_filename(filename: str) -> str:
    """Replace runs of whitespace with underscores."""
    return re.sub(r"\s+", "_", filename or "image")


class BlobStorageClient:
    """Client for the Cloud Storage JSON API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        bucket: str,
        api_url: str,
        public_url: str,
        token: Optional[str] = None,
        prefix: str = "products"
    ):
        """
        Initialize storage client.

        Args:
            http_client: Async HTTP client shared by the process
            bucket: Bucket name
            api_url: Base URL of the JSON API
            public_url: Base URL objects are publicly served from
            token: OAuth bearer token, if the bucket requires one
            prefix: Object name prefix for product images
        """
        self.http_client = http_client
        self.bucket = bucket
        self.api_url = api_url.rstrip("/")
        self.public_url = public_url.rstrip("/")
        self.token = token
        self.prefix = prefix

    def _headers(self, content_type: Optional[str] = None) -> Dict[str, str]:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def object_name_for(self, filename: str) -> str:
        """Collision-resistant object name: epoch millis plus the sanitized name."""
        return f"{self.prefix}/{int(time.time() * 1000)}_{sanitize_filename(filename)}"

    def public_url_for(self, object_name: str) -> str:
        return f"{self.public_url}/{self.bucket}/{quote(object_name)}"

    def object_name_from_url(self, url: str) -> Optional[str]:
        """Recover the object name of an image URL, or None for foreign URLs."""
        base = f"{self.public_url}/{self.bucket}/"
        if not url or not url.startswith(base):
            return None
        object_name = unquote(url[len(base):].split("?")[0].split("#")[0])
        if not object_name.startswith(f"{self.prefix}/") or object_name == f"{self.prefix}/":
            return None
        return object_name

    async def upload(self, data: bytes, filename: str, content_type: Optional[str]) -> str:
        """
        Upload an image and make it publicly readable.

        Args:
            data: Image bytes
            filename: Original file name
            content_type: MIME type reported by the client

        Returns:
            Public URL of the stored object

        Raises:
            StorageError: If the upload fails
        """
        object_name = self.object_name_for(filename)
        try:
            response = await self.http_client.post(
                f"{self.api_url}/upload/storage/v1/b/{self.bucket}/o",
                params={
                    "uploadType": "media",
                    "name": object_name,
                    "predefinedAcl": "publicRead"
                },
                content=data,
                headers=self._headers(content_type or "application/octet-stream")
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            storage_failures_counter.add(1, {"operation": "upload"})
            logger.error("Failed to upload image", extra={
                "bucket": self.bucket,
                "object_name": object_name,
                "error": str(e)
            })
            raise StorageError("Could not upload the image")

        logger.info("Uploaded image", extra={
            "bucket": self.bucket,
            "object_name": object_name,
            "size_bytes": len(data)
        })
        return self.public_url_for(object_name)

    async def delete(self, url: str) -> bool:
        """
        Delete the object behind a public URL.

        Returns:
            False when the URL does not point into the bucket

        Raises:
            StorageError: If the storage API rejects the delete
        """
        object_name = self.object_name_from_url(url)
        if object_name is None:
            return False
        try:
            response = await self.http_client.delete(
                f"{self.api_url}/storage/v1/b/{self.bucket}/o/{quote(object_name, safe='')}",
                headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            storage_failures_counter.add(1, {"operation": "delete"})
            raise StorageError(f"Could not delete {object_name}: {e}")

        logger.info("Deleted image", extra={"bucket": self.bucket, "object_name": object_name})
        return True

    async def delete_quietly(self, url: str) -> None:
        """Best-effort delete: failures are logged and swallowed."""
        try:
            await self.delete(url)
        except StorageError as e:
            logger.warning("Could not delete old image", extra={"url": url, "error": str(e)})
