"""Object storage client for source images (Supabase storage compatible API)."""

import httpx

from pawmotion.services.exceptions import StoragePermanentError, StorageTransientError


class StorageClient:
    """Uploads objects to a bucket and returns their public URLs."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize storage client.

        Args:
            base_url: Storage service base URL (STORAGE_BASE_URL)
            service_key: Key with write access to the bucket (STORAGE_SERVICE_KEY)
            bucket: Target bucket name
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {service_key}",
            # Re-uploading the same path after a lost response overwrites it
            "x-upsert": "true",
        }

    def public_url(self, path: str) -> str:
        """Public URL of an object in the bucket."""
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    async def put_object(self, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes to `path` in the bucket.

        Args:
            path: Object path inside the bucket
            data: Object content
            content_type: MIME type sent with the object

        Returns:
            Public URL of the stored object

        Raises:
            StorageTransientError: Network error, timeout, 408, 429 or 5xx
            StoragePermanentError: Any other 4xx (auth, quota, malformed request)
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/storage/v1/object/{self.bucket}/{path}",
                    headers={**self.headers, "Content-Type": content_type},
                    content=data,
                )
        except httpx.TimeoutException as e:
            raise StorageTransientError(f"Upload timeout after {self.timeout}s: {str(e)}")
        except httpx.HTTPError as e:
            raise StorageTransientError(f"Network error: {str(e)}")

        # Error classification
        if response.status_code in (408, 429) or response.status_code >= 500:
            raise StorageTransientError(
                f"Storage unavailable ({response.status_code}): {response.text}"
            )
        if response.status_code in (401, 403):
            raise StoragePermanentError(
                f"Storage access denied ({response.status_code}). "
                "Check STORAGE_SERVICE_KEY permissions for the bucket."
            )
        if response.status_code >= 400:
            raise StoragePermanentError(
                f"Storage rejected upload ({response.status_code}): {response.text}"
            )

        return self.public_url(path)
