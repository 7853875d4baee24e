"""Upload Gateway - moves a local source photo to durable object storage."""

import asyncio
import re
from pathlib import Path
from urllib.parse import urlparse
from uuid import UUID

import structlog

from pawmotion.services.exceptions import (
    SourceImageForbidden,
    SourceImageMissing,
    SourceImageTooLarge,
    StoragePermanentError,
    StorageTransientError,
    UnsupportedFormat,
    UploadError,
)
from pawmotion.services.retry import RetryPolicy, SleepFunc, retry_transient
from pawmotion.services.storage.storage_client import StorageClient

logger = structlog.get_logger(__name__)

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "heic": "image/heic",
}

FILE_EXTENSIONS = {
    "jpeg": "jpg",
    "png": "png",
    "webp": "webp",
    "heic": "heic",
}

HEIC_BRANDS = (b"heic", b"heix", b"hevc", b"hevx", b"mif1", b"msf1")

# One object path segment: no separators, cannot start with a dot
SAFE_SEGMENT = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.@-]{0,127}")


def detect_image_format(data: bytes) -> str | None:
    """Identify the image encoding from its leading magic bytes.

    Returns:
        One of "jpeg", "png", "webp", "heic", or None if unrecognized
    """
    if data.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if data.startswith(b"\x89PNG"):
        return "png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in HEIC_BRANDS:
        return "heic"
    return None


def resolve_local_path(local_image_ref: str) -> Path:
    """Turn a local image reference (plain path or file:// URL) into a Path."""
    if local_image_ref.startswith("file://"):
        return Path(urlparse(local_image_ref).path)
    return Path(local_image_ref)


def is_safe_path_segment(value: str) -> bool:
    """True when `value` can be used as a single object path segment."""
    return SAFE_SEGMENT.fullmatch(value) is not None


class UploadGateway:
    """Validates the source image and uploads it with bounded retries.

    When `source_root` is set, photos are only read from the owner's staging
    directory `source_root/<owner_id>/`. Relative references resolve inside it.
    """

    def __init__(
        self,
        storage: StorageClient,
        folder: str,
        allowed_formats: list[str],
        max_bytes: int,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFunc = asyncio.sleep,
        source_root: str | Path | None = None,
    ):
        self.storage = storage
        self.folder = folder.strip("/")
        self.allowed_formats = allowed_formats
        self.max_bytes = max_bytes
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep
        self.source_root = Path(source_root) if source_root else None

    def check_source_ref(self, owner_id: str, local_image_ref: str) -> Path:
        """Resolve a source reference, confined to the owner's staging directory.

        Does not check that the file exists; missing files fail the upload.

        Raises:
            SourceImageForbidden: Unsafe owner id, or the reference escapes the
                owner's staging directory (including through symlinks)
        """
        if not is_safe_path_segment(owner_id):
            raise SourceImageForbidden(f"Owner id {owner_id!r} cannot be used in a storage path")

        path = resolve_local_path(local_image_ref)
        if self.source_root is None:
            return path

        owner_root = (self.source_root / owner_id).resolve()
        resolved = (owner_root / path).resolve()
        if not resolved.is_relative_to(owner_root):
            raise SourceImageForbidden(
                f"Source image {local_image_ref} is outside the staging directory of {owner_id}"
            )
        return resolved

    def object_path(self, owner_id: str, job_id: UUID, image_format: str) -> str:
        """Deterministic storage path so a retried upload lands on the same object."""
        return f"{self.folder}/{owner_id}/{job_id}/source.{FILE_EXTENSIONS[image_format]}"

    async def _read(self, owner_id: str, local_image_ref: str) -> bytes:
        path = await asyncio.to_thread(self.check_source_ref, owner_id, local_image_ref)
        try:
            size = await asyncio.to_thread(lambda: path.stat().st_size)
            if size > self.max_bytes:
                raise SourceImageTooLarge(
                    f"Source image is {size} bytes, limit is {self.max_bytes} bytes"
                )
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise SourceImageMissing(f"Cannot read source image {local_image_ref}: {str(e)}")

    async def upload(self, owner_id: str, job_id: UUID, local_image_ref: str) -> str:
        """Upload the owner's source image for a job.

        Args:
            owner_id: Job owner (part of the object path)
            job_id: Job the image belongs to (part of the object path)
            local_image_ref: Local file path or file:// URL of the photo

        Returns:
            Public URL of the uploaded image

        Raises:
            SourceImageForbidden: Reference outside the owner's staging directory
            SourceImageMissing: Local file cannot be read
            SourceImageTooLarge: File exceeds the size limit
            UnsupportedFormat: Encoding is not on the allow-list
            UploadError: Storage rejected the upload or retries were exhausted
        """
        data = await self._read(owner_id, local_image_ref)
        if not data:
            raise SourceImageMissing(f"Source image {local_image_ref} is empty")

        image_format = detect_image_format(data)
        if image_format is None or image_format not in self.allowed_formats:
            raise UnsupportedFormat(
                f"Unsupported image format {image_format or 'unknown'}; "
                f"allowed: {', '.join(self.allowed_formats)}"
            )

        path = self.object_path(owner_id, job_id, image_format)
        content_type = CONTENT_TYPES[image_format]

        logger.info(
            "upload.started",
            job_id=str(job_id),
            owner_id=owner_id,
            path=path,
            size_bytes=len(data),
            image_format=image_format,
        )

        try:
            url = await retry_transient(
                lambda: self.storage.put_object(path, data, content_type),
                self.retry_policy,
                sleep=self.sleep,
                job_id=str(job_id),
                operation="upload",
            )
        except StorageTransientError as e:
            raise UploadError(
                f"Upload failed after {self.retry_policy.max_attempts} attempts: {str(e)}"
            ) from e
        except StoragePermanentError as e:
            raise UploadError(f"Upload rejected: {str(e)}") from e

        logger.info("upload.succeeded", job_id=str(job_id), remote_image_url=url)
        return url
