"""Upload gateway and storage client tests.

Tests focus on:
- Magic byte format detection
- Local validation (missing, empty, too large, unsupported)
- Bounded retries on transient storage errors, none on permanent ones
- Storage HTTP status classification
"""

from uuid import uuid4

import httpx
import pytest

from pawmotion.services.exceptions import (
    SourceImageForbidden,
    SourceImageMissing,
    SourceImageTooLarge,
    StoragePermanentError,
    StorageTransientError,
    UnsupportedFormat,
    UploadError,
)
from pawmotion.services.storage.storage_client import StorageClient
from pawmotion.services.storage.upload_gateway import (
    detect_image_format,
    is_safe_path_segment,
    resolve_local_path,
)

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00\x10JFIF" + b"\x00" * 256
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 256
WEBP_BYTES = b"RIFF\x24\x00\x00\x00WEBPVP8 " + b"\x00" * 256
HEIC_BYTES = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 256
GIF_BYTES = b"GIF89a" + b"\x00" * 256


@pytest.mark.parametrize(
    "data, expected",
    [
        (JPEG_BYTES, "jpeg"),
        (PNG_BYTES, "png"),
        (WEBP_BYTES, "webp"),
        (HEIC_BYTES, "heic"),
        (GIF_BYTES, None),
        (b"", None),
    ],
)
def test_detect_image_format(data, expected):
    assert detect_image_format(data) == expected


def test_resolve_local_path_accepts_file_urls():
    assert str(resolve_local_path("file:///tmp/pets/rex.jpg")) == "/tmp/pets/rex.jpg"
    assert str(resolve_local_path("/tmp/pets/rex.jpg")) == "/tmp/pets/rex.jpg"


@pytest.mark.asyncio
async def test_upload_stores_object_under_job_path(upload_gateway, fake_storage, pet_photo):
    job_id = uuid4()

    url = await upload_gateway.upload("owner-1", job_id, pet_photo)

    path = f"source-images/owner-1/{job_id}/source.jpg"
    assert url == f"https://storage.test/{path}"
    assert fake_storage.objects[path] == (JPEG_BYTES, "image/jpeg")


@pytest.mark.asyncio
async def test_upload_accepts_file_url(upload_gateway, fake_storage, owner_dir):
    photo = owner_dir / "cat.png"
    photo.write_bytes(PNG_BYTES)

    url = await upload_gateway.upload("owner-1", uuid4(), f"file://{photo}")

    assert url.endswith("/source.png")


@pytest.mark.asyncio
async def test_missing_file_is_rejected(upload_gateway, fake_storage, owner_dir):
    with pytest.raises(SourceImageMissing):
        await upload_gateway.upload("owner-1", uuid4(), str(owner_dir / "nope.jpg"))
    assert fake_storage.put_calls == 0


@pytest.mark.asyncio
async def test_empty_file_is_rejected(upload_gateway, owner_dir):
    photo = owner_dir / "empty.jpg"
    photo.write_bytes(b"")

    with pytest.raises(SourceImageMissing):
        await upload_gateway.upload("owner-1", uuid4(), str(photo))


@pytest.mark.asyncio
async def test_oversized_file_is_rejected(upload_gateway, fake_storage, owner_dir):
    photo = owner_dir / "huge.jpg"
    photo.write_bytes(JPEG_BYTES + b"\x00" * (1024 * 1024))

    with pytest.raises(SourceImageTooLarge):
        await upload_gateway.upload("owner-1", uuid4(), str(photo))
    assert fake_storage.put_calls == 0


@pytest.mark.asyncio
async def test_unsupported_format_is_rejected(upload_gateway, fake_storage, owner_dir):
    photo = owner_dir / "anim.gif"
    photo.write_bytes(GIF_BYTES)

    with pytest.raises(UnsupportedFormat) as exc_info:
        await upload_gateway.upload("owner-1", uuid4(), str(photo))
    assert isinstance(exc_info.value, UploadError)
    assert fake_storage.put_calls == 0


@pytest.mark.asyncio
async def test_transient_storage_errors_are_retried(upload_gateway, fake_storage, no_sleep, pet_photo):
    """Scenario: storage returns two transient errors, then accepts the upload.

    Expected: upload succeeds on the third attempt with backoff delays 1s, 2s.
    """
    fake_storage.put_errors = [StorageTransientError("503"), StorageTransientError("timeout")]

    url = await upload_gateway.upload("owner-1", uuid4(), pet_photo)

    assert url.startswith("https://storage.test/")
    assert fake_storage.put_calls == 3
    assert no_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retries_are_bounded(upload_gateway, fake_storage, pet_photo):
    fake_storage.put_errors = [StorageTransientError("503") for _ in range(5)]

    with pytest.raises(UploadError):
        await upload_gateway.upload("owner-1", uuid4(), pet_photo)
    assert fake_storage.put_calls == 3


@pytest.mark.asyncio
async def test_permanent_storage_error_is_not_retried(upload_gateway, fake_storage, no_sleep, pet_photo):
    fake_storage.put_errors = [StoragePermanentError("403")]

    with pytest.raises(UploadError):
        await upload_gateway.upload("owner-1", uuid4(), pet_photo)
    assert fake_storage.put_calls == 1
    assert no_sleep.delays == []


# StorageClient HTTP behaviour


def storage_returning(status_code: int, seen: list | None = None) -> StorageClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, text="{}")

    return StorageClient(
        "https://project.storage.test/",
        "service-key",
        "pet-photos",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_storage_client_puts_object_and_returns_public_url():
    seen: list[httpx.Request] = []
    client = storage_returning(200, seen)

    url = await client.put_object("source-images/o/j/source.jpg", JPEG_BYTES, "image/jpeg")

    assert url == (
        "https://project.storage.test/storage/v1/object/public/pet-photos/source-images/o/j/source.jpg"
    )
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/storage/v1/object/pet-photos/source-images/o/j/source.jpg"
    assert request.headers["Authorization"] == "Bearer service-key"
    assert request.headers["Content-Type"] == "image/jpeg"
    assert request.headers["x-upsert"] == "true"
    assert request.content == JPEG_BYTES


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [408, 429, 500, 502, 503])
async def test_storage_client_transient_statuses(status_code):
    with pytest.raises(StorageTransientError):
        await storage_returning(status_code).put_object("p.jpg", JPEG_BYTES, "image/jpeg")


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [400, 401, 403, 413])
async def test_storage_client_permanent_statuses(status_code):
    with pytest.raises(StoragePermanentError):
        await storage_returning(status_code).put_object("p.jpg", JPEG_BYTES, "image/jpeg")


@pytest.mark.asyncio
async def test_storage_client_network_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection reset", request=request)

    client = StorageClient("https://s.test", "k", "b", transport=httpx.MockTransport(handler))

    with pytest.raises(StorageTransientError):
        await client.put_object("p.jpg", JPEG_BYTES, "image/jpeg")


@pytest.mark.asyncio
async def test_relative_ref_resolves_in_owner_directory(upload_gateway, fake_storage, owner_dir):
    (owner_dir / "rex.jpg").write_bytes(JPEG_BYTES)

    url = await upload_gateway.upload("owner-1", uuid4(), "rex.jpg")

    assert url.endswith("/source.jpg")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ref",
    [
        "../owner-2/rex.jpg",
        "file://{root}/owner-2/rex.jpg",
        "{root}/owner-2/rex.jpg",
        "/etc/passwd",
    ],
)
async def test_refs_outside_owner_directory_are_forbidden(
    upload_gateway, fake_storage, tmp_path, owner_dir, ref
):
    other = tmp_path / "owner-2"
    other.mkdir()
    (other / "rex.jpg").write_bytes(JPEG_BYTES)

    with pytest.raises(SourceImageForbidden):
        await upload_gateway.upload("owner-1", uuid4(), ref.format(root=tmp_path))
    assert fake_storage.put_calls == 0


@pytest.mark.asyncio
async def test_symlink_out_of_owner_directory_is_forbidden(upload_gateway, tmp_path, owner_dir):
    secret = tmp_path / "secret.jpg"
    secret.write_bytes(JPEG_BYTES)
    (owner_dir / "link.jpg").symlink_to(secret)

    with pytest.raises(SourceImageForbidden):
        await upload_gateway.upload("owner-1", uuid4(), str(owner_dir / "link.jpg"))


@pytest.mark.parametrize("owner_id", ["..", ".hidden", "a/b", "owner-1/../x", "", "x" * 129])
def test_unsafe_owner_ids_are_forbidden(upload_gateway, owner_id):
    with pytest.raises(SourceImageForbidden):
        upload_gateway.check_source_ref(owner_id, "pet.jpg")


def test_safe_path_segments():
    assert is_safe_path_segment("owner-1")
    assert is_safe_path_segment("user_42@example.com")
    assert not is_safe_path_segment("owner-1\n")
    assert not is_safe_path_segment("../owner-2")
