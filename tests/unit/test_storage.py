import time
from unittest.mock import MagicMock, patch

import pytest

from roomview.core.exceptions import InvalidInputError, ObjectNotFoundError
from roomview.core.storage import LocalStorage, StorageFactory, validate_key


@pytest.mark.parametrize("key", ["", "/etc/passwd", "tenants/../secrets", "a/./../b"])
def test_validate_key_rejects_escapes(key):
    with pytest.raises(InvalidInputError):
        validate_key(key)


@pytest.mark.asyncio
async def test_put_get_exists(storage):
    key = "tenants/t/products/p/a/cutout-1.png"
    assert not await storage.exists(key)

    assert await storage.put(b"png-bytes", key) == key

    assert await storage.exists(key)
    assert await storage.get(key) == b"png-bytes"
    # No temp file left behind
    assert [p.name for p in (storage.base_path / "tenants/t/products/p/a").iterdir()] == ["cutout-1.png"]


@pytest.mark.asyncio
async def test_get_missing_object(storage):
    with pytest.raises(ObjectNotFoundError) as exc_info:
        await storage.get("tenants/t/missing.png")
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_signed_urls_are_method_bound_and_expire(storage):
    key = "tenants/t/renders/j/output.png"

    url = await storage.signed_read_url(key, expires_in=60)
    assert url.startswith(f"http://test/api/v1/storage/objects/{key}?")

    expires = int(time.time()) + 60
    sig = storage._signature("GET", key, expires)
    assert storage.verify_signature("GET", key, expires, sig)
    assert not storage.verify_signature("PUT", key, expires, sig)
    assert not storage.verify_signature("GET", "tenants/t/other.png", expires, sig)

    past = int(time.time()) - 1
    assert not storage.verify_signature("GET", key, past, storage._signature("GET", key, past))


@pytest.mark.asyncio
async def test_signed_write_url_shape(storage):
    target = await storage.signed_write_url("tenants/t/rooms/s/original.jpg")
    assert target["method"] == "PUT"
    assert target["key"] == "tenants/t/rooms/s/original.jpg"
    assert target["expires_in"] > 0
    assert "sig=" in target["url"]


@pytest.mark.asyncio
async def test_urls_are_fresh_per_call(storage):
    key = "tenants/t/renders/j/output.png"
    first = await storage.signed_read_url(key, expires_in=60)
    second = await storage.signed_read_url(key, expires_in=120)
    assert first != second


def test_factory_defaults_to_local(tmp_path):
    StorageFactory.reset()
    try:
        with patch("roomview.core.storage.settings") as mock_settings:
            mock_settings.ENVIRONMENT = "development"
            mock_settings.AZURE_STORAGE_CONNECTION_STRING = None
            mock_settings.LOCAL_STORAGE_PATH = str(tmp_path)
            mock_settings.STORAGE_SIGNING_SECRET = "s"
            mock_settings.PUBLIC_BASE_URL = "http://test"
            assert isinstance(StorageFactory.get_storage(), LocalStorage)
    finally:
        StorageFactory.reset()


def test_factory_uses_installed_backend():
    backend = MagicMock()
    StorageFactory.set_storage(backend)
    try:
        assert StorageFactory.get_storage() is backend
    finally:
        StorageFactory.reset()
