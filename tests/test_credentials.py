"""Tests for API key validation and usage accounting."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from mcp_gateway.service.credentials import (
    API_KEY_PREFIX,
    CredentialService,
    generate_api_key,
)
from mcp_gateway.service.errors import (
    CredentialExpired,
    InvalidCredential,
    QuotaExceeded,
    StorageFailure,
)
from mcp_gateway.storage.errors import StoreError
from mcp_gateway.storage.models import ApiKeyRecord, utcnow


class TestApiKeyRecord:
    """Usability of a key record."""

    def test_no_expiry_no_limit_is_usable(self):
        assert ApiKeyRecord(api_key="k", user_id="u").is_usable()

    def test_expiry_in_past_is_not_usable(self):
        record = ApiKeyRecord(api_key="k", user_id="u", expires_at=utcnow() - timedelta(seconds=1))
        assert record.is_expired()
        assert not record.is_usable()

    def test_expiry_equal_to_now_counts_as_expired(self):
        now = utcnow()
        record = ApiKeyRecord(api_key="k", user_id="u", expires_at=now)
        assert record.is_expired(now)

    def test_naive_expiry_is_treated_as_utc(self):
        future = (utcnow() + timedelta(hours=1)).replace(tzinfo=None)
        record = ApiKeyRecord(api_key="k", user_id="u", expires_at=future)
        assert not record.is_expired()

    @pytest.mark.parametrize(
        "usage_count,usage_limit,usable",
        [(0, 1, True), (4, 5, True), (5, 5, False), (6, 5, False), (100, None, True)],
    )
    def test_quota_boundary(self, usage_count, usage_limit, usable):
        record = ApiKeyRecord(
            api_key="k", user_id="u", usage_count=usage_count, usage_limit=usage_limit
        )
        assert record.is_usable() is usable


class TestValidate:
    """CredentialService.validate against the in-memory store."""

    async def test_valid_key_returns_record(self, memory_store):
        await memory_store.create_api_key("key-1", "user-1")
        service = CredentialService(memory_store)

        record = await service.validate("key-1")

        assert record.user_id == "user-1"
        assert record.usage_count == 0

    async def test_missing_key_is_invalid(self, memory_store):
        service = CredentialService(memory_store)
        with pytest.raises(InvalidCredential) as exc_info:
            await service.validate(None)
        assert exc_info.value.status_code == 401
        assert exc_info.value.reportable is False

    async def test_unknown_key_is_invalid(self, memory_store):
        service = CredentialService(memory_store)
        with pytest.raises(InvalidCredential) as exc_info:
            await service.validate("does-not-exist")
        assert exc_info.value.code == "INVALID_CREDENTIAL"
        assert "does-not-exist" not in str(exc_info.value.metadata)

    async def test_expired_key(self, memory_store):
        await memory_store.create_api_key(
            "key-old", "user-1", expires_at=utcnow() - timedelta(days=1)
        )
        service = CredentialService(memory_store)
        with pytest.raises(CredentialExpired) as exc_info:
            await service.validate("key-old")
        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "CREDENTIAL_EXPIRED"

    async def test_quota_exceeded_at_limit(self, memory_store):
        await memory_store.create_api_key("key-q", "user-1", usage_limit=2)
        memory_store.api_keys["key-q"].usage_count = 2
        service = CredentialService(memory_store)
        with pytest.raises(QuotaExceeded) as exc_info:
            await service.validate("key-q")
        assert exc_info.value.status_code == 429
        assert exc_info.value.metadata["usage_limit"] == 2

    async def test_one_below_limit_is_valid(self, memory_store):
        await memory_store.create_api_key("key-q", "user-1", usage_limit=2)
        memory_store.api_keys["key-q"].usage_count = 1
        service = CredentialService(memory_store)
        record = await service.validate("key-q")
        assert record.usage_limit == 2

    async def test_store_error_becomes_storage_failure(self):
        store = AsyncMock()
        store.get_api_key.side_effect = StoreError("db down", {"operation": "get_api_key"})
        service = CredentialService(store)
        with pytest.raises(StorageFailure) as exc_info:
            await service.validate("key-1")
        assert exc_info.value.reportable is True
        assert exc_info.value.metadata["operation"] == "get_api_key"


class TestIncrementUsage:
    """Best-effort usage counting."""

    async def test_increment_counts_one(self, memory_store):
        await memory_store.create_api_key("key-1", "user-1")
        service = CredentialService(memory_store)

        assert await service.increment_usage("key-1") is True
        assert (await memory_store.get_api_key("key-1")).usage_count == 1

    async def test_increment_failure_is_swallowed(self):
        store = AsyncMock()
        store.increment_usage_count.side_effect = StoreError("db down")
        service = CredentialService(store)

        assert await service.increment_usage("key-1") is False


def test_generated_keys_are_unique_and_prefixed():
    keys = {generate_api_key() for _ in range(20)}
    assert len(keys) == 20
    assert all(key.startswith(API_KEY_PREFIX) for key in keys)
