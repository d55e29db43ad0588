"""
Unit tests for UsageLedgerService
"""

import pytest
from unittest.mock import patch

from keygate.errors import ErrorKind, NotFoundError, StorageUnavailableError
from keygate.models.access_key import AccessKey
from keygate.models.protected_payload import ProtectedPayload
from keygate.models.usage_ledger import UsageEntry
from keygate.services.usage_ledger import UsageLedgerService


class TestUsageLedgerService:
    """Test cases for UsageLedgerService"""

    @pytest.fixture
    def ledger_service(self, key_storage, payload_storage):
        return UsageLedgerService(key_storage, payload_storage)

    @pytest.fixture
    def used_key(self, key_storage):
        key = AccessKey.create_new()
        key.record_use(UsageEntry.create_new("1.1.1.1", "F1", "alice"))
        key.record_use(UsageEntry.create_new("2.2.2.2", "F1", "bob"))
        key.record_use(UsageEntry.create_new("2.2.2.2", None, None))
        key_storage.create_key(key)
        return key

    @pytest.fixture
    def used_payload(self, payload_storage):
        payload = ProtectedPayload.create_new("print(1)")
        payload.record_use(UsageEntry.create_new("3.3.3.3", "F9", "carol"))
        payload_storage.create_payload(payload)
        return payload

    @pytest.mark.asyncio
    async def test_get_key_ledger(self, ledger_service, used_key):
        entries = await ledger_service.get_key_ledger(used_key.key_id)
        assert len(entries) == 3
        assert entries[0]['source_address'] == "2.2.2.2"
        assert entries[2]['identity'] == "alice"

    @pytest.mark.asyncio
    async def test_key_statistics(self, ledger_service, used_key):
        stats = await ledger_service.get_statistics(key_id=used_key.key_id)

        assert stats['total_uses'] == 3
        assert stats['logged_entries'] == 3
        assert stats['unique_sources'] == 2
        assert stats['unique_devices'] == 1
        assert stats['unique_identities'] == 2
        assert stats['known_identities'] == ["bob", "alice"]
        assert stats['last_used_at'] is not None

    @pytest.mark.asyncio
    async def test_payload_statistics(self, ledger_service, used_payload):
        stats = await ledger_service.get_statistics(payload_hash=used_payload.payload_hash)
        assert stats['total_uses'] == 1
        assert stats['unique_identities'] == 1

    @pytest.mark.asyncio
    async def test_statistics_needs_exactly_one_target(self, ledger_service):
        with pytest.raises(ValueError):
            await ledger_service.get_statistics()
        with pytest.raises(ValueError):
            await ledger_service.get_statistics(key_id="KG-A", payload_hash="a" * 32)

    @pytest.mark.asyncio
    async def test_clear_key_ledger_keeps_use_count(self, ledger_service, key_storage, used_key):
        removed = await ledger_service.clear_key_ledger(used_key.key_id)

        assert removed == 3
        stored = key_storage.get_key(used_key.key_id)
        assert len(stored.usage_log) == 0
        assert stored.use_count == 3
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_clear_payload_ledger(self, ledger_service, payload_storage, used_payload):
        assert await ledger_service.clear_payload_ledger(used_payload.payload_hash) == 1
        assert len(payload_storage.get_payload(used_payload.payload_hash).usage_log) == 0

    @pytest.mark.asyncio
    async def test_missing_records(self, ledger_service):
        with pytest.raises(NotFoundError):
            await ledger_service.get_key_ledger("KG-NOPE")
        with pytest.raises(NotFoundError) as exc_info:
            await ledger_service.get_payload_ledger("f" * 32)
        assert exc_info.value.kind is ErrorKind.PAYLOAD_NOT_FOUND
        with pytest.raises(NotFoundError):
            await ledger_service.clear_key_ledger("KG-NOPE")

    @pytest.mark.asyncio
    async def test_clear_under_contention(self, ledger_service, key_storage, used_key):
        with patch.object(key_storage, 'compare_and_swap', return_value=False):
            with pytest.raises(StorageUnavailableError):
                await ledger_service.clear_key_ledger(used_key.key_id)
