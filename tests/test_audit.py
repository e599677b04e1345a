"""
Tests for the webhook audit log.
"""
import pytest

from tests.helpers import NOW


class TestAuditLog:
    """Test suite for audit entry lifecycle and search."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_entry_is_finalized_once(self, audit) -> None:
        entry_id = await audit.open("stripe", "checkout.session.completed", "ref-1", {"id": "evt_1"})

        assert await audit.finalize(entry_id, processed=True, note="activated", now=NOW)
        assert not await audit.finalize(entry_id, ignored=True, note="duplicate")

        entry = await audit.get(entry_id)
        assert entry.processed
        assert not entry.ignored
        assert entry.note == "activated"
        assert entry.processed_at == NOW
        assert entry.payload == {"id": "evt_1"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rejected_notifications_keep_no_payload(self, audit) -> None:
        entry_id = await audit.record_rejected("paystack", reason="invalid_signature")

        entry = await audit.get(entry_id)
        assert entry.ignored
        assert entry.event == "unverified"
        assert entry.note == "invalid_signature"
        assert entry.payload is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_search_matches_reference_and_event(self, audit) -> None:
        await audit.open("stripe", "checkout.session.completed", "ref-alpha")
        await audit.open("paystack", "charge.success", "ref-beta")
        await audit.open("paystack", "charge.failed", "ref-gamma")

        by_reference, total = await audit.search(search="beta")
        assert total == 1
        assert by_reference[0].reference == "ref-beta"

        by_event, total = await audit.search(search="charge")
        assert total == 2

        stripe_only, total = await audit.search(provider="stripe")
        assert total == 1
        assert stripe_only[0].provider == "stripe"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_search_pages_newest_first(self, audit) -> None:
        ids = [await audit.open("whop", "payment.succeeded", f"ref-{i}") for i in range(5)]

        first_page, total = await audit.search(page=1, limit=2)
        third_page, _ = await audit.search(page=3, limit=2)

        assert total == 5
        assert [entry.id for entry in first_page] == [ids[4], ids[3]]
        assert [entry.id for entry in third_page] == [ids[0]]
