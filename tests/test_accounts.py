"""
Tests for accounts and partner onboarding.
"""
from decimal import Decimal

import pytest

from subscription_billing.core.accounts import (
    AccountService,
    AffiliateAccount,
    PartnerAccount,
    RegularAccount,
    referral_code_for,
)
from subscription_billing.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)


async def in_transaction(database, operation):
    async with database.session_factory() as session:
        async with session.begin():
            return await operation(AccountService(session))


class TestRegistration:
    """Test suite for user registration."""

    @pytest.mark.unit
    def test_referral_code_uses_last_six_characters(self) -> None:
        assert referral_code_for("user-0042ab9f") == "rp-42ab9f"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_register_regular_user(self, database) -> None:
        account = await in_transaction(
            database, lambda accounts: accounts.register("user-1", "one@example.com")
        )

        assert isinstance(account, RegularAccount)
        assert account.role == "regular"
        assert account.email == "one@example.com"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_registration_rejected(self, database, seed) -> None:
        await seed.user("user-1", email="one@example.com")

        with pytest.raises(ConflictError):
            await in_transaction(
                database, lambda accounts: accounts.register("user-1", "other@example.com")
            )
        with pytest.raises(ConflictError):
            await in_transaction(
                database, lambda accounts: accounts.register("user-2", "one@example.com")
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_referral_code_must_belong_to_approved_partner(self, database, seed) -> None:
        await seed.partner("partner-abc123", referral_code="rp-abc123")

        referred = await in_transaction(
            database,
            lambda accounts: accounts.register("user-1", "one@example.com", "rp-abc123"),
        )
        assert referred.referred_by_code == "rp-abc123"

        with pytest.raises(ValidationError) as exc_info:
            await in_transaction(
                database,
                lambda accounts: accounts.register("user-2", "two@example.com", "rp-nobody"),
            )
        assert exc_info.value.error_code == "unknown_referral_code"


class TestPartnerOnboarding:
    """Test suite for partner application, approval and rejection."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_apply_then_approve(self, database, seed) -> None:
        await seed.user("user-77aa11")

        applied = await in_transaction(
            database, lambda accounts: accounts.apply_as_partner("user-77aa11")
        )
        assert isinstance(applied, AffiliateAccount)
        assert applied.profile.referral_code == "rp-77aa11"
        assert not applied.profile.is_approved

        approved = await in_transaction(
            database, lambda accounts: accounts.approve_partner("user-77aa11")
        )
        assert isinstance(approved, PartnerAccount)
        assert approved.profile.is_approved
        assert approved.profile.revenue_share == Decimal("0.20")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_with_custom_share_and_twice(self, database, seed) -> None:
        await seed.user("user-1")
        await in_transaction(database, lambda accounts: accounts.apply_as_partner("user-1"))

        approved = await in_transaction(
            database, lambda accounts: accounts.approve_partner("user-1", Decimal("0.35"))
        )
        assert approved.profile.revenue_share == Decimal("0.35")

        with pytest.raises(StateError):
            await in_transaction(database, lambda accounts: accounts.approve_partner("user-1"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reapplying_rejected(self, database, seed) -> None:
        await seed.user("user-1")
        await in_transaction(database, lambda accounts: accounts.apply_as_partner("user-1"))

        with pytest.raises(ConflictError):
            await in_transaction(database, lambda accounts: accounts.apply_as_partner("user-1"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reject_returns_user_to_regular(self, database, seed) -> None:
        await seed.user("user-1")
        await in_transaction(database, lambda accounts: accounts.apply_as_partner("user-1"))

        rejected = await in_transaction(
            database, lambda accounts: accounts.reject_partner("user-1")
        )

        assert isinstance(rejected, RegularAccount)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reject_approved_partner_is_a_state_error(self, database, seed) -> None:
        await seed.partner("partner-1")

        with pytest.raises(StateError):
            await in_transaction(database, lambda accounts: accounts.reject_partner("partner-1"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_approve_without_application(self, database, seed) -> None:
        await seed.user("user-1")

        with pytest.raises(NotFoundError):
            await in_transaction(database, lambda accounts: accounts.approve_partner("user-1"))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_require_role(self, database, seed) -> None:
        await seed.user("user-1")
        await seed.user("admin-1", role="admin")

        admin = await in_transaction(
            database, lambda accounts: accounts.require_role("admin-1", "admin")
        )
        assert admin.role == "admin"

        with pytest.raises(AuthorizationError):
            await in_transaction(
                database, lambda accounts: accounts.require_role("user-1", "admin")
            )

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_stale_reject_cannot_remove_freshly_approved_partner(
        self, database, seed
    ) -> None:
        await seed.user("user-1")
        await in_transaction(database, lambda accounts: accounts.apply_as_partner("user-1"))

        async with database.session_factory() as session:
            async with session.begin():
                rejecter = AccountService(session)
                stale = await rejecter.get("user-1")
                assert isinstance(stale, AffiliateAccount)

                await in_transaction(
                    database, lambda accounts: accounts.approve_partner("user-1")
                )

                with pytest.raises(StateError):
                    await rejecter.reject_partner("user-1")

        account = await in_transaction(database, lambda accounts: accounts.get("user-1"))
        assert isinstance(account, PartnerAccount)
        assert account.profile.is_approved
