"""
Accounts and referral profiles.

A user row carries a role; partners and affiliates additionally own a referral
profile. The domain view is a tagged union on ``role`` so that callers never
see a "regular" account with partner fields filled in.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_billing.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from subscription_billing.database.models import ReferralProfile as ReferralProfileRow
from subscription_billing.database.models import User, utcnow

logger = structlog.get_logger(__name__)

REFERRAL_CODE_PREFIX = "rp-"


class ReferralProfile(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    referral_code: str
    revenue_share: Decimal
    is_approved: bool
    applied_at: datetime
    approved_at: Optional[datetime] = None


class _AccountBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    referred_by_code: Optional[str] = None
    created_at: datetime


class RegularAccount(_AccountBase):
    role: Literal["regular"] = "regular"


class AffiliateAccount(_AccountBase):
    role: Literal["affiliate"] = "affiliate"
    profile: ReferralProfile


class PartnerAccount(_AccountBase):
    role: Literal["partner"] = "partner"
    profile: ReferralProfile


class AdminAccount(_AccountBase):
    role: Literal["admin"] = "admin"


Account = Annotated[
    Union[RegularAccount, AffiliateAccount, PartnerAccount, AdminAccount],
    Field(discriminator="role"),
]
_account_adapter: TypeAdapter = TypeAdapter(Account)


def referral_code_for(user_id: str) -> str:
    """Referral codes are derived from the last six characters of the user id."""
    return f"{REFERRAL_CODE_PREFIX}{user_id[-6:]}"


def to_account(user: User, profile: Optional[ReferralProfileRow]) -> Account:
    data = {
        "role": user.role,
        "user_id": user.id,
        "email": user.email,
        "referred_by_code": user.referred_by_code,
        "created_at": user.created_at,
    }
    if user.role in ("affiliate", "partner"):
        if profile is None:
            raise StateError(f"Account {user.id} has role {user.role} but no profile")
        data["profile"] = ReferralProfile.model_validate(profile)
    return _account_adapter.validate_python(data)


class AccountService:
    """
    Registration, lookup and partner onboarding.

    Operates inside the caller's session; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession, default_revenue_share: Decimal = Decimal("0.20")):
        self.session = session
        self.default_revenue_share = default_revenue_share

    async def register(
        self, user_id: str, email: str, referred_by_code: Optional[str] = None
    ) -> Account:
        """
        Register a user.

        Raises:
            ValidationError: If the referral code does not belong to an approved partner
            ConflictError: If the user id or email is already registered
        """
        if await self.session.get(User, user_id) is not None:
            raise ConflictError(f"User {user_id} already registered", error_code="user_exists")

        if referred_by_code is not None:
            owner = await self.session.scalar(
                select(ReferralProfileRow).where(
                    ReferralProfileRow.referral_code == referred_by_code,
                    ReferralProfileRow.is_approved.is_(True),
                )
            )
            if owner is None:
                raise ValidationError(
                    f"Unknown referral code: {referred_by_code}",
                    error_code="unknown_referral_code",
                )

        user = User(
            id=user_id,
            email=email,
            role="regular",
            referred_by_code=referred_by_code,
            created_at=utcnow(),
        )
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"User {user_id} or email already registered", error_code="user_exists"
            ) from e

        logger.info("user_registered", user_id=user_id, referred_by_code=referred_by_code)
        return to_account(user, None)

    async def get(self, user_id: str, refresh: bool = False) -> Account:
        user = await self.session.get(User, user_id, populate_existing=refresh)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", error_code="user_not_found")
        profile = await self.session.get(ReferralProfileRow, user_id, populate_existing=refresh)
        return to_account(user, profile)

    async def require_role(self, user_id: str, *roles: str) -> Account:
        """Load an account and assert it has one of ``roles``."""
        account = await self.get(user_id)
        if account.role not in roles:
            raise AuthorizationError(
                f"User {user_id} lacks role {'/'.join(roles)}", user_id=user_id
            )
        return account

    async def apply_as_partner(self, user_id: str) -> Account:
        """
        Create an unapproved referral profile for a regular user.

        The user becomes an affiliate until an admin approves them.
        """
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", error_code="user_not_found")
        if user.role == "admin":
            raise ValidationError("Admins cannot apply as partners", error_code="invalid_role")
        if await self.session.get(ReferralProfileRow, user_id) is not None:
            raise ConflictError(
                f"User {user_id} already applied", error_code="partner_application_exists"
            )

        profile = ReferralProfileRow(
            user_id=user_id,
            referral_code=referral_code_for(user_id),
            revenue_share=Decimal("0"),
            is_approved=False,
            applied_at=utcnow(),
        )
        self.session.add(profile)
        user.role = "affiliate"
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Referral code {profile.referral_code} already taken",
                error_code="referral_code_taken",
            ) from e

        logger.info("partner_applied", user_id=user_id, referral_code=profile.referral_code)
        return to_account(user, profile)

    async def approve_partner(
        self, user_id: str, revenue_share: Optional[Decimal] = None
    ) -> Account:
        """Approve a pending application; CAS on ``is_approved``."""
        share = self.default_revenue_share if revenue_share is None else revenue_share
        if share < 0 or share > 1:
            raise ValidationError("Revenue share must be between 0 and 1")

        result = await self.session.execute(
            update(ReferralProfileRow)
            .where(
                ReferralProfileRow.user_id == user_id,
                ReferralProfileRow.is_approved.is_(False),
            )
            .values(is_approved=True, revenue_share=share, approved_at=utcnow())
        )
        if result.rowcount == 0:
            await self._raise_profile_miss(user_id, "approved")

        await self.session.execute(update(User).where(User.id == user_id).values(role="partner"))
        logger.info("partner_approved", user_id=user_id, revenue_share=str(share))
        return await self._reload(user_id)

    async def reject_partner(self, user_id: str) -> Account:
        """
        Reject a pending application; CAS on ``is_approved``.

        The profile is removed and the user falls back to a regular account.
        """
        result = await self.session.execute(
            delete(ReferralProfileRow)
            .where(
                ReferralProfileRow.user_id == user_id,
                ReferralProfileRow.is_approved.is_(False),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self._raise_profile_miss(user_id, "rejected")

        await self.session.execute(update(User).where(User.id == user_id).values(role="regular"))
        logger.info("partner_rejected", user_id=user_id)
        return await self._reload(user_id)

    async def _reload(self, user_id: str) -> Account:
        await self.session.flush()
        return await self.get(user_id, refresh=True)

    async def _raise_profile_miss(self, user_id: str, action: str) -> None:
        profile = await self.session.get(ReferralProfileRow, user_id, populate_existing=True)
        if profile is None:
            raise NotFoundError(
                f"No partner application for {user_id}", error_code="application_not_found"
            )
        raise StateError(f"Partner {user_id} is already approved and cannot be {action}")
