"""
Webhook audit log.

Append-only. An entry is opened when a notification arrives and finalized once
with its outcome; finalization is guarded on ``processed_at IS NULL`` so an
entry cannot be rewritten. Entries are written in their own transactions so
they survive a rollback of the reconciliation they describe.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscription_billing.database.models import WebhookAttempt, utcnow

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 500


class AuditLog:
    """Writer and reader for ``webhook_audit_log``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def open(
        self,
        provider: str,
        event: str,
        reference: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Record an arriving notification; returns the entry id."""
        entry = WebhookAttempt(
            provider=provider,
            event=event,
            reference=reference,
            payload=payload,
            processed=False,
            ignored=False,
            created_at=utcnow(),
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(entry)
                await session.flush()
                entry_id = entry.id

        logger.debug("audit_entry_opened", entry_id=entry_id, provider=provider, event=event)
        return entry_id

    async def finalize(
        self,
        entry_id: int,
        processed: bool = False,
        ignored: bool = False,
        note: Optional[str] = None,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Stamp the outcome on an open entry.

        Returns:
            bool: False if the entry was already finalized
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WebhookAttempt)
                    .where(WebhookAttempt.id == entry_id, WebhookAttempt.processed_at.is_(None))
                    .values(
                        processed=processed,
                        ignored=ignored,
                        note=note,
                        error=error,
                        processed_at=now or utcnow(),
                    )
                )
                finalized = result.rowcount == 1

        if not finalized:
            logger.warning("audit_entry_already_finalized", entry_id=entry_id)
        return finalized

    async def record_rejected(
        self,
        provider: str,
        reason: str,
        event: str = "unverified",
        reference: Optional[str] = None,
    ) -> int:
        """Record a notification that failed verification; no payload is kept."""
        entry_id = await self.open(provider, event, reference)
        await self.finalize(entry_id, ignored=True, note=reason)
        return entry_id

    async def search(
        self,
        search: Optional[str] = None,
        provider: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[WebhookAttempt], int]:
        """
        Newest-first page of entries matching ``search`` on event or reference.

        Returns:
            Tuple of (entries, total matching count)
        """
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        filters = []
        if search:
            pattern = f"%{search}%"
            filters.append(
                or_(WebhookAttempt.event.ilike(pattern), WebhookAttempt.reference.ilike(pattern))
            )
        if provider:
            filters.append(WebhookAttempt.provider == provider)

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(WebhookAttempt).where(*filters)
            )
            result = await session.execute(
                select(WebhookAttempt)
                .where(*filters)
                .order_by(WebhookAttempt.created_at.desc(), WebhookAttempt.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
            entries = list(result.scalars().all())

        return entries, total or 0

    async def get(self, entry_id: int) -> Optional[WebhookAttempt]:
        async with self.session_factory() as session:
            return await session.get(WebhookAttempt, entry_id)
