"""
Webhook orchestration.

verify -> audit open -> reconcile -> audit finalize -> acknowledge

Rejected notifications (bad signature, malformed body) never reach the engine
and are audited as ignored. Duplicates are acknowledged with 2xx so providers
stop retrying. Unknown references are audited as ``intent_not_found`` and
surfaced as 404 for manual reconciliation.
"""
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import structlog

from subscription_billing.core.audit import AuditLog
from subscription_billing.core.exceptions import (
    AuthenticationError,
    BillingError,
    NotFoundError,
    StateError,
    ValidationError,
)
from subscription_billing.core.notifications import CanonicalNotification, Outcome
from subscription_billing.core.reconciliation import (
    MANUAL_PROVIDER,
    ReconciliationEngine,
    ReconciliationResult,
    ReconciliationStatus,
)
from subscription_billing.database.models import (
    EVENT_LENGTH,
    PROVIDER_TXN_ID_LENGTH,
    REFERENCE_LENGTH,
)
from subscription_billing.monitoring.metrics import MetricsCollector, metrics as default_metrics

if TYPE_CHECKING:
    from subscription_billing.integrations.providers import ProviderVerifier

logger = structlog.get_logger(__name__)

MANUAL_ACTIONS = {"approve": Outcome.CONFIRMED, "reject": Outcome.DECLINED}


@dataclass(frozen=True)
class WebhookResponse:
    body: Dict[str, Any]
    status_code: int
    result: Optional[ReconciliationResult] = None


class WebhookService:
    def __init__(
        self,
        providers: Dict[str, "ProviderVerifier"],
        engine: ReconciliationEngine,
        audit: AuditLog,
        metrics: MetricsCollector = default_metrics,
    ):
        self.providers = providers
        self.engine = engine
        self.audit = audit
        self.metrics = metrics

    async def handle(
        self, provider: str, body: bytes, headers: Mapping[str, str]
    ) -> WebhookResponse:
        """
        Handle one inbound notification for ``provider``.

        Raises:
            NotFoundError: If the provider or the notified reference is unknown
            AuthenticationError: If the notification fails verification
            ValidationError: If the notification is malformed
        """
        adapter = self.providers.get(provider)
        if adapter is None:
            raise NotFoundError(f"Unknown provider: {provider}", error_code="unknown_provider")

        start_time = time.time()
        try:
            notification = await adapter.verify(body, headers)
            ensure_storable(notification)
        except (AuthenticationError, ValidationError) as e:
            logger.warning(
                "webhook_rejected",
                provider=provider,
                error_code=e.error_code,
                error=e.message,
            )
            await self.audit.record_rejected(provider, reason=e.error_code)
            self.metrics.record_webhook_event(provider, "rejected", time.time() - start_time)
            raise

        result = await self.process(notification)
        self.metrics.record_webhook_event(provider, result.status.value, time.time() - start_time)
        return WebhookResponse(
            body=adapter.acknowledgement(notification),
            status_code=adapter.ack_status,
            result=result,
        )

    async def process(self, notification: CanonicalNotification) -> ReconciliationResult:
        """Run a verified notification through the engine with an audit trail."""
        entry_id = await self.audit.open(
            notification.provider,
            notification.event,
            notification.reference,
            notification.raw_payload,
        )

        try:
            result = await self.engine.process(notification)
        except NotFoundError as e:
            await self.audit.finalize(entry_id, error=e.error_code)
            logger.error(
                "webhook_intent_not_found",
                provider=notification.provider,
                reference=notification.reference,
            )
            self.metrics.record_webhook_event(notification.provider, "error", 0)
            raise
        except BillingError as e:
            await self.audit.finalize(entry_id, error=e.error_code)
            logger.warning(
                "webhook_processing_rejected",
                provider=notification.provider,
                reference=notification.reference,
                error_code=e.error_code,
                error=e.message,
            )
            self.metrics.record_webhook_event(notification.provider, "error", 0)
            raise
        except Exception as e:
            await self.audit.finalize(entry_id, error=f"{type(e).__name__}: {e}"[:2000])
            logger.error(
                "webhook_processing_failed",
                provider=notification.provider,
                reference=notification.reference,
                error=str(e),
                exc_info=True,
            )
            raise

        if result.status is ReconciliationStatus.DUPLICATE:
            await self.audit.finalize(entry_id, ignored=True, note="duplicate")
        elif result.status is ReconciliationStatus.IGNORED:
            await self.audit.finalize(entry_id, ignored=True, note="no_terminal_outcome")
        else:
            await self.audit.finalize(entry_id, processed=True, note=result.status.value)
        return result

    async def resolve_manually(
        self, reference: str, action: str, admin_id: str
    ) -> ReconciliationResult:
        """
        Operator approval/rejection of a pending intent.

        Takes exactly the path of a provider notification, with provider
        ``manual``.

        Raises:
            ValidationError: If ``action`` is not approve/reject
            NotFoundError: If the intent does not exist
            StateError: If the intent is no longer pending
        """
        outcome = MANUAL_ACTIONS.get(action)
        if outcome is None:
            raise ValidationError(f"Unknown action: {action}", error_code="invalid_action")

        notification = CanonicalNotification(
            provider=MANUAL_PROVIDER,
            event=f"manual.{action}",
            reference=reference,
            outcome=outcome,
            provider_txn_id=f"manual:{admin_id}",
            raw_payload={"admin_id": admin_id, "action": action},
        )
        ensure_storable(notification)
        result = await self.process(notification)
        if result.status is ReconciliationStatus.DUPLICATE:
            raise StateError(f"Payment intent {reference} is no longer pending")

        logger.info(
            "intent_resolved_manually",
            reference=reference,
            action=action,
            admin_id=admin_id,
            status=result.status.value,
        )
        return result


def ensure_storable(notification: CanonicalNotification) -> None:
    """
    Reject notifications whose identifiers do not fit the ledger columns.

    Raises:
        ValidationError: If the reference, event or transaction id is too long
    """
    limits = (
        ("reference", notification.reference, REFERENCE_LENGTH),
        ("event", notification.event, EVENT_LENGTH),
        ("provider_txn_id", notification.provider_txn_id, PROVIDER_TXN_ID_LENGTH),
    )
    for field_name, value, limit in limits:
        if value is not None and len(value) > limit:
            raise ValidationError(
                f"{field_name} exceeds {limit} characters",
                error_code=f"{field_name}_too_long",
                provider=notification.provider,
            )
