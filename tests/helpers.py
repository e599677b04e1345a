"""Shared test values and builders."""
from datetime import datetime
from typing import Optional

from subscription_billing.core.notifications import CanonicalNotification, Outcome

NOW = datetime(2024, 3, 1, 12, 0, 0)


def notification(
    reference: Optional[str],
    outcome: Optional[Outcome] = Outcome.CONFIRMED,
    provider: str = "stripe",
    event: str = "checkout.session.completed",
    provider_txn_id: Optional[str] = "txn_123",
) -> CanonicalNotification:
    return CanonicalNotification(
        provider=provider,
        event=event,
        reference=reference,
        outcome=outcome,
        provider_txn_id=provider_txn_id,
        raw_payload={"reference": reference},
    )
