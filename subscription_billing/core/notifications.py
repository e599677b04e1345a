"""Canonical notification produced by every provider verifier."""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Outcome(str, Enum):
    """Terminal payment outcomes the engine understands."""

    CONFIRMED = "confirmed"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class CanonicalNotification(BaseModel):
    """
    Provider-neutral view of an authenticated notification.

    ``outcome`` is None for events that are authentic but carry no terminal
    payment outcome (e.g. ``charge.pending``); those are audited as ignored.
    """

    model_config = ConfigDict(frozen=True)

    provider: str
    event: str
    reference: Optional[str] = None
    outcome: Optional[Outcome] = None
    provider_txn_id: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not None and self.reference is not None
