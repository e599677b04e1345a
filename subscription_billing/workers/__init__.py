"""Background workers for scheduled processing."""
from .expiry_worker import start_expiry_worker

__all__ = ["start_expiry_worker"]
