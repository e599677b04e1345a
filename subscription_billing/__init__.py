"""Payment reconciliation, subscription lifecycle and partner commission engine."""

__version__ = "0.1.0"
