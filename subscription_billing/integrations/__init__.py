"""Provider adapters and outbound provider API clients."""
