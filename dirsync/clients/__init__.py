"""Backend transport clients."""
