"""Model endpoint clients."""
