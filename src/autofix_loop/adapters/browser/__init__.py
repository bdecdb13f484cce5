"""Browser-automation adapters."""
