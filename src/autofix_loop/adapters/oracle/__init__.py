"""Fix-generation oracle adapters."""
