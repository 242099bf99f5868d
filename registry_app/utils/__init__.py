"""Application-level helpers shared across the registry."""
