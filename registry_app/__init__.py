"""Client registry application package."""
