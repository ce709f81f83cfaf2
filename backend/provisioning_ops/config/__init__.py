"""Configuration loaders."""
