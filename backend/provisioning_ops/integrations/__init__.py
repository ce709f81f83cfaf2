"""Integrations with upstream systems."""
