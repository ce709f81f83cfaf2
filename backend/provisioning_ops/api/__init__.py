"""HTTP API for the provisioning analysis engine."""
