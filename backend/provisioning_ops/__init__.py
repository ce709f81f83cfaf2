"""
Entitlement snapshot and change-analysis engine.

Captures provisioning (PS) records as immutable snapshots and derives the
expiration monitor, package-change analytics, ghost-account and audit trail
views from the snapshot history.
"""

__version__ = "1.0.0"
