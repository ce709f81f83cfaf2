"""
Upstream sources of PS records.

Two real sources exist (CRM and licensing/metering); the engine is
agnostic to which one a record came from.
"""

from provisioning_ops.integrations.sources.client import (
    CRMConnector,
    HttpSourceConnector,
    LicensingConnector,
    SourceConnector,
    StaticConnector,
    get_source_connectors,
)
from provisioning_ops.integrations.sources.exceptions import (
    SourceAuthenticationError,
    SourceConnectionError,
    SourceError,
    SourceRateLimitError,
)
from provisioning_ops.integrations.sources.models import RawProvisioningRecord

__all__ = [
    # Connectors
    "SourceConnector",
    "HttpSourceConnector",
    "CRMConnector",
    "LicensingConnector",
    "StaticConnector",
    "get_source_connectors",
    # Exceptions
    "SourceError",
    "SourceAuthenticationError",
    "SourceRateLimitError",
    "SourceConnectionError",
    # Models
    "RawProvisioningRecord",
]
