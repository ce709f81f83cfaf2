"""
Data models for records fetched from upstream sources.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from provisioning_ops.services.payload_normalizer import parse_instant


@dataclass
class RawProvisioningRecord:
    """
    A PS record as delivered by a source, before normalization.

    payload is left untouched (JSON string or mapping); the payload
    normalizer deals with its shape.
    """

    record_id: str
    record_name: Optional[str] = None
    account_id: Optional[str] = None
    deployment_id: Optional[str] = None
    request_type: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    payload: Any = None
    source: Optional[str] = None

    @property
    def deployment_key(self) -> str:
        return self.deployment_id or f"record:{self.record_id}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: Optional[str] = None) -> "RawProvisioningRecord":
        """Build from the engine's own field names (used by the static source and tests)."""
        created_at, _ = parse_instant(data.get("created_at"))
        return cls(
            record_id=str(data["record_id"]),
            record_name=data.get("record_name"),
            account_id=data.get("account_id"),
            deployment_id=data.get("deployment_id"),
            request_type=data.get("request_type"),
            status=data.get("status"),
            created_at=created_at,
            payload=data.get("payload"),
            source=source,
        )
