"""
Payload normalizer for raw PS record payloads.

Upstream payloads are schema-variable: entitlement groups may live under
properties.provisioningDetail.entitlements or at the top level, field names
vary between camelCase, snake_case and PascalCase, and dates are often
missing or malformed. The normalizer treats every field as optional and
returns a flat, ordered list of canonical Entitlement values plus a list
of warnings instead of raising.

Only a payload that is not JSON at all is a ParseError; everything else
degrades to a warning:
- unrecognized category groups are dropped silently
- product entries without a code are dropped and warned
- expiry values that fail to parse are treated as perpetual and warned

Pure function: same input, same output, no I/O.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from provisioning_ops.errors import ParseError

logger = logging.getLogger(__name__)


class EntitlementCategory(str, Enum):
    """Closed set of entitlement categories."""
    MODEL = "model"
    DATA = "data"
    APP = "app"


# Payload group key -> category. Order defines output order.
CATEGORY_GROUP_KEYS: Tuple[Tuple[str, EntitlementCategory], ...] = (
    ("modelEntitlements", EntitlementCategory.MODEL),
    ("productEntitlements", EntitlementCategory.MODEL),
    ("dataEntitlements", EntitlementCategory.DATA),
    ("appEntitlements", EntitlementCategory.APP),
)

_CODE_FIELDS = ("productCode", "product_code", "ProductCode", "code", "id")
_NAME_FIELDS = ("name", "productName", "product_name")
_EXPIRY_FIELDS = ("endDate", "end_date", "EndDate")
_START_FIELDS = ("startDate", "start_date", "StartDate")
_TIER_FIELDS = ("packageName", "package_name", "PackageName")

# Epoch values above this are milliseconds
_EPOCH_MILLIS_THRESHOLD = 100_000_000_000

# "+0000" style offsets (CRM timestamps) -> "+00:00"
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


@dataclass(frozen=True)
class Entitlement:
    """One granted product. expiry=None means perpetual."""

    product_code: str
    category: EntitlementCategory
    package_tier: Optional[str] = None
    expiry: Optional[datetime] = None
    source_record_id: Optional[str] = None
    product_name: Optional[str] = None
    start_date: Optional[datetime] = None

    def __post_init__(self):
        if not self.product_code or not str(self.product_code).strip():
            raise ValueError("product_code must be non-empty")
        if not isinstance(self.category, EntitlementCategory):
            # Raises ValueError for anything outside the closed set
            object.__setattr__(self, "category", EntitlementCategory(self.category))
        if self.expiry is not None and self.expiry.tzinfo is None:
            object.__setattr__(self, "expiry", self.expiry.replace(tzinfo=timezone.utc))

    @property
    def is_perpetual(self) -> bool:
        return self.expiry is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_code": self.product_code,
            "category": self.category.value,
            "package_tier": self.package_tier,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "source_record_id": self.source_record_id,
            "product_name": self.product_name,
            "start_date": self.start_date.isoformat() if self.start_date else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Entitlement":
        expiry = data.get("expiry")
        start = data.get("start_date")
        return cls(
            product_code=data["product_code"],
            category=EntitlementCategory(data["category"]),
            package_tier=data.get("package_tier"),
            expiry=datetime.fromisoformat(expiry) if expiry else None,
            source_record_id=data.get("source_record_id"),
            product_name=data.get("product_name"),
            start_date=datetime.fromisoformat(start) if start else None,
        )


@dataclass
class NormalizationResult:
    """Normalized entitlements plus the warnings produced on the way."""

    entitlements: List[Entitlement] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    skipped_entries: int = 0

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


def parse_instant(value: Any) -> Tuple[Optional[datetime], bool]:
    """
    Parse a date-ish value into a UTC datetime.

    Returns (instant, ok). Empty values are (None, True); values that are
    present but unparseable are (None, False).
    """
    if value is None or value == "":
        return None, True
    if isinstance(value, bool):
        return None, False
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc), True
        return value.astimezone(timezone.utc), True
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc), True
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > _EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc), True
        except (OverflowError, OSError, ValueError):
            return None, False
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None, True
        try:
            parsed = datetime.fromisoformat(_COMPACT_OFFSET.sub(r"\1:\2", text.replace("Z", "+00:00")))
        except ValueError:
            return None, False
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc), True
    return None, False


def _first(entry: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _load_payload(raw: Any, record_id: Optional[str]) -> Mapping[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParseError(f"Payload is not valid JSON: {e.msg}", record_id=record_id)
    if not isinstance(raw, Mapping):
        raise ParseError(
            f"Payload must be a JSON object, got {type(raw).__name__}",
            record_id=record_id,
        )
    return raw


def _entitlement_groups(payload: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    """Containers that may hold category groups, nested location first."""
    properties = _as_mapping(payload.get("properties"))
    detail = _as_mapping(properties.get("provisioningDetail"))
    return [_as_mapping(detail.get("entitlements")), payload]


def normalize_payload(raw: Any, source_record_id: Optional[str] = None) -> NormalizationResult:
    """
    Normalize a raw payload into canonical entitlements.

    Args:
        raw: JSON string or already-decoded mapping (None means no payload)
        source_record_id: PS record id stamped onto every entitlement

    Returns:
        NormalizationResult with entitlements in category order, then
        payload order.

    Raises:
        ParseError: if the payload is not a JSON object at all
    """
    payload = _load_payload(raw, source_record_id)
    result = NormalizationResult()
    containers = _entitlement_groups(payload)

    for group_key, category in CATEGORY_GROUP_KEYS:
        for container in containers:
            entries = container.get(group_key)
            if entries is None:
                continue
            if not isinstance(entries, list):
                result.warnings.append(f"{group_key}: expected a list, got {type(entries).__name__}")
                continue

            for index, entry in enumerate(entries):
                entitlement = _normalize_entry(
                    entry, category, source_record_id, f"{group_key}[{index}]", result
                )
                if entitlement is not None:
                    result.entitlements.append(entitlement)

    if result.warnings:
        logger.debug(
            "payload_normalizer.warnings",
            extra={
                "record_id": source_record_id,
                "warning_count": len(result.warnings),
                "skipped_entries": result.skipped_entries,
            },
        )

    return result


def _normalize_entry(
    entry: Any,
    category: EntitlementCategory,
    record_id: Optional[str],
    location: str,
    result: NormalizationResult,
) -> Optional[Entitlement]:
    if not isinstance(entry, Mapping):
        result.skipped_entries += 1
        result.warnings.append(f"{location}: entry is not an object")
        return None

    code = _first(entry, _CODE_FIELDS)
    name = _first(entry, _NAME_FIELDS)
    # Data and app entries sometimes carry only a name
    if code is None and category != EntitlementCategory.MODEL:
        code = name
    if code is None or not str(code).strip():
        result.skipped_entries += 1
        result.warnings.append(f"{location}: missing product code")
        return None
    code = str(code).strip()

    raw_expiry = _first(entry, _EXPIRY_FIELDS)
    expiry, ok = parse_instant(raw_expiry)
    if not ok:
        result.warnings.append(f"{location} ({code}): unparseable end date {raw_expiry!r}, treated as perpetual")

    raw_start = _first(entry, _START_FIELDS)
    start, ok = parse_instant(raw_start)
    if not ok:
        result.warnings.append(f"{location} ({code}): unparseable start date {raw_start!r}")

    tier = _first(entry, _TIER_FIELDS)

    return Entitlement(
        product_code=code,
        category=category,
        package_tier=str(tier).strip() if tier is not None else None,
        expiry=expiry,
        source_record_id=record_id,
        product_name=str(name) if name is not None else None,
        start_date=start,
    )
