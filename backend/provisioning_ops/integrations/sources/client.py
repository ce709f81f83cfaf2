"""
Source connectors that supply raw PS records to the capture pipeline.

- CRMConnector: CRM REST query API (SOQL-style query, follows
  nextRecordsUrl paging)
- LicensingConnector: licensing/metering REST API (page-numbered)
- StaticConnector: in-memory list or JSON file, for local runs and tests

The engine only depends on SourceConnector.fetch_records(since_years).
Connectors are synchronous; the scheduler calls them from a worker thread.

SECURITY: API tokens must never be logged.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import httpx

from provisioning_ops.integrations.sources.exceptions import (
    SourceAuthenticationError,
    SourceConnectionError,
    SourceError,
    SourceRateLimitError,
)
from provisioning_ops.integrations.sources.models import RawProvisioningRecord
from provisioning_ops.services.payload_normalizer import parse_instant

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_PAGE_SIZE = 200
DAYS_PER_YEAR = 365


def since_cutoff(since_years: float, now: Optional[datetime] = None) -> datetime:
    """Start of the lookback window."""
    if since_years <= 0:
        raise ValueError("since_years must be positive")
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=int(since_years * DAYS_PER_YEAR))


class SourceConnector(ABC):
    """Supplies raw provisioning records."""

    name = "source"

    @abstractmethod
    def fetch_records(self, since_years: float) -> Iterator[RawProvisioningRecord]:
        """Yield records created within the last since_years years."""

    def close(self) -> None:
        pass


class HttpSourceConnector(SourceConnector):
    """Shared request handling for REST sources."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url:
            raise ValueError(f"{self.name} base URL is required")
        if not api_token:
            raise ValueError(f"{self.name} API token is required")

        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {api_token}",
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        GET an endpoint and return the decoded body.

        Raises:
            SourceError: on API errors
        """
        try:
            response = self._client.get(endpoint, params=params)
        except httpx.TimeoutException as e:
            logger.error(
                "Source API timeout",
                extra={"source": self.name, "endpoint": endpoint, "error": str(e)},
            )
            raise SourceConnectionError(f"Request timeout: {e}", source=self.name)
        except httpx.RequestError as e:
            logger.error(
                "Source API connection error",
                extra={"source": self.name, "endpoint": endpoint, "error": str(e)},
            )
            raise SourceConnectionError(f"Connection error: {e}", source=self.name)

        if response.status_code in (401, 403):
            logger.error(
                "Source API authentication failed",
                extra={"source": self.name, "status_code": response.status_code},
            )
            raise SourceAuthenticationError(status_code=response.status_code, source=self.name)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning(
                "Source API rate limited",
                extra={"source": self.name, "retry_after": retry_after},
            )
            raise SourceRateLimitError(
                retry_after=int(retry_after) if retry_after else None,
                source=self.name,
            )

        if response.status_code >= 400:
            error_body: Dict[str, Any] = {}
            try:
                error_body = response.json()
            except ValueError:
                pass
            logger.error(
                "Source API error",
                extra={
                    "source": self.name,
                    "status_code": response.status_code,
                    "endpoint": endpoint,
                    "response": str(error_body)[:500],
                },
            )
            raise SourceError(
                f"{self.name} API error: {response.status_code}",
                status_code=response.status_code,
                source=self.name,
                response=error_body,
            )

        return response.json()


class CRMConnector(HttpSourceConnector):
    """
    PS records from the CRM query API.

    Records live on the Prof_Services_Request__c object; the entitlement
    payload is the JSON stored in Payload_Data__c.
    """

    name = "crm"

    QUERY_FIELDS = (
        "Id",
        "Name",
        "Account__c",
        "Deployment__c",
        "TenantRequestAction__c",
        "Status__c",
        "CreatedDate",
        "Payload_Data__c",
    )

    def __init__(self, base_url: Optional[str] = None, api_token: Optional[str] = None, **kwargs):
        super().__init__(
            base_url or os.getenv("CRM_BASE_URL", ""),
            api_token or os.getenv("CRM_API_TOKEN"),
            **kwargs,
        )

    def build_query(self, since: datetime) -> str:
        cutoff = since.strftime("%Y-%m-%dT%H:%M:%SZ")
        return (
            f"SELECT {', '.join(self.QUERY_FIELDS)} FROM Prof_Services_Request__c "
            f"WHERE CreatedDate >= {cutoff} ORDER BY CreatedDate ASC"
        )

    @staticmethod
    def to_record(row: Dict[str, Any]) -> RawProvisioningRecord:
        created_at, _ = parse_instant(row.get("CreatedDate"))
        return RawProvisioningRecord(
            record_id=str(row["Id"]),
            record_name=row.get("Name"),
            account_id=row.get("Account__c"),
            deployment_id=row.get("Deployment__c"),
            request_type=row.get("TenantRequestAction__c"),
            status=row.get("Status__c"),
            created_at=created_at,
            payload=row.get("Payload_Data__c"),
            source=CRMConnector.name,
        )

    def fetch_records(self, since_years: float) -> Iterator[RawProvisioningRecord]:
        data = self._request("/query", params={"q": self.build_query(since_cutoff(since_years))})
        pages = 1
        while True:
            for row in data.get("records", []):
                if not row.get("Id"):
                    logger.warning("crm.record_without_id", extra={"source": self.name})
                    continue
                yield self.to_record(row)

            next_url = data.get("nextRecordsUrl")
            if data.get("done", True) or not next_url:
                break
            data = self._request(next_url)
            pages += 1

        logger.info("crm.fetch_complete", extra={"pages": pages})


class LicensingConnector(HttpSourceConnector):
    """PS records from the licensing/metering API (page-numbered)."""

    name = "licensing"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        **kwargs,
    ):
        super().__init__(
            base_url or os.getenv("LICENSING_BASE_URL", ""),
            api_token or os.getenv("LICENSING_API_TOKEN"),
            **kwargs,
        )
        self.page_size = page_size

    @staticmethod
    def to_record(item: Dict[str, Any]) -> RawProvisioningRecord:
        created_at, _ = parse_instant(item.get("createdAt"))
        return RawProvisioningRecord(
            record_id=str(item["id"]),
            record_name=item.get("name"),
            account_id=item.get("accountId"),
            deployment_id=item.get("deploymentId"),
            request_type=item.get("requestType"),
            status=item.get("status"),
            created_at=created_at,
            payload=item.get("entitlements"),
            source=LicensingConnector.name,
        )

    def fetch_records(self, since_years: float) -> Iterator[RawProvisioningRecord]:
        since = since_cutoff(since_years).isoformat()
        page: Optional[int] = 1
        while page is not None:
            data = self._request(
                "/provisioning-records",
                params={"since": since, "page": page, "pageSize": self.page_size},
            )
            for item in data.get("items", []):
                if item.get("id") is None:
                    continue
                yield self.to_record(item)
            page = data.get("nextPage")


class StaticConnector(SourceConnector):
    """Records from memory or a JSON file (list of record objects)."""

    name = "static"

    def __init__(self, records: Union[Iterable[RawProvisioningRecord], str, Path]):
        if isinstance(records, (str, Path)):
            with open(records, "r") as f:
                raw = json.load(f)
            self._records: List[RawProvisioningRecord] = [
                RawProvisioningRecord.from_dict(r, source=self.name) for r in raw
            ]
        else:
            self._records = list(records)

    def fetch_records(self, since_years: float) -> Iterator[RawProvisioningRecord]:
        cutoff = since_cutoff(since_years)
        for record in self._records:
            if record.created_at is not None and record.created_at < cutoff:
                continue
            yield record


def get_source_connectors() -> List[SourceConnector]:
    """Connectors configured through the environment."""
    connectors: List[SourceConnector] = []
    if os.getenv("CRM_BASE_URL"):
        connectors.append(CRMConnector())
    if os.getenv("LICENSING_BASE_URL"):
        connectors.append(LicensingConnector())
    static_path = os.getenv("STATIC_RECORDS_PATH")
    if static_path:
        connectors.append(StaticConnector(static_path))
    if not connectors:
        logger.warning("No source connectors configured")
    return connectors
