"""
REST client for the dashboard API.

Implements both seams the engine needs from the system of record: the
`PullSource` used by the event router, and the `AlertIntentSink` used by the
alert lifecycle manager. Expected failures come back as `Result` errors;
nothing here raises for a bad response.
"""

from typing import Any

import httpx
import structlog

from vitalsync.config import APIConfig
from vitalsync.domain.models import EntityType, utcnow
from vitalsync.services.event_router import PullResult
from vitalsync.services.result import (
    AuthenticationError,
    PullError,
    Result,
    VitalSyncError,
)

logger = structlog.get_logger(__name__)


def endpoint_for(entity_type: EntityType, entity_id: str) -> tuple[str, dict[str, str]]:
    """Path and query parameters that fetch one cache key."""
    match entity_type:
        case EntityType.PATIENT:
            return f"/patients/{entity_id}", {}
        case EntityType.VITALS:
            return f"/patients/{entity_id}/vitals", {}
        case EntityType.TRENDS:
            return f"/patients/{entity_id}/vitals/trends", {}
        case EntityType.ALERTS:
            if entity_id == "all":
                return "/alerts", {}
            return "/alerts", {"patient_id": entity_id}
        case EntityType.ALERT:
            return f"/alerts/{entity_id}", {}
        case EntityType.APPOINTMENT:
            return f"/appointments/{entity_id}", {}
        case EntityType.NOTIFICATION:
            return f"/notifications/{entity_id}", {}
        case EntityType.ALLOCATION:
            return f"/allocations/{entity_id}", {}
    raise ValueError(f"{entity_type.value} is not fetched from the API")


class DashboardAPIClient:
    """Async client over `httpx.AsyncClient` with bearer authentication."""

    def __init__(
        self,
        config: APIConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or APIConfig()
        headers = {"Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=headers,
            timeout=self.config.timeout_seconds,
            transport=transport,
        )
        self.logger = logger.bind(component="dashboard_api")

    async def __aenter__(self) -> "DashboardAPIClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, path: str, params: dict[str, str] | None = None
    ) -> Result[Any, VitalSyncError]:
        try:
            response = await self._client.request(method, path, params=params)
        except httpx.HTTPError as e:
            self.logger.warning("api_request_failed", method=method, path=path, error=str(e))
            return Result.err(PullError(f"{method} {path} failed: {e}"))

        if response.status_code in (401, 403):
            return Result.err(AuthenticationError(f"{method} {path} rejected the credential"))
        if response.status_code == 404 and method == "GET":
            # Entity is gone: an empty payload lets the router record the deletion
            return Result.ok([])
        if response.is_error:
            return Result.err(
                PullError(
                    f"{method} {path} returned {response.status_code}",
                    status_code=response.status_code,
                )
            )

        if not response.content:
            return Result.ok({})
        try:
            payload = response.json()
        except ValueError as e:
            return Result.err(PullError(f"{method} {path} returned invalid JSON: {e}"))
        return Result.ok(payload if payload is not None else [])

    async def fetch(
        self, entity_type: EntityType, entity_id: str
    ) -> Result[PullResult, VitalSyncError]:
        """Fetch the current snapshot for one key, stamped with the fetch time."""
        try:
            path, params = endpoint_for(entity_type, entity_id)
        except ValueError as e:
            return Result.err(PullError(str(e)))

        # Stamp before the request: anything pushed while it is in flight is newer
        fetched_at = utcnow()
        result = await self._request("GET", path, params or None)
        if result.is_err():
            return Result.err(result.unwrap_err())

        payload = result.unwrap()
        self.logger.debug("api_fetched", entity_type=entity_type.value, entity_id=entity_id)
        return Result.ok(PullResult(entity_type, entity_id, payload, fetched_at))

    async def acknowledge_alert(self, alert_id: str) -> Result[str, VitalSyncError]:
        result = await self._request("PUT", f"/alerts/{alert_id}/acknowledge")
        if result.is_err():
            return Result.err(result.unwrap_err())
        return Result.ok(alert_id)

    async def dismiss_alert(self, alert_id: str) -> Result[str, VitalSyncError]:
        result = await self._request("DELETE", f"/alerts/{alert_id}")
        if result.is_err():
            return Result.err(result.unwrap_err())
        return Result.ok(alert_id)
