"""
Event fan-out: push events and pull responses become cache mutations.

Every inbound payload is normalized into a list of cache operations
(upsert, delete, or invalidate-then-refetch) *before* anything is written,
so a payload that fails validation never partially mutates the cache.

Precedence between push and pull is not decided here: both paths stamp their
writes (event time or fetch time) and the cache's last-writer-wins rule
settles every race.
"""

import asyncio
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import structlog
from pydantic import TypeAdapter, ValidationError

from vitalsync.domain.models import (
    METRIC_UNITS,
    AlertRecord,
    EntityType,
    PatientRecord,
    UpdateSource,
    UtcDatetime,
    VitalMetric,
    VitalReading,
    make_key,
    split_key,
    utcnow,
)
from vitalsync.services.cache import SubscriptionCache
from vitalsync.services.result import (
    AuthenticationError,
    MalformedEventError,
    Result,
    VitalSyncError,
)

logger = structlog.get_logger(__name__)

_TIMESTAMP = TypeAdapter(UtcDatetime)
_OBJECT_LIST = TypeAdapter(list[dict[str, Any]])


class Operation(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"
    INVALIDATE = "invalidate"


@dataclass(frozen=True)
class Route:
    """How one push event type maps onto the cache."""

    entity_type: EntityType
    operation: Operation
    merge: bool = False


PUSH_ROUTES: dict[str, Route] = {
    "patient:updated": Route(EntityType.PATIENT, Operation.UPSERT, merge=True),
    "patient:assigned": Route(EntityType.PATIENT, Operation.INVALIDATE),
    "patient:deleted": Route(EntityType.PATIENT, Operation.DELETE),
    "alert:created": Route(EntityType.ALERT, Operation.UPSERT),
    "alert:updated": Route(EntityType.ALERT, Operation.UPSERT, merge=True),
    "alert:deleted": Route(EntityType.ALERT, Operation.DELETE),
    "vital_alert": Route(EntityType.VITALS, Operation.INVALIDATE),
    "appointment:updated": Route(EntityType.APPOINTMENT, Operation.INVALIDATE),
    "notification:created": Route(EntityType.NOTIFICATION, Operation.UPSERT),
    "notification:deleted": Route(EntityType.NOTIFICATION, Operation.DELETE),
    "patientAllocationUpdated": Route(EntityType.ALLOCATION, Operation.UPSERT, merge=True),
    "patientAllocationDeleted": Route(EntityType.ALLOCATION, Operation.DELETE),
}


@dataclass(frozen=True)
class CacheOp:
    operation: Operation
    key: str
    value: Any = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PullResult:
    """A fetched payload stamped with the time it was fetched."""

    entity_type: EntityType
    entity_id: str
    payload: Any
    fetched_at: datetime


class PullSource(Protocol):
    """Request/response access to the system of record."""

    async def fetch(
        self, entity_type: EntityType, entity_id: str
    ) -> Result[PullResult, VitalSyncError]: ...


# Normalization


def normalize_collection(payload: Any) -> list[dict[str, Any]]:
    """
    Reduce the API's response shapes to one canonical list of objects.

    Accepts a bare list, `{"data": [...]}`, `{"items": [...]}`,
    `{"results": [...]}`, a single wrapped object, a single object, or None.
    """
    if payload is None:
        return []
    if isinstance(payload, dict):
        for wrapper in ("data", "items", "results"):
            inner = payload.get(wrapper)
            if isinstance(inner, list | dict):
                return normalize_collection(inner)
        return [payload]
    return _OBJECT_LIST.validate_python(payload)


def _numeric(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, str) and "/" in value:
        value = value.split("/", 1)[0]  # "120/80" -> systolic
    number = float(value)
    return None if math.isnan(number) else number


def normalize_vitals(patient_id: str, payload: Any) -> list[VitalReading]:
    """
    Expand a vitals response into one reading per metric.

    Records are either narrow (`{"metric", "value", "recorded_at"}`) or the
    wide shape the vitals endpoint returns (`{"heart_rate", "temperature", ...,
    "recorded_at"}`).
    """
    readings: list[VitalReading] = []
    for record in normalize_collection(payload):
        if "metric" in record:
            readings.append(VitalReading.model_validate({"patient_id": patient_id, **record}))
            continue

        recorded_at = record.get("recorded_at") or record.get("recordedAt") or record.get(
            "created_at"
        )
        if recorded_at is None:
            raise MalformedEventError("vitals record without recorded_at")
        for metric in VitalMetric:
            if metric.value not in record:
                continue
            readings.append(
                VitalReading(
                    patient_id=patient_id,
                    metric=metric,
                    value=_numeric(record[metric.value]),
                    unit=METRIC_UNITS[metric],
                    recorded_at=_TIMESTAMP.validate_python(recorded_at),
                )
            )
    readings.sort(key=lambda r: (r.recorded_at, r.metric.value))
    return readings


def _extract_id(payload: Any, *fields: str) -> str:
    """Identity of a payload that is either a bare id or an object carrying one."""
    if isinstance(payload, str | int) and not isinstance(payload, bool):
        value: Any = payload
    elif isinstance(payload, dict):
        value = next((payload[f] for f in fields if payload.get(f) not in (None, "")), None)
        if isinstance(value, dict):
            value = value.get("_id", value.get("id"))
    else:
        value = None
    if value is None or str(value) == "":
        raise MalformedEventError(f"payload has no identity ({', '.join(fields)})")
    return str(value)


def _event_time(payload: Any, received_at: datetime) -> datetime:
    if isinstance(payload, dict):
        for field_name in ("updated_at", "updatedAt"):
            if payload.get(field_name):
                return _TIMESTAMP.validate_python(payload[field_name])
    return received_at


class EventRouter:
    """
    Normalizes push events and pull results into cache writes.

    Invalidation-only events schedule a debounced pull for the affected key;
    the pull's result comes back through `on_pull_result` like any other.
    """

    def __init__(
        self,
        cache: SubscriptionCache,
        source: PullSource | None = None,
        debounce_seconds: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
        on_auth_failure: Callable[[AuthenticationError], None] | None = None,
    ) -> None:
        self.cache = cache
        self.source = source
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._on_auth_failure = on_auth_failure
        self._pending: dict[str, asyncio.Task[None]] = {}
        self._in_flight: set[str] = set()
        self._stale: set[str] = set()
        self.unauthorized: AuthenticationError | None = None
        self.logger = logger.bind(component="event_router")

        cache.add_eviction_hook(self._on_evicted)

    # Push path

    def on_push(self, event_type: str, payload: Any) -> bool:
        """Apply one push event. Returns False when the event was ignored or dropped."""
        route = PUSH_ROUTES.get(event_type)
        if route is None:
            self.logger.info("push_event_ignored", event_type=event_type)
            return False

        try:
            ops = self._normalize_push(route, payload)
        except (MalformedEventError, ValidationError, ValueError, TypeError) as e:
            self.logger.warning("push_event_dropped", event_type=event_type, error=str(e))
            return False

        self._apply(ops, UpdateSource.PUSH)
        self.logger.debug("push_event_applied", event_type=event_type, operations=len(ops))
        return True

    def _normalize_push(self, route: Route, payload: Any) -> list[CacheOp]:
        received_at = self._clock()

        if route.entity_type is EntityType.VITALS:
            # vital_alert: the patient's vitals and alert lists changed server-side
            patient_id = _extract_id(payload, "patient_id", "patientId")
            keys = [
                make_key(EntityType.VITALS, patient_id),
                make_key(EntityType.TRENDS, patient_id),
                make_key(EntityType.ALERTS, patient_id),
                make_key(EntityType.ALERTS, "all"),
            ]
            return [CacheOp(Operation.INVALIDATE, key) for key in keys]

        id_fields = ("_id", "id", "patient_id") if route.entity_type is EntityType.PATIENT else ("_id", "id")
        entity_id = _extract_id(payload, *id_fields)
        key = make_key(route.entity_type, entity_id)

        if route.operation is Operation.INVALIDATE:
            return [CacheOp(Operation.INVALIDATE, key)]

        updated_at = _event_time(payload, received_at)
        if route.operation is Operation.DELETE:
            return [CacheOp(Operation.DELETE, key, updated_at=updated_at)]

        if not isinstance(payload, dict):
            raise MalformedEventError(f"{route.entity_type.value} upsert needs an object payload")
        try:
            value = self._build_value(route.entity_type, key, payload, route.merge)
        except ValidationError:
            if not route.merge:
                raise
            # A partial update for an entity we have never seen: fetch it whole instead
            return [CacheOp(Operation.INVALIDATE, key)]
        return [CacheOp(Operation.UPSERT, key, value=value, updated_at=updated_at)]

    def _build_value(
        self, entity_type: EntityType, key: str, payload: dict[str, Any], merge: bool
    ) -> Any:
        existing = self.cache.get(key) if merge else None

        if entity_type is EntityType.ALERT:
            if existing is not None:
                return AlertRecord.model_validate(
                    {**existing.model_dump(), **AlertRecord.canonicalize(payload)}
                )
            return AlertRecord.model_validate(payload)

        if entity_type is EntityType.PATIENT:
            if existing is not None:
                return PatientRecord.model_validate(
                    {**existing.model_dump(), **PatientRecord.canonicalize(payload)}
                )
            return PatientRecord.model_validate(payload)

        _, entity_id = split_key(key)
        record = {k: v for k, v in payload.items() if k != "_id"}
        record["id"] = entity_id
        if existing is not None:
            return {**existing, **record}
        return record

    # Pull path

    def on_pull_result(
        self, entity_type: EntityType, entity_id: str, payload: Any, fetched_at: datetime
    ) -> int:
        """
        Apply a fetched snapshot stamped with `fetched_at`. Returns the number of applied writes.

        The result is discarded when the key it was fetched for has no
        observers and is not pinned.
        """
        scope_key = make_key(entity_type, entity_id)
        if not self.cache.is_interested(scope_key):
            self.logger.debug("pull_result_discarded", key=scope_key)
            return 0

        try:
            ops = self._normalize_pull(entity_type, entity_id, payload, fetched_at)
        except (MalformedEventError, ValidationError, ValueError, TypeError) as e:
            self.logger.warning("pull_result_dropped", key=scope_key, error=str(e))
            return 0

        applied = self._apply(ops, UpdateSource.PULL)
        self.logger.debug("pull_result_applied", key=scope_key, applied=applied, total=len(ops))
        return applied

    def _normalize_pull(
        self, entity_type: EntityType, entity_id: str, payload: Any, fetched_at: datetime
    ) -> list[CacheOp]:
        scope_key = make_key(entity_type, entity_id)

        if entity_type is EntityType.ALERTS:
            return self._normalize_alert_list(entity_id, payload, fetched_at)

        if entity_type is EntityType.VITALS:
            readings = tuple(normalize_vitals(entity_id, payload))
            return [CacheOp(Operation.UPSERT, scope_key, value=readings, updated_at=fetched_at)]

        if entity_type is EntityType.TRENDS:
            items = normalize_collection(payload)
            trends = items[0] if items else {}
            return [CacheOp(Operation.UPSERT, scope_key, value=trends, updated_at=fetched_at)]

        items = normalize_collection(payload)
        if not items:
            return [CacheOp(Operation.DELETE, scope_key, updated_at=fetched_at)]
        value = self._build_value(entity_type, scope_key, items[0], merge=False)
        return [CacheOp(Operation.UPSERT, scope_key, value=value, updated_at=fetched_at)]

    def _normalize_alert_list(
        self, scope: str, payload: Any, fetched_at: datetime
    ) -> list[CacheOp]:
        if self._list_superseded(scope, fetched_at):
            # A newer list already settled this scope; applying this one could revive dismissed alerts
            self.logger.debug("pull_result_superseded", scope=scope, fetched_at=fetched_at.isoformat())
            return []

        ops: list[CacheOp] = []
        seen: set[str] = set()
        for raw in normalize_collection(payload):
            try:
                alert = AlertRecord.model_validate(raw)
            except ValidationError as e:
                # Keep the id so reconciliation does not delete an alert we merely failed to parse
                raw_id = raw.get("_id", raw.get("id"))
                if raw_id is not None:
                    seen.add(str(raw_id))
                self.logger.warning("pulled_alert_skipped", scope=scope, error=str(e))
                continue
            if scope != "all" and alert.patient_id != scope:
                continue
            seen.add(alert.id)
            if scope == "all" and self._list_superseded(alert.patient_id, fetched_at):
                continue
            ops.append(
                CacheOp(
                    Operation.UPSERT,
                    make_key(EntityType.ALERT, alert.id),
                    value=alert,
                    updated_at=fetched_at,
                )
            )

        # Anything the server no longer lists, and that was not written after the fetch, is gone
        for entry in self.cache.live_entries(f"{EntityType.ALERT.value}:"):
            alert = entry.value
            if scope != "all" and alert.patient_id != scope:
                continue
            if alert.id not in seen and entry.updated_at < fetched_at:
                ops.append(CacheOp(Operation.DELETE, entry.key, updated_at=fetched_at))

        ops.append(
            CacheOp(
                Operation.UPSERT,
                make_key(EntityType.ALERTS, scope),
                value=tuple(sorted(seen)),
                updated_at=fetched_at,
            )
        )
        return ops

    def _list_superseded(self, scope: str, fetched_at: datetime) -> bool:
        for key in {make_key(EntityType.ALERTS, "all"), make_key(EntityType.ALERTS, scope)}:
            entry = self.cache.get_entry(key)
            if entry is not None and entry.updated_at > fetched_at:
                return True
        return False

    # Applying

    def _apply(self, ops: Iterable[CacheOp], source: UpdateSource) -> int:
        applied = 0
        for op in ops:
            if op.operation is Operation.INVALIDATE:
                self.invalidate(op.key)
                continue
            updated_at = op.updated_at if op.updated_at is not None else self._clock()
            if op.operation is Operation.DELETE:
                applied += self.cache.delete(op.key, updated_at, source)
            else:
                applied += self.cache.set(op.key, op.value, updated_at, source)
        return applied

    # Invalidation and refetch

    def invalidate(self, key: str) -> None:
        """Schedule a pull for `key` without touching its cached value."""
        if not self.cache.is_interested(key):
            self.logger.debug("invalidation_skipped", key=key, reason="no_observers")
            return
        if key in self._pending:
            return  # collapsed into the pull already scheduled
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning("invalidation_skipped", key=key, reason="no_running_loop")
            return

        task = loop.create_task(self._pull_after_debounce(key), name=f"pull:{key}")
        self._pending[key] = task

        def _done(finished: asyncio.Task[None], key: str = key) -> None:
            if self._pending.get(key) is finished:
                del self._pending[key]

        task.add_done_callback(_done)

    async def _pull_after_debounce(self, key: str) -> None:
        if self.debounce_seconds > 0:
            await asyncio.sleep(self.debounce_seconds)
        self._in_flight.add(key)
        try:
            await self.pull(key)
        finally:
            self._in_flight.discard(key)

    async def pull(self, key: str) -> bool:
        """Fetch `key` now and apply the result. Returns False on failure (cache untouched)."""
        if self.source is None:
            self.logger.warning("pull_skipped", key=key, reason="no_pull_source")
            return False
        if self.unauthorized is not None:
            self.logger.debug("pull_skipped", key=key, reason="unauthorized")
            return False

        kind, entity_id = split_key(key)
        try:
            entity_type = EntityType(kind)
        except ValueError:
            self.logger.warning("pull_skipped", key=key, reason="unknown_entity_type")
            return False

        result = await self.source.fetch(entity_type, entity_id)
        if result.is_err():
            error = result.unwrap_err()
            if isinstance(error, AuthenticationError):
                self.logger.error("pull_unauthorized", key=key)
                if self.unauthorized is None:
                    self.unauthorized = error
                if self._on_auth_failure is not None:
                    self._on_auth_failure(error)
                return False
            # Last-known value stays visible; the caller decides when to retry
            self._stale.add(key)
            self.logger.warning("pull_failed", key=key, error=str(error))
            return False

        pulled = result.unwrap()
        self._stale.discard(key)
        self.on_pull_result(pulled.entity_type, pulled.entity_id, pulled.payload, pulled.fetched_at)
        return True

    async def refresh(self, keys: Iterable[str]) -> dict[str, bool]:
        """Pull several keys concurrently."""
        keys = list(dict.fromkeys(keys))
        outcomes = await asyncio.gather(*(self.pull(key) for key in keys))
        return dict(zip(keys, outcomes, strict=True))

    def is_stale(self, key: str) -> bool:
        """Whether the last pull for `key` failed and the cached value is last-known data."""
        return key in self._stale

    def pending_pulls(self) -> list[str]:
        return sorted(self._pending)

    def _on_evicted(self, key: str) -> None:
        self._stale.discard(key)
        task = self._pending.get(key)
        if task is not None and key not in self._in_flight:
            task.cancel()
            del self._pending[key]
            self.logger.debug("pending_pull_cancelled", key=key)

    async def close(self) -> None:
        tasks = list(self._pending.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
