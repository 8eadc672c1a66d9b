"""
Tests for the event fan-out router.

Covers:
- Push routing (upsert, merge, delete, invalidate) and dropped payloads
- Pull normalization of the API's response shapes
- Alert list reconciliation against the fetch time
- Debounced, collapsed invalidation pulls and their cancellation on eviction
- Push/pull races settled by timestamp
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest
from fakes import T0, FakeDashboardAPI, ManualClock, alert_payload, settle

from vitalsync.domain.models import (
    AlertRecord,
    EntityType,
    PatientRecord,
    Severity,
    UpdateSource,
    VitalMetric,
)
from vitalsync.services.alert_lifecycle import AlertLifecycleManager
from vitalsync.services.cache import DELETED, SubscriptionCache
from vitalsync.services.event_router import (
    PUSH_ROUTES,
    EventRouter,
    normalize_collection,
    normalize_vitals,
)
from vitalsync.services.result import AuthenticationError, PullError


def later(seconds: float) -> str:
    return (T0 + timedelta(seconds=seconds)).isoformat()


@pytest.fixture
def cache() -> SubscriptionCache:
    return SubscriptionCache()


@pytest.fixture
def router(cache: SubscriptionCache, api: FakeDashboardAPI, clock: ManualClock) -> EventRouter:
    return EventRouter(cache, source=api, debounce_seconds=0.01, clock=clock)


class TestNormalization:
    @pytest.mark.parametrize(
        "payload",
        [
            [{"_id": "a1"}],
            {"data": [{"_id": "a1"}]},
            {"items": [{"_id": "a1"}]},
            {"results": [{"_id": "a1"}]},
            {"data": {"_id": "a1"}},
            {"_id": "a1"},
        ],
    )
    def test_collection_shapes(self, payload: Any) -> None:
        assert normalize_collection(payload) == [{"_id": "a1"}]

    def test_none_is_empty(self) -> None:
        assert normalize_collection(None) == []

    def test_non_object_items_are_rejected(self) -> None:
        with pytest.raises(ValueError):
            normalize_collection(["a1", "a2"])

    def test_wide_vitals_records(self) -> None:
        payload = {
            "data": [
                {
                    "heart_rate": 72,
                    "blood_pressure": "128/84",
                    "temperature": None,
                    "oxygen_saturation": 97,
                    "recorded_at": later(60),
                },
                {"heart_rate": 70, "recordedAt": later(0)},
            ]
        }

        readings = normalize_vitals("p1", payload)

        assert [r.recorded_at for r in readings] == sorted(r.recorded_at for r in readings)
        bp = next(r for r in readings if r.metric is VitalMetric.BLOOD_PRESSURE)
        assert bp.value == 128.0
        assert bp.unit == "mmHg"
        temperature = next(r for r in readings if r.metric is VitalMetric.TEMPERATURE)
        assert not temperature.has_value
        assert len([r for r in readings if r.metric is VitalMetric.HEART_RATE]) == 2

    def test_narrow_vitals_records(self) -> None:
        readings = normalize_vitals(
            "p1", [{"metric": "heart_rate", "value": 88, "unit": "BPM", "recorded_at": later(0)}]
        )
        assert readings[0].patient_id == "p1"
        assert readings[0].value == 88.0


class TestPushRouting:
    def test_route_table_covers_alert_events(self) -> None:
        assert set(PUSH_ROUTES) >= {"alert:created", "alert:updated", "alert:deleted", "vital_alert"}

    def test_alert_created_upserts(self, router: EventRouter, cache: SubscriptionCache) -> None:
        assert router.on_push("alert:created", alert_payload("a1", severity="critical"))

        alert = cache.get("alert:a1")
        assert isinstance(alert, AlertRecord)
        assert alert.severity is Severity.CRITICAL
        assert cache.get_entry("alert:a1").source is UpdateSource.PUSH

    def test_alert_updated_merges_partial_payload(
        self, router: EventRouter, cache: SubscriptionCache
    ) -> None:
        router.on_push("alert:created", alert_payload("a1", message="HR 120"))
        router.on_push(
            "alert:updated", {"_id": "a1", "acknowledged": True, "updated_at": later(30)}
        )

        alert = cache.get("alert:a1")
        assert alert.message == "HR 120"
        assert alert.acknowledged_at == T0 + timedelta(seconds=30)
        assert cache.get_entry("alert:a1").updated_at == T0 + timedelta(seconds=30)

    def test_delete_with_bare_id(self, router: EventRouter, cache: SubscriptionCache) -> None:
        seen: list[Any] = []
        cache.subscribe("alert:a1", lambda k, v: seen.append(v))
        router.on_push("alert:created", alert_payload("a1"))

        assert router.on_push("alert:deleted", "a1")

        assert seen[-1] is DELETED
        assert cache.get("alert:a1") is None

    def test_patient_updated_merges(self, router: EventRouter, cache: SubscriptionCache) -> None:
        cache.set(
            "patient:p1",
            PatientRecord(id="p1", full_name="Ada Okafor", current_medications=("a",)),
            T0 - timedelta(minutes=1),
            UpdateSource.PULL,
        )

        router.on_push("patient:updated", {"_id": "p1", "current_medications": ["a", "b"]})

        patient = cache.get("patient:p1")
        assert patient.full_name == "Ada Okafor"
        assert patient.medication_count == 2

    def test_generic_entities_are_dicts(self, router: EventRouter, cache: SubscriptionCache) -> None:
        router.on_push("notification:created", {"_id": "n1", "message": "Lab ready"})
        router.on_push("patientAllocationUpdated", {"_id": "x1", "nurse": "n7"})
        router.on_push("patientAllocationUpdated", {"_id": "x1", "doctor": "d2"})

        assert cache.get("notification:n1") == {"id": "n1", "message": "Lab ready"}
        assert cache.get("allocation:x1") == {"id": "x1", "nurse": "n7", "doctor": "d2"}

    @pytest.mark.parametrize(
        "event_type,payload",
        [
            ("alert:created", {"message": "no id"}),
            ("alert:created", {"_id": "a1", "patient_id": "p1", "type": "catastrophic"}),
            ("alert:created", ["not", "an", "object"]),
            ("alert:deleted", {}),
            ("vital_alert", {"heart_rate": 150}),
        ],
    )
    def test_malformed_payloads_are_dropped(
        self, router: EventRouter, cache: SubscriptionCache, event_type: str, payload: Any
    ) -> None:
        assert not router.on_push(event_type, payload)
        assert list(cache.live_entries()) == []

    def test_unknown_event_type_is_ignored(self, router: EventRouter) -> None:
        assert not router.on_push("billing:updated", {"_id": "b1"})

    def test_older_push_loses_to_newer_state(self, router: EventRouter, cache: SubscriptionCache) -> None:
        router.on_push("alert:created", alert_payload("a1", message="new", updated_at=later(20)))
        router.on_push("alert:created", alert_payload("a1", message="old", updated_at=later(10)))

        assert cache.get("alert:a1").message == "new"


class TestPullResults:
    def test_uninterested_key_is_discarded(self, router: EventRouter, cache: SubscriptionCache) -> None:
        applied = router.on_pull_result(EntityType.PATIENT, "p1", {"_id": "p1"}, T0)
        assert applied == 0
        assert cache.get("patient:p1") is None

    def test_patient_pull(self, router: EventRouter, cache: SubscriptionCache) -> None:
        cache.subscribe("patient:p1", lambda k, v: None)

        router.on_pull_result(EntityType.PATIENT, "p1", {"data": {"_id": "p1", "full_name": "Ada"}}, T0)

        assert cache.get("patient:p1").full_name == "Ada"
        assert cache.get_entry("patient:p1").source is UpdateSource.PULL

    def test_vitals_pull_stores_sorted_readings(self, router: EventRouter, cache: SubscriptionCache) -> None:
        cache.subscribe("vitals:p1", lambda k, v: None)

        router.on_pull_result(
            EntityType.VITALS,
            "p1",
            [{"heart_rate": 90, "recorded_at": later(60)}, {"heart_rate": 80, "recorded_at": later(0)}],
            T0 + timedelta(minutes=5),
        )

        readings = cache.get("vitals:p1")
        assert [r.value for r in readings] == [80.0, 90.0]

    def test_alert_list_reconciles_missing_alerts(
        self, router: EventRouter, cache: SubscriptionCache
    ) -> None:
        cache.pin("alerts:all")
        router.on_pull_result(
            EntityType.ALERTS, "all", [alert_payload("a1"), alert_payload("a2")], T0
        )

        router.on_pull_result(EntityType.ALERTS, "all", [alert_payload("a2")], T0 + timedelta(seconds=10))

        assert cache.get("alert:a1") is None
        assert cache.get("alert:a2") is not None
        assert cache.get("alerts:all") == ("a2",)

    def test_reconciliation_spares_alerts_newer_than_fetch(
        self, router: EventRouter, cache: SubscriptionCache
    ) -> None:
        cache.pin("alerts:all")
        # Pushed while the pull was in flight
        router.on_push("alert:created", alert_payload("a9", updated_at=later(20)))

        router.on_pull_result(EntityType.ALERTS, "all", [], T0 + timedelta(seconds=10))

        assert cache.get("alert:a9") is not None

    def test_patient_scoped_reconciliation(self, router: EventRouter, cache: SubscriptionCache) -> None:
        cache.pin("alerts:all")
        cache.pin("alerts:p1")
        router.on_pull_result(
            EntityType.ALERTS, "all", [alert_payload("a1", "p1"), alert_payload("a2", "p2")], T0
        )

        router.on_pull_result(EntityType.ALERTS, "p1", [], T0 + timedelta(seconds=10))

        assert cache.get("alert:a1") is None
        assert cache.get("alert:a2") is not None

    def test_unparseable_alert_is_not_reconciled_away(
        self, router: EventRouter, cache: SubscriptionCache
    ) -> None:
        cache.pin("alerts:all")
        router.on_pull_result(EntityType.ALERTS, "all", [alert_payload("a1")], T0)

        broken = alert_payload("a1", severity="unknown")
        router.on_pull_result(EntityType.ALERTS, "all", [broken], T0 + timedelta(seconds=10))

        assert cache.get("alert:a1") is not None

    def test_older_alert_list_is_discarded(self, router: EventRouter, cache: SubscriptionCache) -> None:
        cache.pin("alerts:all")
        router.on_pull_result(EntityType.ALERTS, "all", [], T0 + timedelta(seconds=10))

        # Fetched before the newer list; must not bring dismissed alerts back
        assert router.on_pull_result(EntityType.ALERTS, "all", [alert_payload("a1")], T0) == 0

        assert cache.get("alert:a1") is None
        assert cache.get("alerts:all") == ()

    def test_stale_pull_does_not_override_push(self, router: EventRouter, cache: SubscriptionCache) -> None:
        cache.pin("alerts:all")
        router.on_push(
            "alert:updated",
            alert_payload("a1", acknowledged=True, updated_at=later(20)),
        )

        router.on_pull_result(EntityType.ALERTS, "all", [alert_payload("a1")], T0 + timedelta(seconds=10))

        assert cache.get("alert:a1").is_acknowledged


class TestInvalidation:
    async def test_burst_collapses_into_one_pull(
        self, router: EventRouter, cache: SubscriptionCache, api: FakeDashboardAPI
    ) -> None:
        cache.subscribe("appointment:x1", lambda k, v: None)
        api.payloads["appointment:x1"] = {"_id": "x1", "status": "confirmed"}

        for _ in range(5):
            router.on_push("appointment:updated", {"_id": "x1"})
        await asyncio.sleep(0.05)

        assert api.fetches == ["appointment:x1"]
        assert cache.get("appointment:x1") == {"id": "x1", "status": "confirmed"}

    async def test_vital_alert_invalidates_interested_keys_only(
        self, router: EventRouter, cache: SubscriptionCache, api: FakeDashboardAPI
    ) -> None:
        cache.subscribe("vitals:p1", lambda k, v: None)
        cache.pin("alerts:all")

        assert router.on_push("vital_alert", {"patient_id": {"_id": "p1"}, "metric": "heart_rate"})
        await asyncio.sleep(0.05)

        assert sorted(api.fetches) == ["alerts:all", "vitals:p1"]

    async def test_invalidate_does_not_touch_cached_value(
        self, router: EventRouter, cache: SubscriptionCache, api: FakeDashboardAPI
    ) -> None:
        cache.subscribe("patient:p1", lambda k, v: None)
        cache.set("patient:p1", PatientRecord(id="p1"), T0, UpdateSource.PULL)
        api.payloads["patient:p1"] = {"_id": "p1", "full_name": "Ada"}

        router.on_push("patient:assigned", {"patient_id": "p1"})

        assert cache.get("patient:p1") == PatientRecord(id="p1")
        assert router.pending_pulls() == ["patient:p1"]

        await asyncio.sleep(0.05)
        assert cache.get("patient:p1").full_name == "Ada"

    async def test_unsubscribe_cancels_pending_pull(
        self, router: EventRouter, cache: SubscriptionCache, api: FakeDashboardAPI
    ) -> None:
        unsubscribe = cache.subscribe("appointment:x1", lambda k, v: None)
        router.invalidate("appointment:x1")
        assert router.pending_pulls() == ["appointment:x1"]

        unsubscribe()
        await asyncio.sleep(0.05)

        assert api.fetches == []
        assert router.pending_pulls() == []

    async def test_in_flight_pull_completes_but_is_discarded(
        self, router: EventRouter, cache: SubscriptionCache, api: FakeDashboardAPI
    ) -> None:
        api.gate = asyncio.Event()
        api.payloads["patient:p1"] = {"_id": "p1"}
        unsubscribe = cache.subscribe("patient:p1", lambda k, v: None)
        router.invalidate("patient:p1")
        await asyncio.sleep(0.03)
        assert api.fetches == ["patient:p1"]

        unsubscribe()
        api.gate.set()
        await settle()

        assert cache.get_entry("patient:p1") is None

    async def test_failed_pull_marks_key_stale(
        self, router: EventRouter, cache: SubscriptionCache, api: FakeDashboardAPI
    ) -> None:
        cache.subscribe("patient:p1", lambda k, v: None)
        cache.set("patient:p1", PatientRecord(id="p1", full_name="Ada"), T0, UpdateSource.PULL)
        api.errors["patient:p1"] = PullError("timeout")

        assert not await router.pull("patient:p1")

        assert router.is_stale("patient:p1")
        assert cache.get("patient:p1").full_name == "Ada"

        del api.errors["patient:p1"]
        api.payloads["patient:p1"] = {"_id": "p1", "full_name": "Ada O."}
        assert await router.pull("patient:p1")
        assert not router.is_stale("patient:p1")

    async def test_auth_failure_is_reported(
        self, cache: SubscriptionCache, api: FakeDashboardAPI, clock: ManualClock
    ) -> None:
        failures: list[AuthenticationError] = []
        router = EventRouter(cache, source=api, clock=clock, on_auth_failure=failures.append)
        cache.pin("alerts:all")
        api.errors["alerts:all"] = AuthenticationError("expired")

        assert not await router.pull("alerts:all")

        assert len(failures) == 1
        assert not router.is_stale("alerts:all")

        # The rejected credential is not retried
        del api.errors["alerts:all"]
        assert await router.refresh(["alerts:all", "patient:p1"]) == {"alerts:all": False, "patient:p1": False}
        assert api.fetches == ["alerts:all"]
        assert router.unauthorized is failures[0]


async def test_push_pull_race_converges_with_lifecycle(
    cache: SubscriptionCache, api: FakeDashboardAPI, clock: ManualClock
) -> None:
    """A slow pull started before an acknowledgment cannot undo it."""
    manager = AlertLifecycleManager(cache, intents=api, clock=clock)
    router = EventRouter(cache, source=api, clock=clock)
    cache.pin("alerts:all")
    router.on_pull_result(EntityType.ALERTS, "all", [alert_payload("a1", severity="critical")], T0)
    api.payloads["alerts:all"] = [alert_payload("a1", severity="critical")]

    clock.advance(5)
    api.gate = asyncio.Event()
    pull = asyncio.create_task(router.pull("alerts:all"))
    await settle()

    clock.advance(5)
    manager.acknowledge("a1")
    api.gate.set()
    await pull
    await manager.drain_intents()

    assert cache.get("alert:a1").is_acknowledged
    assert manager.summary("p1").critical_count == 0
