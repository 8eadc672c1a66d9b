"""
Dashboard session: the composition root for one signed-in user.

Wires one subscription cache shared by every open view to the event router,
the alert lifecycle manager, the connection supervisor, the REST client and
the local alert store:

1. Restore the last persisted alert list (stamped with its write time)
2. Keep the push channel up and replay subscriptions on every reconnect
3. Pull every pinned key after each (re)connect
4. Periodically refetch observed keys as the caller-side retry for failed pulls

Views interact only through `watch_*` subscriptions and `view_*` queries.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from vitalsync.adapters.http_api import DashboardAPIClient
from vitalsync.adapters.local_store import LocalAlertStore
from vitalsync.adapters.websocket import WebSocketTransport
from vitalsync.config import AppConfig, get_config
from vitalsync.domain.models import (
    AlertRecord,
    EntityType,
    PatientStatusSummary,
    VitalMetric,
    VitalSnapshot,
    make_key,
    split_key,
    utcnow,
)
from vitalsync.services.alert_lifecycle import AlertIntentSink, AlertLifecycleManager
from vitalsync.services.cache import CacheEntry, Observer, SubscriptionCache
from vitalsync.services.classifier import classify_series
from vitalsync.services.connection import ConnectionState, ConnectionSupervisor, PushEvent, PushTransport
from vitalsync.services.event_router import EventRouter, PullSource
from vitalsync.services.result import (
    AuthenticationError,
    ReconnectExhaustedError,
    VitalSyncError,
)
from vitalsync.services.risk_scorer import RiskScorer

logger = structlog.get_logger(__name__)

ALL_ALERTS_KEY = make_key(EntityType.ALERTS, "all")

Unwatch = Callable[[], Awaitable[None]]


class DashboardSession:
    """
    One cache, one push connection and one refresh loop per session.

    `api` must provide both `fetch` (pulls) and `acknowledge_alert` /
    `dismiss_alert` (intents); the default is the REST client built from
    configuration.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        api: Any | None = None,
        transport: PushTransport | None = None,
        store: LocalAlertStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or get_config()
        self.logger = logger.bind(component="dashboard_session")
        self._clock = clock

        self._owns_api = api is None
        self.api = api or DashboardAPIClient(self.config.api)
        source: PullSource = self.api
        intents: AlertIntentSink = self.api

        self.cache = SubscriptionCache()
        self.scorer = RiskScorer(self.config.risk)
        self.lifecycle = AlertLifecycleManager(
            self.cache,
            self.scorer,
            intents,
            clock=clock,
            tombstone_retention=timedelta(seconds=self.config.cache.tombstone_retention_seconds),
        )
        self.router = EventRouter(
            self.cache,
            source=source,
            debounce_seconds=self.config.cache.invalidation_debounce_seconds,
            clock=clock,
            on_auth_failure=self._on_auth_failure,
        )
        self.supervisor = ConnectionSupervisor(
            transport or WebSocketTransport(self.config.api.socket_url),
            on_event=self._on_push_event,
            config=self.config.connection,
            credential=lambda: self.config.api.token,
        )
        self.supervisor.add_connected_hook(self.refresh_pinned)

        if store is None and self.config.persistence.enabled:
            store = LocalAlertStore(self.config.persistence.path)
        self.store = store
        self._persist_scheduled = False
        if self.store is not None:
            self.cache.add_write_hook(self._on_cache_write)

        # The alert list backs every role's stats cards, so it is always live
        self.cache.pin(ALL_ALERTS_KEY)

        self.failure: VitalSyncError | None = None
        self._supervisor_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._is_running = False

    # Lifecycle

    async def __aenter__(self) -> "DashboardSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        self.restore()
        self._supervisor_task = asyncio.create_task(self._run_supervisor(), name="push-supervisor")
        self._refresh_task = asyncio.create_task(self._refresh_loop(), name="periodic-refresh")
        self.logger.info("dashboard_session_started")

    async def stop(self) -> None:
        if not self._is_running:
            return
        self._is_running = False

        if self._refresh_task is not None:
            self._refresh_task.cancel()
            await asyncio.gather(self._refresh_task, return_exceptions=True)

        await self.supervisor.stop()
        if self._supervisor_task is not None:
            await asyncio.gather(self._supervisor_task, return_exceptions=True)

        await self.router.close()
        await self.lifecycle.drain_intents()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        self.persist()

        if self._owns_api:
            await self.api.aclose()
        self.logger.info("dashboard_session_stopped")

    @property
    def connection_state(self) -> ConnectionState:
        return self.supervisor.state

    async def _run_supervisor(self) -> None:
        try:
            await self.supervisor.run()
        except AuthenticationError as e:
            self._on_auth_failure(e)
        except ReconnectExhaustedError as e:
            self.failure = e
            self.logger.error("push_channel_abandoned", error=str(e))

    def _on_push_event(self, event: PushEvent) -> None:
        self.router.on_push(event.event_type, event.payload)

    def _on_auth_failure(self, error: AuthenticationError) -> None:
        """Stop every outbound request made with the rejected credential."""
        if isinstance(self.failure, AuthenticationError):
            return  # surfaced already
        self.failure = error
        if self.router.unauthorized is None:
            self.router.unauthorized = error
        self.logger.error("session_unauthorized", error=str(error))
        if self._refresh_task is not None:
            self._refresh_task.cancel()
        self._spawn(self.supervisor.stop(failed=True))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Refreshing

    def _pull_targets(self, keys: list[str]) -> list[str]:
        targets = []
        for key in keys:
            kind, _ = split_key(key)
            if kind == EntityType.ALERT.value and self.cache.is_pinned(ALL_ALERTS_KEY):
                continue  # covered by the alert list pull
            if kind == EntityType.SUMMARY.value:
                continue  # derived locally
            targets.append(key)
        return targets

    async def refresh_pinned(self) -> dict[str, bool]:
        """Pull every pinned key. Runs after each (re)connect."""
        targets = self._pull_targets(self.cache.pinned_keys())
        outcome = await self.router.refresh(targets)
        self.logger.info(
            "pinned_keys_refreshed",
            keys=len(targets),
            failed=sum(1 for ok in outcome.values() if not ok),
        )
        return outcome

    async def refresh_all(self) -> dict[str, bool]:
        keys = sorted(set(self.cache.subscribed_keys()) | set(self.cache.pinned_keys()))
        return await self.router.refresh(self._pull_targets(keys))

    async def _refresh_loop(self) -> None:
        interval = self.config.cache.refresh_interval_seconds
        while self._is_running:
            await asyncio.sleep(interval)
            try:
                await self.refresh_all()
            except Exception as e:
                self.logger.exception("periodic_refresh_failed", error=str(e))

    # Persistence

    def restore(self) -> int:
        """Replay the persisted alert list as a pull result stamped with its write time."""
        if self.store is None:
            return 0
        snapshot = self.store.load()
        if snapshot is None:
            return 0
        payload = [alert.model_dump(mode="json") for alert in snapshot.alerts]
        applied = self.router.on_pull_result(EntityType.ALERTS, "all", payload, snapshot.written_at)
        self.logger.info("alert_snapshot_restored", alerts=len(snapshot.alerts), applied=applied)
        return applied

    def persist(self) -> None:
        self._persist_scheduled = False
        if self.store is None:
            return
        try:
            self.store.save(self.lifecycle.active_alerts(), written_at=self._clock())
        except OSError as e:
            self.logger.warning("alert_snapshot_save_failed", error=str(e))

    def _on_cache_write(
        self, key: str, previous: CacheEntry[Any] | None, entry: CacheEntry[Any]
    ) -> None:
        kind, _ = split_key(key)
        if kind != EntityType.ALERT.value or self._persist_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.persist()
            return
        # Coalesce a burst of alert writes (one pull, many alerts) into one save
        self._persist_scheduled = True
        loop.call_soon(self.persist)

    # Subscriptions

    async def watch(self, key: str, observer: Observer) -> Unwatch:
        """
        Subscribe a view to one key.

        The key is announced on the push channel and, when nothing is cached
        for it yet, pulled. Returns a coroutine function that undoes both.
        """
        self.cache.subscribe(key, observer)
        await self.supervisor.subscribe([key])
        kind, entity_id = split_key(key)
        if self.cache.get_entry(key) is None:
            if kind == EntityType.SUMMARY.value:
                self.lifecycle.publish_summary(entity_id)
            else:
                self.router.invalidate(key)

        async def unwatch() -> None:
            self.cache.unsubscribe(key, observer)
            if not self.cache.is_interested(key):
                await self.supervisor.unsubscribe([key])

        return unwatch

    async def watch_patient(self, patient_id: str, observer: Observer) -> Unwatch:
        """Subscribe to everything a patient detail view renders."""
        unwatchers = [
            await self.watch(make_key(entity_type, patient_id), observer)
            for entity_type in (
                EntityType.PATIENT,
                EntityType.VITALS,
                EntityType.ALERTS,
                EntityType.SUMMARY,
            )
        ]

        async def unwatch() -> None:
            for undo in unwatchers:
                await undo()

        return unwatch

    async def select_patient(self, patient_id: str) -> None:
        """Keep a patient's data live across view changes (the selected patient)."""
        keys = [
            make_key(entity_type, patient_id)
            for entity_type in (EntityType.PATIENT, EntityType.VITALS, EntityType.TRENDS, EntityType.ALERTS)
        ]
        for key in keys:
            self.cache.pin(key)
        await self.supervisor.subscribe(keys)
        await self.router.refresh(keys)

    async def deselect_patient(self, patient_id: str) -> None:
        keys = [
            make_key(entity_type, patient_id)
            for entity_type in (EntityType.PATIENT, EntityType.VITALS, EntityType.TRENDS, EntityType.ALERTS)
        ]
        for key in keys:
            self.cache.unpin(key)
        await self.supervisor.unsubscribe([k for k in keys if not self.cache.is_interested(k)])

    def is_stale(self, key: str) -> bool:
        return self.router.is_stale(key)

    # Views

    def view_vitals(self, patient_id: str) -> dict[VitalMetric, VitalSnapshot]:
        """Latest reading per metric with its level and trend."""
        readings = self.cache.get(make_key(EntityType.VITALS, patient_id)) or ()
        return classify_series(readings, self.config.vitals.reference_ranges)

    def view_alerts(self, patient_id: str | None = None) -> list[AlertRecord]:
        return self.lifecycle.active_alerts(patient_id)

    def view_summary(self, patient_id: str) -> PatientStatusSummary:
        return self.lifecycle.summary(patient_id)

    # Alert actions

    def acknowledge(self, alert_id: str) -> bool:
        return self.lifecycle.acknowledge(alert_id)

    def dismiss(self, alert_id: str) -> bool:
        return self.lifecycle.dismiss(alert_id)

    def acknowledge_all(self, patient_id: str | None = None) -> list[str]:
        return self.lifecycle.acknowledge_all(patient_id)
