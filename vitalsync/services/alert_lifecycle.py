"""
Alert lifecycle: raised -> acknowledged -> dismissed.

Transitions:
- raised -> acknowledged   (acknowledge)
- raised -> dismissed      (dismiss)
- acknowledged -> dismissed (dismiss)

`dismissed` is terminal: the alert leaves the active set (its cache entry
becomes a tombstone). Both operations are idempotent and unknown ids are a
no-op, so the UI never has to guard its buttons.

Transitions are applied optimistically to the cache and mirrored to the server
as fire-and-forget intents. Whatever the server later confirms (push or pull)
is the convergent truth, subject to the cache's last-writer-wins rule.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

import structlog

from vitalsync.domain.models import (
    AlertRecord,
    EntityType,
    PatientStatusSummary,
    UpdateSource,
    make_key,
    split_key,
    utcnow,
)
from vitalsync.services.cache import CacheEntry, SubscriptionCache
from vitalsync.services.result import Result, VitalSyncError
from vitalsync.services.risk_scorer import RiskScorer

logger = structlog.get_logger(__name__)

IntentAction = Literal["acknowledge", "dismiss"]


class AlertIntentSink(Protocol):
    """Where acknowledge/dismiss intents are sent (the REST API in production)."""

    async def acknowledge_alert(self, alert_id: str) -> Result[str, VitalSyncError]: ...

    async def dismiss_alert(self, alert_id: str) -> Result[str, VitalSyncError]: ...


class AlertLifecycleManager:
    """
    Owns the alert state machine and keeps patient summaries in step with it.

    The manager registers a cache write hook, so every accepted write to an
    `alert:*` or `patient:*` key (local transition, push event or pull result)
    recomputes the owning patient's `summary:*` entry, while that key is
    observed or pinned, before any observer of the triggering key is notified.
    Dismissed alerts stay pinned as tombstones until an alert list fetched
    after the deletion omits them, or until `tombstone_retention` passes.
    """

    def __init__(
        self,
        cache: SubscriptionCache,
        scorer: RiskScorer | None = None,
        intents: AlertIntentSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        tombstone_retention: timedelta = timedelta(minutes=5),
    ) -> None:
        self.cache = cache
        self.scorer = scorer or RiskScorer()
        self.intents = intents
        self._clock = clock
        self.tombstone_retention = tombstone_retention
        self._alerts_by_patient: defaultdict[str, set[str]] = defaultdict(set)
        self._owner: dict[str, str] = {}
        # alert id -> (last owner, deletion time) for tombstones still pinned
        self._tombstones: dict[str, tuple[str | None, datetime]] = {}
        self._pending_intents: set[asyncio.Task[None]] = set()
        self.logger = logger.bind(component="alert_lifecycle")

        cache.add_write_hook(self._on_cache_write)

    # Transitions

    def acknowledge(self, alert_id: str) -> bool:
        """Mark an alert acknowledged. Returns True only when a transition happened."""
        key = make_key(EntityType.ALERT, alert_id)
        record: AlertRecord | None = self.cache.get(key)
        if record is None:
            self.logger.debug("acknowledge_ignored", alert_id=alert_id, reason="unknown_or_dismissed")
            return False
        if record.is_acknowledged:
            self.logger.debug("acknowledge_ignored", alert_id=alert_id, reason="already_acknowledged")
            return False

        now = self._now_for(key)
        acknowledged = record.model_copy(update={"acknowledged_at": now})
        applied = self.cache.set(key, acknowledged, now, UpdateSource.PUSH)
        if applied:
            self.logger.info("alert_acknowledged", alert_id=alert_id, patient_id=record.patient_id)
            self._mirror("acknowledge", alert_id)
        return applied

    def dismiss(self, alert_id: str) -> bool:
        """Remove an alert from the active set, whatever its prior state."""
        key = make_key(EntityType.ALERT, alert_id)
        entry = self.cache.get_entry(key)
        if entry is None or entry.deleted:
            self.logger.debug("dismiss_ignored", alert_id=alert_id, reason="unknown_or_dismissed")
            return False

        now = self._now_for(key)
        applied = self.cache.delete(key, now, UpdateSource.PUSH)
        if applied:
            self.logger.info("alert_dismissed", alert_id=alert_id)
            self._mirror("dismiss", alert_id)
        return applied

    def acknowledge_all(self, patient_id: str | None = None) -> list[str]:
        """Acknowledge every unacknowledged alert (optionally for one patient)."""
        return [
            alert.id
            for alert in self.active_alerts(patient_id)
            if not alert.is_acknowledged and self.acknowledge(alert.id)
        ]

    def _now_for(self, key: str) -> datetime:
        # An optimistic write must not lose to an entry stamped ahead of the local clock
        now = self._clock()
        entry = self.cache.get_entry(key)
        if entry is not None and entry.updated_at > now:
            return entry.updated_at
        return now

    # Queries

    def active_alerts(self, patient_id: str | None = None) -> list[AlertRecord]:
        """Active (non-dismissed) alerts, newest first."""
        if patient_id is None:
            alert_ids: set[str] = set(self._owner)
        else:
            alert_ids = set(self._alerts_by_patient.get(patient_id, ()))

        alerts = [
            alert
            for alert_id in alert_ids
            if (alert := self.cache.get(make_key(EntityType.ALERT, alert_id))) is not None
        ]
        alerts.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return alerts

    def summary(self, patient_id: str) -> PatientStatusSummary:
        cached = self.cache.get(make_key(EntityType.SUMMARY, patient_id))
        if cached is not None:
            return cached
        return self._score(patient_id)

    # Derived state maintenance

    def _on_cache_write(
        self, key: str, previous: CacheEntry[Any] | None, entry: CacheEntry[Any]
    ) -> None:
        kind, entity_id = split_key(key)

        if kind == EntityType.ALERT.value:
            affected: set[str] = set()
            old_owner = self._owner.get(entity_id)
            if entry.deleted:
                if old_owner is not None:
                    self._forget(entity_id, old_owner)
                    affected.add(old_owner)
                self._tombstones[entity_id] = (old_owner, entry.updated_at)
            else:
                record: AlertRecord = entry.value
                if old_owner is not None and old_owner != record.patient_id:
                    self._forget(entity_id, old_owner)
                    affected.add(old_owner)
                self._owner[entity_id] = record.patient_id
                self._alerts_by_patient[record.patient_id].add(entity_id)
                self._tombstones.pop(entity_id, None)
                affected.add(record.patient_id)
            # Alerts feed the summary, so they outlive any single view's subscription
            self.cache.pin(key)
            for patient_id in affected:
                self._refresh_summary(patient_id, entry.updated_at)
            self._expire_tombstones(keep=entity_id)

        elif kind == EntityType.ALERTS.value and not entry.deleted:
            self._release_unlisted(entity_id, set(entry.value), entry.updated_at)

        elif kind == EntityType.PATIENT.value:
            self._refresh_summary(entity_id, entry.updated_at)

    def _forget(self, alert_id: str, patient_id: str) -> None:
        self._owner.pop(alert_id, None)
        ids = self._alerts_by_patient.get(patient_id)
        if ids is not None:
            ids.discard(alert_id)
            if not ids:
                del self._alerts_by_patient[patient_id]

    def _release_unlisted(self, scope: str, listed: set[str], listed_at: datetime) -> None:
        """Drop tombstones that an alert list fetched after the deletion no longer mentions."""
        for alert_id, (owner, deleted_at) in list(self._tombstones.items()):
            if alert_id in listed or deleted_at > listed_at:
                continue
            if scope == "all" or owner == scope:
                self._release(alert_id)

    def _expire_tombstones(self, keep: str) -> None:
        cutoff = self._clock() - self.tombstone_retention
        for alert_id, (_, deleted_at) in list(self._tombstones.items()):
            if alert_id != keep and deleted_at < cutoff:
                self._release(alert_id)

    def _release(self, alert_id: str) -> None:
        del self._tombstones[alert_id]
        # Evicts the tombstone unless a view still observes the key
        self.cache.unpin(make_key(EntityType.ALERT, alert_id))
        self.logger.debug("alert_tombstone_released", alert_id=alert_id)

    def tombstone_count(self) -> int:
        return len(self._tombstones)

    def _score(self, patient_id: str) -> PatientStatusSummary:
        patient = self.cache.get(make_key(EntityType.PATIENT, patient_id))
        return self.scorer.score(patient, self.active_alerts(patient_id), patient_id=patient_id)

    def publish_summary(self, patient_id: str) -> PatientStatusSummary:
        """Write the current summary for a view that just started observing it."""
        summary = self._score(patient_id)
        summary_key = make_key(EntityType.SUMMARY, patient_id)
        if self.cache.get(summary_key) != summary:
            self.cache.set(summary_key, summary, self._now_for(summary_key), UpdateSource.PUSH)
        return summary

    def _refresh_summary(self, patient_id: str, updated_at: datetime) -> None:
        summary_key = make_key(EntityType.SUMMARY, patient_id)
        if not self.cache.is_interested(summary_key):
            return  # computed on demand by summary()
        summary = self._score(patient_id)
        current = self.cache.get_entry(summary_key)
        if current is not None and not current.deleted and current.value == summary:
            return
        stamp = updated_at if current is None else max(updated_at, current.updated_at)
        self.cache.set(summary_key, summary, stamp, UpdateSource.PUSH)
        self.logger.debug(
            "summary_recomputed",
            patient_id=patient_id,
            status=summary.status.value,
            risk=summary.risk.value,
        )

    # Intents

    def _mirror(self, action: IntentAction, alert_id: str) -> None:
        if self.intents is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning("alert_intent_skipped", action=action, alert_id=alert_id)
            return
        task = loop.create_task(self._send_intent(self.intents, action, alert_id))
        self._pending_intents.add(task)
        task.add_done_callback(self._pending_intents.discard)

    async def _send_intent(self, intents: AlertIntentSink, action: IntentAction, alert_id: str) -> None:
        try:
            if action == "acknowledge":
                result = await intents.acknowledge_alert(alert_id)
            else:
                result = await intents.dismiss_alert(alert_id)
        except Exception as e:
            self.logger.exception("alert_intent_crashed", action=action, alert_id=alert_id, error=str(e))
            return

        if result.is_err():
            # Local state stays; the next push or pull settles the truth
            self.logger.warning(
                "alert_intent_failed",
                action=action,
                alert_id=alert_id,
                error=str(result.unwrap_err()),
            )
        else:
            self.logger.debug("alert_intent_sent", action=action, alert_id=alert_id)

    async def drain_intents(self) -> None:
        """Wait for every in-flight intent to finish."""
        if self._pending_intents:
            await asyncio.gather(*list(self._pending_intents), return_exceptions=True)
