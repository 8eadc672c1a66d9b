"""
Complete dashboard walkthrough against an in-process system of record.

This script exercises:
1. Configuration loading and validation
2. Vitals classification for a selected patient
3. Alert lifecycle (acknowledge, dismiss) with summary rollups
4. Push/pull races settled by timestamp
5. Reconnect with subscription replay and pinned-key refresh

Run with: uv run python demo_dashboard.py
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import timedelta
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vitalsync.config import get_config, print_config_summary, validate_config
from vitalsync.domain.models import EntityType, Level, make_key, utcnow
from vitalsync.logging import configure_logging
from vitalsync.services.connection import PushEvent
from vitalsync.services.dashboard import DashboardSession
from vitalsync.services.event_router import PullResult
from vitalsync.services.result import Result, VitalSyncError

console = Console()

LEVEL_STYLE = {Level.LOW: "yellow", Level.NORMAL: "green", Level.HIGH: "red"}


class DemoRecordSystem:
    """In-memory stand-in for the dashboard REST API."""

    def __init__(self) -> None:
        now = utcnow()
        self.alerts: dict[str, dict[str, Any]] = {
            "a1": {
                "_id": "a1",
                "patient_id": {"_id": "p1", "full_name": "Ada Okafor"},
                "type": "critical",
                "title": "Tachycardia",
                "message": "Heart rate 128 BPM sustained for 10 minutes",
                "timestamp": (now - timedelta(minutes=4)).isoformat(),
                "aiConfidence": 91,
            },
            "a2": {
                "_id": "a2",
                "patient_id": "p1",
                "type": "warning",
                "title": "Low SpO2",
                "message": "Oxygen saturation 93%",
                "timestamp": (now - timedelta(minutes=2)).isoformat(),
            },
            "a3": {
                "_id": "a3",
                "patient_id": "p2",
                "type": "info",
                "title": "Medication due",
                "message": "Metformin 500 mg at 09:00",
                "timestamp": (now - timedelta(minutes=1)).isoformat(),
                "acknowledged": True,
            },
        }
        self.patients = {
            "p1": {
                "_id": "p1",
                "full_name": "Ada Okafor",
                "current_medications": ["metformin", "lisinopril", "atorvastatin", "aspirin"],
                "medical_history": "Type 2 diabetes, hypertension",
            },
            "p2": {"_id": "p2", "full_name": "Jonas Brandt", "current_medications": []},
        }
        self.vitals = {
            "p1": [
                {
                    "heart_rate": 96,
                    "blood_pressure": "132/85",
                    "temperature": 98.9,
                    "oxygen_saturation": 96,
                    "recorded_at": (now - timedelta(minutes=15)).isoformat(),
                },
                {
                    "heart_rate": 128,
                    "blood_pressure": "148/92",
                    "temperature": 99.6,
                    "oxygen_saturation": 93,
                    "recorded_at": (now - timedelta(minutes=1)).isoformat(),
                },
            ]
        }
        self.intents: list[tuple[str, str]] = []

    def _payload(self, entity_type: EntityType, entity_id: str) -> Any:
        if entity_type is EntityType.ALERTS:
            alerts = list(self.alerts.values())
            if entity_id == "all":
                return {"data": alerts}
            return {"data": [a for a in alerts if _patient_of(a) == entity_id]}
        if entity_type is EntityType.PATIENT:
            return self.patients.get(entity_id, [])
        if entity_type is EntityType.VITALS:
            return {"data": self.vitals.get(entity_id, [])}
        return []

    async def fetch(self, entity_type: EntityType, entity_id: str) -> Result[PullResult, VitalSyncError]:
        fetched_at = utcnow()
        await asyncio.sleep(0.05)  # Simulate network latency
        return Result.ok(PullResult(entity_type, entity_id, self._payload(entity_type, entity_id), fetched_at))

    async def acknowledge_alert(self, alert_id: str) -> Result[str, VitalSyncError]:
        self.intents.append(("acknowledge", alert_id))
        if alert_id in self.alerts:
            self.alerts[alert_id]["acknowledged"] = True
        return Result.ok(alert_id)

    async def dismiss_alert(self, alert_id: str) -> Result[str, VitalSyncError]:
        self.intents.append(("dismiss", alert_id))
        self.alerts.pop(alert_id, None)
        return Result.ok(alert_id)


def _patient_of(alert: dict[str, Any]) -> str:
    patient = alert["patient_id"]
    return patient["_id"] if isinstance(patient, dict) else patient


class DemoPushChannel:
    """Push transport fed by the demo script."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[PushEvent | None] = asyncio.Queue()
        self.connected = asyncio.Event()
        self.announced: list[tuple[str, list[str]]] = []

    async def connect(self, token: str | None) -> None:
        self.queue = asyncio.Queue()
        self.connected.set()

    async def send_subscriptions(self, action: str, keys: list[str]) -> None:
        self.announced.append((action, keys))

    async def events(self) -> AsyncIterator[PushEvent]:
        while (event := await self.queue.get()) is not None:
            yield event

    async def close(self) -> None:
        self.connected.clear()
        self.queue.put_nowait(None)

    def emit(self, event_type: str, payload: Any) -> None:
        self.queue.put_nowait(PushEvent(event_type, payload))


async def test_configuration() -> bool:
    """Test configuration loading."""

    console.print(Panel("Testing Configuration", style="blue"))

    try:
        validate_config()
        print_config_summary()
        console.print("✅ Configuration loaded successfully", style="green")
        return True
    except Exception as e:
        console.print(f"❌ Configuration test failed: {e}", style="red")
        return False


def render_alerts(session: DashboardSession, title: str) -> None:
    table = Table(title=title)
    table.add_column("Alert", style="cyan")
    table.add_column("Patient")
    table.add_column("Severity")
    table.add_column("Acknowledged")
    table.add_column("Message", style="white")

    for alert in session.view_alerts():
        table.add_row(
            alert.id,
            alert.patient_id,
            alert.severity.value.upper(),
            "yes" if alert.is_acknowledged else "no",
            alert.message,
        )
    console.print(table)


def render_summary(session: DashboardSession, patient_id: str) -> None:
    summary = session.view_summary(patient_id)
    style = {"critical": "red", "monitoring": "yellow"}.get(summary.status.value, "green")
    console.print(
        f"Patient {patient_id}: status={summary.status.value.upper()} "
        f"risk={summary.risk.value.upper()} "
        f"(critical={summary.critical_count}, warning={summary.warning_count}, "
        f"unacknowledged={summary.unacknowledged_count})",
        style=style,
    )


async def test_vitals_view(session: DashboardSession) -> bool:
    """Classify the selected patient's latest vitals."""

    console.print(Panel("Testing Vitals Classification", style="blue"))

    try:
        await session.select_patient("p1")

        table = Table(title="Latest Vitals: p1")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")
        table.add_column("Range")
        table.add_column("Level")
        table.add_column("Trend")

        for metric, snapshot in session.view_vitals("p1").items():
            reference = snapshot.reference_range
            level = snapshot.classification.level
            table.add_row(
                metric.value,
                f"{snapshot.reading.value:g} {snapshot.reading.unit}" if snapshot.reading.value is not None else "-",
                f"{reference.low:g}-{reference.high:g}" if reference else "-",
                f"[{LEVEL_STYLE[level]}]{level.value}[/]",
                snapshot.classification.trend.value,
            )

        console.print(table)
        return True

    except Exception as e:
        console.print(f"❌ Vitals test failed: {e}", style="red")
        return False


async def test_alert_lifecycle(session: DashboardSession, server: DemoRecordSystem) -> bool:
    """Acknowledge and dismiss alerts and watch the summary follow."""

    console.print(Panel("Testing Alert Lifecycle", style="blue"))

    try:
        render_alerts(session, "Active Alerts")
        render_summary(session, "p1")

        console.print("\nAcknowledging a1 (critical)...", style="yellow")
        session.acknowledge("a1")
        render_summary(session, "p1")

        console.print("Acknowledging a1 again is a no-op:", session.acknowledge("a1"))

        console.print("Dismissing a2 (warning)...", style="yellow")
        session.dismiss("a2")
        render_summary(session, "p1")

        await session.lifecycle.drain_intents()
        console.print(f"Intents mirrored to the server: {server.intents}")
        return True

    except Exception as e:
        console.print(f"❌ Lifecycle test failed: {e}", style="red")
        return False


async def test_push_pull_race(session: DashboardSession, channel: DemoPushChannel) -> bool:
    """A push newer than an in-flight pull must survive the pull."""

    console.print(Panel("Testing Push/Pull Race", style="blue"))

    try:
        pull = asyncio.create_task(session.router.pull(make_key(EntityType.ALERTS, "all")))
        await asyncio.sleep(0.01)

        channel.emit(
            "alert:created",
            {
                "_id": "a4",
                "patient_id": "p2",
                "type": "critical",
                "title": "Fever",
                "message": "Temperature 101.8 °F",
                "updated_at": utcnow().isoformat(),
            },
        )
        await asyncio.sleep(0.01)
        await pull

        present = session.cache.get(make_key(EntityType.ALERT, "a4")) is not None
        console.print(
            "✅ Pushed alert survived the older pull" if present else "❌ Pushed alert was lost",
            style="green" if present else "red",
        )
        render_summary(session, "p2")
        return present

    except Exception as e:
        console.print(f"❌ Race test failed: {e}", style="red")
        return False


async def test_reconnect(session: DashboardSession, channel: DemoPushChannel) -> bool:
    """Drop the channel and verify values stay visible and subscriptions come back."""

    console.print(Panel("Testing Reconnect", style="blue"))

    try:
        before = len(session.view_alerts())
        await channel.close()
        await asyncio.sleep(0.01)
        console.print(f"State while down: {session.connection_state.value}", style="yellow")
        console.print(f"Alerts still visible: {len(session.view_alerts())} of {before}")

        await channel.connected.wait()
        await asyncio.sleep(0.2)

        console.print(f"State after reconnect: {session.connection_state.value}", style="green")
        console.print(f"Subscriptions replayed: {channel.announced[-1]}")
        return session.connection_state.value == "connected"

    except Exception as e:
        console.print(f"❌ Reconnect test failed: {e}", style="red")
        return False


async def run_all_tests() -> None:
    """Run the dashboard walkthrough."""

    config = get_config()
    configure_logging(config.logging)
    console.print(Panel("vitalsync - Dashboard Walkthrough", style="bold blue"))

    results = [("Configuration", await test_configuration())]

    server = DemoRecordSystem()
    channel = DemoPushChannel()
    config = config.model_copy(
        update={
            "persistence": config.persistence.model_copy(update={"enabled": False}),
            "connection": config.connection.model_copy(update={"base_delay_seconds": 0.05}),
        }
    )

    async with DashboardSession(config, api=server, transport=channel) as session:
        await channel.connected.wait()
        await asyncio.sleep(0.2)

        steps = [
            ("Vitals Classification", test_vitals_view(session)),
            ("Alert Lifecycle", test_alert_lifecycle(session, server)),
            ("Push/Pull Race", test_push_pull_race(session, channel)),
            ("Reconnect", test_reconnect(session, channel)),
        ]
        for step_name, step in steps:
            console.print(f"\n{'=' * 60}")
            results.append((step_name, await step))

    console.print(f"\n{'=' * 60}")
    summary_table = Table(title="Walkthrough Results")
    summary_table.add_column("Step", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for step_name, result in results:
        summary_table.add_row(step_name, "✅ PASSED" if result else "❌ FAILED")
        passed += int(result)

    console.print(summary_table)
    console.print(f"\nResults: {passed}/{len(results)} steps passed")


if __name__ == "__main__":
    try:
        asyncio.run(run_all_tests())
    except KeyboardInterrupt:
        console.print("\nStopped by user", style="yellow")
