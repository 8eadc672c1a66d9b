"""Tests for the durable local alert snapshot."""

from pathlib import Path

from fakes import T0, alert_payload

from vitalsync.adapters.local_store import LocalAlertStore
from vitalsync.domain.models import AlertRecord


def test_save_and_load(tmp_path: Path) -> None:
    store = LocalAlertStore(tmp_path / "state" / "alerts.json")
    alerts = [
        AlertRecord.model_validate(alert_payload("a1", severity="critical")),
        AlertRecord.model_validate(alert_payload("a2", acknowledged=True)),
    ]

    store.save(alerts, written_at=T0)
    snapshot = store.load()

    assert snapshot is not None
    assert snapshot.written_at == T0
    assert snapshot.alerts == alerts
    assert list((tmp_path / "state").iterdir()) == [tmp_path / "state" / "alerts.json"]


def test_missing_file_loads_nothing(tmp_path: Path) -> None:
    assert LocalAlertStore(tmp_path / "alerts.json").load() is None


def test_corrupt_file_loads_nothing(tmp_path: Path) -> None:
    path = tmp_path / "alerts.json"
    path.write_text('{"written_at": "yesterday", "alerts": [}', encoding="utf-8")

    assert LocalAlertStore(path).load() is None


def test_clear(tmp_path: Path) -> None:
    store = LocalAlertStore(tmp_path / "alerts.json")
    store.save([])
    store.clear()
    store.clear()

    assert store.load() is None
