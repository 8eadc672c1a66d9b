"""
Domain models for vitals monitoring and the alert lifecycle.

These models represent the clinical concepts the engine reasons about and are
framework-agnostic. Wire payloads from the dashboard API arrive in several
shapes (`_id` vs `id`, `type` vs `severity`, populated patient objects), so the
mutable-by-the-server records canonicalize their input before validation.
"""

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps from the API are UTC; comparing naive and aware datetimes raises.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def _rename(data: dict[str, Any], aliases: dict[str, str]) -> dict[str, Any]:
    """Map wire aliases onto field names. An explicit field name wins over its alias."""
    out = dict(data)
    for alias, field_name in aliases.items():
        if alias in out:
            value = out.pop(alias)
            out.setdefault(field_name, value)
    return out


def _identity(value: Any) -> Any:
    """Reduce a populated reference (`{"_id": ..., "full_name": ...}`) to its id string."""
    if isinstance(value, dict):
        value = value.get("_id", value.get("id"))
    if isinstance(value, int | float) and not isinstance(value, bool):
        value = str(int(value)) if float(value).is_integer() else str(value)
    return value


class EntityType(str, Enum):
    """Entity types that make up the first half of a cache key."""

    PATIENT = "patient"
    ALERT = "alert"
    ALERTS = "alerts"  # collection scope for alert list pulls
    VITALS = "vitals"
    TRENDS = "trends"
    SUMMARY = "summary"
    APPOINTMENT = "appointment"
    NOTIFICATION = "notification"
    ALLOCATION = "allocation"


def make_key(entity_type: EntityType | str, entity_id: str) -> str:
    """Build a cache key such as `alert:42`."""
    kind = entity_type.value if isinstance(entity_type, EntityType) else entity_type
    return f"{kind}:{entity_id}"


def split_key(key: str) -> tuple[str, str]:
    kind, _, entity_id = key.partition(":")
    return kind, entity_id


class VitalMetric(str, Enum):
    """Physiological metrics tracked on the vitals screens."""

    HEART_RATE = "heart_rate"
    BLOOD_PRESSURE = "blood_pressure"
    TEMPERATURE = "temperature"
    OXYGEN_SATURATION = "oxygen_saturation"


METRIC_UNITS: dict[VitalMetric, str] = {
    VitalMetric.HEART_RATE: "BPM",
    VitalMetric.BLOOD_PRESSURE: "mmHg",
    VitalMetric.TEMPERATURE: "°F",
    VitalMetric.OXYGEN_SATURATION: "%",
}


class Severity(str, Enum):
    """Alert severity as raised by the system of record."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class Level(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Trend(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class PatientStatus(str, Enum):
    STABLE = "stable"
    MONITORING = "monitoring"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UpdateSource(str, Enum):
    """Where a cache write came from. Push outranks pull on equal timestamps."""

    PUSH = "push"
    PULL = "pull"


class VitalReading(BaseModel):
    """One timestamped measurement of one metric for one patient."""

    model_config = ConfigDict(frozen=True)  # Recorded readings never change

    patient_id: str
    metric: VitalMetric
    value: float | None = None
    unit: str = ""
    recorded_at: UtcDatetime

    @model_validator(mode="before")
    @classmethod
    def _canonicalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = _rename(data, {"patientId": "patient_id", "recordedAt": "recorded_at"})
        if "patient_id" in data:
            data["patient_id"] = _identity(data["patient_id"])
        return data

    @property
    def has_value(self) -> bool:
        return self.value is not None and not math.isnan(self.value)


class ReferenceRange(BaseModel):
    """Clinically defined bounds used to classify readings of one metric."""

    model_config = ConfigDict(frozen=True)

    metric: VitalMetric
    low: float
    high: float
    unit: str = ""

    @model_validator(mode="after")
    def low_not_above_high(self) -> "ReferenceRange":
        if self.low > self.high:
            raise ValueError(f"reference range for {self.metric.value} has low > high")
        return self


class Classification(BaseModel):
    """Derived classification of the latest reading. Never stored."""

    model_config = ConfigDict(frozen=True)

    level: Level = Level.NORMAL
    trend: Trend = Trend.STABLE


class VitalSnapshot(BaseModel):
    """Latest reading of a metric together with its derived classification."""

    model_config = ConfigDict(frozen=True)

    metric: VitalMetric
    reading: VitalReading
    classification: Classification
    reference_range: ReferenceRange | None = None


class AlertRecord(BaseModel):
    """
    A condition requiring attention, unique by `id`.

    Only the lifecycle transitions change an alert (acknowledge sets
    `acknowledged_at`; dismiss removes it), so the model itself is frozen and
    transitions produce copies.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    patient_id: str = Field(min_length=1)
    severity: Severity
    title: str = ""
    message: str = ""
    created_at: UtcDatetime = Field(default_factory=utcnow)
    acknowledged_at: UtcDatetime | None = None
    ai_confidence: float | None = Field(default=None, ge=0.0, le=100.0)

    @classmethod
    def canonicalize(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Translate the API's alert shape into field names."""
        data = _rename(
            data,
            {
                "_id": "id",
                "patientId": "patient_id",
                "type": "severity",
                "createdAt": "created_at",
                "timestamp": "created_at",
                "acknowledgedAt": "acknowledged_at",
                "aiConfidence": "ai_confidence",
            },
        )
        for field_name in ("id", "patient_id"):
            if field_name in data:
                data[field_name] = _identity(data[field_name])

        acknowledged = data.pop("acknowledged", None)
        if acknowledged and data.get("acknowledged_at") is None:
            data["acknowledged_at"] = (
                data.get("updated_at") or data.get("updatedAt") or data.get("created_at") or utcnow()
            )
        elif acknowledged is False:
            data["acknowledged_at"] = None
        return data

    @model_validator(mode="before")
    @classmethod
    def _canonicalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return cls.canonicalize(data)
        return data

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledged_at is not None


class PatientRecord(BaseModel):
    """Static patient attributes the risk scorer needs. Extra API fields are retained."""

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = Field(min_length=1)
    full_name: str = ""
    status: str = "active"
    current_medications: tuple[str, ...] = ()
    medical_history: str = ""

    @classmethod
    def canonicalize(cls, data: dict[str, Any]) -> dict[str, Any]:
        data = _rename(data, {"_id": "id", "fullName": "full_name"})
        if "id" not in data and "patient_id" in data:
            data["id"] = data["patient_id"]
        if "id" in data:
            data["id"] = _identity(data["id"])
        if data.get("current_medications") is None:
            data.pop("current_medications", None)
        if data.get("medical_history") is None:
            data.pop("medical_history", None)
        return data

    @model_validator(mode="before")
    @classmethod
    def _canonicalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return cls.canonicalize(data)
        return data

    @property
    def medication_count(self) -> int:
        return len(self.current_medications)

    @property
    def history_length(self) -> int:
        return len(self.medical_history)


class PatientStatusSummary(BaseModel):
    """Per-patient rollup derived from active alerts and static patient fields."""

    model_config = ConfigDict(frozen=True)

    patient_id: str
    status: PatientStatus
    risk: RiskLevel
    critical_count: int = Field(default=0, ge=0)
    warning_count: int = Field(default=0, ge=0)
    unacknowledged_count: int = Field(default=0, ge=0)
