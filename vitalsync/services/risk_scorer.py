"""Patient status and risk rollup from active alerts and static patient attributes."""

from collections.abc import Iterable

from vitalsync.config import RiskConfig
from vitalsync.domain.models import (
    AlertRecord,
    PatientRecord,
    PatientStatus,
    PatientStatusSummary,
    RiskLevel,
    Severity,
)


class RiskScorer:
    """
    Computes `PatientStatusSummary` for one patient.

    The alert collection is treated as a set: the result does not depend on
    its order, and alerts belonging to other patients are ignored.
    """

    def __init__(self, config: RiskConfig | None = None) -> None:
        self.config = config or RiskConfig()

    def score(
        self,
        patient: PatientRecord | None,
        alerts: Iterable[AlertRecord],
        patient_id: str | None = None,
    ) -> PatientStatusSummary:
        if patient is not None:
            pid = patient.id
        elif patient_id is not None:
            pid = patient_id
        else:
            raise ValueError("score() needs a patient or a patient_id")

        unacked = [a for a in alerts if a.patient_id == pid and not a.is_acknowledged]
        critical = sum(1 for a in unacked if a.severity is Severity.CRITICAL)
        warning = sum(1 for a in unacked if a.severity is Severity.WARNING)

        if critical:
            status = PatientStatus.CRITICAL
        elif warning:
            status = PatientStatus.MONITORING
        else:
            status = PatientStatus.STABLE

        # An unknown patient contributes no static risk factors
        medication_count = patient.medication_count if patient is not None else 0
        history_length = patient.history_length if patient is not None else 0

        if critical:
            risk = RiskLevel.HIGH
        elif (
            medication_count > self.config.medication_threshold
            or history_length > self.config.history_length_threshold
        ):
            risk = RiskLevel.MEDIUM
        else:
            risk = RiskLevel.LOW

        return PatientStatusSummary(
            patient_id=pid,
            status=status,
            risk=risk,
            critical_count=critical,
            warning_count=warning,
            unacknowledged_count=len(unacked),
        )


def score(
    patient: PatientRecord,
    alerts: Iterable[AlertRecord],
    config: RiskConfig | None = None,
) -> PatientStatusSummary:
    """Score with the default (or given) threshold table."""
    return RiskScorer(config).score(patient, alerts)
