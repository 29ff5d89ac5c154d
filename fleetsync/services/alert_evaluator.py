"""Threshold checks that turn a metrics snapshot into alerts"""

from dataclasses import dataclass
from typing import List

from .. import config
from ..models import Alert, AlertLevel, AlertType, MetricsSnapshot, ServiceState


@dataclass(frozen=True)
class AlertThresholds:
    temperature_c: float = 75.0
    disk_percent: float = 90.0
    memory_percent: float = 90.0

    @classmethod
    def from_config(cls) -> "AlertThresholds":
        return cls(
            temperature_c=config.TEMPERATURE_CRITICAL_C,
            disk_percent=config.DISK_WARNING_PERCENT,
            memory_percent=config.MEMORY_WARNING_PERCENT,
        )


def evaluate(snapshot: MetricsSnapshot, thresholds: AlertThresholds = AlertThresholds()) -> List[Alert]:
    """Check every threshold independently; several alerts may fire at once.

    Fields a probe could not read (``None``) never raise an alert.
    """
    alerts = []

    if snapshot.temperature_c is not None and snapshot.temperature_c > thresholds.temperature_c:
        alerts.append(Alert(
            level=AlertLevel.CRITICAL,
            type=AlertType.TEMPERATURE,
            message=f"High temperature: {snapshot.temperature_c:.1f}°C",
            value=snapshot.temperature_c,
        ))

    if snapshot.disk_percent is not None and snapshot.disk_percent > thresholds.disk_percent:
        alerts.append(Alert(
            level=AlertLevel.WARNING,
            type=AlertType.DISK,
            message=f"Low disk space: {snapshot.disk_percent:.1f}% used",
            value=snapshot.disk_percent,
        ))

    if snapshot.memory_percent is not None and snapshot.memory_percent > thresholds.memory_percent:
        alerts.append(Alert(
            level=AlertLevel.WARNING,
            type=AlertType.MEMORY,
            message=f"High memory usage: {snapshot.memory_percent:.1f}%",
            value=snapshot.memory_percent,
        ))

    for service, state in snapshot.service_states.items():
        if state != ServiceState.RUNNING:
            alerts.append(Alert(
                level=AlertLevel.CRITICAL,
                type=AlertType.SERVICE,
                message=f"Service {service} stopped",
                value=service,
            ))

    if not snapshot.application.webapp:
        alerts.append(Alert(
            level=AlertLevel.CRITICAL,
            type=AlertType.APPLICATION,
            message="Web application missing",
        ))

    return alerts
