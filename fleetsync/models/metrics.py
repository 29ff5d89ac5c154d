"""Host metrics and alert models"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


class AlertLevel(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType(str, Enum):
    TEMPERATURE = "temperature"
    DISK = "disk"
    MEMORY = "memory"
    SERVICE = "service"
    APPLICATION = "application"


class ServiceState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Alert:
    """Threshold breach derived from a snapshot"""
    level: AlertLevel
    type: AlertType
    message: str
    value: Any = None

    def to_dict(self):
        """Convert to dictionary"""
        return {
            'level': self.level.value,
            'type': self.type.value,
            'message': self.message,
            'value': self.value,
        }


@dataclass(frozen=True)
class ApplicationStatus:
    """Presence of the deployed application artifacts"""
    webapp: bool = False
    server: bool = False
    admin: bool = False
    videos: int = 0

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class MetricsSnapshot:
    """One collection tick. Never mutated after construction."""
    timestamp: str
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    temperature_c: Optional[float] = None
    disk_percent: Optional[float] = None
    service_states: Mapping[str, ServiceState] = field(default_factory=dict)
    application: ApplicationStatus = field(default_factory=ApplicationStatus)
    alerts: Tuple[Alert, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'service_states', MappingProxyType(dict(self.service_states)))
        object.__setattr__(self, 'alerts', tuple(self.alerts))

    @staticmethod
    def now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape sent in ``metrics`` messages"""
        return {
            'timestamp': self.timestamp,
            'cpu': self.cpu_percent,
            'memory': self.memory_percent,
            'temperature': self.temperature_c,
            'disk': self.disk_percent,
            'services': {name: state.value for name, state in self.service_states.items()},
            'application': self.application.to_dict(),
            'alerts': [alert.to_dict() for alert in self.alerts],
        }
