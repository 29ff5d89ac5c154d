"""Models package"""

from .metrics import Alert, AlertLevel, AlertType, ApplicationStatus, MetricsSnapshot, ServiceState
from .command import AdminAction, ClientInput, Command, Job, JobStatus, LocalClient, parse_command
from .playback import MediaRef, PlaybackConfiguration, Phase, PlaylistEntry, TimeCategory
from .identity import ConnectionSession, DeviceIdentity

__all__ = [
    'Alert', 'AlertLevel', 'AlertType', 'ApplicationStatus', 'MetricsSnapshot', 'ServiceState',
    'AdminAction', 'ClientInput', 'Command', 'Job', 'JobStatus', 'LocalClient', 'parse_command',
    'MediaRef', 'PlaybackConfiguration', 'Phase', 'PlaylistEntry', 'TimeCategory',
    'ConnectionSession', 'DeviceIdentity',
]
