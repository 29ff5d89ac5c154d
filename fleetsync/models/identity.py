"""Device identity and connection session models"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class DeviceIdentity:
    """Credentials issued to a site at provisioning time"""
    site_id: str
    api_key: str

    def to_dict(self):
        return {'siteId': self.site_id, 'apiKey': self.api_key}

    def __repr__(self):
        # keep the key out of log lines
        return f"DeviceIdentity(site_id={self.site_id!r}, api_key=<{len(self.api_key)} chars>)"


@dataclass
class ConnectionSession:
    """State of one transport connection. Rebuilt on every reconnect."""
    connected_at: datetime
    authenticated: bool = False
    last_heartbeat_at: Optional[datetime] = None
