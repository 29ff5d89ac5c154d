"""Device identity persistence"""

import logging
import os
from typing import Optional

from ..models import DeviceIdentity
from ..utils.files import atomic_write_json, read_json

logger = logging.getLogger(__name__)


class IdentityStore:
    """Reads the site credentials from disk on every call.

    The fleet link asks for the identity before each connection attempt, so a
    key fixed by an operator is picked up without restarting the agent.
    """

    def __init__(self, file_path: str, fallback: Optional[DeviceIdentity] = None):
        self.file_path = file_path
        self.fallback = fallback

    def load(self) -> Optional[DeviceIdentity]:
        if os.path.exists(self.file_path):
            try:
                data = read_json(self.file_path)
                site_id = str(data.get('siteId', '')).strip()
                api_key = str(data.get('apiKey', '')).strip()
                if site_id and api_key:
                    return DeviceIdentity(site_id=site_id, api_key=api_key)
                logger.warning(f"Identity file {self.file_path} is missing siteId or apiKey")
            except (OSError, ValueError, AttributeError) as e:
                logger.error(f"Could not read identity file {self.file_path}: {e}")
        return self.fallback

    def save(self, identity: DeviceIdentity):
        """Persist a newly issued identity (provisioning or key rotation)"""
        atomic_write_json(self.file_path, identity.to_dict(), mode=0o600)
        logger.info(f"Identity saved for site {identity.site_id}")
