"""
Central Registry - fleet side of the link.

Authenticates sites, tracks liveness and the latest metrics, fans commands
out to sites and collects their results. Commands are delivered
at-least-once: anything without a result is re-sent after every successful
authentication of the site.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..exceptions import ProtocolError, TransportFailure
from ..models import Command, Phase
from . import protocol
from .protocol import AuthenticatePayload, CommandResultPayload, MessageType
from .transport import Endpoint, endpoint_pair

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_S = 90


def hash_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


@dataclass
class SiteRecord:
    site_id: str
    key_hash: str
    online: bool = False
    last_seen: Optional[float] = None
    last_heartbeat: Optional[float] = None
    latest_metrics: Optional[Dict[str, Any]] = None
    pending: "OrderedDict[str, Command]" = field(default_factory=OrderedDict)
    results: List[Dict[str, Any]] = field(default_factory=list)


class CentralRegistry:
    """Authoritative record of sites and their credentials"""

    def __init__(self, stale_after: float = DEFAULT_STALE_AFTER_S, clock: Callable[[], float] = time.time):
        self.stale_after = stale_after
        self.clock = clock
        self._sites: Dict[str, SiteRecord] = {}
        self._connections: Dict[str, Endpoint] = {}
        self._tasks = set()

    # ============ Provisioning ============

    def register_site(self, site_id: str) -> str:
        """Create a site and return its api key (shown once)"""
        if site_id in self._sites:
            raise ValueError(f"Site {site_id} already registered")
        api_key = secrets.token_urlsafe(32)
        self._sites[site_id] = SiteRecord(site_id=site_id, key_hash=hash_key(api_key))
        logger.info(f"Registered site {site_id}")
        return api_key

    def issue_key(self, site_id: str) -> str:
        """Rotate the site key; the old key stops working immediately"""
        record = self._require(site_id)
        api_key = secrets.token_urlsafe(32)
        record.key_hash = hash_key(api_key)
        logger.info(f"Issued a new api key for site {site_id}")

        endpoint = self._connections.get(site_id)
        if endpoint is not None:
            logger.info(f"Closing session of {site_id} authenticated with the previous key")
            endpoint.close()
        return api_key

    def verify(self, site_id: str, api_key: str) -> bool:
        record = self._sites.get(site_id)
        if record is None:
            # same amount of work for unknown sites
            hmac.compare_digest(hash_key(api_key), hash_key(""))
            return False
        return hmac.compare_digest(hash_key(api_key), record.key_hash)

    # ============ Connections ============

    def open_connection(self) -> Endpoint:
        """Accept a new device connection; returns the device side endpoint"""
        device_end, registry_end = endpoint_pair()
        task = asyncio.get_running_loop().create_task(self._serve(registry_end))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return device_end

    async def _serve(self, endpoint: Endpoint):
        site_id = None
        try:
            site_id = await self._authenticate(endpoint)
            if site_id is None:
                return
            while True:
                try:
                    message = await endpoint.receive()
                except ProtocolError as e:
                    logger.warning(f"Dropping frame from {site_id}: {e}")
                    continue
                self._handle(site_id, message)
        except TransportFailure:
            pass
        finally:
            endpoint.close()
            if site_id is not None and self._connections.get(site_id) is endpoint:
                del self._connections[site_id]
                self._sites[site_id].online = False
                logger.info(f"Site {site_id} disconnected")

    async def _authenticate(self, endpoint: Endpoint) -> Optional[str]:
        try:
            message = await endpoint.receive()
            if message.type != MessageType.AUTHENTICATE:
                raise ProtocolError(f"Expected authenticate, got {message.type.value}")
            credentials = protocol.payload(message, AuthenticatePayload)
        except ProtocolError as e:
            await endpoint.send(protocol.auth_error(str(e)))
            endpoint.close()
            return None

        if not self.verify(credentials.site_id, credentials.api_key):
            logger.warning(f"Authentication refused for site {credentials.site_id}")
            await endpoint.send(protocol.auth_error("Invalid credentials"))
            endpoint.close()
            return None

        site_id = credentials.site_id
        previous = self._connections.get(site_id)
        if previous is not None:
            previous.close()
        self._connections[site_id] = endpoint

        record = self._sites[site_id]
        record.online = True
        record.last_seen = self.clock()
        await endpoint.send(protocol.authenticated(site_id))
        logger.info(f"Site {site_id} authenticated")

        for pending in list(record.pending.values()):
            logger.info(f"Re-sending pending command {pending.id} to {site_id}")
            await endpoint.send(protocol.command(pending))
        return site_id

    def _handle(self, site_id: str, message: protocol.Message):
        record = self._sites[site_id]
        record.last_seen = self.clock()
        record.online = True

        if message.type == MessageType.HEARTBEAT:
            record.last_heartbeat = record.last_seen
        elif message.type == MessageType.METRICS:
            record.latest_metrics = dict(message.data.get('snapshot') or {})
        elif message.type == MessageType.COMMAND_RESULT:
            try:
                result = protocol.payload(message, CommandResultPayload)
            except ProtocolError as e:
                logger.warning(f"Ignoring malformed command result from {site_id}: {e}")
                return
            record.pending.pop(result.id, None)
            record.results.append(result.model_dump(mode="json", by_alias=True))
            logger.info(f"Command {result.id} on {site_id}: {result.status.value}")
        else:
            logger.warning(f"Unexpected {message.type.value} from {site_id}")

    # ============ Fleet operations ============

    async def send_command(self, site_id: str, command: Union[Command, Mapping[str, Any]]) -> Command:
        """Queue ``command`` for the site and push it now when connected"""
        record = self._require(site_id)
        if not isinstance(command, Command):
            command = Command.model_validate(command)
        record.pending[command.id] = command

        endpoint = self._connections.get(site_id)
        if endpoint is not None:
            try:
                await endpoint.send(protocol.command(command))
            except TransportFailure:
                logger.info(f"Site {site_id} went away, command {command.id} stays pending")
        return command

    async def send_phase_change(self, site_id: str, phase: Union[Phase, str]) -> bool:
        """Push a phase change. Not queued: returns False when the site is offline."""
        self._require(site_id)
        token = phase.value if isinstance(phase, Phase) else str(phase)
        endpoint = self._connections.get(site_id)
        if endpoint is None:
            return False
        try:
            await endpoint.send(protocol.phase_change(token))
        except TransportFailure:
            return False
        return True

    def is_online(self, site_id: str) -> bool:
        record = self._sites.get(site_id)
        return bool(record and record.online)

    def sweep_stale(self, now: Optional[float] = None) -> List[str]:
        """Mark sites silent for longer than ``stale_after`` offline"""
        now = self.clock() if now is None else now
        stale = []
        for record in self._sites.values():
            if record.online and record.last_seen is not None and now - record.last_seen > self.stale_after:
                record.online = False
                stale.append(record.site_id)
                logger.warning(f"Site {record.site_id} marked offline (silent for {now - record.last_seen:.0f}s)")
        return stale

    def last_heartbeat(self, site_id: str) -> Optional[float]:
        return self._require(site_id).last_heartbeat

    def latest_metrics(self, site_id: str) -> Optional[Dict[str, Any]]:
        return self._require(site_id).latest_metrics

    def results(self, site_id: str) -> List[Dict[str, Any]]:
        return list(self._require(site_id).results)

    def pending_commands(self, site_id: str) -> List[Command]:
        return list(self._require(site_id).pending.values())

    async def close(self):
        for endpoint in list(self._connections.values()):
            endpoint.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _require(self, site_id: str) -> SiteRecord:
        record = self._sites.get(site_id)
        if record is None:
            raise KeyError(f"Unknown site {site_id}")
        return record
