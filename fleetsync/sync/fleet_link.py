"""
Fleet Link - keeps the site connected to the central registry.

Connection cycle:
1. Re-read the identity and open a transport
2. Authenticate (first frame, bounded by AUTH_TIMEOUT_S)
3. Run heartbeat, metrics and receive loops until the connection drops
4. Wait on the backoff, then start over. Never gives up.
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .. import config
from ..exceptions import (
    AuthenticationError,
    CommandValidationError,
    InvalidPhase,
    ProtocolError,
    TransportFailure,
)
from ..models import ConnectionSession, DeviceIdentity, Job, JobStatus, MetricsSnapshot
from ..utils.backoff import Backoff
from . import protocol
from .protocol import Message, MessageType, ResultStatus
from .transport import Transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[DeviceIdentity], Transport]
IdentitySource = Callable[[], Optional[DeviceIdentity]]


class FleetLink:
    """Device side of the registry connection"""

    def __init__(
        self,
        transport_factory: TransportFactory,
        identity_source: IdentitySource,
        executor,
        on_phase_change: Optional[Callable[[str], Any]] = None,
        diagnostics=None,
        heartbeat_interval: float = None,
        auth_timeout: float = None,
        backoff: Backoff = None,
    ):
        self.transport_factory = transport_factory
        self.identity_source = identity_source
        self.executor = executor
        self.on_phase_change = on_phase_change
        self.diagnostics = diagnostics
        self.heartbeat_interval = config.HEARTBEAT_INTERVAL_S if heartbeat_interval is None else heartbeat_interval
        self.auth_timeout = config.AUTH_TIMEOUT_S if auth_timeout is None else auth_timeout
        self.backoff = backoff or Backoff(config.RECONNECT_INITIAL_S, config.RECONNECT_MAX_S)

        self.session: Optional[ConnectionSession] = None
        self.identity: Optional[DeviceIdentity] = None
        self._transport: Optional[Transport] = None
        self._running = False
        self._metrics_outbox: "asyncio.Queue[MetricsSnapshot]" = asyncio.Queue(maxsize=1)
        # command id -> command_result frame not yet handed to a transport
        self._unsent_results: "OrderedDict[str, Message]" = OrderedDict()
        self._flush_lock = asyncio.Lock()
        self._tasks = set()
        self._unsubscribe = executor.subscribe(self._on_job_update)

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None and self.session.authenticated

    # ============ Connection loop ============

    async def run(self):
        """Connect, serve and reconnect until ``stop()``"""
        self._running = True
        logger.info("Fleet link starting")
        while self._running:
            identity = self.identity_source()
            if identity is None:
                logger.error("No site credentials configured, cannot connect")
            else:
                await self._attempt(identity)

            if not self._running:
                break
            delay = self.backoff.next_delay()
            logger.info(f"Reconnecting in {delay:.1f}s")
            await asyncio.sleep(delay)
        logger.info("Fleet link stopped")

    async def _attempt(self, identity: DeviceIdentity):
        self.identity = identity
        self._set_link_state("connecting")
        if self.diagnostics is not None:
            self.diagnostics.record_connection_attempt()

        transport = self.transport_factory(identity)
        self._transport = transport
        try:
            await transport.connect()
            self.session = ConnectionSession(connected_at=datetime.now(timezone.utc))
            await self._handshake(transport, identity)
            await self._serve(transport, identity)
        except AuthenticationError as e:
            logger.error(f"Authentication failed: {e}")
            if self.diagnostics is not None:
                self.diagnostics.record_auth_failure(str(e))
        except TransportFailure as e:
            logger.warning(f"Connection to the registry lost: {e}")
            self._record_error("link")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected fleet link error: {e}", exc_info=True)
            self._record_error("link")
        finally:
            self.session = None
            self._transport = None
            # a snapshot from this session is stale by the next one
            while not self._metrics_outbox.empty():
                self._metrics_outbox.get_nowait()
            self._set_link_state("connecting")
            await transport.close()

    async def _handshake(self, transport: Transport, identity: DeviceIdentity):
        await transport.send(protocol.authenticate(identity))
        try:
            reply = await asyncio.wait_for(transport.receive(), self.auth_timeout)
        except asyncio.TimeoutError:
            raise TransportFailure(f"No authentication response within {self.auth_timeout}s")
        except ProtocolError as e:
            raise TransportFailure(f"Unreadable authentication response: {e}") from e

        if reply.type == MessageType.AUTH_ERROR:
            raise AuthenticationError(reply.data.get('message') or "Authentication rejected")
        if reply.type != MessageType.AUTHENTICATED:
            raise TransportFailure(f"Unexpected {reply.type.value} before authentication")

        self.session.authenticated = True
        self.backoff.reset()
        self._set_link_state("online")
        logger.info(f"Authenticated with the registry as {identity.site_id}")

    async def _serve(self, transport: Transport, identity: DeviceIdentity):
        await self._flush_results()
        tasks = [
            asyncio.create_task(self._heartbeat_loop(transport, identity)),
            asyncio.create_task(self._metrics_loop(transport, identity)),
            asyncio.create_task(self._receive_loop(transport)),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            error = task.exception()
            if error is not None:
                raise error

    def stop(self):
        self._running = False
        self._unsubscribe()

    # ============ Outbound ============

    async def _heartbeat_loop(self, transport: Transport, identity: DeviceIdentity):
        while True:
            await transport.send(protocol.heartbeat(identity.site_id))
            self.session.last_heartbeat_at = datetime.now(timezone.utc)
            if self.diagnostics is not None:
                self.diagnostics.record_heartbeat()
            logger.debug("Heartbeat sent")
            await asyncio.sleep(self.heartbeat_interval)

    async def _metrics_loop(self, transport: Transport, identity: DeviceIdentity):
        while True:
            snapshot = await self._metrics_outbox.get()
            await transport.send(protocol.metrics(identity.site_id, snapshot))
            if self.diagnostics is not None:
                self.diagnostics.record_metrics(len(snapshot.alerts))
            logger.debug(f"Metrics sent ({len(snapshot.alerts)} alert(s))")

    def publish_metrics(self, snapshot: MetricsSnapshot) -> bool:
        """Hand a snapshot to the sender. Dropped while not authenticated; latest wins."""
        if not self.is_authenticated:
            logger.debug("Not connected, metrics snapshot dropped")
            return False
        if self._metrics_outbox.full():
            self._metrics_outbox.get_nowait()
        self._metrics_outbox.put_nowait(snapshot)
        return True

    def _on_job_update(self, job: Job):
        if job.command_id is None or not job.status.is_terminal:
            return
        status = ResultStatus.SUCCEEDED if job.status == JobStatus.SUCCEEDED else ResultStatus.FAILED
        self._unsent_results[job.command_id] = protocol.command_result(
            job.command_id, status, job.summary, job_id=job.id,
        )
        if self.is_authenticated:
            task = asyncio.get_running_loop().create_task(self._flush_results())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _flush_results(self):
        """Send queued command results; anything unsent waits for the next session"""
        async with self._flush_lock:
            while self._unsent_results and self.is_authenticated:
                command_id, message = next(iter(self._unsent_results.items()))
                transport = self._transport
                if transport is None:
                    return
                try:
                    await transport.send(message)
                except TransportFailure as e:
                    logger.warning(f"Could not report result of {command_id}, will retry: {e}")
                    return
                self._unsent_results.pop(command_id, None)
                logger.info(f"Reported result of command {command_id}")

    # ============ Inbound ============

    async def _receive_loop(self, transport: Transport):
        while True:
            try:
                message = await transport.receive()
            except ProtocolError as e:
                logger.warning(f"Dropping unreadable frame: {e}")
                continue
            await self._dispatch(transport, message)

    async def _dispatch(self, transport: Transport, message: Message):
        if message.type == MessageType.COMMAND:
            await self._handle_command(transport, message.data)
        elif message.type == MessageType.PHASE_CHANGE:
            await self._handle_phase_change(message.data)
        elif message.type == MessageType.AUTH_ERROR:
            raise AuthenticationError(message.data.get('message') or "Session revoked")
        else:
            logger.debug(f"Ignoring {message.type.value} from the registry")

    async def _handle_command(self, transport: Transport, data):
        raw_id = data.get('id') if isinstance(data, dict) else None
        # echoed back on rejection even when the registry sent a non-string id
        command_id = str(raw_id) if raw_id not in (None, "") else None

        if isinstance(raw_id, str) and raw_id:
            existing = self.executor.job_for_command(raw_id)
            if existing is not None:
                logger.info(f"Duplicate delivery of command {command_id} ({existing.status.value})")
                if existing.status.is_terminal:
                    self._on_job_update(existing)
                return

        try:
            job = self.executor.submit(data)
        except CommandValidationError as e:
            logger.warning(f"Rejected command {command_id}: {e}")
            if self.diagnostics is not None:
                self.diagnostics.record_command(False)
            if command_id:
                try:
                    rejection = protocol.command_result(command_id, ResultStatus.REJECTED, str(e))
                except ValueError as build_error:
                    logger.error(f"Could not build rejection for {command_id}: {build_error}")
                    return
                await transport.send(rejection)
            return

        if self.diagnostics is not None:
            self.diagnostics.record_command(True)
        logger.info(f"Accepted command {job.command_id} as job {job.id}")

    async def _handle_phase_change(self, data):
        if self.on_phase_change is None:
            logger.warning("Phase change received but no phase handler is attached")
            return
        try:
            payload = protocol.PhaseChangePayload.model_validate(data)
            result = self.on_phase_change(payload.phase)
            if asyncio.iscoroutine(result):
                await result
        except (InvalidPhase, ValueError) as e:
            logger.warning(f"Ignoring phase change: {e}")
        except OSError as e:
            logger.error(f"Could not apply phase change: {e}")
            self._record_error("general")

    # ============ Diagnostics ============

    def _set_link_state(self, state: str):
        if self.diagnostics is not None:
            self.diagnostics.set_link_state(state)

    def _record_error(self, error_type: str):
        if self.diagnostics is not None:
            self.diagnostics.record_error(error_type)
