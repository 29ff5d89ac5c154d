"""Edge agent - wires the site services together and runs their loops"""

import asyncio
import logging
from typing import Optional

from .. import config
from ..models import DeviceIdentity
from ..services import (
    ActionHandlers,
    CommandExecutor,
    ConfigWatcher,
    ConfigurationSource,
    DiagnosticsService,
    MetricsCollector,
    PhaseStateMachine,
    PlaylistWriter,
)
from ..storage import IdentityStore, JobStateStore
from ..sync import CentralRegistry, FleetLink, LoopbackTransport, MQTTTransport
from ..utils.cache import CacheManager

logger = logging.getLogger(__name__)


class EdgeAgent:
    """Site agent: playback phase, admin jobs, metrics and the fleet link"""

    def __init__(self, registry: Optional[CentralRegistry] = None):
        logger.info("Initializing FleetSync edge agent...")

        # Diagnostics first so every service can report into it
        self.diagnostics = DiagnosticsService()
        self.cache = CacheManager(max_size=128, default_ttl=60)

        # Playback: configuration -> playlist, driven by the phase
        self.config_source = ConfigurationSource(config.CONFIG_CANDIDATES, cache=self.cache)
        self.playlist_writer = PlaylistWriter(config.PLAYLIST_FILE, config.MEDIA_BASE_DIRS)
        self.phase_machine = PhaseStateMachine(
            config.PHASE_FILE, self.playlist_writer, self.config_source, diagnostics=self.diagnostics,
        )
        self.config_watcher = ConfigWatcher(
            self.config_source, self.phase_machine.on_configuration_changed, config.CONFIG_POLL_INTERVAL_S,
        )

        # Admin jobs
        self.handlers = ActionHandlers()
        self.executor = CommandExecutor(
            JobStateStore(config.JOB_STATE_FILE), self.handlers.as_runners(), diagnostics=self.diagnostics,
        )
        self.handlers.attach_client_sync(self.executor.sync_all_clients)

        self.metrics = MetricsCollector(cache=self.cache, diagnostics=self.diagnostics)

        # Fleet link, against the real broker or an in-process registry
        self.registry = registry
        if self.registry is None and config.SIMULATE_REGISTRY:
            self.registry = CentralRegistry()
        self.identity_store = IdentityStore(config.IDENTITY_FILE, fallback=self._configured_identity())
        identity_source = self.identity_store.load
        if self.registry is not None:
            simulated = self._provision_simulated_site()
            identity_source = lambda: simulated

        self.fleet_link = FleetLink(
            self._make_transport,
            identity_source,
            self.executor,
            on_phase_change=self.phase_machine.set_phase,
            diagnostics=self.diagnostics,
        )

        self.running = False
        logger.info(f"Edge agent initialized (site: {config.SITE_ID})")

    @staticmethod
    def _configured_identity() -> Optional[DeviceIdentity]:
        if config.SITE_ID and config.SITE_API_KEY:
            return DeviceIdentity(site_id=config.SITE_ID, api_key=config.SITE_API_KEY)
        return None

    def _provision_simulated_site(self) -> DeviceIdentity:
        """Register with the in-process registry. The key lives in memory only."""
        api_key = self.registry.register_site(config.SITE_ID)
        logger.info(f"Simulation mode: site {config.SITE_ID} registered with the in-process registry")
        return DeviceIdentity(site_id=config.SITE_ID, api_key=api_key)

    def _make_transport(self, identity: DeviceIdentity):
        if self.registry is not None:
            return LoopbackTransport(self.registry)
        return MQTTTransport(identity.site_id)

    async def start(self):
        """Restore the phase, then run every loop until stopped"""
        try:
            logger.info("Starting FleetSync edge agent...")

            # Playlist must match the persisted phase before anything else runs
            self.phase_machine.boot()
            self.config_watcher.prime(self.phase_machine.config_digest)

            self.running = True
            await asyncio.gather(
                self.fleet_link.run(),
                self.config_watcher.run(),
                self._metrics_loop(),
                self._diagnostics_loop(),
            )
        except asyncio.CancelledError:
            logger.info("Edge agent tasks cancelled")
            raise
        except Exception as e:
            logger.error(f"Error starting edge agent: {e}", exc_info=True)
            raise

    async def stop(self):
        """Stop loops and let in-flight jobs settle"""
        logger.info("Stopping FleetSync edge agent...")
        self.running = False
        self.fleet_link.stop()
        self.config_watcher.stop()
        try:
            await self.executor.shutdown()
            if self.registry is not None:
                await self.registry.close()
            self.diagnostics.log_summary()
            logger.info("Edge agent stopped successfully")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    async def _metrics_loop(self):
        """Collect a snapshot every METRICS_INTERVAL_S and hand it to the fleet link"""
        logger.info(f"Starting metrics loop (every {config.METRICS_INTERVAL_S}s)")
        while self.running:
            try:
                snapshot = await self.metrics.collect()
                for alert in snapshot.alerts:
                    logger.warning(f"[{alert.level.value}] {alert.message}")
                self.fleet_link.publish_metrics(snapshot)
                await asyncio.sleep(config.METRICS_INTERVAL_S)
            except asyncio.CancelledError:
                logger.info("Metrics loop cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in metrics loop: {e}", exc_info=True)
                self.diagnostics.record_error('general')
                await asyncio.sleep(30)

    async def _diagnostics_loop(self):
        while self.running:
            try:
                await asyncio.sleep(config.DIAGNOSTICS_INTERVAL_S)
                self.diagnostics.log_summary()
                if self.registry is not None:
                    self.registry.sweep_stale()
                expired = self.cache.cleanup()
                if expired:
                    logger.debug(f"Cache cleanup removed {expired} expired entries")
            except asyncio.CancelledError:
                logger.info("Diagnostics loop cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in diagnostics loop: {e}", exc_info=True)
