"""Host health sampling for the metrics tick"""

import asyncio
import logging
import os
from dataclasses import replace
from typing import Dict, Iterable, Optional

import psutil

from .. import config
from ..models import ApplicationStatus, MetricsSnapshot, ServiceState
from ..utils.cache import CacheManager
from .alert_evaluator import AlertThresholds, evaluate

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = ('.mp4', '.mkv', '.mov')


class MetricsCollector:
    """Produces one MetricsSnapshot per call to ``collect()``.

    Every probe is independent: a probe that fails logs, counts an error in
    diagnostics and contributes a neutral value instead of aborting the tick.
    """

    def __init__(
        self,
        media_root: str = None,
        services: Iterable[str] = None,
        thresholds: AlertThresholds = None,
        cache: CacheManager = None,
        diagnostics=None,
        thermal_path: str = None,
        service_ttl: float = None,
    ):
        self.media_root = media_root or config.MEDIA_ROOT
        self.services = list(config.MONITORED_SERVICES if services is None else services)
        self.thresholds = thresholds or AlertThresholds.from_config()
        self.cache = cache or CacheManager(max_size=64, default_ttl=config.SERVICE_STATE_TTL_S)
        self.diagnostics = diagnostics
        self.thermal_path = thermal_path or config.THERMAL_ZONE_PATH
        self.service_ttl = config.SERVICE_STATE_TTL_S if service_ttl is None else service_ttl

    async def collect(self) -> MetricsSnapshot:
        """Sample all probes and attach the alerts they trigger. Never raises."""
        cpu = self._guard("cpu", self._probe_cpu, 0.0)
        memory = self._guard("memory", self._probe_memory, 0.0)
        temperature = self._guard("temperature", self._probe_temperature, None)
        disk = self._guard("disk", self._probe_disk, None)
        application = self._guard("application", self._probe_application, ApplicationStatus())
        try:
            services = await self._probe_services()
        except Exception as e:
            logger.error(f"Service probe failed: {e}")
            self._record_error()
            services = {name: ServiceState.STOPPED for name in self.services}

        snapshot = MetricsSnapshot(
            timestamp=MetricsSnapshot.now(),
            cpu_percent=cpu,
            memory_percent=memory,
            temperature_c=temperature,
            disk_percent=disk,
            service_states=services,
            application=application,
        )
        try:
            alerts = evaluate(snapshot, self.thresholds)
        except Exception as e:
            logger.error(f"Alert evaluation failed: {e}", exc_info=True)
            alerts = []
        return replace(snapshot, alerts=tuple(alerts))

    def _guard(self, name, probe, default):
        try:
            return probe()
        except Exception as e:
            logger.warning(f"Probe '{name}' failed, using {default!r}: {e}")
            self._record_error()
            return default

    def _record_error(self):
        if self.diagnostics is not None:
            self.diagnostics.record_error('probe')

    # ============ Probes ============

    def _probe_cpu(self) -> float:
        return round(float(psutil.cpu_percent(interval=None)), 1)

    def _probe_memory(self) -> float:
        return round(float(psutil.virtual_memory().percent), 1)

    def _probe_temperature(self) -> Optional[float]:
        try:
            with open(self.thermal_path, "r") as f:
                return round(int(f.read().strip()) / 1000, 1)
        except (OSError, ValueError):
            pass

        sensors = getattr(psutil, "sensors_temperatures", None)
        if sensors is None:
            return None
        readings = sensors() or {}
        for entries in readings.values():
            for entry in entries:
                if entry.current is not None:
                    return round(float(entry.current), 1)
        return None

    def _probe_disk(self) -> Optional[float]:
        path = self.media_root if os.path.exists(self.media_root) else os.path.abspath(os.sep)
        return round(float(psutil.disk_usage(path).percent), 1)

    def _probe_application(self) -> ApplicationStatus:
        root = self.media_root
        videos_dir = os.path.join(root, "videos")
        videos = 0
        if os.path.isdir(videos_dir):
            for _, _, files in os.walk(videos_dir):
                videos += sum(1 for name in files if name.lower().endswith(VIDEO_EXTENSIONS))
        return ApplicationStatus(
            webapp=os.path.exists(os.path.join(root, "webapp", "index.html")),
            server=os.path.exists(os.path.join(root, "server", "server.js")),
            admin=os.path.exists(os.path.join(root, "admin", "admin-server.js")),
            videos=videos,
        )

    async def _probe_services(self) -> Dict[str, ServiceState]:
        states = await asyncio.gather(*(self._service_state(name) for name in self.services))
        return dict(zip(self.services, states))

    async def _service_state(self, name: str) -> ServiceState:
        cached = self.cache.get("services", name)
        if cached is not None:
            return cached
        state = await self._query_systemctl(name)
        self.cache.set("services", name, state, ttl=self.service_ttl)
        return state

    async def _query_systemctl(self, name: str) -> ServiceState:
        try:
            proc = await asyncio.create_subprocess_exec(
                "systemctl", "is-active", name,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"systemctl unavailable for {name}: {e}")
            return ServiceState.STOPPED
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"systemctl is-active {name} timed out")
            proc.kill()
            await proc.wait()
            return ServiceState.STOPPED
        return ServiceState.RUNNING if stdout.decode().strip() == "active" else ServiceState.STOPPED
