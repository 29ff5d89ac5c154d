"""Metrics collection degrades probe by probe"""

import asyncio

from fleetsync.models import AlertType, ServiceState
from fleetsync.services import AlertThresholds, DiagnosticsService, MetricsCollector
from fleetsync.utils import CacheManager


class StubCollector(MetricsCollector):
    """Replaces the host probes with fixed readings"""

    def __init__(self, temperature=50.0, fail=(), **kwargs):
        super().__init__(services=['nginx'], **kwargs)
        self.temperature = temperature
        self.fail = set(fail)
        self.systemctl_calls = 0

    def _check(self, name):
        if name in self.fail:
            raise RuntimeError(f"{name} probe exploded")

    def _probe_cpu(self):
        self._check('cpu')
        return 12.5

    def _probe_memory(self):
        self._check('memory')
        return 40.0

    def _probe_temperature(self):
        self._check('temperature')
        return self.temperature

    def _probe_disk(self):
        self._check('disk')
        return 20.0

    async def _query_systemctl(self, name):
        self.systemctl_calls += 1
        self._check('services')
        return ServiceState.RUNNING


def test_collect_attaches_alerts(tmp_path):
    (tmp_path / "webapp").mkdir()
    (tmp_path / "webapp" / "index.html").write_text("<html></html>")
    collector = StubCollector(temperature=80.0, media_root=str(tmp_path),
                              thresholds=AlertThresholds(temperature_c=75))

    snapshot = asyncio.run(collector.collect())

    assert snapshot.cpu_percent == 12.5
    assert snapshot.application.webapp is True
    assert dict(snapshot.service_states) == {'nginx': ServiceState.RUNNING}
    assert [a.type for a in snapshot.alerts] == [AlertType.TEMPERATURE]


def test_failed_probe_yields_neutral_value(tmp_path):
    diagnostics = DiagnosticsService()
    collector = StubCollector(fail={'temperature', 'cpu'}, media_root=str(tmp_path),
                              diagnostics=diagnostics)

    snapshot = asyncio.run(collector.collect())

    assert snapshot.temperature_c is None
    assert snapshot.cpu_percent == 0.0
    assert snapshot.memory_percent == 40.0
    assert diagnostics.counters['probe_errors'] == 2


def test_failed_service_probe_reports_stopped(tmp_path):
    collector = StubCollector(fail={'services'}, media_root=str(tmp_path))

    snapshot = asyncio.run(collector.collect())

    assert dict(snapshot.service_states) == {'nginx': ServiceState.STOPPED}
    assert AlertType.SERVICE in [a.type for a in snapshot.alerts]


def test_service_states_are_cached(tmp_path):
    collector = StubCollector(media_root=str(tmp_path), cache=CacheManager(), service_ttl=60)

    async def scenario():
        await collector.collect()
        await collector.collect()

    asyncio.run(scenario())
    assert collector.systemctl_calls == 1


def test_application_probe_counts_videos(tmp_path):
    videos = tmp_path / "videos" / "sponsors"
    videos.mkdir(parents=True)
    (videos / "a.mp4").write_bytes(b"")
    (videos / "b.MKV").write_bytes(b"")
    (videos / "notes.txt").write_text("x")
    (tmp_path / "server").mkdir()
    (tmp_path / "server" / "server.js").write_text("")

    status = MetricsCollector(media_root=str(tmp_path), services=[])._probe_application()

    assert status.videos == 2
    assert status.server is True
    assert status.webapp is False
