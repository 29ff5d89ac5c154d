"""Shared fixtures"""

import json

import pytest

from fleetsync.services import ActionHandlers, CommandExecutor, ConfigurationSource, PhaseStateMachine, PlaylistWriter
from fleetsync.storage import JobStateStore


@pytest.fixture
def make_executor(tmp_path):
    """Build an executor over a fresh state file; runners default to instant simulation"""

    def factory(runners=None, diagnostics=None, state_file="admin-state.json"):
        if runners is None:
            runners = ActionHandlers(hooks={}, simulated_step=0).as_runners()
        store = JobStateStore(str(tmp_path / state_file))
        return CommandExecutor(store, runners, diagnostics=diagnostics)

    return factory


@pytest.fixture
def media_dir(tmp_path):
    root = tmp_path / "media"
    (root / "videos").mkdir(parents=True)
    for name in ("sponsor-a.mp4", "sponsor-b.mp4", "pre-match.mp4", "half-time.mp4"):
        (root / "videos" / name).write_bytes(b"\x00")
    return root


@pytest.fixture
def write_configuration(tmp_path):
    path = tmp_path / "configuration.json"

    def writer(data):
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return writer


@pytest.fixture
def make_phase_machine(tmp_path, media_dir, write_configuration):
    def factory(configuration=None, diagnostics=None):
        if configuration is not None:
            write_configuration(configuration)
        source = ConfigurationSource([str(tmp_path / "configuration.json")])
        writer = PlaylistWriter(str(tmp_path / "playlist.txt"), [str(media_dir)])
        return PhaseStateMachine(str(tmp_path / "phase.txt"), writer, source, diagnostics=diagnostics)

    return factory
