"""Job state and identity persistence"""

import json
import os

from fleetsync.models import AdminAction, DeviceIdentity, Job, JobStatus, LocalClient
from fleetsync.storage import AdminState, IdentityStore, JobStateStore

SEED = AdminState(jobs=[], clients=[LocalClient(id="cli-1", name="Seed Club", code="seed")])


def test_missing_file_is_created_with_defaults(tmp_path):
    path = tmp_path / "admin-state.json"
    state = JobStateStore(str(path)).load(SEED)

    assert state.clients[0].id == "cli-1"
    on_disk = json.loads(path.read_text())
    assert on_disk['jobs'] == []
    assert on_disk['clients'][0]['code'] == "seed"


def test_missing_keys_take_defaults(tmp_path):
    path = tmp_path / "admin-state.json"
    path.write_text(json.dumps({'jobs': []}))

    state = JobStateStore(str(path)).load(SEED)

    assert state.jobs == []
    assert [c.id for c in state.clients] == ["cli-1"]


def test_corrupt_records_are_skipped(tmp_path):
    path = tmp_path / "admin-state.json"
    good = Job(id="job-1", action=AdminAction.BUILD_CENTRAL, status=JobStatus.SUCCEEDED,
               created_at="2024-05-01T10:00:00+00:00", updated_at="2024-05-01T10:00:01+00:00")
    path.write_text(json.dumps({'jobs': [good.to_dict(), {'id': 'job-2', 'action': 'nope'}], 'clients': []}))

    state = JobStateStore(str(path)).load(SEED)

    assert [job.id for job in state.jobs] == ["job-1"]
    assert state.clients == []


def test_unreadable_file_falls_back(tmp_path):
    path = tmp_path / "admin-state.json"
    path.write_text("[broken")
    assert JobStateStore(str(path)).load(SEED) is SEED


def test_identity_is_reread_on_every_load(tmp_path):
    store = IdentityStore(str(tmp_path / "identity.json"))
    assert store.load() is None

    store.save(DeviceIdentity(site_id="site-1", api_key="first"))
    assert store.load().api_key == "first"
    assert oct(os.stat(tmp_path / "identity.json").st_mode & 0o777) == oct(0o600)

    (tmp_path / "identity.json").write_text(json.dumps({'siteId': 'site-1', 'apiKey': 'second'}))
    assert store.load().api_key == "second"


def test_identity_falls_back_when_incomplete(tmp_path):
    fallback = DeviceIdentity(site_id="env-site", api_key="env-key")
    (tmp_path / "identity.json").write_text(json.dumps({'siteId': 'site-1'}))

    assert IdentityStore(str(tmp_path / "identity.json"), fallback=fallback).load() is fallback


def test_identity_repr_hides_key():
    assert "secret" not in repr(DeviceIdentity(site_id="s", api_key="secret"))
