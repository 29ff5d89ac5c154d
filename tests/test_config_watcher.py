"""Configuration polling"""

import asyncio
import os

from fleetsync.services import ConfigWatcher, ConfigurationSource


def test_first_existing_candidate_wins(tmp_path, write_configuration):
    path = write_configuration({'sponsors': [{'path': 'a.mp4'}]})
    source = ConfigurationSource([str(tmp_path / "webapp.json"), str(path)])

    loaded = source.load()

    assert loaded.path == str(path)
    assert loaded.configuration.sponsors[0].path == 'a.mp4'


def test_unparseable_configuration_loads_as_none(tmp_path):
    (tmp_path / "configuration.json").write_text("{not json")
    source = ConfigurationSource([str(tmp_path / "configuration.json")])
    assert source.load() is None


def test_touch_without_content_change_is_ignored(tmp_path, write_configuration):
    path = write_configuration({'sponsors': [{'path': 'a.mp4'}]})
    changes = []
    watcher = ConfigWatcher(ConfigurationSource([str(path)]), changes.append, interval=0)

    async def scenario():
        assert await watcher.check() is True
        later = os.stat(path).st_mtime + 5
        os.utime(path, (later, later))
        assert await watcher.check() is False

    asyncio.run(scenario())
    assert len(changes) == 1


def test_content_change_is_dispatched(tmp_path, write_configuration):
    write_configuration({'sponsors': [{'path': 'a.mp4'}]})
    seen = []

    async def on_change(configuration):
        seen.append([m.path for m in configuration.sponsors])

    source = ConfigurationSource([str(tmp_path / "configuration.json")])
    watcher = ConfigWatcher(source, on_change, interval=0)
    watcher.prime(source.load().digest)

    async def scenario():
        assert await watcher.check() is False
        write_configuration({'sponsors': [{'path': 'b.mp4'}, {'path': 'c.mp4'}]})
        assert await watcher.check() is True

    asyncio.run(scenario())
    assert seen == [['b.mp4', 'c.mp4']]


def test_run_loop_stops(tmp_path, write_configuration):
    write_configuration({'sponsors': []})
    watcher = ConfigWatcher(ConfigurationSource([str(tmp_path / "configuration.json")]), lambda c: None, interval=0.01)

    async def scenario():
        task = asyncio.create_task(watcher.run())
        await asyncio.sleep(0.05)
        watcher.stop()
        await asyncio.wait_for(task, 1)

    asyncio.run(scenario())
