"""
Playback configuration source and change watcher.
The configuration file is polled; a rebuild is only triggered when the
content actually changed, not on a bare touch.
"""

import asyncio
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence, Union

from pydantic import ValidationError

from .. import config
from ..models import PlaybackConfiguration
from ..utils.cache import CacheManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedConfiguration:
    path: str
    digest: str
    configuration: PlaybackConfiguration


class ConfigurationSource:
    """Reads the first existing file among ``candidates``"""

    def __init__(self, candidates: Sequence[str] = None, cache: CacheManager = None):
        self.candidates = list(candidates or config.CONFIG_CANDIDATES)
        self.cache = cache or CacheManager(max_size=8, default_ttl=3600)

    def locate(self) -> Optional[str]:
        for path in self.candidates:
            if os.path.isfile(path):
                return path
        return None

    def load(self) -> Optional[LoadedConfiguration]:
        """Parse the current configuration; ``None`` when missing or unreadable"""
        path = self.locate()
        if path is None:
            logger.error(f"Configuration file not found, tried: {self.candidates}")
            return None

        try:
            stat = os.stat(path)
            cache_key = f"{path}:{stat.st_mtime_ns}:{stat.st_size}"
            cached = self.cache.get("configuration", cache_key)
            if cached is not None:
                return cached

            with open(path, "rb") as fh:
                raw = fh.read()
            configuration = PlaybackConfiguration.model_validate(json.loads(raw.decode("utf-8")))
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Could not load configuration from {path}: {e}")
            return None

        loaded = LoadedConfiguration(
            path=path,
            digest=hashlib.sha256(raw).hexdigest(),
            configuration=configuration,
        )
        self.cache.invalidate_namespace("configuration")
        self.cache.set("configuration", cache_key, loaded)
        logger.debug(f"Configuration loaded from {path}")
        return loaded


ChangeCallback = Callable[[PlaybackConfiguration], Union[None, Awaitable[None]]]


class ConfigWatcher:
    """Polls the configuration source and reports content changes"""

    def __init__(self, source: ConfigurationSource, on_change: ChangeCallback, interval: float = None):
        self.source = source
        self.on_change = on_change
        self.interval = config.CONFIG_POLL_INTERVAL_S if interval is None else interval
        self._last_digest: Optional[str] = None
        self._running = False

    def prime(self, digest: Optional[str]):
        """Remember the digest already applied at startup"""
        self._last_digest = digest

    async def check(self) -> bool:
        """One poll. Returns True when a change was detected and dispatched."""
        loaded = self.source.load()
        if loaded is None or loaded.digest == self._last_digest:
            return False

        first_load = self._last_digest is None
        self._last_digest = loaded.digest
        if first_load:
            logger.info(f"Watching configuration {loaded.path}")
        else:
            logger.info("Configuration changed, regenerating the playlist...")

        result = self.on_change(loaded.configuration)
        if asyncio.iscoroutine(result):
            await result
        return True

    async def run(self):
        """Poll until ``stop()`` is called"""
        self._running = True
        logger.info(f"Starting configuration watch loop (every {self.interval}s)")
        while self._running:
            try:
                await self.check()
            except asyncio.CancelledError:
                logger.info("Configuration watch loop cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in configuration watch loop: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def stop(self):
        self._running = False
