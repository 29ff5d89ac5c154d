"""
Phase State Machine - owns the current event phase.

The phase is written to disk before the playlist is rebuilt, and boot always
rebuilds from the persisted phase, so a power loss between the two steps
still converges to the right playlist.
"""

import logging
import os
from typing import Optional

from ..exceptions import PlaylistResolutionFailure
from ..models import Phase, PlaybackConfiguration
from ..utils.files import atomic_write_text
from .config_watcher import ConfigurationSource
from .playlist_builder import PlaylistWriter

logger = logging.getLogger(__name__)


class PhaseStateMachine:
    """Single writer of the phase file; triggers playlist rebuilds"""

    def __init__(
        self,
        phase_file: str,
        writer: PlaylistWriter,
        source: ConfigurationSource,
        diagnostics=None,
    ):
        self.phase_file = phase_file
        self.writer = writer
        self.source = source
        self.diagnostics = diagnostics
        self._phase = Phase.NEUTRAL
        self._configuration: Optional[PlaybackConfiguration] = None
        self._config_digest: Optional[str] = None

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def config_digest(self) -> Optional[str]:
        """Digest of the configuration used by the last rebuild"""
        return self._config_digest

    def boot(self) -> bool:
        """Restore the persisted phase and rebuild. Run before anything else."""
        self._phase = self.read_persisted_phase()
        logger.info(f"Initial phase: {self._phase.value}")
        return self.rebuild()

    def read_persisted_phase(self) -> Phase:
        try:
            with open(self.phase_file, "r", encoding="utf-8") as f:
                token = f.read().strip()
        except FileNotFoundError:
            return Phase.NEUTRAL
        except OSError as e:
            logger.warning(f"Could not read phase file {self.phase_file}: {e}")
            return Phase.NEUTRAL
        try:
            return Phase(token)
        except ValueError:
            logger.warning(f"Ignoring unknown phase '{token}' in {self.phase_file}")
            return Phase.NEUTRAL

    def set_phase(self, new_phase) -> bool:
        """Move to ``new_phase``. Returns False when already there (no rebuild).

        Raises:
            InvalidPhase: unknown phase token
            OSError: the phase could not be persisted; nothing changed
        """
        phase = Phase.parse(new_phase)
        if phase == self._phase:
            logger.info(f"Already in phase '{phase.value}'")
            return False

        logger.info(f"Phase change: {self._phase.value} -> {phase.value}")
        atomic_write_text(self.phase_file, phase.value)
        self._phase = phase
        self.rebuild()
        return True

    def on_configuration_changed(self, configuration: PlaybackConfiguration):
        """Watcher callback: rebuild the current phase with the new configuration"""
        self._configuration = configuration
        self.rebuild(configuration)

    def rebuild(self, configuration: Optional[PlaybackConfiguration] = None) -> bool:
        """Regenerate the playlist for the current phase.

        Failures are logged and counted; the previous playlist stays live.
        """
        if configuration is None:
            loaded = self.source.load()
            if loaded is not None:
                self._configuration = loaded.configuration
                self._config_digest = loaded.digest
            configuration = self._configuration

        if configuration is None:
            logger.error("Unable to load the playback configuration, keeping the current playlist")
            self._record(False)
            return False

        try:
            self.writer.rebuild(self._phase, configuration)
        except PlaylistResolutionFailure as e:
            logger.error(str(e))
            self._record(False)
            return False
        except OSError as e:
            logger.error(f"Playlist write failed: {e}")
            self._record(False)
            return False

        self._record(True)
        return True

    def _record(self, success: bool):
        if self.diagnostics is not None:
            self.diagnostics.record_playlist_rebuild(success)

    def status(self) -> dict:
        return {
            'phase': self._phase.value,
            'phase_file': self.phase_file,
            'playlist_file': self.writer.playlist_path,
            'playlist_present': os.path.exists(self.writer.playlist_path),
        }
