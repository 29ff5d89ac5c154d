"""
Playlist Builder - maps {phase, configuration} to the ordered media list
and writes it in FFmpeg concat format for the playback process.
"""

import logging
import os
from typing import Iterable, List, Optional, Sequence

from ..exceptions import PlaylistResolutionFailure
from ..models import MediaRef, Phase, PlaybackConfiguration, PlaylistEntry
from ..utils.files import atomic_write_text

logger = logging.getLogger(__name__)


def select_media(phase: Phase, configuration: PlaybackConfiguration) -> List[MediaRef]:
    """Media configured for ``phase``, falling back to the sponsor loop when empty"""
    if phase == Phase.NEUTRAL:
        media = list(configuration.sponsors)
    else:
        category = configuration.category(phase.value)
        media = list(category.loop_videos) if category else []

    if not media and configuration.sponsors:
        logger.info(f"No media for phase '{phase.value}', using the sponsor loop")
        media = list(configuration.sponsors)
    return media


def resolve_media_path(media_path: str, base_dirs: Sequence[str]) -> Optional[str]:
    """First existing file for ``media_path``; absolute paths are checked as-is"""
    if os.path.isabs(media_path):
        candidates = [media_path]
    else:
        relative = media_path.lstrip("/\\")
        candidates = [os.path.join(base, relative) for base in base_dirs]

    for candidate in candidates:
        if os.path.isfile(candidate):
            return os.path.abspath(candidate)
    return None


def build_playlist(
    phase: Phase,
    configuration: PlaybackConfiguration,
    base_dirs: Sequence[str],
) -> List[PlaylistEntry]:
    """Resolve the phase media to existing files, skipping the missing ones"""
    entries = []
    for media in select_media(phase, configuration):
        resolved = resolve_media_path(media.path, base_dirs)
        if resolved is None:
            logger.warning(f"Video not found, skipping: {media.path}")
            continue
        entries.append(PlaylistEntry(
            absolute_path=resolved,
            display_name=media.name or os.path.basename(resolved),
        ))
    return entries


def render_concat(entries: Iterable[PlaylistEntry]) -> str:
    """FFmpeg concat list: one ``file '<path>'`` line per entry"""
    lines = []
    for entry in entries:
        escaped = entry.absolute_path.replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


class PlaylistWriter:
    """Single writer of the live playlist file"""

    def __init__(self, playlist_path: str, base_dirs: Sequence[str]):
        self.playlist_path = playlist_path
        self.base_dirs = list(base_dirs)

    def rebuild(self, phase: Phase, configuration: PlaybackConfiguration) -> List[PlaylistEntry]:
        """Regenerate the playlist file for ``phase``.

        Raises:
            PlaylistResolutionFailure: nothing resolved; the current file is kept
        """
        entries = build_playlist(phase, configuration, self.base_dirs)
        if not entries:
            raise PlaylistResolutionFailure(
                f"No playable media for phase '{phase.value}', keeping {self.playlist_path}"
            )
        atomic_write_text(self.playlist_path, render_concat(entries))
        logger.info(f"Playlist generated with {len(entries)} video(s) for phase '{phase.value}'")
        return entries
