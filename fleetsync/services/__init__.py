"""Services package"""

from .alert_evaluator import AlertThresholds, evaluate
from .diagnostics import DiagnosticsService
from .metrics_collector import MetricsCollector
from .command_executor import CommandExecutor
from .action_handlers import ActionHandlers
from .playlist_builder import PlaylistWriter, build_playlist, render_concat, select_media
from .config_watcher import ConfigWatcher, ConfigurationSource
from .phase_machine import PhaseStateMachine
from .video_compression import CompressionOptions, CompressionResult, VideoCompressionService

__all__ = [
    'AlertThresholds', 'evaluate', 'DiagnosticsService', 'MetricsCollector',
    'CommandExecutor', 'ActionHandlers',
    'PlaylistWriter', 'build_playlist', 'render_concat', 'select_media',
    'ConfigWatcher', 'ConfigurationSource', 'PhaseStateMachine',
    'CompressionOptions', 'CompressionResult', 'VideoCompressionService',
]
