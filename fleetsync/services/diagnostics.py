"""Diagnostics service - track operational metrics"""

import logging
import socket
from datetime import datetime

logger = logging.getLogger(__name__)


class DiagnosticsService:
    """Lightweight counters describing how the agent itself is doing"""

    def __init__(self):
        """Initialize diagnostics tracker"""
        self.start_time = datetime.now()
        self.counters = {
            'heartbeats_sent': 0,
            'metrics_sent': 0,
            'auth_failures': 0,
            'connection_attempts': 0,
            'commands_accepted': 0,
            'commands_rejected': 0,
            'jobs_failed': 0,
            'playlist_rebuilds': 0,
            'playlist_failures': 0,
            'probe_errors': 0,
            'link_errors': 0,
            'total_errors': 0,
            'alerts_triggered': 0,
        }
        self.link_state = "connecting"
        self.last_auth_error = None
        self.last_heartbeat_at = None
        logger.info("Diagnostics service initialized")

    def record_heartbeat(self):
        """Record heartbeat sent over the fleet link"""
        self.counters['heartbeats_sent'] += 1
        self.last_heartbeat_at = datetime.now()

    def record_metrics(self, alert_count: int = 0):
        self.counters['metrics_sent'] += 1
        self.counters['alerts_triggered'] += alert_count

    def record_connection_attempt(self):
        self.counters['connection_attempts'] += 1
        self.link_state = "connecting"

    def record_auth_failure(self, message: str):
        self.counters['auth_failures'] += 1
        self.last_auth_error = message
        self.link_state = "connecting"

    def set_link_state(self, state: str):
        """'connecting' or 'online'"""
        self.link_state = state
        if state == "online":
            self.last_auth_error = None

    def record_command(self, accepted: bool):
        key = 'commands_accepted' if accepted else 'commands_rejected'
        self.counters[key] += 1

    def record_job_failure(self):
        self.counters['jobs_failed'] += 1

    def record_playlist_rebuild(self, success: bool):
        self.counters['playlist_rebuilds' if success else 'playlist_failures'] += 1
        if not success:
            self.counters['total_errors'] += 1

    def record_error(self, error_type: str):
        """Record an error

        Args:
            error_type: 'probe', 'link', or 'general'
        """
        self.counters['total_errors'] += 1
        if error_type == 'probe':
            self.counters['probe_errors'] += 1
        elif error_type == 'link':
            self.counters['link_errors'] += 1

    def get_uptime_seconds(self) -> int:
        """Get uptime in seconds"""
        return int((datetime.now() - self.start_time).total_seconds())

    def get_uptime_formatted(self) -> str:
        """Get uptime as formatted string"""
        seconds = self.get_uptime_seconds()
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{hours}h {minutes}m"

    def get_error_rate(self) -> float:
        """Get error rate as percentage of heartbeats and commands handled"""
        total_ops = (
            self.counters['heartbeats_sent']
            + self.counters['commands_accepted']
            + self.counters['commands_rejected']
        )
        if total_ops == 0:
            return 0.0
        return (self.counters['total_errors'] / total_ops) * 100

    def get_health_summary(self) -> dict:
        """Get health summary for logs and the metrics payload

        A device that keeps failing authentication stays 'connecting'; it is
        never reported as crashed.
        """
        error_rate = self.get_error_rate()

        if self.link_state != "online":
            status = "connecting"
        elif self.counters['playlist_failures'] and self.counters['playlist_rebuilds'] == 0:
            status = "degraded"
        elif error_rate > 5.0:
            status = "degraded"
        else:
            status = "healthy"

        try:
            hostname = socket.gethostname()
        except Exception:
            hostname = "unknown"

        return {
            'status': status,
            'link_state': self.link_state,
            'last_auth_error': self.last_auth_error,
            'uptime_seconds': self.get_uptime_seconds(),
            'uptime_formatted': self.get_uptime_formatted(),
            'error_rate_percent': round(error_rate, 2),
            'last_heartbeat': self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None,
            'hostname': hostname,
            'timestamp': datetime.now().isoformat(),
            **self.counters,
        }

    def log_summary(self):
        """Log current health summary to logger"""
        summary = self.get_health_summary()
        logger.info(
            f"Health Summary - Status: {summary['status']}, "
            f"Uptime: {summary['uptime_formatted']}, "
            f"Errors: {summary['total_errors']}, "
            f"Error Rate: {summary['error_rate_percent']}%, "
            f"Heartbeats: {summary['heartbeats_sent']}, "
            f"Jobs failed: {summary['jobs_failed']}"
        )
