"""Configuration for the fleetsync edge agent"""

import os
import socket
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
_repo_root = Path(__file__).parent.parent.resolve()
_env_file = _repo_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

# Site file written at provisioning time (SITE_ID, SITE_API_KEY, ...)
SITE_CONFIG_FILE = os.getenv("SITE_CONFIG_FILE", "/etc/fleetsync/site.conf")
if Path(SITE_CONFIG_FILE).exists():
    load_dotenv(SITE_CONFIG_FILE)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_list(name: str, default: str) -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _default_site_id() -> str:
    """Hostname-derived site id for development machines without a site file"""
    try:
        return f"dev-{socket.gethostname().lower().replace('.', '-')}"
    except Exception:
        return "unknown-site"


# Device identity
SITE_ID = os.getenv("SITE_ID", "").strip() or _default_site_id()
SITE_API_KEY = os.getenv("SITE_API_KEY", "").strip()

# Local state
MEDIA_ROOT = os.getenv("MEDIA_ROOT", "/home/pi/fleetsync")
STATE_DIR = os.getenv("STATE_DIR", str(_repo_root / "data"))
IDENTITY_FILE = os.getenv("IDENTITY_FILE", os.path.join(STATE_DIR, "identity.json"))
JOB_STATE_FILE = os.getenv("JOB_STATE_FILE", os.path.join(STATE_DIR, "admin-state.json"))
PHASE_FILE = os.getenv("PHASE_FILE", "/tmp/fleetsync-phase.txt")
PLAYLIST_FILE = os.getenv("PLAYLIST_FILE", "/tmp/fleetsync-playlist.txt")

# Playback configuration candidates, first existing file wins
CONFIG_CANDIDATES = _env_list(
    "PLAYBACK_CONFIG_PATHS",
    ",".join([
        os.path.join(MEDIA_ROOT, "webapp", "configuration.json"),
        os.path.join(MEDIA_ROOT, "public", "configuration.json"),
        os.path.join(MEDIA_ROOT, "configuration.json"),
    ]),
)

# Media path resolution order for relative playlist entries
MEDIA_BASE_DIRS = _env_list(
    "MEDIA_BASE_DIRS",
    ",".join([
        MEDIA_ROOT,
        os.path.join(MEDIA_ROOT, "webapp"),
        os.path.join(MEDIA_ROOT, "public"),
    ]),
)

# Fleet link timing (seconds)
HEARTBEAT_INTERVAL_S = _env_float("HEARTBEAT_INTERVAL_S", 30)
METRICS_INTERVAL_S = _env_float("METRICS_INTERVAL_S", 300)
AUTH_TIMEOUT_S = _env_float("AUTH_TIMEOUT_S", 10)
RECONNECT_INITIAL_S = _env_float("RECONNECT_INITIAL_S", 5)
RECONNECT_MAX_S = _env_float("RECONNECT_MAX_S", 30)
CONFIG_POLL_INTERVAL_S = _env_float("CONFIG_POLL_INTERVAL_S", 2)
DIAGNOSTICS_INTERVAL_S = _env_float("DIAGNOSTICS_INTERVAL_S", 600)

# MQTT transport
MQTT_BROKER = os.getenv("MQTT_BROKER", "localhost")
MQTT_PORT = int(os.getenv("MQTT_PORT", "1883"))
MQTT_KEEPALIVE = int(os.getenv("MQTT_KEEPALIVE", "60"))
MQTT_USERNAME = os.getenv("MQTT_USERNAME", "")
MQTT_PASSWORD = os.getenv("MQTT_PASSWORD", "")
MQTT_TOPIC_PREFIX = os.getenv("MQTT_TOPIC_PREFIX", "fleetsync")
MQTT_TLS = os.getenv("MQTT_TLS", "false").lower() == "true"

# Run against an in-process registry instead of a broker
SIMULATE_REGISTRY = os.getenv("SIMULATE_REGISTRY", "false").lower() == "true"

# Alert thresholds
TEMPERATURE_CRITICAL_C = _env_float("TEMPERATURE_CRITICAL_C", 75)
DISK_WARNING_PERCENT = _env_float("DISK_WARNING_PERCENT", 90)
MEMORY_WARNING_PERCENT = _env_float("MEMORY_WARNING_PERCENT", 90)

# Monitored system services and application artifacts
MONITORED_SERVICES = _env_list(
    "MONITORED_SERVICES",
    "fleetsync-app,fleetsync-admin,nginx,hostapd,dnsmasq,avahi-daemon",
)
SERVICE_STATE_TTL_S = _env_float("SERVICE_STATE_TTL_S", 10)
THERMAL_ZONE_PATH = os.getenv("THERMAL_ZONE_PATH", "/sys/class/thermal/thermal_zone0/temp")

# Command execution: ACTION_HOOK_BUILD_CENTRAL="make -C /opt/central build" etc.
ACTION_HOOK_PREFIX = "ACTION_HOOK_"
SIMULATED_STEP_S = _env_float("SIMULATED_STEP_S", 0.5)

# Video compression
VIDEO_COMPRESSION_THRESHOLD_MB = _env_float("VIDEO_COMPRESSION_THRESHOLD_MB", 100)
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "logs/fleetsync.log")

# Debug
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
