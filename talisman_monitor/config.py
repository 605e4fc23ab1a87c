import configparser
import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

log = logging.getLogger("TalismanMonitor.Config")

# --- Configuration ---
TALISMAN_INI_NAME = "talisman.ini"
LOG_FILE_NAME = "talisman.log"
# Header art drawn above the node table, relative to the Talisman install
HEADER_ART_PATH = os.path.join("gfiles", "wfc.ans")

# Where the monitor writes its own log in terminal mode, so log output does
# not scribble over the screen. Override with TALISMAN_MONITOR_LOG.
MONITOR_LOG_FILE = os.getenv('TALISMAN_MONITOR_LOG', 'talisman_monitor.log')

DEFAULT_HISTORY_SCAN_LINES = 200  # Lines replayed at startup to find the last user
DEFAULT_REDRAW_INTERVAL_MS = 500  # Minimum gap between two screen updates
LOG_READER_POLL_SECONDS = 5.0  # Fallback poll when no file system event arrives
LOG_LINE_QUEUE_WARN_SIZE = 5000  # Warn when ingestion falls this far behind
HEARTBEAT_INTERVAL_SECONDS = 60

# --- Web dashboard (--web) ---
SERVER_HOST = "0.0.0.0"
SERVER_PORT = 8766

# --- Display ---
IDLE_USER = "waiting for caller"
IDLE_LOCATION = "-"
NO_LAST_USER = "None"
NODE_COL_WIDTH = 5
USER_COL_WIDTH = 20
LOCATION_COL_WIDTH = 20


class ConfigError(Exception):
    """Raised when the Talisman configuration is missing or incomplete."""


@dataclass
class MonitorConfig:
    talisman_path: str
    log_file: str
    max_nodes: int
    system_name: str
    excluded_users: FrozenSet[str] = field(default_factory=frozenset)
    history_scan_lines: int = DEFAULT_HISTORY_SCAN_LINES
    redraw_interval_ms: int = DEFAULT_REDRAW_INTERVAL_MS

    @property
    def header_art_file(self) -> str:
        return os.path.join(self.talisman_path, HEADER_ART_PATH)


def _require(parser: configparser.ConfigParser, section: str, key: str, ini_path: str) -> str:
    try:
        value = parser.get(section, key).strip().strip('"')
    except (configparser.NoSectionError, configparser.NoOptionError):
        raise ConfigError(f"'{key}' not found in [{section}] of {ini_path}. Please check the configuration.")
    if not value:
        raise ConfigError(f"'{key}' is empty in [{section}] of {ini_path}. Please check the configuration.")
    return value


def load_talisman_config(talisman_path: str,
                         excluded_users: Optional[Iterable[str]] = None,
                         history_scan_lines: int = DEFAULT_HISTORY_SCAN_LINES,
                         redraw_interval_ms: int = DEFAULT_REDRAW_INTERVAL_MS) -> MonitorConfig:
    """
    Reads talisman.ini from a Talisman BBS installation and builds the monitor configuration.

    Required keys: [paths] log path, [main] max nodes, [main] system name.
    Raises ConfigError if any of them is missing or invalid.
    """
    if not talisman_path:
        raise ConfigError("No Talisman installation path given.")

    ini_path = os.path.join(talisman_path, TALISMAN_INI_NAME)
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    try:
        with open(ini_path, 'r', encoding='utf-8', errors='replace') as f:
            parser.read_file(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found at {ini_path}.")
    except (OSError, configparser.Error) as e:
        raise ConfigError(f"Failed to load configuration file at {ini_path}: {e}")

    log_path = _require(parser, 'paths', 'log path', ini_path)
    max_nodes_str = _require(parser, 'main', 'max nodes', ini_path)
    system_name = _require(parser, 'main', 'system name', ini_path)

    try:
        max_nodes = int(max_nodes_str)
    except ValueError:
        raise ConfigError(f"Invalid max nodes value '{max_nodes_str}' in {ini_path}. Please provide a valid integer.")
    if max_nodes < 1:
        raise ConfigError(f"max nodes must be at least 1 in {ini_path}, got {max_nodes}.")
    if history_scan_lines < 0:
        raise ConfigError(f"History scan window cannot be negative, got {history_scan_lines}.")
    if redraw_interval_ms <= 0:
        raise ConfigError(f"Redraw interval must be positive, got {redraw_interval_ms} ms.")

    log_file = os.path.join(talisman_path, log_path, LOG_FILE_NAME)
    log.info(f"Loaded {ini_path}: system '{system_name}', {max_nodes} nodes, log file '{log_file}'.")

    return MonitorConfig(
        talisman_path=talisman_path,
        log_file=log_file,
        max_nodes=max_nodes,
        system_name=system_name,
        excluded_users=frozenset(excluded_users or ()),
        history_scan_lines=history_scan_lines,
        redraw_interval_ms=redraw_interval_ms,
    )
