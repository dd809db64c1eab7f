"""
Configuration loading for meetingwatch.

Settings come from a YAML file (MEETINGWATCH_CONFIG, default config.yaml).
A missing file is not an error: every key has a default. OAuth client
credentials are read from the environment only and never from the file.
"""

import logging
import os
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILE = os.getenv('MEETINGWATCH_CONFIG', 'config.yaml')

DEFAULT_SCOPE = "openid email https://www.googleapis.com/auth/calendar.readonly"


def load_config(config_file: str | None = None) -> dict:
    """Load configuration from YAML file."""
    config_path = Path(config_file or CONFIG_FILE).expanduser()
    if not config_path.exists():
        logger.warning(f"Configuration file not found: {config_path} (using defaults)")
        return {}

    with open(config_path, 'r') as f:
        return yaml.safe_load(f) or {}


def _get_nested(config: dict, keys: list[str], default=None):
    current = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


class Settings:
    def __init__(self, config: dict | None = None):
        config = config or {}
        self.config = config

        self.host = _get_nested(config, ['server', 'host'], '127.0.0.1')
        self.port = int(_get_nested(config, ['server', 'port'], 9877))

        self.database_path = str(Path(
            _get_nested(config, ['database', 'path'], '~/.meetingwatch/meetingwatch.db')
        ).expanduser())

        # Client secret lives only in the process environment.
        self.client_id = os.environ.get('GOOGLE_CALENDAR_CLIENT_ID')
        self.client_secret = os.environ.get('GOOGLE_CALENDAR_CLIENT_SECRET')
        self.scope = _get_nested(config, ['google', 'scope'], DEFAULT_SCOPE)
        self.oauth_timeout_seconds = float(_get_nested(config, ['google', 'oauth_timeout_seconds'], 120))

        self.sync_interval_seconds = float(_get_nested(config, ['sync', 'interval_seconds'], 120))
        self.sync_window_days = int(_get_nested(config, ['sync', 'window_days'], 7))

        self.lookahead_minutes = int(_get_nested(config, ['scheduler', 'lookahead_minutes'], 1440))
        self.focus_throttle_seconds = float(_get_nested(config, ['scheduler', 'focus_throttle_seconds'], 30))

        self.process_detection = bool(_get_nested(config, ['detection', 'process_detection'], True))
        self.audio_detection = bool(_get_nested(config, ['detection', 'audio_detection'], True))
        self.cooldown_minutes = float(_get_nested(config, ['detection', 'cooldown_minutes'], 30))
        self.imminent_minutes = float(_get_nested(config, ['detection', 'imminent_minutes'], 5))

        self.log_level = str(_get_nested(config, ['logging', 'level'], 'INFO')).upper()
