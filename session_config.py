"""Client configuration: defaults, config.json overrides, environment, stored credentials."""

import json
import logging
import os
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "digital-therapy"
CONFIG_FILE = CONFIG_DIR / "config.json"
TOKEN_FILE = CONFIG_DIR / "token"

DEFAULT_WS_URL = "ws://localhost:8080/ws/cbt"

# Environment variable -> config key
ENV_OVERRIDES = {
    "DTA_WS_URL": "ws_url",
    "DTA_USER_ID": "user_id",
    "DTA_SESSION_ID": "session_id",
}


class ConfigError(Exception):
    """The config file exists but cannot be read."""


def default_config() -> dict:
    return {
        "ws_url": DEFAULT_WS_URL,
        "user_id": None,
        "session_id": None,
        "video": True,
        "vad_threshold_db": -45.0,
        "vad_history": 10,
        "audio_device": None,
        "video_device": "/dev/video0",
        "audio_dir": None,
        "play_audio": True,
    }


def load_config(path: Path | None = None, environ=None) -> dict:
    """Load configuration: defaults <- config.json <- environment."""
    path = Path(path) if path else CONFIG_FILE
    environ = os.environ if environ is None else environ
    config = default_config()

    if path.exists():
        try:
            with open(path) as f:
                stored = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read {path}: {e}") from e
        if not isinstance(stored, dict):
            raise ConfigError(f"{path} must contain a JSON object")
        unknown = set(stored) - set(config)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
        config.update({k: v for k, v in stored.items() if k in config})

    for var, key in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            config[key] = value
    return config


def save_config(config: dict, path: Path | None = None):
    path = Path(path) if path else CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config, f, indent=2)


def get_token(environ=None, token_file: Path | None = None) -> str | None:
    """Bearer token from DTA_TOKEN, else the stored token file, else None."""
    environ = os.environ if environ is None else environ
    token = environ.get("DTA_TOKEN")
    if token:
        return token.strip()
    token_file = Path(token_file) if token_file else TOKEN_FILE
    if token_file.exists():
        token = token_file.read_text().strip()
        return token or None
    return None


def resolve_user_id(config: dict) -> str:
    return config.get("user_id") or "anonymous"


def resolve_session_id(config: dict) -> str:
    """Configured session id, or a fresh one per run."""
    return config.get("session_id") or f"session_{uuid.uuid4().hex[:12]}"
