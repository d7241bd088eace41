import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from platformdirs import user_config_dir

logger = logging.getLogger(__name__)

APP_NAME = "tower_run_tracker"


@dataclass
class AppConfig:
    discord_token: str = ""
    guild_id: int = 0
    default_tracker: str = "web"
    api_base_url: str = "http://127.0.0.1:8000"
    api_key: str = ""
    credentials_path: str = ""
    default_spreadsheet_id: str = ""
    spreadsheet_ids: Dict[str, str] = field(default_factory=dict)
    success_log_channel_id: int = 0
    error_log_channel_id: int = 0
    session_idle_timeout: int = 3600
    session_sweep_interval: int = 1800
    prompt_timeout: int = 300
    tracker_link: str = ""


def config_dir() -> Path:
    return Path(user_config_dir(APP_NAME))


def config_path() -> Path:
    return config_dir() / "settings.json"


def token_path() -> Path:
    return config_dir() / "token.json"


def _int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def load_config(path: Optional[Path] = None) -> AppConfig:
    path = path or config_path()
    if not path.exists():
        return AppConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable config file %s", path)
        return AppConfig()

    return AppConfig(
        discord_token=data.get("discord_token", ""),
        guild_id=_int(data.get("guild_id"), 0),
        default_tracker=data.get("default_tracker", "web"),
        api_base_url=data.get("api_base_url", "http://127.0.0.1:8000"),
        api_key=data.get("api_key", ""),
        credentials_path=data.get("credentials_path", ""),
        default_spreadsheet_id=data.get("default_spreadsheet_id", ""),
        spreadsheet_ids={str(k): v for k, v in (data.get("spreadsheet_ids") or {}).items()},
        success_log_channel_id=_int(data.get("success_log_channel_id"), 0),
        error_log_channel_id=_int(data.get("error_log_channel_id"), 0),
        session_idle_timeout=_int(data.get("session_idle_timeout"), 3600),
        session_sweep_interval=_int(data.get("session_sweep_interval"), 1800),
        prompt_timeout=_int(data.get("prompt_timeout"), 300),
        tracker_link=data.get("tracker_link", ""),
    )


def save_config(cfg: AppConfig, path: Optional[Path] = None) -> None:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "discord_token": cfg.discord_token,
        "guild_id": int(cfg.guild_id),
        "default_tracker": cfg.default_tracker,
        "api_base_url": cfg.api_base_url,
        "api_key": cfg.api_key,
        "credentials_path": cfg.credentials_path,
        "default_spreadsheet_id": cfg.default_spreadsheet_id,
        "spreadsheet_ids": dict(cfg.spreadsheet_ids),
        "success_log_channel_id": int(cfg.success_log_channel_id),
        "error_log_channel_id": int(cfg.error_log_channel_id),
        "session_idle_timeout": int(cfg.session_idle_timeout),
        "session_sweep_interval": int(cfg.session_sweep_interval),
        "prompt_timeout": int(cfg.prompt_timeout),
        "tracker_link": cfg.tracker_link,
    }
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


_ENV_OVERRIDES = {
    "DISCORD_TOKEN": ("discord_token", str),
    "GUILD_ID": ("guild_id", int),
    "TRACKER_BACKEND": ("default_tracker", str),
    "TRACKER_API_URL": ("api_base_url", str),
    "TRACKER_API_KEY": ("api_key", str),
    "GOOGLE_CREDENTIALS_PATH": ("credentials_path", str),
    "DEFAULT_SPREADSHEET_ID": ("default_spreadsheet_id", str),
    "SUCCESS_LOG_CHANNEL_ID": ("success_log_channel_id", int),
    "ERROR_LOG_CHANNEL_ID": ("error_log_channel_id", int),
    "TRACKER_LINK": ("tracker_link", str),
}


def apply_env_overrides(cfg: AppConfig) -> AppConfig:
    for env_name, (attr, cast) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            setattr(cfg, attr, cast(raw))
        except ValueError:
            logger.warning("Invalid %s: %s", env_name, raw)
    return cfg


def load_runtime_config(path: Optional[Path] = None) -> AppConfig:
    """Config file values, overridden by the environment and any ``.env`` file."""
    load_dotenv()
    return apply_env_overrides(load_config(path))
