import logging
import os
import sys
from pathlib import Path
from typing import Optional, Tuple

from .bot.client import build_bot
from .core.aliases import load_killer_aliases
from .core.autocorrect import KillerNameCorrector
from .core.backend import OcrService, RunBackend
from .core.config import AppConfig, config_dir, config_path, load_runtime_config, token_path
from .core.events import EventBus
from .core.runs import LocalRunBackend
from .core.sessions import SessionStore
from .core.sheets import open_sheets_backend
from .core.web_api import WebApiBackend
from .core.workflow import FlowMachine


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _resolve_base_dir() -> Path:
    override = os.environ.get("TRACKER_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return config_dir()


def build_backend(cfg: AppConfig, base_dir: Path) -> Tuple[RunBackend, Optional[OcrService]]:
    tracker = cfg.default_tracker.strip().lower()
    web = WebApiBackend(cfg.api_base_url, cfg.api_key) if cfg.api_base_url else None
    if tracker == "sheets":
        backend = open_sheets_backend(
            Path(cfg.credentials_path),
            token_path(),
            cfg.spreadsheet_ids,
            base_dir,
            cfg.default_spreadsheet_id,
        )
        return backend, web
    if tracker == "local":
        return LocalRunBackend(base_dir), web
    if web is None:
        raise ValueError("The web tracker needs api_base_url to be set")
    return web, web


def build_migration_source(cfg: AppConfig, base_dir: Path) -> Optional[RunBackend]:
    """The spreadsheet tracker, when it is set up but not the active tracker."""
    if cfg.default_tracker.strip().lower() == "sheets" or not cfg.credentials_path:
        return None
    try:
        return open_sheets_backend(
            Path(cfg.credentials_path),
            token_path(),
            cfg.spreadsheet_ids,
            base_dir,
            cfg.default_spreadsheet_id,
        )
    except (OSError, ValueError) as exc:
        logging.warning("Spreadsheet migration unavailable: %s", exc)
        return None


def main() -> int:
    _setup_logging()
    cfg = load_runtime_config()
    base_dir = _resolve_base_dir()
    logging.info("Python: %s", sys.version.replace("\n", " "))
    logging.info("Data dir: %s", base_dir)
    logging.info("Tracker backend: %s", cfg.default_tracker)

    if not cfg.discord_token:
        logging.error("No Discord token; set DISCORD_TOKEN or add it to %s", config_path())
        return 1

    try:
        backend, ocr = build_backend(cfg, base_dir)
    except (OSError, ValueError) as exc:
        logging.error("Could not open the %s tracker: %s", cfg.default_tracker, exc)
        return 1

    machine = FlowMachine(
        SessionStore(idle_timeout=cfg.session_idle_timeout),
        backend,
        ocr=ocr,
        killer_corrector=KillerNameCorrector(load_killer_aliases(base_dir)),
        prompt_timeout=cfg.prompt_timeout,
    )
    bot = build_bot(
        cfg,
        machine,
        EventBus(),
        migration_source=build_migration_source(cfg, base_dir),
        data_dir=base_dir,
    )
    bot.run(cfg.discord_token, log_handler=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
