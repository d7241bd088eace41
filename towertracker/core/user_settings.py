import json
import logging
from pathlib import Path
from typing import Any, Dict

from .models import UserSettings

logger = logging.getLogger(__name__)


class JsonSettingsStore:
    """Per-user tracker settings kept in one JSON file."""

    def __init__(self, base_dir: Path) -> None:
        self.path = base_dir / "user_settings.json"

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable settings file %s", self.path)
            return {}

    def get(self, user_id: str) -> UserSettings:
        return UserSettings.from_dict(self._load().get(str(user_id)))

    def save(self, user_id: str, settings: UserSettings) -> None:
        data = self._load()
        data[str(user_id)] = settings.to_dict()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
