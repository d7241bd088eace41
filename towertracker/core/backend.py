from typing import Any, Dict, List, Protocol

from .models import RunHistory, TrackerError, UserSettings


class BackendError(TrackerError):
    """A run store or service call failed; the caller may retry."""


class RunBackend(Protocol):
    async def insert_run(self, user_id: str, username: str, payload: Dict[str, Any]) -> str:
        ...

    async def update_run(self, user_id: str, username: str, run_id: str, payload: Dict[str, Any]) -> None:
        ...

    async def list_runs(self, user_id: str, username: str = "") -> RunHistory:
        ...

    async def delete_run(self, user_id: str, username: str, run_id: str) -> None:
        ...

    async def get_user_settings(self, user_id: str) -> UserSettings:
        ...

    async def save_user_settings(self, user_id: str, settings: UserSettings) -> None:
        ...


class OcrService(Protocol):
    async def extract_lines(self, image: bytes, filename: str) -> List[str]:
        ...


class RoleNotifier(Protocol):
    async def run_count_changed(self, user_id: str, username: str, run_count: int) -> None:
        ...
