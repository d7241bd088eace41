import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .backend import BackendError
from .models import RunHistory, RunRecord, RunType, UserSettings
from .sanitise import normalize_incoming, parse_run_datetime
from .user_settings import JsonSettingsStore


def _runs_path(base_dir: Path) -> Path:
    return base_dir / "runs" / "runs.json"


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _isoformat_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def load_run_store(base_dir: Path) -> Dict[str, Any]:
    path = _runs_path(base_dir)
    if not path.exists():
        return {"version": 1, "users": {}}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return {"version": 1, "users": {}}


def save_run_store(base_dir: Path, data: Dict[str, Any]) -> None:
    path = _runs_path(base_dir)
    _ensure_parent(path)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def _sort_key(run: RunRecord, position: int):
    captured = parse_run_datetime(run.date, run.time)
    return (captured or datetime.min, position)


def build_history(payloads: Iterable[Mapping[str, Any]], counts: Optional[Mapping[str, int]] = None) -> RunHistory:
    """Normalize raw stored runs into a RunHistory.

    The most recently played run (by date and time, then storage order) is
    the last run. Per-type counts are derived unless the store supplies them.
    """
    runs = [normalize_incoming(payload) for payload in payloads]
    last_run = None
    if runs:
        last_run = max(enumerate(runs), key=lambda item: _sort_key(item[1], item[0]))[1]

    if counts:
        run_type_counts = {str(key): int(value) for key, value in counts.items()}
    else:
        run_type_counts = {}
        for run in runs:
            run_type = RunType.parse(run.type).value
            run_type_counts[run_type] = run_type_counts.get(run_type, 0) + 1

    return RunHistory(last_run=last_run, runs=runs, run_type_counts=run_type_counts)


def recent_runs(history: RunHistory, limit: int = 10) -> List[RunRecord]:
    """The ``limit`` most recently played runs, newest first."""
    ordered = sorted(enumerate(history.runs), key=lambda item: _sort_key(item[1], item[0]), reverse=True)
    return [run for _, run in ordered[:limit]]


class LocalRunBackend:
    """Runs and settings kept in JSON files under a local directory."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir
        self.settings_store = JsonSettingsStore(base_dir)

    def _user_runs(self, data: Dict[str, Any], user_id: str) -> List[Dict[str, Any]]:
        return data.setdefault("users", {}).setdefault(str(user_id), [])

    async def insert_run(self, user_id: str, username: str, payload: Dict[str, Any]) -> str:
        data = load_run_store(self.base_dir)
        run_id = uuid.uuid4().hex
        stored = dict(payload)
        stored["runId"] = run_id
        stored["username"] = username
        stored["lastUpdated"] = _isoformat_utc(datetime.now(timezone.utc))
        self._user_runs(data, user_id).append(stored)
        save_run_store(self.base_dir, data)
        return run_id

    async def update_run(self, user_id: str, username: str, run_id: str, payload: Dict[str, Any]) -> None:
        data = load_run_store(self.base_dir)
        for stored in self._user_runs(data, user_id):
            if stored.get("runId") == run_id:
                stored.update(payload)
                stored["runId"] = run_id
                stored["lastUpdated"] = _isoformat_utc(datetime.now(timezone.utc))
                save_run_store(self.base_dir, data)
                return
        raise BackendError(f"Run {run_id} not found")

    async def list_runs(self, user_id: str, username: str = "") -> RunHistory:
        data = load_run_store(self.base_dir)
        return build_history(self._user_runs(data, user_id))

    async def delete_run(self, user_id: str, username: str, run_id: str) -> None:
        data = load_run_store(self.base_dir)
        runs = self._user_runs(data, user_id)
        remaining = [stored for stored in runs if stored.get("runId") != run_id]
        if len(remaining) == len(runs):
            raise BackendError(f"Run {run_id} not found")
        data["users"][str(user_id)] = remaining
        save_run_store(self.base_dir, data)

    async def get_user_settings(self, user_id: str) -> UserSettings:
        return self.settings_store.get(user_id)

    async def save_user_settings(self, user_id: str, settings: UserSettings) -> None:
        self.settings_store.save(user_id, settings)
