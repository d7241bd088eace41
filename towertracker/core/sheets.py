import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from google.oauth2.credentials import Credentials
from google.oauth2 import service_account
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from google.auth.transport.requests import Request

from .backend import BackendError
from .models import RunHistory, RunType, UserSettings
from .runs import build_history
from .user_settings import JsonSettingsStore

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

# Columns B..K of every run tab, in order.
COLUMNS = [
    "tier",
    "wave",
    "totalCoins",
    "totalCells",
    "totalDice",
    "roundDuration",
    "killedBy",
    "date",
    "time",
    "notes",
]
FIRST_DATA_ROW = 5
RUN_TABS = [run_type.value for run_type in RunType]


def load_credentials(credentials_path: Path, token_path: Path):
    raw = json.loads(credentials_path.read_text(encoding="utf-8"))

    creds = None
    if raw.get("type") == "service_account":
        creds = service_account.Credentials.from_service_account_info(raw, scopes=SCOPES)
    else:
        if token_path.exists():
            creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)

        if not creds or not creds.valid:
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
            else:
                flow = InstalledAppFlow.from_client_secrets_file(
                    str(credentials_path), SCOPES
                )
                creds = flow.run_local_server(port=0)

            token_path.parent.mkdir(parents=True, exist_ok=True)
            token_path.write_text(creds.to_json(), encoding="utf-8")
    return creds


def build_service(credentials_path: Path, token_path: Path):
    creds = load_credentials(credentials_path, token_path)
    return build("sheets", "v4", credentials=creds)


def row_from_payload(payload: Dict[str, Any]) -> List[Any]:
    row = []
    for column in COLUMNS:
        value = payload.get(column, "")
        if column == "tier":
            value = payload.get("tierDisplay", value)
        row.append("" if value is None else value)
    return row


def payload_from_row(row: List[Any], tab: str, row_number: int) -> Dict[str, Any]:
    padded = list(row) + [""] * (len(COLUMNS) - len(row))
    payload = {column: padded[index] for index, column in enumerate(COLUMNS)}
    payload["type"] = tab
    payload["runId"] = format_run_id(tab, row_number)
    return payload


def format_run_id(tab: str, row_number: int) -> str:
    return f"{tab}!{row_number}"


def parse_run_id(run_id: str) -> Tuple[str, int]:
    match = re.fullmatch(r"(.+)!(\d+)", run_id or "")
    if not match:
        raise BackendError(f"Not a spreadsheet run id: {run_id!r}")
    return match.group(1), int(match.group(2))


def _row_range(tab: str, row_number: int) -> str:
    return f"{tab}!B{row_number}:K{row_number}"


class SheetsBackend:
    """Runs kept as rows in a per-user Google spreadsheet, one tab per run type."""

    def __init__(
        self,
        service,
        spreadsheet_ids: Dict[str, str],
        settings_store: JsonSettingsStore,
        default_spreadsheet_id: str = "",
    ) -> None:
        self.service = service
        self.spreadsheet_ids = {str(key): value for key, value in spreadsheet_ids.items()}
        self.settings_store = settings_store
        self.default_spreadsheet_id = default_spreadsheet_id

    def _spreadsheet_for(self, user_id: str) -> str:
        spreadsheet_id = self.spreadsheet_ids.get(str(user_id)) or self.default_spreadsheet_id
        if not spreadsheet_id:
            raise BackendError("No spreadsheet is linked to this user")
        return spreadsheet_id

    async def _execute(self, request) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(request.execute) or {}
        except HttpError as exc:
            logger.warning("Sheets request failed: %s", exc)
            raise BackendError(f"Google Sheets request failed: {exc}") from exc

    async def insert_run(self, user_id: str, username: str, payload: Dict[str, Any]) -> str:
        spreadsheet_id = self._spreadsheet_for(user_id)
        tab = RunType.parse(payload.get("type")).value
        request = self.service.spreadsheets().values().append(
            spreadsheetId=spreadsheet_id,
            range=f"{tab}!B{FIRST_DATA_ROW}:K",
            valueInputOption="USER_ENTERED",
            insertDataOption="INSERT_ROWS",
            body={"values": [row_from_payload(payload)]},
        )
        result = await self._execute(request)
        updated = result.get("updates", {}).get("updatedRange", "")
        match = re.search(r"![A-Z]+(\d+)", updated)
        if not match:
            raise BackendError("Google Sheets did not report where the run was written")
        return format_run_id(tab, int(match.group(1)))

    async def update_run(self, user_id: str, username: str, run_id: str, payload: Dict[str, Any]) -> None:
        spreadsheet_id = self._spreadsheet_for(user_id)
        tab, row_number = parse_run_id(run_id)
        request = self.service.spreadsheets().values().update(
            spreadsheetId=spreadsheet_id,
            range=_row_range(tab, row_number),
            valueInputOption="USER_ENTERED",
            body={"values": [row_from_payload(payload)]},
        )
        await self._execute(request)

    async def list_runs(self, user_id: str, username: str = "") -> RunHistory:
        spreadsheet_id = self._spreadsheet_for(user_id)
        request = self.service.spreadsheets().values().batchGet(
            spreadsheetId=spreadsheet_id,
            ranges=[f"{tab}!B{FIRST_DATA_ROW}:K" for tab in RUN_TABS],
        )
        result = await self._execute(request)

        payloads: List[Dict[str, Any]] = []
        counts: Dict[str, int] = {}
        for tab, value_range in zip(RUN_TABS, result.get("valueRanges", [])):
            rows = value_range.get("values", [])
            tab_count = 0
            for offset, row in enumerate(rows):
                if not any(str(cell).strip() for cell in row):
                    continue
                payloads.append(payload_from_row(row, tab, FIRST_DATA_ROW + offset))
                tab_count += 1
            counts[tab] = tab_count
        return build_history(payloads, counts)

    async def delete_run(self, user_id: str, username: str, run_id: str) -> None:
        spreadsheet_id = self._spreadsheet_for(user_id)
        tab, row_number = parse_run_id(run_id)
        request = self.service.spreadsheets().values().clear(
            spreadsheetId=spreadsheet_id,
            range=_row_range(tab, row_number),
            body={},
        )
        await self._execute(request)

    async def get_user_settings(self, user_id: str) -> UserSettings:
        return self.settings_store.get(user_id)

    async def save_user_settings(self, user_id: str, settings: UserSettings) -> None:
        self.settings_store.save(user_id, settings)


def open_sheets_backend(
    credentials_path: Path,
    token_path: Path,
    spreadsheet_ids: Dict[str, str],
    settings_dir: Path,
    default_spreadsheet_id: Optional[str] = "",
) -> SheetsBackend:
    service = build_service(credentials_path, token_path)
    return SheetsBackend(
        service,
        spreadsheet_ids,
        JsonSettingsStore(settings_dir),
        default_spreadsheet_id=default_spreadsheet_id or "",
    )
