import logging
import mimetypes
from typing import Any, Dict, List, Optional

import httpx

from .backend import BackendError
from .models import RunHistory, UserSettings
from .runs import build_history

logger = logging.getLogger(__name__)


class WebApiBackend:
    """Run tracker backed by the tracker web API.

    Also serves as the OCR service, since the API hosts the text
    recognition endpoint.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Authorization": api_key} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("%s %s failed with %s", method, path, exc.response.status_code)
            raise BackendError(
                f"Tracker API returned {exc.response.status_code} for {method} {path}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise BackendError(f"Could not reach the tracker API: {exc}") from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"Tracker API sent invalid JSON for {method} {path}") from exc

    async def insert_run(self, user_id: str, username: str, payload: Dict[str, Any]) -> str:
        data = await self._request(
            "POST",
            "/runs",
            json={"userId": str(user_id), "username": username, "runData": payload},
        )
        run_id = (data or {}).get("runId") or (data or {}).get("id")
        if not run_id:
            raise BackendError("Tracker API did not return a run id")
        return str(run_id)

    async def update_run(self, user_id: str, username: str, run_id: str, payload: Dict[str, Any]) -> None:
        await self._request(
            "PUT",
            f"/runs/{run_id}",
            json={"userId": str(user_id), "username": username, "runData": payload},
        )

    async def list_runs(self, user_id: str, username: str = "") -> RunHistory:
        data = await self._request("GET", "/runs", params={"userId": str(user_id)}) or {}
        if isinstance(data, list):
            return build_history(data)
        return build_history(data.get("allRuns") or data.get("runs") or [], data.get("runTypeCounts"))

    async def delete_run(self, user_id: str, username: str, run_id: str) -> None:
        await self._request("DELETE", f"/runs/{run_id}", params={"userId": str(user_id)})

    async def get_user_settings(self, user_id: str) -> UserSettings:
        try:
            data = await self._request("GET", f"/settings/{user_id}")
        except BackendError as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 404:
                return UserSettings()
            raise
        return UserSettings.from_dict(data)

    async def save_user_settings(self, user_id: str, settings: UserSettings) -> None:
        await self._request("PUT", f"/settings/{user_id}", json=settings.to_dict())

    async def extract_lines(self, image: bytes, filename: str) -> List[str]:
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        data = await self._request("POST", "/ocr", files={"image": (filename, image, content_type)})
        lines = (data or {}).get("lines") or (data or {}).get("text") or []
        if isinstance(lines, str):
            lines = lines.splitlines()
        return [str(line) for line in lines]
