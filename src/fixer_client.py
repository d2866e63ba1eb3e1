from __future__ import annotations

import logging
from typing import Any

import httpx

from src.sandbox_lifecycle.errors import FixServiceFailure

logger = logging.getLogger(__name__)

FIX_ERROR_PATH = "/api/fix-error"


class FixerClient:
    """Client for the remote code-fixing service.

    Wire format: POST /api/fix-error with {"error", "filePath", "fileContent"},
    answered by {"fixedCode", ...}.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._client = client

    async def fix(self, *, error_text: str, file_path: str, file_content: str) -> str:
        body = {
            "error": error_text,
            "filePath": file_path,
            "fileContent": file_content,
        }
        if self._client is not None:
            res = await self._post(self._client, body)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                res = await self._post(client, body)
        return self._parse(res)

    async def _post(self, client: httpx.AsyncClient, body: dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}{FIX_ERROR_PATH}"
        try:
            return await client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise FixServiceFailure(f"fixer request failed: {exc}") from exc

    def _parse(self, res: httpx.Response) -> str:
        data: dict[str, Any]
        try:
            data = res.json()
        except Exception:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if res.status_code >= 400:
            msg = str(data.get("error") or "").strip()
            raise FixServiceFailure(
                f"fixer request failed ({res.status_code}): {msg or 'unknown error'}",
                status_code=res.status_code,
            )

        fixed = data.get("fixedCode")
        if not isinstance(fixed, str):
            raise FixServiceFailure("fixer response missing fixedCode")
        return fixed
