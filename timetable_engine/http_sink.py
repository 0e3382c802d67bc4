# timetable_engine/http_sink.py
"""
リモートのフィードストアへ書き戻す永続化シンク

PATCH {base_url}/stop_times/{trip_id}/{stop_id} に変更フィールドだけを JSON で送る。
タイムアウト・HTTP エラー・接続失敗は PersistenceError に変換する（再試行可能）。
"""
from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from .errors import PersistenceError
from .timetable_models import FieldUpdate

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 10.0


class HttpPersistenceSink:
    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout: float = HTTP_TIMEOUT) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _url(self, update: FieldUpdate) -> str:
        return (
            f"{self._base_url}/stop_times/"
            f"{quote(update.trip_id, safe='')}/{quote(update.stop_id, safe='')}"
        )

    async def write(self, update: FieldUpdate) -> None:
        try:
            response = await self._client.patch(
                self._url(update),
                json=update.fields,
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("Store request timed out for %s/%s", update.trip_id, update.stop_id)
            raise PersistenceError(update.trip_id, update.stop_id, "request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error("Store HTTP error: %s", e.response.status_code)
            raise PersistenceError(
                update.trip_id, update.stop_id, f"HTTP {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            logger.error("Store request failed: %s", e)
            raise PersistenceError(update.trip_id, update.stop_id, str(e)) from e
