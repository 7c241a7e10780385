"""Punch source port and its HTTP implementation.

The reconciler only depends on ``PunchSource.fetch``; rows are returned as
raw mappings in the time-clock bridge's own shape and normalised later::

    {"UserID": "1042", "LogDate": "2026-03-02", "LogTime": "09:12:45",
     "Direction": "in"}
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional, Protocol

import httpx

from hrms_engine.common.exceptions import ExternalSourceException
from hrms_engine.config import settings

logger = logging.getLogger(__name__)

PunchRow = dict[str, Any]


class PunchSource(Protocol):
    """Anything that can list raw punch rows for an inclusive date window."""

    name: str

    async def fetch(self, from_date: date, to_date: date) -> list[PunchRow]:
        ...


class HttpPunchSource:
    """Time-clock bridge reached over HTTP: ``GET {base}/punchlogs?from=&to=``."""

    name = "punch-source"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.PUNCH_SOURCE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.PUNCH_SOURCE_API_KEY
        self.timeout = timeout or settings.PUNCH_SOURCE_TIMEOUT_SECONDS
        self._transport = transport

    async def fetch(self, from_date: date, to_date: date) -> list[PunchRow]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport,
            ) as client:
                resp = await client.get(
                    f"{self.base_url}/punchlogs",
                    params={"from": from_date.isoformat(), "to": to_date.isoformat()},
                    headers=headers,
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ExternalSourceException(
                self.name, f"HTTP {exc.response.status_code} from {exc.request.url}",
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalSourceException(self.name, f"request failed: {exc!r}") from exc
        except ValueError as exc:
            raise ExternalSourceException(self.name, "response is not valid JSON") from exc

        # Bridge answers either a bare list or {"data": [...]}
        rows = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise ExternalSourceException(self.name, "unexpected response shape")

        logger.info(
            "Fetched %d punch row(s) for %s → %s", len(rows), from_date, to_date,
        )
        return rows
