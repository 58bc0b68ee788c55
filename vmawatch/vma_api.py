from __future__ import annotations

import json
import logging
from typing import Any, List

import httpx

from .config import AppConfig
from .models import Alert, AlertParseError, AlertSource, parse_alert

log = logging.getLogger("vmawatch.api")


def build_client(cfg: AppConfig) -> httpx.AsyncClient:
    """Shared client for REST and stream calls; headers live here, not per request."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(cfg.http.request_timeout_seconds),
        headers={"User-Agent": cfg.http.user_agent},
        follow_redirects=True,
    )


class VmaApi:
    """
    REST side of the VMA API. fetch_alerts() never raises: an empty list
    means "nothing available right now", not "everything was cancelled".
    """

    def __init__(self, cfg: AppConfig, client: httpx.AsyncClient) -> None:
        self.cfg = cfg
        self._client = client
        self._timeout = cfg.http.request_timeout_seconds

    async def fetch_alerts_checked(self, source: AlertSource) -> List[Alert]:
        url = self.cfg.endpoint(source).api_url
        log.info("Fetching alerts from %s endpoint: %s", source.value, url)

        r = await self._client.get(url, headers={"Accept": "application/json"}, timeout=self._timeout)
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, dict):
            raise ValueError(f"{source.value} response JSON was not an object")

        records = data.get("alerts")
        if not isinstance(records, list):
            records = []

        alerts: List[Alert] = []
        for rec in records:
            try:
                alerts.append(parse_alert(rec))
            except AlertParseError as e:
                log.warning("Skipping malformed %s alert record: %s", source.value, e)

        log.info("Received %d alerts from %s endpoint", len(alerts), source.value)
        return alerts

    async def fetch_alerts(self, source: AlertSource) -> List[Alert]:
        try:
            return await self.fetch_alerts_checked(source)
        except httpx.HTTPStatusError as e:
            body = _preview(e.response)
            log.error(
                "Error fetching from %s endpoint: HTTP %d %s",
                source.value,
                e.response.status_code,
                body,
            )
        except (httpx.HTTPError, json.JSONDecodeError, ValueError) as e:
            log.error("Error fetching from %s endpoint: %s: %s", source.value, type(e).__name__, e)
        return []


def _preview(response: httpx.Response, limit: int = 200) -> str:
    try:
        payload: Any = response.json()
        text = json.dumps(payload)
    except Exception:
        text = response.text
    return text[:limit]

