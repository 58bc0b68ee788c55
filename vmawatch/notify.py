from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Protocol

import httpx

from .config import AppConfig

log = logging.getLogger("vmawatch.notify")

KIND_TRIGGERED = "vma_triggered"
KIND_CANCELLED = "vma_cancelled"


class NotificationSink(Protocol):
    async def send(self, kind: str, target: Dict[str, str], tokens: Dict[str, Any]) -> None:
        ...


class LogSink:
    async def send(self, kind: str, target: Dict[str, str], tokens: Dict[str, Any]) -> None:
        if kind == KIND_TRIGGERED:
            log.warning(
                "VMA %s [%s] status=%s severity=%s area=%s: %s",
                target.get("name"),
                target.get("area_code"),
                tokens.get("status"),
                tokens.get("severity"),
                tokens.get("area"),
                tokens.get("message"),
            )
        else:
            log.info(
                "VMA cancelled %s [%s] incident=%s area=%s",
                target.get("name"),
                target.get("area_code"),
                tokens.get("incident_id"),
                tokens.get("area"),
            )


class WebhookSink:
    """POSTs each notification as JSON. Failures raise so the caller can report them per incident."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float = 5.0) -> None:
        self._client = client
        self.url = url
        self.timeout = timeout

    async def send(self, kind: str, target: Dict[str, str], tokens: Dict[str, Any]) -> None:
        payload = {
            "kind": kind,
            "sent": dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat(),
            "target": target,
            "tokens": tokens,
        }
        r = await self._client.post(self.url, json=payload, timeout=self.timeout)
        r.raise_for_status()


def build_sinks(cfg: AppConfig, client: httpx.AsyncClient) -> List[NotificationSink]:
    sinks: List[NotificationSink] = [LogSink()]
    if cfg.notify.webhook_url:
        sinks.append(WebhookSink(client, cfg.notify.webhook_url, cfg.notify.webhook_timeout_seconds))
        log.info("Webhook notifications enabled (%s)", cfg.notify.webhook_url)
    return sinks
