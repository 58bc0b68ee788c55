from __future__ import annotations

# =========================================================================================
#      MP"""""`MM                                                       dP              MM'"""'YMM
#      M  mmmmm..M                                                       88              M' .mmm. `M
#      M.      `YM .d8888b. .d8888b. .d8888b. .d8888b. 88d888b. .d8888b. 88              M  MMMMMooM dP    dP 88d888b. 88d888b. .d8888b. 88d888b. .d8888b. dP    dP
#      MMMMMMM.  M 88ooood8 88'  `88 Y8ooooo. 88'  `88 88'  `88 88'  `88 88              M  MMMMMMMM 88    88 88'  `88 88'  `88 88ooood8 88'  `88 88'  `"" 88    88
#      M. .MMM'  M 88.  ... 88.  .88       88 88.  .88 88    88 88.  .88 88              M. `MMM' .M 88.  .88 88       88       88.  ... 88    88 88.  ... 88.  .88
#      Mb.     .dM `88888P' `88888P8 `88888P' `88888P' dP    dP `88888P8 dP              MM.     .dM `88888P' dP       dP       `88888P' dP    dP `88888P' `8888P88
#      MMMMMMMMMMM                                                Seasonal_Currency      MMMMMMMMMMM                                                            .88
#                                                                                                                                                           d8888P.
# =========================================================================================

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

import httpx

from .config import AppConfig
from .models import AlertSource
from .sse import iter_sse

log = logging.getLogger("vmawatch.stream")

MAX_RETRY_COUNT = 10

NeededFn = Callable[[], Set[AlertSource]]
ChangeFn = Callable[[], None]


def backoff_delay(retry_count: int, base: float, maximum: float) -> float:
    """base * 2^(n-1), capped. retry_count is 1-based."""
    n = max(1, min(int(retry_count), MAX_RETRY_COUNT))
    return min(base * (2 ** (n - 1)), maximum)


@dataclass
class StreamConnection:
    source: AlertSource
    url: str
    task: Optional["asyncio.Task[None]"] = None
    connected: bool = False
    retry_count: int = 0
    created_at: Optional[float] = None
    connected_at: Optional[float] = None
    reconnect_handle: Optional[asyncio.TimerHandle] = None

    @property
    def live(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def reconnect_pending(self) -> bool:
        return self.reconnect_handle is not None


class StreamManager:
    """
    Keeps one SSE subscription per AlertSource that some enabled target needs.

    The stream content is only a "something changed" signal; every message
    just asks for a (debounced) REST fetch via on_change.

    Resiliency:
      - errors and server hang-ups schedule a reconnect with exponential
        backoff, never an inline retry; one pending reconnect per source
      - the health check recycles connections older than max_age, since the
        server drops long-lived subscribers without always telling us
    """

    def __init__(
        self,
        cfg: AppConfig,
        client: httpx.AsyncClient,
        *,
        needed: NeededFn,
        on_change: ChangeFn,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self._client = client
        self._needed = needed
        self._on_change = on_change
        self._clock = clock

        self._base = cfg.stream.reconnect_base_seconds
        self._max = cfg.stream.reconnect_max_seconds
        self._max_age = cfg.stream.max_age_seconds
        self._timeout = cfg.http.request_timeout_seconds
        self.client_id = cfg.http.user_agent

        self._conns: Dict[AlertSource, StreamConnection] = {
            src: StreamConnection(source=src, url=cfg.endpoint(src).stream_url) for src in AlertSource
        }
        self._retired: Set["asyncio.Task[None]"] = set()
        self._health_task: Optional["asyncio.Task[None]"] = None

    def connection(self, source: AlertSource) -> StreamConnection:
        return self._conns[source]

    def is_needed(self, source: AlertSource) -> bool:
        try:
            return source in self._needed()
        except Exception:
            log.exception("Could not determine which streams are needed")
            return False

    # ----------------------------
    # Connection lifecycle
    # ----------------------------
    def reconcile(self) -> None:
        for src in AlertSource:
            self.ensure_connection(src)

    def ensure_connection(self, source: AlertSource) -> None:
        conn = self._conns[source]
        if not self.is_needed(source):
            if conn.live or conn.reconnect_pending:
                log.info("%s stream no longer needed", source.value)
            self.close(source)
            return
        if not conn.live:
            self.open(source)

    def open(self, source: AlertSource) -> None:
        conn = self._conns[source]

        if conn.task is not None:
            log.info("Closing existing %s stream", source.value)
            self._retire(conn.task)
            conn.task = None

        conn.connected = False
        self._cancel_reconnect(conn)

        log.info("Opening %s stream: %s", source.value, conn.url)
        conn.created_at = self._clock()
        conn.task = asyncio.get_running_loop().create_task(
            self._run_reader(conn), name=f"vma_stream_{source.value}"
        )

    def close(self, source: AlertSource) -> None:
        conn = self._conns[source]
        if conn.task is not None:
            log.info("Closing %s stream", source.value)
            self._retire(conn.task)
            conn.task = None

        conn.connected = False
        conn.connected_at = None
        conn.created_at = None
        self._cancel_reconnect(conn)

    def _retire(self, task: "asyncio.Task[None]") -> None:
        if not task.done():
            task.cancel()
            self._retired.add(task)
            task.add_done_callback(self._retired.discard)

    @staticmethod
    def _cancel_reconnect(conn: StreamConnection) -> None:
        if conn.reconnect_handle is not None:
            conn.reconnect_handle.cancel()
            conn.reconnect_handle = None

    async def _run_reader(self, conn: StreamConnection) -> None:
        me = asyncio.current_task()
        try:
            await self._read_stream(conn)
            err: object = "stream closed by server"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = e

        # A replaced connection must not touch the state of its successor.
        if conn.task is not me:
            return
        self.handle_error(conn.source, err)

    async def _read_stream(self, conn: StreamConnection) -> None:
        headers = {
            "User-Agent": self.client_id,
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        }
        # No read timeout: an idle subscription is normal, staleness is the health check's job.
        timeout = httpx.Timeout(self._timeout, read=None)
        async with self._client.stream("GET", conn.url, headers=headers, timeout=timeout) as r:
            r.raise_for_status()
            self.handle_open(conn.source)
            async for ev in iter_sse(r.aiter_lines()):
                self.handle_message(conn.source, ev.data)

    # ----------------------------
    # Stream events
    # ----------------------------
    def handle_open(self, source: AlertSource) -> None:
        conn = self._conns[source]
        now = self._clock()
        elapsed = now - conn.created_at if conn.created_at is not None else 0.0
        log.info("%s stream opened after %.1fs", source.value, elapsed)
        conn.connected = True
        conn.connected_at = now
        conn.retry_count = 0

    def handle_message(self, source: AlertSource, data: str) -> None:
        conn = self._conns[source]
        if not conn.connected:
            log.info("%s stream first message received (connection established)", source.value)
            conn.connected = True
            conn.connected_at = self._clock()

        try:
            payload = json.loads(data)
            if not isinstance(payload, dict):
                raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
        except ValueError as e:
            log.error("Failed to parse %s stream message: %s (data=%r)", source.value, e, data[:200])
            return

        log.info("%s stream update: %s", source.value, payload.get("message"))
        try:
            self._on_change()
        except Exception:
            log.exception("Fetch request after %s stream update failed", source.value)

    def handle_error(self, source: AlertSource, err: object) -> None:
        conn = self._conns[source]
        log.warning("%s stream error (%s); scheduling reconnection", source.value, err)
        conn.connected = False
        self.schedule_reconnection(source)

    def schedule_reconnection(self, source: AlertSource) -> Optional[float]:
        conn = self._conns[source]
        if conn.reconnect_handle is not None:
            return None

        conn.retry_count = min(conn.retry_count + 1, MAX_RETRY_COUNT)
        delay = backoff_delay(conn.retry_count, self._base, self._max)
        log.info("Scheduling %s stream reconnection in %.1fs (attempt %d)", source.value, delay, conn.retry_count)

        conn.reconnect_handle = asyncio.get_running_loop().call_later(delay, self._reconnect_due, source)
        return delay

    def _reconnect_due(self, source: AlertSource) -> None:
        conn = self._conns[source]
        conn.reconnect_handle = None

        # Targets may have changed while we waited.
        if not self.is_needed(source):
            log.info("%s stream no longer needed, skipping reconnection", source.value)
            return
        self.open(source)

    # ----------------------------
    # Health
    # ----------------------------
    def health_check(self, source: AlertSource) -> bool:
        """Recycle a connection past max_age. Returns True if it was recycled."""
        conn = self._conns[source]
        if not conn.live or conn.created_at is None:
            log.debug("%s stream health check: no connection", source.value)
            return False

        age = self._clock() - conn.created_at
        if age > self._max_age:
            log.info("%s stream is %.0f minutes old, reconnecting", source.value, age / 60.0)
            self.close(source)
            self.open(source)
            return True

        log.debug("%s stream health check: age %.0f minutes (healthy)", source.value, age / 60.0)
        return False

    async def _health_loop(self) -> None:
        interval = self.cfg.stream.health_check_interval_seconds
        while True:
            await asyncio.sleep(interval)
            for src in AlertSource:
                try:
                    self.health_check(src)
                except Exception:
                    log.exception("%s stream health check failed", src.value)

    def start(self) -> None:
        if self._health_task is None or self._health_task.done():
            log.info("Starting stream health monitoring (every %.0fs)", self.cfg.stream.health_check_interval_seconds)
            self._health_task = asyncio.get_running_loop().create_task(self._health_loop(), name="vma_stream_health")
        self.reconcile()

    async def aclose(self) -> None:
        if self._health_task is not None:
            self._retire(self._health_task)
            self._health_task = None
        for src in AlertSource:
            self.close(src)
        if self._retired:
            await asyncio.gather(*list(self._retired), return_exceptions=True)
