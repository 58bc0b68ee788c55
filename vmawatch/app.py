from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import httpx

from .config import AppConfig
from .notify import build_sinks
from .pipeline import DistributionPipeline
from .stream import StreamManager
from .targets import TargetRegistry
from .vma_api import VmaApi, build_client

log = logging.getLogger("vmawatch")


class VmaApp:
    """
    Wires registry, streams and pipeline together.

    Anything that can change which sources are needed (target added, removed,
    switched on/off, test mode flipped) goes through the registry's topology
    signal: streams are reconciled and a fetch is requested.
    """

    def __init__(self, cfg: AppConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        self.cfg = cfg
        self.client = client or build_client(cfg)
        self._owns_client = client is None

        self.registry = TargetRegistry(Path(cfg.paths.state_dir), sinks=build_sinks(cfg, self.client))
        self.api = VmaApi(cfg, self.client)
        self.pipeline = DistributionPipeline(cfg, registry=self.registry, fetcher=self.api)
        self.streams = StreamManager(
            cfg,
            self.client,
            needed=self.registry.needed_sources,
            on_change=self.pipeline.request_run,
        )

        self._tasks: List["asyncio.Task[None]"] = []
        self._stop = asyncio.Event()
        self._started = False

    def _on_topology_changed(self) -> None:
        if not self._started:
            return
        log.info("Targets changed; reconfiguring streams and refetching")
        self.streams.reconcile()
        self.pipeline.request_run()

    def load_targets(self) -> None:
        self.registry.load(self.cfg.targets)
        self.registry.add_listener(self._on_topology_changed)

    async def start(self) -> None:
        delay = self.cfg.pipeline.startup_delay_seconds
        if delay > 0:
            # Let targets settle before the first subscribe/fetch.
            await asyncio.sleep(delay)

        self._started = True
        log.info("Setting up streams (needed: %s)", ", ".join(s.value for s in self.registry.needed_sources()) or "none")
        self.streams.start()

        log.info("Scheduling initial fetch of all alerts")
        self.pipeline.request_run()

        poll = self.cfg.pipeline.poll_interval_seconds
        if poll > 0:
            log.info("Fallback polling enabled (every %.0fs)", poll)
            self._tasks.append(asyncio.create_task(self._poll_loop(poll), name="vma_poll"))

    async def _poll_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.pipeline.request_run()

    async def run_once(self) -> bool:
        return await self.pipeline.run()

    async def run(self) -> None:
        self.load_targets()
        try:
            await self.start()
            await self._stop.wait()
        finally:
            await self.aclose()

    def stop(self) -> None:
        self._stop.set()

    async def aclose(self) -> None:
        log.info("Shutting down")
        self._started = False
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.pipeline.aclose()
        await self.streams.aclose()

        if self._owns_client:
            await self.client.aclose()
