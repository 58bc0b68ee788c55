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
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set

from .config import AppConfig
from .geocode import filter_alerts
from .incidents import IncidentStateMachine
from .models import Alert, AlertSource
from .targets import Target, needed_sources

log = logging.getLogger("vmawatch.pipeline")


class Fetcher(Protocol):
    async def fetch_alerts(self, source: AlertSource) -> List[Alert]:
        ...


class TargetSource(Protocol):
    def list_targets(self) -> Sequence[Target]:
        ...


@dataclass
class CircuitBreaker:
    threshold: int = 5
    cooldown_seconds: float = 300.0
    failure_count: int = 0
    open: bool = False
    reset_handle: Optional[asyncio.TimerHandle] = None

    def record_success(self) -> None:
        self.failure_count = 0

    def record_failure(self) -> bool:
        """Count one pipeline failure. Returns True when this failure opened the breaker."""
        self.failure_count += 1
        if self.open or self.failure_count < self.threshold:
            return False

        self.open = True
        log.warning("Opening circuit breaker after %d failures (cool-down %.0fs)", self.failure_count, self.cooldown_seconds)
        self.reset_handle = asyncio.get_running_loop().call_later(self.cooldown_seconds, self.reset)
        return True

    def reset(self) -> None:
        self.open = False
        self.failure_count = 0
        self.reset_handle = None
        log.info("Circuit breaker reset")

    def cancel(self) -> None:
        if self.reset_handle is not None:
            self.reset_handle.cancel()
            self.reset_handle = None


class DistributionPipeline:
    """
    fetch -> match -> per-target incident state, one run at a time.

    request_run() coalesces bursts (several stream messages arriving close
    together) into a single run after a quiet period. A run requested while
    another is executing is dropped, not queued; the next trigger picks it up.
    """

    def __init__(
        self,
        cfg: AppConfig,
        *,
        registry: TargetSource,
        fetcher: Fetcher,
        machine_factory: Optional[Callable[[Target], IncidentStateMachine]] = None,
    ) -> None:
        self.cfg = cfg
        self.registry = registry
        self.fetcher = fetcher
        self.debounce_seconds = cfg.pipeline.debounce_seconds
        self.breaker = CircuitBreaker(
            threshold=cfg.pipeline.breaker_failure_threshold,
            cooldown_seconds=cfg.pipeline.breaker_cooldown_seconds,
        )
        self._machine_factory = machine_factory or (lambda t: IncidentStateMachine(t, cfg.locale))
        self._machines: Dict[str, IncidentStateMachine] = {}

        self._running = False
        self._debounce_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set["asyncio.Task[bool]"] = set()
        self.runs_completed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def run_pending(self) -> bool:
        return self._debounce_handle is not None

    # ----------------------------
    # Triggering
    # ----------------------------
    def request_run(self) -> None:
        if self._debounce_handle is not None:
            log.debug("Debouncing fetch request (restarting %.1fs timer)", self.debounce_seconds)
            self._debounce_handle.cancel()
        self._debounce_handle = asyncio.get_running_loop().call_later(self.debounce_seconds, self._debounce_due)

    def _debounce_due(self) -> None:
        self._debounce_handle = None
        self.spawn_run()

    def spawn_run(self) -> "asyncio.Task[bool]":
        task = asyncio.get_running_loop().create_task(self._guarded_run(), name="vma_distribute")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded_run(self) -> bool:
        try:
            return await self.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Debounced fetch-and-distribute failed")
            return False

    # ----------------------------
    # The run itself
    # ----------------------------
    async def run(self) -> bool:
        """Returns True if a run actually executed (even if it failed part way)."""
        if self._running:
            log.info("Fetch already in progress, skipping duplicate call")
            return False
        if self.breaker.open:
            log.info("Circuit breaker open, skipping fetch")
            return False

        self._running = True
        try:
            await self._fetch_and_distribute()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Error in fetch-and-distribute")
            self.breaker.record_failure()
        finally:
            self._running = False
        self.runs_completed += 1
        return True

    async def _fetch_and_distribute(self) -> None:
        targets = list(self.registry.list_targets())
        needed = sorted(needed_sources(targets), key=lambda s: s.value)

        results = await asyncio.gather(*(self.fetcher.fetch_alerts(src) for src in needed))
        alerts: Dict[AlertSource, List[Alert]] = dict(zip(needed, results))
        log.info(
            "Production alerts: %d, Test alerts: %d",
            len(alerts.get(AlertSource.PRODUCTION, [])),
            len(alerts.get(AlertSource.TEST, [])),
        )
        self.breaker.record_success()

        if not targets:
            log.info("No targets configured, skipping alert distribution")
            return

        live_ids = set()
        for target in targets:
            live_ids.add(target.target_id)
            try:
                await self._distribute(target, alerts)
            except Exception:
                log.exception("Error processing alerts for target %s", target.target_id)

        for stale in set(self._machines) - live_ids:
            del self._machines[stale]

    async def _distribute(self, target: Target, alerts: Dict[AlertSource, List[Alert]]) -> None:
        if not target.has_required_capability():
            log.info("Target %s missing required capability, skipping", target.target_id)
            return
        if not target.enabled:
            return

        source = AlertSource.for_test_mode(target.test_mode)
        relevant = filter_alerts(target.area_code, alerts.get(source, []))
        log.info(
            "Target %s (%s, test=%s): %d relevant alerts",
            target.target_id,
            target.area_code,
            target.test_mode,
            len(relevant),
        )

        machine = self._machines.get(target.target_id)
        if machine is None or machine.target is not target:
            machine = self._machine_factory(target)
            self._machines[target.target_id] = machine
        await machine.process(relevant)

    # ----------------------------
    # Teardown
    # ----------------------------
    async def aclose(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        self.breaker.cancel()

        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
