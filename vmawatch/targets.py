from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set

from .config import TargetConfig, valid_area_code
from .models import AlertSource
from .notify import KIND_CANCELLED, KIND_TRIGGERED, NotificationSink

log = logging.getLogger("vmawatch.targets")

CAP_ONOFF = "onoff"
CAP_ALARM = "alarm_generic"
CAP_MESSAGE = "message"
DEFAULT_CAPABILITIES = frozenset({CAP_ONOFF, CAP_ALARM, CAP_MESSAGE})

IncidentRegistry = Dict[str, Dict[str, Any]]
TopologyListener = Callable[[], None]


class Target(Protocol):
    """What the pipeline and the incident state machine may touch on a target. Nothing else."""

    @property
    def target_id(self) -> str: ...

    @property
    def area_code(self) -> str: ...

    @property
    def enabled(self) -> bool: ...

    @property
    def test_mode(self) -> bool: ...

    @property
    def removed(self) -> bool: ...

    @property
    def lock(self) -> asyncio.Lock: ...

    def has_required_capability(self) -> bool: ...

    def load_incident_registry(self) -> IncidentRegistry: ...

    async def save_incident_registry(self, registry: IncidentRegistry) -> None: ...

    async def emit_triggered(self, tokens: Dict[str, Any]) -> None: ...

    async def emit_cancelled(self, tokens: Dict[str, Any]) -> None: ...

    async def set_alarm_indicator(self, value: bool) -> None: ...

    async def set_message_field(self, text: Optional[str]) -> None: ...


def needed_sources(targets: Iterable[Target]) -> Set[AlertSource]:
    """Sources with at least one enabled target."""
    return {AlertSource.for_test_mode(t.test_mode) for t in targets if t.enabled}


def atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, sort_keys=True)
        f.write("\n")
        f.flush()
        os.fsync(f.fileno())
    os.replace(str(tmp), str(path))


def _read_json(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        # Corrupt state file: start fresh rather than refusing to run.
        log.exception("Could not read %s; ignoring it", path)
        return None


class LocalTarget:
    """
    A target that lives in this process: flags and incident registry are
    persisted under the state dir, notifications go out through sinks.

    Alarm and message fields mirror what a UI would show for the area.
    """

    def __init__(
        self,
        *,
        target_id: str,
        area_code: str,
        name: str = "",
        enabled: bool = True,
        test_mode: bool = False,
        state_dir: Path,
        sinks: Sequence[NotificationSink] = (),
        capabilities: Iterable[str] = DEFAULT_CAPABILITIES,
    ) -> None:
        if not valid_area_code(area_code):
            raise ValueError(f"invalid area code {area_code!r}")
        self._id = target_id
        self._area_code = area_code
        self.name = name or f"VMA {area_code}"
        self._enabled = bool(enabled)
        self._test_mode = bool(test_mode)
        self.state_dir = Path(state_dir)
        self.sinks = list(sinks)
        self.capabilities: Set[str] = set(capabilities)

        self.alarm = False
        self.message: Optional[str] = None
        self._incidents: Optional[IncidentRegistry] = None
        self._removed = False
        # held for a whole incident batch and for registry resets
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"LocalTarget({self._id!r}, area={self._area_code}, enabled={self._enabled}, test={self._test_mode})"

    @property
    def target_id(self) -> str:
        return self._id

    @property
    def area_code(self) -> str:
        return self._area_code

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def test_mode(self) -> bool:
        return self._test_mode

    @property
    def removed(self) -> bool:
        return self._removed

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def source(self) -> AlertSource:
        return AlertSource.for_test_mode(self._test_mode)

    @property
    def incidents_path(self) -> Path:
        return self.state_dir / f"incidents-{self._id}.json"

    def describe(self) -> Dict[str, str]:
        return {"id": self._id, "name": self.name, "area_code": self._area_code}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self._id,
            "name": self.name,
            "area_code": self._area_code,
            "enabled": self._enabled,
            "test_mode": self._test_mode,
        }

    def has_required_capability(self) -> bool:
        return CAP_ONOFF in self.capabilities

    # ---- incident registry ----

    def load_incident_registry(self) -> IncidentRegistry:
        if self._incidents is None:
            self._incidents = self._migrate(_read_json(self.incidents_path))
        return dict(self._incidents)

    def _migrate(self, stored: Any) -> IncidentRegistry:
        if stored is None:
            return {}
        if isinstance(stored, dict):
            return {str(k): v for k, v in stored.items() if isinstance(v, dict)}

        # Older builds stored a list here; its contents were never usable.
        if isinstance(stored, list):
            log.warning("%s: migrating legacy list-format incidents (%d entries dropped)", self._id, len(stored))
        else:
            log.warning("%s: unknown incidents format %s, resetting", self._id, type(stored).__name__)
        atomic_write_json(self.incidents_path, {})
        return {}

    async def save_incident_registry(self, registry: IncidentRegistry) -> None:
        snapshot = dict(registry)
        await asyncio.to_thread(atomic_write_json, self.incidents_path, snapshot)
        self._incidents = snapshot

    # ---- outputs ----

    async def _send(self, kind: str, tokens: Dict[str, Any]) -> None:
        for sink in self.sinks:
            await sink.send(kind, self.describe(), tokens)

    async def emit_triggered(self, tokens: Dict[str, Any]) -> None:
        if not self._enabled:
            log.info("%s: trigger blocked, target is off", self._id)
            return
        if not tokens.get("message"):
            log.info("%s: trigger blocked, no message", self._id)
            return
        await self._send(KIND_TRIGGERED, tokens)

    async def emit_cancelled(self, tokens: Dict[str, Any]) -> None:
        await self._send(KIND_CANCELLED, tokens)

    async def set_alarm_indicator(self, value: bool) -> None:
        self.alarm = bool(value)

    async def set_message_field(self, text: Optional[str]) -> None:
        self.message = text

    # ---- flag changes (driven by the registry) ----

    def _set_enabled(self, value: bool) -> None:
        self._enabled = bool(value)

    async def _switch_test_mode(self, value: bool) -> None:
        self._test_mode = bool(value)
        # Incidents from the other source mean nothing here.
        await self.save_incident_registry({})
        await self.set_alarm_indicator(False)
        await self.set_message_field(None)

    def _forget(self) -> None:
        self._removed = True
        try:
            self.incidents_path.unlink()
        except FileNotFoundError:
            pass


class TargetRegistry:
    """
    All registered targets, in registration order, persisted to targets.json.

    Every add/remove/enable/test-mode change fires the topology listeners;
    that is what makes the stream manager reconnect and the pipeline refetch.
    """

    def __init__(self, state_dir: str | Path, sinks: Sequence[NotificationSink] = ()) -> None:
        self.state_dir = Path(state_dir)
        self.sinks = list(sinks)
        self._targets: Dict[str, LocalTarget] = {}
        self._listeners: List[TopologyListener] = []

    @property
    def path(self) -> Path:
        return self.state_dir / "targets.json"

    def add_listener(self, fn: TopologyListener) -> None:
        self._listeners.append(fn)

    def _topology_changed(self) -> None:
        for fn in list(self._listeners):
            try:
                fn()
            except Exception:
                log.exception("Topology listener failed")

    def _save(self) -> None:
        atomic_write_json(self.path, [t.to_dict() for t in self._targets.values()])

    def _make(self, tc: TargetConfig) -> LocalTarget:
        return LocalTarget(
            target_id=tc.id,
            area_code=tc.area_code,
            name=tc.name,
            enabled=tc.enabled,
            test_mode=tc.test_mode,
            state_dir=self.state_dir,
            sinks=self.sinks,
        )

    def load(self, seed: Iterable[TargetConfig] = ()) -> None:
        """Restore persisted targets; config entries not seen before are appended."""
        stored = _read_json(self.path)
        if isinstance(stored, list):
            for item in stored:
                try:
                    tc = TargetConfig(
                        id=str(item["id"]),
                        area_code=str(item["area_code"]),
                        name=str(item.get("name") or ""),
                        # a target with no stored flag starts switched on
                        enabled=bool(item.get("enabled", True)),
                        test_mode=bool(item.get("test_mode", False)),
                    )
                    self._targets[tc.id] = self._make(tc)
                except (KeyError, TypeError, ValueError):
                    log.exception("Skipping bad stored target entry: %r", item)

        added = 0
        for tc in seed:
            if tc.id not in self._targets:
                self._targets[tc.id] = self._make(tc)
                added += 1

        for t in self._targets.values():
            t.load_incident_registry()
            log.info("Target %s (%s) area=%s enabled=%s test=%s", t.target_id, t.name, t.area_code, t.enabled, t.test_mode)

        if added or not isinstance(stored, list):
            self._save()

    def list_targets(self) -> List[LocalTarget]:
        return list(self._targets.values())

    def get(self, target_id: str) -> LocalTarget:
        return self._targets[target_id]

    def needed_sources(self) -> Set[AlertSource]:
        return needed_sources(self._targets.values())

    async def add(self, tc: TargetConfig) -> LocalTarget:
        if tc.id in self._targets:
            raise ValueError(f"target {tc.id!r} already registered")
        t = self._make(tc)
        self._targets[tc.id] = t
        await asyncio.to_thread(self._save)
        log.info("Target added: %s area=%s test=%s", t.target_id, t.area_code, t.test_mode)
        self._topology_changed()
        return t

    async def remove(self, target_id: str) -> None:
        t = self._targets.pop(target_id)
        async with t.lock:
            t._forget()
        await asyncio.to_thread(self._save)
        log.info("Target removed: %s", target_id)
        self._topology_changed()

    async def set_enabled(self, target_id: str, value: bool) -> None:
        t = self._targets[target_id]
        if t.enabled == bool(value):
            return
        t._set_enabled(value)
        await asyncio.to_thread(self._save)
        log.info("Target %s turned %s", target_id, "on" if value else "off")
        self._topology_changed()

    async def set_test_mode(self, target_id: str, value: bool) -> None:
        t = self._targets[target_id]
        if t.test_mode == bool(value):
            return
        log.info("Target %s now uses the %s API; clearing incidents", target_id, "TEST" if value else "PRODUCTION")
        async with t.lock:
            await t._switch_test_mode(value)
        await asyncio.to_thread(self._save)
        self._topology_changed()
