"""Shared fixtures for vmawatch tests.

Alerts are built from raw API-shaped dicts so parsing is exercised too;
targets are in-memory fakes that record every side effect.
"""
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from vmawatch.config import AppConfig, build_config
from vmawatch.models import Alert, parse_alert


def raw_alert(
    incident_id: str,
    *,
    msg_type: str = "Alert",
    status: str = "Actual",
    geocodes=("01",),
    description: Optional[str] = "Brand i industribyggnad, stäng dörrar och fönster.",
    event: Optional[str] = "Viktigt meddelande till allmänheten",
    language: str = "sv-SE",
    info: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    if info is None:
        info = [
            {
                "language": language,
                "event": event,
                "description": description,
                "severity": "Severe",
                "urgency": "Immediate",
                "area": [
                    {
                        "areaDesc": "Stockholms län",
                        "geocode": [{"valueName": "Kod", "value": g} for g in geocodes],
                    }
                ],
            }
        ]
    return {
        "identifier": f"SRVMA-{incident_id}",
        "incidents": incident_id,
        "msgType": msg_type,
        "status": status,
        "info": info,
    }


class FakeTarget:
    def __init__(
        self,
        target_id: str,
        area_code: str,
        *,
        enabled: bool = True,
        test_mode: bool = False,
        capable: bool = True,
    ) -> None:
        self.target_id = target_id
        self.area_code = area_code
        self.enabled = enabled
        self.test_mode = test_mode
        self.capable = capable
        self.removed = False
        self.lock = asyncio.Lock()

        self.registry: Dict[str, Dict[str, Any]] = {}
        self.saves = 0
        self.triggered: List[Dict[str, Any]] = []
        self.cancelled: List[Dict[str, Any]] = []
        self.alarm: Optional[bool] = None
        self.message: Optional[str] = None

        self.fail_emits = 0
        self.fail_saves = 0

    def has_required_capability(self) -> bool:
        return self.capable

    def load_incident_registry(self):
        return dict(self.registry)

    async def save_incident_registry(self, registry) -> None:
        if self.fail_saves:
            self.fail_saves -= 1
            raise OSError("disk full")
        self.saves += 1
        self.registry = dict(registry)

    async def emit_triggered(self, tokens) -> None:
        if self.fail_emits:
            self.fail_emits -= 1
            raise RuntimeError("notification sink down")
        self.triggered.append(tokens)

    async def emit_cancelled(self, tokens) -> None:
        self.cancelled.append(tokens)

    async def set_alarm_indicator(self, value: bool) -> None:
        self.alarm = value

    async def set_message_field(self, text) -> None:
        self.message = text


class FakeRegistry:
    def __init__(self, targets=()):
        self.targets = list(targets)
        self.failures = 0
        self.calls = 0

    def list_targets(self):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise RuntimeError("target enumeration failed")
        return list(self.targets)


class FakeFetcher:
    def __init__(self, alerts=None):
        self.alerts = alerts or {}
        self.calls: List[Any] = []

    async def fetch_alerts(self, source):
        self.calls.append(source)
        return list(self.alerts.get(source, []))


@pytest.fixture
def make_alert():
    def _make(incident_id: str, **kw) -> Alert:
        return parse_alert(raw_alert(incident_id, **kw))

    return _make


@pytest.fixture
def make_target():
    return FakeTarget


@pytest.fixture
def fast_cfg(tmp_path) -> AppConfig:
    """Config with timings short enough to run real timers in tests."""
    return build_config(
        {
            "stream": {
                "reconnect_base_seconds": 5,
                "reconnect_max_seconds": 60,
                "max_age_seconds": 600,
                "health_check_interval_seconds": 120,
            },
            "pipeline": {
                "debounce_seconds": 0.05,
                "startup_delay_seconds": 0,
                "breaker_failure_threshold": 5,
                "breaker_cooldown_seconds": 0.1,
            },
            "paths": {"state_dir": str(tmp_path / "state")},
        }
    )


@pytest.fixture
def make_registry():
    return FakeRegistry


@pytest.fixture
def make_fetcher():
    return FakeFetcher


@pytest.fixture
def alert_payload():
    return raw_alert
