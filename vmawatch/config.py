from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .models import AlertSource


DEFAULT_UA = "vmawatch/1.0 (VMA alert relay)"

_DEFAULT_ENDPOINTS: Dict[AlertSource, Dict[str, str]] = {
    AlertSource.PRODUCTION: {
        "api_url": "https://vmaapi.sr.se/api/v3/alerts",
        "stream_url": "https://vmaapi.sr.se/api/v3/subscribe",
    },
    AlertSource.TEST: {
        "api_url": "https://vmaapi.sr.se/testapi/v3/alerts",
        "stream_url": "https://vmaapi.sr.se/testapi/v3/subscribe",
    },
}


@dataclass(frozen=True)
class EndpointConfig:
    api_url: str
    stream_url: str


@dataclass(frozen=True)
class HttpConfig:
    request_timeout_seconds: float = 10.0
    user_agent: str = DEFAULT_UA


@dataclass(frozen=True)
class StreamConfig:
    reconnect_base_seconds: float = 5.0
    reconnect_max_seconds: float = 60.0
    # The VMA server drops subscribers on its own after a while; recycle before that.
    max_age_seconds: float = 600.0
    health_check_interval_seconds: float = 120.0


@dataclass(frozen=True)
class PipelineConfig:
    debounce_seconds: float = 2.0
    startup_delay_seconds: float = 2.0
    poll_interval_seconds: float = 0.0  # 0 = stream-triggered only
    breaker_failure_threshold: int = 5
    breaker_cooldown_seconds: float = 300.0


@dataclass(frozen=True)
class NotifyConfig:
    webhook_url: str = ""
    webhook_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class PathsConfig:
    state_dir: str = "/var/lib/vmawatch"


@dataclass(frozen=True)
class TargetConfig:
    id: str
    area_code: str
    name: str = ""
    enabled: bool = True
    test_mode: bool = False


@dataclass(frozen=True)
class AppConfig:
    endpoints: Dict[AlertSource, EndpointConfig]
    http: HttpConfig = field(default_factory=HttpConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    locale: str = "sv"
    targets: List[TargetConfig] = field(default_factory=list)

    def endpoint(self, source: AlertSource) -> EndpointConfig:
        return self.endpoints[source]


def _env(key: str, default: str | None = None) -> str | None:
    v = os.environ.get(key)
    return v if v not in (None, "") else default


def valid_area_code(code: str) -> bool:
    return code.isdigit() and len(code) in (2, 4)


def _positive(name: str, v: Any) -> float:
    f = float(v)
    if f <= 0:
        raise ValueError(f"{name} must be > 0 (got {v!r})")
    return f


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    sec = raw.get(key) or {}
    if not isinstance(sec, dict):
        raise ValueError(f"config section '{key}' must be a mapping")
    return sec


def _load_endpoints(raw: Dict[str, Any]) -> Dict[AlertSource, EndpointConfig]:
    sources = _section(raw, "sources")
    out: Dict[AlertSource, EndpointConfig] = {}
    for src, defaults in _DEFAULT_ENDPOINTS.items():
        sec = sources.get(src.value) or {}
        out[src] = EndpointConfig(
            api_url=str(sec.get("api_url") or defaults["api_url"]),
            stream_url=str(sec.get("stream_url") or defaults["stream_url"]),
        )
    return out


def _load_targets(raw: Any) -> List[TargetConfig]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("config 'targets' must be a list")

    out: List[TargetConfig] = []
    seen: set[str] = set()
    for item in raw:
        if not isinstance(item, dict) or "area_code" not in item:
            raise ValueError(f"config target entry must be a mapping with an area_code (got {item!r})")
        area = str(item["area_code"]).strip()
        if not valid_area_code(area):
            raise ValueError(f"invalid area code {area!r} (expected 2 or 4 digits)")
        tid = str(item.get("id") or area).strip()
        if tid in seen:
            raise ValueError(f"duplicate target id {tid!r}")
        seen.add(tid)
        out.append(
            TargetConfig(
                id=tid,
                area_code=area,
                name=str(item.get("name") or f"VMA {area}"),
                enabled=bool(item.get("enabled", True)),
                test_mode=bool(item.get("test_mode", False)),
            )
        )
    return out


def build_config(raw: Optional[Dict[str, Any]] = None) -> AppConfig:
    raw = raw or {}

    http = _section(raw, "http")
    stream = _section(raw, "stream")
    pipeline = _section(raw, "pipeline")
    notify = _section(raw, "notify")
    paths = _section(raw, "paths")

    http_cfg = HttpConfig(
        request_timeout_seconds=_positive("http.request_timeout_seconds", http.get("request_timeout_seconds", 10.0)),
        user_agent=str(http.get("user_agent") or DEFAULT_UA),
    )
    stream_cfg = StreamConfig(
        reconnect_base_seconds=_positive("stream.reconnect_base_seconds", stream.get("reconnect_base_seconds", 5.0)),
        reconnect_max_seconds=_positive("stream.reconnect_max_seconds", stream.get("reconnect_max_seconds", 60.0)),
        max_age_seconds=_positive("stream.max_age_seconds", stream.get("max_age_seconds", 600.0)),
        health_check_interval_seconds=_positive(
            "stream.health_check_interval_seconds", stream.get("health_check_interval_seconds", 120.0)
        ),
    )
    if stream_cfg.reconnect_max_seconds < stream_cfg.reconnect_base_seconds:
        raise ValueError("stream.reconnect_max_seconds must be >= stream.reconnect_base_seconds")

    poll = _env("VMAWATCH_POLL_SECONDS", None)
    pipeline_cfg = PipelineConfig(
        debounce_seconds=_positive("pipeline.debounce_seconds", pipeline.get("debounce_seconds", 2.0)),
        startup_delay_seconds=max(0.0, float(pipeline.get("startup_delay_seconds", 2.0))),
        poll_interval_seconds=max(0.0, float(poll if poll is not None else pipeline.get("poll_interval_seconds", 0.0))),
        breaker_failure_threshold=int(
            _positive("pipeline.breaker_failure_threshold", pipeline.get("breaker_failure_threshold", 5))
        ),
        breaker_cooldown_seconds=_positive(
            "pipeline.breaker_cooldown_seconds", pipeline.get("breaker_cooldown_seconds", 300.0)
        ),
    )
    notify_cfg = NotifyConfig(
        webhook_url=str(_env("VMAWATCH_WEBHOOK_URL", notify.get("webhook_url") or "") or ""),
        webhook_timeout_seconds=_positive("notify.webhook_timeout_seconds", notify.get("webhook_timeout_seconds", 5.0)),
    )
    paths_cfg = PathsConfig(
        state_dir=str(_env("VMAWATCH_STATE_DIR", paths.get("state_dir") or PathsConfig.state_dir)),
    )

    return AppConfig(
        endpoints=_load_endpoints(raw),
        http=http_cfg,
        stream=stream_cfg,
        pipeline=pipeline_cfg,
        notify=notify_cfg,
        paths=paths_cfg,
        locale=str(_env("VMAWATCH_LOCALE", raw.get("locale") or "sv")),
        targets=_load_targets(raw.get("targets")),
    )


def load_config(path: str | None) -> AppConfig:
    if not path:
        return build_config({})
    raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return build_config(raw)
