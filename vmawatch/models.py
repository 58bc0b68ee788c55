from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


class AlertSource(enum.Enum):
    PRODUCTION = "production"
    TEST = "test"

    @classmethod
    def for_test_mode(cls, test_mode: bool) -> "AlertSource":
        return cls.TEST if test_mode else cls.PRODUCTION


MSG_ALERT = "Alert"
MSG_CANCEL = "Cancel"

STATUS_ACTUAL = "Actual"
STATUS_EXERCISE = "Exercise"
STATUS_TEST = "Test"


class AlertParseError(ValueError):
    pass


@dataclass(frozen=True)
class AreaRef:
    geocode: str
    area_desc: str | None = None


@dataclass(frozen=True)
class AlertInfo:
    language: str | None = None
    description: str | None = None
    event: str | None = None
    severity: str | None = None
    urgency: str | None = None
    area_desc: str | None = None
    areas: Tuple[AreaRef, ...] = ()


@dataclass(frozen=True)
class Alert:
    incident_id: str
    msg_type: str
    status: str
    info: Tuple[AlertInfo, ...] = ()
    identifier: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_exercise(self) -> bool:
        return self.status == STATUS_EXERCISE

    @property
    def is_test(self) -> bool:
        return self.status == STATUS_TEST

    @classmethod
    def from_dict(cls, data: Any) -> "Alert":
        return parse_alert(data)


def _s(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _geocode_values(raw: Any) -> List[str]:
    """
    The API has shipped geocodes both as a bare string and as CAP-style
    [{"valueName": ..., "value": ...}] lists. Accept either.
    """
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        out: List[str] = []
        for item in raw:
            out.extend(_geocode_values(item))
        return out
    if isinstance(raw, dict):
        v = _s(raw.get("value"))
        return [v] if v else []
    v = _s(raw)
    return [v] if v else []


def _parse_areas(raw: Any) -> Tuple[AreaRef, ...]:
    if not isinstance(raw, list):
        return ()
    out: List[AreaRef] = []
    for area in raw:
        if not isinstance(area, dict):
            continue
        desc = _s(area.get("areaDesc"))
        for code in _geocode_values(area.get("geocode")):
            out.append(AreaRef(geocode=code, area_desc=desc))
    return tuple(out)


def _parse_info(raw: Any) -> Tuple[AlertInfo, ...]:
    if not isinstance(raw, list):
        return ()
    out: List[AlertInfo] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        out.append(
            AlertInfo(
                language=_s(item.get("language")),
                description=_s(item.get("description")),
                event=_s(item.get("event")),
                severity=_s(item.get("severity")),
                urgency=_s(item.get("urgency")),
                area_desc=_s(item.get("areaDesc")),
                areas=_parse_areas(item.get("area")),
            )
        )
    return tuple(out)


def parse_alert(data: Any) -> Alert:
    if not isinstance(data, dict):
        raise AlertParseError(f"alert record is not an object: {type(data).__name__}")

    incident_id = _s(data.get("incidents")) or _s(data.get("incidentId")) or _s(data.get("identifier"))
    if not incident_id:
        raise AlertParseError("alert record has no incident id")

    return Alert(
        incident_id=incident_id,
        msg_type=_s(data.get("msgType")) or "",
        status=_s(data.get("status")) or "",
        info=_parse_info(data.get("info")),
        identifier=_s(data.get("identifier")),
        raw=dict(data),
    )
