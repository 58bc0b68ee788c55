from __future__ import annotations

from typing import Iterable, List

from .models import Alert

NATIONWIDE = "00"


def matches(area_code: str, alert: Alert) -> bool:
    """
    True if an alert concerns the given target area.

    "00" is the nationwide wildcard. A 2-digit county geocode also covers
    every 4-digit municipality inside it; never the other way around.
    """
    if area_code == NATIONWIDE:
        return True

    for info in alert.info:
        for area in info.areas:
            code = area.geocode
            if not code:
                continue
            if code == area_code:
                return True
            if len(code) == 2 and len(area_code) == 4 and area_code.startswith(code):
                return True
    return False


def filter_alerts(area_code: str, alerts: Iterable[Alert]) -> List[Alert]:
    return [a for a in alerts if matches(area_code, a)]
