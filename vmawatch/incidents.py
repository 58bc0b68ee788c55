from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence

from .models import MSG_ALERT, MSG_CANCEL, Alert, AlertInfo, AlertParseError, parse_alert
from .targets import IncidentRegistry, Target

log = logging.getLogger("vmawatch.incidents")

FALLBACK_LANGUAGE = "sv"
PLACEHOLDER_MESSAGE = "VMA Alert"

EventKind = Literal["triggered", "cancelled"]


@dataclass(frozen=True)
class IncidentEvent:
    kind: EventKind
    incident_id: str
    tokens: Dict[str, Any]


@dataclass
class Transition:
    registry: IncidentRegistry
    events: List[IncidentEvent] = field(default_factory=list)
    changed: bool = False
    rejected: bool = False


def best_language_info(info: Sequence[AlertInfo], locale: str) -> Optional[AlertInfo]:
    """Exact locale prefix, then Swedish, then whatever comes first."""
    if not info:
        return None
    loc = (locale or FALLBACK_LANGUAGE).lower()
    for lang in (loc, FALLBACK_LANGUAGE):
        for i in info:
            if i.language and i.language.lower().startswith(lang):
                return i
    return info[0]


def format_message(info: AlertInfo) -> str:
    # Plain text on purpose; consumers get the other fields as separate tokens.
    return info.description or info.event or PLACEHOLDER_MESSAGE


def area_text(info: AlertInfo) -> str:
    if info.area_desc:
        return info.area_desc
    for a in info.areas:
        if a.area_desc:
            return a.area_desc
    return ""


def triggered_tokens(alert: Alert, info: AlertInfo) -> Dict[str, Any]:
    return {
        "message": format_message(info),
        "description": info.description or "",
        "severity": info.severity or "",
        "urgency": info.urgency or "",
        "event": info.event or "",
        "area": area_text(info),
        "status": alert.status,
        "exercise": alert.is_exercise,
        "test": alert.is_test,
    }


def cancelled_tokens(stored: Alert, info: AlertInfo) -> Dict[str, Any]:
    return {
        "message": format_message(info),
        "area": area_text(info),
        "incident_id": stored.incident_id,
    }


def transition(registry: IncidentRegistry, alert: Alert, *, test_mode: bool, locale: str) -> Transition:
    """
    Pure step of the per-target incident state machine.

    absent --Alert--> open --Cancel--> absent. Repeats of either are no-ops.
    The input registry is never mutated.
    """
    if alert.is_test and not test_mode:
        return Transition(registry=registry, rejected=True)

    iid = alert.incident_id

    if alert.msg_type == MSG_ALERT and iid not in registry:
        new = dict(registry)
        new[iid] = alert.raw
        info = best_language_info(alert.info, locale)
        events = []
        if info is not None:
            events.append(IncidentEvent("triggered", iid, triggered_tokens(alert, info)))
        return Transition(registry=new, events=events, changed=True)

    if alert.msg_type == MSG_CANCEL and iid in registry:
        new = dict(registry)
        stored_raw = new.pop(iid)
        events = []
        try:
            stored = parse_alert(stored_raw)
        except AlertParseError:
            stored = alert
        info = best_language_info(stored.info, locale)
        if info is not None:
            events.append(IncidentEvent("cancelled", iid, cancelled_tokens(stored, info)))
        return Transition(registry=new, events=events, changed=True)

    return Transition(registry=registry)


class IncidentStateMachine:
    """Applies transitions for one target and pushes the side effects out through it."""

    def __init__(self, target: Target, locale: str = FALLBACK_LANGUAGE) -> None:
        self.target = target
        self.locale = locale

    async def process(self, alerts: Iterable[Alert]) -> List[IncidentEvent]:
        """
        Apply one batch of alerts, in order, under the target's lock.

        Each changed registry is persisted before its notification goes out:
        a cancel whose save fails emits nothing and is retried on the next
        fetch, rather than announcing a state that was never stored.

        The alerts were selected for the target's test mode at call time. If
        the mode flipped or the target was removed while we waited for the
        lock, the batch is dropped.
        """
        t = self.target
        alerts = list(alerts)
        test_mode = t.test_mode

        async with t.lock:
            if t.removed or t.test_mode != test_mode:
                log.info("%s: target changed before its batch ran, dropping %d alerts", t.target_id, len(alerts))
                return []
            return await self._process_locked(alerts)

    async def _process_locked(self, alerts: List[Alert]) -> List[IncidentEvent]:
        t = self.target
        log.info("%s: processing %d alerts", t.target_id, len(alerts))

        if not t.enabled:
            log.info("%s: target is off, not processing alerts", t.target_id)
            return []

        registry = t.load_incident_registry()
        emitted: List[IncidentEvent] = []

        for alert in alerts:
            log.debug("%s: alert id=%s type=%s status=%s", t.target_id, alert.incident_id, alert.msg_type, alert.status)
            step = transition(registry, alert, test_mode=t.test_mode, locale=self.locale)

            if step.rejected:
                log.error(
                    "%s: received Test alert %s while not in test mode; source filtering failed",
                    t.target_id,
                    alert.incident_id,
                )
                continue
            if not step.changed:
                continue

            try:
                await t.save_incident_registry(step.registry)
            except Exception:
                log.exception("%s: failed to persist incidents, skipping %s", t.target_id, alert.incident_id)
                continue
            registry = step.registry

            try:
                await self._notify(alert, step)
                emitted.extend(step.events)
            except Exception:
                log.exception("%s: side effects failed for incident %s", t.target_id, alert.incident_id)

        try:
            await t.set_alarm_indicator(bool(registry))
        except Exception:
            log.exception("%s: failed to set alarm indicator", t.target_id)

        if not registry:
            try:
                await t.set_message_field(None)
            except Exception:
                log.exception("%s: failed to clear message field", t.target_id)

        return emitted

    async def _notify(self, alert: Alert, step: Transition) -> None:
        t = self.target
        if alert.msg_type == MSG_ALERT:
            if not step.events:
                log.error("%s: incident %s has no usable info block", t.target_id, alert.incident_id)
                return
            ev = step.events[0]
            log.info("%s: incident %s triggered", t.target_id, ev.incident_id)
            try:
                await t.set_message_field(ev.tokens["message"])
            except Exception:
                log.exception("%s: failed to set message field", t.target_id)
            await t.emit_triggered(ev.tokens)
        else:
            log.info("%s: incident %s cancelled", t.target_id, alert.incident_id)
            for ev in step.events:
                await t.emit_cancelled(ev.tokens)
