from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional


@dataclass(frozen=True)
class SseEvent:
    data: str
    event: str = "message"
    id: Optional[str] = None


async def iter_sse(lines: AsyncIterable[str]) -> AsyncIterator[SseEvent]:
    """
    Minimal text/event-stream framing: data lines accumulate until a blank
    line dispatches the event. Comment lines (":") are keep-alives.
    """
    data_lines: List[str] = []
    event_name = "message"
    event_id: Optional[str] = None

    async for raw in lines:
        line = raw.rstrip("\r\n")

        if not line:
            if data_lines:
                yield SseEvent(data="\n".join(data_lines), event=event_name, id=event_id)
            data_lines = []
            event_name = "message"
            continue

        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event_name = value or "message"
        elif name == "id":
            event_id = value
        # "retry" is ignored: reconnect timing is ours, not the server's.

    # Stream closed without a trailing blank line: the pending event is incomplete, drop it.
