from __future__ import annotations

from collections import deque
from typing import Any

from app.context import get_automation_run, get_correlation_id
from app.core.events import event_bus

# Recent envelopes, kept for inspection; older entries are discarded.
published_events: deque[dict[str, Any]] = deque(maxlen=500)


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    automation_run = get_automation_run()
    if automation_run is not None and "automation_run" not in meta:
        meta["automation_run"] = automation_run
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
