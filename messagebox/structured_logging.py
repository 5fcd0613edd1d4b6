"""Structured JSONL event log for a single messaging action."""

from __future__ import annotations

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


class ActionEventLog:
    """Collects step events for one invocation, optionally mirrored to JSONL."""

    def __init__(self, debug_id: str, route: str, events_path: Optional[Path] = None) -> None:
        self.debug_id = debug_id
        self.route = route
        self.events: List[Dict[str, Any]] = []
        self.events_path = events_path
        self._step = 0
        self._events_file = events_path.open("a", encoding="utf-8") if events_path else None

    @classmethod
    def create(cls, debug_id: str, route: str, *, enabled: bool, log_root: Path) -> "ActionEventLog":
        if not enabled:
            return cls(debug_id, route)
        return cls(debug_id, route, prepare_event_path(debug_id, log_root))

    def log_event(self, event: str, **data: Any) -> int:
        self._step += 1
        payload = {
            "ts": time.time(),
            "debug_id": self.debug_id,
            "route": self.route,
            "step": self._step,
            "event": event,
            "data": data,
        }
        self.events.append(payload)
        log.debug("[%s] %s %s", self.debug_id, event, data)
        if self._events_file is not None:
            self._events_file.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._events_file.flush()
        return self._step

    def tail(self, count: int = 20) -> List[Dict[str, Any]]:
        return [{"step": e["step"], "event": e["event"], "data": e["data"]} for e in self.events[-count:]]

    def close(self) -> None:
        if self._events_file is None:
            return
        try:
            self._events_file.close()
        except OSError as exc:
            log.warning("Failed to close event log %s: %s", self.events_path, exc)
        self._events_file = None


def prepare_event_path(debug_id: str, base_dir: Path) -> Path:
    run_dir = base_dir / debug_id
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir / "events.jsonl"


def new_debug_id(route: str) -> str:
    return f"{route}-{uuid.uuid4().hex[:8]}"
