import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

DEFAULT_METRICS_TEMPLATE = "output/run_metrics_{timestamp}.json"


def _stamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunMetrics:
    """
    Counters, gauges and events for one crawl run.

    Workers update it concurrently, so every mutation goes through the lock.
    Partial success is the normal outcome against a defended target; the
    counters record how partial the run was and why.
    """

    target: str
    run_id: str = field(default_factory=_stamp)
    started_at: str = field(default_factory=_iso_now)
    ended_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    counters: Dict[str, int] = field(default_factory=dict)
    gauges: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    output_path: Optional[Path] = None
    _t0: float = field(default_factory=time.monotonic, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def elapsed(self) -> float:
        if self.duration_seconds is not None:
            return self.duration_seconds
        return max(time.monotonic() - self._t0, 0.0)

    def inc(self, key: str, amount: int = 1) -> None:
        if key:
            with self._lock:
                self.counters[key] = self.counters.get(key, 0) + int(amount)

    def get(self, key: str) -> int:
        with self._lock:
            return self.counters.get(key, 0)

    def set_gauge(self, key: str, value: Any) -> None:
        if key:
            with self._lock:
                self.gauges[key] = value

    def set_gauges(self, values: Mapping[str, Any]) -> None:
        with self._lock:
            self.gauges.update({k: v for k, v in values.items() if k})

    def record_event(self, kind: str, **data: Any) -> None:
        if not kind:
            return
        event = {"t": _iso_now(), "kind": kind}
        event.update((k, v) for k, v in data.items() if v is not None)
        with self._lock:
            self.events.append(event)

    def finish(self) -> None:
        """Freeze end time and duration; later calls are no-ops"""
        if self.ended_at is None:
            self.duration_seconds = self.elapsed()
            self.ended_at = _iso_now()

    def to_dict(self, *, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._lock:
            snapshot = {
                "counters": dict(self.counters),
                "gauges": dict(self.gauges),
                "events": list(self.events),
            }
        payload: Dict[str, Any] = {
            "target": self.target,
            "run_id": self.run_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at or _iso_now(),
            "duration_seconds": round(self.elapsed(), 6),
        }
        payload.update({k: v for k, v in snapshot.items() if v or k == "counters"})
        if extra:
            payload["extra"] = dict(extra)
        if self.output_path is not None:
            payload["output_path"] = str(self.output_path)
        return payload

    def write_json(self, *, template: str = DEFAULT_METRICS_TEMPLATE, extra: Optional[Dict[str, Any]] = None) -> Path:
        """Write the run snapshot to `template` with {timestamp} filled in"""
        path = Path((template or DEFAULT_METRICS_TEMPLATE).replace("{timestamp}", _stamp()))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(self.to_dict(extra=extra), indent=2, sort_keys=True, default=str),
            encoding="utf-8",
        )
        self.output_path = path
        return path
