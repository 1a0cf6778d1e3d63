# ============================================================
# feed.py — Change notifications
# ------------------------------------------------------------
# After every committed mutation the service publishes a
# ChangeEvent {table, operation, row}. Observers use it only as a
# trigger to re-read authoritative state, never as the state.
#
# Delivery is best effort: a failing observer is logged and the
# remaining observers still run. Nothing raised by an observer
# reaches the mutation that emitted the event.
# ============================================================
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List

log = logging.getLogger(__name__)

ADD = "add"
UPDATE = "update"
DELETE = "delete"

LOCAL = "local"
BROKER = "broker"

ALL_TABLES = "*"

# never put on the feed
SENSITIVE_FIELDS = {"username", "password"}


@dataclass
class ChangeEvent:
    table: str
    operation: str
    row: dict = field(default_factory=dict)
    origin: str = LOCAL

    def to_payload(self) -> dict:
        return {"table": self.table, "operation": self.operation, "row": self.row}

    @classmethod
    def from_payload(cls, payload: dict, origin: str = BROKER) -> "ChangeEvent":
        if payload.get("operation") not in (ADD, UPDATE, DELETE) or not payload.get("table"):
            raise ValueError(f"not a change event: {payload!r}")
        return cls(payload["table"], payload["operation"], dict(payload.get("row") or {}), origin)


def row_of(obj) -> dict:
    data = obj.model_dump(mode="json") if hasattr(obj, "model_dump") else dict(obj)
    return {k: v for k, v in data.items() if k not in SENSITIVE_FIELDS}


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """Register `callback` for one table (or ALL_TABLES). Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.setdefault(table, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(table, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent):
        with self._lock:
            callbacks = list(self._subscribers.get(event.table, [])) + list(self._subscribers.get(ALL_TABLES, []))
        for cb in callbacks:
            try:
                cb(event)
            except Exception:
                log.exception("change feed subscriber %r failed on %s/%s", cb, event.table, event.operation)

    def emit(self, table: str, operation: str, obj):
        self.publish(ChangeEvent(table, operation, row_of(obj)))
