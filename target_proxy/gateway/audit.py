from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

REDACTED = "[redacted]"

_REDACTED_KEYS = {
    "authorization",
    "password",
    "token",
    "client_secret",
    "clientsecret",
    "access_token",
}


def sanitize_audit_event(event: dict[str, Any]) -> dict[str, Any]:
    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            return {
                key: REDACTED
                if isinstance(key, str) and key.lower() in _REDACTED_KEYS
                else _sanitize(item)
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    return _sanitize(event)


class JsonlAuditLogger:
    """Appends proxy events as JSON lines from a background writer thread.

    ``log`` never blocks the request path: when the queue is full the record
    is dropped and counted, and the count is written as a final record on
    close.
    """

    def __init__(
        self,
        path: str | Path,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._dropped_lock = Lock()
        self._dropped_records = 0
        self._queue: Queue[str | None] = Queue(maxsize=max_queue_size)
        self._worker: Thread | None = None
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._worker = Thread(
                target=self._write_loop, name="proxy-audit-writer", daemon=True
            )
            self._worker.start()

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        record = {"ts": round(time.time(), 3), **sanitize_audit_event(event)}
        try:
            self._queue.put_nowait(_encode(record))
        except Full:
            with self._dropped_lock:
                self._dropped_records += 1

    @property
    def dropped_records(self) -> int:
        with self._dropped_lock:
            return self._dropped_records

    def close(self) -> None:
        worker = self._worker
        if worker is None:
            return
        self._queue.put(None)
        worker.join(timeout=2.0)
        self._worker = None

    def _write_loop(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = self._queue.get()
                if line is None:
                    break
                handle.write(line + "\n")
                handle.flush()
            with self._dropped_lock:
                dropped, self._dropped_records = self._dropped_records, 0
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": round(time.time(), 3),
                            "event": "audit_records_dropped",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
