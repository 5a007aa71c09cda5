from __future__ import annotations

import json
import os
import queue
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol, Tuple, Union

from jamfhooks.core import log
from jamfhooks.core.contracts import Event
from jamfhooks.core.metrics import inc, observe_hist

l = log.get("adapters.storage")


class PayloadSink(Protocol):
    """Where received payloads go once parsed (archive, audit log, ...)."""
    def put(self, event: Event) -> None: ...


class PayloadArchive:
    """Background JSON writer: one file per received payload, atomic rename.

    Layout: ``<out_dir>/<tag>/<prefix>-<ns>-<rand>.json``. The queue is
    bounded; when it is full the oldest pending payload is dropped.
    """

    def __init__(self, out_dir: Union[str, Path] = "data/payloads", max_queue: int = 1024, prefix: str = "evt"):
        self.dir = Path(out_dir)
        self.dir.mkdir(parents=True, exist_ok=True)
        self.prefix = prefix
        self.q: "queue.Queue[Tuple[str, Any]]" = queue.Queue(max_queue)
        self._th: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def start(self) -> None:
        if self._th and self._th.is_alive():
            return
        self._stop.clear()
        self._th = threading.Thread(target=self._worker, name="PayloadArchive", daemon=True)
        self._th.start()
        l.info("archive start dir=%s max_queue=%d", self.dir.as_posix(), self.q.maxsize)

    def stop(self, timeout: float = 2.0) -> None:
        """Drain pending writes, then stop the worker."""
        self._stop.set()
        if self._th and self._th.is_alive():
            self.q.join()
            if threading.current_thread() is not self._th:
                self._th.join(timeout=timeout)
        l.info("archive stop")

    def put(self, event: Event) -> None:
        self.put_json(event.type.value, event.to_dict())

    def put_json(self, kind: str, obj: Any) -> None:
        try:
            self.q.put_nowait((kind, obj))
            return
        except queue.Full:
            pass
        try:
            self.q.get_nowait()
            self.q.task_done()
        except queue.Empty:
            pass
        inc("archive_drops_total", 1, kind=kind)
        l.warning("archive queue full, dropped oldest payload kind=%s", kind)
        try:
            self.q.put_nowait((kind, obj))
        except queue.Full:
            inc("archive_drops_total", 1, kind=kind)

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until the queue drains; False on timeout."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.q.unfinished_tasks == 0:
                return True
            time.sleep(0.01)
        return self.q.unfinished_tasks == 0

    def _worker(self) -> None:
        while not self._stop.is_set() or not self.q.empty():
            try:
                kind, obj = self.q.get(timeout=0.1)
            except queue.Empty:
                continue
            t0 = time.perf_counter()
            try:
                self._write_json(kind, obj)
                inc("archive_write_total", 1, kind=kind)
            except (OSError, TypeError, ValueError) as e:
                l.error("archive write error kind=%s: %s", kind, e, exc_info=True)
            finally:
                observe_hist("archive_write_ms", (time.perf_counter() - t0) * 1000.0, kind=kind)
                self.q.task_done()

    def _write_json(self, kind: str, obj: Any) -> Path:
        folder = self.dir / kind
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{self.prefix}-{time.time_ns()}-{uuid.uuid4().hex[:6]}.json"
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        return path
