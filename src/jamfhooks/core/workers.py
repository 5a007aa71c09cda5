from __future__ import annotations

import queue
import threading
from typing import TYPE_CHECKING, Callable, List, Optional

from jamfhooks.core import log
from jamfhooks.core.metrics import inc

if TYPE_CHECKING:
    from jamfhooks.service import Receipt, WebhookService

ReceiptCallback = Callable[["Receipt"], None]

_STOP = object()


class DispatchWorkers:
    """In-process queue feeding a small pool of dispatch threads.

    Different events are received in parallel; handlers of one event still
    run sequentially inside a single worker. No persistence: items still
    queued when the process dies are lost.
    """

    def __init__(self, service: "WebhookService", workers: int = 4, maxsize: int = 0,
                 on_receipt: Optional[ReceiptCallback] = None, name: str = "jamfhooks.workers"):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.service = service
        self.n = int(workers)
        self.on_receipt = on_receipt
        self.l = log.get(name)
        self._q: "queue.Queue[object]" = queue.Queue(maxsize)
        self._threads: List[threading.Thread] = []
        self._running = False

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for i in range(self.n):
            th = threading.Thread(target=self._loop, name=f"DispatchWorker-{i}", daemon=True)
            th.start()
            self._threads.append(th)
        self.l.info("workers start n=%d", self.n)

    def stop(self, timeout: float = 2.0) -> None:
        """Finish queued items, then stop every worker."""
        if not self._running:
            return
        self._running = False
        for _ in self._threads:
            self._q.put(_STOP)
        for th in self._threads:
            th.join(timeout=timeout)
        self._threads.clear()
        self.l.info("workers stop")

    def submit(self, tag, raw) -> None:
        if not self._running:
            raise RuntimeError("workers are not running")
        self._q.put((tag, raw))
        inc("workers_submitted_total", 1)

    def join(self) -> None:
        """Block until every submitted item has been processed."""
        self._q.join()

    def _loop(self) -> None:
        while True:
            item = self._q.get()
            try:
                if item is _STOP:
                    return
                tag, raw = item
                receipt = self.service.receive(tag, raw)
                if self.on_receipt is not None:
                    self.on_receipt(receipt)
            except Exception as e:
                self.l.error("worker error: %s", e, exc_info=True)
            finally:
                self._q.task_done()
