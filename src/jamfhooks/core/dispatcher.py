from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from jamfhooks.core import log
from jamfhooks.core.contracts import (
    DispatchReport, DispatchStatus, Event, HandlerOutcome, HandlerRegistration, OutcomeStatus,
)
from jamfhooks.core.errors import HandlerExecutionError, HandlerTimeout
from jamfhooks.core.handlers import HandlerRegistry
from jamfhooks.core.metrics import inc, observe_hist

l = log.get("dispatcher")


class TimeoutPolicy(str, Enum):
    SKIP = "skip"    # record the timeout, go on with the next handler
    ABORT = "abort"  # record the timeout, skip every remaining handler


class DispatchConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    handler_timeout: Optional[float] = Field(default=None, gt=0)   # seconds; None = unbounded, run inline
    timeout_policy: TimeoutPolicy = TimeoutPolicy.SKIP


class CancelToken:
    """Set from any thread; checked by the dispatcher before each handler."""
    def __init__(self) -> None:
        self._evt = threading.Event()

    def cancel(self) -> None:
        self._evt.set()

    @property
    def cancelled(self) -> bool:
        return self._evt.is_set()


class Dispatcher:
    """Routes one parsed event to its handlers, sequentially, in registration order.

    A failing or timed-out handler never prevents the next one from running
    (unless the ``abort`` timeout policy is configured); failures are only
    reported through the returned :class:`DispatchReport`.
    """

    def __init__(self, registry: HandlerRegistry, config: Optional[DispatchConfig] = None):
        self.registry = registry
        self.config = config or DispatchConfig()

    def dispatch(self, event: Event, cancel: Optional[CancelToken] = None) -> DispatchReport:
        regs = self.registry.handlers_for(event.type)
        if not regs:
            l.debug("no handlers tag=%s event_id=%s", event.type, event.event_id)
            return self._finish(event, DispatchStatus.NO_HANDLERS, [])

        outcomes: List[HandlerOutcome] = []
        stopped: Optional[DispatchStatus] = None
        for reg in regs:
            if stopped is None and cancel is not None and cancel.cancelled:
                stopped = DispatchStatus.CANCELLED
                l.info("dispatch cancelled tag=%s event_id=%s", event.type, event.event_id)
            if stopped is not None:
                outcomes.append(HandlerOutcome(reg.identity, OutcomeStatus.SKIPPED))
                continue
            outcome = self._invoke(reg, event)
            outcomes.append(outcome)
            if outcome.status is OutcomeStatus.TIMEOUT and self.config.timeout_policy is TimeoutPolicy.ABORT:
                stopped = DispatchStatus.ABORTED

        if stopped is not None:
            status = stopped
        elif any(o.error is not None for o in outcomes):
            status = DispatchStatus.PARTIAL_FAILURE
        else:
            status = DispatchStatus.ALL_SUCCEEDED
        return self._finish(event, status, outcomes)

    def _finish(self, event: Event, status: DispatchStatus, outcomes: List[HandlerOutcome]) -> DispatchReport:
        report = DispatchReport(tag=event.type, event_id=event.event_id, status=status, outcomes=tuple(outcomes))
        inc("dispatch_total", 1, tag=event.type.value, status=status.value)
        l.info("dispatched tag=%s event_id=%s status=%s invoked=%d errors=%d",
               event.type, event.event_id, status.value, report.invoked, len(report.errors))
        return report

    def _invoke(self, reg: HandlerRegistration, event: Event) -> HandlerOutcome:
        timeout = self.config.handler_timeout
        t0 = time.perf_counter()
        try:
            if timeout is None:
                reg.handler(event)
            else:
                _run_bounded(reg, event, timeout)
        except HandlerTimeout as e:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            inc("handler_errors_total", 1, tag=event.type.value, handler=reg.identity)
            l.warning("handler timeout tag=%s handler=%s after %.1fms policy=%s",
                      event.type, reg.identity, dt_ms, self.config.timeout_policy.value)
            return HandlerOutcome(reg.identity, OutcomeStatus.TIMEOUT, HandlerExecutionError(reg.identity, e), dt_ms)
        except KeyboardInterrupt:
            raise
        except BaseException as e:
            # SystemExit from a script-style handler is a failure like any other
            dt_ms = (time.perf_counter() - t0) * 1000.0
            inc("handler_errors_total", 1, tag=event.type.value, handler=reg.identity)
            l.error("handler error tag=%s handler=%s err=%s", event.type, reg.identity, e, exc_info=e)
            return HandlerOutcome(reg.identity, OutcomeStatus.ERROR, HandlerExecutionError(reg.identity, e), dt_ms)

        dt_ms = (time.perf_counter() - t0) * 1000.0
        observe_hist("handler_latency_ms", dt_ms, tag=event.type.value)
        return HandlerOutcome(reg.identity, OutcomeStatus.OK, None, dt_ms)


def _run_bounded(reg: HandlerRegistration, event: Event, timeout: float) -> None:
    """Run one handler on a daemon thread; a hung handler is abandoned, not killed."""
    box: Dict[str, Any] = {}

    def target():
        try:
            reg.handler(event)
        except BaseException as e:
            box["error"] = e

    th = threading.Thread(target=target, name=f"handler-{reg.identity}", daemon=True)
    th.start()
    th.join(timeout)
    if th.is_alive():
        raise HandlerTimeout(reg.identity, timeout)
    if "error" in box:
        raise box["error"]
