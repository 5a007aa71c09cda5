"""Receive pipeline: raw payload -> parse -> dispatch -> receipt.

This is the surface a webhook transport (HTTP listener, queue consumer)
calls. Parse failures reject the event and are returned, never raised; no
handler runs for a rejected event.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from jamfhooks.adapters.storage import PayloadSink
from jamfhooks.core import log
from jamfhooks.core.contracts import DispatchReport, Event
from jamfhooks.core.dispatcher import CancelToken, Dispatcher
from jamfhooks.core.errors import ParseError
from jamfhooks.core.fixtures import FixtureStore
from jamfhooks.core.metrics import Timer, inc
from jamfhooks.core.parser import EventParser, RawPayload
from jamfhooks.core.schema import TagLike

l = log.get("service")


class ReceiptState(str, Enum):
    COMPLETED = "Completed"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class Receipt:
    state: ReceiptState
    tag: str
    event: Optional[Event] = None
    report: Optional[DispatchReport] = None
    error: Optional[ParseError] = None

    @property
    def rejected(self) -> bool:
        return self.state is ReceiptState.REJECTED


class WebhookService:
    def __init__(self, parser: EventParser, dispatcher: Dispatcher, sink: Optional[PayloadSink] = None):
        self.parser = parser
        self.dispatcher = dispatcher
        self.sink = sink

    def receive(self, tag: TagLike, raw: RawPayload, cancel: Optional[CancelToken] = None) -> Receipt:
        tag_name = str(tag)
        inc("events_received_total", 1, tag=tag_name)
        try:
            event = self.parser.parse(tag, raw)
        except ParseError as e:
            return self._reject(tag_name, e)
        return self._complete(event, cancel)

    def receive_envelope(self, raw: RawPayload, cancel: Optional[CancelToken] = None) -> Receipt:
        """Like :meth:`receive`, with the tag taken from ``webhook.webhookEvent``."""
        try:
            event = self.parser.parse_envelope(raw)
        except ParseError as e:
            inc("events_received_total", 1, tag="?")
            return self._reject("?", e)
        inc("events_received_total", 1, tag=event.type.value)
        return self._complete(event, cancel)

    async def areceive(self, tag: TagLike, raw: RawPayload, cancel: Optional[CancelToken] = None) -> Receipt:
        """Run :meth:`receive` off the event loop, for asyncio transports."""
        return await asyncio.to_thread(self.receive, tag, raw, cancel)

    def self_test(self, fixtures: FixtureStore) -> Dict[str, Receipt]:
        """Feed every sample payload through the pipeline."""
        results = {}
        for tag, raw in fixtures.items():
            results[tag] = self.receive(tag, raw)
        bad = [t for t, r in results.items() if r.rejected]
        l.info("self-test fixtures=%d rejected=%d %s", len(results), len(bad), bad or "")
        return results

    def _reject(self, tag_name: str, e: ParseError) -> Receipt:
        inc("events_rejected_total", 1, tag=tag_name, reason=e.reason)
        l.warning("rejected tag=%s reason=%s: %s", tag_name, e.reason, e)
        return Receipt(ReceiptState.REJECTED, tag_name, error=e)

    def _complete(self, event: Event, cancel: Optional[CancelToken]) -> Receipt:
        if self.sink is not None:
            self.sink.put(event)
        with Timer("dispatch_ms", tag=event.type.value):
            report = self.dispatcher.dispatch(event, cancel=cancel)
        return Receipt(ReceiptState.COMPLETED, event.type.value, event=event, report=report)


__all__ = ["WebhookService", "Receipt", "ReceiptState"]
