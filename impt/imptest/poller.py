"""Device log poller.

Turns the Build API's cursor-based log endpoint into a synchronous stream of
:class:`PollerSignal` values.  The stream is a generator: each record of a
batch is classified and handed to the consumer before the generator resumes,
so the consumer observes records in arrival order and no new fetch is issued
while it is still handling the previous batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

from .events import ClassificationError, ClassifiedEvent, classify_record
from .transport import SENTINEL_SINCE, BuildAPIClient, PollCursor, TransportError


logger = logging.getLogger(__name__)

SIGNAL_READY = "ready"
SIGNAL_LOG = "log"
SIGNAL_ERROR = "error"
SIGNAL_DONE = "done"

Classifier = Callable[[Dict[str, Any], str], List[ClassifiedEvent]]


@dataclass(frozen=True)
class PollerSignal:
    kind: str
    event: Optional[ClassifiedEvent] = None
    error: Optional[BaseException] = None
    record: Optional[Dict[str, Any]] = None


class _StreamExpired(Exception):
    """The poll cursor was invalidated; the stream must be reopened."""


class LogPoller:
    """Poll one device's logs and classify them for one test side."""

    def __init__(self, client: BuildAPIClient, *, classifier: Classifier = classify_record) -> None:
        self.client = client
        self.classifier = classifier
        self.restarts = 0
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def stop(self) -> None:
        """Request a graceful halt at the next record or batch boundary."""
        self._stop_requested = True

    def start(self, device_id: str, side: str) -> Iterator[PollerSignal]:
        ready_sent = False
        while not self._stop_requested:
            try:
                cursor = self._open(device_id)
            except TransportError as exc:
                logger.debug("log stream open failed: %s", exc)
                yield PollerSignal(SIGNAL_ERROR, error=exc)
                return
            if not ready_sent:
                ready_sent = True
                yield PollerSignal(SIGNAL_READY)
            try:
                yield from self._follow(device_id, side, cursor)
            except _StreamExpired:
                self.restarts += 1
                logger.debug("log token expired, reopening stream for %s (restart #%d)", device_id, self.restarts)
                continue
            except TransportError as exc:
                yield PollerSignal(SIGNAL_ERROR, error=exc)
                return
        yield PollerSignal(SIGNAL_DONE)

    def _open(self, device_id: str) -> PollCursor:
        batch = self.client.fetch_logs(device_id, SENTINEL_SINCE)
        if batch.cursor is None:
            raise TransportError("log stream response missing poll url")
        return batch.cursor

    def _follow(self, device_id: str, side: str, cursor: PollCursor) -> Iterator[PollerSignal]:
        while not self._stop_requested:
            try:
                batch = self.client.fetch_logs(device_id, cursor)
            except TransportError as exc:
                if exc.is_invalid_token:
                    raise _StreamExpired() from exc
                if exc.is_timeout:
                    logger.debug("log poll timed out, polling again")
                    continue
                raise
            cursor = batch.cursor or cursor
            for record in batch.logs:
                if self._stop_requested:
                    return
                try:
                    events = self.classifier(record, side)
                except ClassificationError as exc:
                    yield PollerSignal(SIGNAL_LOG, error=exc, record=record)
                    continue
                for event in events:
                    if self._stop_requested:
                        return
                    yield PollerSignal(SIGNAL_LOG, event=event, record=record)
