"""
Per-execution message feeds for the HTTP layer.

Every message an execution produces is kept, so a client that connects late
still replays the run from the first progress message. Finished feeds are
evicted oldest first once more than `retention` are stored.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, AsyncIterator, Dict, List, Optional

from perfscope.config import settings
from perfscope.events import TraceEvent
from perfscope.orchestrator import ExecutionReport

logger = logging.getLogger(__name__)

PROGRESS = "progress"
UPDATE = "update"
COMPLETE = "complete"
ERROR = "error"


class ExecutionFeed:
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self.messages: List[Dict[str, Any]] = []
        self.report: Optional[ExecutionReport] = None
        self.finished = False
        self._changed = asyncio.Event()

    def _push(self, message: Dict[str, Any]) -> None:
        if self.finished:
            logger.debug("Feed %s already finished, dropping %s", self.execution_id, message["type"])
            return
        self.messages.append(message)
        self._changed.set()

    def progress(self, stage: str, status: str) -> None:
        self._push({"type": PROGRESS, "stage": stage, "status": status})

    def update(self, event: TraceEvent) -> None:
        data = event.wire()
        self._push({"type": UPDATE, "event": data.pop("kind"), "data": data})

    def complete(self, report: ExecutionReport) -> None:
        self.report = report
        outcome = report.outcome.wire()
        if report.metrics is not None:
            self._push({"type": COMPLETE, "result": outcome, "metrics": report.metrics.wire()})
        else:
            self._push({"type": ERROR, "message": report.outcome.message, "result": outcome})
        self.finished = True

    def error(self, message: str) -> None:
        self._push({"type": ERROR, "message": message})
        self.finished = True

    async def follow(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield every message from the start, then live ones until the run ends."""
        index = 0
        while True:
            self._changed.clear()
            while index < len(self.messages):
                yield self.messages[index]
                index += 1
            if self.finished:
                return
            await self._changed.wait()


class FeedStore:
    def __init__(self, retention: Optional[int] = None):
        self.retention = retention or settings.feed_retention
        self._feeds: "OrderedDict[str, ExecutionFeed]" = OrderedDict()

    def create(self, execution_id: str) -> ExecutionFeed:
        feed = ExecutionFeed(execution_id)
        self._feeds[execution_id] = feed
        self._evict()
        return feed

    def get(self, execution_id: str) -> Optional[ExecutionFeed]:
        return self._feeds.get(execution_id)

    def discard(self, execution_id: str) -> None:
        self._feeds.pop(execution_id, None)

    def _evict(self) -> None:
        finished = [key for key, feed in self._feeds.items() if feed.finished]
        excess = len(self._feeds) - self.retention
        for key in finished[:max(excess, 0)]:
            logger.debug("Evicting feed %s", key)
            del self._feeds[key]

    def __len__(self) -> int:
        return len(self._feeds)
