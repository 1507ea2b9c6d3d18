# ─── state.py ──────────────────────────────────────────────────────
# Per-sender conversation state and the album (media group) buffer.
# Both live in process memory only: a restart resets in-flight dialogues.

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from telegram.ext import ContextTypes, JobQueue

import config

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    data: dict[str, Any]
    touched: float


class ConversationStore:
    """sender id → {"step": ..., collected fields...} with TTL eviction."""

    def __init__(self, ttl: timedelta = config.STATE_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl.total_seconds()
        self._clock = clock
        self._entries: dict[int, _Entry] = {}

    def get(self, sender: int) -> dict[str, Any]:
        """Copy of the sender's state; ``{}`` when there is none."""
        entry = self._entries.get(sender)
        return dict(entry.data) if entry else {}

    def step(self, sender: int) -> str | None:
        entry = self._entries.get(sender)
        return entry.data.get("step") if entry else None

    def merge(self, sender: int, partial: dict[str, Any] | None = None, **fields) -> dict[str, Any]:
        """Shallow-merge into the sender's state and refresh its activity time."""
        entry = self._entries.get(sender)
        if entry is None:
            entry = self._entries[sender] = _Entry({}, self._clock())
        entry.data.update(partial or {})
        entry.data.update(fields)
        entry.touched = self._clock()
        return dict(entry.data)

    def clear(self, sender: int) -> None:
        self._entries.pop(sender, None)

    def __contains__(self, sender: int) -> bool:
        return sender in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def sweep(self) -> int:
        cutoff = self._clock() - self.ttl
        stale = [s for s, e in self._entries.items() if e.touched < cutoff]
        for sender in stale:
            del self._entries[sender]
        if stale:
            logger.info("State sweep: dropped %s idle conversations", len(stale))
        return len(stale)

    async def _sweep_job(self, context: ContextTypes.DEFAULT_TYPE) -> None:
        self.sweep()

    def schedule(self, job_queue: JobQueue,
                 interval: timedelta = config.STATE_SWEEP_INTERVAL) -> None:
        job_queue.run_repeating(
            self._sweep_job, interval=interval, first=interval,
            name="conversation_sweep",
        )


@dataclass
class MediaBatch:
    items: list[dict] = field(default_factory=list)
    created: float = 0.0
    processed: bool = False


class MediaBatchBuffer:
    """media_group_id → items that arrived as separate updates."""

    def __init__(self, ttl: timedelta = config.MEDIA_BATCH_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl.total_seconds()
        self._clock = clock
        self._batches: dict[str, MediaBatch] = {}

    def append(self, batch_id: str, item: dict) -> bool:
        """Adds an item; True when it is the first item of the batch."""
        batch = self._batches.get(batch_id)
        first = batch is None
        if first:
            batch = self._batches[batch_id] = MediaBatch(created=self._clock())
        batch.items.append(item)
        return first

    def drain(self, batch_id: str) -> list[dict]:
        """Items of an unprocessed batch, marking it processed; [] otherwise."""
        batch = self._batches.get(batch_id)
        if batch is None or batch.processed:
            return []
        batch.processed = True
        items, batch.items = batch.items, []
        return items

    def discard(self, batch_id: str) -> None:
        self._batches.pop(batch_id, None)

    def __contains__(self, batch_id: str) -> bool:
        return batch_id in self._batches

    def sweep(self) -> int:
        cutoff = self._clock() - self.ttl
        stale = [b for b, v in self._batches.items() if v.created < cutoff]
        for batch_id in stale:
            del self._batches[batch_id]
        return len(stale)

    async def _sweep_job(self, context: ContextTypes.DEFAULT_TYPE) -> None:
        dropped = self.sweep()
        if dropped:
            logger.debug("Media batch sweep: dropped %s", dropped)

    def schedule(self, job_queue: JobQueue,
                 interval: timedelta = config.MEDIA_BATCH_TTL) -> None:
        job_queue.run_repeating(
            self._sweep_job, interval=interval, first=interval,
            name="media_batch_sweep",
        )
