# ─── media.py ──────────────────────────────────────────────────────
# Photo/video intake shared by the submission flow and the admin media
# editor. Accepted items are queued in conversation state under "media"
# and only persisted when the sender presses "done"; "media_existing"
# holds how many items the listing already has in the database.
#
# An album reaches us as one update per item, all sharing a
# media_group_id. The first item schedules a flush one second later;
# MediaBatchBuffer.drain guarantees the flush runs once per album.

import asyncio
import logging

from telegram import Bot

import config
from flow import Incoming
from state import ConversationStore, MediaBatchBuffer

logger = logging.getLogger(__name__)


class MediaIntake:
    def __init__(self, bot: Bot, store: ConversationStore, batches: MediaBatchBuffer,
                 limit: int = config.MAX_MEDIA, delay: float = config.MEDIA_BATCH_DELAY):
        self.bot = bot
        self.store = store
        self.batches = batches
        self.limit = limit
        self.delay = delay
        self._tasks: set[asyncio.Task] = set()

    def room(self, sender: int) -> int:
        state = self.store.get(sender)
        used = state.get("media_existing", 0) + len(state.get("media", []))
        return max(0, self.limit - used)

    async def receive(self, ev: Incoming, reply_markup=None) -> None:
        if ev.media is None:
            return
        if ev.media_group_id:
            if self.batches.append(ev.media_group_id, ev.media):
                step = self.store.step(ev.user_id)
                task = asyncio.create_task(self._flush_later(ev, reply_markup, step))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            return
        await self._accept(ev.chat_id, ev.user_id, [ev.media], reply_markup)

    async def _flush_later(self, ev: Incoming, reply_markup, step: str | None) -> None:
        await asyncio.sleep(self.delay)
        try:
            await self.flush(ev.media_group_id, ev.chat_id, ev.user_id, reply_markup, step=step)
        except Exception:
            logger.exception("Album flush failed (chat %s, group %s)", ev.chat_id, ev.media_group_id)

    async def flush(self, batch_id: str, chat_id: int, sender: int, reply_markup=None,
                    step: str | None = None) -> None:
        """Accepts a drained album; ``step`` is the step the album started in."""
        items = self.batches.drain(batch_id)
        if not items:
            return
        current = self.store.step(sender)
        if current is None:
            # dialogue was cancelled while the album was still arriving
            return
        if step is not None and current != step:
            logger.info("Dropped %s album items for %s: step moved from %s to %s",
                        len(items), sender, step, current)
            await self.bot.send_message(
                chat_id, f"⚠️ {len(items)} ፋይሎች ዘግይተው ደረሱ፣ አልተቀመጡም። እባክዎ እንደገና ይላኩ።",
            )
            return
        await self._accept(chat_id, sender, items, reply_markup)

    async def _accept(self, chat_id: int, sender: int, items: list[dict], reply_markup) -> None:
        if self.store.step(sender) is None:
            return
        room = self.room(sender)
        accepted, dropped = items[:room], len(items) - min(room, len(items))
        if not accepted:
            await self.bot.send_message(
                chat_id, f"⚠️ ከፍተኛው {self.limit} ፋይሎች ነው። ተጨማሪ መቀበል አልችልም።",
                reply_markup=reply_markup,
            )
            return
        queued = self.store.get(sender).get("media", []) + accepted
        self.store.merge(sender, media=queued)
        total = self.store.get(sender).get("media_existing", 0) + len(queued)
        text = f"✅ {len(accepted)} ፋይል ተቀብያለሁ ({total}/{self.limit})።"
        if dropped:
            text += f"\n⚠️ {dropped} ፋይሎች አልተቀበሉም፣ ከፍተኛው {self.limit} ነው።"
            logger.info("Truncated %s media items for %s", dropped, sender)
        await self.bot.send_message(chat_id, text, reply_markup=reply_markup)
