# ─── router.py ─────────────────────────────────────────────────────
# Takes a normalized Incoming event, looks up the sender's step and hands
# it to the right flow. This is also the outermost error boundary: an
# unexpected failure clears the sender's state and brings the main menu
# back after a short pause.

import asyncio
import logging
from typing import Sequence

from telegram import Bot
from telegram.error import TelegramError

import config
from errors import NotFoundError
from flow import CANCEL_TEXT, MENU_ACCOUNT, MENU_BUTTONS, MENU_MINE, MENU_POST, Incoming, main_menu
from listing_flow import ListingFlow
from moderation import ModerationFlow
from state import ConversationStore, MediaBatchBuffer

logger = logging.getLogger(__name__)

NOT_FOUND_TEXT = "❌ አልተገኘም። | Not found."
ERROR_TEXT = "⚠️ ችግር ተፈጥሯል። እባክዎ እንደገና ይሞክሩ። | Something went wrong."
UNKNOWN_COMMAND_TEXT = "❓ ያልታወቀ ትዕዛዝ። ለመጀመር /start ይጫኑ።"


class Router:
    def __init__(self, bot: Bot, store: ConversationStore, batches: MediaBatchBuffer,
                 listing: ListingFlow, moderation: ModerationFlow,
                 menu_delay: float = config.MENU_RESTORE_DELAY):
        self.bot = bot
        self.store = store
        self.batches = batches
        self.listing = listing
        self.moderation = moderation
        self.menu_delay = menu_delay
        self._tasks: set[asyncio.Task] = set()

    # ─── entry points ─────────────────────────────────────────────

    async def on_command(self, ev: Incoming, command: str, args: Sequence[str] = ()) -> None:
        command = command.lower()
        if command == "start":
            await self._guard(ev, self.listing.start(ev, args[0] if args else None))
        elif command == "admin":
            await self._guard(ev, self.moderation.panel(ev))
        elif command == "pending":
            await self._guard(ev, self.moderation.pending(ev))
        elif command in ("stop", "cancel"):
            await self._guard(ev, self.listing.stop(ev))
        else:
            await self._send(ev.chat_id, UNKNOWN_COMMAND_TEXT)

    async def on_message(self, ev: Incoming) -> None:
        if ev.text == CANCEL_TEXT:
            await self._guard(ev, self.listing.cancel(ev))
            return
        if ev.text in MENU_BUTTONS and ev.media is None:
            await self._guard(ev, self._menu(ev))
            return
        step = self.store.step(ev.user_id)
        if step is None:
            await self._send(ev.chat_id, "ℹ️ ከማውጫው ይምረጡ ወይም /start ይጫኑ።", reply_markup=main_menu())
        elif step.startswith("admin_"):
            await self._guard(ev, self.moderation.handle_message(ev, step))
        else:
            await self._guard(ev, self.listing.handle_message(ev, step))

    async def on_callback(self, ev: Incoming) -> None:
        if ev.action is None:
            await self.listing.ack(ev, "Unknown action")
            return
        if ev.action.is_admin:
            await self._guard(ev, self.moderation.handle_action(ev))
        else:
            await self._guard(ev, self.listing.handle_action(ev))

    async def _menu(self, ev: Incoming) -> None:
        self.store.clear(ev.user_id)
        if ev.text == MENU_POST:
            await self.listing.begin_listing(ev)
        elif ev.text == MENU_MINE:
            await self.listing.show_my_listings(ev)
        elif ev.text == MENU_ACCOUNT:
            await self.listing.show_account(ev)

    # ─── error boundary ───────────────────────────────────────────

    async def _guard(self, ev: Incoming, work) -> None:
        step = self.store.step(ev.user_id)
        try:
            await work
        except NotFoundError as e:
            logger.info("chat %s step %s: %s", ev.chat_id, step, e)
            self.store.clear(ev.user_id)
            await self._send(ev.chat_id, NOT_FOUND_TEXT, reply_markup=main_menu())
        except Exception as e:
            logger.exception("Unhandled error in chat %s (step %s): %s", ev.chat_id, step, e)
            self.store.clear(ev.user_id)
            await self._send(ev.chat_id, ERROR_TEXT)
            self._restore_menu_later(ev.chat_id)

    async def _send(self, chat_id: int, text: str, reply_markup=None) -> None:
        try:
            await self.bot.send_message(chat_id, text, reply_markup=reply_markup)
        except TelegramError as e:
            logger.warning("Could not reach chat %s: %s", chat_id, e)

    def _restore_menu_later(self, chat_id: int) -> None:
        task = asyncio.create_task(self._restore_menu(chat_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _restore_menu(self, chat_id: int) -> None:
        await asyncio.sleep(self.menu_delay)
        await self._send(chat_id, "🏠 ዋና ማውጫ", reply_markup=main_menu())
