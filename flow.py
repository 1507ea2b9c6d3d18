# ─── flow.py ───────────────────────────────────────────────────────
# Pieces both dialogue flows share: the normalized inbound event, the
# reply-keyboard main menu and a base class with send/ack/edit helpers.

import logging
from dataclasses import dataclass
from typing import Optional

from telegram import Bot, KeyboardButton, Message, ReplyKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import BadRequest

from callbacks import Action
from state import ConversationStore

logger = logging.getLogger(__name__)

MENU_POST    = "🛖 ቤት ለማከራየት"
MENU_MINE    = "📋 የእኔ ማስታወቂያዎች"
MENU_ACCOUNT = "👤 አካውንት"
MENU_BUTTONS = (MENU_POST, MENU_MINE, MENU_ACCOUNT)
CANCEL_TEXT  = "🚫 ይቅር"


@dataclass
class Incoming:
    """One inbound message or button press, stripped of PTB types."""
    chat_id: int
    user_id: int
    text: Optional[str] = None
    media: Optional[dict] = None            # {"file_id": ..., "kind": photo|video|document}
    media_group_id: Optional[str] = None
    message_id: Optional[int] = None
    callback_id: Optional[str] = None
    action: Optional[Action] = None
    first_name: str = ""
    contact_phone: Optional[str] = None     # shared via the contact button

    @property
    def is_callback(self) -> bool:
        return self.callback_id is not None


def main_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [[KeyboardButton(MENU_POST)], [KeyboardButton(MENU_MINE), KeyboardButton(MENU_ACCOUNT)]],
        resize_keyboard=True,
    )


def cancel_keyboard() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup([[KeyboardButton(CANCEL_TEXT)]], resize_keyboard=True)


class BaseFlow:
    def __init__(self, bot: Bot, store: ConversationStore, db):
        self.bot = bot
        self.store = store
        self.db = db

    async def say(self, chat_id: int, text: str, reply_markup=None,
                  parse_mode: Optional[str] = ParseMode.HTML) -> Message:
        return await self.bot.send_message(
            chat_id, text, parse_mode=parse_mode, reply_markup=reply_markup,
            disable_web_page_preview=True,
        )

    async def ack(self, ev: Incoming, text: Optional[str] = None, alert: bool = False) -> None:
        """Answers the button press; an expired query is only logged."""
        if not ev.callback_id:
            return
        try:
            await self.bot.answer_callback_query(ev.callback_id, text=text, show_alert=alert)
        except BadRequest as e:
            logger.info("Callback ack failed (chat %s): %s", ev.chat_id, e)

    async def safe_edit(self, chat_id: int, message_id: int, text: str, reply_markup=None) -> None:
        """edit_message_text that ignores 'Message is not modified'."""
        try:
            await self.bot.edit_message_text(
                text, chat_id=chat_id, message_id=message_id,
                parse_mode=ParseMode.HTML, reply_markup=reply_markup,
                disable_web_page_preview=True,
            )
        except BadRequest as e:
            if "Message is not modified" not in str(e):
                raise

    async def show_menu(self, chat_id: int, text: str = "🏠 ዋና ማውጫ") -> None:
        await self.say(chat_id, text, reply_markup=main_menu())
