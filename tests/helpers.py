"""Test helper functions."""

import itertools
from unittest.mock import AsyncMock, MagicMock

from callbacks import Act, Action
from flow import Incoming

ADMIN_ID = 999
CHANNEL = "@test_channel"


def make_bot() -> AsyncMock:
    """Bot double whose send_* calls return messages with fresh ids."""
    bot = AsyncMock()
    ids = itertools.count(1000)

    def _message(*args, **kwargs):
        return MagicMock(message_id=next(ids))

    def _album(chat_id, media, **kwargs):
        return [MagicMock(message_id=next(ids)) for _ in media]

    for name in ("send_message", "send_photo", "send_video", "send_document"):
        getattr(bot, name).side_effect = _message
    bot.send_media_group.side_effect = _album
    return bot


def message(user_id: int, text: str = None, **kwargs) -> Incoming:
    return Incoming(chat_id=user_id, user_id=user_id, text=text, message_id=1, **kwargs)


def photo(user_id: int, file_id: str, group: str = None, kind: str = "photo") -> Incoming:
    return Incoming(chat_id=user_id, user_id=user_id, message_id=1,
                    media={"file_id": file_id, "kind": kind}, media_group_id=group)


def press(user_id: int, act: Act, listing_id: int = None, arg: str = None) -> Incoming:
    return Incoming(chat_id=user_id, user_id=user_id, callback_id="cb", message_id=500,
                    action=Action(act, listing_id, arg))


def sent_texts(bot, chat_id=None) -> list:
    """Texts passed to bot.send_message, optionally for one chat."""
    return [
        c.args[1] for c in bot.send_message.call_args_list
        if chat_id is None or c.args[0] == chat_id
    ]


def last_markup(bot):
    return bot.send_message.call_args_list[-1].kwargs.get("reply_markup")


def button_labels(markup) -> list:
    return [b.text for row in markup.inline_keyboard for b in row]


async def seed_pending(db, owner: int = 5, **fields) -> int:
    """A submitted listing owned by ``owner``."""
    await db.create_user(owner, "Owner Name")
    await db.update_user(owner, {"phone": "+251911000000", "user_type": "owner"})
    values = {"property_type": "residential", "title": "ኮንዶሚንየም",
              "location": "Bole", "price": "15,000 ብር"}
    values.update(fields)
    listing_id = await db.create_listing(owner, values)
    await db.submit_listing(listing_id)
    return listing_id
