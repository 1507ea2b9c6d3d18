#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Entry point: builds the services, registers PTB handlers and polls.

import logging

from telegram import Update
from telegram.ext import (
    Application, CallbackQueryHandler, CommandHandler, ContextTypes,
    MessageHandler, filters,
)
from telegram.request import HTTPXRequest

import config
import housekeeping
from callbacks import parse_action
from channel import Publisher
from db import Database
from flow import Incoming
from listing_flow import ListingFlow
from media import MediaIntake
from moderation import ModerationFlow
from permissions import AdminPolicy
from router import Router
from state import ConversationStore, MediaBatchBuffer
from tokens import TokenIssuer

logger = logging.getLogger(__name__)

COMMANDS = ["start", "admin", "pending", "stop", "cancel"]


def build_router(bot, db, admin_ids: set[int] = config.ADMIN_IDS) -> Router:
    store = ConversationStore()
    batches = MediaBatchBuffer()
    publisher = Publisher(bot, config.CHANNEL_ID, config.BOT_USERNAME, admin_ids, db)
    intake = MediaIntake(bot, store, batches)
    listing = ListingFlow(bot, store, db, publisher, intake)
    moderation = ModerationFlow(
        bot, store, db, publisher, intake,
        AdminPolicy(admin_ids, db), TokenIssuer(config.TOKEN_PRIVATE_KEY), listing,
    )
    return Router(bot, store, batches, listing, moderation)


# ─── Update → Incoming ─────────────────────────────────────────────

def to_incoming(update: Update) -> Incoming | None:
    user, chat = update.effective_user, update.effective_chat
    if user is None or chat is None:
        return None
    ev = Incoming(chat_id=chat.id, user_id=user.id, first_name=user.first_name or "")

    q = update.callback_query
    if q is not None:
        ev.callback_id = q.id
        ev.action = parse_action(q.data)
        if q.message is not None:
            ev.message_id = q.message.message_id
        return ev

    msg = update.effective_message
    if msg is None:
        return None
    ev.message_id = msg.message_id
    ev.text = msg.text or msg.caption
    ev.media_group_id = msg.media_group_id
    if msg.photo:
        ev.media = {"file_id": msg.photo[-1].file_id, "kind": "photo"}
    elif msg.video:
        ev.media = {"file_id": msg.video.file_id, "kind": "video"}
    elif msg.document:
        ev.media = {"file_id": msg.document.file_id, "kind": "document"}
    if msg.contact and msg.contact.user_id in (None, user.id):
        ev.contact_phone = msg.contact.phone_number
    return ev


# ─── handlers ──────────────────────────────────────────────────────

async def on_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    ev = to_incoming(update)
    if ev is None or not update.message or not update.message.text:
        return
    head, *rest = update.message.text.split()
    command = head[1:].split("@", 1)[0]
    await context.bot_data["router"].on_command(ev, command, context.args or rest)


async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    ev = to_incoming(update)
    if ev is not None:
        await context.bot_data["router"].on_message(ev)


async def on_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    ev = to_incoming(update)
    if ev is not None:
        await context.bot_data["router"].on_callback(ev)


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Update %s caused error: %s", update, context.error, exc_info=context.error)


async def post_init(application: Application) -> None:
    """Runs after initialize(); job_queue already exists."""
    router: Router = application.bot_data["router"]
    publisher = router.listing.publisher
    if not publisher.bot_username:
        publisher.bot_username = application.bot.username
    housekeeping.schedule(application.job_queue, router.store, router.batches)


async def post_shutdown(application: Application) -> None:
    application.bot_data["db"].close()


def main():
    logging.basicConfig(
        format="%(asctime)s :: %(levelname)s :: %(message)s", level=config.LOG_LEVEL
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not config.BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN is not set")
    if not config.DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not set")

    db = Database(config.DATABASE_URL)
    db.open()
    db.init_db()

    req = HTTPXRequest(
        connect_timeout=30,
        write_timeout=180,
        pool_timeout=60,
        read_timeout=180,
    )
    app = (
        Application.builder()
            .token(config.BOT_TOKEN)
            .request(req)
            .post_init(post_init)
            .post_shutdown(post_shutdown)
            .build()
    )
    app.bot_data["db"] = db
    app.bot_data["router"] = build_router(app.bot, db)

    private = filters.ChatType.PRIVATE
    app.add_handler(CommandHandler(COMMANDS, on_command, filters=private))
    app.add_handler(MessageHandler(private & filters.COMMAND, on_command))
    app.add_handler(MessageHandler(
        private & ~filters.COMMAND
        & (filters.TEXT | filters.PHOTO | filters.VIDEO | filters.Document.ALL | filters.CONTACT),
        on_message,
    ))
    app.add_handler(CallbackQueryHandler(on_callback))
    app.add_error_handler(on_error)

    logger.info("Bot starting, %s configured admin(s)", len(config.ADMIN_IDS))
    app.run_polling(allowed_updates=Update.ALL_TYPES)


# ───────────────────────────────────────────────────────────────────
if __name__ == "__main__":
    main()
