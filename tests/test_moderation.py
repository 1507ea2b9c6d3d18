"""Tests for the admin side: review, approve, reject, edit, tokens, broadcast."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from telegram.error import TelegramError

import catalog
from callbacks import Act
from errors import TransientInfraError
from flow import MENU_POST
from moderation import FAILURE_TEXT, UNSAVED_TEXT
from permissions import DENIED_TEXT
from tokens import NO_KEY_MSG, TokenIssuer

from tests.helpers import (
    ADMIN_ID, CHANNEL, button_labels, message, photo, press, seed_pending, sent_texts,
)

OWNER = 5
STRANGER = 77


def channel_posts(bot) -> int:
    return sum(1 for c in bot.send_message.call_args_list if c.args[0] == CHANNEL)


@pytest.mark.asyncio
async def test_pending_review_for_allow_listed_admin(router, db, bot):
    listing_id = await seed_pending(db, owner=OWNER, title=catalog.COMPOUND_ROOM, rooms_count=3)
    assert listing_id == 1

    await router.on_command(message(ADMIN_ID, "/pending"), "pending")

    texts = sent_texts(bot, ADMIN_ID)
    assert any("3 ክፍል" in t for t in texts)
    markup = bot.send_message.call_args.kwargs["reply_markup"]
    assert button_labels(markup) == ["✅ Approve", "✏️ Edit", "❌ Reject"]


@pytest.mark.asyncio
async def test_admin_flag_in_database_grants_access(router, db, bot):
    await db.create_user(STRANGER)
    await db.update_user(STRANGER, {"is_admin": True})

    await router.on_command(message(STRANGER, "/admin"), "admin")

    assert "Admin Panel" in sent_texts(bot, STRANGER)[-1]


@pytest.mark.asyncio
async def test_non_admin_is_denied_without_state(router, store, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)

    await router.on_command(message(STRANGER, "/admin"), "admin")
    await router.on_callback(press(STRANGER, Act.APPROVE, listing_id))

    assert sent_texts(bot, STRANGER) == [DENIED_TEXT]
    ack = bot.answer_callback_query.call_args.kwargs
    assert (ack["text"], ack["show_alert"]) == (DENIED_TEXT, True)
    assert STRANGER not in store
    assert db.listings[listing_id]["status"] == "pending"


@pytest.mark.asyncio
async def test_approve_publishes_once(router, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)

    await router.on_callback(press(ADMIN_ID, Act.APPROVE, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.APPROVE, listing_id))

    listing = await db.get_listing(listing_id)
    assert listing["status"] == "published"
    assert listing["channel_message_id"] is not None
    assert channel_posts(bot) == 1
    assert any("ጸድቋል" in t for t in sent_texts(bot, OWNER))
    edits = [c.args[0] for c in bot.edit_message_text.call_args_list]
    assert "APPROVED & PUBLISHED" in edits[0]
    assert "Already handled" in edits[1]


@pytest.mark.asyncio
async def test_failed_publish_reverts_to_pending(router, moderation, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)
    moderation.publisher.publish = AsyncMock(side_effect=TelegramError("Chat not found"))

    await router.on_callback(press(ADMIN_ID, Act.APPROVE, listing_id))

    assert db.listings[listing_id]["status"] == "pending"
    assert FAILURE_TEXT.format(id=listing_id) in sent_texts(bot, ADMIN_ID)
    assert sent_texts(bot, OWNER) == []


@pytest.mark.asyncio
async def test_failed_follow_up_does_not_post_twice(router, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)
    for i in range(3):
        await db.add_media(listing_id, {"file_id": f"p{i}", "kind": "photo"})
    send = bot.send_message.side_effect

    def _send(chat_id, *args, **kwargs):
        if chat_id == CHANNEL:
            raise TelegramError("Timed out")
        return send(chat_id, *args, **kwargs)

    bot.send_message.side_effect = _send

    await router.on_callback(press(ADMIN_ID, Act.APPROVE, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.APPROVE, listing_id))

    listing = db.listings[listing_id]
    assert listing["status"] == "published"
    assert listing["channel_message_id"] is not None
    bot.send_media_group.assert_awaited_once()
    edits = [c.args[0] for c in bot.edit_message_text.call_args_list]
    assert "Already handled" in edits[-1]


@pytest.mark.asyncio
async def test_unsaved_status_blocks_second_publish(router, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)
    db.set_listing_status = AsyncMock(side_effect=TransientInfraError("connection refused"))

    await router.on_callback(press(ADMIN_ID, Act.APPROVE, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.APPROVE, listing_id))

    assert db.listings[listing_id]["status"] == "approved"
    assert channel_posts(bot) == 1
    assert UNSAVED_TEXT.format(id=listing_id, message_id=1000) in sent_texts(bot, ADMIN_ID)
    assert sent_texts(bot, OWNER) == []


@pytest.mark.asyncio
async def test_reject_requires_reason(router, store, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)

    await router.on_callback(press(ADMIN_ID, Act.REJECT, listing_id))
    assert store.step(ADMIN_ID) == "admin_reject_reason"

    await router.on_message(message(ADMIN_ID, "no"))
    assert store.step(ADMIN_ID) == "admin_reject_reason"
    assert db.listings[listing_id]["status"] == "pending"
    assert "at least 3" in sent_texts(bot, ADMIN_ID)[-1]

    await router.on_message(message(ADMIN_ID, "Photos are blurry"))
    assert db.listings[listing_id]["status"] == "rejected"
    assert db.listings[listing_id]["admin_notes"] == "Photos are blurry"
    assert any("Photos are blurry" in t for t in sent_texts(bot, OWNER))
    assert "REJECTED" in bot.edit_message_text.call_args.args[0]
    assert ADMIN_ID not in store


@pytest.mark.asyncio
async def test_edit_text_field(router, store, db, bot):
    listing_id = await seed_pending(db, owner=OWNER, floor="2ኛ ፎቅ")

    await router.on_callback(press(ADMIN_ID, Act.EDIT, listing_id))
    assert "✏️ ፎቅ" in button_labels(bot.send_message.call_args.kwargs["reply_markup"])
    await router.on_callback(press(ADMIN_ID, Act.EDIT_FIELD, listing_id, "price"))
    assert store.step(ADMIN_ID) == "admin_edit_value"

    await router.on_message(message(ADMIN_ID, "cheap"))
    assert db.listings[listing_id]["price"] == "15,000 ብር"

    await router.on_message(message(ADMIN_ID, "20000"))
    assert db.listings[listing_id]["price"] == "20,000 ብር"
    assert store.step(ADMIN_ID) == "admin_edit"

    await router.on_callback(press(ADMIN_ID, Act.EDIT_DONE, listing_id))
    assert ADMIN_ID not in store
    assert "editing completed" in sent_texts(bot, ADMIN_ID)[-1]


@pytest.mark.asyncio
async def test_title_change_clears_inapplicable_attributes(router, db):
    listing_id = await seed_pending(db, owner=OWNER, title=catalog.COMPOUND_ROOM,
                                    rooms_count=3, bathroom_type="የግል")

    await router.on_callback(press(ADMIN_ID, Act.EDIT, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.EDIT_FIELD, listing_id, "title"))
    studio = catalog.TITLES[catalog.RESIDENTIAL].index(catalog.STUDIO)
    await router.on_callback(press(ADMIN_ID, Act.EDIT_OPTION, listing_id, str(studio)))

    listing = db.listings[listing_id]
    assert listing["title"] == catalog.STUDIO
    assert listing["rooms_count"] is None
    assert listing["bathroom_type"] == "የግል"


@pytest.mark.asyncio
async def test_edit_refused_for_published_listing(router, store, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)
    await db.set_listing_status(listing_id, "published")

    await router.on_callback(press(ADMIN_ID, Act.EDIT, listing_id))

    assert ADMIN_ID not in store
    assert "only pending" in sent_texts(bot, ADMIN_ID)[-1]


@pytest.mark.asyncio
async def test_media_replace(router, store, db):
    listing_id = await seed_pending(db, owner=OWNER)
    await db.add_media(listing_id, {"file_id": "old", "kind": "photo"})

    await router.on_callback(press(ADMIN_ID, Act.EDIT, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.MEDIA_MODE, listing_id, "replace"))
    assert await db.count_media(listing_id) == 0

    await router.on_message(photo(ADMIN_ID, "new", kind="video"))
    await router.on_callback(press(ADMIN_ID, Act.MEDIA_DONE, listing_id))

    assert await db.get_media(listing_id) == [{"file_id": "new", "kind": "video"}]
    assert store.step(ADMIN_ID) == "admin_edit"


@pytest.mark.asyncio
async def test_media_add_refused_when_full(router, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)
    for i in range(8):
        await db.add_media(listing_id, {"file_id": f"m{i}", "kind": "photo"})

    await router.on_callback(press(ADMIN_ID, Act.EDIT, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.MEDIA_MODE, listing_id, "add"))

    assert bot.answer_callback_query.call_args.kwargs["show_alert"] is True


@pytest.mark.asyncio
async def test_media_add_album_capped_by_stored_media(router, intake, store, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)
    for i in range(6):
        await db.add_media(listing_id, {"file_id": f"m{i}", "kind": "photo"})

    await router.on_callback(press(ADMIN_ID, Act.EDIT, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.MEDIA_MODE, listing_id, "add"))
    for i in range(4):
        await router.on_message(photo(ADMIN_ID, f"n{i}", group="album-9"))
    await asyncio.gather(*intake._tasks)

    assert [m["file_id"] for m in store.get(ADMIN_ID)["media"]] == ["n0", "n1"]
    assert "2 ፋይሎች አልተቀበሉም" in sent_texts(bot, ADMIN_ID)[-1]

    await router.on_callback(press(ADMIN_ID, Act.MEDIA_DONE, listing_id))

    assert await db.count_media(listing_id) == 8
    assert store.step(ADMIN_ID) == "admin_edit"


@pytest.mark.asyncio
async def test_media_delete_clears_everything(router, store, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)
    for i in range(3):
        await db.add_media(listing_id, {"file_id": f"m{i}", "kind": "photo"})

    await router.on_callback(press(ADMIN_ID, Act.EDIT, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.MEDIA_MODE, listing_id, "delete"))

    assert await db.count_media(listing_id) == 0
    assert store.step(ADMIN_ID) == "admin_edit"
    assert "🗑 All media removed." in sent_texts(bot, ADMIN_ID)


@pytest.mark.asyncio
async def test_album_arriving_after_done_is_not_saved(router, intake, store, db, bot):
    listing_id = await seed_pending(db, owner=OWNER)
    intake.delay = 0.05

    await router.on_callback(press(ADMIN_ID, Act.EDIT, listing_id))
    await router.on_callback(press(ADMIN_ID, Act.MEDIA_MODE, listing_id, "add"))
    await router.on_message(photo(ADMIN_ID, "late-1", group="album-10"))
    await router.on_message(photo(ADMIN_ID, "late-2", group="album-10"))
    await router.on_callback(press(ADMIN_ID, Act.MEDIA_DONE, listing_id))
    await asyncio.gather(*intake._tasks)

    assert await db.count_media(listing_id) == 0
    assert store.get(ADMIN_ID)["media"] == []
    assert store.step(ADMIN_ID) == "admin_edit"
    assert "2 ፋይሎች ዘግይተው ደረሱ" in sent_texts(bot, ADMIN_ID)[-1]


# ─── tokens ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_periodic_license_with_back_navigation(router, store, bot, issuer):
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_MENU))
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_KIND, arg="license"))
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_MODE, arg="periodic"))
    await router.on_message(message(ADMIN_ID, "30"))
    assert store.step(ADMIN_ID) == "admin_token_device"

    await router.on_callback(press(ADMIN_ID, Act.TOKEN_BACK, arg="days"))
    assert store.step(ADMIN_ID) == "admin_token_days"
    assert "<code>30</code>" in sent_texts(bot, ADMIN_ID)[-1]

    await router.on_message(message(ADMIN_ID, "7"))
    await router.on_message(message(ADMIN_ID, "pixel-7a"))
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_SKIP))

    assert ADMIN_ID not in store
    reply = sent_texts(bot, ADMIN_ID)[-1]
    token = reply.rsplit("<code>", 1)[1].removesuffix("</code>")
    payload = TokenIssuer.decode(token)["payload"]
    assert (payload["did"], payload["mode"]) == ("pixel-7a", "periodic")
    assert "exp" in payload
    assert TokenIssuer.verify(token, issuer.public_key())


@pytest.mark.asyncio
async def test_recovery_token_with_note(router, bot):
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_MENU))
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_KIND, arg="recovery"))
    await router.on_message(message(ADMIN_ID, "15"))
    await router.on_message(message(ADMIN_ID, "pixel-7a"))
    await router.on_message(message(ADMIN_ID, "lost phone"))

    reply = sent_texts(bot, ADMIN_ID)[-1]
    assert "Recovery token" in reply
    assert "15 minute(s)" in reply
    assert "lost phone" in reply


@pytest.mark.asyncio
async def test_missing_signing_key_is_reported(router, moderation, store, bot):
    moderation.issuer = TokenIssuer(None)

    await router.on_callback(press(ADMIN_ID, Act.TOKEN_MENU))
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_KIND, arg="license"))
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_MODE, arg="permanent"))
    await router.on_message(message(ADMIN_ID, "pixel-7a"))
    await router.on_callback(press(ADMIN_ID, Act.TOKEN_SKIP))

    assert sent_texts(bot, ADMIN_ID)[-1] == f"❌ {NO_KEY_MSG}"
    assert ADMIN_ID not in store


# ─── broadcast / admin-authored listing ────────────────────────────

@pytest.mark.asyncio
async def test_broadcast_to_audience(router, moderation, db, bot):
    for user_id, role in ((1, "broker"), (2, "owner"), (3, "broker")):
        await db.create_user(user_id)
        await db.update_user(user_id, {"user_type": role})

    def _send(chat_id, text, **kwargs):
        if chat_id == 3:
            raise TelegramError("Forbidden: bot was blocked by the user")

    await router.on_callback(press(ADMIN_ID, Act.BROADCAST))
    await router.on_callback(press(ADMIN_ID, Act.AUDIENCE, arg="brokers"))
    await router.on_message(message(ADMIN_ID, "New listings this week!"))
    bot.send_message.side_effect = _send
    await router.on_callback(press(ADMIN_ID, Act.BROADCAST_GO))

    def recipients():
        return [c.args[0] for c in bot.send_message.call_args_list if c.args[1] == "New listings this week!"]

    # the handler returns before anyone is messaged
    assert recipients() == []
    assert "Sending to 2 user(s)" in sent_texts(bot, ADMIN_ID)[-1]
    assert len(moderation._tasks) == 1

    await asyncio.gather(*moderation._tasks)

    assert sorted(recipients()) == [1, 3]
    assert "Sent: 1" in sent_texts(bot, ADMIN_ID)[-1]
    assert "Failed: 1" in sent_texts(bot, ADMIN_ID)[-1]


@pytest.mark.asyncio
async def test_broadcast_with_media(router, moderation, store, db, bot):
    for user_id in (1, 2):
        await db.create_user(user_id)
        await db.update_user(user_id, {"user_type": "owner"})

    await router.on_callback(press(ADMIN_ID, Act.BROADCAST))
    await router.on_callback(press(ADMIN_ID, Act.AUDIENCE, arg="owners"))
    await router.on_message(photo(ADMIN_ID, "b1"))
    await router.on_message(photo(ADMIN_ID, "b2", kind="video"))
    assert len(store.get(ADMIN_ID)["media"]) == 2

    await router.on_callback(press(ADMIN_ID, Act.BROADCAST_GO))
    await asyncio.gather(*moderation._tasks)

    assert sorted(c.args[0] for c in bot.send_media_group.call_args_list) == [1, 2]
    album = bot.send_media_group.call_args.args[1]
    assert [m.media for m in album] == ["b1", "b2"]
    assert album[0].caption is None
    assert "Sent: 2" in sent_texts(bot, ADMIN_ID)[-1]


@pytest.mark.asyncio
async def test_admin_authored_listing_uses_preset_contact(router, store, db, bot):
    await router.on_callback(press(ADMIN_ID, Act.ADMIN_NEW))
    await router.on_message(message(ADMIN_ID, "Dawit Realty"))
    await router.on_message(message(ADMIN_ID, "+251944556677"))
    await router.on_callback(press(ADMIN_ID, Act.ADMIN_NEW, arg="skip"))
    assert store.step(ADMIN_ID) == "awaiting_property_type"

    await router.on_callback(press(ADMIN_ID, Act.CATEGORY, arg="commercial"))
    await router.on_callback(press(ADMIN_ID, Act.TITLE, arg="1"))  # ሱቅ
    await router.on_message(message(ADMIN_ID, "1"))
    await router.on_message(message(ADMIN_ID, "35"))
    await router.on_message(message(ADMIN_ID, "Piassa"))
    await router.on_message(message(ADMIN_ID, "25000"))
    assert store.step(ADMIN_ID) == "awaiting_description"

    await router.on_message(message(ADMIN_ID, "Ground floor shop facing the main road."))
    await router.on_callback(press(ADMIN_ID, Act.SKIP, arg="photos"))
    assert store.step(ADMIN_ID) == "awaiting_confirmation"
    await router.on_callback(press(ADMIN_ID, Act.CONFIRM))

    (listing,) = db.submitted()
    assert listing["display_name"] == "Dawit Realty"
    assert listing["contact_info"] == "+251944556677"
    assert listing["floor"] == "1ኛ ፎቅ"


@pytest.mark.asyncio
async def test_restart_keeps_admin_authored_preset(router, store, db):
    await router.on_callback(press(ADMIN_ID, Act.ADMIN_NEW))
    await router.on_message(message(ADMIN_ID, "Dawit Realty"))
    await router.on_message(message(ADMIN_ID, "+251944556677"))
    await router.on_callback(press(ADMIN_ID, Act.ADMIN_NEW, arg="skip"))
    await router.on_callback(press(ADMIN_ID, Act.CATEGORY, arg="commercial"))
    await router.on_message(message(ADMIN_ID, "Garage with office"))
    await router.on_message(message(ADMIN_ID, "200"))
    await router.on_message(message(ADMIN_ID, "Kality"))
    await router.on_message(message(ADMIN_ID, "40000"))
    await router.on_message(message(ADMIN_ID, "Large garage with a small office upstairs."))
    await router.on_callback(press(ADMIN_ID, Act.SKIP, arg="photos"))
    assert store.step(ADMIN_ID) == "awaiting_confirmation"

    await router.on_callback(press(ADMIN_ID, Act.RESTART))

    assert store.step(ADMIN_ID) == "awaiting_property_type"
    assert store.get(ADMIN_ID)["admin_listing"]["display_name"] == "Dawit Realty"
    assert db.listings == {}

    await router.on_callback(press(ADMIN_ID, Act.CATEGORY, arg="residential"))
    listing = db.listings[store.get(ADMIN_ID)["listing_id"]]
    assert listing["display_name"] == "Dawit Realty"
    assert listing["contact_info"] == "+251944556677"


@pytest.mark.asyncio
async def test_menu_button_leaves_admin_step(router, store):
    await router.on_callback(press(ADMIN_ID, Act.BROADCAST))

    await router.on_message(message(ADMIN_ID, MENU_POST))

    assert store.step(ADMIN_ID) == "awaiting_name"
