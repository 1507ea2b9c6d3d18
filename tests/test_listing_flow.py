"""End-to-end tests of the user dialogue, driven through the router."""

import asyncio

import pytest

import config
from callbacks import Act
from flow import MENU_MINE, MENU_POST
from listing_flow import STALE_TEXT
from router import ERROR_TEXT

from tests.helpers import (
    ADMIN_ID, button_labels, last_markup, message, photo, press, seed_pending, sent_texts,
)

USER = 42
DESCRIPTION = "A quiet room in a shared compound, water and power included."


async def register(router, user=USER):
    await router.on_message(message(user, MENU_POST))
    await router.on_message(message(user, "Abebe Kebede"))
    await router.on_message(message(user, "+251911223344"))
    await router.on_callback(press(user, Act.ROLE, arg="owner"))


async def walk_to_location(router, user=USER):
    await register(router, user)
    await router.on_callback(press(user, Act.CATEGORY, arg="residential"))
    await router.on_callback(press(user, Act.TITLE, arg="4"))  # ግቢ ውስጥ ያለ
    await router.on_message(message(user, "3"))
    await router.on_callback(press(user, Act.OPTION, arg="0"))
    await router.on_message(message(user, "40"))


async def walk_to_photos(router, user=USER):
    await walk_to_location(router, user)
    await router.on_message(message(user, "Bole, Addis Ababa"))
    await router.on_message(message(user, "15000"))
    await router.on_callback(press(user, Act.CONTACT, arg="own"))
    await router.on_callback(press(user, Act.NAME_DISPLAY, arg="own"))
    await router.on_message(message(user, DESCRIPTION))


@pytest.mark.asyncio
async def test_full_submission_creates_one_pending_listing(router, store, db, bot):
    await walk_to_photos(router)
    assert store.step(USER) == "awaiting_cover_photo"

    await router.on_callback(press(USER, Act.SKIP, arg="photos"))
    assert store.step(USER) == "awaiting_platform_link"
    await router.on_message(message(USER, "https://www.facebook.com/marketplace/item/1"))
    assert store.step(USER) == "awaiting_confirmation"
    await router.on_callback(press(USER, Act.CONFIRM))

    assert USER not in store
    submitted = db.submitted()
    assert len(submitted) == 1
    listing = await db.get_listing(submitted[0]["id"])
    assert listing["status"] == "pending"
    assert listing["owner_telegram_id"] == USER
    assert listing["title"] == "ግቢ ውስጥ ያለ"
    assert listing["rooms_count"] == 3
    assert listing["bathroom_type"] == "የግል"
    assert listing["property_size"] == "40 ካሬ"
    assert listing["price"] == "15,000 ብር"
    assert listing["contact_info"] == "+251911223344"
    assert listing["display_name"] == "Abebe Kebede"
    assert listing["platform_name"] == "Facebook"

    notifications = [t for t in sent_texts(bot, ADMIN_ID) if "New listing submitted" in t]
    assert len(notifications) == 1
    assert ERROR_TEXT not in sent_texts(bot)


@pytest.mark.asyncio
async def test_nickname_replaces_registered_name(router, store, db):
    await walk_to_location(router)
    await router.on_message(message(USER, "Bole, Addis Ababa"))
    await router.on_message(message(USER, "15000"))
    await router.on_callback(press(USER, Act.CONTACT, arg="own"))
    assert store.step(USER) == "awaiting_name_display"

    await router.on_callback(press(USER, Act.NAME_DISPLAY, arg="nick"))
    await router.on_message(message(USER, "A"))
    assert store.step(USER) == "awaiting_display_name"
    await router.on_message(message(USER, "Abe Rentals"))

    assert store.step(USER) == "awaiting_description"
    listing = db.listings[store.get(USER)["listing_id"]]
    assert listing["display_name"] == "Abe Rentals"
    assert (await db.get_user(USER))["name"] == "Abebe Kebede"


async def walk_to_preview(router, user=USER):
    await walk_to_photos(router, user)
    await router.on_callback(press(user, Act.SKIP, arg="photos"))
    await router.on_callback(press(user, Act.SKIP, arg="link"))


@pytest.mark.asyncio
async def test_owner_edits_fields_before_submitting(router, store, db, bot):
    await walk_to_preview(router)
    assert store.step(USER) == "awaiting_confirmation"
    assert "✏️ አርም" in button_labels(last_markup(bot))

    await router.on_callback(press(USER, Act.USER_EDIT))
    labels = button_labels(last_markup(bot))
    assert "✏️ ዋጋ" in labels
    assert "✏️ ሊንክ" in labels
    assert "✏️ ክፍሎች" in labels
    assert "✏️ ርዕስ" not in labels

    await router.on_callback(press(USER, Act.USER_EDIT, arg="price"))
    assert store.step(USER) == "editing_listing_value"
    await router.on_message(message(USER, "cheap"))
    assert store.step(USER) == "editing_listing_value"
    await router.on_message(message(USER, "18000"))
    assert store.step(USER) == "editing_listing"

    await router.on_callback(press(USER, Act.USER_EDIT, arg="platform_link"))
    await router.on_message(message(USER, "tiktok.com/@abebe/video/1"))

    await router.on_callback(press(USER, Act.USER_EDIT, arg="bathroom_type"))
    await router.on_callback(press(USER, Act.USER_EDIT_OPT, arg="1"))

    await router.on_callback(press(USER, Act.USER_EDIT_DONE))
    assert store.step(USER) == "awaiting_confirmation"
    await router.on_callback(press(USER, Act.CONFIRM))

    (listing,) = db.submitted()
    assert listing["price"] == "18,000 ብር"
    assert listing["platform_name"] == "TikTok"
    assert listing["bathroom_type"] == "የጋራ"
    assert listing["title"] == "ግቢ ውስጥ ያለ"


@pytest.mark.asyncio
async def test_owner_cannot_edit_title(router, store, db):
    await walk_to_preview(router)
    listing_id = store.get(USER)["listing_id"]

    await router.on_callback(press(USER, Act.USER_EDIT, arg="title"))

    assert store.step(USER) == "editing_listing"
    assert db.listings[listing_id]["title"] == "ግቢ ውስጥ ያለ"


@pytest.mark.asyncio
async def test_edit_buttons_are_stale_outside_preview(router, store, bot):
    await walk_to_photos(router)

    await router.on_callback(press(USER, Act.USER_EDIT, arg="price"))

    assert store.step(USER) == "awaiting_cover_photo"
    assert bot.answer_callback_query.call_args.kwargs["text"] == STALE_TEXT


@pytest.mark.asyncio
async def test_phone_is_validated_before_advancing(router, store, db, bot):
    await router.on_message(message(USER, MENU_POST))
    await router.on_message(message(USER, "Abebe Kebede"))

    await router.on_message(message(USER, "12345"))
    assert store.step(USER) == "awaiting_phone"
    assert "+251911223344" in sent_texts(bot, USER)[-1]
    assert (await db.get_user(USER))["phone"] is None

    await router.on_message(message(USER, "+251911223344"))
    assert store.step(USER) == "awaiting_role"
    assert (await db.get_user(USER))["phone"] == "+251911223344"


@pytest.mark.asyncio
async def test_shared_contact_is_accepted_as_phone(router, store, db):
    await router.on_message(message(USER, MENU_POST))
    await router.on_message(message(USER, "Abebe Kebede"))

    await router.on_message(message(USER, contact_phone="+251911223344"))

    assert store.step(USER) == "awaiting_role"


@pytest.mark.asyncio
async def test_validation_failure_keeps_saved_fields(router, store, db):
    await walk_to_location(router)
    await router.on_message(message(USER, "Bole, Addis Ababa"))
    listing_id = store.get(USER)["listing_id"]
    before = dict(db.listings[listing_id])

    await router.on_message(message(USER, "about fifteen thousand"))

    assert store.step(USER) == "awaiting_price"
    assert db.listings[listing_id] == before
    assert before["location"] == "Bole, Addis Ababa"
    assert before["price"] is None


@pytest.mark.asyncio
async def test_villa_other_asks_for_free_text(router, store, db):
    await register(router)
    await router.on_callback(press(USER, Act.CATEGORY, arg="residential"))
    await router.on_callback(press(USER, Act.TITLE, arg="3"))  # ሙሉ ግቢ
    assert store.step(USER) == "awaiting_villa_type"

    await router.on_callback(press(USER, Act.OPTION, arg="4"))  # ሌላ
    assert store.step(USER) == "awaiting_villa_type_other"
    await router.on_message(message(USER, "ባንጋሎ"))

    assert store.step(USER) == "awaiting_bedrooms"
    listing = db.listings[store.get(USER)["listing_id"]]
    assert (listing["villa_type"], listing["villa_type_other"]) == ("ሌላ", "ባንጋሎ")


@pytest.mark.asyncio
async def test_commercial_typed_title_only_asks_size(router, store):
    await register(router)
    await router.on_callback(press(USER, Act.CATEGORY, arg="commercial"))
    await router.on_message(message(USER, "Garage with office"))

    assert store.step(USER) == "awaiting_property_size"
    await router.on_message(message(USER, "200"))
    assert store.step(USER) == "awaiting_location"


@pytest.mark.asyncio
async def test_one_draft_per_user(router, store, db):
    await register(router)
    await router.on_callback(press(USER, Act.CATEGORY, arg="residential"))
    first = store.get(USER)["listing_id"]

    await router.on_message(message(USER, MENU_POST))
    await router.on_callback(press(USER, Act.CATEGORY, arg="commercial"))

    assert first not in db.listings
    assert len(db.listings) == 1


@pytest.mark.asyncio
async def test_stale_button_is_refused(router, store, db, bot):
    await router.on_callback(press(USER, Act.CONFIRM))

    assert bot.answer_callback_query.call_args.kwargs["text"] == STALE_TEXT
    assert db.submitted() == []


@pytest.mark.asyncio
async def test_single_uploads_stop_at_media_limit(router, store, db, bot):
    await walk_to_photos(router)
    for i in range(config.MAX_MEDIA + 2):
        await router.on_message(photo(USER, f"p{i}"))

    assert len(store.get(USER)["media"]) == config.MAX_MEDIA
    assert "ከፍተኛው" in sent_texts(bot, USER)[-1]

    await router.on_callback(press(USER, Act.PHOTOS_DONE))
    assert await db.count_media(store.get(USER)["listing_id"]) == config.MAX_MEDIA
    assert store.step(USER) == "awaiting_platform_link"


@pytest.mark.asyncio
async def test_album_is_truncated_to_media_limit(router, store, bot):
    await walk_to_photos(router)
    for i in range(12):
        await router.on_message(photo(USER, f"a{i}", group="album-1"))
    await asyncio.sleep(0.05)

    assert len(store.get(USER)["media"]) == config.MAX_MEDIA
    reply = sent_texts(bot, USER)[-1]
    assert f"({config.MAX_MEDIA}/{config.MAX_MEDIA})" in reply
    assert "4 ፋይሎች አልተቀበሉም" in reply


@pytest.mark.asyncio
async def test_album_counts_existing_media(listing_flow, intake, store, db):
    listing_id = await seed_pending(db, owner=USER)
    for i in range(5):
        await db.add_media(listing_id, {"file_id": f"old{i}", "kind": "photo"})
    store.merge(USER, step="awaiting_additional_photos", listing_id=listing_id,
                media=[], media_existing=5)

    for i in range(6):
        await listing_flow.handle_message(photo(USER, f"n{i}", group="album-2"), "awaiting_additional_photos")
    await asyncio.sleep(0.05)

    assert [m["file_id"] for m in store.get(USER)["media"]] == ["n0", "n1", "n2"]


@pytest.mark.asyncio
async def test_album_after_cancel_is_ignored(intake, store, batches, bot):
    store.merge(USER, step="awaiting_cover_photo", media=[], media_existing=0)
    batches.append("album-3", {"file_id": "x", "kind": "photo"})
    store.clear(USER)

    await intake.flush("album-3", USER, USER)

    bot.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_media_outside_photo_steps(router, store, bot):
    await router.on_message(message(USER, MENU_POST))
    await router.on_message(photo(USER, "p1"))

    assert store.step(USER) == "awaiting_name"
    assert "ጥያቄ" in sent_texts(bot, USER)[-1]


# ─── deep links ────────────────────────────────────────────────────

async def published_listing(db, owner=5):
    listing_id = await seed_pending(db, owner=owner, contact_info="+251933445566",
                                    display_name="Almaz")
    await db.set_listing_status(listing_id, "published", channel_message_id=77)
    return listing_id


@pytest.mark.asyncio
async def test_contact_link_for_registered_user(router, db, bot):
    listing_id = await published_listing(db)
    await db.create_user(USER, "Tenant")
    await db.update_user(USER, {"phone": "+251911223344"})

    await router.on_command(message(USER, f"/start contact_{listing_id}"), "start", [f"contact_{listing_id}"])

    assert db.clicks == [{"post_id": listing_id, "user": USER, "kind": "contact"}]
    assert "+251933445566" in sent_texts(bot, USER)[-1]


@pytest.mark.asyncio
async def test_contact_link_registers_tenant_first(router, store, db, bot):
    listing_id = await published_listing(db)

    await router.on_command(message(USER), "start", [f"view_{listing_id}"])
    assert store.step(USER) == "awaiting_tenant_name"
    await router.on_message(message(USER, "Selam"))
    assert store.step(USER) == "awaiting_tenant_phone"
    await router.on_message(message(USER, "0911223344"))

    assert USER not in store
    assert (await db.get_user(USER))["user_type"] == "tenant"
    assert db.clicks[0]["kind"] == "view"
    assert "Almaz" in sent_texts(bot, USER)[-1]


@pytest.mark.asyncio
async def test_contact_link_for_unpublished_listing(router, db, bot):
    listing_id = await seed_pending(db)

    await router.on_command(message(USER), "start", [f"contact_{listing_id}"])

    assert db.clicks == []
    assert "አይገኝም" in sent_texts(bot, USER)[-1]


# ─── account / my listings / rented ────────────────────────────────

@pytest.mark.asyncio
async def test_account_phone_change(router, store, db):
    await db.create_user(USER, "Abebe")

    await router.on_callback(press(USER, Act.ACCOUNT_EDIT, arg="phone"))
    await router.on_message(message(USER, "+251922334455"))

    assert (await db.get_user(USER))["phone"] == "+251922334455"
    assert USER not in store


@pytest.mark.asyncio
async def test_my_listings_paginates(router, db, bot):
    for _ in range(config.MY_ADS_PAGE_SIZE + 2):
        await seed_pending(db, owner=USER)

    await router.on_message(message(USER, MENU_MINE))

    text = sent_texts(bot, USER)[-1]
    assert "(1/2)" in text
    markup = bot.send_message.call_args.kwargs["reply_markup"]
    assert [b.text for row in markup.inline_keyboard for b in row] == ["➡️"]


@pytest.mark.asyncio
async def test_owner_marks_listing_rented(router, store, db, bot):
    listing_id = await published_listing(db, owner=USER)

    await router.on_callback(press(USER, Act.RENTED_ASK))
    await router.on_message(message(USER, str(listing_id + config.DISPLAY_ID_OFFSET)))
    assert store.step(USER) == "awaiting_rented_confirm"
    await router.on_callback(press(USER, Act.RENTED_OK, listing_id))

    assert db.listings[listing_id]["status"] == "rented"
    assert bot.edit_message_text.call_args.kwargs["message_id"] == 77
    assert USER not in store


@pytest.mark.asyncio
async def test_cannot_mark_someone_elses_listing(router, store, db):
    listing_id = await published_listing(db, owner=5)
    await db.create_user(USER)

    await router.on_callback(press(USER, Act.RENTED_ASK))
    await router.on_message(message(USER, str(listing_id + config.DISPLAY_ID_OFFSET)))

    assert store.step(USER) == "awaiting_rented_id"
    assert db.listings[listing_id]["status"] == "published"
