# ─── listing_flow.py ───────────────────────────────────────────────
# User side of the bot: registration, the listing submission dialogue,
# account editing, "my listings", marking a listing rented and the
# contact deep links from the channel.
#
# Conversation state keys:
#   step          current step name ("awaiting_*", "editing_*")
#   listing_id    the draft being filled in (created at category choice)
#   category, title, pending (attribute sub-steps still to ask)
#   media, media_existing   queued uploads (see media.py)
#   admin_listing           preset fields when an admin authors a listing

import logging
import math
from typing import Optional

from telegram import InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup

import catalog
import config
import validation
from callbacks import Act, Action, button
from channel import STATUS_LABELS, Publisher, format_listing
from errors import NotFoundError, ValidationError
from flow import CANCEL_TEXT, BaseFlow, Incoming, cancel_keyboard, main_menu
from media import MediaIntake

logger = logging.getLogger(__name__)

STALE_TEXT = "⌛ ይህ ቁልፍ አሁን አይሰራም።"
ROLES = {"broker": "🤝 ደላላ", "owner": "🏠 የቤቱ ባለቤት"}
PHOTO_STEPS = ("awaiting_cover_photo", "awaiting_additional_photos")


def _kb(*rows) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([list(r) for r in rows])


class ListingFlow(BaseFlow):
    def __init__(self, bot, store, db, publisher: Publisher, intake: MediaIntake):
        super().__init__(bot, store, db)
        self.publisher = publisher
        self.intake = intake

    # ─── entry points ─────────────────────────────────────────────

    async def start(self, ev: Incoming, param: Optional[str] = None) -> None:
        """/start and /start <deep-link>."""
        await self.db.create_user(ev.user_id)
        if param:
            await self._deep_link(ev, param)
            return
        self.store.clear(ev.user_id)
        await self.say(
            ev.chat_id,
            "👋 እንኳን ወደ ቤት ኪራይ ቦት በደህና መጡ!\n\n"
            "ቤትዎን ወይም የንግድ ቦታዎን በቻናላችን ላይ ለማስተዋወቅ ከታች ያለውን ቁልፍ ይጫኑ።",
            reply_markup=main_menu(),
        )
        await self.say(ev.chat_id, "👇", reply_markup=_kb([button("🛖 ማስታወቂያ ለመለጠፍ", Act.START_LISTING)]))

    async def stop(self, ev: Incoming) -> None:
        self.store.clear(ev.user_id)
        await self.show_menu(ev.chat_id, "🛑 ሂደቱ ቆሟል። ለመጀመር /start ይጫኑ።")

    async def cancel(self, ev: Incoming) -> None:
        self.store.clear(ev.user_id)
        await self.show_menu(ev.chat_id, "🚫 ተሰርዟል።")

    async def begin_listing(self, ev: Incoming) -> None:
        user = await self.db.create_user(ev.user_id)
        self.store.clear(ev.user_id)
        if not user.get("name"):
            self.store.merge(ev.user_id, step="awaiting_name")
            await self.say(ev.chat_id, "👤 እባክዎ ሙሉ ስምዎን ያስገቡ:", reply_markup=cancel_keyboard())
        elif not user.get("phone"):
            await self._ask_phone(ev.chat_id, ev.user_id)
        elif not user.get("user_type"):
            self.store.merge(ev.user_id, step="awaiting_role")
            await self.say(
                ev.chat_id, "🙋 እርስዎ ማን ነዎት?",
                reply_markup=_kb(*[[button(label, Act.ROLE, arg=role)] for role, label in ROLES.items()]),
            )
        else:
            await self.ask_property_type(ev.chat_id, ev.user_id)

    async def ask_property_type(self, chat_id: int, sender: int) -> None:
        self.store.merge(sender, step="awaiting_property_type")
        await self.say(
            chat_id, "🏘 የንብረቱ አይነት ምንድን ነው?",
            reply_markup=_kb(
                *[[button(catalog.CATEGORY_LABELS[c], Act.CATEGORY, arg=c)] for c in catalog.CATEGORIES],
                [button("🚫 ይቅር", Act.CANCEL)],
            ),
        )

    # ─── dispatch ─────────────────────────────────────────────────

    async def handle_message(self, ev: Incoming, step: str) -> None:
        if ev.media is not None:
            if step in PHOTO_STEPS:
                await self._on_media(ev)
            else:
                await self.say(ev.chat_id, "ℹ️ እባክዎ ለአሁኑ ጥያቄ መልስ ይስጡ።")
            return
        handler = self._text_handler(step)
        if handler is None:
            await self.show_menu(ev.chat_id, "ℹ️ ከማውጫው ይምረጡ ወይም /start ይጫኑ።")
            return
        try:
            await handler(ev, (ev.contact_phone or ev.text or "").strip())
        except ValidationError as e:
            await self.say(ev.chat_id, e.message)

    def _text_handler(self, step: str):
        if step.startswith("awaiting_") and step[len("awaiting_"):] in catalog.ATTRIBUTES:
            return self._on_attribute
        return {
            "awaiting_name": self._on_name,
            "awaiting_phone": self._on_phone,
            "awaiting_title": self._on_title,
            "awaiting_location": self._on_location,
            "awaiting_price": self._on_price,
            "awaiting_custom_contact": self._on_custom_contact,
            "awaiting_display_name": self._on_display_name,
            "awaiting_description": self._on_description,
            "awaiting_cover_photo": self._on_photo_text,
            "awaiting_additional_photos": self._on_photo_text,
            "awaiting_platform_link": self._on_platform_link,
            "editing_listing": self._on_edit_idle,
            "editing_listing_value": self._on_edit_value,
            "awaiting_tenant_name": self._on_tenant_name,
            "awaiting_tenant_phone": self._on_tenant_phone,
            "editing_account_name": self._on_account_name,
            "editing_account_phone": self._on_account_phone,
            "awaiting_rented_id": self._on_rented_id,
        }.get(step)

    async def handle_action(self, ev: Incoming) -> None:
        action = ev.action
        handler = {
            Act.START_LISTING: self._act_start,
            Act.ROLE: self._act_role,
            Act.CATEGORY: self._act_category,
            Act.TITLE: self._act_title,
            Act.OPTION: self._act_option,
            Act.CONTACT: self._act_contact,
            Act.NAME_DISPLAY: self._act_name_display,
            Act.SKIP: self._act_skip,
            Act.PHOTOS_DONE: self._act_photos_done,
            Act.CONFIRM: self._act_confirm,
            Act.RESTART: self._act_restart,
            Act.USER_EDIT: self._act_user_edit,
            Act.USER_EDIT_OPT: self._act_user_edit_option,
            Act.USER_EDIT_DONE: self._act_user_edit_done,
            Act.MY_LISTINGS: self._act_my_listings,
            Act.RENTED_ASK: self._act_rented_ask,
            Act.RENTED_OK: self._act_rented_ok,
            Act.ACCOUNT_EDIT: self._act_account_edit,
            Act.CANCEL: self._act_cancel,
        }.get(action.act)
        if handler is None:
            await self.ack(ev, "Unknown action")
            return
        try:
            await handler(ev, action)
        except ValidationError as e:
            await self.say(ev.chat_id, e.message)

    async def _stale(self, ev: Incoming, *steps: str) -> bool:
        """True (and acks) when the button does not belong to the current step."""
        if self.store.step(ev.user_id) in steps:
            return False
        await self.ack(ev, STALE_TEXT)
        return True

    # ─── registration ─────────────────────────────────────────────

    async def _ask_phone(self, chat_id: int, sender: int, step: str = "awaiting_phone") -> None:
        self.store.merge(sender, step=step)
        kb = ReplyKeyboardMarkup(
            [[KeyboardButton("📱 ስልኬን አጋራ", request_contact=True)], [KeyboardButton(CANCEL_TEXT)]],
            resize_keyboard=True, one_time_keyboard=True,
        )
        await self.say(chat_id, "📞 ስልክ ቁጥርዎን ያስገቡ ወይም ከታች ያለውን ቁልፍ ይጫኑ:", reply_markup=kb)

    async def _on_name(self, ev: Incoming, text: str) -> None:
        await self.db.update_user(ev.user_id, {"name": validation.name(text)})
        await self.begin_listing(ev)

    async def _on_phone(self, ev: Incoming, text: str) -> None:
        await self.db.update_user(ev.user_id, {"phone": validation.phone(text)})
        await self.say(ev.chat_id, "✅ ስልክ ቁጥርዎ ተመዝግቧል።", reply_markup=main_menu())
        await self.begin_listing(ev)

    async def _act_start(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        await self.begin_listing(ev)

    async def _act_role(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_role"):
            return
        await self.ack(ev)
        if action.arg not in ROLES:
            return
        await self.db.update_user(ev.user_id, {"user_type": action.arg})
        await self.ask_property_type(ev.chat_id, ev.user_id)

    # ─── category / title / attributes ───────────────────────────

    async def _act_category(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_property_type"):
            return
        await self.ack(ev)
        if action.arg not in catalog.CATEGORIES:
            return
        state = self.store.get(ev.user_id)
        fields = {"property_type": action.arg}
        preset = state.get("admin_listing") or {}
        fields.update(preset)
        await self.db.discard_drafts(ev.user_id)
        listing_id = await self.db.create_listing(ev.user_id, fields)
        logger.info("Draft %s started by %s (%s)", listing_id, ev.user_id, action.arg)
        self.store.merge(ev.user_id, listing_id=listing_id, category=action.arg,
                         step="awaiting_title", pending=[], media=[], media_existing=0)
        titles = catalog.TITLES[action.arg]
        await self.say(
            ev.chat_id, catalog.FIELDS["title"].prompt,
            reply_markup=_kb(*[[button(t, Act.TITLE, arg=str(i))] for i, t in enumerate(titles)]),
        )

    async def _save(self, sender: int, fields: dict) -> None:
        listing_id = self.store.get(sender).get("listing_id")
        if listing_id is None:
            raise NotFoundError("draft", sender)
        await self.db.update_listing_fields(listing_id, fields)

    async def _set_title(self, ev: Incoming, title: str) -> None:
        state = self.store.get(ev.user_id)
        await self._save(ev.user_id, {"title": title})
        steps = catalog.attribute_steps(state["category"], title)
        self.store.merge(ev.user_id, title=title, pending=list(steps))
        await self._next_attribute(ev.chat_id, ev.user_id)

    async def _on_title(self, ev: Incoming, text: str) -> None:
        await self._set_title(ev, validation.title(text))

    async def _act_title(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_title"):
            return
        titles = catalog.TITLES[self.store.get(ev.user_id)["category"]]
        if action.index is None or action.index >= len(titles):
            await self.ack(ev, STALE_TEXT)
            return
        await self.ack(ev)
        await self._set_title(ev, titles[action.index])

    async def _next_attribute(self, chat_id: int, sender: int) -> None:
        pending = self.store.get(sender).get("pending") or []
        if not pending:
            self.store.merge(sender, step="awaiting_location")
            await self.say(chat_id, catalog.FIELDS["location"].prompt)
            return
        field = catalog.FIELDS[pending[0]]
        state = self.store.merge(sender, step=f"awaiting_{field.name}")
        markup = None
        if field.options is not None:
            markup = _kb(*[[button(o, Act.OPTION, arg=str(i))] for i, o in enumerate(field.options(state))])
        await self.say(chat_id, field.prompt, reply_markup=markup)

    async def _store_attribute(self, ev: Incoming, name: str, value) -> None:
        await self._save(ev.user_id, {name: value})
        pending = list(self.store.get(ev.user_id).get("pending") or [])
        if pending and pending[0] == name:
            pending.pop(0)
        if name == "villa_type" and value == catalog.VILLA_OTHER:
            pending.insert(0, "villa_type_other")
        self.store.merge(ev.user_id, {name: value}, pending=pending)
        await self._next_attribute(ev.chat_id, ev.user_id)

    async def _on_attribute(self, ev: Incoming, text: str) -> None:
        name = self.store.step(ev.user_id)[len("awaiting_"):]
        field = catalog.FIELDS[name]
        if field.parse is None:
            raise ValidationError("👆 እባክዎ ከቁልፎቹ አንዱን ይምረጡ።", name)
        await self._store_attribute(ev, name, field.parse(text))

    async def _act_option(self, ev: Incoming, action: Action) -> None:
        step = self.store.step(ev.user_id) or ""
        name = step[len("awaiting_"):]
        field = catalog.FIELDS.get(name) if step.startswith("awaiting_") else None
        if field is None or field.options is None:
            await self.ack(ev, STALE_TEXT)
            return
        options = field.options(self.store.get(ev.user_id))
        if action.index is None or action.index >= len(options):
            await self.ack(ev, STALE_TEXT)
            return
        await self.ack(ev)
        await self._store_attribute(ev, name, options[action.index])

    # ─── location / price / contact / description ────────────────

    async def _on_location(self, ev: Incoming, text: str) -> None:
        await self._save(ev.user_id, {"location": validation.location(text)})
        self.store.merge(ev.user_id, step="awaiting_price")
        await self.say(ev.chat_id, catalog.FIELDS["price"].prompt)

    async def _on_price(self, ev: Incoming, text: str) -> None:
        await self._save(ev.user_id, {"price": validation.price(text)})
        if self.store.get(ev.user_id).get("admin_listing"):
            await self._ask_description(ev.chat_id, ev.user_id)
            return
        user = await self.db.get_user(ev.user_id)
        self.store.merge(ev.user_id, step="awaiting_contact")
        await self.say(
            ev.chat_id, "📞 በማስታወቂያው ላይ የትኛው ስልክ ይታይ?",
            reply_markup=_kb(
                [button(f"✅ የተመዘገበው ({user.get('phone')})", Act.CONTACT, arg="own")],
                [button("✍️ ሌላ ቁጥር", Act.CONTACT, arg="custom")],
            ),
        )

    async def _act_contact(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_contact"):
            return
        await self.ack(ev)
        if action.arg == "custom":
            self.store.merge(ev.user_id, step="awaiting_custom_contact")
            await self.say(ev.chat_id, catalog.FIELDS["contact_info"].prompt)
            return
        user = await self.db.get_user(ev.user_id)
        await self._save(ev.user_id, {"contact_info": user.get("phone")})
        await self._ask_name_display(ev.chat_id, ev.user_id)

    async def _on_custom_contact(self, ev: Incoming, text: str) -> None:
        await self._save(ev.user_id, {"contact_info": validation.phone(text)})
        await self._ask_name_display(ev.chat_id, ev.user_id)

    async def _ask_name_display(self, chat_id: int, sender: int) -> None:
        user = await self.db.get_user(sender) or {}
        self.store.merge(sender, step="awaiting_name_display")
        await self.say(
            chat_id, f"👤 ስምዎ ({user.get('name') or '—'}) በማስታወቂያው ላይ እንዲታይ ይፈልጋሉ?",
            reply_markup=_kb(
                [button("✅ አዎ፣ ስሜ ይታይ", Act.NAME_DISPLAY, arg="own")],
                [button("👤 ሌላ ስም እጠቀማለሁ", Act.NAME_DISPLAY, arg="nick")],
            ),
        )

    async def _act_name_display(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_name_display"):
            return
        await self.ack(ev)
        if action.arg == "nick":
            self.store.merge(ev.user_id, step="awaiting_display_name")
            await self.say(ev.chat_id, catalog.FIELDS["display_name"].prompt)
            return
        user = await self.db.get_user(ev.user_id) or {}
        await self._save(ev.user_id, {"display_name": user.get("name")})
        await self._ask_description(ev.chat_id, ev.user_id)

    async def _on_display_name(self, ev: Incoming, text: str) -> None:
        await self._save(ev.user_id, {"display_name": validation.display_name(text)})
        await self._ask_description(ev.chat_id, ev.user_id)

    async def _ask_description(self, chat_id: int, sender: int) -> None:
        self.store.merge(sender, step="awaiting_description")
        await self.say(chat_id, catalog.FIELDS["description"].prompt)

    async def _on_description(self, ev: Incoming, text: str) -> None:
        await self._save(ev.user_id, {"description": validation.description(text)})
        self.store.merge(ev.user_id, step="awaiting_cover_photo", media=[], media_existing=0)
        await self.say(
            ev.chat_id,
            f"📸 የቤቱን ዋና ፎቶ ይላኩ (እስከ {config.MAX_MEDIA} ፎቶ/ቪዲዮ መላክ ይችላሉ)።",
            reply_markup=_kb([button("⏭ ዝለል", Act.SKIP, arg="photos")]),
        )

    # ─── photos ───────────────────────────────────────────────────

    def _photos_keyboard(self) -> InlineKeyboardMarkup:
        return _kb([button("✅ ጨርሻለሁ", Act.PHOTOS_DONE)])

    async def _on_media(self, ev: Incoming) -> None:
        self.store.merge(ev.user_id, step="awaiting_additional_photos")
        await self.intake.receive(ev, self._photos_keyboard())

    async def _on_photo_text(self, ev: Incoming, text: str) -> None:
        if self.store.step(ev.user_id) == "awaiting_cover_photo":
            markup = _kb([button("⏭ ዝለል", Act.SKIP, arg="photos")])
        else:
            markup = self._photos_keyboard()
        await self.say(ev.chat_id, "📸 እባክዎ ፎቶ ወይም ቪዲዮ ይላኩ።", reply_markup=markup)

    async def _act_photos_done(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, *PHOTO_STEPS):
            return
        await self.ack(ev)
        state = self.store.get(ev.user_id)
        saved = 0
        for item in state.get("media", []):
            if await self.db.add_media(state["listing_id"], item):
                saved += 1
        self.store.merge(ev.user_id, media=[])
        logger.info("Saved %s media for draft %s", saved, state["listing_id"])
        await self._ask_platform_link(ev.chat_id, ev.user_id)

    async def _act_skip(self, ev: Incoming, action: Action) -> None:
        step = self.store.step(ev.user_id)
        if action.arg == "photos" and step == "awaiting_cover_photo":
            await self.ack(ev)
            await self._ask_platform_link(ev.chat_id, ev.user_id)
        elif action.arg == "link" and step == "awaiting_platform_link":
            await self.ack(ev)
            await self._show_preview(ev.chat_id, ev.user_id)
        else:
            await self.ack(ev, STALE_TEXT)

    # ─── platform link / preview / submit ─────────────────────────

    async def _ask_platform_link(self, chat_id: int, sender: int) -> None:
        preset = self.store.get(sender).get("admin_listing") or {}
        if "platform_link" in preset:
            await self._show_preview(chat_id, sender)
            return
        self.store.merge(sender, step="awaiting_platform_link")
        await self.say(
            chat_id,
            "🔗 ቤቱ በሌላ ገጽ (Facebook, TikTok, Jiji, YouTube...) ላይ ካለ ሊንኩን ይላኩ።",
            reply_markup=_kb([button("⏭ ዝለል", Act.SKIP, arg="link")]),
        )

    async def _on_platform_link(self, ev: Incoming, text: str) -> None:
        link, platform = validation.platform_link(text)
        await self._save(ev.user_id, {"platform_link": link, "platform_name": platform})
        await self._show_preview(ev.chat_id, ev.user_id)

    async def _show_preview(self, chat_id: int, sender: int) -> None:
        listing_id = self.store.get(sender)["listing_id"]
        listing = await self.db.get_listing(listing_id)
        if listing is None:
            raise NotFoundError("listing", listing_id)
        media_count = await self.db.count_media(listing_id)
        self.store.merge(sender, step="awaiting_confirmation")
        await self.say(
            chat_id,
            "👀 <b>ቅድመ እይታ</b>\n\n" + format_listing(listing, with_tags=False)
            + f"\n\n🖼 ፎቶ/ቪዲዮ: {media_count}",
            reply_markup=_kb(
                [button("✅ አረጋግጥ እና ላክ", Act.CONFIRM)],
                [button("✏️ አርም", Act.USER_EDIT)],
                [button("🔄 እንደገና ጀምር", Act.RESTART)],
            ),
        )

    async def _act_confirm(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_confirmation"):
            return
        await self.ack(ev)
        listing_id = self.store.get(ev.user_id)["listing_id"]
        if not await self.db.submit_listing(listing_id):
            self.store.clear(ev.user_id)
            await self.show_menu(ev.chat_id, "ℹ️ ይህ ማስታወቂያ ቀድሞ ተልኳል።")
            return
        self.store.clear(ev.user_id)
        logger.info("Listing %s submitted by %s", listing_id, ev.user_id)
        await self.show_menu(
            ev.chat_id, "✅ ማስታወቂያዎ ለግምገማ ተልኳል። ሲጸድቅ እናሳውቅዎታለን።"
        )
        user = await self.db.get_user(ev.user_id) or {}
        await self.publisher.notify_admins(
            "🆕 <b>New listing submitted</b>\n\n"
            f"👤 Name: {user.get('name') or '—'}\n"
            f"📱 Phone: {user.get('phone') or '—'}\n"
            f"🆔 User ID: <code>{ev.user_id}</code>\n"
            f"📋 Listing ID: {listing_id}\n\n"
            "Use /admin to review."
        )

    async def _act_restart(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_confirmation"):
            return
        await self.ack(ev)
        await self.db.discard_drafts(ev.user_id)
        preset = self.store.get(ev.user_id).get("admin_listing")
        if preset:
            # an admin-authored listing keeps its name/phone/link
            self.store.clear(ev.user_id)
            self.store.merge(ev.user_id, admin_listing=preset)
            await self.ask_property_type(ev.chat_id, ev.user_id)
            return
        await self.begin_listing(ev)

    # ─── owner edits before submitting ────────────────────────────

    async def _draft(self, sender: int) -> dict:
        listing_id = self.store.get(sender).get("listing_id")
        listing = await self.db.get_listing(listing_id) if listing_id is not None else None
        if listing is None:
            raise NotFoundError("draft", sender)
        return listing

    async def _edit_menu(self, chat_id: int, sender: int) -> None:
        listing = await self._draft(sender)
        self.store.merge(sender, step="editing_listing", edit_field=None)
        rows = [
            [button(f"✏️ {catalog.FIELDS[f].label}", Act.USER_EDIT, arg=f)]
            for f in catalog.owner_edit_fields(listing)
        ]
        rows.append([button("✅ ማረም ጨርሻለሁ", Act.USER_EDIT_DONE)])
        await self.say(chat_id, "✏️ ምን ማረም ይፈልጋሉ?", reply_markup=InlineKeyboardMarkup(rows))

    async def _act_user_edit(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_confirmation", "editing_listing", "editing_listing_value"):
            return
        await self.ack(ev)
        if action.arg is None:
            await self._edit_menu(ev.chat_id, ev.user_id)
            return
        listing = await self._draft(ev.user_id)
        if action.arg not in catalog.owner_edit_fields(listing) and action.arg != "villa_type_other":
            await self._edit_menu(ev.chat_id, ev.user_id)
            return
        await self._prompt_edit(ev.chat_id, ev.user_id, listing, action.arg)

    async def _prompt_edit(self, chat_id: int, sender: int, listing: dict, name: str) -> None:
        field = catalog.FIELDS[name]
        self.store.merge(sender, step="editing_listing_value", edit_field=name)
        current = listing.get(name)
        text = field.prompt
        if current not in (None, ""):
            text += f"\n\nአሁን ያለው: <b>{current}</b>"
        markup = None
        if field.options is not None:
            markup = _kb(*[[button(o, Act.USER_EDIT_OPT, arg=str(i))]
                           for i, o in enumerate(field.options(listing))])
        await self.say(chat_id, text, reply_markup=markup)

    async def _on_edit_idle(self, ev: Incoming, text: str) -> None:
        await self.say(ev.chat_id, "👆 ከላይ ካሉት ቁልፎች አንዱን ይምረጡ።")

    async def _on_edit_value(self, ev: Incoming, text: str) -> None:
        field = catalog.FIELDS[self.store.get(ev.user_id)["edit_field"]]
        if field.parse is None:
            raise ValidationError("👆 እባክዎ ከቁልፎቹ አንዱን ይምረጡ።", field.name)
        await self._apply_user_edit(ev, field.name, field.parse(text))

    async def _act_user_edit_option(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "editing_listing_value"):
            return
        field = catalog.FIELDS[self.store.get(ev.user_id)["edit_field"]]
        options = field.options(await self._draft(ev.user_id)) if field.options else ()
        if action.index is None or action.index >= len(options):
            await self.ack(ev, STALE_TEXT)
            return
        await self.ack(ev)
        await self._apply_user_edit(ev, field.name, options[action.index])

    async def _apply_user_edit(self, ev: Incoming, name: str, value) -> None:
        if name == "platform_link":
            link, platform = value
            fields = {"platform_link": link, "platform_name": platform}
        else:
            fields = {name: value}
        if name == "villa_type" and value != catalog.VILLA_OTHER:
            fields["villa_type_other"] = None
        await self._save(ev.user_id, fields)
        logger.info("Draft %s: owner %s changed %s", self.store.get(ev.user_id)["listing_id"], ev.user_id, name)
        if name == "villa_type" and value == catalog.VILLA_OTHER:
            await self._prompt_edit(ev.chat_id, ev.user_id, await self._draft(ev.user_id), "villa_type_other")
            return
        await self.say(ev.chat_id, f"✅ {catalog.FIELDS[name].label} ተቀይሯል።")
        await self._edit_menu(ev.chat_id, ev.user_id)

    async def _act_user_edit_done(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "editing_listing", "editing_listing_value"):
            return
        await self.ack(ev)
        await self._show_preview(ev.chat_id, ev.user_id)

    async def _act_cancel(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        await self.cancel(ev)

    # ─── deep links: contact / view ───────────────────────────────

    async def _deep_link(self, ev: Incoming, param: str) -> None:
        kind, _, raw_id = param.partition("_")
        listing = None
        if kind in ("contact", "view") and raw_id.isdigit():
            listing = await self.db.get_listing(int(raw_id))
        if listing is None or listing["status"] != "published":
            await self.show_menu(ev.chat_id, "❌ ይህ ማስታወቂያ አሁን አይገኝም።")
            return
        user = await self.db.get_user(ev.user_id) or {}
        if config.REQUIRE_CONTACT_REGISTRATION and not (user.get("name") and user.get("phone")):
            self.store.clear(ev.user_id)
            self.store.merge(ev.user_id, step="awaiting_tenant_name",
                             link_kind=kind, link_listing=listing["id"])
            await self.say(ev.chat_id, "👤 የአከራዩን መረጃ ለማየት እባክዎ ስምዎን ያስገቡ:",
                           reply_markup=cancel_keyboard())
            return
        await self._deliver_contact(ev, kind, listing)

    async def _deliver_contact(self, ev: Incoming, kind: str, listing: dict) -> None:
        await self.db.record_click(listing["id"], ev.user_id, kind)
        await self.publisher.send_contact_card(ev.chat_id, listing, with_media=(kind == "view"))

    async def _on_tenant_name(self, ev: Incoming, text: str) -> None:
        await self.db.update_user(ev.user_id, {"name": validation.name(text)})
        await self._ask_phone(ev.chat_id, ev.user_id, step="awaiting_tenant_phone")

    async def _on_tenant_phone(self, ev: Incoming, text: str) -> None:
        fields = {"phone": validation.phone(text)}
        user = await self.db.get_user(ev.user_id) or {}
        if not user.get("user_type"):
            fields["user_type"] = "tenant"
        await self.db.update_user(ev.user_id, fields)
        state = self.store.get(ev.user_id)
        self.store.clear(ev.user_id)
        listing = await self.db.get_listing(state["link_listing"])
        if listing is None or listing["status"] != "published":
            await self.show_menu(ev.chat_id, "❌ ይህ ማስታወቂያ አሁን አይገኝም።")
            return
        await self.say(ev.chat_id, "✅ ተመዝግበዋል።", reply_markup=main_menu())
        await self._deliver_contact(ev, state["link_kind"], listing)

    # ─── account ──────────────────────────────────────────────────

    async def show_account(self, ev: Incoming) -> None:
        self.store.clear(ev.user_id)
        user = await self.db.create_user(ev.user_id)
        role = ROLES.get(user.get("user_type"), "🔎 ተከራይ" if user.get("user_type") == "tenant" else "—")
        await self.say(
            ev.chat_id,
            "👤 <b>የእርስዎ አካውንት</b>\n\n"
            f"ስም: <b>{user.get('name') or '—'}</b>\n"
            f"ስልክ: <b>{user.get('phone') or '—'}</b>\n"
            f"ሚና: {role}",
            reply_markup=_kb(
                [button("✏️ ስም ቀይር", Act.ACCOUNT_EDIT, arg="name")],
                [button("📞 ስልክ ቀይር", Act.ACCOUNT_EDIT, arg="phone")],
            ),
        )

    async def _act_account_edit(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        if action.arg == "phone":
            self.store.merge(ev.user_id, step="editing_account_phone")
            await self.say(ev.chat_id, "📞 አዲሱን ስልክ ቁጥር ያስገቡ:", reply_markup=cancel_keyboard())
        else:
            self.store.merge(ev.user_id, step="editing_account_name")
            await self.say(ev.chat_id, "✏️ አዲሱን ስም ያስገቡ:", reply_markup=cancel_keyboard())

    async def _on_account_name(self, ev: Incoming, text: str) -> None:
        await self.db.update_user(ev.user_id, {"name": validation.name(text)})
        self.store.clear(ev.user_id)
        await self.show_menu(ev.chat_id, "✅ ስምዎ ተቀይሯል።")

    async def _on_account_phone(self, ev: Incoming, text: str) -> None:
        await self.db.update_user(ev.user_id, {"phone": validation.phone(text)})
        self.store.clear(ev.user_id)
        await self.show_menu(ev.chat_id, "✅ ስልክ ቁጥርዎ ተቀይሯል።")

    # ─── my listings / rented ─────────────────────────────────────

    async def show_my_listings(self, ev: Incoming, page: int = 0) -> None:
        records = await self.db.get_user_listings(ev.user_id)
        if not records:
            await self.say(ev.chat_id, "📭 እስካሁን ምንም ማስታወቂያ የለዎትም።")
            return
        size = config.MY_ADS_PAGE_SIZE
        total_pages = max(1, math.ceil(len(records) / size))
        page = max(0, min(page, total_pages - 1))
        lines = [f"📋 <b>የእርስዎ ማስታወቂያዎች</b> ({page + 1}/{total_pages})", ""]
        for rec in records[page * size:(page + 1) * size]:
            lines.append(
                f"#{rec['id'] + config.DISPLAY_ID_OFFSET} {STATUS_LABELS.get(rec['status'], rec['status'])}\n"
                f"   🏷 {rec.get('title') or '—'} | 📍 {rec.get('location') or '—'} | 💰 {rec.get('price') or '—'}\n"
                f"   📞 {rec.get('contact_clicks') or 0} ጊዜ ተጠይቋል"
            )
        nav = []
        if page > 0:
            nav.append(button("⬅️", Act.MY_LISTINGS, arg=str(page - 1)))
        if page < total_pages - 1:
            nav.append(button("➡️", Act.MY_LISTINGS, arg=str(page + 1)))
        rows = [nav] if nav else []
        if any(r["status"] == "published" for r in records):
            rows.append([button("🏷 ተከራይቷል ምልክት አድርግ", Act.RENTED_ASK)])
        markup = InlineKeyboardMarkup(rows) if rows else None
        text = "\n".join(lines)
        if ev.is_callback and ev.message_id:
            await self.safe_edit(ev.chat_id, ev.message_id, text, reply_markup=markup)
        else:
            await self.say(ev.chat_id, text, reply_markup=markup)

    async def _act_my_listings(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        await self.show_my_listings(ev, action.index or 0)

    async def _act_rented_ask(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        self.store.merge(ev.user_id, step="awaiting_rented_id")
        await self.say(ev.chat_id, "🔢 የተከራየውን ማስታወቂያ ቁጥር ያስገቡ (ለምሳሌ 12):",
                       reply_markup=cancel_keyboard())

    async def _owned_published(self, sender: int, listing_id: int) -> dict:
        listing = await self.db.get_listing(listing_id)
        if listing is None or listing.get("owner_telegram_id") != sender:
            raise ValidationError("❌ ይህ ቁጥር ያለው ማስታወቂያ አልተገኘም። እባክዎ እንደገና ያስገቡ:")
        if listing["status"] != "published":
            raise ValidationError("❌ የታተሙ ማስታወቂያዎች ብቻ ተከራይቷል ሊባሉ ይችላሉ።")
        return listing

    async def _on_rented_id(self, ev: Incoming, text: str) -> None:
        digits = text.lstrip("#")
        if not digits.isdigit():
            raise ValidationError("❌ እባክዎ ቁጥር ብቻ ያስገቡ:")
        listing = await self._owned_published(ev.user_id, int(digits) - config.DISPLAY_ID_OFFSET)
        self.store.merge(ev.user_id, step="awaiting_rented_confirm")
        await self.say(
            ev.chat_id,
            format_listing(listing, with_tags=False) + "\n\n❓ ይህ ቤት ተከራይቷል?",
            reply_markup=_kb(
                [button("✅ አዎ ተከራይቷል", Act.RENTED_OK, listing_id=listing["id"])],
                [button("🚫 ይቅር", Act.CANCEL)],
            ),
        )

    async def _act_rented_ok(self, ev: Incoming, action: Action) -> None:
        if await self._stale(ev, "awaiting_rented_confirm"):
            return
        if action.listing_id is None:
            await self.ack(ev, STALE_TEXT)
            return
        await self.ack(ev)
        listing = await self._owned_published(ev.user_id, action.listing_id)
        await self.db.set_listing_status(listing["id"], "rented")
        await self.publisher.mark_rented(listing)
        self.store.clear(ev.user_id)
        logger.info("Listing %s marked rented by %s", listing["id"], ev.user_id)
        await self.show_menu(ev.chat_id, "✅ ማስታወቂያው ተከራይቷል ተብሎ ተመዝግቧል። እናመሰግናለን!")
