# ─── moderation.py ─────────────────────────────────────────────────
# Admin side: /admin panel, pending review, approve / reject / edit,
# media management, license & recovery tokens, broadcasts and listings
# authored by an admin. Every entry point goes through AdminPolicy
# first; non-admins get DENIED_TEXT and no state.
#
# Admin steps are all named "admin_*" so the router can tell them apart
# from the user flow.

import asyncio
import html
import logging
from typing import Optional

from telegram import InlineKeyboardMarkup
from telegram.error import TelegramError

import catalog
import config
import validation
from callbacks import Act, Action, button
from channel import Publisher, format_admin_summary
from errors import ConfigurationError, ListingBotError, NotFoundError, ValidationError
from flow import BaseFlow, Incoming
from listing_flow import ListingFlow
from media import MediaIntake
from permissions import DENIED_TEXT, AdminPolicy
from tokens import TokenIssuer

logger = logging.getLogger(__name__)

AUDIENCE_LABELS = {
    "all": "👥 All users",
    "brokers": "🤝 Brokers",
    "owners": "🏠 Owners",
    "tenants": "🔎 Tenants",
}
MEDIA_MODES = ("add", "replace", "delete")
FAILURE_TEXT = "❌ Something went wrong with listing #{id}. Nothing was changed, please try again."
UNSAVED_TEXT = (
    "⚠️ Listing #{id} was posted to the channel (message {message_id}), "
    "but saving its status failed. Do not approve it again."
)


def _kb(*rows) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([list(r) for r in rows])


def review_keyboard(listing_id: int) -> InlineKeyboardMarkup:
    return _kb(
        [button("✅ Approve", Act.APPROVE, listing_id)],
        [button("✏️ Edit", Act.EDIT, listing_id)],
        [button("❌ Reject", Act.REJECT, listing_id)],
    )


class ModerationFlow(BaseFlow):
    def __init__(self, bot, store, db, publisher: Publisher, intake: MediaIntake,
                 policy: AdminPolicy, issuer: TokenIssuer, listing: ListingFlow,
                 broadcast_delay: float = 1 / config.BROADCAST_RATE):
        super().__init__(bot, store, db)
        self.publisher = publisher
        self.intake = intake
        self.policy = policy
        self.issuer = issuer
        self.listing = listing
        self.broadcast_delay = broadcast_delay
        self._tasks: set[asyncio.Task] = set()

    async def _gate(self, ev: Incoming) -> bool:
        if await self.policy.is_admin(ev.user_id):
            return True
        logger.info("Denied admin action from %s", ev.user_id)
        if ev.is_callback:
            await self.ack(ev, DENIED_TEXT, alert=True)
        else:
            await self.say(ev.chat_id, DENIED_TEXT)
        return False

    # ─── panel ────────────────────────────────────────────────────

    async def panel(self, ev: Incoming) -> None:
        if not await self._gate(ev):
            return
        self.store.clear(ev.user_id)
        stats = await self.db.get_aggregate_stats()
        top = await self.db.get_posts_with_stats(5)
        lines = [
            "🛠 <b>Admin Panel</b>",
            "",
            "📊 <b>Statistics:</b>",
            f"👥 Users: {stats['total_users']}",
            f"📋 Listings: {stats['total_posts']}",
            f"⏳ Pending: {stats['pending_posts']}",
            f"✅ Published: {stats['published_posts']}",
            f"🔴 Rented: {stats['rented_posts']}",
            f"👆 Clicks: {stats['total_clicks']}",
        ]
        if top:
            lines += ["", "🏆 <b>Top listings:</b>"]
            lines += [
                f"#{p['id']} {html.escape(p.get('title') or '—')} - {p['total_clicks']} clicks"
                f" ({p['unique_clickers']} people)"
                for p in top
            ]
        markup = _kb(
            [button("📋 Pending Listings", Act.PENDING)],
            [button("🔄 Refresh Stats", Act.PANEL)],
            [button("➕ New Listing", Act.ADMIN_NEW), button("📣 Broadcast", Act.BROADCAST)],
            [button("🔑 Tokens", Act.TOKEN_MENU)],
        )
        text = "\n".join(lines)
        if ev.is_callback and ev.message_id:
            await self.safe_edit(ev.chat_id, ev.message_id, text, reply_markup=markup)
        else:
            await self.say(ev.chat_id, text, reply_markup=markup)

    # ─── dispatch ─────────────────────────────────────────────────

    async def handle_action(self, ev: Incoming) -> None:
        if not await self._gate(ev):
            return
        handler = {
            Act.PANEL: self._act_panel,
            Act.PENDING: self._act_pending,
            Act.APPROVE: self._act_approve,
            Act.REJECT: self._act_reject,
            Act.EDIT: self._act_edit,
            Act.EDIT_FIELD: self._act_edit_field,
            Act.EDIT_OPTION: self._act_edit_option,
            Act.EDIT_DONE: self._act_edit_done,
            Act.MEDIA_MODE: self._act_media_mode,
            Act.MEDIA_DONE: self._act_media_done,
            Act.TOKEN_MENU: self._act_token_menu,
            Act.TOKEN_KIND: self._act_token_kind,
            Act.TOKEN_MODE: self._act_token_mode,
            Act.TOKEN_BACK: self._act_token_back,
            Act.TOKEN_SKIP: self._act_token_skip,
            Act.BROADCAST: self._act_broadcast,
            Act.AUDIENCE: self._act_audience,
            Act.BROADCAST_GO: self._act_broadcast_go,
            Act.ADMIN_NEW: self._act_admin_new,
        }.get(ev.action.act)
        if handler is None:
            await self.ack(ev, "Unknown action")
            return
        try:
            await handler(ev, ev.action)
        except ValidationError as e:
            await self.say(ev.chat_id, e.message)

    async def handle_message(self, ev: Incoming, step: str) -> None:
        if not await self._gate(ev):
            self.store.clear(ev.user_id)
            return
        if step in ("admin_media", "admin_broadcast_message") and ev.media is not None:
            await self._on_media(ev, step)
            return
        handler = {
            "admin_reject_reason": self._on_reject_reason,
            "admin_edit": self._on_edit_idle,
            "admin_edit_value": self._on_edit_value,
            "admin_media": self._on_media_text,
            "admin_token_days": self._on_token_days,
            "admin_token_minutes": self._on_token_minutes,
            "admin_token_device": self._on_token_device,
            "admin_token_note": self._on_token_note,
            "admin_broadcast_message": self._on_broadcast_text,
            "admin_new_name": self._on_new_name,
            "admin_new_phone": self._on_new_phone,
            "admin_new_link": self._on_new_link,
        }.get(step)
        if handler is None or ev.text is None:
            await self.say(ev.chat_id, "👆 Please use the buttons above.")
            return
        try:
            await handler(ev, ev.text.strip())
        except ValidationError as e:
            await self.say(ev.chat_id, e.message)

    async def _act_panel(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        await self.panel(ev)

    async def _listing(self, listing_id: Optional[int]) -> dict:
        listing = await self.db.get_listing(listing_id) if listing_id is not None else None
        if listing is None:
            raise NotFoundError("listing", listing_id)
        return listing

    # ─── pending review ───────────────────────────────────────────

    async def _act_pending(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        await self.show_pending(ev)

    async def pending(self, ev: Incoming) -> None:
        """/pending"""
        if not await self._gate(ev):
            return
        await self.show_pending(ev)

    async def show_pending(self, ev: Incoming) -> None:
        listings = await self.db.get_pending_listings()
        if not listings:
            await self.say(ev.chat_id, "✅ No pending listings.")
            return
        await self.say(ev.chat_id, f"⏳ <b>{len(listings)} pending listing(s)</b>")
        for listing in listings:
            await self.send_review(ev.chat_id, listing)

    async def send_review(self, chat_id: int, listing: dict, note: str = "") -> None:
        summary = format_admin_summary(listing)
        media = await self.db.get_media(listing["id"])
        if media and len(summary) <= 1024:
            await self.publisher.send_media(chat_id, media, caption=summary)
        else:
            if media:
                await self.publisher.send_media(chat_id, media)
            await self.say(chat_id, summary)
        await self.say(
            chat_id, f"📋 Listing #{listing['id']}{note}\nChoose an action:",
            reply_markup=review_keyboard(listing["id"]),
        )

    # ─── approve ──────────────────────────────────────────────────

    async def _close_review(self, ev: Incoming, listing_id: int, status_line: str) -> None:
        if ev.message_id:
            await self.safe_edit(ev.chat_id, ev.message_id, f"📋 Listing #{listing_id}\n\n{status_line}")

    async def _act_approve(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        listing = await self._listing(action.listing_id)
        listing_id = listing["id"]
        if listing["status"] != "pending" or not await self.db.transition_status(listing_id, "pending", "approved"):
            await self._close_review(ev, listing_id, f"ℹ️ Already handled ({listing['status']}).")
            return
        try:
            media = await self.db.get_media(listing_id)
            message_id = await self.publisher.publish(listing, media)
        except (TelegramError, ListingBotError) as e:
            # nothing reached the channel, so the listing can go back to review
            logger.error("Publishing listing %s failed: %s", listing_id, e)
            try:
                await self.db.transition_status(listing_id, "approved", "pending")
            except ListingBotError as revert_error:
                logger.error("Could not revert listing %s to pending: %s", listing_id, revert_error)
            await self.say(ev.chat_id, FAILURE_TEXT.format(id=listing_id))
            return
        try:
            await self.db.set_listing_status(listing_id, "published", channel_message_id=message_id)
        except ListingBotError as e:
            # the post is live; leave the listing "approved" so it is not posted again
            logger.error("Listing %s is live as message %s but its status was not saved: %s",
                         listing_id, message_id, e)
            await self.say(ev.chat_id, UNSAVED_TEXT.format(id=listing_id, message_id=message_id))
            await self._close_review(ev, listing_id, "✅ <b>APPROVED & PUBLISHED</b> (status not saved)")
            return
        logger.info("Listing %s approved by %s and published as %s", listing_id, ev.user_id, message_id)
        await self._notify_owner(
            listing,
            "🎉 <b>ማስታወቂያዎ ጸድቋል!</b>\n\n"
            f"🏷 {html.escape(listing.get('title') or '')} በቻናላችን ላይ ታትሟል።",
        )
        await self._close_review(ev, listing_id, "✅ <b>APPROVED & PUBLISHED</b>")

    async def _notify_owner(self, listing: dict, text: str, reply_markup=None) -> None:
        owner = listing.get("owner_telegram_id")
        if not owner:
            return
        try:
            await self.say(owner, text, reply_markup=reply_markup)
        except TelegramError as e:
            logger.warning("Could not notify owner %s of listing %s: %s", owner, listing["id"], e)

    # ─── reject ───────────────────────────────────────────────────

    async def _act_reject(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        listing = await self._listing(action.listing_id)
        if listing["status"] != "pending":
            await self._close_review(ev, listing["id"], f"ℹ️ Already handled ({listing['status']}).")
            return
        self.store.clear(ev.user_id)
        self.store.merge(ev.user_id, step="admin_reject_reason",
                         listing_id=listing["id"], origin_message=ev.message_id)
        await self.say(ev.chat_id, f"✍️ Enter the rejection reason for listing #{listing['id']} (min 3 characters):")

    async def _on_reject_reason(self, ev: Incoming, text: str) -> None:
        reason = validation.reject_reason(text)
        state = self.store.get(ev.user_id)
        listing = await self._listing(state["listing_id"])
        try:
            rejected = await self.db.transition_status(listing["id"], "pending", "rejected", reason=reason)
        except ListingBotError as e:
            logger.error("Rejecting listing %s failed: %s", listing["id"], e)
            await self.say(ev.chat_id, FAILURE_TEXT.format(id=listing["id"]))
            return
        self.store.clear(ev.user_id)
        if not rejected:
            await self.say(ev.chat_id, f"ℹ️ Listing #{listing['id']} was already handled.")
            return
        logger.info("Listing %s rejected by %s", listing["id"], ev.user_id)
        await self._notify_owner(
            listing,
            "❌ <b>ማስታወቂያዎ ውድቅ ተደርጓል</b>\n\n"
            f"🏷 {html.escape(listing.get('title') or '')}\n"
            f"📝 ምክንያት: {html.escape(reason)}\n\n"
            "ማስተካከያ አድርገው እንደገና መላክ ይችላሉ።",
            reply_markup=_kb([button("🔁 እንደገና ይሞክሩ", Act.START_LISTING)]),
        )
        if state.get("origin_message"):
            await self.safe_edit(
                ev.chat_id, state["origin_message"],
                f"📋 Listing #{listing['id']}\n\n❌ <b>REJECTED</b>\nReason: {html.escape(reason)}",
            )
        await self.say(ev.chat_id, f"✅ Listing #{listing['id']} rejected and the owner was notified.")

    # ─── edit ─────────────────────────────────────────────────────

    async def _edit_menu(self, chat_id: int, listing: dict) -> None:
        rows = [
            [button(f"✏️ {catalog.FIELDS[f].label}", Act.EDIT_FIELD, listing["id"], f)]
            for f in catalog.edit_fields(listing)
        ]
        rows.append([
            button("➕ Media", Act.MEDIA_MODE, listing["id"], "add"),
            button("🔁 Media", Act.MEDIA_MODE, listing["id"], "replace"),
            button("🗑 Media", Act.MEDIA_MODE, listing["id"], "delete"),
        ])
        rows.append([button("✅ Done", Act.EDIT_DONE, listing["id"])])
        media_count = await self.db.count_media(listing["id"])
        await self.say(
            chat_id,
            f"{format_admin_summary(listing)}\n\n🖼 Media: {media_count}/{config.MAX_MEDIA}\n\n"
            "✏️ <b>Choose a field to edit:</b>",
            reply_markup=InlineKeyboardMarkup(rows),
        )

    def _editing(self, ev: Incoming, listing_id: Optional[int]) -> bool:
        state = self.store.get(ev.user_id)
        return state.get("step", "").startswith("admin_edit") and state.get("listing_id") == listing_id

    async def _act_edit(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        listing = await self._listing(action.listing_id)
        if listing["status"] != "pending":
            await self.say(ev.chat_id, f"ℹ️ Listing #{listing['id']} is {listing['status']}, only pending listings can be edited.")
            return
        self.store.clear(ev.user_id)
        self.store.merge(ev.user_id, step="admin_edit", listing_id=listing["id"])
        await self._edit_menu(ev.chat_id, listing)

    async def _act_edit_field(self, ev: Incoming, action: Action) -> None:
        if not self._editing(ev, action.listing_id):
            await self.ack(ev, "⌛ This edit session has ended.")
            return
        listing = await self._listing(action.listing_id)
        if action.arg not in catalog.edit_fields(listing) and action.arg != "villa_type_other":
            await self.ack(ev, "⌛ This field is not available.")
            return
        await self.ack(ev)
        await self._prompt_field(ev.chat_id, ev.user_id, listing, action.arg)

    async def _prompt_field(self, chat_id: int, sender: int, listing: dict, name: str) -> None:
        field = catalog.FIELDS[name]
        self.store.merge(sender, step="admin_edit_value", edit_field=name)
        current = listing.get(name)
        text = f"{field.prompt}\n\nCurrent: <b>{html.escape(str(current)) if current not in (None, '') else '—'}</b>"
        markup = None
        options = field.options(listing) if field.options else ()
        if options:
            markup = _kb(*[[button(o, Act.EDIT_OPTION, listing["id"], str(i))] for i, o in enumerate(options)])
        await self.say(chat_id, text, reply_markup=markup)

    async def _on_edit_idle(self, ev: Incoming, text: str) -> None:
        await self.say(ev.chat_id, "👆 Choose a field from the edit menu or press Done.")

    async def _on_edit_value(self, ev: Incoming, text: str) -> None:
        state = self.store.get(ev.user_id)
        field = catalog.FIELDS[state["edit_field"]]
        if field.parse is None:
            raise ValidationError("👆 Please choose one of the options above.")
        listing = await self._listing(state["listing_id"])
        await self._apply_edit(ev, listing, field.name, field.parse(text))

    async def _act_edit_option(self, ev: Incoming, action: Action) -> None:
        state = self.store.get(ev.user_id)
        if state.get("step") != "admin_edit_value" or state.get("listing_id") != action.listing_id:
            await self.ack(ev, "⌛ This edit session has ended.")
            return
        listing = await self._listing(action.listing_id)
        field = catalog.FIELDS[state["edit_field"]]
        options = field.options(listing) if field.options else ()
        if action.index is None or action.index >= len(options):
            await self.ack(ev, "⌛ Unknown option.")
            return
        await self.ack(ev)
        await self._apply_edit(ev, listing, field.name, options[action.index])

    async def _apply_edit(self, ev: Incoming, listing: dict, name: str, value) -> None:
        fields = {name: value}
        if name == "title":
            fields.update(catalog.strip_inapplicable(listing["property_type"], value))
        if name == "villa_type" and value != catalog.VILLA_OTHER:
            fields["villa_type_other"] = None
        await self.db.update_listing_fields(listing["id"], fields)
        logger.info("Listing %s: admin %s set %s", listing["id"], ev.user_id, name)
        listing = await self._listing(listing["id"])
        if name == "villa_type" and value == catalog.VILLA_OTHER:
            await self._prompt_field(ev.chat_id, ev.user_id, listing, "villa_type_other")
            return
        self.store.merge(ev.user_id, step="admin_edit", edit_field=None)
        await self.say(ev.chat_id, f"✅ {catalog.FIELDS[name].label} updated.")
        await self._edit_menu(ev.chat_id, listing)

    async def _act_edit_done(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        listing = await self._listing(action.listing_id)
        self.store.clear(ev.user_id)
        await self.send_review(ev.chat_id, listing, note=" ✏️ editing completed")

    # ─── media management ─────────────────────────────────────────

    def _media_keyboard(self, listing_id: int) -> InlineKeyboardMarkup:
        return _kb([button("✅ Done", Act.MEDIA_DONE, listing_id)])

    async def _act_media_mode(self, ev: Incoming, action: Action) -> None:
        if not self._editing(ev, action.listing_id) or action.arg not in MEDIA_MODES:
            await self.ack(ev, "⌛ This edit session has ended.")
            return
        listing_id = action.listing_id
        if action.arg == "add":
            existing = await self.db.count_media(listing_id)
            if existing >= config.MAX_MEDIA:
                await self.ack(ev, f"Media is full ({config.MAX_MEDIA}).", alert=True)
                return
            await self.ack(ev)
            self.store.merge(ev.user_id, step="admin_media", media_mode="add",
                             media=[], media_existing=existing)
            await self.say(ev.chat_id, f"📤 Send up to {config.MAX_MEDIA - existing} photos/videos, then press Done.",
                           reply_markup=self._media_keyboard(listing_id))
            return
        await self.ack(ev)
        removed = await self.db.delete_media(listing_id)
        logger.info("Listing %s: admin %s removed %s media (%s)", listing_id, ev.user_id, removed, action.arg)
        if action.arg == "replace":
            self.store.merge(ev.user_id, step="admin_media", media_mode="replace",
                             media=[], media_existing=0)
            await self.say(ev.chat_id, f"🗑 Old media removed. Send up to {config.MAX_MEDIA} new items, then press Done.",
                           reply_markup=self._media_keyboard(listing_id))
            return
        self.store.merge(ev.user_id, step="admin_edit")
        await self.say(ev.chat_id, "🗑 All media removed.")
        await self._edit_menu(ev.chat_id, await self._listing(listing_id))

    async def _on_media(self, ev: Incoming, step: str) -> None:
        if step == "admin_media":
            listing_id = self.store.get(ev.user_id)["listing_id"]
            await self.intake.receive(ev, self._media_keyboard(listing_id))
            return
        if ev.text:
            self.store.merge(ev.user_id, broadcast_text=ev.text)
        await self.intake.receive(ev, self._broadcast_keyboard())

    async def _on_media_text(self, ev: Incoming, text: str) -> None:
        listing_id = self.store.get(ev.user_id)["listing_id"]
        await self.say(ev.chat_id, "📤 Send photos/videos or press Done.",
                       reply_markup=self._media_keyboard(listing_id))

    async def _act_media_done(self, ev: Incoming, action: Action) -> None:
        state = self.store.get(ev.user_id)
        if state.get("step") != "admin_media" or state.get("listing_id") != action.listing_id:
            await self.ack(ev, "⌛ This edit session has ended.")
            return
        await self.ack(ev)
        saved = 0
        for item in state.get("media", []):
            if await self.db.add_media(action.listing_id, item):
                saved += 1
        self.store.merge(ev.user_id, step="admin_edit", media=[], media_mode=None)
        await self.say(ev.chat_id, f"✅ {saved} media item(s) saved.")
        await self._edit_menu(ev.chat_id, await self._listing(action.listing_id))

    # ─── tokens ───────────────────────────────────────────────────
    # stage → step; fields collected so far stay in state when going back

    def _token_back_target(self, state: dict, stage: str) -> Optional[str]:
        if stage == "kind":
            return None
        if stage in ("mode", "minutes"):
            return "kind"
        if stage == "days":
            return "mode"
        if stage == "device":
            if state.get("token_kind") == "recovery":
                return "minutes"
            return "days" if state.get("token_mode") == "periodic" else "mode"
        return "device"  # note

    async def _token_prompt(self, chat_id: int, sender: int, stage: str) -> None:
        state = self.store.merge(sender, step=f"admin_token_{stage}")
        rows = []
        if stage == "kind":
            text = "🔑 <b>Token generator</b>\n\nChoose the token type:"
            rows += [[button("📜 License", Act.TOKEN_KIND, arg="license")],
                     [button("🛟 Recovery", Act.TOKEN_KIND, arg="recovery")]]
        elif stage == "mode":
            text = "📜 License mode:"
            rows += [[button("♾ Permanent", Act.TOKEN_MODE, arg="permanent")],
                     [button("📅 Periodic", Act.TOKEN_MODE, arg="periodic")]]
        elif stage == "days":
            text = "📅 How many days should the license be valid? (1-3650)"
        elif stage == "minutes":
            text = "⏱ How many minutes should the recovery token be valid? (1-1440)"
        elif stage == "device":
            text = "📱 Enter the device ID:"
        else:
            text = "🗒 Add a note (optional):"
            rows.append([button("⏭ Skip", Act.TOKEN_SKIP)])
        current = state.get(f"token_{stage}")
        if current:
            text += f"\n\nCurrent: <code>{html.escape(str(current))}</code>"
        back = self._token_back_target(state, stage)
        if back:
            rows.append([button("⬅️ Back", Act.TOKEN_BACK, arg=back)])
        else:
            rows.append([button("🚫 Cancel", Act.CANCEL)])
        await self.say(chat_id, text, reply_markup=InlineKeyboardMarkup(rows))

    def _token_stage(self, ev: Incoming) -> str:
        step = self.store.step(ev.user_id) or ""
        return step[len("admin_token_"):] if step.startswith("admin_token_") else ""

    async def _act_token_menu(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        self.store.clear(ev.user_id)
        await self._token_prompt(ev.chat_id, ev.user_id, "kind")

    async def _act_token_kind(self, ev: Incoming, action: Action) -> None:
        if self._token_stage(ev) != "kind" or action.arg not in ("license", "recovery"):
            await self.ack(ev, "⌛ Start again from /admin.")
            return
        await self.ack(ev)
        self.store.merge(ev.user_id, token_kind=action.arg)
        await self._token_prompt(ev.chat_id, ev.user_id, "mode" if action.arg == "license" else "minutes")

    async def _act_token_mode(self, ev: Incoming, action: Action) -> None:
        if self._token_stage(ev) != "mode" or action.arg not in ("permanent", "periodic"):
            await self.ack(ev, "⌛ Start again from /admin.")
            return
        await self.ack(ev)
        self.store.merge(ev.user_id, token_mode=action.arg)
        await self._token_prompt(ev.chat_id, ev.user_id, "days" if action.arg == "periodic" else "device")

    async def _act_token_back(self, ev: Incoming, action: Action) -> None:
        if not self._token_stage(ev) or action.arg not in ("kind", "mode", "days", "minutes", "device"):
            await self.ack(ev, "⌛ Start again from /admin.")
            return
        await self.ack(ev)
        await self._token_prompt(ev.chat_id, ev.user_id, action.arg)

    async def _on_token_days(self, ev: Incoming, text: str) -> None:
        self.store.merge(ev.user_id, token_days=validation.token_days(text))
        await self._token_prompt(ev.chat_id, ev.user_id, "device")

    async def _on_token_minutes(self, ev: Incoming, text: str) -> None:
        self.store.merge(ev.user_id, token_minutes=validation.token_minutes(text))
        await self._token_prompt(ev.chat_id, ev.user_id, "device")

    async def _on_token_device(self, ev: Incoming, text: str) -> None:
        self.store.merge(ev.user_id, token_device=validation.device_id(text))
        await self._token_prompt(ev.chat_id, ev.user_id, "note")

    async def _on_token_note(self, ev: Incoming, text: str) -> None:
        await self._issue_token(ev, text[:200] or None)

    async def _act_token_skip(self, ev: Incoming, action: Action) -> None:
        if self._token_stage(ev) != "note":
            await self.ack(ev, "⌛ Start again from /admin.")
            return
        await self.ack(ev)
        await self._issue_token(ev, None)

    async def _issue_token(self, ev: Incoming, note: Optional[str]) -> None:
        state = self.store.get(ev.user_id)
        self.store.clear(ev.user_id)
        kind, device = state.get("token_kind"), state.get("token_device")
        try:
            if kind == "recovery":
                token = self.issuer.issue_recovery(device, state["token_minutes"], note)
                details = f"⏱ Valid for {state['token_minutes']} minute(s)"
            else:
                mode = state.get("token_mode")
                days = state.get("token_days") if mode == "periodic" else None
                token = self.issuer.issue_license(device, mode, days, note)
                details = f"📅 Valid for {days} day(s)" if days else "♾ Permanent"
        except ConfigurationError as e:
            logger.error("Token issuance failed: configuration error")
            await self.say(ev.chat_id, f"❌ {html.escape(str(e))}")
            return
        logger.info("Admin %s issued a %s token for device %s", ev.user_id, kind, device)
        await self.say(
            ev.chat_id,
            f"🔑 <b>{kind.title()} token</b>\n\n"
            f"📱 Device: <code>{html.escape(device)}</code>\n{details}\n"
            + (f"🗒 Note: {html.escape(note)}\n" if note else "")
            + f"\n<code>{token}</code>",
        )

    # ─── broadcast ────────────────────────────────────────────────

    def _broadcast_keyboard(self) -> InlineKeyboardMarkup:
        return _kb([button("📣 Send", Act.BROADCAST_GO)], [button("🚫 Cancel", Act.CANCEL)])

    async def _act_broadcast(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        self.store.clear(ev.user_id)
        self.store.merge(ev.user_id, step="admin_broadcast_audience")
        await self.say(
            ev.chat_id, "📣 <b>Broadcast</b>\n\nWho should receive it?",
            reply_markup=_kb(
                *[[button(label, Act.AUDIENCE, arg=key)] for key, label in AUDIENCE_LABELS.items()],
                [button("🚫 Cancel", Act.CANCEL)],
            ),
        )

    async def _act_audience(self, ev: Incoming, action: Action) -> None:
        if self.store.step(ev.user_id) != "admin_broadcast_audience" or action.arg not in AUDIENCE_LABELS:
            await self.ack(ev, "⌛ Start again from /admin.")
            return
        await self.ack(ev)
        self.store.merge(ev.user_id, step="admin_broadcast_message", audience=action.arg,
                         media=[], media_existing=0, broadcast_text=None)
        await self.say(ev.chat_id, "✍️ Send the message text. Photos/videos (with a caption) are allowed.")

    async def _on_broadcast_text(self, ev: Incoming, text: str) -> None:
        state = self.store.merge(ev.user_id, broadcast_text=text)
        await self.say(
            ev.chat_id,
            f"📣 <b>Preview</b> for {AUDIENCE_LABELS[state['audience']]}\n"
            f"🖼 Media: {len(state.get('media', []))}\n\n{html.escape(text)}",
            reply_markup=self._broadcast_keyboard(),
        )

    async def _act_broadcast_go(self, ev: Incoming, action: Action) -> None:
        state = self.store.get(ev.user_id)
        if state.get("step") != "admin_broadcast_message" or not (state.get("broadcast_text") or state.get("media")):
            await self.ack(ev, "⌛ Nothing to send.")
            return
        await self.ack(ev)
        self.store.clear(ev.user_id)
        recipients = await self.db.list_user_ids(state["audience"])
        await self.say(ev.chat_id, f"📣 Sending to {len(recipients)} user(s). You will get a report when it is done.")
        # sending runs in the background so other chats keep being served
        task = asyncio.create_task(self._fan_out(
            ev.chat_id, ev.user_id, state["audience"], recipients,
            state.get("broadcast_text"), state.get("media") or [],
        ))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fan_out(self, chat_id: int, admin_id: int, audience: str, recipients: list[int],
                       text: Optional[str], media: list[dict]) -> None:
        sent = failed = 0
        try:
            for user_id in recipients:
                try:
                    if media:
                        await self.publisher.send_media(user_id, media, caption=html.escape(text) if text else None)
                    else:
                        await self.bot.send_message(user_id, text)
                    sent += 1
                except TelegramError as e:
                    failed += 1
                    logger.info("Broadcast to %s failed: %s", user_id, e)
                await asyncio.sleep(self.broadcast_delay)
        except Exception:
            logger.exception("Broadcast by %s stopped after %s of %s", admin_id, sent + failed, len(recipients))
        logger.info("Broadcast by %s to %s: %s sent, %s failed", admin_id, audience, sent, failed)
        try:
            await self.say(chat_id, f"📣 Broadcast finished.\n✅ Sent: {sent}\n❌ Failed: {failed}")
        except TelegramError as e:
            logger.warning("Could not report the broadcast result to %s: %s", chat_id, e)

    # ─── admin-authored listing ───────────────────────────────────

    async def _act_admin_new(self, ev: Incoming, action: Action) -> None:
        await self.ack(ev)
        if action.arg == "skip":
            if self.store.step(ev.user_id) == "admin_new_link":
                await self._hand_off(ev, None, None)
            return
        await self.db.create_user(ev.user_id)
        self.store.clear(ev.user_id)
        self.store.merge(ev.user_id, step="admin_new_name")
        await self.say(ev.chat_id, "👤 Display name to show on the listing:")

    async def _on_new_name(self, ev: Incoming, text: str) -> None:
        self.store.merge(ev.user_id, new_display_name=validation.display_name(text), step="admin_new_phone")
        await self.say(ev.chat_id, "📞 Contact phone for the listing:")

    async def _on_new_phone(self, ev: Incoming, text: str) -> None:
        self.store.merge(ev.user_id, new_contact=validation.phone(text), step="admin_new_link")
        await self.say(ev.chat_id, "🔗 Platform link (Facebook, TikTok, Jiji...) or skip:",
                       reply_markup=_kb([button("⏭ Skip", Act.ADMIN_NEW, arg="skip")]))

    async def _on_new_link(self, ev: Incoming, text: str) -> None:
        link, platform = validation.platform_link(text)
        await self._hand_off(ev, link, platform)

    async def _hand_off(self, ev: Incoming, link: Optional[str], platform: Optional[str]) -> None:
        state = self.store.get(ev.user_id)
        self.store.clear(ev.user_id)
        self.store.merge(ev.user_id, admin_listing={
            "display_name": state["new_display_name"],
            "contact_info": state["new_contact"],
            "platform_link": link,
            "platform_name": platform,
        })
        await self.listing.ask_property_type(ev.chat_id, ev.user_id)
