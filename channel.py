# ─── channel.py ────────────────────────────────────────────────────
# Everything that leaves the bot as a "listing": the channel post, the
# admin summary, the preview shown before submission, contact cards and
# admin notifications.

import html
import logging
import re
from typing import Iterable, Optional

from telegram import (
    Bot, InlineKeyboardButton, InlineKeyboardMarkup, InputMedia,
    InputMediaDocument, InputMediaPhoto, InputMediaVideo, Message,
)
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError

import catalog
from validation import price_amount

logger = logging.getLogger(__name__)

MAX_CAPTION = 1024
RENTED_BANNER = "🔴 <b>ተከራይቷል | RENTED</b>"

PRICE_BUCKETS = (
    (5_000, "#ከ5ሺ_በታች"),
    (10_000, "#ከ5ሺ_እስከ_10ሺ"),
    (20_000, "#ከ10ሺ_እስከ_20ሺ"),
    (40_000, "#ከ20ሺ_እስከ_40ሺ"),
    (80_000, "#ከ40ሺ_እስከ_80ሺ"),
)
PRICE_TOP = "#ከ80ሺ_በላይ"

STATUS_LABELS = {
    "pending": "⏳ በመጠባበቅ ላይ",
    "approved": "✔️ ጸድቋል",
    "rejected": "❌ ውድቅ ተደርጓል",
    "published": "✅ ታትሟል",
    "rented": "🔴 ተከራይቷል",
}


def _e(val) -> str:
    return html.escape(str(val)) if val not in (None, "") else ""


def _bold(val) -> str:
    return f"<b>{_e(val)}</b>" if val not in (None, "") else ""


def _tag(text: str) -> str:
    slug = re.sub(r"\W+", "_", text.strip()).strip("_")
    return f"#{slug}" if slug else ""


def price_tag(price: Optional[str]) -> str:
    amount = price_amount(price)
    if amount is None:
        return ""
    for limit, tag in PRICE_BUCKETS:
        if amount < limit:
            return tag
    return PRICE_TOP


def hashtags(listing: dict) -> str:
    tags = [price_tag(listing.get("price"))]
    if listing.get("title"):
        tags.append(_tag(listing["title"]))
    if listing.get("location"):
        tags.append(_tag(re.split(r"[,،/\-]", listing["location"])[0]))
    return " ".join(t for t in tags if t)


# ─── text blocks ───────────────────────────────────────────────────

def title_line(listing: dict) -> str:
    title = listing.get("title") or "—"
    rooms = listing.get("rooms_count")
    if title == catalog.COMPOUND_ROOM and rooms:
        return f"{_e(title)} - {_e(rooms)} ክፍል"
    if title == catalog.FULL_COMPOUND and listing.get("villa_type"):
        villa = listing.get("villa_type_other") or listing["villa_type"]
        return f"{_e(title)} ({_e(villa)})"
    return _e(title)


def spec_lines(listing: dict) -> list[str]:
    lines = []
    if listing.get("floor"):
        lines.append(f"🏢 ፎቅ: {_e(listing['floor'])}")
    if listing.get("bedrooms"):
        lines.append(f"🛏 {_e(listing['bedrooms'])} መኝታ ቤት")
    if listing.get("bathrooms"):
        lines.append(f"🚿 {_e(listing['bathrooms'])} መታጠቢያ ቤት")
    if listing.get("bathroom_type"):
        lines.append(f"🚽 መታጠቢያ: {_e(listing['bathroom_type'])}")
    if listing.get("property_size"):
        lines.append(f"📐 ስፋት: {_e(listing['property_size'])}")
    return lines


def format_listing(listing: dict, with_tags: bool = True) -> str:
    """Channel post body; also used for the user's preview."""
    category = catalog.CATEGORY_LABELS.get(listing.get("property_type"), "🏠")
    parts = [f"{category}", f"🏷 <b>{title_line(listing)}</b>"]
    specs = spec_lines(listing)
    if specs:
        parts.append("\n".join(specs))
    if listing.get("location"):
        parts.append(f"📍 አድራሻ: {_bold(listing['location'])}")
    if listing.get("price"):
        parts.append(f"💰 ዋጋ: {_bold(listing['price'])} | ለኪራይ")
    if listing.get("description"):
        parts.append(f"📝 {_e(listing['description'])}")
    if listing.get("platform_link"):
        parts.append(
            f'🔗 <a href="{_e(listing["platform_link"])}">{_e(listing.get("platform_name") or "Link")}</a>'
        )
    if with_tags:
        tags = hashtags(listing)
        if tags:
            parts.append(tags)
    return "\n\n".join(parts)


def format_admin_summary(listing: dict) -> str:
    """What moderators see for a pending listing."""
    category = catalog.CATEGORY_LABELS.get(listing.get("property_type"), "—")
    lines = [
        f"{category} - ID: <b>{listing['id']}</b>",
        "",
        f"🏷 <b>Title:</b> {title_line(listing)}",
    ]
    specs = spec_lines(listing)
    if specs:
        lines += ["<b>Specs:</b>", *specs]
    lines += [
        f"📍 <b>Address:</b> {_e(listing.get('location')) or '—'}",
        f"💰 <b>Price:</b> {_e(listing.get('price')) or '—'}",
        f"📞 <b>Contact:</b> {_e(listing.get('contact_info') or listing.get('owner_phone')) or '—'}",
        f"👤 <b>Display name:</b> {_e(listing.get('display_name') or listing.get('owner_name')) or '—'}",
    ]
    if listing.get("platform_link"):
        lines.append(f"🔗 <b>{_e(listing.get('platform_name'))}:</b> {_e(listing['platform_link'])}")
    if listing.get("description"):
        lines += ["", f"📝 {_e(listing['description'])}"]
    lines += [
        "",
        f"🙋 <b>Submitted by:</b> {_e(listing.get('owner_name')) or 'Anonymous'}"
        f" ({_e(listing.get('owner_phone')) or 'no phone'})",
        f"🆔 <b>User ID:</b> <code>{_e(listing.get('owner_telegram_id'))}</code>",
    ]
    if listing.get("admin_notes"):
        lines.append(f"🗒 <b>Notes:</b> {_e(listing['admin_notes'])}")
    return "\n".join(lines)


def format_contact_card(listing: dict) -> str:
    name = listing.get("display_name") or listing.get("owner_name") or "—"
    phone = listing.get("contact_info") or listing.get("owner_phone") or "—"
    lines = [
        "📞 <b>የአከራዩ መረጃ</b>",
        "",
        f"🏷 {title_line(listing)} | {_e(listing.get('location'))}",
        f"💰 {_e(listing.get('price'))}",
        f"👤 ስም: {_bold(name)}",
        f"📱 ስልክ: {_bold(phone)}",
    ]
    if listing.get("platform_link"):
        lines.append(f"🔗 {_e(listing.get('platform_name'))}: {_e(listing['platform_link'])}")
    return "\n".join(lines)


def _fit_caption(text: str) -> Optional[str]:
    return text if len(text) <= MAX_CAPTION else None


def pack_media(items: Iterable[dict], caption: Optional[str] = None) -> list[InputMedia]:
    """InputMedia list with the caption on the first element only."""
    media: list[InputMedia] = []
    kinds = {"photo": InputMediaPhoto, "video": InputMediaVideo, "document": InputMediaDocument}
    for item in items:
        cls = kinds.get(item.get("kind"), InputMediaPhoto)
        if not media and caption:
            media.append(cls(item["file_id"], caption=caption, parse_mode=ParseMode.HTML))
        else:
            media.append(cls(item["file_id"]))
    return media


class Publisher:
    def __init__(self, bot: Bot, channel_id, bot_username: str, admin_ids: set[int], db):
        self.bot = bot
        self.channel_id = channel_id
        self.bot_username = bot_username
        self.admin_ids = set(admin_ids)
        self.db = db

    def deep_link(self, kind: str, listing_id: int) -> str:
        return f"https://t.me/{self.bot_username}?start={kind}_{listing_id}"

    def channel_keyboard(self, listing: dict, has_media: bool) -> InlineKeyboardMarkup:
        rows = [[InlineKeyboardButton("📞 አከራዩን ያግኙ", url=self.deep_link("contact", listing["id"]))]]
        if has_media:
            rows.append([InlineKeyboardButton("🖼 ፎቶዎችን ይመልከቱ", url=self.deep_link("view", listing["id"]))])
        return InlineKeyboardMarkup(rows)

    async def _send_single(self, chat_id, item: dict, caption: Optional[str], reply_markup=None) -> Message:
        kw = dict(caption=caption, parse_mode=ParseMode.HTML, reply_markup=reply_markup)
        kind = item.get("kind")
        if kind == "video":
            return await self.bot.send_video(chat_id, item["file_id"], **kw)
        if kind == "document":
            return await self.bot.send_document(chat_id, item["file_id"], **kw)
        return await self.bot.send_photo(chat_id, item["file_id"], **kw)

    async def send_media(self, chat_id, media: list[dict], caption: Optional[str] = None,
                         keep_partial: bool = False) -> Optional[Message]:
        """Sends media as one message or album(s); returns the captioned message.

        Documents cannot share an album with photos/videos, so they go in a
        second album after the visual one. With ``keep_partial`` a failure
        after the first message went out is logged and the first message is
        returned instead of raising.
        """
        visual = [m for m in media if m.get("kind") != "document"]
        documents = [m for m in media if m.get("kind") == "document"]
        first: Optional[Message] = None
        for group in (visual, documents):
            if not group:
                continue
            cap = caption if first is None else None
            try:
                if len(group) == 1:
                    sent = await self._send_single(chat_id, group[0], cap)
                else:
                    sent = (await self.bot.send_media_group(chat_id, pack_media(group, cap)))[0]
            except TelegramError as e:
                if first is None or not keep_partial:
                    raise
                logger.warning("Second album to %s failed, keeping the first: %s", chat_id, e)
                break
            first = first or sent
        return first

    async def publish(self, listing: dict, media: list[dict]) -> int:
        """Posts the listing to the channel; returns the message id to edit later.

        Raises only when nothing reached the channel. Once a message is out
        its id is returned even if a later part of the post failed, so the
        listing is never posted twice.
        """
        text = format_listing(listing)
        keyboard = self.channel_keyboard(listing, bool(media))
        if not media:
            msg = await self.bot.send_message(
                self.channel_id, text, parse_mode=ParseMode.HTML, reply_markup=keyboard,
            )
            return msg.message_id
        caption = _fit_caption(text)
        if len(media) == 1 and caption:
            msg = await self._send_single(self.channel_id, media[0], caption, reply_markup=keyboard)
            return msg.message_id
        album = await self.send_media(self.channel_id, media, caption, keep_partial=True)
        # albums cannot carry buttons: follow up with the text/keyboard
        try:
            follow = await self.bot.send_message(
                self.channel_id, text if caption is None else "👇 ለበለጠ መረጃ",
                parse_mode=ParseMode.HTML, reply_markup=keyboard,
            )
        except TelegramError as e:
            logger.error("Listing %s: album posted but the follow-up failed: %s", listing["id"], e)
            return album.message_id
        return album.message_id if caption else follow.message_id

    async def mark_rented(self, listing: dict) -> bool:
        """Prefixes the channel post with the rented banner."""
        message_id = listing.get("channel_message_id")
        if not message_id:
            return False
        text = f"{RENTED_BANNER}\n\n{format_listing(listing)}"
        try:
            await self.bot.edit_message_text(
                text, chat_id=self.channel_id, message_id=message_id, parse_mode=ParseMode.HTML,
            )
            return True
        except BadRequest as e:
            if "no text" not in str(e).lower():
                logger.warning("mark_rented %s: %s", listing["id"], e)
                return False
        try:
            await self.bot.edit_message_caption(
                chat_id=self.channel_id, message_id=message_id,
                caption=text[:MAX_CAPTION], parse_mode=ParseMode.HTML,
            )
            return True
        except TelegramError as e:
            logger.warning("mark_rented %s (caption): %s", listing["id"], e)
            return False

    async def send_contact_card(self, chat_id: int, listing: dict, with_media: bool = False) -> None:
        if with_media:
            media = await self.db.get_media(listing["id"])
            if media:
                await self.send_media(chat_id, media)
        await self.bot.send_message(chat_id, format_contact_card(listing), parse_mode=ParseMode.HTML)

    async def admin_recipients(self) -> set[int]:
        return self.admin_ids | set(await self.db.list_admins())

    async def notify_admins(self, text: str, reply_markup=None) -> int:
        """Sends one message to each admin; returns how many got it."""
        delivered = 0
        for admin_id in sorted(await self.admin_recipients()):
            try:
                await self.bot.send_message(
                    admin_id, text, parse_mode=ParseMode.HTML, reply_markup=reply_markup,
                )
                delivered += 1
            except TelegramError as e:
                logger.warning("Failed to notify admin %s: %s", admin_id, e)
        return delivered
