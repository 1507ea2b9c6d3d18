# ─── catalog.py ────────────────────────────────────────────────────
# Listing shapes: categories, titles, the category-specific sub-steps a
# (category, title) pair asks for, and the admin edit-menu rule. The
# submission flow and the moderation edit menu both read from here.

from dataclasses import dataclass
from typing import Any, Callable, Optional

import validation

RESIDENTIAL = "residential"
COMMERCIAL  = "commercial"
CATEGORIES  = (RESIDENTIAL, COMMERCIAL)

CATEGORY_LABELS = {
    RESIDENTIAL: "🏠 የመኖሪያ ቤት | Residential",
    COMMERCIAL:  "🏢 የንግድ ቦታ | Commercial",
}

CONDOMINIUM   = "ኮንዶሚንየም"
APARTMENT     = "አፓርታማ"
STUDIO        = "ስቱዲዮ"
FULL_COMPOUND = "ሙሉ ግቢ"
COMPOUND_ROOM = "ግቢ ውስጥ ያለ"

TITLES: dict[str, tuple[str, ...]] = {
    RESIDENTIAL: (CONDOMINIUM, APARTMENT, STUDIO, FULL_COMPOUND, COMPOUND_ROOM),
    COMMERCIAL:  ("ቢሮ", "ሱቅ", "መጋዘን", "ለየትኛውም ንግድ"),
}

VILLA_TYPES  = ("ቪላ", "ጂ+1", "ጂ+2", "ጂ+3", "ሌላ")
VILLA_OTHER  = "ሌላ"
BATHROOM_BINARY = ("የግል", "የጋራ")
BATHROOM_FULL   = ("ሙሉ መታጠቢያ", "ሽንት ቤት ብቻ", "ሻወር ብቻ")

# Order in which category-specific attributes are shown and edited.
ATTRIBUTES = (
    "rooms_count", "villa_type", "villa_type_other", "floor",
    "bedrooms", "bathrooms", "bathroom_type", "property_size",
)
# attribute → titles it is meaningful for (absent = any title)
TITLE_GATED = {
    "rooms_count": {COMPOUND_ROOM},
    "villa_type": {FULL_COMPOUND},
    "villa_type_other": {FULL_COMPOUND},
}
COMMON_EDIT_FIELDS = ("title", "location", "price", "contact_info", "display_name", "description")
# what an owner may change on the preview; a different title means starting over
OWNER_EDIT_FIELDS = ("location", "price", "contact_info", "display_name", "description", "platform_link")


def attribute_steps(category: str, title: str) -> tuple[str, ...]:
    """Category-specific sub-steps asked after the title, in order.

    villa_type_other is not listed: it is only asked when the villa type
    answer is ``VILLA_OTHER``.
    """
    if category == COMMERCIAL:
        if title in TITLES[COMMERCIAL]:
            return ("floor", "property_size")
        return ("property_size",)
    if title == COMPOUND_ROOM:
        return ("rooms_count", "bathroom_type", "property_size")
    if title == STUDIO:
        return ("bathroom_type", "property_size")
    if title == FULL_COMPOUND:
        return ("villa_type", "bedrooms", "bathrooms", "property_size")
    if title in (CONDOMINIUM, APARTMENT):
        return ("floor", "bedrooms", "bathrooms", "property_size")
    return ("bedrooms", "bathrooms", "property_size")


def _present(value) -> bool:
    return value is not None and value != ""


def edit_attribute_fields(listing: dict) -> list[str]:
    """Category-specific fields offered in the admin edit menu.

    A field is offered iff it is populated on the listing; title-gated
    fields additionally need the matching title.
    """
    title = listing.get("title")
    fields = []
    for attr in ATTRIBUTES:
        if not _present(listing.get(attr)):
            continue
        gate = TITLE_GATED.get(attr)
        if gate is not None and title not in gate:
            continue
        fields.append(attr)
    return fields


def edit_fields(listing: dict) -> list[str]:
    return list(COMMON_EDIT_FIELDS) + edit_attribute_fields(listing)


def owner_edit_fields(listing: dict) -> list[str]:
    return list(OWNER_EDIT_FIELDS) + edit_attribute_fields(listing)


def bathroom_options(title: str | None) -> tuple[str, ...]:
    if title in (STUDIO, COMPOUND_ROOM):
        return BATHROOM_BINARY
    return BATHROOM_FULL


def strip_inapplicable(category: str, title: str) -> dict[str, None]:
    """Attributes to null out when a listing's title changes."""
    keep = set(attribute_steps(category, title))
    if "villa_type" in keep:
        keep.add("villa_type_other")
    return {attr: None for attr in ATTRIBUTES if attr not in keep}


# ─── field specs ───────────────────────────────────────────────────

@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str
    prompt: str
    parse: Optional[Callable[[str], Any]] = None
    # choice fields: callable(listing_or_state) → options
    options: Optional[Callable[[dict], tuple[str, ...]]] = None

    @property
    def is_choice(self) -> bool:
        return self.options is not None


FIELDS: dict[str, FieldSpec] = {f.name: f for f in (
    FieldSpec("title", "ርዕስ", "🏷 የንብረቱን አይነት ይምረጡ ወይም ይጻፉ:",
              parse=validation.title,
              options=lambda listing: TITLES.get(listing.get("property_type"), ())),
    FieldSpec("location", "አድራሻ", "📍 አድራሻውን ያስገቡ (ለምሳሌ ቦሌ, 22 ማዞሪያ):",
              parse=validation.location),
    FieldSpec("price", "ዋጋ", "💰 ወርሃዊ ኪራዩን በብር ያስገቡ (ለምሳሌ 15000):",
              parse=validation.price),
    FieldSpec("contact_info", "ስልክ", "📞 የሚደወልበትን ስልክ ቁጥር ያስገቡ:",
              parse=validation.phone),
    FieldSpec("display_name", "ስም", "👤 በማስታወቂያው ላይ የሚታየውን ስም ያስገቡ:",
              parse=validation.display_name),
    FieldSpec("description", "መግለጫ", "📝 ስለ ንብረቱ ዝርዝር መግለጫ ይጻፉ (ቢያንስ 20 ፊደላት):",
              parse=validation.description),
    # parses to (link, platform name)
    FieldSpec("platform_link", "ሊንክ", "🔗 የሌላ ገጽ ሊንኩን ይላኩ (Facebook, TikTok, Jiji...):",
              parse=validation.platform_link),
    FieldSpec("rooms_count", "ክፍሎች", "🚪 ስንት ክፍል ነው? (1-50)",
              parse=lambda v: validation.count(v, "rooms_count")),
    FieldSpec("villa_type", "የቪላ አይነት", "🏡 የቪላውን አይነት ይምረጡ:",
              options=lambda _listing: VILLA_TYPES),
    FieldSpec("villa_type_other", "የቪላ አይነት (ሌላ)", "✍️ የቪላውን አይነት ይጻፉ:",
              parse=validation.villa_other),
    FieldSpec("floor", "ፎቅ", "🏢 ስንተኛ ፎቅ ነው? (0 ለግራውንድ)",
              parse=validation.floor),
    FieldSpec("bedrooms", "መኝታ ቤቶች", "🛏 ስንት መኝታ ቤት አለው? (1-50)",
              parse=lambda v: validation.count(v, "bedrooms")),
    FieldSpec("bathrooms", "መታጠቢያ ቤቶች", "🚿 ስንት መታጠቢያ ቤት አለው? (1-50)",
              parse=lambda v: validation.count(v, "bathrooms")),
    FieldSpec("bathroom_type", "የመታጠቢያ አይነት", "🚽 የመታጠቢያ ቤቱን አይነት ይምረጡ:",
              options=lambda listing: bathroom_options(listing.get("title"))),
    FieldSpec("property_size", "ስፋት", "📐 ስፋቱ ስንት ካሬ ሜትር ነው?",
              parse=validation.size),
)}
