# ─── validation.py ─────────────────────────────────────────────────
# Parsers for every free-text step. Each returns the value to store or
# raises ValidationError with the text to re-prompt with.

import re
from urllib.parse import urlsplit

import config
from errors import ValidationError

PHONE_RE = re.compile(r"^\+?[\d\s\-()]{10,15}$")
_NUM_RE  = re.compile(r"^\d+(?:\.\d+)?$")

GROUND_FLOOR = "ግራውንድ"
GROUND_WORDS = {"0", "ground", "g", "ግራውንድ", "ምድር"}

# (host fragment, platform name); first match wins
PLATFORMS = [
    (("facebook.com", "fb.com", "fb.me"), "Facebook"),
    (("tiktok.com",), "TikTok"),
    (("jiji.",), "Jiji"),
    (("youtube.com", "youtu.be"), "YouTube"),
    (("instagram.com",), "Instagram"),
    (("t.me", "telegram.me"), "Telegram"),
]
OTHER_PLATFORM = "ሌላ"


def _min_len(value: str, n: int, message: str, field: str | None = None) -> str:
    value = (value or "").strip()
    if len(value) < n:
        raise ValidationError(message, field)
    return value


def name(value: str) -> str:
    return _min_len(value, 2, "❌ እባክዎ ትክክለኛ ስም ያስገቡ (ቢያንስ 2 ፊደላት)።", "name")


def phone(value: str) -> str:
    value = (value or "").strip()
    if not PHONE_RE.match(value):
        raise ValidationError(
            "❌ እባክዎ ትክክለኛ ስልክ ቁጥር ያስገቡ (ለምሳሌ +251911223344)።", "phone"
        )
    return value


def title(value: str) -> str:
    return _min_len(value, 5, "❌ ርዕሱ ቢያንስ 5 ፊደላት መሆን አለበት።", "title")


def location(value: str) -> str:
    return _min_len(value, 3, "❌ አድራሻው ቢያንስ 3 ፊደላት መሆን አለበት።", "location")


def description(value: str) -> str:
    value = _min_len(value, 20, "❌ መግለጫው ቢያንስ 20 ፊደላት መሆን አለበት።", "description")
    if len(value) > config.DESCRIPTION_MAX_LEN:
        raise ValidationError(
            f"❌ መግለጫው ከ{config.DESCRIPTION_MAX_LEN} ፊደላት መብለጥ የለበትም።",
            "description",
        )
    return value


def display_name(value: str) -> str:
    return _min_len(value, 2, "❌ ስሙ ቢያንስ 2 ፊደላት መሆን አለበት።", "display_name")


def count(value: str, field: str = "count") -> int:
    """Rooms, bedrooms, bathrooms: whole number 1–50."""
    value = (value or "").strip()
    if not value.isdigit() or not 1 <= int(value) <= 50:
        raise ValidationError("❌ እባክዎ ከ1 እስከ 50 ያለ ቁጥር ያስገቡ።", field)
    return int(value)


def floor(value: str) -> str:
    value = (value or "").strip()
    if value.lower() in GROUND_WORDS:
        return GROUND_FLOOR
    if not value.isdigit() or int(value) > 200:
        raise ValidationError("❌ እባክዎ ትክክለኛ የፎቅ ቁጥር ያስገቡ (0 ለግራውንድ)።", "floor")
    n = int(value)
    return GROUND_FLOOR if n == 0 else f"{n}ኛ ፎቅ"


def _number(value: str) -> float | None:
    value = (value or "").strip().replace(",", "").replace(" ", "")
    if not _NUM_RE.match(value):
        return None
    n = float(value)
    return n if n > 0 else None


def _fmt(n: float) -> str:
    return f"{int(n):,}" if n == int(n) else f"{n:,.2f}"


def size(value: str) -> str:
    n = _number(value)
    if n is None or n > 1_000_000:
        raise ValidationError("❌ እባክዎ ትክክለኛ ስፋት በካሬ ሜትር ያስገቡ (ለምሳሌ 120)።", "property_size")
    return f"{_fmt(n)} ካሬ"


def price(value: str) -> str:
    n = _number(value)
    if n is None:
        raise ValidationError("❌ እባክዎ ትክክለኛ ዋጋ በቁጥር ያስገቡ (ለምሳሌ 15000)።", "price")
    return f"{_fmt(n)} ብር"


def price_amount(price_text: str | None) -> int | None:
    """'15,000 ብር' → 15000; None when no digits."""
    digits = re.sub(r"\D", "", (price_text or "").split(".")[0])
    return int(digits) if digits else None


def reject_reason(value: str) -> str:
    return _min_len(value, 3, "❌ Reason must be at least 3 characters. Please try again:", "reason")


def device_id(value: str) -> str:
    value = _min_len(value, 3, "❌ Device ID must be at least 3 characters.", "did")
    if any(c.isspace() for c in value):
        raise ValidationError("❌ Device ID must not contain spaces.", "did")
    return value


def token_days(value: str) -> int:
    value = (value or "").strip()
    if not value.isdigit() or not 1 <= int(value) <= 3650:
        raise ValidationError("❌ Enter a number of days between 1 and 3650.", "days")
    return int(value)


def token_minutes(value: str) -> int:
    value = (value or "").strip()
    if not value.isdigit() or not 1 <= int(value) <= 1440:
        raise ValidationError("❌ Enter a number of minutes between 1 and 1440.", "minutes")
    return int(value)


def _looks_like_url(candidate: str) -> bool:
    if any(c.isspace() for c in candidate):
        return False
    parts = urlsplit(candidate)
    return parts.scheme in ("http", "https") and "." in parts.netloc


def platform_link(value: str) -> tuple[str, str]:
    """Returns (normalized link, platform name)."""
    link = (value or "").strip()
    if not _looks_like_url(link):
        link = "http://" + link
        if not _looks_like_url(link):
            raise ValidationError(
                "❌ ትክክለኛ ሊንክ አይደለም። እባክዎ እንደገና ይሞክሩ ወይም ዝለል ይጫኑ።",
                "platform_link",
            )
    host = urlsplit(link).netloc.lower()
    for needles, platform in PLATFORMS:
        if any(n in host for n in needles):
            return link, platform
    return link, OTHER_PLATFORM


def villa_other(value: str) -> str:
    return _min_len(value, 2, "❌ ቢያንስ 2 ፊደላት ያስገቡ።", "villa_type_other")
