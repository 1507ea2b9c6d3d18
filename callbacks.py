# ─── callbacks.py ──────────────────────────────────────────────────
# Inline-button payloads. Every callback_data the bot emits is an Action
# encoded as "<act>:<listing_id>:<arg>" and parsed back exactly once, in
# the router. Non-ASCII option labels travel as tuple indices so the
# payload stays under Telegram's 64-byte limit.

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from telegram import InlineKeyboardButton


class Act(str, Enum):
    # user flow
    START_LISTING = "go"
    ROLE          = "role"      # arg: broker | owner
    CATEGORY      = "cat"       # arg: residential | commercial
    TITLE         = "ttl"       # arg: index into catalog.TITLES[category]
    OPTION        = "opt"       # arg: index into the current field's options
    CONTACT       = "cnt"       # arg: own | custom
    NAME_DISPLAY  = "nd"        # arg: own | nick
    SKIP          = "skip"      # arg: step being skipped
    PHOTOS_DONE   = "pdone"
    CONFIRM       = "ok"
    RESTART       = "again"
    USER_EDIT     = "ue"        # arg: field to edit, none for the menu
    USER_EDIT_OPT = "ueo"       # arg: option index
    USER_EDIT_DONE = "uedn"
    MY_LISTINGS   = "mine"      # arg: page
    RENTED_ASK    = "rent"
    RENTED_OK     = "rentok"    # listing_id
    ACCOUNT_EDIT  = "acc"       # arg: name | phone
    CANCEL        = "x"
    # admin
    PANEL         = "adm"
    PENDING       = "pend"
    APPROVE       = "apr"
    REJECT        = "rej"
    EDIT          = "edt"
    EDIT_FIELD    = "ef"        # arg: column name
    EDIT_OPTION   = "eo"        # arg: option index
    EDIT_DONE     = "edn"
    MEDIA_MODE    = "med"       # arg: add | replace | delete
    MEDIA_DONE    = "mdn"
    TOKEN_MENU    = "tok"
    TOKEN_KIND    = "tk"        # arg: license | recovery
    TOKEN_MODE    = "tm"        # arg: permanent | periodic
    TOKEN_BACK    = "tb"        # arg: step to return to
    TOKEN_SKIP    = "tn"        # skip the note
    BROADCAST     = "bc"
    AUDIENCE      = "bca"       # arg: all | brokers | owners | tenants
    BROADCAST_GO  = "bcs"
    ADMIN_NEW     = "anew"


ADMIN_ACTS = {
    Act.PANEL, Act.PENDING, Act.APPROVE, Act.REJECT, Act.EDIT, Act.EDIT_FIELD,
    Act.EDIT_OPTION, Act.EDIT_DONE, Act.MEDIA_MODE, Act.MEDIA_DONE,
    Act.TOKEN_MENU, Act.TOKEN_KIND, Act.TOKEN_MODE, Act.TOKEN_BACK, Act.TOKEN_SKIP,
    Act.BROADCAST, Act.AUDIENCE, Act.BROADCAST_GO, Act.ADMIN_NEW,
}


@dataclass(frozen=True)
class Action:
    act: Act
    listing_id: Optional[int] = None
    arg: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.act in ADMIN_ACTS

    @property
    def index(self) -> Optional[int]:
        """``arg`` as an option index, or None."""
        if self.arg is not None and self.arg.isdigit():
            return int(self.arg)
        return None

    def encode(self) -> str:
        lid = "" if self.listing_id is None else str(self.listing_id)
        data = f"{self.act.value}:{lid}:{self.arg or ''}".rstrip(":")
        if len(data.encode("utf-8")) > 64:
            raise ValueError(f"callback data too long: {data!r}")
        return data


def parse_action(data: str | None) -> Optional[Action]:
    """callback_data → Action; None for anything we did not emit."""
    if not data:
        return None
    head, _, rest = data.partition(":")
    try:
        act = Act(head)
    except ValueError:
        return None
    lid, _, arg = rest.partition(":")
    if lid and not lid.isdigit():
        return None
    return Action(act, int(lid) if lid else None, arg or None)


def button(text: str, act: Act, listing_id: Optional[int] = None,
           arg: Optional[str] = None) -> InlineKeyboardButton:
    return InlineKeyboardButton(text, callback_data=Action(act, listing_id, arg).encode())
