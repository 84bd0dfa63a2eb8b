"""Normalized inbound events and the intents the conversation engine dispatches on.

Every provider message is turned into an ``InboundEvent`` once, and every event is
classified into exactly one ``InboundIntent``. The engine never looks at raw strings or
button id prefixes itself.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from citizen_api.schemas.webhook import WhatsAppMessage


class EventKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    INTERACTIVE = "interactive"
    LOCATION = "location"
    UNSUPPORTED = "unsupported"


class IntentKind(str, Enum):
    GREETING = "greeting"
    LANGUAGE_CHOICE = "language_choice"
    MENU_CHOICE = "menu_choice"
    CATEGORY_CHOICE = "category_choice"
    NUMBERED_CHOICE = "numbered_choice"
    OTP_CODE = "otp_code"
    FREE_TEXT = "free_text"
    SKIP = "skip"
    MEDIA = "media"
    LOCATION = "location"
    RESET = "reset"
    EMPTY = "empty"


MENU_GRIEVANCE = "grievance"
MENU_APPOINTMENT = "appointment"
MENU_TRACK = "track"
MENU_OPTIONS = (MENU_GRIEVANCE, MENU_APPOINTMENT, MENU_TRACK)

LANGUAGE_OPTION_PREFIX = "lang_"
CATEGORY_OPTION_PREFIX = "cat_"

GREETING_WORDS = {"hi", "hello", "hey", "start", "namaste", "नमस्ते", "नमस्कार"}
RESET_WORDS = {"reset", "restart"}
SKIP_WORDS = {"skip"}
LANGUAGE_WORDS = {
    "english": "en",
    "hindi": "hi",
    "हिंदी": "hi",
    "marathi": "mr",
    "मराठी": "mr",
}
MENU_WORDS = {
    "grievance": MENU_GRIEVANCE,
    "complaint": MENU_GRIEVANCE,
    "appointment": MENU_APPOINTMENT,
    "track": MENU_TRACK,
    "status": MENU_TRACK,
}

MEDIA_TYPES = ("image", "document", "video", "audio")

_DIGITS_RE = re.compile(r"^\d+$")
_LEADING_EMOJI_RE = re.compile(r"^[^\w]+", re.UNICODE)


@dataclass
class InboundEvent:
    provider_message_id: str
    channel_id: str
    sender: str
    kind: EventKind
    text: str = ""
    media_id: Optional[str] = None
    media_type: Optional[str] = None
    caption: Optional[str] = None
    option_id: Optional[str] = None
    option_title: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    contact_name: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def display_text(self) -> str:
        """Best human-readable content of the event, used for audit previews."""
        if self.kind == EventKind.INTERACTIVE:
            return self.option_title or self.option_id or ""
        if self.kind == EventKind.MEDIA:
            return self.caption or f"[{self.media_type}]"
        if self.kind == EventKind.LOCATION:
            return self.address or f"{self.latitude}, {self.longitude}"
        return self.text


@dataclass(frozen=True)
class InboundIntent:
    kind: IntentKind
    value: str = ""
    text: str = ""


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def event_from_message(
    message: WhatsAppMessage,
    channel_id: str,
    contact_name: Optional[str] = None,
) -> InboundEvent:
    """Normalize one provider message into an InboundEvent."""
    event = InboundEvent(
        provider_message_id=message.id,
        channel_id=channel_id,
        sender=message.sender,
        kind=EventKind.UNSUPPORTED,
        contact_name=contact_name,
        timestamp=_parse_timestamp(message.timestamp),
    )

    if message.type == "text" and message.text is not None:
        event.kind = EventKind.TEXT
        event.text = message.text.body or ""
    elif message.type in MEDIA_TYPES:
        media = getattr(message, message.type)
        event.kind = EventKind.MEDIA
        event.media_type = message.type
        if media is not None:
            event.media_id = media.id
            event.caption = media.caption
            event.text = media.caption or ""
    elif message.type == "interactive" and message.interactive is not None:
        reply = message.interactive.button_reply or message.interactive.list_reply
        event.kind = EventKind.INTERACTIVE
        if reply is not None:
            event.option_id = reply.id
            event.option_title = reply.title
            event.text = reply.title
    elif message.type == "button" and message.button is not None:
        event.kind = EventKind.INTERACTIVE
        event.option_id = message.button.payload
        event.option_title = message.button.text
        event.text = message.button.text or ""
    elif message.type == "location" and message.location is not None:
        event.kind = EventKind.LOCATION
        event.latitude = message.location.latitude
        event.longitude = message.location.longitude
        event.address = message.location.address or message.location.name

    return event


def _classify_option_id(option_id: str) -> Optional[InboundIntent]:
    normalized = option_id.strip().lower()
    if normalized.startswith(LANGUAGE_OPTION_PREFIX):
        return InboundIntent(IntentKind.LANGUAGE_CHOICE, normalized[len(LANGUAGE_OPTION_PREFIX):], option_id)
    if normalized.startswith(CATEGORY_OPTION_PREFIX):
        return InboundIntent(IntentKind.CATEGORY_CHOICE, normalized[len(CATEGORY_OPTION_PREFIX):], option_id)
    if normalized in MENU_OPTIONS:
        return InboundIntent(IntentKind.MENU_CHOICE, normalized, option_id)
    return None


def _classify_text(text: str, otp_length: int) -> InboundIntent:
    stripped = text.strip()
    normalized = stripped.lower()
    if not normalized:
        return InboundIntent(IntentKind.EMPTY, "", text)

    # Button titles typed back by hand often keep their emoji prefix ("🇮🇳 हिंदी").
    bare = _LEADING_EMOJI_RE.sub("", normalized).strip()
    words = {normalized, bare}

    if words & RESET_WORDS:
        return InboundIntent(IntentKind.RESET, bare, text)
    if words & SKIP_WORDS:
        return InboundIntent(IntentKind.SKIP, bare, text)
    if words & GREETING_WORDS:
        return InboundIntent(IntentKind.GREETING, bare, text)
    for word in (normalized, bare):
        if word in LANGUAGE_WORDS:
            return InboundIntent(IntentKind.LANGUAGE_CHOICE, LANGUAGE_WORDS[word], text)
        if word in MENU_WORDS:
            return InboundIntent(IntentKind.MENU_CHOICE, MENU_WORDS[word], text)

    if _DIGITS_RE.match(normalized):
        if len(normalized) == otp_length:
            return InboundIntent(IntentKind.OTP_CODE, normalized, text)
        if len(normalized) <= 2:
            return InboundIntent(IntentKind.NUMBERED_CHOICE, str(int(normalized)), text)

    return InboundIntent(IntentKind.FREE_TEXT, stripped, text)


def derive_intent(event: InboundEvent, otp_length: int = 6) -> InboundIntent:
    """Classify an event into the closed set of intents the engine understands."""
    if event.kind == EventKind.MEDIA:
        return InboundIntent(IntentKind.MEDIA, event.media_id or "", event.caption or "")
    if event.kind == EventKind.LOCATION:
        return InboundIntent(IntentKind.LOCATION, event.address or "", event.address or "")
    if event.kind == EventKind.INTERACTIVE and event.option_id:
        classified = _classify_option_id(event.option_id)
        if classified is not None:
            return classified
    if event.kind == EventKind.UNSUPPORTED:
        return InboundIntent(IntentKind.EMPTY, "", "")
    return _classify_text(event.text, otp_length)
