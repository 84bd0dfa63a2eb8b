"""Pydantic models for the WhatsApp Cloud API webhook payload."""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppMedia(BaseModel):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None
    sha256: Optional[str] = None


class WhatsAppLocation(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    address: Optional[str] = None


class ReplyOption(BaseModel):
    id: str = ""
    title: str = ""
    description: Optional[str] = None


class WhatsAppInteractive(BaseModel):
    type: Optional[str] = None
    button_reply: Optional[ReplyOption] = None
    list_reply: Optional[ReplyOption] = None


class WhatsAppButton(BaseModel):
    """Quick-reply button on a template message."""

    payload: Optional[str] = None
    text: Optional[str] = None


class WhatsAppMessage(BaseModel):
    id: str
    sender: str = Field(validation_alias=AliasChoices("from", "sender"))
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[WhatsAppText] = None
    image: Optional[WhatsAppMedia] = None
    document: Optional[WhatsAppMedia] = None
    video: Optional[WhatsAppMedia] = None
    audio: Optional[WhatsAppMedia] = None
    location: Optional[WhatsAppLocation] = None
    interactive: Optional[WhatsAppInteractive] = None
    button: Optional[WhatsAppButton] = None


class WhatsAppProfile(BaseModel):
    name: Optional[str] = None


class WhatsAppContact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[WhatsAppProfile] = None


class WhatsAppMetadata(BaseModel):
    display_phone_number: Optional[str] = None
    phone_number_id: Optional[str] = None


class ChangeValue(BaseModel):
    messaging_product: Optional[str] = None
    metadata: Optional[WhatsAppMetadata] = None
    contacts: list[WhatsAppContact] = Field(default_factory=list)
    messages: list[dict[str, Any]] = Field(default_factory=list)
    statuses: list[dict[str, Any]] = Field(default_factory=list)


class WebhookChange(BaseModel):
    field: Optional[str] = None
    value: Optional[ChangeValue] = None


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[WebhookEntry] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    success: bool
    message: str
    processed: int = 0
    duplicates: int = 0
    skipped: int = 0
