"""Outbound WhatsApp Cloud API gateway.

Every send returns a ``Result`` carrying the provider message id. Missing tenant
credentials are a failure result, never an exception. Structured prompts (buttons, lists)
that the provider rejects are re-sent as numbered plain text.
"""

from __future__ import annotations

from typing import Optional

import httpx

from citizen_api.logging_config import get_logger
from citizen_api.services.outbound import ListSection, MessageKind, Option, OutboundMessage
from citizen_api.services.result import Result
from citizen_api.services.tenant_directory import ChannelCredentials

logger = get_logger("whatsapp_service")

MAX_BUTTONS = 3
MAX_BUTTON_TITLE_LENGTH = 20
MAX_LIST_ROWS = 10
MAX_LIST_ROW_TITLE_LENGTH = 24
MAX_LIST_BUTTON_LENGTH = 20
DEFAULT_LIST_BUTTON = "Options"

NOT_CONFIGURED = "not_configured"
PROVIDER_REJECTED = "provider_rejected"
REQUEST_FAILED = "request_failed"


def _clip(text: str, limit: int) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[: limit - 1] + "…"


def format_numbered_options(body: str, options: list[Option]) -> str:
    lines = [f"{index}. {option.title}" for index, option in enumerate(options, start=1)]
    return f"{body}\n\n" + "\n".join(lines)


def format_numbered_sections(body: str, sections: list[ListSection]) -> str:
    blocks = []
    index = 1
    for section in sections:
        lines = [f"{section.title}:"] if section.title else []
        for row in section.rows:
            lines.append(f"{index}. {row.title}")
            index += 1
        blocks.append("\n".join(lines))
    return f"{body}\n\n" + "\n\n".join(blocks)


def _render_section(section: ListSection) -> dict:
    rendered = {
        "rows": [{"id": row.id, "title": _clip(row.title, MAX_LIST_ROW_TITLE_LENGTH)} for row in section.rows],
    }
    if section.title:
        rendered["title"] = _clip(section.title, MAX_LIST_ROW_TITLE_LENGTH)
    return rendered


class WhatsAppGateway:
    def __init__(self, base_url: str = "https://graph.facebook.com/v18.0", timeout_seconds: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def _post(self, channel: ChannelCredentials, payload: dict) -> Result[str]:
        if not channel.is_configured:
            logger.warning("WhatsApp not configured for tenant channel", extra={"context": {"to": payload.get("to")}})
            return Result.failure("WhatsApp not configured", NOT_CONFIGURED)

        url = f"{self.base_url}/{channel.phone_number_id}/messages"
        headers = {"Authorization": f"Bearer {channel.access_token}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(url, json=payload, headers=headers)
        except Exception as e:
            logger.error(f"WhatsApp API request failed: {e}", extra={"context": {"to": payload.get("to")}})
            return Result.from_exception(e, REQUEST_FAILED)

        if response.status_code >= 400:
            logger.warning(
                "WhatsApp API rejected message",
                extra={
                    "context": {
                        "to": payload.get("to"),
                        "type": payload.get("type"),
                        "status": response.status_code,
                        "body": response.text[:200],
                    }
                },
            )
            return Result.failure(f"HTTP {response.status_code}: {response.text[:200]}", PROVIDER_REJECTED)

        try:
            data = response.json()
            message_id = data["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError):
            message_id = None
        return Result.success(message_id)

    async def send_text(self, channel: ChannelCredentials, to: str, body: str) -> Result[str]:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }
        return await self._post(channel, payload)

    async def send_buttons(
        self,
        channel: ChannelCredentials,
        to: str,
        body: str,
        options: list[Option],
    ) -> Result[str]:
        if len(options) > MAX_BUTTONS:
            logger.warning(f"Button prompt has {len(options)} options, truncating to {MAX_BUTTONS}")
            options = options[:MAX_BUTTONS]

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": body},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": option.id, "title": _clip(option.title, MAX_BUTTON_TITLE_LENGTH)}}
                        for option in options
                    ]
                },
            },
        }
        result = await self._post(channel, payload)
        if result.ok or result.error_code != PROVIDER_REJECTED:
            return result

        logger.info("Falling back to numbered text for button prompt", extra={"context": {"to": to}})
        return await self.send_text(channel, to, format_numbered_options(body, options))

    async def send_list(
        self,
        channel: ChannelCredentials,
        to: str,
        body: str,
        button_text: Optional[str],
        sections: list[ListSection],
    ) -> Result[str]:
        remaining = MAX_LIST_ROWS
        bounded: list[ListSection] = []
        for section in sections:
            if remaining <= 0:
                break
            rows = section.rows[:remaining]
            remaining -= len(rows)
            bounded.append(ListSection(title=section.title, rows=tuple(rows)))
        if sum(len(s.rows) for s in sections) > MAX_LIST_ROWS:
            logger.warning(f"List prompt exceeds {MAX_LIST_ROWS} rows, truncating")

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "interactive",
            "interactive": {
                "type": "list",
                "body": {"text": body},
                "action": {
                    "button": _clip(button_text or DEFAULT_LIST_BUTTON, MAX_LIST_BUTTON_LENGTH),
                    "sections": [_render_section(section) for section in bounded],
                },
            },
        }
        result = await self._post(channel, payload)
        if result.ok or result.error_code != PROVIDER_REJECTED:
            return result

        logger.info("Falling back to numbered text for list prompt", extra={"context": {"to": to}})
        return await self.send_text(channel, to, format_numbered_sections(body, bounded))

    async def deliver(self, channel: ChannelCredentials, to: str, message: OutboundMessage) -> Result[str]:
        """Send one engine reply, picking buttons or a list by option count."""
        if message.kind == MessageKind.OPTIONS and message.options:
            if len(message.options) <= MAX_BUTTONS:
                return await self.send_buttons(channel, to, message.body, message.options)
            section = ListSection(title="", rows=tuple(message.options))
            return await self.send_list(channel, to, message.body, message.button_text, [section])
        return await self.send_text(channel, to, message.body)
