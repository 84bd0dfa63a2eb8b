from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class MessageKind(str, Enum):
    TEXT = "text"
    OPTIONS = "options"


@dataclass(frozen=True)
class Option:
    id: str
    title: str


@dataclass(frozen=True)
class ListSection:
    title: str
    rows: tuple[Option, ...]


@dataclass
class OutboundMessage:
    """A rendering-ready reply. The gateway adds destination and credentials."""

    kind: MessageKind
    body: str
    options: list[Option] = field(default_factory=list)
    button_text: Optional[str] = None

    @classmethod
    def text(cls, body: str) -> "OutboundMessage":
        return cls(kind=MessageKind.TEXT, body=body)

    @classmethod
    def choices(cls, body: str, options: list[Option]) -> "OutboundMessage":
        return cls(kind=MessageKind.OPTIONS, body=body, options=list(options))

    @property
    def option_ids(self) -> list[str]:
        return [option.id for option in self.options]
