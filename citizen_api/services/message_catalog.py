from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from citizen_api.constants import DEFAULT_LANGUAGE
from citizen_api.logging_config import get_logger

logger = get_logger("message_catalog")

_DEFAULT_CATALOG_PATH = Path(__file__).resolve().parents[1] / "data" / "messages.yaml"


@lru_cache(maxsize=4)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.warning(f"Message catalog not found: {path}")
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


class MessageCatalog:
    """Localized prompt texts, keyed by message key and language code."""

    def __init__(self, path: Path | None = None):
        self.path = path or _DEFAULT_CATALOG_PATH

    @property
    def entries(self) -> dict:
        return _load_yaml(self.path)

    def render(self, key: str, language: str = DEFAULT_LANGUAGE, **values: Any) -> str:
        entry = self.entries.get(key)
        if not isinstance(entry, dict):
            logger.error(f"Missing message key: {key}")
            return key
        template = entry.get(language) or entry.get(DEFAULT_LANGUAGE) or ""
        if not values:
            return template
        try:
            return template.format(**values)
        except (KeyError, IndexError, ValueError) as e:
            logger.error(
                "Failed to render message",
                extra={"context": {"key": key, "language": language, "error": str(e)}},
            )
            return template
