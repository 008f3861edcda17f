"""Webhook definition provider backed by a JSON definitions file."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from hookmeter.models import WebhookDefinition

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when webhook definitions cannot be loaded."""


def load_definitions_from_file(path: str) -> list[WebhookDefinition]:
    """Load webhook definitions from a JSON array file."""
    raw = json.loads(Path(path).read_text())
    if not isinstance(raw, list):
        raise RegistryError(f"{path}: expected a JSON array of webhook definitions")
    definitions: list[WebhookDefinition] = []
    for index, item in enumerate(raw):
        try:
            definitions.append(WebhookDefinition.model_validate(item))
        except PydanticValidationError as exc:
            raise RegistryError(f"{path}: invalid definition at index {index}: {exc}") from exc
    return definitions


class WebhookRegistry:
    """Read-only lookup of webhook definitions by id."""

    def __init__(self, definitions: list[WebhookDefinition] | None = None) -> None:
        self._by_id: dict[str, WebhookDefinition] = {}
        for definition in definitions or []:
            if definition.id in self._by_id:
                raise RegistryError(f"Duplicate webhook id '{definition.id}'")
            self._by_id[definition.id] = definition

    @classmethod
    def from_file(cls, path: str) -> WebhookRegistry:
        if not Path(path).exists():
            logger.warning("Webhook definitions file %s not found; registry is empty", path)
            return cls()
        definitions = load_definitions_from_file(path)
        logger.info("Loaded %d webhook definitions from %s", len(definitions), path)
        return cls(definitions)

    def get_by_id(self, webhook_id: str) -> WebhookDefinition | None:
        return self._by_id.get(webhook_id)

    def list_for_client(self, client_id: str) -> list[WebhookDefinition]:
        return [d for d in self._by_id.values() if d.client_id == client_id]

    def __len__(self) -> int:
        return len(self._by_id)
