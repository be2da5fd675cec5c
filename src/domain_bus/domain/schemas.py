"""Event type → payload schema registry.

Maps dot-delimited event types to the Pydantic models describing their
payloads.  Used at system boundaries to turn an untrusted payload into a
typed value.  Event types without a registered model stay opaque.

Usage::

    @register_payload("product.created")
    class ProductCreated(BaseModel):
        id: str
        title: str
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel

M = TypeVar("M", bound=type[BaseModel])


class PayloadRegistry:
    """Registry of payload models keyed by event type."""

    def __init__(self) -> None:
        self._models: dict[str, type[BaseModel]] = {}

    def register(self, event_type: str, model: type[BaseModel]) -> None:
        """Register *model* for *event_type*, replacing any previous entry."""
        if not event_type:
            raise ValueError("event_type must be non-empty")
        self._models[event_type] = model

    def unregister(self, event_type: str) -> None:
        self._models.pop(event_type, None)

    def get(self, event_type: str) -> type[BaseModel] | None:
        """Look up the payload model for *event_type*."""
        return self._models.get(event_type)

    def event_types(self) -> list[str]:
        """Return all registered event types, sorted."""
        return sorted(self._models)

    def validate(self, event_type: str, payload: Any) -> Any:
        """Validate *payload* for *event_type*.

        Returns a model instance for registered types and the payload
        unchanged otherwise.  Raises ``pydantic.ValidationError`` when the
        payload does not fit the registered model.
        """
        model = self._models.get(event_type)
        if model is None:
            return payload
        if isinstance(payload, model):
            return payload
        return model.model_validate(payload)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._models

    def __len__(self) -> int:
        return len(self._models)


PAYLOAD_SCHEMAS = PayloadRegistry()


def register_payload(
    event_type: str,
    registry: PayloadRegistry | None = None,
) -> Callable[[M], M]:
    """Class decorator registering a payload model for *event_type*."""
    target = registry if registry is not None else PAYLOAD_SCHEMAS

    def decorator(model: M) -> M:
        target.register(event_type, model)
        return model

    return decorator
