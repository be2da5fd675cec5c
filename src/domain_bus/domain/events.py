"""Domain event envelope.

Design invariants
-----------------
1.  Every event is **immutable** (``frozen=True``).  Derived events are
    produced with ``derive()`` / ``with_metadata()``, never by mutation.
2.  ``id`` is a UUID4 generated at creation time; it doubles as the
    broker ``message_id``.
3.  ``type`` is a dot-delimited routing key (``"product.created"``) and
    is never empty.
4.  ``metadata.version`` is the payload schema version, always ``>= 1``.
5.  ``metadata.correlation_id`` links all events that originate from the
    same external trigger; ``causation_id`` points at the event that
    directly caused this one.

The wire form (``to_dict`` / ``from_dict``) uses camelCase keys so that
services written in other languages can share the exchange.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from domain_bus.core.context import get_correlation_id
from domain_bus.core.ids import new_id, utc_now_iso

T = TypeVar("T")

ActorType = Literal["user", "app", "system"]

# snake_case attribute -> camelCase wire key
_METADATA_WIRE_KEYS: dict[str, str] = {
    "source": "source",
    "correlation_id": "correlationId",
    "causation_id": "causationId",
    "version": "version",
    "tenant_id": "shopId",
    "actor_id": "actorId",
    "actor_type": "actorType",
}
_METADATA_ATTRS: dict[str, str] = {v: k for k, v in _METADATA_WIRE_KEYS.items()}
# Accepted on input only.
_METADATA_ATTRS["tenantId"] = "tenant_id"


@dataclass(frozen=True)
class EventMetadata:
    """Routing and tracing metadata carried by every event.

    source          Service or module that produced the event.
    correlation_id  Groups events from the same causal chain.
    causation_id    The ``id`` of the event that directly caused this one.
    version         Payload schema version (``>= 1``).
    tenant_id       Tenant (shop) identifier; ``shopId`` on the wire.
    actor_id        Identity of whoever triggered the event.
    actor_type      ``user`` | ``app`` | ``system``.
    """

    source: str = "unknown"
    correlation_id: str | None = None
    causation_id: str | None = None
    version: int = 1
    tenant_id: str | None = None
    actor_id: str | None = None
    actor_type: ActorType | None = None

    def __post_init__(self) -> None:
        if isinstance(self.version, bool) or not isinstance(self.version, int):
            raise ValueError(f"metadata.version must be an integer, got {self.version!r}")
        if self.version < 1:
            raise ValueError(f"metadata.version must be >= 1, got {self.version}")

    def to_dict(self) -> dict[str, Any]:
        """Wire form; unset optional fields are omitted."""
        out: dict[str, Any] = {}
        for attr, key in _METADATA_WIRE_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                out[key] = value
        return out

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> EventMetadata:
        """Build from a mapping with snake_case or camelCase keys.

        Unknown keys are ignored.
        """
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            attr = _METADATA_ATTRS.get(key, key)
            if attr in _METADATA_WIRE_KEYS and value is not None:
                kwargs[attr] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class DomainEvent(Generic[T]):
    """Immutable envelope wrapping any payload with routing metadata."""

    type: str
    payload: T
    id: str = field(default_factory=new_id)
    timestamp: str = field(default_factory=utc_now_iso)
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def __post_init__(self) -> None:
        if not self.type:
            raise ValueError("event type must be a non-empty string")
        if not self.id:
            raise ValueError("event id must be a non-empty string")

    # Copy-on-derive ------------------------------------------------------
    def derive(self, **changes: Any) -> DomainEvent[Any]:
        """Return a copy with *changes* applied to the top-level fields."""
        return dataclasses.replace(self, **changes)

    def with_metadata(self, **changes: Any) -> DomainEvent[T]:
        """Return a copy whose metadata has *changes* applied."""
        return dataclasses.replace(
            self, metadata=dataclasses.replace(self.metadata, **changes)
        )

    # Wire form -----------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DomainEvent[Any]:
        """Rebuild an event from its wire form.

        No schema checks beyond the dataclass invariants; untrusted input
        goes through ``validate_domain_event`` first.
        """
        return cls(
            id=data["id"],
            type=data["type"],
            timestamp=data["timestamp"],
            payload=data.get("payload"),
            metadata=EventMetadata.from_mapping(data.get("metadata") or {}),
        )


def create_domain_event(
    type: str,
    payload: T,
    *,
    id: str | None = None,
    timestamp: str | None = None,
    metadata: Mapping[str, Any] | EventMetadata | None = None,
) -> DomainEvent[T]:
    """Create a ``DomainEvent`` with generated identity and defaults.

    Missing ``id`` and ``timestamp`` are generated, ``metadata.source``
    defaults to ``"unknown"`` and ``metadata.version`` to ``1``.  A missing
    ``correlation_id`` is taken from the active correlation context, or
    freshly generated outside one.
    """
    if isinstance(metadata, EventMetadata):
        meta = metadata
    else:
        meta = EventMetadata.from_mapping(metadata or {})

    if meta.correlation_id is None:
        meta = dataclasses.replace(
            meta, correlation_id=get_correlation_id() or new_id()
        )

    return DomainEvent(
        type=type,
        payload=payload,
        id=id or new_id(),
        timestamp=timestamp or utc_now_iso(),
        metadata=meta,
    )
