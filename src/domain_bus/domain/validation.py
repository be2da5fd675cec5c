"""Boundary validation for domain events.

Events arriving from outside the process (broker messages, API payloads)
are checked against ``DomainEventSchema`` before they reach a handler.
``validate_domain_event`` never raises: callers branch on the
``success`` discriminant of the returned result.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictInt, ValidationError

from .events import DomainEvent, EventMetadata
from .schemas import PayloadRegistry


class EventMetadataSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source: str = Field(min_length=1)
    correlation_id: str | None = Field(default=None, alias="correlationId")
    causation_id: str | None = Field(default=None, alias="causationId")
    version: StrictInt = Field(ge=1)
    tenant_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("shopId", "tenantId", "tenant_id"),
    )
    actor_id: str | None = Field(default=None, alias="actorId")
    actor_type: Literal["user", "app", "system"] | None = Field(
        default=None, alias="actorType"
    )


class DomainEventSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    timestamp: str = Field(min_length=1)
    payload: Any = None
    metadata: EventMetadataSchema


@dataclass(frozen=True)
class ValidationIssue:
    """One problem found in the input, located by a dotted path."""

    path: str
    message: str


@dataclass(frozen=True)
class ValidationSuccess:
    data: DomainEvent[Any]
    success: Literal[True] = True


@dataclass(frozen=True)
class ValidationFailure:
    errors: tuple[ValidationIssue, ...]
    success: Literal[False] = False


ValidationResult = ValidationSuccess | ValidationFailure


def _issues(exc: ValidationError, prefix: str = "") -> tuple[ValidationIssue, ...]:
    issues = []
    for err in exc.errors():
        path = ".".join(str(part) for part in err.get("loc", ()))
        if prefix:
            path = f"{prefix}.{path}" if path else prefix
        issues.append(ValidationIssue(path=path, message=err.get("msg", "invalid")))
    return tuple(issues)


def validate_domain_event(
    input: Any,
    *,
    payload_registry: PayloadRegistry | None = None,
) -> ValidationResult:
    """Validate an untrusted value against the domain event schema.

    With a *payload_registry*, the payload of a registered event type is
    validated too and the returned event carries the model instance.
    """
    try:
        parsed = DomainEventSchema.model_validate(input)
    except ValidationError as exc:
        return ValidationFailure(errors=_issues(exc))

    payload = parsed.payload
    if payload_registry is not None:
        try:
            payload = payload_registry.validate(parsed.type, payload)
        except ValidationError as exc:
            return ValidationFailure(errors=_issues(exc, prefix="payload"))

    meta = parsed.metadata
    event = DomainEvent(
        id=parsed.id,
        type=parsed.type,
        timestamp=parsed.timestamp,
        payload=payload,
        metadata=EventMetadata(
            source=meta.source,
            correlation_id=meta.correlation_id,
            causation_id=meta.causation_id,
            version=meta.version,
            tenant_id=meta.tenant_id,
            actor_id=meta.actor_id,
            actor_type=meta.actor_type,
        ),
    )
    return ValidationSuccess(data=event)
