"""Lifecycle events emitted to the audit collaborator."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .logging_config import LOGGER


class EventKind(str, Enum):
    PKI_INITIALIZATION = "PKI_INITIALIZATION"
    CA_CREATION = "CA_CREATION"
    DH_GENERATION = "DH_GENERATION"
    SERVER_CERTIFICATE = "SERVER_CERTIFICATE"
    CLIENT_CERTIFICATE = "CLIENT_CERTIFICATE"
    CLIENT_REVOCATION = "CLIENT_REVOCATION"
    CERTIFICATE_COPY = "CERTIFICATE_COPY"
    CRL_GENERATION = "CRL_GENERATION"
    TLS_AUTH_KEY = "TLS_AUTH_KEY"
    VALIDATION = "VALIDATION"
    BACKUP = "BACKUP"


class EventPhase(str, Enum):
    ATTEMPT = "ATTEMPT"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class Actor:
    """Who asked for the operation and from where."""

    username: str = "system"
    source_address: str = "localhost"


SYSTEM_ACTOR = Actor()


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    phase: EventPhase
    entity: str
    actor: Actor
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.kind.value}_{self.phase.value}"


class EventSink(Protocol):
    """Audit collaborator interface; formatting and persistence live behind it."""

    def emit(self, event: LifecycleEvent) -> None: ...


class LoggerEventSink:
    """Default sink writing events through the JSON logger."""

    def emit(self, event: LifecycleEvent) -> None:
        level = "warning" if event.phase is EventPhase.FAILURE else "info"
        getattr(LOGGER, level)(
            "%s entity=%s actor=%s",
            event.name,
            event.entity,
            event.actor.username,
            extra={
                "event": event.name,
                "entity": event.entity,
                "actor": event.actor.username,
                "sourceAddress": event.actor.source_address,
                "details": event.details,
            },
        )


class EventEmitter:
    """Binds a sink so call sites only name the kind, phase and entity."""

    def __init__(self, sink: EventSink | None = None) -> None:
        self.sink: EventSink = sink or LoggerEventSink()

    def emit(
        self,
        kind: EventKind,
        phase: EventPhase,
        entity: str,
        actor: Actor = SYSTEM_ACTOR,
        **details: Any,
    ) -> None:
        self.sink.emit(LifecycleEvent(kind, phase, entity, actor, details))
