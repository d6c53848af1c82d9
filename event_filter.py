#!/usr/bin/env python3
"""
Which watch events are allowed to trigger a reconcile.

The registration pipeline re-validates the full state on every pass it
does get, so everything except the few events below is dropped to avoid
reconcile storms. Retries of a handler that already failed are requeues,
not events, and never go through this filter.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from config import CLUSTER_TYPE_REGISTERED, KUBECONFIG_SUFFIX, SECRET_FINALIZER
from models import ClusterManager, ClusterRegistration, CredentialSecret, Phase


class EventType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    GENERIC = "generic"


@dataclass(frozen=True)
class RegistrationEvent:
    type: EventType
    registration: ClusterRegistration


@dataclass(frozen=True)
class ClusterManagerEvent:
    type: EventType
    cluster_manager: ClusterManager


@dataclass(frozen=True)
class SecretEvent:
    type: EventType
    secret: CredentialSecret


Event = Union[RegistrationEvent, ClusterManagerEvent, SecretEvent]


def event_type_from_watch(watch_type: Optional[str]) -> EventType:
    """Map a raw watch event type; None is kopf's initial listing"""
    return {
        None: EventType.CREATE,
        "ADDED": EventType.CREATE,
        "MODIFIED": EventType.UPDATE,
        "DELETED": EventType.DELETE,
    }.get(watch_type, EventType.GENERIC)


def is_credential_secret_name(name: str) -> bool:
    return bool(name) and name.endswith(KUBECONFIG_SUFFIX) and len(name) > len(KUBECONFIG_SUFFIX)


def should_reconcile(event: Event) -> bool:
    if isinstance(event, RegistrationEvent):
        # Only fresh registrations; anything with a phase was already picked up
        return event.type == EventType.CREATE and event.registration.status.phase == Phase.NONE

    if isinstance(event, ClusterManagerEvent):
        return (
            event.type == EventType.DELETE
            and event.cluster_manager.cluster_type == CLUSTER_TYPE_REGISTERED
        )

    if isinstance(event, SecretEvent):
        return (
            event.type in (EventType.CREATE, EventType.UPDATE)
            and is_credential_secret_name(event.secret.name)
            and not event.secret.deletion_timestamp
        )

    raise TypeError(f"unsupported event {event!r}")


def should_release_finalizer(event: SecretEvent) -> bool:
    """A credential secret being deleted that still carries our finalizer"""
    return (
        event.type in (EventType.CREATE, EventType.UPDATE)
        and is_credential_secret_name(event.secret.name)
        and bool(event.secret.deletion_timestamp)
        and SECRET_FINALIZER in event.secret.finalizers
    )
