#!/usr/bin/env python3
"""
Typed views over the resources the operator reads and writes.

The kubernetes API hands out plain dicts for custom resources; these
dataclasses pin down the handful of fields the controllers care about and
carry the phase state machine of ClusterRegistration.
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from config import (
    ANNOTATION_CREATOR,
    ANNOTATION_OWNER,
    KUBECONFIG_SECRET_KEY,
    LABEL_CLUSTER_TYPE,
    LABEL_PARENT,
)
from errors import PhaseTransitionError


class Phase(str, Enum):
    NONE = ""
    VALIDATED = "Validated"
    SECRET_CREATED = "SecretCreated"
    SUCCESS = "Success"
    FAILED = "Failed"
    DELETED = "Deleted"


class Reason(str, Enum):
    NONE = ""
    INVALID_KUBECONFIG = "InvalidKubeconfig"
    CLUSTER_NOT_FOUND = "ClusterNotFound"
    CLUSTER_NAME_DUPLICATED = "ClusterNameDuplicated"


CLUSTER_DELETED_REASON = "cluster is deleted"

# Forward order of the onboarding pipeline
_PHASE_ORDER = {
    Phase.NONE: 0,
    Phase.VALIDATED: 1,
    Phase.SECRET_CREATED: 2,
    Phase.SUCCESS: 3,
}


def parse_phase(value: Optional[str]) -> Phase:
    """Map a stored phase string onto Phase, ignoring case"""
    if not value:
        return Phase.NONE
    for phase in Phase:
        if phase.value.lower() == value.lower():
            return phase
    raise ValueError(f"unknown phase {value!r}")


def can_transition(current: Phase, new: Phase) -> bool:
    """
    Phases only move forward. Failed is reachable from any non-terminal
    phase, Deleted only from Success, and both absorb everything after.
    """
    if current == new:
        return True
    if current in (Phase.FAILED, Phase.DELETED):
        return False
    if new == Phase.FAILED:
        return True
    if new == Phase.DELETED:
        return current == Phase.SUCCESS
    return _PHASE_ORDER[new] > _PHASE_ORDER[current]


@dataclass
class RegistrationStatus:
    phase: Phase = Phase.NONE
    reason: str = ""

    @classmethod
    def from_dict(cls, status: Optional[Dict]) -> "RegistrationStatus":
        status = status or {}
        return cls(phase=parse_phase(status.get("phase")), reason=status.get("reason") or "")

    def to_dict(self) -> Dict[str, str]:
        return {"phase": self.phase.value, "reason": self.reason}

    def set_phase(self, phase: Phase) -> None:
        if not can_transition(self.phase, phase):
            raise PhaseTransitionError(
                f"cannot move phase from {self.phase.value or '<empty>'} to {phase.value}"
            )
        self.phase = phase

    def set_reason(self, reason) -> None:
        self.reason = reason.value if isinstance(reason, Reason) else reason

    def fail(self, reason: Reason) -> None:
        self.set_phase(Phase.FAILED)
        self.set_reason(reason)


@dataclass
class ClusterRegistration:
    name: str
    namespace: str
    cluster_name: str
    kube_config: str
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    status: RegistrationStatus = field(default_factory=RegistrationStatus)
    deletion_timestamp: Optional[str] = None
    resource_version: Optional[str] = None

    @classmethod
    def from_body(cls, body: Dict) -> "ClusterRegistration":
        metadata = body.get("metadata") or {}
        spec = body.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            cluster_name=spec.get("clusterName", ""),
            kube_config=spec.get("kubeConfig", ""),
            annotations=dict(metadata.get("annotations") or {}),
            labels=dict(metadata.get("labels") or {}),
            status=RegistrationStatus.from_dict(body.get("status")),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=metadata.get("resourceVersion"),
        )

    @property
    def creator(self) -> str:
        return self.annotations.get(ANNOTATION_CREATOR, "")


@dataclass
class ClusterManager:
    name: str
    namespace: str
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    control_plane_endpoint: str = ""
    resource_version: Optional[str] = None

    @classmethod
    def from_body(cls, body: Dict) -> "ClusterManager":
        metadata = body.get("metadata") or {}
        status = body.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            annotations=dict(metadata.get("annotations") or {}),
            labels=dict(metadata.get("labels") or {}),
            control_plane_endpoint=status.get("controlPlaneEndpoint", ""),
            resource_version=metadata.get("resourceVersion"),
        )

    @property
    def owner(self) -> str:
        return self.annotations.get(ANNOTATION_OWNER, "")

    @property
    def cluster_type(self) -> str:
        return self.labels.get(LABEL_CLUSTER_TYPE, "")

    @property
    def parent(self) -> str:
        return self.labels.get(LABEL_PARENT, "")


@dataclass
class CredentialSecret:
    name: str
    namespace: str
    kubeconfig: bytes = b""
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None

    @classmethod
    def from_v1(cls, secret) -> "CredentialSecret":
        """Build from a kubernetes.client.V1Secret"""
        metadata = secret.metadata
        data = secret.data or {}
        encoded = data.get(KUBECONFIG_SECRET_KEY)
        return cls(
            name=metadata.name,
            namespace=metadata.namespace,
            kubeconfig=base64.b64decode(encoded) if encoded else b"",
            annotations=dict(metadata.annotations or {}),
            finalizers=list(metadata.finalizers or []),
            deletion_timestamp=metadata.deletion_timestamp,
        )

    @classmethod
    def from_body(cls, body: Dict) -> "CredentialSecret":
        """Build from the raw dict kopf passes to handlers"""
        metadata = body.get("metadata") or {}
        data = body.get("data") or {}
        encoded = data.get(KUBECONFIG_SECRET_KEY)
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            kubeconfig=base64.b64decode(encoded) if encoded else b"",
            annotations=dict(metadata.get("annotations") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )
