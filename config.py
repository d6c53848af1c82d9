#!/usr/bin/env python3
"""
Operator configuration read from environment variables
"""

import os
from dataclasses import dataclass
from typing import Optional

# API groups and resources
CLUSTER_GROUP = "cluster.tmax.io"
CLAIM_GROUP = "claim.tmax.io"
API_VERSION = "v1alpha1"
REGISTRATION_PLURAL = "clusterregistrations"
CLUSTER_MANAGER_PLURAL = "clustermanagers"
CLUSTER_CLAIM_PLURAL = "clusterclaims"

# Annotations and labels
ANNOTATION_OWNER = "owner"
ANNOTATION_CREATOR = "creator"
ANNOTATION_ARGO_CLUSTER_SECRET = "argocd.argoproj.io/cluster.secret"
ANNOTATION_APISERVER_ENDPOINT = "apiserver"
ANNOTATION_DNS = "domain"
LABEL_CLUSTER_TYPE = "type"
LABEL_PARENT = "parent"
CLUSTER_TYPE_REGISTERED = "registered"

# Credential secret
KUBECONFIG_SUFFIX = "-kubeconfig"
KUBECONFIG_SECRET_KEY = "value"
SECRET_FINALIZER = "secret.cluster.tmax.io/finalizer"

# GitOps agent identity on the remote cluster
ARGO_SERVICE_ACCOUNT = "argocd-manager"
ARGO_CLUSTER_ROLE = "argocd-manager-role"
ARGO_CLUSTER_ROLE_BINDING = "argocd-manager-role-binding"
ARGO_NAMESPACE = "kube-system"


def kubeconfig_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}{KUBECONFIG_SUFFIX}"


def cluster_name_from_secret(secret_name: str) -> str:
    return secret_name.split(KUBECONFIG_SUFFIX)[0]


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, resolved once at startup"""

    hc_domain: str = ""
    metrics_port: int = 8000
    membership_database_url: str = "sqlite:////tmp/cluster-member.db"
    webhook_host: Optional[str] = None
    webhook_port: int = 9443
    webhook_certfile: Optional[str] = None
    webhook_pkeyfile: Optional[str] = None
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            hc_domain=env.get("HC_DOMAIN", ""),
            metrics_port=int(env.get("METRICS_PORT", "8000")),
            membership_database_url=env.get(
                "MEMBERSHIP_DATABASE_URL", "sqlite:////tmp/cluster-member.db"
            ),
            webhook_host=env.get("WEBHOOK_HOST") or None,
            webhook_port=int(env.get("WEBHOOK_PORT", "9443")),
            webhook_certfile=env.get("WEBHOOK_CERTFILE") or None,
            webhook_pkeyfile=env.get("WEBHOOK_PKEYFILE") or None,
            retry_base_delay=float(env.get("RETRY_BASE_DELAY", "5")),
            retry_max_delay=float(env.get("RETRY_MAX_DELAY", "300")),
        )

    def backoff_delay(self, retry: int) -> float:
        """Exponential requeue delay for the given retry attempt"""
        delay = self.retry_base_delay * (2 ** min(max(retry, 0), 16))
        return min(delay, self.retry_max_delay)
