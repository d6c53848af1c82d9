#!/usr/bin/env python3

import asyncio
import logging
import time
from typing import Callable, List

import kubernetes

from config import (
    ARGO_CLUSTER_ROLE,
    ARGO_CLUSTER_ROLE_BINDING,
    ARGO_NAMESPACE,
    ARGO_SERVICE_ACCOUNT,
    SECRET_FINALIZER,
    cluster_name_from_secret,
)
from errors import NotFoundError, OnboardingError, ReconcileError
from kubeconfig import server_uri_from_bytes
from metrics import (
    reconcile_duration,
    record_reconcile_error,
    record_reconcile_success,
    record_remote_object_created,
)
from models import CredentialSecret

CONTROLLER = "secret"

RBAC_API_GROUP = "rbac.authorization.k8s.io"

# API groups the developer and guest roles cover on registered clusters
TARGET_API_GROUPS = [
    "",
    "apps",
    "autoscaling",
    "batch",
    "extensions",
    "policy",
    "networking.k8s.io",
    "snapshot.storage.k8s.io",
    "storage.k8s.io",
    "apiextensions.k8s.io",
    "metrics.k8s.io",
]
READ_VERBS = ["get", "list", "watch"]

module_logger = logging.getLogger(__name__)


def cluster_owner_binding_name(owner: str) -> str:
    return f"cluster-owner-crb-{owner}"


def build_cluster_role(name: str, api_groups: List[str], verbs: List[str]) -> kubernetes.client.V1ClusterRole:
    """ClusterRole over the given API groups plus read access to apiregistration"""
    return kubernetes.client.V1ClusterRole(
        metadata=kubernetes.client.V1ObjectMeta(name=name),
        rules=[
            kubernetes.client.V1PolicyRule(api_groups=api_groups, resources=["*"], verbs=verbs),
            kubernetes.client.V1PolicyRule(
                api_groups=["apiregistration.k8s.io"], resources=["*"], verbs=READ_VERBS
            ),
        ],
    )


def build_cluster_owner_binding(owner: str) -> kubernetes.client.V1ClusterRoleBinding:
    return kubernetes.client.V1ClusterRoleBinding(
        metadata=kubernetes.client.V1ObjectMeta(name=cluster_owner_binding_name(owner)),
        role_ref=kubernetes.client.V1RoleRef(api_group=RBAC_API_GROUP, kind="ClusterRole", name="cluster-admin"),
        subjects=[kubernetes.client.RbacV1Subject(kind="User", api_group=RBAC_API_GROUP, name=owner)],
    )


def build_argocd_resources():
    """Service account, cluster role and binding used by the GitOps agent"""
    service_account = kubernetes.client.V1ServiceAccount(
        metadata=kubernetes.client.V1ObjectMeta(name=ARGO_SERVICE_ACCOUNT, namespace=ARGO_NAMESPACE),
    )
    role = kubernetes.client.V1ClusterRole(
        metadata=kubernetes.client.V1ObjectMeta(name=ARGO_CLUSTER_ROLE),
        rules=[
            kubernetes.client.V1PolicyRule(api_groups=["*"], resources=["*"], verbs=["*"]),
            kubernetes.client.V1PolicyRule(non_resource_ur_ls=["*"], verbs=["*"]),
        ],
    )
    binding = kubernetes.client.V1ClusterRoleBinding(
        metadata=kubernetes.client.V1ObjectMeta(name=ARGO_CLUSTER_ROLE_BINDING),
        role_ref=kubernetes.client.V1RoleRef(api_group=RBAC_API_GROUP, kind="ClusterRole", name=ARGO_CLUSTER_ROLE),
        subjects=[
            kubernetes.client.RbacV1Subject(
                kind="ServiceAccount", name=ARGO_SERVICE_ACCOUNT, namespace=ARGO_NAMESPACE
            )
        ],
    )
    return service_account, role, binding


class SecretBootstrapController:
    """
    Reacts to credential secrets (<cluster>-kubeconfig): records the control
    plane endpoint on the ClusterManager and provisions owner RBAC and the
    GitOps agent identity on the registered cluster.

    The three steps are independent; each one gets before it creates, so
    re-running any of them only repeats reads.
    """

    def __init__(self, local, gateway, logger=None):
        self.local = local
        self.gateway = gateway
        self.logger = logger or module_logger

    async def reconcile(self, name: str, namespace: str) -> None:
        start_time = time.time()

        try:
            secret = await asyncio.to_thread(self.local.get_secret, name, namespace)
        except NotFoundError:
            self.logger.info(f"Secret {namespace}/{name} not found. Ignoring since object must be deleted.")
            return

        if secret.deletion_timestamp:
            self.logger.info(f"Secret {name} is being deleted, skipping bootstrap")
            return

        errors: List[Exception] = []
        steps = [
            self.update_control_plane_endpoint,
            self.deploy_rolebinding,
            self.deploy_argocd_resources,
        ]
        for step in steps:
            try:
                await step(secret)
            except OnboardingError as e:
                self.logger.error(f"❌ {step.__name__} failed for secret [{name}]: {e}")
                errors.append(e)

        reconcile_duration.labels(controller=CONTROLLER).observe(time.time() - start_time)
        if errors:
            for e in errors:
                record_reconcile_error(CONTROLLER, namespace, type(e).__name__)
            raise ReconcileError(errors)
        record_reconcile_success(CONTROLLER, namespace)

    async def update_control_plane_endpoint(self, secret: CredentialSecret) -> None:
        self.logger.info("Start to reconcile phase for UpdateClusterManagerControlPlaneEndpoint")
        server = server_uri_from_bytes(secret.kubeconfig)

        cluster_name = cluster_name_from_secret(secret.name)
        try:
            cluster_manager = await asyncio.to_thread(self.local.get_cluster_manager, cluster_name, secret.namespace)
        except NotFoundError:
            self.logger.info(f"ClusterManager {cluster_name} not found yet")
            return

        if cluster_manager.control_plane_endpoint.lower() == server.lower():
            return

        self.logger.info(f"Update ClusterManager {cluster_name} status: controlPlaneEndpoint {server}")
        await asyncio.to_thread(
            self.local.patch_cluster_manager_status,
            cluster_manager.name,
            cluster_manager.namespace,
            {"controlPlaneEndpoint": server},
        )

    async def deploy_rolebinding(self, secret: CredentialSecret) -> None:
        self.logger.info("Start to reconcile phase for deploying rolebinding to remote")

        # NotFound surfaces too: the binding needs the owner recorded on the ClusterManager
        cluster_manager = await asyncio.to_thread(
            self.local.get_cluster_manager, cluster_name_from_secret(secret.name), secret.namespace
        )
        remote = await asyncio.to_thread(self.gateway.from_secret, secret)

        if cluster_manager.owner:
            binding = build_cluster_owner_binding(cluster_manager.owner)
            await self._get_or_create(
                "ClusterRoleBinding",
                binding.metadata.name,
                lambda: remote.read_cluster_role_binding(binding.metadata.name),
                lambda: remote.create_cluster_role_binding(binding),
            )
        else:
            self.logger.warning(
                f"ClusterManager {cluster_manager.name} has no owner annotation, skipping cluster owner binding"
            )

        for role in (
            build_cluster_role("developer", TARGET_API_GROUPS, ["*"]),
            build_cluster_role("guest", TARGET_API_GROUPS, READ_VERBS),
        ):
            await self._get_or_create(
                "ClusterRole",
                role.metadata.name,
                lambda: remote.read_cluster_role(role.metadata.name),
                lambda: remote.create_cluster_role(role),
            )

    async def deploy_argocd_resources(self, secret: CredentialSecret) -> None:
        self.logger.info("Start to reconcile phase for deploying argocd resources to remote")
        remote = await asyncio.to_thread(self.gateway.from_secret, secret)

        service_account, role, binding = build_argocd_resources()
        await self._get_or_create(
            "ServiceAccount",
            f"{ARGO_NAMESPACE}/{ARGO_SERVICE_ACCOUNT}",
            lambda: remote.read_service_account(ARGO_SERVICE_ACCOUNT, ARGO_NAMESPACE),
            lambda: remote.create_service_account(ARGO_NAMESPACE, service_account),
        )
        await self._get_or_create(
            "ClusterRole",
            ARGO_CLUSTER_ROLE,
            lambda: remote.read_cluster_role(ARGO_CLUSTER_ROLE),
            lambda: remote.create_cluster_role(role),
        )
        await self._get_or_create(
            "ClusterRoleBinding",
            ARGO_CLUSTER_ROLE_BINDING,
            lambda: remote.read_cluster_role_binding(ARGO_CLUSTER_ROLE_BINDING),
            lambda: remote.create_cluster_role_binding(binding),
        )

    async def _get_or_create(self, kind: str, name: str, get: Callable, create: Callable) -> bool:
        """Create only when the get says NotFound. Returns True if created."""
        try:
            await asyncio.to_thread(get)
            return False
        except NotFoundError:
            pass
        await asyncio.to_thread(create)
        record_remote_object_created(kind)
        self.logger.info(f"Created {kind} [{name}] on remote cluster")
        return True

    async def release_finalizer(self, secret: CredentialSecret) -> None:
        """Let a deleted credential secret go once no ClusterManager references it"""
        cluster_name = cluster_name_from_secret(secret.name)
        try:
            await asyncio.to_thread(self.local.get_cluster_manager, cluster_name, secret.namespace)
        except NotFoundError:
            await asyncio.to_thread(self.local.remove_secret_finalizer, secret, SECRET_FINALIZER)
            return
        self.logger.info(f"ClusterManager {cluster_name} still exists, keeping finalizer on secret {secret.name}")
