#!/usr/bin/env python3

import kubernetes
import logging
import os
from pathlib import Path
from typing import Dict, Optional

import urllib3
from kubernetes.client.rest import ApiException

from config import (
    API_VERSION,
    CLUSTER_GROUP,
    CLUSTER_MANAGER_PLURAL,
    REGISTRATION_PLURAL,
)
from errors import ConflictError, TransientAPIError, from_api_exception
from models import ClusterManager, ClusterRegistration, CredentialSecret, can_transition

logger = logging.getLogger(__name__)

STATUS_PATCH_ATTEMPTS = 5

# (connect, read) seconds for every call to the management cluster
REQUEST_TIMEOUT = (5, 30)


def setup_kubernetes_client() -> kubernetes.client.ApiClient:
    """Load kubeconfig from KUBECONFIG (or ~/.kube/config), else in-cluster config"""
    kubeconfig_path = os.environ.get("KUBECONFIG", "~/.kube/config")
    expanded_kubeconfig = os.path.expanduser(kubeconfig_path)
    kubeconfig_file = Path(expanded_kubeconfig)

    if kubeconfig_file.exists():
        logger.info(f"Kubeconfig file found: {kubeconfig_file}")
        try:
            kubernetes.config.load_kube_config(config_file=expanded_kubeconfig)
            logger.info("✅ Successfully loaded kubeconfig")
            return kubernetes.client.ApiClient()
        except kubernetes.config.ConfigException as e:
            logger.warning(f"❌ Failed to load kubeconfig: {e}")
    else:
        logger.info(f"Kubeconfig file not found: {kubeconfig_file}")

    logger.info("Switching to in-cluster connection attempt...")
    if not os.environ.get("KUBERNETES_SERVICE_HOST") or not os.environ.get("KUBERNETES_SERVICE_PORT"):
        logger.error("❌ KUBERNETES_SERVICE_HOST and KUBERNETES_SERVICE_PORT variables not set, in-cluster config impossible")

    # ConfigException propagates: the operator cannot run without a cluster
    kubernetes.config.load_incluster_config()
    logger.info("✅ Successfully loaded in-cluster config")
    return kubernetes.client.ApiClient()


def _call(what: str, fn, *args, **kwargs):
    """Invoke a kubernetes API method, translating failures into OnboardingErrors"""
    kwargs.setdefault("_request_timeout", REQUEST_TIMEOUT)
    try:
        return fn(*args, **kwargs)
    except ApiException as e:
        raise from_api_exception(e, what) from e
    except urllib3.exceptions.HTTPError as e:
        raise TransientAPIError(f"{what}: {e}") from e


class LocalCluster:
    """Access to the management cluster the operator runs in"""

    def __init__(self, api_client: Optional[kubernetes.client.ApiClient] = None):
        self.core_v1 = kubernetes.client.CoreV1Api(api_client)
        self.custom_objects = kubernetes.client.CustomObjectsApi(api_client)

    # ClusterRegistration

    def get_registration(self, name: str, namespace: str) -> ClusterRegistration:
        body = _call(
            f"get ClusterRegistration {namespace}/{name}",
            self.custom_objects.get_namespaced_custom_object,
            group=CLUSTER_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=REGISTRATION_PLURAL,
            name=name,
        )
        return ClusterRegistration.from_body(body)

    def patch_registration_status(self, registration: ClusterRegistration, before: Dict[str, str]):
        """
        Write the status fields that changed since `before`, guarded by
        resourceVersion. On conflict the latest object is re-read and the
        same changes are reapplied on top of it.
        """
        after = registration.status.to_dict()
        changes = {k: v for k, v in after.items() if before.get(k) != v}
        if not changes:
            return

        resource_version = registration.resource_version
        for attempt in range(STATUS_PATCH_ATTEMPTS):
            body = {"status": changes}
            if resource_version:
                body["metadata"] = {"resourceVersion": resource_version}
            try:
                result = self.custom_objects.patch_namespaced_custom_object_status(
                    group=CLUSTER_GROUP,
                    version=API_VERSION,
                    namespace=registration.namespace,
                    plural=REGISTRATION_PLURAL,
                    name=registration.name,
                    body=body,
                )
                registration.resource_version = (result or {}).get("metadata", {}).get("resourceVersion")
                logger.debug(f"Updated ClusterRegistration status: {registration.name} {changes}")
                return
            except ApiException as e:
                if e.status != 409:
                    raise from_api_exception(e, f"patch ClusterRegistration {registration.name} status") from e

            logger.info(f"Conflict patching ClusterRegistration {registration.name} status, retrying ({attempt + 1})")
            latest = self.get_registration(registration.name, registration.namespace)
            if "phase" in changes and not can_transition(latest.status.phase, registration.status.phase):
                raise ConflictError(
                    f"ClusterRegistration {registration.name} moved to phase "
                    f"{latest.status.phase.value} concurrently"
                )
            resource_version = latest.resource_version

        raise ConflictError(
            f"gave up patching ClusterRegistration {registration.name} status after "
            f"{STATUS_PATCH_ATTEMPTS} conflicts"
        )

    # ClusterManager

    def get_cluster_manager(self, name: str, namespace: str) -> ClusterManager:
        body = _call(
            f"get ClusterManager {namespace}/{name}",
            self.custom_objects.get_namespaced_custom_object,
            group=CLUSTER_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=CLUSTER_MANAGER_PLURAL,
            name=name,
        )
        return ClusterManager.from_body(body)

    def create_cluster_manager(self, body: Dict) -> ClusterManager:
        metadata = body["metadata"]
        created = _call(
            f"create ClusterManager {metadata['namespace']}/{metadata['name']}",
            self.custom_objects.create_namespaced_custom_object,
            group=CLUSTER_GROUP,
            version=API_VERSION,
            namespace=metadata["namespace"],
            plural=CLUSTER_MANAGER_PLURAL,
            body=body,
        )
        logger.info(f"Created ClusterManager: {metadata['name']}")
        return ClusterManager.from_body(created)

    def patch_cluster_manager_status(self, name: str, namespace: str, status_updates: Dict):
        _call(
            f"patch ClusterManager {namespace}/{name} status",
            self.custom_objects.patch_namespaced_custom_object_status,
            group=CLUSTER_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=CLUSTER_MANAGER_PLURAL,
            name=name,
            body={"status": status_updates},
        )
        logger.debug(f"Updated ClusterManager status: {name}")

    # Secrets

    def get_secret(self, name: str, namespace: str) -> CredentialSecret:
        secret = _call(
            f"get Secret {namespace}/{name}",
            self.core_v1.read_namespaced_secret,
            name,
            namespace,
        )
        return CredentialSecret.from_v1(secret)

    def create_secret(self, secret: kubernetes.client.V1Secret):
        _call(
            f"create Secret {secret.metadata.namespace}/{secret.metadata.name}",
            self.core_v1.create_namespaced_secret,
            secret.metadata.namespace,
            secret,
        )
        logger.info(f"Created secret: {secret.metadata.name}")

    def remove_secret_finalizer(self, secret: CredentialSecret, finalizer: str):
        remaining = [f for f in secret.finalizers if f != finalizer]
        if len(remaining) == len(secret.finalizers):
            return
        _call(
            f"patch Secret {secret.namespace}/{secret.name} finalizers",
            self.core_v1.patch_namespaced_secret,
            secret.name,
            secret.namespace,
            # JSON patch: strategic merge would union the finalizer list
            [{"op": "replace", "path": "/metadata/finalizers", "value": remaining}],
        )
        secret.finalizers = remaining
        logger.info(f"Removed finalizer {finalizer} from secret {secret.name}")
