#!/usr/bin/env python3
"""
Clients for registered (remote) clusters, built from the kubeconfig the
user handed over. Nothing is cached: every reconcile builds a fresh client
from the credential currently stored, so rotated credentials take effect
on the next pass.
"""

import logging

import kubernetes
import urllib3
import yaml
from kubernetes.client.rest import ApiException

from errors import InvalidCredentialError, TransientAPIError, from_api_exception
from models import CredentialSecret

logger = logging.getLogger(__name__)

# (connect, read) seconds for every call to a registered cluster
REQUEST_TIMEOUT = (5, 30)


class RemoteCluster:
    """Thin wrapper over the remote cluster API; every call may fail per-call"""

    def __init__(self, api_client: kubernetes.client.ApiClient):
        self.api_client = api_client
        self.core_v1 = kubernetes.client.CoreV1Api(api_client)
        self.rbac_v1 = kubernetes.client.RbacAuthorizationV1Api(api_client)

    def _call(self, what, fn, *args, **kwargs):
        kwargs.setdefault("_request_timeout", REQUEST_TIMEOUT)
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            raise from_api_exception(e, f"remote {what}") from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientAPIError(f"remote {what}: {e}") from e

    def list_nodes(self):
        return self._call("list nodes", self.core_v1.list_node)

    def read_cluster_role_binding(self, name: str):
        return self._call(f"get ClusterRoleBinding {name}", self.rbac_v1.read_cluster_role_binding, name)

    def create_cluster_role_binding(self, body):
        return self._call(
            f"create ClusterRoleBinding {body.metadata.name}",
            self.rbac_v1.create_cluster_role_binding,
            body,
        )

    def read_cluster_role(self, name: str):
        return self._call(f"get ClusterRole {name}", self.rbac_v1.read_cluster_role, name)

    def create_cluster_role(self, body):
        return self._call(f"create ClusterRole {body.metadata.name}", self.rbac_v1.create_cluster_role, body)

    def read_service_account(self, name: str, namespace: str):
        return self._call(
            f"get ServiceAccount {namespace}/{name}",
            self.core_v1.read_namespaced_service_account,
            name,
            namespace,
        )

    def create_service_account(self, namespace: str, body):
        return self._call(
            f"create ServiceAccount {namespace}/{body.metadata.name}",
            self.core_v1.create_namespaced_service_account,
            namespace,
            body,
        )


class RemoteClusterGateway:
    """Turns credential bytes into a RemoteCluster or an InvalidCredentialError"""

    def connect(self, kubeconfig: bytes) -> RemoteCluster:
        try:
            config_dict = yaml.safe_load(kubeconfig)
            if not isinstance(config_dict, dict):
                raise InvalidCredentialError("kubeconfig is not a mapping")
            configuration = kubernetes.client.Configuration()
            kubernetes.config.load_kube_config_from_dict(
                config_dict=config_dict,
                client_configuration=configuration,
                persist_config=False,
            )
        except InvalidCredentialError:
            raise
        except (yaml.YAMLError, kubernetes.config.ConfigException, KeyError, TypeError, ValueError) as e:
            raise InvalidCredentialError(f"cannot build client from kubeconfig: {e}") from e

        logger.debug(f"Built remote client for {configuration.host}")
        return RemoteCluster(kubernetes.client.ApiClient(configuration=configuration))

    def from_secret(self, secret: CredentialSecret) -> RemoteCluster:
        if not secret.kubeconfig:
            raise InvalidCredentialError(f"secret {secret.name} holds no kubeconfig")
        return self.connect(secret.kubeconfig)
