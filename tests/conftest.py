#!/usr/bin/env python3
"""
In-memory stand-ins for the local management cluster and registered
clusters, shared by the controller tests.
"""

import base64
import copy
import os
import sys
import threading

import pytest
import yaml

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import KUBECONFIG_SECRET_KEY, Settings
from errors import ConflictError, InvalidCredentialError, NotFoundError, TransientAPIError
from membership import ClusterMember, MembershipIndex
from models import ClusterManager, ClusterRegistration, CredentialSecret


def make_kubeconfig(server="https://10.0.0.1:6443", cluster="remote", extra_clusters=None) -> str:
    clusters = [{"name": cluster, "cluster": {"server": server, "insecure-skip-tls-verify": True}}]
    for name, other_server in (extra_clusters or {}).items():
        clusters.append({"name": name, "cluster": {"server": other_server}})
    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "Config",
            "clusters": clusters,
            "contexts": [{"name": "admin@remote", "context": {"cluster": cluster, "user": "admin"}}],
            "current-context": "admin@remote",
            "users": [{"name": "admin", "user": {"token": "secret-token"}}],
        }
    )


def encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def registration_body(name="reg", namespace="ns", cluster_name="prod", kube_config=None, phase=None, **metadata):
    body = {
        "apiVersion": "cluster.tmax.io/v1alpha1",
        "kind": "ClusterRegistration",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": "1",
            "annotations": {"creator": "alice@example.com"},
            **metadata,
        },
        "spec": {
            "clusterName": cluster_name,
            "kubeConfig": encode(make_kubeconfig()) if kube_config is None else kube_config,
        },
    }
    if phase is not None:
        body["status"] = {"phase": phase}
    return body


def cluster_manager_body(
    name="prod", namespace="ns", parent="reg", cluster_type="registered", endpoint="", owner="alice@example.com"
):
    return {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "annotations": {"owner": owner, "creator": owner},
            "labels": {"type": cluster_type, "parent": parent},
        },
        "status": {"controlPlaneEndpoint": endpoint},
    }


def member_rows(index, namespace, cluster):
    with index._session() as session:
        rows = session.query(ClusterMember).filter_by(namespace=namespace, cluster=cluster).all()
        return [(r.member_id, r.role, r.status) for r in rows]


class FakeLocalCluster:
    """Dict-backed LocalCluster"""

    def __init__(self):
        self.registrations = {}
        self.cluster_managers = {}
        self.secrets = {}
        self.created_cluster_managers = []
        self.created_secrets = []
        self.status_patches = []
        self.cluster_manager_status_patches = []
        self.cluster_manager_get_error = None
        self.status_patch_error = None
        self.registration_get_errors = []

    # ClusterRegistration

    def add_registration(self, body) -> ClusterRegistration:
        registration = ClusterRegistration.from_body(body)
        self.registrations[(registration.namespace, registration.name)] = registration
        return registration

    def registration(self, name="reg", namespace="ns") -> ClusterRegistration:
        return self.registrations[(namespace, name)]

    def get_registration(self, name, namespace):
        if self.registration_get_errors:
            raise self.registration_get_errors.pop(0)
        try:
            return copy.deepcopy(self.registrations[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"ClusterRegistration {namespace}/{name} not found")

    def patch_registration_status(self, registration, before):
        if self.status_patch_error:
            raise self.status_patch_error
        after = registration.status.to_dict()
        changes = {k: v for k, v in after.items() if before.get(k) != v}
        if not changes:
            return
        stored = self.registrations[(registration.namespace, registration.name)]
        stored.status = copy.deepcopy(registration.status)
        self.status_patches.append(changes)

    # ClusterManager

    def add_cluster_manager(self, body) -> ClusterManager:
        cluster_manager = ClusterManager.from_body(body)
        self.cluster_managers[(cluster_manager.namespace, cluster_manager.name)] = cluster_manager
        return cluster_manager

    def get_cluster_manager(self, name, namespace):
        if self.cluster_manager_get_error:
            raise self.cluster_manager_get_error
        try:
            return copy.deepcopy(self.cluster_managers[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"ClusterManager {namespace}/{name} not found")

    def create_cluster_manager(self, body):
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        if key in self.cluster_managers:
            raise ConflictError(f"ClusterManager {key} already exists")
        self.created_cluster_managers.append(copy.deepcopy(body))
        return self.add_cluster_manager(body)

    def patch_cluster_manager_status(self, name, namespace, status_updates):
        self.cluster_manager_status_patches.append(status_updates)
        cluster_manager = self.cluster_managers[(namespace, name)]
        cluster_manager.control_plane_endpoint = status_updates.get(
            "controlPlaneEndpoint", cluster_manager.control_plane_endpoint
        )

    # Secrets

    def add_secret(self, secret: CredentialSecret):
        self.secrets[(secret.namespace, secret.name)] = secret

    def get_secret(self, name, namespace):
        try:
            return copy.deepcopy(self.secrets[(namespace, name)])
        except KeyError:
            raise NotFoundError(f"Secret {namespace}/{name} not found")

    def create_secret(self, secret):
        key = (secret.metadata.namespace, secret.metadata.name)
        if key in self.secrets:
            raise ConflictError(f"Secret {key} already exists")
        self.created_secrets.append(secret)
        self.add_secret(
            CredentialSecret(
                name=secret.metadata.name,
                namespace=secret.metadata.namespace,
                kubeconfig=base64.b64decode(secret.data[KUBECONFIG_SECRET_KEY]),
                annotations=dict(secret.metadata.annotations or {}),
                finalizers=list(secret.metadata.finalizers or []),
            )
        )

    def remove_secret_finalizer(self, secret, finalizer):
        stored = self.secrets[(secret.namespace, secret.name)]
        stored.finalizers = [f for f in stored.finalizers if f != finalizer]


class FakeRemoteCluster:
    """Dict-backed RemoteCluster"""

    def __init__(self):
        self.cluster_role_bindings = {}
        self.cluster_roles = {}
        self.service_accounts = {}
        self.creates = []
        self.unreachable = False
        # threads the remote API was called from
        self.call_threads = []

    def list_nodes(self):
        self.call_threads.append(threading.current_thread())
        if self.unreachable:
            raise TransientAPIError("remote list nodes: connection refused")
        return []

    def _read(self, store, key, kind):
        self.call_threads.append(threading.current_thread())
        try:
            return store[key]
        except KeyError:
            raise NotFoundError(f"remote {kind} {key} not found")

    def _create(self, store, key, body, kind):
        self.call_threads.append(threading.current_thread())
        if key in store:
            raise ConflictError(f"remote {kind} {key} already exists")
        store[key] = body
        self.creates.append((kind, key))
        return body

    def read_cluster_role_binding(self, name):
        return self._read(self.cluster_role_bindings, name, "ClusterRoleBinding")

    def create_cluster_role_binding(self, body):
        return self._create(self.cluster_role_bindings, body.metadata.name, body, "ClusterRoleBinding")

    def read_cluster_role(self, name):
        return self._read(self.cluster_roles, name, "ClusterRole")

    def create_cluster_role(self, body):
        return self._create(self.cluster_roles, body.metadata.name, body, "ClusterRole")

    def read_service_account(self, name, namespace):
        return self._read(self.service_accounts, (namespace, name), "ServiceAccount")

    def create_service_account(self, namespace, body):
        return self._create(self.service_accounts, (namespace, body.metadata.name), body, "ServiceAccount")


class FakeGateway:
    def __init__(self, remote):
        self.remote = remote
        self.invalid = False
        self.connected_with = []

    def connect(self, kubeconfig):
        self.connected_with.append(kubeconfig)
        if self.invalid:
            raise InvalidCredentialError("cannot build client from kubeconfig")
        return self.remote

    def from_secret(self, secret):
        return self.connect(secret.kubeconfig)


@pytest.fixture
def local():
    return FakeLocalCluster()


@pytest.fixture
def remote():
    return FakeRemoteCluster()


@pytest.fixture
def gateway(remote):
    return FakeGateway(remote)


@pytest.fixture
def membership():
    index = MembershipIndex("sqlite://")
    index.init_db()
    return index


@pytest.fixture
def settings():
    return Settings(hc_domain="hc.example.com")
