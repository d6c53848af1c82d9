#!/usr/bin/env python3

import asyncio
import base64
import logging
import time
from typing import List

import kubernetes

from config import (
    ANNOTATION_APISERVER_ENDPOINT,
    ANNOTATION_ARGO_CLUSTER_SECRET,
    ANNOTATION_CREATOR,
    ANNOTATION_DNS,
    ANNOTATION_OWNER,
    API_VERSION,
    CLUSTER_GROUP,
    CLUSTER_TYPE_REGISTERED,
    KUBECONFIG_SECRET_KEY,
    LABEL_CLUSTER_TYPE,
    LABEL_PARENT,
    SECRET_FINALIZER,
    Settings,
    kubeconfig_secret_name,
)
from errors import (
    DecodeError,
    DuplicateNameError,
    InvalidCredentialError,
    MembershipError,
    NotFoundError,
    OnboardingError,
    ReconcileError,
    UnreachableError,
)
from kubeconfig import (
    apiserver_endpoint,
    decode_kubeconfig,
    server_uri_from_bytes,
    uri_to_secret_name,
)
from membership import MembershipIndex
from metrics import (
    reconcile_duration,
    record_cascade_deletion,
    record_cluster_manager_created,
    record_membership_error,
    record_phase_transition,
    record_reconcile_error,
    record_reconcile_success,
    record_secret_created,
)
from models import (
    CLUSTER_DELETED_REASON,
    ClusterManager,
    ClusterRegistration,
    Phase,
    Reason,
)

CONTROLLER = "clusterregistration"

module_logger = logging.getLogger(__name__)


class ClusterRegistrationController:
    """
    Drives a ClusterRegistration through
    "" -> Validated -> SecretCreated -> Success.

    Every phase checks the persisted phase first and does nothing unless it
    is its turn, so the whole pipeline can be run on every invocation. The
    status is written back after every pass, whichever phase failed.
    """

    def __init__(self, local, gateway, membership: MembershipIndex, settings: Settings, logger=None):
        self.local = local
        self.gateway = gateway
        self.membership = membership
        self.settings = settings
        self.logger = logger or module_logger

    async def reconcile(self, name: str, namespace: str) -> None:
        """Main reconciliation point for ClusterRegistration"""
        start_time = time.time()

        try:
            registration = await asyncio.to_thread(self.local.get_registration, name, namespace)
        except NotFoundError:
            self.logger.info(f"ClusterRegistration {namespace}/{name} not found. Ignoring since object must be deleted.")
            return

        before = registration.status.to_dict()
        errors: List[Exception] = []
        try:
            if registration.deletion_timestamp:
                self.logger.info(f"ClusterRegistration {name} is being deleted, skipping phases")
            else:
                errors.extend(await self.run_phases(registration))
        finally:
            self.reconcile_phase(registration)
            try:
                await asyncio.to_thread(self.local.patch_registration_status, registration, before)
            except OnboardingError as e:
                self.logger.error(f"Failed to patch ClusterRegistration {name} status: {e}")
                errors.append(e)
            if registration.status.phase.value != before["phase"]:
                record_phase_transition(namespace, registration.status.phase.value)
            reconcile_duration.labels(controller=CONTROLLER).observe(time.time() - start_time)

        if errors:
            for e in errors:
                record_reconcile_error(CONTROLLER, namespace, type(e).__name__)
            raise ReconcileError(errors)
        record_reconcile_success(CONTROLLER, namespace)

    async def run_phases(self, registration: ClusterRegistration) -> List[Exception]:
        phases = [
            self.check_validation,
            self.create_kubeconfig_secret,
            self.create_cluster_manager,
        ]
        for phase in phases:
            try:
                await phase(registration)
            except OnboardingError as e:
                self.logger.error(f"❌ {phase.__name__} failed for [{registration.name}]: {e}")
                # later phases would only wait on this one
                return [e]
        return []

    async def check_validation(self, registration: ClusterRegistration) -> None:
        status = registration.status
        if status.phase != Phase.NONE:
            return
        self.logger.info(f"Start to CheckValidation reconcile for [{registration.name}]")

        try:
            decoded = decode_kubeconfig(registration.kube_config)
        except DecodeError:
            self.logger.error("Failed to decode spec.kubeConfig, maybe wrong kubeconfig file")
            status.fail(Reason.INVALID_KUBECONFIG)
            raise

        # later phases derive the secret name and endpoint from the server
        try:
            server = server_uri_from_bytes(decoded)
            apiserver_endpoint(server)
            uri_to_secret_name("cluster", server)
        except DecodeError as e:
            self.logger.error(f"Failed to resolve API server of [{registration.cluster_name}]: {e}")
            status.fail(Reason.INVALID_KUBECONFIG)
            raise

        try:
            remote = await asyncio.to_thread(self.gateway.connect, decoded)
        except InvalidCredentialError:
            self.logger.error(f"Failed to get client for [{registration.cluster_name}]")
            status.fail(Reason.INVALID_KUBECONFIG)
            raise

        try:
            await asyncio.to_thread(remote.list_nodes)
        except OnboardingError as e:
            self.logger.info(f"Failed to get nodes for [{registration.cluster_name}]")
            status.fail(Reason.CLUSTER_NOT_FOUND)
            raise UnreachableError(f"cluster {registration.cluster_name} is unreachable: {e}") from e

        try:
            existing = await asyncio.to_thread(
                self.local.get_cluster_manager, registration.cluster_name, registration.namespace
            )
        except NotFoundError:
            self.logger.info(f"ClusterManager [{registration.cluster_name}] does not exist. Duplication condition is passed")
        else:
            self.logger.info(f"ClusterManager [{existing.name}] already exists")
            status.fail(Reason.CLUSTER_NAME_DUPLICATED)
            raise DuplicateNameError(f"ClusterManager {existing.namespace}/{existing.name} already exists")

        status.set_phase(Phase.VALIDATED)

    async def create_kubeconfig_secret(self, registration: ClusterRegistration) -> None:
        if registration.status.phase != Phase.VALIDATED:
            self.logger.debug("Wait for ClusterRegistration validation")
            return
        self.logger.info(f"Start to CreateKubeconfigSecret reconcile for [{registration.name}]")

        decoded = decode_kubeconfig(registration.kube_config)
        server = server_uri_from_bytes(decoded)
        argo_secret_name = uri_to_secret_name("cluster", server)

        secret_name = kubeconfig_secret_name(registration.cluster_name)
        try:
            await asyncio.to_thread(self.local.get_secret, secret_name, registration.namespace)
            self.logger.info(f"Kubeconfig secret {secret_name} already exists")
        except NotFoundError:
            self.logger.info(f"Kubeconfig secret {secret_name} not found, creating it")
            secret = kubernetes.client.V1Secret(
                metadata=kubernetes.client.V1ObjectMeta(
                    name=secret_name,
                    namespace=registration.namespace,
                    annotations={
                        ANNOTATION_OWNER: registration.creator,
                        ANNOTATION_CREATOR: registration.creator,
                        ANNOTATION_ARGO_CLUSTER_SECRET: argo_secret_name,
                    },
                    finalizers=[SECRET_FINALIZER],
                ),
                data={KUBECONFIG_SECRET_KEY: base64.b64encode(decoded).decode("ascii")},
            )
            await asyncio.to_thread(self.local.create_secret, secret)
            record_secret_created(registration.namespace)

        registration.status.set_phase(Phase.SECRET_CREATED)

    async def create_cluster_manager(self, registration: ClusterRegistration) -> None:
        if registration.status.phase != Phase.SECRET_CREATED:
            self.logger.debug("Wait for creating kubeconfig secret")
            return
        self.logger.info(f"Start to CreateClusterManager reconcile for [{registration.name}]")

        decoded = decode_kubeconfig(registration.kube_config)
        endpoint = apiserver_endpoint(server_uri_from_bytes(decoded))

        try:
            cluster_manager = await asyncio.to_thread(
                self.local.get_cluster_manager, registration.cluster_name, registration.namespace
            )
        except NotFoundError:
            cluster_manager = await asyncio.to_thread(
                self.local.create_cluster_manager, self._cluster_manager_body(registration, endpoint)
            )
            record_cluster_manager_created(registration.namespace)
        else:
            if cluster_manager.parent != registration.name:
                # someone else claimed the name between validation and now
                registration.status.fail(Reason.CLUSTER_NAME_DUPLICATED)
                raise DuplicateNameError(
                    f"ClusterManager {cluster_manager.name} belongs to registration {cluster_manager.parent}"
                )
            self.logger.info(f"ClusterManager {cluster_manager.name} already exists")

        try:
            await asyncio.to_thread(self.membership.register, cluster_manager)
        except MembershipError:
            record_membership_error(registration.namespace)
            self.logger.error("Failed to insert cluster info into cluster_member table")
            raise

        registration.status.set_phase(Phase.SUCCESS)
        self.logger.info(f"✅ Cluster {registration.cluster_name} registered")

    def _cluster_manager_body(self, registration: ClusterRegistration, endpoint: str) -> dict:
        return {
            "apiVersion": f"{CLUSTER_GROUP}/{API_VERSION}",
            "kind": "ClusterManager",
            "metadata": {
                "name": registration.cluster_name,
                "namespace": registration.namespace,
                "annotations": {
                    ANNOTATION_OWNER: registration.creator,
                    ANNOTATION_CREATOR: registration.creator,
                    ANNOTATION_APISERVER_ENDPOINT: endpoint,
                    ANNOTATION_DNS: self.settings.hc_domain,
                },
                "labels": {
                    LABEL_CLUSTER_TYPE: CLUSTER_TYPE_REGISTERED,
                    LABEL_PARENT: registration.name,
                },
            },
            "spec": {},
        }

    def reconcile_phase(self, registration: ClusterRegistration) -> None:
        """Coarse status summary: a reason only accompanies Failed or Deleted"""
        status = registration.status
        if status.phase not in (Phase.FAILED, Phase.DELETED) and status.reason:
            status.set_reason(Reason.NONE)

    async def on_cluster_manager_deleted(self, cluster_manager: ClusterManager) -> None:
        """Mark the parent registration Deleted once its ClusterManager is gone"""
        if not cluster_manager.parent:
            self.logger.info(f"ClusterManager {cluster_manager.name} has no parent label, nothing to update")
            return

        try:
            registration = await asyncio.to_thread(
                self.local.get_registration, cluster_manager.parent, cluster_manager.namespace
            )
        except NotFoundError:
            self.logger.info("ClusterRegistration resource not found. Ignoring since object must be deleted.")
            return

        if registration.status.phase != Phase.SUCCESS:
            self.logger.info(
                f"ClusterRegistration for ClusterManager [{registration.cluster_name}] is in phase "
                f"{registration.status.phase.value or '<empty>'}, not marking it deleted"
            )
            return

        before = registration.status.to_dict()
        registration.status.set_phase(Phase.DELETED)
        registration.status.set_reason(CLUSTER_DELETED_REASON)
        await asyncio.to_thread(self.local.patch_registration_status, registration, before)
        record_phase_transition(registration.namespace, Phase.DELETED.value)
        record_cascade_deletion(registration.namespace)
        self.logger.info(f"ClusterRegistration {registration.name} marked Deleted")

        try:
            await asyncio.to_thread(self.membership.unregister, cluster_manager.namespace, cluster_manager.name)
        except MembershipError as e:
            record_membership_error(cluster_manager.namespace)
            self.logger.warning(f"Failed to remove cluster {cluster_manager.name} from membership index: {e}")
