#!/usr/bin/env python3

import asyncio
import hashlib
import itertools
import kopf
import logging

from admission import ImmutableSpecError, validate_update
from clients import LocalCluster, setup_kubernetes_client
from clusterregistration_handlers import ClusterRegistrationController
from config import (
    ANNOTATION_ARGO_CLUSTER_SECRET,
    API_VERSION,
    CLAIM_GROUP,
    CLUSTER_CLAIM_PLURAL,
    CLUSTER_GROUP,
    CLUSTER_MANAGER_PLURAL,
    REGISTRATION_PLURAL,
    Settings,
)
from errors import OnboardingError
from event_filter import (
    ClusterManagerEvent,
    EventType,
    RegistrationEvent,
    SecretEvent,
    event_type_from_watch,
    is_credential_secret_name,
    should_reconcile,
    should_release_finalizer,
)
from membership import MembershipIndex
from metrics import init_metrics
from models import ClusterManager, ClusterRegistration, CredentialSecret
from remote import RemoteClusterGateway
from secret_handlers import SecretBootstrapController

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
logger.info("starting cluster onboarding operator")

CREDENTIAL_SECRET_FILTER = {ANNOTATION_ARGO_CLUSTER_SECRET: kopf.PRESENT}


def _digest(value) -> str:
    return "sha256:" + hashlib.sha256(str(value).encode("utf-8")).hexdigest()


class CredentialDiffBaseStorage(kopf.AnnotationsDiffBaseStorage):
    """
    Last-handled-configuration annotation without the kubeconfigs in it.
    Secret data and spec.kubeConfig are stored as digests, so a rotated
    credential still shows up as a change.
    """

    def build(self, *, body, extra_fields=None):
        essence = super().build(body=body, extra_fields=extra_fields)
        for field in ("data", "stringData"):
            if essence.get(field):
                essence[field] = {key: _digest(value) for key, value in essence[field].items()}
        spec = essence.get("spec")
        if isinstance(spec, dict) and spec.get("kubeConfig"):
            essence["spec"] = {**spec, "kubeConfig": _digest(spec["kubeConfig"])}
        return essence


def _is_credential_secret(name, **_):
    return is_credential_secret_name(name)


async def _retry_until_done(step, what, memo: kopf.Memo, logger):
    """
    kopf does not retry event handlers and a deleted object gets no further
    events, so failures are retried here with the usual backoff.
    """
    for attempt in itertools.count():
        try:
            await step()
            return
        except OnboardingError as e:
            delay = memo.settings.backoff_delay(attempt)
            logger.error(f"Failed to {what}: {e}, retrying in {delay}s")
            await asyncio.sleep(delay)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_):
    settings.posting.level = logging.WARNING
    settings.persistence.diffbase_storage = CredentialDiffBaseStorage()

    operator_settings = Settings.from_env()
    if operator_settings.webhook_host:
        settings.admission.server = kopf.WebhookServer(
            addr="0.0.0.0",
            port=operator_settings.webhook_port,
            host=operator_settings.webhook_host,
            certfile=operator_settings.webhook_certfile,
            pkeyfile=operator_settings.webhook_pkeyfile,
        )
        settings.admission.managed = "onboarding.cluster.tmax.io"

    memo.settings = operator_settings
    memo.local = LocalCluster(setup_kubernetes_client())
    memo.gateway = RemoteClusterGateway()
    memo.membership = MembershipIndex(operator_settings.membership_database_url)
    memo.membership.init_db()
    init_metrics(operator_settings.metrics_port)


# ClusterRegistration handlers
@kopf.on.create(CLUSTER_GROUP, API_VERSION, REGISTRATION_PLURAL)
@kopf.on.resume(CLUSTER_GROUP, API_VERSION, REGISTRATION_PLURAL)
async def reconcile_cluster_registration(body, name, namespace, retry, memo: kopf.Memo, logger, **kwargs):
    """Run the onboarding pipeline; retries are requeues and skip the event filter"""
    event = RegistrationEvent(EventType.CREATE, ClusterRegistration.from_body(body))
    if retry == 0 and not should_reconcile(event):
        logger.debug(f"Skipping ClusterRegistration {name} in phase {event.registration.status.phase.value}")
        return

    controller = ClusterRegistrationController(
        memo.local, memo.gateway, memo.membership, memo.settings, logger=logger
    )
    try:
        await controller.reconcile(name, namespace)
    except OnboardingError as e:
        raise kopf.TemporaryError(
            f"ClusterRegistration reconciliation failed: {e}", delay=memo.settings.backoff_delay(retry)
        )


@kopf.on.event(CLUSTER_GROUP, API_VERSION, CLUSTER_MANAGER_PLURAL)
async def cluster_manager_event(event, body, memo: kopf.Memo, logger, **kwargs):
    """Cascade a registered ClusterManager's deletion onto its ClusterRegistration"""
    cluster_manager_event = ClusterManagerEvent(
        event_type_from_watch(event.get("type")), ClusterManager.from_body(body)
    )
    if not should_reconcile(cluster_manager_event):
        return

    controller = ClusterRegistrationController(
        memo.local, memo.gateway, memo.membership, memo.settings, logger=logger
    )
    await _retry_until_done(
        lambda: controller.on_cluster_manager_deleted(cluster_manager_event.cluster_manager),
        "update ClusterRegistration for deleted ClusterManager",
        memo,
        logger,
    )


# Credential secret handlers
@kopf.on.create("v1", "secrets", annotations=CREDENTIAL_SECRET_FILTER, when=_is_credential_secret)
@kopf.on.update("v1", "secrets", annotations=CREDENTIAL_SECRET_FILTER, when=_is_credential_secret)
@kopf.on.resume("v1", "secrets", annotations=CREDENTIAL_SECRET_FILTER, when=_is_credential_secret)
async def reconcile_kubeconfig_secret(body, name, namespace, reason, retry, memo: kopf.Memo, logger, **kwargs):
    """Bootstrap the registered cluster from its credential secret"""
    event_type = EventType.UPDATE if reason == kopf.Reason.UPDATE else EventType.CREATE
    event = SecretEvent(event_type, CredentialSecret.from_body(body))
    if retry == 0 and not should_reconcile(event):
        return

    controller = SecretBootstrapController(memo.local, memo.gateway, logger=logger)
    try:
        await controller.reconcile(name, namespace)
    except OnboardingError as e:
        raise kopf.TemporaryError(
            f"Secret reconciliation failed: {e}", delay=memo.settings.backoff_delay(retry)
        )


@kopf.on.event("v1", "secrets", annotations=CREDENTIAL_SECRET_FILTER, when=_is_credential_secret)
async def kubeconfig_secret_event(event, body, memo: kopf.Memo, logger, **kwargs):
    """Drop our finalizer from a deleted credential secret once it is unreferenced"""
    secret_event = SecretEvent(event_type_from_watch(event.get("type")), CredentialSecret.from_body(body))
    if not should_release_finalizer(secret_event):
        return

    controller = SecretBootstrapController(memo.local, memo.gateway, logger=logger)
    await _retry_until_done(
        lambda: controller.release_finalizer(secret_event.secret),
        f"release finalizer of secret {secret_event.secret.name}",
        memo,
        logger,
    )


# Admission
@kopf.on.validate(CLAIM_GROUP, API_VERSION, CLUSTER_CLAIM_PLURAL, id="validate-clusterclaim")
@kopf.on.validate(CLUSTER_GROUP, API_VERSION, REGISTRATION_PLURAL, id="validate-clusterregistration")
def validate_frozen_spec(body, operation, old=None, **kwargs):
    """Deletes always pass; updates may not touch the spec of a decided object"""
    if operation != "UPDATE":
        return
    try:
        validate_update(old, body)
    except ImmutableSpecError as e:
        raise kopf.AdmissionError(str(e), code=400)


if __name__ == "__main__":
    kopf.run()
