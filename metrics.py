#!/usr/bin/env python3
"""
Prometheus metrics for the cluster onboarding operator
"""

import logging
from prometheus_client import Counter, Histogram, Info, start_http_server

logger = logging.getLogger(__name__)

# Registration metrics
registration_phase_transitions = Counter(
    "onboard_registration_phase_transitions_total",
    "Number of ClusterRegistration phase transitions",
    ["namespace", "phase"],
)

# Reconcile metrics
reconcile_duration = Histogram(
    "onboard_reconcile_duration_seconds",
    "Time spent in one reconcile pass",
    ["controller"],
)

reconcile_errors = Counter(
    "onboard_reconcile_errors_total",
    "Total number of reconcile errors",
    ["controller", "namespace", "error_type"],
)

reconcile_success = Counter(
    "onboard_reconcile_success_total",
    "Total number of successful reconciles",
    ["controller", "namespace"],
)

# Created objects
kubeconfig_secrets_created = Counter(
    "onboard_kubeconfig_secrets_created_total",
    "Total number of credential secrets created",
    ["namespace"],
)

cluster_managers_created = Counter(
    "onboard_cluster_managers_created_total",
    "Total number of ClusterManager resources created",
    ["namespace"],
)

remote_objects_created = Counter(
    "onboard_remote_objects_created_total",
    "Total number of objects created on registered clusters",
    ["kind"],
)

cascade_deletions = Counter(
    "onboard_cascade_deletions_total",
    "Total number of ClusterRegistrations marked Deleted after their ClusterManager went away",
    ["namespace"],
)

membership_errors = Counter(
    "onboard_membership_errors_total",
    "Total number of failed membership index writes",
    ["namespace"],
)

# Operator info
operator_info = Info(
    "onboard_operator",
    "Cluster onboarding operator information",
)


def init_metrics(port: int = 0):
    """Initialize operator metrics and, if a port is given, serve them"""
    operator_info.info(
        {
            "version": "v1alpha1",
            "name": "cluster-onboarding-operator",
            "description": "Registers external clusters into the management plane",
        }
    )
    if port:
        start_http_server(port)
        logger.info(f"Prometheus metrics served on :{port}")
    logger.info("Prometheus metrics initialized")


def record_phase_transition(namespace: str, phase: str):
    registration_phase_transitions.labels(namespace=namespace, phase=phase or "None").inc()


def record_reconcile_success(controller: str, namespace: str):
    """Record successful reconcile"""
    reconcile_success.labels(controller=controller, namespace=namespace).inc()


def record_reconcile_error(controller: str, namespace: str, error_type: str):
    """Record reconcile error"""
    reconcile_errors.labels(
        controller=controller, namespace=namespace, error_type=error_type
    ).inc()


def record_secret_created(namespace: str):
    kubeconfig_secrets_created.labels(namespace=namespace).inc()


def record_cluster_manager_created(namespace: str):
    cluster_managers_created.labels(namespace=namespace).inc()


def record_remote_object_created(kind: str):
    remote_objects_created.labels(kind=kind).inc()


def record_cascade_deletion(namespace: str):
    cascade_deletions.labels(namespace=namespace).inc()


def record_membership_error(namespace: str):
    membership_errors.labels(namespace=namespace).inc()
