#!/usr/bin/env python3
"""
Unit tests for event filtering
"""

import pytest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import SECRET_FINALIZER
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
from models import ClusterManager, ClusterRegistration, CredentialSecret

from conftest import cluster_manager_body, registration_body


def registration(phase=None):
    return ClusterRegistration.from_body(registration_body(phase=phase))


def cluster_manager(cluster_type="registered"):
    return ClusterManager.from_body(cluster_manager_body(cluster_type=cluster_type))


class TestRegistrationEvents:
    """Only fresh registrations are reconciled"""

    def test_create_without_phase(self):
        assert should_reconcile(RegistrationEvent(EventType.CREATE, registration()))

    def test_create_with_phase(self):
        """Already processed registrations are not picked up again on create"""
        for phase in ("Validated", "SecretCreated", "Success", "Failed", "Deleted"):
            assert not should_reconcile(RegistrationEvent(EventType.CREATE, registration(phase)))

    def test_other_event_types(self):
        for event_type in (EventType.UPDATE, EventType.DELETE, EventType.GENERIC):
            assert not should_reconcile(RegistrationEvent(event_type, registration()))


class TestClusterManagerEvents:
    """Only deletions of registered ClusterManagers are reconciled"""

    def test_registered_delete(self):
        assert should_reconcile(ClusterManagerEvent(EventType.DELETE, cluster_manager()))

    def test_created_cluster_delete(self):
        """ClusterManagers provisioned by other means are ignored"""
        assert not should_reconcile(ClusterManagerEvent(EventType.DELETE, cluster_manager("created")))

    def test_registered_create_and_update(self):
        for event_type in (EventType.CREATE, EventType.UPDATE, EventType.GENERIC):
            assert not should_reconcile(ClusterManagerEvent(event_type, cluster_manager()))


class TestSecretEvents:
    """Credential secrets reconcile on create and update"""

    def test_name_suffix(self):
        assert is_credential_secret_name("prod-kubeconfig")
        assert not is_credential_secret_name("-kubeconfig")
        assert not is_credential_secret_name("prod-token")
        assert not is_credential_secret_name("")

    def test_create_and_update(self):
        secret = CredentialSecret(name="prod-kubeconfig", namespace="ns")
        assert should_reconcile(SecretEvent(EventType.CREATE, secret))
        assert should_reconcile(SecretEvent(EventType.UPDATE, secret))
        assert not should_reconcile(SecretEvent(EventType.DELETE, secret))
        assert not should_reconcile(SecretEvent(EventType.GENERIC, secret))

    def test_unrelated_secret(self):
        secret = CredentialSecret(name="db-password", namespace="ns")
        assert not should_reconcile(SecretEvent(EventType.CREATE, secret))

    def test_deleting_secret(self):
        secret = CredentialSecret(name="prod-kubeconfig", namespace="ns", deletion_timestamp="2024-01-01T00:00:00Z")
        assert not should_reconcile(SecretEvent(EventType.UPDATE, secret))

    def test_release_finalizer(self):
        """Finalizer release needs a deleting secret that still carries the finalizer"""
        deleting = CredentialSecret(
            name="prod-kubeconfig",
            namespace="ns",
            finalizers=[SECRET_FINALIZER],
            deletion_timestamp="2024-01-01T00:00:00Z",
        )
        released = CredentialSecret(
            name="prod-kubeconfig", namespace="ns", deletion_timestamp="2024-01-01T00:00:00Z"
        )
        live = CredentialSecret(name="prod-kubeconfig", namespace="ns", finalizers=[SECRET_FINALIZER])

        assert should_release_finalizer(SecretEvent(EventType.UPDATE, deleting))
        assert not should_release_finalizer(SecretEvent(EventType.UPDATE, released))
        assert not should_release_finalizer(SecretEvent(EventType.UPDATE, live))
        assert not should_release_finalizer(SecretEvent(EventType.DELETE, deleting))


class TestWatchEventTypes:
    def test_mapping(self):
        assert event_type_from_watch(None) == EventType.CREATE
        assert event_type_from_watch("ADDED") == EventType.CREATE
        assert event_type_from_watch("MODIFIED") == EventType.UPDATE
        assert event_type_from_watch("DELETED") == EventType.DELETE
        assert event_type_from_watch("BOOKMARK") == EventType.GENERIC

    def test_unknown_event_object(self):
        with pytest.raises(TypeError):
            should_reconcile(object())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
