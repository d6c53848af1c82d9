#!/usr/bin/env python3
"""
Unit tests for admission validation
"""

import pytest
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import kopf

from admission import ImmutableSpecError, validate_update
from main import validate_frozen_spec


def claim(phase="Approved", kube_config="a", **metadata):
    return {
        "metadata": {"name": "claim-1", "namespace": "ns", **metadata},
        "spec": {"clusterName": "prod", "kubeConfig": kube_config},
        "status": {"phase": phase},
    }


class TestValidateUpdate:
    """Tests for frozen spec validation"""

    def test_spec_change_after_approval_rejected(self):
        """Approved objects may not change their spec"""
        with pytest.raises(ImmutableSpecError, match="Cannot modify claim-1 after approval"):
            validate_update(claim(), claim(kube_config="b"))

    def test_rejected_and_deleted_phases_frozen(self):
        for phase in ("Rejected", "ClusterDeleted"):
            with pytest.raises(ImmutableSpecError):
                validate_update(claim(phase=phase), claim(phase=phase, kube_config="b"))

    def test_metadata_change_allowed(self):
        """Labels and annotations stay editable"""
        validate_update(claim(), claim(labels={"team": "a"}))

    def test_pending_spec_change_allowed(self):
        validate_update(claim(phase="Awaiting"), claim(phase="Awaiting", kube_config="b"))

    def test_deleting_object_allowed(self):
        """Deletion always passes"""
        validate_update(claim(), claim(kube_config="b", deletionTimestamp="2024-01-01T00:00:00Z"))

    def test_missing_old_object_allowed(self):
        validate_update(None, claim(kube_config="b"))


class TestAdmissionHandler:
    """Tests for the kopf admission handler"""

    def test_update_rejected_with_400(self):
        with pytest.raises(kopf.AdmissionError) as exc_info:
            validate_frozen_spec(body=claim(kube_config="b"), operation="UPDATE", old=claim())

        assert exc_info.value.code == 400

    def test_create_not_checked(self):
        assert validate_frozen_spec(body=claim(kube_config="b"), operation="CREATE") is None

    def test_delete_not_checked(self):
        assert validate_frozen_spec(body=claim(), operation="DELETE", old=claim(kube_config="b")) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
