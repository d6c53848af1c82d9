#!/usr/bin/env python3
"""
Error kinds raised by the onboarding controllers
"""

from typing import List

from kubernetes.client.rest import ApiException


class OnboardingError(Exception):
    """Base class for every error surfaced by the controllers"""


class DecodeError(OnboardingError):
    """Malformed base64 payload or kubeconfig document"""


class InvalidCredentialError(OnboardingError):
    """Credential could not produce a usable remote client"""


class UnreachableError(OnboardingError):
    """Remote API server did not answer the reachability check"""


class DuplicateNameError(OnboardingError):
    """A ClusterManager with the requested name already exists"""


class NotFoundError(OnboardingError):
    """Expected object is missing (usually means not created yet)"""


class ConflictError(OnboardingError):
    """Optimistic write collided with a concurrent writer"""


class TransientAPIError(OnboardingError):
    """Any other local or remote API failure"""


class MembershipError(TransientAPIError):
    """Membership index write failed"""


class PhaseTransitionError(Exception):
    """Attempted to move a registration phase backwards"""


class ReconcileError(OnboardingError):
    """Aggregate of all errors collected during one reconcile"""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            message = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(message)


def from_api_exception(exc: ApiException, what: str = "") -> OnboardingError:
    """Translate a kubernetes ApiException into an OnboardingError kind"""
    prefix = f"{what}: " if what else ""
    message = f"{prefix}{exc.status} {exc.reason}"
    if exc.status == 404:
        return NotFoundError(message)
    if exc.status == 409:
        return ConflictError(message)
    return TransientAPIError(message)
