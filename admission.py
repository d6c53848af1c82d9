#!/usr/bin/env python3
"""
Validating admission for onboarding resources: once a claim or
registration has been decided, its spec is frozen.
"""

import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)

FROZEN_PHASES = ("Approved", "Rejected", "ClusterDeleted")


class ImmutableSpecError(Exception):
    pass


def validate_update(old: Optional[Dict], new: Dict) -> None:
    """
    Reject spec changes once the stored object reached a decided phase.
    Metadata or status changes, and anything on an object being deleted,
    always pass.
    """
    if (new.get("metadata") or {}).get("deletionTimestamp"):
        return
    if not old:
        return

    phase = (old.get("status") or {}).get("phase", "")
    if phase in FROZEN_PHASES and (old.get("spec") or {}) != (new.get("spec") or {}):
        name = (new.get("metadata") or {}).get("name", "")
        logger.info(f"Rejecting spec change of {name} in phase {phase}")
        raise ImmutableSpecError(f"Cannot modify {name} after approval")
