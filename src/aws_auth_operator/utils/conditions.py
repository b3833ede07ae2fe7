"""Utilities for managing Kubernetes conditions."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any

from ..constants import (
    COND_AUTH_MAPPING_SYNCED,
    COND_POLICIES_SYNCED,
    COND_READY,
    COND_ROLE_READY,
    COND_TRUST_POLICY_SYNCED,
    REASON_RECONCILED,
)


def update_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Update or add a condition to the conditions list.

    Args:
        conditions: List of existing conditions
        condition_type: Type of condition
        status: Status of condition ("True", "False", "Unknown")
        reason: Reason for the condition
        message: Human-readable message
        observed_generation: Generation when condition was observed

    Returns:
        Updated list of conditions
    """
    now = datetime.now(timezone.utc).isoformat()

    # Find existing condition
    existing_idx = None
    for idx, cond in enumerate(conditions):
        if cond.get("type") == condition_type:
            existing_idx = idx
            break

    new_condition = {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": now,
    }

    if observed_generation is not None:
        new_condition["observedGeneration"] = observed_generation

    if existing_idx is not None:
        existing = conditions[existing_idx]
        # Only update lastTransitionTime if status changed
        if existing.get("status") == status:
            new_condition["lastTransitionTime"] = existing.get("lastTransitionTime", now)
        conditions[existing_idx] = new_condition
    else:
        conditions.append(new_condition)

    return conditions


def get_condition(conditions: list[dict[str, Any]], condition_type: str) -> dict[str, Any] | None:
    """Return the condition of the given type, if present."""
    for cond in conditions:
        if cond.get("type") == condition_type:
            return cond
    return None


def is_condition_true(conditions: list[dict[str, Any]], condition_type: str) -> bool:
    """Check whether a condition is present with status True."""
    cond = get_condition(conditions, condition_type)
    return cond is not None and cond.get("status") == "True"


def copy_conditions(status: dict[str, Any]) -> list[dict[str, Any]]:
    """Deep copy the conditions of a status block so edits don't leak into the source."""
    return copy.deepcopy(list(status.get("conditions") or []))


def set_ready_condition(
    conditions: list[dict[str, Any]],
    status: bool,
    message: str,
    observed_generation: int | None = None,
    reason: str | None = None,
) -> list[dict[str, Any]]:
    """Set the Ready condition."""
    return update_condition(
        conditions,
        COND_READY,
        "True" if status else "False",
        reason or (REASON_RECONCILED if status else "NotReady"),
        message,
        observed_generation,
    )


def set_step_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    status: bool,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Record the outcome of one reconciliation step."""
    return update_condition(
        conditions,
        condition_type,
        "True" if status else "False",
        reason,
        message,
        observed_generation,
    )


def set_role_ready_condition(
    conditions: list[dict[str, Any]],
    status: bool,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Set the RoleReady condition."""
    return set_step_condition(conditions, COND_ROLE_READY, status, reason, message, observed_generation)


def set_trust_policy_condition(
    conditions: list[dict[str, Any]],
    status: bool,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Set the TrustPolicySynced condition."""
    return set_step_condition(conditions, COND_TRUST_POLICY_SYNCED, status, reason, message, observed_generation)


def set_policies_condition(
    conditions: list[dict[str, Any]],
    status: bool,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Set the PoliciesSynced condition."""
    return set_step_condition(conditions, COND_POLICIES_SYNCED, status, reason, message, observed_generation)


def set_auth_mapping_condition(
    conditions: list[dict[str, Any]],
    status: bool,
    reason: str,
    message: str,
    observed_generation: int | None = None,
) -> list[dict[str, Any]]:
    """Set the AuthMappingSynced condition."""
    return set_step_condition(conditions, COND_AUTH_MAPPING_SYNCED, status, reason, message, observed_generation)

