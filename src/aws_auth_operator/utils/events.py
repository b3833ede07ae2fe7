"""Utilities for emitting Kubernetes events."""

from __future__ import annotations

from typing import Any

import kopf

from ..constants import (
    EVENT_REASON_AUTH_MAPPING_UPDATED,
    EVENT_REASON_CLEANUP_FAILED,
    EVENT_REASON_CLEANUP_SUCCEEDED,
    EVENT_REASON_POLICY_ATTACHED,
    EVENT_REASON_POLICY_DETACHED,
    EVENT_REASON_RECONCILE_FAILED,
    EVENT_REASON_RECONCILE_STARTED,
    EVENT_REASON_ROLE_CREATED,
    EVENT_REASON_ROLE_DELETED,
    EVENT_REASON_TRUST_POLICY_UPDATED,
    EVENT_REASON_VALIDATE_FAILED,
)


def emit_event(
    body: dict[str, Any],
    reason: str,
    message: str,
    type_: str = "Normal",
) -> None:
    """Emit a Kubernetes event.

    Args:
        body: Full resource body (apiVersion, kind and metadata are needed for the reference)
        reason: Event reason
        message: Event message
        type_: Event type (Normal or Warning)
    """
    kopf.event(
        body,
        reason=reason,
        message=message,
        type=type_,
    )


def emit_reconcile_started(body: dict[str, Any]) -> None:
    """Emit reconcile started event."""
    emit_event(body, EVENT_REASON_RECONCILE_STARTED, "Reconciliation started")


def emit_reconcile_failed(body: dict[str, Any], message: str) -> None:
    """Emit reconcile failed event."""
    emit_event(body, EVENT_REASON_RECONCILE_FAILED, message, type_="Warning")


def emit_validate_failed(body: dict[str, Any], message: str) -> None:
    """Emit validation failed event."""
    emit_event(body, EVENT_REASON_VALIDATE_FAILED, message, type_="Warning")


def emit_role_created(body: dict[str, Any], role_arn: str) -> None:
    """Emit role created event."""
    emit_event(body, EVENT_REASON_ROLE_CREATED, f"Role {role_arn} created")


def emit_role_deleted(body: dict[str, Any], role_arn: str) -> None:
    """Emit role deleted event."""
    emit_event(body, EVENT_REASON_ROLE_DELETED, f"Role {role_arn} deleted")


def emit_trust_policy_updated(body: dict[str, Any], role_arn: str) -> None:
    """Emit trust policy updated event."""
    emit_event(body, EVENT_REASON_TRUST_POLICY_UPDATED, f"Trust policy of role {role_arn} updated")


def emit_policy_attached(body: dict[str, Any], policy_arn: str) -> None:
    """Emit policy attached event."""
    emit_event(body, EVENT_REASON_POLICY_ATTACHED, f"Policy {policy_arn} attached")


def emit_policy_detached(body: dict[str, Any], policy_arn: str) -> None:
    """Emit policy detached event."""
    emit_event(body, EVENT_REASON_POLICY_DETACHED, f"Policy {policy_arn} detached")


def emit_auth_mapping_updated(body: dict[str, Any], message: str) -> None:
    """Emit aws-auth mapping updated event."""
    emit_event(body, EVENT_REASON_AUTH_MAPPING_UPDATED, message)


def emit_cleanup_succeeded(body: dict[str, Any]) -> None:
    """Emit cleanup succeeded event."""
    emit_event(body, EVENT_REASON_CLEANUP_SUCCEEDED, "AWS-side cleanup finished")


def emit_cleanup_failed(body: dict[str, Any], message: str) -> None:
    """Emit cleanup failed event."""
    emit_event(body, EVENT_REASON_CLEANUP_FAILED, message, type_="Warning")
