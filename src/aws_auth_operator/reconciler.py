"""Reconciliation of IAMRoleBinding resources against IAM and aws-auth."""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from . import metrics
from .builders import build_desired_state
from .config import OperatorConfig
from .constants import (
    COND_AUTH_MAPPING_SYNCED,
    COND_POLICIES_SYNCED,
    COND_READY,
    COND_ROLE_READY,
    COND_TRUST_POLICY_SYNCED,
    CONTROLLER_NAME,
    FINALIZER,
    KIND_BINDING,
    REASON_CLEANUP_FAILED,
    REASON_DISABLED,
    REASON_RECONCILED,
    TAG_ADOPTED_BY,
    TAG_BINDING_REF,
    TAG_BINDING_UID,
    TAG_MANAGED_BY,
)
from .errors import (
    ConfigurationError,
    ConflictError,
    OperatorError,
    PermanentCloudError,
    StoreError,
    ValidationError,
)
from .logging import log_resource_event
from .models import Binding, DesiredState, Done, Outcome, ReconcileKey, Requeue, RequeueImmediate, RoleState
from .services.base import AuthMappingClient, BindingStore, CloudIdentityClient
from .tracing import add_span_attribute, trace_span
from .utils.conditions import (
    copy_conditions,
    get_condition,
    set_auth_mapping_condition,
    set_policies_condition,
    set_ready_condition,
    set_role_ready_condition,
    set_step_condition,
    set_trust_policy_condition,
)
from .utils.context import with_correlation_id
from .utils.errors import sanitize_error_message, sanitize_exception
from .utils.events import (
    emit_auth_mapping_updated,
    emit_cleanup_failed,
    emit_cleanup_succeeded,
    emit_policy_attached,
    emit_policy_detached,
    emit_reconcile_failed,
    emit_reconcile_started,
    emit_role_created,
    emit_role_deleted,
    emit_trust_policy_updated,
    emit_validate_failed,
)
from .utils.policy import parse_role_arn, policy_documents_equal
from .workqueue import ExponentialBackoff


@dataclass
class OperatorContext:
    """Clients and settings shared by every reconciliation."""

    store: BindingStore
    cloud: CloudIdentityClient
    mapping: AuthMappingClient | None
    backoff: ExponentialBackoff
    config: OperatorConfig


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _outcome_label(outcome: Outcome) -> str:
    if isinstance(outcome, Done):
        return "success"
    if isinstance(outcome, RequeueImmediate):
        return "requeue"
    return "retry"


class BindingReconciler:
    """Drives one Binding towards its desired IAM and aws-auth state."""

    def __init__(self, ctx: OperatorContext):
        """Initialize the reconciler.

        Args:
            ctx: Shared clients, backoff policy and configuration
        """
        self.ctx = ctx
        self.kind = KIND_BINDING
        self.logger = logging.getLogger(__name__)

    def _log(self, level: int, binding: Binding, message: str, event: str, reason: str, **kwargs: Any) -> None:
        meta = binding.metadata
        log_resource_event(
            self.logger,
            controller=CONTROLLER_NAME,
            resource_kind=self.kind,
            resource_name=meta.get("name", "unknown"),
            namespace=meta.get("namespace", "default"),
            uid=meta.get("uid", "unknown"),
            event=event,
            reason=reason,
            message=message,
            level=level,
            **kwargs,
        )

    def log_info(self, binding: Binding, message: str, event: str = "info", reason: str = "Info", **kwargs: Any) -> None:
        """Log an info-level structured log message."""
        self._log(logging.INFO, binding, message, event, reason, **kwargs)

    def log_warning(
        self, binding: Binding, message: str, event: str = "warning", reason: str = "Warning", **kwargs: Any
    ) -> None:
        """Log a warning-level structured log message."""
        self._log(logging.WARNING, binding, message, event, reason, **kwargs)

    def log_error(
        self,
        binding: Binding,
        message: str,
        error: Exception | None = None,
        event: str = "error",
        reason: str = "Error",
        **kwargs: Any,
    ) -> None:
        """Log an error-level structured log message.

        Args:
            binding: Binding the message is about
            message: Log message
            error: Optional exception to include sanitized error details
            event: Event type (default: "error")
            reason: Reason for the event (default: "Error")
            **kwargs: Additional fields to include in the log
        """
        if error is not None:
            kwargs["error"] = sanitize_exception(error)
            kwargs["error_type"] = type(error).__name__
        self._log(logging.ERROR, binding, message, event, reason, **kwargs)

    def reconcile(self, key: ReconcileKey) -> Outcome:
        """Run one reconciliation pass for a key.

        Never raises: every failure is turned into a requeue decision.
        """
        start_time = time.time()
        with with_correlation_id(), trace_span(
            "reconcile",
            kind=self.kind,
            attributes={"resource.name": key.name, "resource.namespace": key.namespace},
        ):
            outcome = self._reconcile(key)
            add_span_attribute("reconcile.outcome", _outcome_label(outcome))

        duration = time.time() - start_time
        metrics.reconcile_total.labels(kind=self.kind, result=_outcome_label(outcome)).inc()
        metrics.reconcile_duration_seconds.labels(kind=self.kind).observe(duration)
        return outcome

    def _retry_outcome(self, key: ReconcileKey, error: Exception) -> Requeue:
        """Pick the requeue delay for a failure: backoff when retrying can help, resync otherwise."""
        retryable = error.retryable if isinstance(error, OperatorError) else True
        reason = error.reason if isinstance(error, OperatorError) else type(error).__name__
        if retryable:
            return Requeue(after=self.ctx.backoff.when(key), reason=reason)
        return Requeue(after=self.ctx.config.resync_interval, reason=reason)

    def _reconcile(self, key: ReconcileKey) -> Outcome:
        try:
            binding = self.ctx.store.get(key)
        except StoreError as e:
            self.logger.warning(f"Failed to read Binding {key}: {e}")
            metrics.error_total.labels(kind=self.kind, error_type=type(e).__name__).inc()
            return self._retry_outcome(key, e)

        if binding is None:
            self.ctx.backoff.forget(key)
            return Done()

        if binding.deletion_timestamp:
            return self._teardown(binding)

        if not binding.has_finalizer(FINALIZER):
            try:
                self.ctx.store.add_finalizer(binding)
            except ConflictError:
                return RequeueImmediate()
            except StoreError as e:
                self.log_error(binding, "Failed to add finalizer", error=e, event="finalizer")
                return self._retry_outcome(key, e)
            self.log_info(binding, "Added finalizer", event="finalizer", reason="FinalizerAdded")
            return RequeueImmediate()

        return self._converge(binding)

    # Converge

    def _converge(self, binding: Binding) -> Outcome:
        generation = binding.generation
        status = copy.deepcopy(binding.status)
        conditions = copy_conditions(binding.status)
        step = COND_READY

        if status.get("observedGeneration") != generation:
            emit_reconcile_started(binding.body)
            self.log_info(binding, "Reconciling Binding", event="reconcile", reason="ReconcileStarted")

        try:
            desired = build_desired_state(binding, self.ctx.config.oidc_issuer)
        except (ValidationError, ConfigurationError) as e:
            emit_validate_failed(binding.body, sanitize_error_message(str(e)))
            return self._fail(binding, status, conditions, e, step)

        applied = False
        try:
            previous_arn = status.get("roleArn")
            if previous_arn and previous_arn != desired.role_arn:
                self.log_info(binding, f"Role changed from {previous_arn}, releasing it", event="reconcile")
                self._release(binding, status, previous_arn)
                applied = True

            step = COND_ROLE_READY
            with trace_span("get_role", kind=self.kind, attributes={"role.arn": desired.role_arn}):
                role = self.ctx.cloud.get_role(desired.role_arn)

            if role is not None and not self._owns(binding, role):
                self._check_foreign_owner(binding, role)
                if "adoptedTrustPolicy" not in status:
                    # Record the pre-existing trust policy before changing anything
                    status["roleArn"] = desired.role_arn
                    status["roleCreated"] = False
                    status["adoptedTrustPolicy"] = role.trust_policy
                    status["conditions"] = set_role_ready_condition(
                        conditions, True, "Adopted", f"Adopted existing role {desired.role_arn}", generation
                    )
                    self.ctx.store.update_status(binding, status)
                    self._mark_adopted(binding, desired.role_arn)
                    self.log_info(binding, f"Adopted existing role {desired.role_arn}", event="adopt", reason="Adopted")
                    return RequeueImmediate()
                if role.tags.get(TAG_ADOPTED_BY) != binding.uid:
                    self._mark_adopted(binding, desired.role_arn)
                    applied = True

            if role is None:
                role = self._create_role(binding, desired)
                status.pop("adoptedTrustPolicy", None)
                applied = True
            owned = self._owns(binding, role)
            status["roleArn"] = desired.role_arn
            status["roleCreated"] = owned
            set_role_ready_condition(
                conditions, True, REASON_RECONCILED, f"Role {desired.role_arn} exists", generation
            )

            step = COND_TRUST_POLICY_SYNCED
            if not policy_documents_equal(role.trust_policy, desired.trust_policy):
                self._record_drift(binding, "trust_policy")
                with trace_span("set_trust_policy", kind=self.kind, attributes={"role.arn": desired.role_arn}):
                    self.ctx.cloud.set_trust_policy(desired.role_arn, desired.trust_policy)
                emit_trust_policy_updated(binding.body, desired.role_arn)
                applied = True
            set_trust_policy_condition(conditions, True, REASON_RECONCILED, "Trust policy is in sync", generation)

            step = COND_POLICIES_SYNCED
            if self._sync_policies(binding, desired, role, owned, status):
                applied = True
            set_policies_condition(
                conditions,
                True,
                REASON_RECONCILED,
                f"{len(desired.policy_arns)} managed policies attached",
                generation,
            )

            step = COND_AUTH_MAPPING_SYNCED
            if self._sync_mapping(binding, desired, status, conditions, generation):
                applied = True

        except ConflictError:
            return RequeueImmediate()
        except Exception as e:
            return self._fail(binding, status, conditions, e, step)

        ready_before = get_condition(conditions, COND_READY)
        set_ready_condition(conditions, True, "Role, trust policy and policies are in sync", generation)
        status["conditions"] = conditions
        status["observedGeneration"] = generation
        if applied:
            status["lastSyncTime"] = _now()

        try:
            self._persist(binding, status)
        except ConflictError:
            return RequeueImmediate()
        except StoreError as e:
            self.log_error(binding, "Failed to write status", error=e, event="status")
            return self._retry_outcome(binding.key, e)

        if ready_before is None or ready_before.get("status") != "True":
            metrics.resource_status_total.labels(kind=self.kind, status="ready").inc()
        if applied:
            self.log_info(binding, "Binding reconciled", event="reconcile", reason=REASON_RECONCILED)
        self.ctx.backoff.forget(binding.key)
        return Done()

    def _owns(self, binding: Binding, role: RoleState) -> bool:
        return bool(binding.uid) and role.tags.get(TAG_BINDING_UID) == binding.uid

    def _check_foreign_owner(self, binding: Binding, role: RoleState) -> None:
        """Refuse a role another Binding created or adopted."""
        if role.tags.get(TAG_MANAGED_BY) == CONTROLLER_NAME:
            owner_uid = role.tags.get(TAG_BINDING_UID)
        else:
            owner_uid = role.tags.get(TAG_ADOPTED_BY)
        if owner_uid and owner_uid != binding.uid:
            owner = role.tags.get(TAG_BINDING_REF, owner_uid)
            raise PermanentCloudError(
                f"role {role.arn} is managed by Binding {owner}",
                code="RoleOwnedByAnotherBinding",
                operation="get_role",
            )

    def _mark_adopted(self, binding: Binding, role_arn: str) -> None:
        tags = {TAG_ADOPTED_BY: binding.uid, TAG_BINDING_REF: str(binding.key)}
        with trace_span("tag_role", kind=self.kind, attributes={"role.arn": role_arn}):
            self.ctx.cloud.tag_role(role_arn, tags)

    def _create_role(self, binding: Binding, desired: DesiredState) -> RoleState:
        tags = {
            TAG_MANAGED_BY: CONTROLLER_NAME,
            TAG_BINDING_UID: binding.uid,
            TAG_BINDING_REF: str(binding.key),
        }
        with trace_span("create_role", kind=self.kind, attributes={"role.arn": desired.role_arn}):
            self.ctx.cloud.create_role(desired.role_arn, desired.trust_policy, tags)
        emit_role_created(binding.body, desired.role_arn)
        self.log_info(binding, f"Created role {desired.role_arn}", event="create", reason="RoleCreated")
        return RoleState(
            arn=desired.role_arn,
            name=desired.role_name,
            trust_policy=desired.trust_policy,
            attached_policies=frozenset(),
            tags=tags,
        )

    def _sync_policies(
        self,
        binding: Binding,
        desired: DesiredState,
        role: RoleState,
        owned: bool,
        status: dict[str, Any],
    ) -> bool:
        """Attach missing and detach extraneous managed policies.

        ``status["attachedPolicies"]`` is kept current after every call so a
        failure part way through still records what this Binding attached.

        Returns:
            True if any policy was attached or detached
        """
        attached = role.attached_policies
        tracked = set(status.get("attachedPolicies") or [])
        if owned:
            extraneous = attached - desired.policy_arns
        else:
            extraneous = (tracked - desired.policy_arns) & attached
        missing = desired.policy_arns - attached

        # Policies already in place count as tracked; stale entries are dropped
        tracked = (tracked & attached) | (desired.policy_arns & attached)
        status["attachedPolicies"] = sorted(tracked)

        if missing or extraneous:
            self._record_drift(binding, "policies")

        changed = False
        for policy_arn in sorted(missing):
            with trace_span("attach_policy", kind=self.kind, attributes={"policy.arn": policy_arn}):
                self.ctx.cloud.attach_policy(desired.role_arn, policy_arn)
            tracked.add(policy_arn)
            status["attachedPolicies"] = sorted(tracked)
            emit_policy_attached(binding.body, policy_arn)
            changed = True

        for policy_arn in sorted(extraneous):
            with trace_span("detach_policy", kind=self.kind, attributes={"policy.arn": policy_arn}):
                self.ctx.cloud.detach_policy(desired.role_arn, policy_arn)
            tracked.discard(policy_arn)
            status["attachedPolicies"] = sorted(tracked)
            emit_policy_detached(binding.body, policy_arn)
            changed = True

        return changed

    def _sync_mapping(
        self,
        binding: Binding,
        desired: DesiredState,
        status: dict[str, Any],
        conditions: list[dict[str, Any]],
        generation: int,
    ) -> bool:
        """Ensure the aws-auth entry matches the mapping, or is gone when none is requested."""
        record = status.get("authMapping")
        if desired.mapping is None:
            changed = False
            if record:
                if self.ctx.mapping is not None and self.ctx.mapping.remove_entry(record.get("roleArn", "")):
                    emit_auth_mapping_updated(binding.body, f"Removed aws-auth mapping of {record.get('roleArn')}")
                    changed = True
                status.pop("authMapping", None)
            set_auth_mapping_condition(conditions, True, REASON_DISABLED, "No aws-auth mapping requested", generation)
            return changed

        if self.ctx.mapping is None:
            raise ConfigurationError("aws-auth mapping requested but no aws-auth ConfigMap client is configured")

        changed = False
        if record and record.get("roleArn") != desired.role_arn:
            changed = self.ctx.mapping.remove_entry(record.get("roleArn", ""))

        groups = list(desired.mapping.groups)
        with trace_span("upsert_auth_mapping", kind=self.kind, attributes={"role.arn": desired.role_arn}):
            if self.ctx.mapping.upsert_entry(desired.role_arn, desired.mapping.username, groups):
                emit_auth_mapping_updated(
                    binding.body, f"Mapped {desired.role_arn} to {desired.mapping.username}"
                )
                changed = True
        status["authMapping"] = {
            "roleArn": desired.role_arn,
            "username": desired.mapping.username,
            "groups": groups,
        }
        set_auth_mapping_condition(
            conditions, True, REASON_RECONCILED, f"Mapped to {desired.mapping.username}", generation
        )
        return changed

    def _record_drift(self, binding: Binding, resource_type: str) -> None:
        # Only count it as drift when the spec itself has not changed
        if binding.status.get("observedGeneration") == binding.generation:
            metrics.drift_detected_total.labels(kind=self.kind, resource_type=resource_type).inc()
            self.log_warning(binding, f"Drift detected in {resource_type}", event="drift", reason="DriftDetected")

    # Teardown

    def _release(self, binding: Binding, status: dict[str, Any], role_arn: str) -> None:
        """Undo what this Binding did to a role and to aws-auth.

        Owned roles are deleted. Adopted roles get the policies this Binding
        attached detached, their original trust policy restored and the
        adoption tag removed. A role another Binding adopted is left alone.
        Status fields describing the role are cleared once released.
        """
        role = self.ctx.cloud.get_role(role_arn)
        if role is not None:
            if self._owns(binding, role):
                with trace_span("delete_role", kind=self.kind, attributes={"role.arn": role_arn}):
                    self.ctx.cloud.delete_role(role_arn)
                emit_role_deleted(binding.body, role_arn)
            else:
                adopter = role.tags.get(TAG_ADOPTED_BY)
                if adopter and adopter != binding.uid:
                    self.log_warning(
                        binding,
                        f"Role {role_arn} is adopted by another Binding, leaving it untouched",
                        event="delete",
                        reason="RoleNotReleased",
                    )
                else:
                    self._restore_adopted(binding, status, role)

        record = status.get("authMapping")
        if record and self.ctx.mapping is not None:
            self.ctx.mapping.remove_entry(record.get("roleArn") or role_arn)

        for field in ("roleArn", "roleCreated", "attachedPolicies", "adoptedTrustPolicy", "authMapping"):
            status.pop(field, None)

    def _restore_adopted(self, binding: Binding, status: dict[str, Any], role: RoleState) -> None:
        tracked = set(status.get("attachedPolicies") or [])
        for policy_arn in sorted(tracked & role.attached_policies):
            self.ctx.cloud.detach_policy(role.arn, policy_arn)
            emit_policy_detached(binding.body, policy_arn)
        adopted = status.get("adoptedTrustPolicy")
        if adopted and not policy_documents_equal(role.trust_policy, adopted):
            self.ctx.cloud.set_trust_policy(role.arn, adopted)
            emit_trust_policy_updated(binding.body, role.arn)
        # Untag last so an interrupted release is retried against our own role
        if TAG_ADOPTED_BY in role.tags:
            self.ctx.cloud.untag_role(role.arn, [TAG_ADOPTED_BY, TAG_BINDING_REF])

    def _release_unrecorded(self, binding: Binding, status: dict[str, Any]) -> None:
        """Clean up a Binding whose status never recorded a role.

        Adoption records the role before changing it, so the only role such a
        Binding can have touched is one it created and tagged. A role that
        cannot be read under the spec ARN is not ours.
        """
        candidate = (binding.spec.get("identity") or {}).get("roleArn") or ""
        role = None
        try:
            parse_role_arn(candidate)
            role = self.ctx.cloud.get_role(candidate)
        except ValueError:
            pass
        except PermanentCloudError as e:
            self.log_warning(
                binding, f"Cannot read role {candidate}, nothing to release: {e}", event="delete", reason="NothingToRelease"
            )

        if role is not None and self._owns(binding, role):
            with trace_span("delete_role", kind=self.kind, attributes={"role.arn": candidate}):
                self.ctx.cloud.delete_role(candidate)
            emit_role_deleted(binding.body, candidate)

        record = status.get("authMapping")
        if record and self.ctx.mapping is not None:
            self.ctx.mapping.remove_entry(record.get("roleArn", ""))
        status.pop("authMapping", None)

    def _teardown(self, binding: Binding) -> Outcome:
        if not binding.has_finalizer(FINALIZER):
            return Done()

        status = copy.deepcopy(binding.status)
        conditions = copy_conditions(binding.status)
        role_arn = status.get("roleArn")
        self.log_info(binding, "Cleaning up Binding", event="delete", reason="CleanupStarted", role_arn=role_arn)

        try:
            if role_arn:
                self._release(binding, status, role_arn)
            else:
                self._release_unrecorded(binding, status)
            self.ctx.store.remove_finalizer(binding)
        except ConflictError:
            return RequeueImmediate()
        except Exception as e:
            emit_cleanup_failed(binding.body, sanitize_error_message(str(e)))
            return self._fail(binding, status, conditions, e, COND_READY, reason=REASON_CLEANUP_FAILED)

        emit_cleanup_succeeded(binding.body)
        self.log_info(binding, "Binding cleaned up", event="delete", reason="CleanupSucceeded")
        self.ctx.backoff.forget(binding.key)
        return Done()

    # Failure handling

    def _fail(
        self,
        binding: Binding,
        status: dict[str, Any],
        conditions: list[dict[str, Any]],
        error: Exception,
        step: str,
        reason: str | None = None,
    ) -> Outcome:
        """Record a failed step, persist status and pick the requeue delay."""
        message = sanitize_error_message(str(error)) or type(error).__name__
        error_reason = reason or (error.reason if isinstance(error, OperatorError) else "InternalError")
        generation = binding.generation

        if step != COND_READY:
            set_step_condition(conditions, step, False, error_reason, message, generation)
        set_ready_condition(conditions, False, message, generation, reason=error_reason)
        status["conditions"] = conditions

        metrics.error_total.labels(kind=self.kind, error_type=type(error).__name__).inc()
        ready_before = get_condition(binding.status.get("conditions") or [], COND_READY)
        if ready_before is None or ready_before.get("status") != "False":
            metrics.resource_status_total.labels(kind=self.kind, status="failed").inc()

        if isinstance(error, OperatorError) and error.retryable:
            self.log_warning(binding, f"Transient failure: {message}", event="reconcile", reason=error_reason)
        else:
            self.log_error(binding, "Reconciliation failed", error=error, event="reconcile", reason=error_reason)
        if not isinstance(error, (ValidationError, ConfigurationError)) and reason != REASON_CLEANUP_FAILED:
            emit_reconcile_failed(binding.body, message)

        try:
            self._persist(binding, status)
        except ConflictError:
            return RequeueImmediate()
        except StoreError as e:
            self.log_error(binding, "Failed to write status", error=e, event="status")

        return self._retry_outcome(binding.key, error)

    def _persist(self, binding: Binding, status: dict[str, Any]) -> None:
        """Write status only when it differs from what is stored."""
        if status == binding.status:
            return
        self.ctx.store.update_status(binding, status)


def reconcile(key: ReconcileKey, ctx: OperatorContext) -> Outcome:
    """Reconcile the Binding identified by key.

    Returns:
        Done, Requeue(after) or RequeueImmediate
    """
    return BindingReconciler(ctx).reconcile(key)
