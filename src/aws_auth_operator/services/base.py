"""Capability contracts of the clients the reconciler depends on."""

from __future__ import annotations

import threading
from typing import Any, Iterator, Protocol

from ..models import Binding, ReconcileKey, RoleState, WatchEvent


class BindingStore(Protocol):
    """Protocol defining Binding operations against the Kubernetes API."""

    def get(self, key: ReconcileKey) -> Binding | None:
        """Fetch a Binding, or None if it does not exist."""
        ...

    def list(self) -> tuple[list[Binding], str | None]:
        """List all Bindings with the list resourceVersion."""
        ...

    def update_status(self, binding: Binding, status: dict[str, Any]) -> Binding:
        """Replace the status subresource.

        Raises ConflictError when the Binding changed since it was read.
        """
        ...

    def add_finalizer(self, binding: Binding) -> Binding:
        """Add the operator finalizer."""
        ...

    def remove_finalizer(self, binding: Binding) -> Binding:
        """Remove the operator finalizer."""
        ...

    def watch(
        self,
        resource_version: str | None = None,
        stop_event: threading.Event | None = None,
    ) -> Iterator[WatchEvent]:
        """Stream Binding changes until stop_event is set."""
        ...

    def stop_watch(self) -> None:
        """Interrupt an open watch stream."""
        ...


class CloudIdentityClient(Protocol):
    """Protocol defining IAM role operations."""

    def get_role(self, role_arn: str) -> RoleState | None:
        """Read a role with its trust policy and attached policies, or None if absent."""
        ...

    def create_role(self, role_arn: str, trust_policy: dict[str, Any], tags: dict[str, str]) -> None:
        """Create a role with the given trust policy."""
        ...

    def set_trust_policy(self, role_arn: str, trust_policy: dict[str, Any]) -> None:
        """Replace the trust policy of a role."""
        ...

    def tag_role(self, role_arn: str, tags: dict[str, str]) -> None:
        """Add or overwrite tags on a role."""
        ...

    def untag_role(self, role_arn: str, tag_keys: list[str]) -> None:
        """Remove tags from a role; missing keys are ignored."""
        ...

    def attach_policy(self, role_arn: str, policy_arn: str) -> None:
        """Attach a managed policy."""
        ...

    def detach_policy(self, role_arn: str, policy_arn: str) -> None:
        """Detach a managed policy; already detached is not an error."""
        ...

    def delete_role(self, role_arn: str) -> None:
        """Delete a role; an absent role is not an error."""
        ...


class AuthMappingClient(Protocol):
    """Protocol defining aws-auth ConfigMap operations."""

    def get_entry(self, role_arn: str) -> dict[str, Any] | None:
        """Return the mapRoles entry for a role, or None."""
        ...

    def upsert_entry(self, role_arn: str, username: str, groups: list[str]) -> bool:
        """Create or update a mapRoles entry. Returns True if a write happened."""
        ...

    def remove_entry(self, role_arn: str) -> bool:
        """Remove a mapRoles entry. Returns True if a write happened."""
        ...
