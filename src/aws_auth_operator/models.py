"""Models shared by the reconciler, the work queue and the clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NamedTuple, Union


class ReconcileKey(NamedTuple):
    """Identity of one Binding; the unit of queue deduplication."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ReconcileKey:
        meta = obj.get("metadata", {})
        return cls(meta.get("namespace", "default"), meta["name"])


@dataclass
class Binding:
    """A Binding custom resource as read from the Kubernetes API."""

    body: dict[str, Any]

    @property
    def metadata(self) -> dict[str, Any]:
        return self.body.setdefault("metadata", {})

    @property
    def key(self) -> ReconcileKey:
        return ReconcileKey.from_object(self.body)

    @property
    def name(self) -> str:
        return self.metadata["name"]

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "default")

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def generation(self) -> int:
        return int(self.metadata.get("generation") or 0)

    @property
    def resource_version(self) -> str | None:
        return self.metadata.get("resourceVersion")

    @property
    def deletion_timestamp(self) -> str | None:
        return self.metadata.get("deletionTimestamp")

    @property
    def finalizers(self) -> list[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def spec(self) -> dict[str, Any]:
        return self.body.get("spec") or {}

    @property
    def status(self) -> dict[str, Any]:
        return self.body.get("status") or {}

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers


@dataclass(frozen=True)
class AuthMapping:
    """An aws-auth ``mapRoles`` entry."""

    username: str
    groups: tuple[str, ...] = ()


@dataclass(frozen=True)
class DesiredState:
    """AWS and cluster state a Binding asks for."""

    role_arn: str
    role_name: str
    role_path: str
    trust_policy: dict[str, Any]
    policy_arns: frozenset[str]
    mapping: AuthMapping | None = None


@dataclass
class RoleState:
    """Live state of an IAM role."""

    arn: str
    name: str
    trust_policy: dict[str, Any]
    attached_policies: frozenset[str] = frozenset()
    tags: dict[str, str] = field(default_factory=dict)


class WatchEvent(NamedTuple):
    """One change notification from the Binding watch stream."""

    type: str
    binding: Binding
    resource_version: str | None


@dataclass(frozen=True)
class Done:
    """Reconciliation finished; wait for the next change or resync."""


@dataclass(frozen=True)
class RequeueImmediate:
    """Reconcile again right away, without backoff."""


@dataclass(frozen=True)
class Requeue:
    """Reconcile again after ``after`` seconds."""

    after: float
    reason: str = ""


Outcome = Union[Done, Requeue, RequeueImmediate]
