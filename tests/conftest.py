"""Shared fixtures: in-memory fakes of the Kubernetes store, IAM and aws-auth."""

from __future__ import annotations

import copy
import itertools
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest

from aws_auth_operator.config import OperatorConfig
from aws_auth_operator.constants import API_GROUP_VERSION, FINALIZER, KIND_BINDING
from aws_auth_operator.errors import ConflictError
from aws_auth_operator.models import Binding, Done, ReconcileKey, Requeue, RequeueImmediate, RoleState
from aws_auth_operator.reconciler import OperatorContext, reconcile
from aws_auth_operator.utils.rate_limit import aws_limiter, configure_rate_limits, k8s_limiter
from aws_auth_operator.utils.policy import parse_role_arn
from aws_auth_operator.workqueue import ExponentialBackoff

ISSUER = "oidc.eks.eu-west-1.amazonaws.com/id/ABC"
ROLE_ARN = "arn:aws:iam::111:role/app"
READ_ONLY = "arn:aws:iam::aws:policy/ReadOnlyAccess"
S3_READ = "arn:aws:iam::aws:policy/AmazonS3ReadOnlyAccess"

MUTATING_CLOUD_CALLS = {
    "create_role",
    "set_trust_policy",
    "tag_role",
    "untag_role",
    "attach_policy",
    "detach_policy",
    "delete_role",
}


class FakeStore:
    """Binding store backed by a dict, enforcing resourceVersion preconditions."""

    def __init__(self) -> None:
        self.objects: dict[ReconcileKey, dict[str, Any]] = {}
        self.status_writes = 0
        self.finalizer_writes = 0
        self.fail: dict[str, list[Exception]] = {}
        self.events: list[Any] = []
        self._versions = itertools.count(1)
        self._uids = itertools.count(1)

    def _maybe_fail(self, operation: str) -> None:
        pending = self.fail.get(operation)
        if pending:
            raise pending.pop(0)

    def _bump(self, obj: dict[str, Any]) -> None:
        obj["metadata"]["resourceVersion"] = str(next(self._versions))

    def put(
        self,
        name: str = "app",
        namespace: str = "default",
        spec: dict[str, Any] | None = None,
        finalizers: list[str] | None = None,
        status: dict[str, Any] | None = None,
    ) -> ReconcileKey:
        body = {
            "apiVersion": API_GROUP_VERSION,
            "kind": KIND_BINDING,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"uid-{next(self._uids)}",
                "generation": 1,
                "finalizers": list(finalizers or []),
            },
            "spec": spec if spec is not None else binding_spec(),
        }
        if status is not None:
            body["status"] = status
        self._bump(body)
        key = ReconcileKey(namespace, name)
        self.objects[key] = body
        return key

    def update_spec(self, key: ReconcileKey, spec: dict[str, Any]) -> None:
        obj = self.objects[key]
        obj["spec"] = spec
        obj["metadata"]["generation"] += 1
        self._bump(obj)

    def delete(self, key: ReconcileKey) -> None:
        obj = self.objects[key]
        if obj["metadata"].get("finalizers"):
            obj["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
            self._bump(obj)
        else:
            del self.objects[key]

    def body(self, key: ReconcileKey) -> dict[str, Any]:
        return self.objects[key]

    def status(self, key: ReconcileKey) -> dict[str, Any]:
        return self.objects[key].get("status", {})

    def _check_version(self, binding: Binding) -> dict[str, Any]:
        obj = self.objects.get(binding.key)
        if obj is None or obj["metadata"]["resourceVersion"] != binding.resource_version:
            raise ConflictError(f"{binding.key} changed")
        return obj

    def get(self, key: ReconcileKey) -> Binding | None:
        self._maybe_fail("get")
        obj = self.objects.get(key)
        return Binding(copy.deepcopy(obj)) if obj is not None else None

    def list(self) -> tuple[list[Binding], str | None]:
        self._maybe_fail("list")
        return [Binding(copy.deepcopy(obj)) for obj in self.objects.values()], "100"

    def update_status(self, binding: Binding, status: dict[str, Any]) -> Binding:
        self._maybe_fail("update_status")
        obj = self._check_version(binding)
        obj["status"] = copy.deepcopy(status)
        self._bump(obj)
        self.status_writes += 1
        return Binding(copy.deepcopy(obj))

    def add_finalizer(self, binding: Binding) -> Binding:
        self._maybe_fail("add_finalizer")
        obj = self._check_version(binding)
        if FINALIZER not in obj["metadata"]["finalizers"]:
            obj["metadata"]["finalizers"].append(FINALIZER)
        self._bump(obj)
        self.finalizer_writes += 1
        return Binding(copy.deepcopy(obj))

    def remove_finalizer(self, binding: Binding) -> Binding:
        self._maybe_fail("remove_finalizer")
        obj = self._check_version(binding)
        obj["metadata"]["finalizers"] = [f for f in obj["metadata"]["finalizers"] if f != FINALIZER]
        self._bump(obj)
        self.finalizer_writes += 1
        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"]["finalizers"]:
            del self.objects[binding.key]
        return Binding(copy.deepcopy(obj))

    def watch(self, resource_version=None, stop_event=None):
        yield from self.events

    def stop_watch(self) -> None:
        pass


class FakeCloud:
    """IAM roles kept in memory; records every call."""

    def __init__(self) -> None:
        self.roles: dict[str, RoleState] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail: dict[str, list[Exception]] = {}

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        pending = self.fail.get(operation)
        if pending:
            raise pending.pop(0)

    @property
    def mutating_calls(self) -> list[tuple[str, tuple[Any, ...]]]:
        return [call for call in self.calls if call[0] in MUTATING_CLOUD_CALLS]

    def reset_calls(self) -> None:
        self.calls.clear()

    def add_role(
        self,
        role_arn: str = ROLE_ARN,
        trust_policy: dict[str, Any] | None = None,
        policies: set[str] | None = None,
        tags: dict[str, str] | None = None,
    ) -> None:
        _, _, _, name = parse_role_arn(role_arn)
        self.roles[role_arn] = RoleState(
            arn=role_arn,
            name=name,
            trust_policy=trust_policy or {"Version": "2012-10-17", "Statement": []},
            attached_policies=frozenset(policies or ()),
            tags=dict(tags or {}),
        )

    def get_role(self, role_arn: str) -> RoleState | None:
        self._record("get_role", role_arn)
        role = self.roles.get(role_arn)
        return copy.deepcopy(role) if role is not None else None

    def create_role(self, role_arn: str, trust_policy: dict[str, Any], tags: dict[str, str]) -> None:
        self._record("create_role", role_arn, trust_policy, tags)
        self.add_role(role_arn, copy.deepcopy(trust_policy), set(), tags)

    def set_trust_policy(self, role_arn: str, trust_policy: dict[str, Any]) -> None:
        self._record("set_trust_policy", role_arn, trust_policy)
        self.roles[role_arn].trust_policy = copy.deepcopy(trust_policy)

    def tag_role(self, role_arn: str, tags: dict[str, str]) -> None:
        self._record("tag_role", role_arn, dict(tags))
        self.roles[role_arn].tags.update(tags)

    def untag_role(self, role_arn: str, tag_keys: list[str]) -> None:
        self._record("untag_role", role_arn, list(tag_keys))
        role = self.roles.get(role_arn)
        if role is not None:
            for tag_key in tag_keys:
                role.tags.pop(tag_key, None)

    def attach_policy(self, role_arn: str, policy_arn: str) -> None:
        self._record("attach_policy", role_arn, policy_arn)
        role = self.roles[role_arn]
        role.attached_policies = role.attached_policies | {policy_arn}

    def detach_policy(self, role_arn: str, policy_arn: str) -> None:
        self._record("detach_policy", role_arn, policy_arn)
        role = self.roles.get(role_arn)
        if role is not None:
            role.attached_policies = role.attached_policies - {policy_arn}

    def delete_role(self, role_arn: str) -> None:
        self._record("delete_role", role_arn)
        self.roles.pop(role_arn, None)


class FakeMapping:
    """aws-auth mapRoles entries in memory."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []
        self.writes = 0
        self.fail: dict[str, list[Exception]] = {}

    def _maybe_fail(self, operation: str) -> None:
        pending = self.fail.get(operation)
        if pending:
            raise pending.pop(0)

    def get_entry(self, role_arn: str) -> dict[str, Any] | None:
        return next((e for e in self.entries if e["rolearn"] == role_arn), None)

    def upsert_entry(self, role_arn: str, username: str, groups: list[str]) -> bool:
        self._maybe_fail("upsert_entry")
        entry = self.get_entry(role_arn)
        desired = {"rolearn": role_arn, "username": username, "groups": list(groups)}
        if entry == desired:
            return False
        self.entries = [e for e in self.entries if e["rolearn"] != role_arn] + [desired]
        self.writes += 1
        return True

    def remove_entry(self, role_arn: str) -> bool:
        self._maybe_fail("remove_entry")
        remaining = [e for e in self.entries if e["rolearn"] != role_arn]
        if len(remaining) == len(self.entries):
            return False
        self.entries = remaining
        self.writes += 1
        return True


def binding_spec(
    role_arn: str = ROLE_ARN,
    policies: list[Any] | None = None,
    subject: str = "app-sa",
    mapping: dict[str, Any] | None = None,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "identity": {"roleArn": role_arn},
        "subject": {"name": subject},
        "policies": list(policies) if policies is not None else [READ_ONLY],
    }
    if mapping is not None:
        spec["mapping"] = mapping
    return spec


@pytest.fixture(autouse=True)
def fast_rate_limits():
    """Lift client-side rate limits so tests don't sleep."""
    configure_rate_limits(1_000_000.0, 1_000_000.0)
    yield
    k8s_limiter.reset()
    aws_limiter.reset()


@pytest.fixture(autouse=True)
def kopf_events(monkeypatch):
    """Capture events instead of posting them through kopf."""
    mock_event = MagicMock()
    monkeypatch.setattr("aws_auth_operator.utils.events.kopf.event", mock_event)
    return mock_event


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def mapping() -> FakeMapping:
    return FakeMapping()


@pytest.fixture
def config() -> OperatorConfig:
    return OperatorConfig(oidc_issuer=ISSUER, resync_interval=600.0, backoff_base=1.0, backoff_cap=300.0)


@pytest.fixture
def ctx(store, cloud, mapping, config) -> OperatorContext:
    return OperatorContext(
        store=store,
        cloud=cloud,
        mapping=mapping,
        backoff=ExponentialBackoff(base=config.backoff_base, cap=config.backoff_cap),
        config=config,
    )


@pytest.fixture
def drive(ctx) -> Callable[..., list[Any]]:
    """Reconcile a key repeatedly while it asks for immediate requeues.

    Returns the outcomes in order; the last one is Done or Requeue.
    """

    def _drive(key: ReconcileKey, max_passes: int = 10) -> list[Any]:
        outcomes = []
        for _ in range(max_passes):
            outcome = reconcile(key, ctx)
            outcomes.append(outcome)
            if isinstance(outcome, (Done, Requeue)):
                return outcomes
            assert isinstance(outcome, RequeueImmediate)
        raise AssertionError(f"{key} did not settle after {max_passes} passes: {outcomes}")

    return _drive
