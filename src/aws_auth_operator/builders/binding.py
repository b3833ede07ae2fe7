"""Builder for the desired state of an IAMRoleBinding."""

from __future__ import annotations

import re
from typing import Any

from ..constants import DEFAULT_AUDIENCE
from ..errors import ConfigurationError, ValidationError
from ..models import AuthMapping, Binding, DesiredState
from ..utils.policy import build_trust_policy, normalize_issuer, normalize_policy_arn, parse_role_arn

# RFC 1123 label / subdomain rules used by namespaces and service accounts
_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")


def _parse_subject(spec: dict[str, Any], default_namespace: str) -> tuple[str, str]:
    subject = spec.get("subject") or {}
    if not isinstance(subject, dict):
        raise ValidationError("subject must be an object")

    name = (subject.get("name") or "").strip()
    namespace = (subject.get("namespace") or default_namespace or "").strip()
    if not name:
        raise ValidationError("subject.name is required")
    if len(name) > 253 or not _DNS_SUBDOMAIN_RE.match(name):
        raise ValidationError(f"subject.name {name!r} is not a valid service account name")
    if len(namespace) > 63 or not _DNS_LABEL_RE.match(namespace):
        raise ValidationError(f"subject.namespace {namespace!r} is not a valid namespace")
    return namespace, name


def _parse_policies(spec: dict[str, Any], partition: str) -> frozenset[str]:
    policies = spec.get("policies") or []
    if not isinstance(policies, list):
        raise ValidationError("policies must be a list")

    arns = set()
    for entry in policies:
        if isinstance(entry, dict):
            entry = entry.get("arn") or entry.get("name") or ""
        if not isinstance(entry, str):
            raise ValidationError(f"policies entry {entry!r} must be a string")
        try:
            arns.add(normalize_policy_arn(entry, partition))
        except ValueError as e:
            raise ValidationError(str(e)) from e
    return frozenset(arns)


def _parse_mapping(spec: dict[str, Any]) -> AuthMapping | None:
    mapping = spec.get("mapping")
    if not mapping:
        return None
    if not isinstance(mapping, dict):
        raise ValidationError("mapping must be an object")

    username = (mapping.get("username") or "").strip()
    if not username:
        raise ValidationError("mapping.username is required when mapping is set")
    groups = mapping.get("groups") or []
    if not isinstance(groups, list) or not all(isinstance(g, str) and g for g in groups):
        raise ValidationError("mapping.groups must be a list of non-empty strings")
    # Group order is kept: it is written to aws-auth verbatim
    return AuthMapping(username=username, groups=tuple(dict.fromkeys(groups)))


def build_desired_state(binding: Binding, default_issuer: str | None = None) -> DesiredState:
    """Create the desired state from a Binding spec.

    Args:
        binding: Binding resource
        default_issuer: Cluster OIDC issuer used when the spec names none

    Returns:
        Desired state for the Binding

    Raises:
        ValidationError: If the spec is malformed
        ConfigurationError: If no OIDC issuer is known
    """
    spec = binding.spec
    identity = spec.get("identity") or {}
    if not isinstance(identity, dict):
        raise ValidationError("identity must be an object")

    role_arn = (identity.get("roleArn") or "").strip()
    if not role_arn:
        raise ValidationError("identity.roleArn is required")
    try:
        partition, account, path, role_name = parse_role_arn(role_arn)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    issuer_value = identity.get("oidcIssuer") or default_issuer
    if not issuer_value:
        raise ConfigurationError("identity.oidcIssuer is not set and the operator has no default OIDC_ISSUER")
    try:
        issuer = normalize_issuer(issuer_value)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    audience = (identity.get("audience") or DEFAULT_AUDIENCE).strip()
    namespace, service_account = _parse_subject(spec, binding.namespace)

    return DesiredState(
        role_arn=role_arn,
        role_name=role_name,
        role_path=path,
        trust_policy=build_trust_policy(partition, account, issuer, namespace, service_account, audience),
        policy_arns=_parse_policies(spec, partition),
        mapping=_parse_mapping(spec),
    )
