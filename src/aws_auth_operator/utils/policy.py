"""IAM policy document and ARN helpers."""

from __future__ import annotations

import json
import re
from typing import Any
from urllib.parse import unquote

from ..constants import DEFAULT_AUDIENCE, POLICY_VERSION, WEB_IDENTITY_ACTION

ROLE_ARN_RE = re.compile(
    r"^arn:(?P<partition>aws[a-z-]*):iam::(?P<account>\d+):role(?P<path>/(?:[\w+=,.@-]+/)*)(?P<name>[\w+=,.@-]{1,64})$"
)
POLICY_ARN_RE = re.compile(r"^arn:aws[a-z-]*:iam::(aws|\d+):policy/(?:[\w+=,.@-]+/)*[\w+=,.@-]{1,128}$")
POLICY_NAME_RE = re.compile(r"^(?:[\w+=,.@-]+/)*[\w+=,.@-]{1,128}$")
OIDC_ISSUER_RE = re.compile(r"^[A-Za-z0-9.-]+(?::\d+)?(?:/[\w.~-]+)*$")

# Keys whose values IAM treats as unordered collections
_SET_VALUED_KEYS = {"Action", "NotAction", "Resource", "NotResource", "AWS", "Federated", "Service", "CanonicalUser"}


def parse_role_arn(arn: str) -> tuple[str, str, str, str]:
    """Split a role ARN into (partition, account, path, name).

    Raises:
        ValueError: If the ARN is not an IAM role ARN
    """
    match = ROLE_ARN_RE.match(arn or "")
    if not match:
        raise ValueError(f"{arn!r} is not a valid IAM role ARN")
    return match.group("partition"), match.group("account"), match.group("path"), match.group("name")


def normalize_policy_arn(policy: str, partition: str = "aws") -> str:
    """Turn a bare AWS managed policy name into its ARN.

    Raises:
        ValueError: If the value is neither a policy ARN nor a policy name
    """
    policy = (policy or "").strip()
    if policy.startswith("arn:"):
        if not POLICY_ARN_RE.match(policy):
            raise ValueError(f"{policy!r} is not a valid IAM policy ARN")
        return policy
    if not POLICY_NAME_RE.match(policy):
        raise ValueError(f"{policy!r} is not a valid IAM managed policy name")
    return f"arn:{partition}:iam::aws:policy/{policy}"


def normalize_issuer(issuer: str) -> str:
    """Strip the scheme and trailing slash from an OIDC issuer URL.

    Raises:
        ValueError: If the issuer is not a host with an optional path
    """
    issuer = (issuer or "").strip()
    for scheme in ("https://", "http://"):
        if issuer.startswith(scheme):
            issuer = issuer[len(scheme):]
    issuer = issuer.rstrip("/")
    if not issuer or not OIDC_ISSUER_RE.match(issuer):
        raise ValueError(f"{issuer!r} is not a valid OIDC issuer")
    return issuer


def build_trust_policy(
    partition: str,
    account: str,
    issuer: str,
    namespace: str,
    service_account: str,
    audience: str = DEFAULT_AUDIENCE,
) -> dict[str, Any]:
    """Render the web identity trust policy for one service account."""
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": f"arn:{partition}:iam::{account}:oidc-provider/{issuer}"},
                "Action": WEB_IDENTITY_ACTION,
                "Condition": {
                    "StringEquals": {
                        f"{issuer}:sub": f"system:serviceaccount:{namespace}:{service_account}",
                        f"{issuer}:aud": audience,
                    }
                },
            }
        ],
    }


def parse_policy_document(document: Any) -> dict[str, Any]:
    """Decode a policy document as returned by IAM.

    boto3 usually hands back a dict already; raw API responses carry a
    URL-encoded JSON string.
    """
    if document is None:
        return {}
    if isinstance(document, dict):
        return document
    text = str(document)
    if text.startswith("%7B") or text.startswith("%7b"):
        text = unquote(text)
    return json.loads(text)


def _normalize_value(key: str | None, value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _normalize_value(k, v) for k, v in sorted(value.items())}
    if isinstance(value, list):
        items = [_normalize_value(key, v) for v in value]
        if key in _SET_VALUED_KEYS or all(isinstance(v, str) for v in items):
            unique = sorted(set(json.dumps(v, sort_keys=True) for v in items))
            items = [json.loads(v) for v in unique]
        if len(items) == 1 and not isinstance(items[0], (dict, list)):
            return items[0]
        return items
    return value


def normalize_policy_document(document: Any) -> dict[str, Any]:
    """Canonical form of a policy document for equality checks.

    Key order, single-item lists and ordering inside set-valued fields
    (actions, principals, resources, condition values) are not significant
    to IAM and are normalized away. Statement order is kept.
    """
    doc = parse_policy_document(document)
    normalized: dict[str, Any] = {}
    for key, value in sorted(doc.items()):
        if key == "Statement":
            statements = value if isinstance(value, list) else [value]
            normalized[key] = [_normalize_value(None, stmt) for stmt in statements]
        else:
            normalized[key] = _normalize_value(key, value)
    return normalized


def policy_documents_equal(left: Any, right: Any) -> bool:
    """Compare two policy documents ignoring insignificant differences."""
    return normalize_policy_document(left) == normalize_policy_document(right)
