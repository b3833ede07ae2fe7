"""Unit tests for the Binding desired-state builder."""

from __future__ import annotations

import pytest

from aws_auth_operator.builders.binding import build_desired_state
from aws_auth_operator.errors import ConfigurationError, ValidationError
from aws_auth_operator.models import AuthMapping, Binding

ISSUER = "oidc.eks.eu-west-1.amazonaws.com/id/ABC"


def make_binding(spec: dict, namespace: str = "apps") -> Binding:
    return Binding({"metadata": {"name": "b", "namespace": namespace}, "spec": spec})


def base_spec(**overrides) -> dict:
    spec = {
        "identity": {"roleArn": "arn:aws:iam::123456789012:role/svc/app"},
        "subject": {"name": "app-sa"},
        "policies": ["ReadOnlyAccess"],
    }
    spec.update(overrides)
    return spec


class TestBindingBuilder:
    """Test desired state construction."""

    def test_basic_state(self) -> None:
        """Test role identity, trust policy and policy normalization."""
        desired = build_desired_state(make_binding(base_spec()), default_issuer=ISSUER)

        assert desired.role_name == "app"
        assert desired.role_path == "/svc/"
        assert desired.policy_arns == frozenset({"arn:aws:iam::aws:policy/ReadOnlyAccess"})
        assert desired.mapping is None

        statement = desired.trust_policy["Statement"][0]
        assert statement["Action"] == "sts:AssumeRoleWithWebIdentity"
        assert statement["Principal"]["Federated"] == f"arn:aws:iam::123456789012:oidc-provider/{ISSUER}"
        assert statement["Condition"]["StringEquals"] == {
            f"{ISSUER}:sub": "system:serviceaccount:apps:app-sa",
            f"{ISSUER}:aud": "sts.amazonaws.com",
        }

    def test_subject_namespace_override(self) -> None:
        """Test that subject.namespace wins over the Binding namespace."""
        spec = base_spec(subject={"name": "app-sa", "namespace": "other"})
        desired = build_desired_state(make_binding(spec), default_issuer=ISSUER)

        condition = desired.trust_policy["Statement"][0]["Condition"]["StringEquals"]
        assert condition[f"{ISSUER}:sub"] == "system:serviceaccount:other:app-sa"

    def test_spec_issuer_and_audience(self) -> None:
        """Test issuer from the spec with scheme stripped and a custom audience."""
        spec = base_spec(
            identity={
                "roleArn": "arn:aws:iam::123456789012:role/app",
                "oidcIssuer": "https://issuer.example.com/",
                "audience": "custom",
            }
        )
        desired = build_desired_state(make_binding(spec))

        condition = desired.trust_policy["Statement"][0]["Condition"]["StringEquals"]
        assert condition == {
            "issuer.example.com:sub": "system:serviceaccount:apps:app-sa",
            "issuer.example.com:aud": "custom",
        }

    def test_policy_entries_are_deduplicated(self) -> None:
        """Test policy names, ARNs and object entries collapse to one set."""
        spec = base_spec(
            policies=[
                "ReadOnlyAccess",
                "arn:aws:iam::aws:policy/ReadOnlyAccess",
                {"arn": "arn:aws:iam::123456789012:policy/custom"},
                {"name": "AmazonS3ReadOnlyAccess"},
            ]
        )
        desired = build_desired_state(make_binding(spec), default_issuer=ISSUER)

        assert desired.policy_arns == frozenset(
            {
                "arn:aws:iam::aws:policy/ReadOnlyAccess",
                "arn:aws:iam::123456789012:policy/custom",
                "arn:aws:iam::aws:policy/AmazonS3ReadOnlyAccess",
            }
        )

    def test_china_partition_policy_names(self) -> None:
        """Test bare policy names follow the role partition."""
        spec = base_spec(identity={"roleArn": "arn:aws-cn:iam::123456789012:role/app"})
        desired = build_desired_state(make_binding(spec), default_issuer=ISSUER)

        assert desired.policy_arns == frozenset({"arn:aws-cn:iam::aws:policy/ReadOnlyAccess"})

    def test_mapping(self) -> None:
        """Test aws-auth mapping with duplicate groups removed in order."""
        spec = base_spec(mapping={"username": "app", "groups": ["b", "a", "b"]})
        desired = build_desired_state(make_binding(spec), default_issuer=ISSUER)

        assert desired.mapping == AuthMapping(username="app", groups=("b", "a"))

    def test_missing_issuer(self) -> None:
        """Test that no issuer anywhere is a configuration error."""
        with pytest.raises(ConfigurationError):
            build_desired_state(make_binding(base_spec()))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"identity": {}},
            {"identity": {"roleArn": "arn:aws:iam::123:user/app"}},
            {"identity": "nope"},
            {"subject": {}},
            {"subject": {"name": "Not_Valid"}},
            {"subject": {"name": "app", "namespace": "x" * 64}},
            {"policies": "ReadOnlyAccess"},
            {"policies": [42]},
            {"policies": ["arn:aws:s3:::bucket"]},
            {"mapping": {"groups": ["g"]}},
            {"mapping": {"username": "u", "groups": [""]}},
        ],
    )
    def test_invalid_specs(self, overrides) -> None:
        """Test malformed specs raise ValidationError."""
        with pytest.raises(ValidationError):
            build_desired_state(make_binding(base_spec(**overrides)), default_issuer=ISSUER)

    def test_invalid_issuer(self) -> None:
        """Test a malformed issuer is a validation error."""
        spec = base_spec(identity={"roleArn": "arn:aws:iam::123456789012:role/app", "oidcIssuer": "bad issuer"})
        with pytest.raises(ValidationError):
            build_desired_state(make_binding(spec))
