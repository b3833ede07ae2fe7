"""Tests for IAM policy and ARN helpers."""

from __future__ import annotations

import json
from urllib.parse import quote

import pytest

from aws_auth_operator.utils.policy import (
    normalize_issuer,
    normalize_policy_arn,
    parse_policy_document,
    parse_role_arn,
    policy_documents_equal,
)


class TestArns:
    """Test cases for ARN parsing and normalization."""

    def test_parse_role_arn(self):
        assert parse_role_arn("arn:aws:iam::123456789012:role/a/b/app") == ("aws", "123456789012", "/a/b/", "app")
        assert parse_role_arn("arn:aws-us-gov:iam::1:role/app") == ("aws-us-gov", "1", "/", "app")

    @pytest.mark.parametrize(
        "arn",
        ["", "app", "arn:aws:iam::123:user/app", "arn:aws:iam::abc:role/app", "arn:aws:iam::123:role/" + "x" * 65],
    )
    def test_parse_role_arn_rejects(self, arn):
        with pytest.raises(ValueError):
            parse_role_arn(arn)

    def test_normalize_policy_arn(self):
        assert normalize_policy_arn("ReadOnlyAccess") == "arn:aws:iam::aws:policy/ReadOnlyAccess"
        assert normalize_policy_arn("service-role/AWSLambdaRole") == "arn:aws:iam::aws:policy/service-role/AWSLambdaRole"
        assert normalize_policy_arn(" arn:aws:iam::123:policy/mine ") == "arn:aws:iam::123:policy/mine"

    @pytest.mark.parametrize("value", ["", "has space", "arn:aws:iam::123:role/app"])
    def test_normalize_policy_arn_rejects(self, value):
        with pytest.raises(ValueError):
            normalize_policy_arn(value)

    def test_normalize_issuer(self):
        assert normalize_issuer("https://oidc.example.com/id/ABC/") == "oidc.example.com/id/ABC"
        assert normalize_issuer("oidc.example.com:8443") == "oidc.example.com:8443"

    def test_normalize_issuer_rejects_empty(self):
        with pytest.raises(ValueError):
            normalize_issuer("https://")


class TestPolicyDocuments:
    """Test cases for policy document decoding and comparison."""

    def test_parse_url_encoded(self):
        document = {"Version": "2012-10-17", "Statement": []}

        assert parse_policy_document(quote(json.dumps(document))) == document
        assert parse_policy_document(json.dumps(document)) == document
        assert parse_policy_document(None) == {}

    def test_equal_ignores_key_and_set_order(self):
        left = {
            "Version": "2012-10-17",
            "Statement": [{"Effect": "Allow", "Action": ["b", "a"], "Principal": {"Federated": "x"}}],
        }
        right = {
            "Statement": {"Principal": {"Federated": ["x"]}, "Action": ["a", "b", "a"], "Effect": "Allow"},
            "Version": "2012-10-17",
        }

        assert policy_documents_equal(left, right)

    def test_statement_content_matters(self):
        left = {"Statement": [{"Effect": "Allow", "Action": "a"}]}
        right = {"Statement": [{"Effect": "Deny", "Action": "a"}]}

        assert not policy_documents_equal(left, right)

    def test_condition_values_compare_as_sets(self):
        left = {"Statement": [{"Condition": {"StringEquals": {"k": ["1", "2"]}}}]}
        right = {"Statement": [{"Condition": {"StringEquals": {"k": ["2", "1"]}}}]}

        assert policy_documents_equal(left, right)
