"""AWS IAM client implementation."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from ... import metrics
from ...errors import CloudError, PermanentCloudError, TransientCloudError
from ...models import RoleState
from ...utils.errors import sanitize_error_message
from ...utils.policy import parse_policy_document, parse_role_arn
from ...utils.rate_limit import rate_limit_aws

logger = logging.getLogger(__name__)

# Error codes IAM and STS return when a retry can succeed
AWS_RETRYABLE_ERROR_CODES = {
    "TooManyRequestsException",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "Unavailable",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "ServiceFailure",
    "ServiceFailureException",
    "InternalFailure",
    "InternalError",
    "InternalServerError",
    "ConcurrentModification",
    "ConcurrentModificationException",
    "DeleteConflict",
    "EntityAlreadyExists",
}

# Codes handled by backing off inside a single call
AWS_THROTTLING_ERROR_CODES = {
    "TooManyRequestsException",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
}

AWS_NOT_FOUND_ERROR_CODES = {"NoSuchEntity", "NoSuchEntityException"}


def error_code(error: ClientError) -> str:
    """Return the AWS error code of a ClientError."""
    return error.response.get("Error", {}).get("Code", "") or ""


def is_not_found(error: Exception) -> bool:
    """Check whether an AWS error reports a missing entity."""
    return isinstance(error, ClientError) and error_code(error) in AWS_NOT_FOUND_ERROR_CODES


def classify_error(error: Exception, operation: str) -> CloudError:
    """Convert a boto3 exception into the operator error taxonomy."""
    message = sanitize_error_message(f"{operation} failed: {error}")
    if isinstance(error, ClientError):
        code = error_code(error)
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
        if code in AWS_RETRYABLE_ERROR_CODES or status >= 500:
            return TransientCloudError(message, code=code, operation=operation)
        return PermanentCloudError(message, code=code, operation=operation)
    if isinstance(error, NoCredentialsError):
        return PermanentCloudError(message, code="NoCredentials", operation=operation)
    # Connection, timeout and other botocore failures
    return TransientCloudError(message, code=type(error).__name__, operation=operation)


def _tags_to_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


class IAMClient:
    """IAM role operations with throttling backoff and error classification."""

    def __init__(
        self,
        region: str = "us-east-1",
        endpoint: str | None = None,
        max_attempts: int = 5,
        iam_client: Any = None,
        sts_client: Any = None,
        throttle_base_delay: float = 0.5,
        throttle_max_delay: float = 20.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the IAM client.

        Args:
            region: Region for the IAM and STS endpoints
            endpoint: Optional IAM endpoint URL
            max_attempts: Attempts per call when AWS throttles
            iam_client: Pre-built boto3 IAM client (tests)
            sts_client: Pre-built boto3 STS client (tests)
            throttle_base_delay: First sleep after a throttling response
            throttle_max_delay: Upper bound for a single throttling sleep
            sleep: Sleep function (tests)
        """
        self.max_attempts = max(1, max_attempts)
        self.throttle_base_delay = throttle_base_delay
        self.throttle_max_delay = throttle_max_delay
        self._sleep = sleep

        # One botocore attempt per call: throttling is retried in _call, everything else by the work queue
        config = Config(
            retries={"mode": "standard", "total_max_attempts": 1},
            connect_timeout=10,
            read_timeout=30,
        )
        self.iam = iam_client or boto3.client("iam", region_name=region, endpoint_url=endpoint, config=config)
        self.sts = sts_client or boto3.client("sts", region_name=region, config=config)

    def _call(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """Invoke a boto3 operation with rate limiting, metrics and throttling backoff.

        Raises:
            CloudError: Classified failure
        """
        delay = self.throttle_base_delay
        attempt = 1
        while True:
            start_time = time.time()
            try:
                result = rate_limit_aws(func)(**kwargs)
                metrics.api_call_total.labels(api_type="aws", operation=operation, result="success").inc()
                return result
            except ClientError as e:
                code = error_code(e)
                result_label = "not_found" if code in AWS_NOT_FOUND_ERROR_CODES else "error"
                metrics.api_call_total.labels(api_type="aws", operation=operation, result=result_label).inc()
                if code in AWS_THROTTLING_ERROR_CODES and attempt < self.max_attempts:
                    metrics.throttle_retries_total.labels(operation=operation).inc()
                    logger.warning(f"{operation} throttled ({code}), retrying in {delay:.2f}s (attempt {attempt})")
                    self._sleep(delay)
                    delay = min(delay * 2, self.throttle_max_delay)
                    attempt += 1
                    continue
                raise
            except BotoCoreError:
                metrics.api_call_total.labels(api_type="aws", operation=operation, result="error").inc()
                raise
            finally:
                duration = time.time() - start_time
                metrics.api_call_duration_seconds.labels(api_type="aws", operation=operation).observe(duration)

    def _mutate(self, operation: str, func: Callable[..., Any], **kwargs: Any) -> Any:
        """Run a mutating call and count it."""
        try:
            result = self._call(operation, func, **kwargs)
        except (ClientError, BotoCoreError):
            metrics.iam_operations_total.labels(operation=operation, result="error").inc()
            raise
        metrics.iam_operations_total.labels(operation=operation, result="success").inc()
        return result

    def verify_credentials(self) -> str:
        """Check that credentials work and return the caller ARN.

        Raises:
            CloudError: If STS rejects the credentials or is unreachable
        """
        try:
            identity = self._call("get_caller_identity", self.sts.get_caller_identity)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, "get_caller_identity") from e
        return identity.get("Arn", "")

    def get_role(self, role_arn: str) -> RoleState | None:
        """Read a role, its trust policy, tags and attached managed policies.

        Returns:
            Role state, or None if the role does not exist

        Raises:
            CloudError: On any failure other than absence, or when a role with
                the same name exists under a different ARN
        """
        _, _, _, role_name = parse_role_arn(role_arn)
        try:
            response = self._call("get_role", self.iam.get_role, RoleName=role_name)
            role = response["Role"]
            attached = self._list_attached_policies(role_name)
        except (ClientError, BotoCoreError) as e:
            if is_not_found(e):
                return None
            raise classify_error(e, "get_role") from e

        if role.get("Arn") and role["Arn"] != role_arn:
            raise PermanentCloudError(
                f"role {role_name} exists as {role['Arn']}, not {role_arn}",
                code="ArnMismatch",
                operation="get_role",
            )

        return RoleState(
            arn=role.get("Arn", role_arn),
            name=role_name,
            trust_policy=parse_policy_document(role.get("AssumeRolePolicyDocument")),
            attached_policies=frozenset(attached),
            tags={tag["Key"]: tag["Value"] for tag in role.get("Tags", [])},
        )

    def _list_attached_policies(self, role_name: str) -> list[str]:
        paginator = self.iam.get_paginator("list_attached_role_policies")
        arns = []

        def _pages() -> list[dict[str, Any]]:
            return list(paginator.paginate(RoleName=role_name))

        for page in self._call("list_attached_role_policies", _pages):
            arns.extend(policy["PolicyArn"] for policy in page.get("AttachedPolicies", []))
        return arns

    def create_role(self, role_arn: str, trust_policy: dict[str, Any], tags: dict[str, str]) -> None:
        """Create a role with the given trust policy and tags."""
        _, _, path, role_name = parse_role_arn(role_arn)
        try:
            self._mutate(
                "create_role",
                self.iam.create_role,
                RoleName=role_name,
                Path=path,
                AssumeRolePolicyDocument=json.dumps(trust_policy),
                Description="Managed by aws-auth-operator",
                Tags=_tags_to_list(tags),
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, "create_role") from e
        logger.info(f"Created role {role_arn}")

    def set_trust_policy(self, role_arn: str, trust_policy: dict[str, Any]) -> None:
        """Replace the trust policy of a role."""
        _, _, _, role_name = parse_role_arn(role_arn)
        try:
            self._mutate(
                "update_assume_role_policy",
                self.iam.update_assume_role_policy,
                RoleName=role_name,
                PolicyDocument=json.dumps(trust_policy),
            )
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, "update_assume_role_policy") from e
        logger.info(f"Updated trust policy of role {role_arn}")

    def tag_role(self, role_arn: str, tags: dict[str, str]) -> None:
        """Add or overwrite tags on a role."""
        _, _, _, role_name = parse_role_arn(role_arn)
        try:
            self._mutate("tag_role", self.iam.tag_role, RoleName=role_name, Tags=_tags_to_list(tags))
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, "tag_role") from e
        logger.info(f"Tagged role {role_arn} with {sorted(tags)}")

    def untag_role(self, role_arn: str, tag_keys: list[str]) -> None:
        """Remove tags from a role. An absent role is success."""
        _, _, _, role_name = parse_role_arn(role_arn)
        try:
            self._mutate("untag_role", self.iam.untag_role, RoleName=role_name, TagKeys=list(tag_keys))
        except (ClientError, BotoCoreError) as e:
            if is_not_found(e):
                return
            raise classify_error(e, "untag_role") from e
        logger.info(f"Removed tags {list(tag_keys)} from role {role_arn}")

    def attach_policy(self, role_arn: str, policy_arn: str) -> None:
        """Attach a managed policy to a role."""
        _, _, _, role_name = parse_role_arn(role_arn)
        try:
            self._mutate("attach_role_policy", self.iam.attach_role_policy, RoleName=role_name, PolicyArn=policy_arn)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, "attach_role_policy") from e
        logger.info(f"Attached {policy_arn} to role {role_arn}")

    def detach_policy(self, role_arn: str, policy_arn: str) -> None:
        """Detach a managed policy from a role. Already detached is success."""
        _, _, _, role_name = parse_role_arn(role_arn)
        try:
            self._mutate("detach_role_policy", self.iam.detach_role_policy, RoleName=role_name, PolicyArn=policy_arn)
        except (ClientError, BotoCoreError) as e:
            if is_not_found(e):
                logger.info(f"{policy_arn} was not attached to role {role_arn}")
                return
            raise classify_error(e, "detach_role_policy") from e
        logger.info(f"Detached {policy_arn} from role {role_arn}")

    def delete_role(self, role_arn: str) -> None:
        """Delete a role and everything that blocks its deletion.

        Managed policies are detached, inline policies deleted and the role
        removed from instance profiles first. An absent role is success.
        """
        _, _, _, role_name = parse_role_arn(role_arn)
        try:
            for policy_arn in self._list_attached_policies(role_name):
                self.detach_policy(role_arn, policy_arn)

            inline = self._call("list_role_policies", self.iam.list_role_policies, RoleName=role_name)
            for policy_name in inline.get("PolicyNames", []):
                self._mutate("delete_role_policy", self.iam.delete_role_policy, RoleName=role_name, PolicyName=policy_name)

            profiles = self._call(
                "list_instance_profiles_for_role", self.iam.list_instance_profiles_for_role, RoleName=role_name
            )
            for profile in profiles.get("InstanceProfiles", []):
                self._mutate(
                    "remove_role_from_instance_profile",
                    self.iam.remove_role_from_instance_profile,
                    InstanceProfileName=profile["InstanceProfileName"],
                    RoleName=role_name,
                )

            self._mutate("delete_role", self.iam.delete_role, RoleName=role_name)
        except (ClientError, BotoCoreError) as e:
            if is_not_found(e):
                logger.info(f"Role {role_arn} already deleted")
                return
            raise classify_error(e, "delete_role") from e
        logger.info(f"Deleted role {role_arn}")
