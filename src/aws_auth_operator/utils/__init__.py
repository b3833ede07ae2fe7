"""Utility functions for the AWS Auth Operator."""

from .conditions import (
    get_condition,
    is_condition_true,
    set_ready_condition,
    update_condition,
)
from .context import (
    get_context_dict,
    get_correlation_id,
    with_correlation_id,
)
from .errors import sanitize_error_message, sanitize_exception
from .events import emit_event
from .policy import normalize_policy_arn, parse_role_arn, policy_documents_equal
from .rate_limit import rate_limit_aws, rate_limit_k8s

__all__ = [
    "update_condition",
    "get_condition",
    "is_condition_true",
    "set_ready_condition",
    "emit_event",
    "sanitize_error_message",
    "sanitize_exception",
    "normalize_policy_arn",
    "parse_role_arn",
    "policy_documents_equal",
    "rate_limit_k8s",
    "rate_limit_aws",
    "get_correlation_id",
    "with_correlation_id",
    "get_context_dict",
]
