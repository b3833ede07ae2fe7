"""Runtime configuration for the AWS Auth Operator."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from .errors import ConfigurationError


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0, maximum: int | None = None) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ConfigurationError(f"{name} must be {bounds}, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class OperatorConfig:
    """Operator settings loaded from the environment."""

    concurrency: int = 4
    resync_interval: float = 600.0
    backoff_base: float = 1.0
    backoff_cap: float = 300.0
    watch_namespace: str | None = None
    watch_timeout_seconds: int = 300
    oidc_issuer: str | None = None
    aws_region: str = "us-east-1"
    aws_iam_endpoint: str | None = None
    aws_max_attempts: int = 5
    aws_rate_limit_per_second: float = 5.0
    k8s_rate_limit_per_second: float = 10.0
    aws_auth_namespace: str = "kube-system"
    aws_auth_name: str = "aws-auth"
    metrics_port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> OperatorConfig:
        """Build configuration from environment variables.

        Raises:
            ConfigurationError: If a value cannot be parsed or is out of range
        """
        if env is None:
            env = os.environ

        backoff_base = _get_float(env, "BACKOFF_BASE_SECONDS", 1.0, minimum=0.001)
        backoff_cap = _get_float(env, "BACKOFF_CAP_SECONDS", 300.0, minimum=0.001)
        if backoff_cap < backoff_base:
            raise ConfigurationError("BACKOFF_CAP_SECONDS must not be lower than BACKOFF_BASE_SECONDS")

        log_level = env.get("LOG_LEVEL", "INFO").strip().upper() or "INFO"
        if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ConfigurationError(f"LOG_LEVEL {log_level!r} is not a valid logging level")

        return cls(
            concurrency=_get_int(env, "RECONCILE_CONCURRENCY", 4, minimum=1, maximum=64),
            resync_interval=_get_float(env, "RESYNC_INTERVAL_SECONDS", 600.0, minimum=1.0),
            backoff_base=backoff_base,
            backoff_cap=backoff_cap,
            watch_namespace=env.get("WATCH_NAMESPACE", "").strip() or None,
            watch_timeout_seconds=_get_int(env, "WATCH_TIMEOUT_SECONDS", 300, minimum=1),
            oidc_issuer=env.get("OIDC_ISSUER", "").strip() or None,
            aws_region=env.get("AWS_REGION", "").strip() or "us-east-1",
            aws_iam_endpoint=env.get("AWS_IAM_ENDPOINT", "").strip() or None,
            aws_max_attempts=_get_int(env, "AWS_MAX_ATTEMPTS", 5, minimum=1, maximum=20),
            aws_rate_limit_per_second=_get_float(env, "AWS_RATE_LIMIT_PER_SECOND", 5.0, minimum=0.1),
            k8s_rate_limit_per_second=_get_float(env, "K8S_RATE_LIMIT_PER_SECOND", 10.0, minimum=0.1),
            aws_auth_namespace=env.get("AWS_AUTH_CONFIGMAP_NAMESPACE", "").strip() or "kube-system",
            aws_auth_name=env.get("AWS_AUTH_CONFIGMAP_NAME", "").strip() or "aws-auth",
            metrics_port=_get_int(env, "METRICS_PORT", 8080, minimum=1, maximum=65535),
            log_level=log_level,
        )
