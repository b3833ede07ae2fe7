"""kopf activities for the AWS Auth Operator."""

from __future__ import annotations

import logging
from typing import Any

import kopf

from . import health
from . import logging as structured_logging
from .config import OperatorConfig
from .controller import Controller
from .reconciler import OperatorContext
from .services.aws import IAMClient
from .services.k8s import AwsAuthConfigMap, KubernetesBindingStore
from .tracing import initialize_tracing
from .utils.rate_limit import configure_rate_limits
from .workqueue import ExponentialBackoff

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 30.0


def build_context(config: OperatorConfig) -> OperatorContext:
    """Create the clients shared by every reconciliation."""
    return OperatorContext(
        store=KubernetesBindingStore(
            namespace=config.watch_namespace,
            watch_timeout_seconds=config.watch_timeout_seconds,
        ),
        cloud=IAMClient(
            region=config.aws_region,
            endpoint=config.aws_iam_endpoint,
            max_attempts=config.aws_max_attempts,
        ),
        mapping=AwsAuthConfigMap(namespace=config.aws_auth_namespace, name=config.aws_auth_name),
        backoff=ExponentialBackoff(base=config.backoff_base, cap=config.backoff_cap),
        config=config,
    )


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any) -> None:
    """Configure the operator and start the controller."""
    config = OperatorConfig.from_env()
    structured_logging.setup_structured_logging(config.log_level)
    initialize_tracing()
    configure_rate_limits(config.k8s_rate_limit_per_second, config.aws_rate_limit_per_second)

    settings.networking.request_timeout = 30.0
    settings.posting.level = 0

    controller = Controller(build_context(config))
    memo.controller = controller
    memo.http_server = health.start_http_server(config.metrics_port, controller.is_ready)
    controller.start()
    logger.info(
        f"aws-auth-operator started (namespace={config.watch_namespace or '*'}, "
        f"workers={config.concurrency}, resync={config.resync_interval}s)"
    )


@kopf.on.cleanup()
def shutdown(memo: kopf.Memo, **_: Any) -> None:
    """Stop the controller and the HTTP server."""
    controller = memo.get("controller")
    if controller is not None:
        controller.stop(timeout=SHUTDOWN_TIMEOUT_SECONDS)
    server = memo.get("http_server")
    if server is not None:
        server.shutdown()
    logger.info("aws-auth-operator stopped")
