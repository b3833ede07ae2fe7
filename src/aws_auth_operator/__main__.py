"""Command line entry point: ``python -m aws_auth_operator``."""

from __future__ import annotations

import logging
import os
import sys

import kopf
from kubernetes import client, config

from . import logging as structured_logging
from . import main as _handlers  # noqa: F401  registers the kopf activities
from .config import OperatorConfig
from .errors import CloudError, ConfigurationError, FatalBootstrapError, StoreError
from .services.aws import IAMClient
from .services.k8s import KubernetesBindingStore

logger = logging.getLogger("aws_auth_operator")


def load_kube_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig.

    Outside a cluster the kubeconfig context named by ``KUBE_CTX`` is used, or
    the current context when it is unset.
    """
    try:
        config.load_incluster_config()
    except config.ConfigException:
        try:
            config.load_kube_config(context=os.getenv("KUBE_CTX") or None)
        except config.ConfigException as e:
            raise FatalBootstrapError(f"no Kubernetes configuration found: {e}") from e


def bootstrap(operator_config: OperatorConfig) -> None:
    """Check that the Kubernetes API and AWS credentials are usable.

    Raises:
        FatalBootstrapError: If the operator cannot work in this environment
    """
    load_kube_config()
    store = KubernetesBindingStore(
        api=client.CustomObjectsApi(),
        namespace=operator_config.watch_namespace,
    )
    try:
        bindings, _ = store.list()
    except StoreError as e:
        raise FatalBootstrapError(f"cannot list IAMRoleBindings (is the CRD installed?): {e}") from e
    logger.info(f"Kubernetes API reachable, {len(bindings)} IAMRoleBindings found")

    cloud = IAMClient(
        region=operator_config.aws_region,
        endpoint=operator_config.aws_iam_endpoint,
        max_attempts=operator_config.aws_max_attempts,
    )
    try:
        caller = cloud.verify_credentials()
    except CloudError as e:
        raise FatalBootstrapError(f"AWS credentials are not usable: {e}") from e
    logger.info(f"AWS credentials valid for {caller}")


def main() -> int:
    """Run the operator until it is signalled to stop.

    Returns:
        0 on graceful shutdown, 1 if bootstrap failed
    """
    try:
        operator_config = OperatorConfig.from_env()
    except ConfigurationError as e:
        structured_logging.setup_structured_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    structured_logging.setup_structured_logging(operator_config.log_level)
    try:
        bootstrap(operator_config)
    except FatalBootstrapError as e:
        logger.error(f"Bootstrap failed: {e}")
        return 1

    kopf.run(clusterwide=True, standalone=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
