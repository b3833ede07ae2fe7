"""Kubernetes-backed clients."""

from .aws_auth import AwsAuthConfigMap
from .store import KubernetesBindingStore

__all__ = ["AwsAuthConfigMap", "KubernetesBindingStore"]
