"""Kubernetes operator binding service accounts to AWS IAM roles."""

__version__ = "0.1.0"
