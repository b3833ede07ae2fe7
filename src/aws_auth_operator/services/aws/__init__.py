"""AWS service clients."""

from .client import IAMClient

__all__ = ["IAMClient"]
