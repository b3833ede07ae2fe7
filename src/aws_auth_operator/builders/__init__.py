"""Builders turning Binding specs into desired state."""

from .binding import build_desired_state

__all__ = ["build_desired_state"]
