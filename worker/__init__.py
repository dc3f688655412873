"""Reelsmith worker service package."""

from .worker import Worker

__all__ = ["Worker"]
