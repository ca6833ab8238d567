"""Bulwark: resilience and observability core for the gamification dashboard."""

__version__ = "0.1.0"

from .config import Settings
from .runtime import Runtime

__all__ = ["Runtime", "Settings"]
