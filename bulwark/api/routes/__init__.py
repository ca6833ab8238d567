from . import errors, health, metrics, security

__all__ = ["errors", "health", "metrics", "security"]
