"""Security module for Bulwark.

This module provides:
- Adaptive rate limiting with escalating blocks
- Abuse (flood and bot) detection
- A security audit trail
- Script injection detection for query strings
"""

from .audit import AuditAction, AuditMetrics, AuditTrail, SecurityEvent
from .rate_limiter import (
    AbuseGuard,
    BlockEntry,
    RateDecision,
    RateRecord,
    SecurityViolation,
    SuspicionRecord,
    ViolationType,
)
from .validation import XSSDetector

__all__ = [
    "AbuseGuard",
    "RateDecision",
    "RateRecord",
    "BlockEntry",
    "SuspicionRecord",
    "SecurityViolation",
    "ViolationType",
    "AuditTrail",
    "AuditAction",
    "AuditMetrics",
    "SecurityEvent",
    "XSSDetector",
]
