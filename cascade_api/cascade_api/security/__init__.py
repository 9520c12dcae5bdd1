"""Admission control: permissions, rate limits, anomaly detection."""

from cascade_api.security.anomaly import AnomalyDetector
from cascade_api.security.context import Refusal, RefusalCode, Role, SecurityContext
from cascade_api.security.gate import SecurityGate, build_security_gate
from cascade_api.security.permissions import DEFAULT_RULES, PermissionGuard, PermissionRule
from cascade_api.security.rate_limit import OperationRateLimiter, SlidingWindowCounter
from cascade_api.security.violations import SecurityViolation, ViolationLog, ViolationSeverity, ViolationType

__all__ = [
    "DEFAULT_RULES",
    "AnomalyDetector",
    "OperationRateLimiter",
    "PermissionGuard",
    "PermissionRule",
    "Refusal",
    "RefusalCode",
    "Role",
    "SecurityContext",
    "SecurityGate",
    "SecurityViolation",
    "SlidingWindowCounter",
    "ViolationLog",
    "ViolationSeverity",
    "ViolationType",
    "build_security_gate",
]
