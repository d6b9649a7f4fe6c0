"""
Custom exceptions for the Longhorn replica controller.

Kubernetes API errors (ApiException) are generally propagated as-is so the
work queue can retry them; the classes below cover failures the controller
itself detects or wraps with additional context.
"""
from typing import Optional, Dict, Any


class ControllerException(Exception):
    """
    Base exception for all controller errors.

    All custom exceptions should inherit from this base class.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class KubernetesError(ControllerException):
    """
    Raised when Kubernetes client setup or an API interaction fails.

    Used for config loading errors and wrapped API failures.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=f"Kubernetes error: {message}", details=details)


class InvalidKeyError(ControllerException):
    """Raised when a work queue key is not of the form namespace/name."""

    def __init__(self, key: str):
        super().__init__(
            message=f"Unexpected key format: {key!r}",
            details={"key": key},
        )


class ReplicaOperationError(ControllerException):
    """
    Raised when a replica lifecycle step fails.

    Carries the operation and replica name so the error reporter can
    attribute the failure.
    """

    def __init__(self, operation: str, replica: str, reason: str, details: Optional[Dict[str, Any]] = None):
        message = f"Replica {operation} failed for '{replica}': {reason}"
        super().__init__(
            message=message,
            details=details or {
                "operation": operation,
                "replica": replica,
                "reason": reason,
            },
        )


__all__ = [
    "ControllerException",
    "KubernetesError",
    "InvalidKeyError",
    "ReplicaOperationError",
]
